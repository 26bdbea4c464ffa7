"""
Core data models for configuration records, queued requests and execution results.
"""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, Optional, List, Tuple

from .conditions import Condition, parse_condition
from .enums import (
    ActionType, StepType, OnError, RoutingProfile, Priority, QueueStatus,
    ChainStatus, StepStatus, BatchStatus, SavingsCategory, FrameKind,
)


def new_id() -> str:
    """Generate a new opaque identifier."""
    return uuid.uuid4().hex


# ============= Configuration records (read-only to the engine) =============

@dataclass(frozen=True)
class Intent:
    """A classified category of user request."""
    key: str
    display_name: str
    category: str
    keywords: Tuple[str, ...] = ()
    priority: int = 50
    required_functions: Tuple[str, ...] = ()
    preferred_models: Tuple[str, ...] = ()
    context_needs: Tuple[str, ...] = ()
    active: bool = True
    created_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class ActionMapping:
    """Rule binding an intent to an executable action."""
    intent_key: str
    action_key: str
    action_type: ActionType
    action_config: Dict[str, Any] = field(default_factory=dict)
    parameter_patterns: Dict[str, Any] = field(default_factory=dict)
    required_context: Tuple[str, ...] = ()
    conditions: Dict[str, Any] = field(default_factory=dict)
    priority: int = 50
    active: bool = True
    created_at: datetime = field(default_factory=datetime.now)
    condition: Condition = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "condition", parse_condition(self.conditions))


@dataclass(frozen=True)
class ChainStep:
    """One step of a function chain."""
    step_key: str
    function_key: str
    step_type: StepType = StepType.FUNCTION
    required: bool = True
    wait_for_result: bool = True
    on_error: OnError = OnError.FAIL
    max_retries: Optional[int] = None
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FunctionChain:
    """Ordered sequence of steps with per-step error policy."""
    chain_key: str
    display_name: str
    steps: Tuple[ChainStep, ...]
    trigger_intents: Tuple[str, ...] = ()
    fallback_chain_id: Optional[str] = None
    active: bool = True
    created_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class Model:
    """Upstream model metadata used for cost/capability scoring."""
    model_id: str
    provider: str
    best_for: str
    context_length: int = 8192
    max_completion_tokens: int = 4096
    pricing_prompt: float = 0.0
    pricing_completion: float = 0.0
    rate_limit_rpm: Optional[int] = None
    rate_limit_tpm: Optional[int] = None
    is_active: bool = True
    is_default: bool = False
    quality_tier: int = 1
    avg_latency_ms: Optional[float] = None

    @property
    def total_price(self) -> float:
        """Prompt plus completion price per million tokens."""
        return self.pricing_prompt + self.pricing_completion

    def estimate_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        """Estimate USD cost for a call (pricing is per million tokens)."""
        return (prompt_tokens * self.pricing_prompt
                + completion_tokens * self.pricing_completion) / 1_000_000


@dataclass(frozen=True)
class RoutingConfig:
    """Singleton routing configuration."""
    default_model_id: Optional[str] = None
    fallback_model_id: Optional[str] = None
    routing_profile: RoutingProfile = RoutingProfile.BALANCED
    cost_performance_weight: int = 50
    flags: Dict[str, Any] = field(default_factory=dict)


# ============= Requests and routing =============

@dataclass
class Preferences:
    """Caller preferences for a single request."""
    force_model_id: Optional[str] = None
    max_cost_usd: Optional[float] = None
    max_latency_ms: Optional[float] = None
    priority: Priority = Priority.NORMAL
    timeout_seconds: Optional[float] = None
    stream: bool = False
    allow_batching: bool = True
    max_retries: Optional[int] = None
    expected_prompt_tokens: Optional[int] = None
    expected_completion_tokens: Optional[int] = None
    session_id: Optional[str] = None


@dataclass
class ClassificationResult:
    """Outcome of intent classification."""
    intent_key: str
    confidence: float
    category: str
    method: str
    matched_keywords: List[str] = field(default_factory=list)
    missing_context: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelSelection:
    """Decision made by the model router."""
    model: Model
    reasoning: str
    cost_tier: str
    candidates_considered: int
    score: Optional[float] = None
    used_fallback: bool = False
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def model_id(self) -> str:
        return self.model.model_id


@dataclass
class UpstreamResponse:
    """Response from an upstream model call."""
    content: str
    model_id: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0
    finish_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


# ============= Queue =============

@dataclass
class QueueItem:
    """A pending or finished execution owned by the scheduler."""
    payload: Dict[str, Any]
    priority: Priority = Priority.NORMAL
    request_type: str = "execute"
    id: str = field(default_factory=new_id)
    status: QueueStatus = QueueStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Any = None
    error: Optional[str] = None
    sequence: int = 0
    batchable: bool = False
    done: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)
    cancel_requested: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    @property
    def wait_ms(self) -> Optional[float]:
        if self.started_at is None:
            return None
        return (self.started_at - self.created_at).total_seconds() * 1000


@dataclass
class QueueStats:
    """Snapshot of queue health."""
    pending_by_priority: Dict[str, int]
    processing_count: int
    throughput_per_minute: float
    avg_wait_ms: float
    completed_count: int = 0
    failed_count: int = 0
    oldest_pending_age_ms: float = 0.0

    @property
    def pending_total(self) -> int:
        return sum(self.pending_by_priority.values())


# ============= Batching =============

@dataclass
class Batch:
    """A group of compatible requests merged into one upstream call."""
    key: Tuple[Any, ...]
    model_id: Optional[str]
    id: str = field(default_factory=new_id)
    request_ids: List[str] = field(default_factory=list)
    status: BatchStatus = BatchStatus.OPEN
    api_calls_saved: int = 0
    tokens_saved: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    window_expires_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.request_ids)


@dataclass
class BatchMembership:
    """Ticket returned when a request joins a batch."""
    batch_id: str
    request_id: str
    position: int
    window_expires_at: Optional[datetime]


# ============= Costs =============

@dataclass(frozen=True)
class CostRecord:
    """Append-only ledger entry, one per completed request."""
    request_id: str
    model_id: str
    prompt_tokens: int
    completion_tokens: int
    cost_usd: float
    latency_ms: float
    savings_attribution: Optional[SavingsCategory] = None
    savings_usd: float = 0.0
    savings_breakdown: Dict[str, float] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)


# ============= Chain execution =============

@dataclass
class StepRecord:
    """Trace entry for one step invocation."""
    step_key: str
    function_key: str
    step_type: StepType
    status: StepStatus
    attempts: int = 0
    retries: int = 0
    input: Dict[str, Any] = field(default_factory=dict)
    output: Any = None
    error: Optional[str] = None
    error_retryable: bool = False
    duration_ms: float = 0.0
    background: bool = False
    on_error: OnError = OnError.FAIL


@dataclass
class ChainExecutionResult:
    """Outcome of running a chain (and its fallback, if any)."""
    chain_key: str
    status: ChainStatus
    steps: List[StepRecord] = field(default_factory=list)
    outputs: Dict[str, Any] = field(default_factory=dict)
    output: Any = None
    error: Optional[str] = None
    duration_ms: float = 0.0
    fallback_used: bool = False
    fallback_result: Optional["ChainExecutionResult"] = None

    def step(self, step_key: str) -> Optional[StepRecord]:
        for record in self.steps:
            if record.step_key == step_key:
                return record
        return None


# ============= Planning, responses and replay =============

@dataclass
class PlannedStep:
    """A chain step as it would execute."""
    step_key: str
    function_key: str
    step_type: StepType
    required: bool
    wait_for_result: bool
    on_error: OnError
    available: bool
    model_id: Optional[str] = None
    estimated_cost_usd: float = 0.0


@dataclass
class ExecutionPlan:
    """Execution plan produced without side effects."""
    intent_key: str
    confidence: float
    category: str
    action_key: Optional[str]
    action_type: ActionType
    chain_key: Optional[str] = None
    steps: List[PlannedStep] = field(default_factory=list)
    model_id: Optional[str] = None
    model_reasoning: str = ""
    cost_tier: Optional[str] = None
    estimated_prompt_tokens: int = 0
    estimated_completion_tokens: int = 0
    estimated_cost_usd: float = 0.0
    parameters: Dict[str, Any] = field(default_factory=dict)

    def decision(self) -> Dict[str, Any]:
        """The routing decision fields compared by replay."""
        return {
            "intent_key": self.intent_key,
            "action_key": self.action_key,
            "action_type": self.action_type.value,
            "chain_key": self.chain_key,
            "model_id": self.model_id,
        }


@dataclass
class ExecutionResponse:
    """Response of the execution API."""
    request_id: str
    status: str
    plan: Optional[ExecutionPlan] = None
    result: Any = None
    costs: Optional[CostRecord] = None
    error: Optional[str] = None
    stream: Any = None


@dataclass
class RequestRecord:
    """History entry kept for replay."""
    request_id: str
    text: str
    preferences: Preferences
    context: Dict[str, Any]
    plan: Optional[ExecutionPlan] = None
    result: Any = None
    status: str = QueueStatus.PENDING.value
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class ReplayResult:
    """Outcome of replaying a historical request."""
    request_id: str
    mode: str
    status: str
    changed: bool = False
    differences: Dict[str, Tuple[Any, Any]] = field(default_factory=dict)
    plan: Optional[ExecutionPlan] = None
    original_result: Any = None
    result: Any = None
    costs: Optional[CostRecord] = None


# ============= Streaming =============

@dataclass(frozen=True)
class Frame:
    """One frame on a streaming channel."""
    kind: FrameKind
    sequence: int
    data: Any = None

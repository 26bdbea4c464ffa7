"""
Enumerations for the COSMO execution engine.
"""

from enum import Enum


class ActionType(Enum):
    """Kinds of actions an ActionMapping can bind an intent to."""
    FUNCTION = "function"
    CHAIN = "chain"
    MODEL_CALL = "model_call"
    EXTERNAL_API = "external_api"
    SYSTEM = "system"


class StepType(Enum):
    """Kinds of steps inside a function chain."""
    FUNCTION = "function"
    MODEL_CALL = "model_call"
    TRANSFORM = "transform"
    VALIDATION = "validation"


class OnError(Enum):
    """Per-step error policy."""
    FAIL = "fail"
    CONTINUE = "continue"
    RETRY = "retry"


class RoutingProfile(Enum):
    """Routing presets applied on top of the cost/performance weight."""
    BALANCED = "balanced"
    COST_OPTIMIZED = "cost_optimized"
    PERFORMANCE_FIRST = "performance_first"
    REAL_TIME = "real_time"


class Priority(Enum):
    """Queue priority tiers, highest first."""
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.NORMAL: 2,
    Priority.LOW: 3,
}


class QueueStatus(Enum):
    """Lifecycle of a queued request."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (QueueStatus.COMPLETED, QueueStatus.FAILED,
                        QueueStatus.CANCELLED, QueueStatus.EXPIRED)


class ChainStatus(Enum):
    """Lifecycle of a single chain execution."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(Enum):
    """Outcome of a single chain step."""
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class BatchStatus(Enum):
    """Lifecycle of an aggregation batch."""
    OPEN = "open"
    CLOSED = "closed"
    COMPLETED = "completed"
    FAILED = "failed"


class SavingsCategory(Enum):
    """Where a request's cost savings came from."""
    ROUTING = "routing"
    BATCHING = "batching"
    CONTEXT_REUSE = "context_reuse"


class ReplayMode(Enum):
    """Replay modes for historical requests."""
    VALIDATE_ONLY = "validate_only"
    REPLAY_EXECUTE = "replay_execute"


class FrameKind(Enum):
    """Frame types on a streaming channel."""
    CONTENT = "content"
    METADATA = "metadata"
    ERROR = "error"
    END = "end"

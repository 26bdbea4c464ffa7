"""
Core data models for the COSMO execution engine.
"""

from .core import (
    Intent,
    ActionMapping,
    ChainStep,
    FunctionChain,
    Model,
    RoutingConfig,
    Preferences,
    ClassificationResult,
    ModelSelection,
    UpstreamResponse,
    QueueItem,
    QueueStats,
    Batch,
    BatchMembership,
    CostRecord,
    StepRecord,
    ChainExecutionResult,
    PlannedStep,
    ExecutionPlan,
    ExecutionResponse,
    RequestRecord,
    ReplayResult,
    Frame,
    new_id,
)

from .config import (
    SystemConfig,
    ClassifierConfig,
    ExecutorConfig,
    QueueConfig,
    BatchConfig,
    UpstreamConfig,
    CostConfig,
    LoggingConfig,
)

from .enums import (
    ActionType,
    StepType,
    OnError,
    RoutingProfile,
    Priority,
    QueueStatus,
    ChainStatus,
    StepStatus,
    BatchStatus,
    SavingsCategory,
    ReplayMode,
    FrameKind,
)

__all__ = [
    # Core models
    "Intent",
    "ActionMapping",
    "ChainStep",
    "FunctionChain",
    "Model",
    "RoutingConfig",
    "Preferences",
    "ClassificationResult",
    "ModelSelection",
    "UpstreamResponse",
    "QueueItem",
    "QueueStats",
    "Batch",
    "BatchMembership",
    "CostRecord",
    "StepRecord",
    "ChainExecutionResult",
    "PlannedStep",
    "ExecutionPlan",
    "ExecutionResponse",
    "RequestRecord",
    "ReplayResult",
    "Frame",
    "new_id",
    # Configuration models
    "SystemConfig",
    "ClassifierConfig",
    "ExecutorConfig",
    "QueueConfig",
    "BatchConfig",
    "UpstreamConfig",
    "CostConfig",
    "LoggingConfig",
    # Enums
    "ActionType",
    "StepType",
    "OnError",
    "RoutingProfile",
    "Priority",
    "QueueStatus",
    "ChainStatus",
    "StepStatus",
    "BatchStatus",
    "SavingsCategory",
    "ReplayMode",
    "FrameKind",
]

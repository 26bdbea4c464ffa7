"""
COSMO Execution Engine

Classifies free-form requests into intents, resolves each intent to an
action, routes upstream model calls by cost and capability, and runs the
work through a prioritized, batching, cost-tracked queue.
"""

__version__ = "0.1.0"
__author__ = "COSMO Execution Engine"

from .models import (
    Intent,
    ActionMapping,
    ChainStep,
    FunctionChain,
    Model,
    RoutingConfig,
    Preferences,
    ExecutionResponse,
    ExecutionPlan,
    SystemConfig,
    ActionType,
    StepType,
    OnError,
    Priority,
    QueueStatus,
)
from .core import CosmoEngine, InMemoryConfigStore, JsonConfigStore

__all__ = [
    "CosmoEngine",
    "InMemoryConfigStore",
    "JsonConfigStore",
    "Intent",
    "ActionMapping",
    "ChainStep",
    "FunctionChain",
    "Model",
    "RoutingConfig",
    "Preferences",
    "ExecutionResponse",
    "ExecutionPlan",
    "SystemConfig",
    "ActionType",
    "StepType",
    "OnError",
    "Priority",
    "QueueStatus",
]

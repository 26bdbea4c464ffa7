"""
Core components of the COSMO execution engine.
"""

from .engine import CosmoEngine
from .config_store import ConfigSnapshot, ConfigStore, InMemoryConfigStore, JsonConfigStore, snapshot_from_dict
from .classifier import IntentClassifier
from .resolver import ActionResolver
from .executor import CancellationToken, FunctionRegistry, FunctionChainExecutor
from .router import ModelRouter
from .queue import PriorityRequestQueue, Scheduler
from .batching import BatchAggregator
from .ledger import CostLedger, SessionContextCache
from .streaming import StreamChannel
from .replay import ExecutionPlanner, ReplayEngine, RequestHistory
from .interfaces import ModelClient, ExternalAPIClient

__all__ = [
    "CosmoEngine",
    # Configuration
    "ConfigSnapshot",
    "ConfigStore",
    "InMemoryConfigStore",
    "JsonConfigStore",
    "snapshot_from_dict",
    # Routing
    "IntentClassifier",
    "ActionResolver",
    "ModelRouter",
    # Execution
    "CancellationToken",
    "FunctionRegistry",
    "FunctionChainExecutor",
    "PriorityRequestQueue",
    "Scheduler",
    "BatchAggregator",
    "StreamChannel",
    # Costs and replay
    "CostLedger",
    "SessionContextCache",
    "ExecutionPlanner",
    "ReplayEngine",
    "RequestHistory",
    # Upstream clients
    "ModelClient",
    "ExternalAPIClient",
]

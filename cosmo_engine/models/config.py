"""
Configuration models for the COSMO execution engine.
"""

from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional
import logging


@dataclass
class ClassifierConfig:
    """Configuration for intent classification."""
    min_keyword_score: float = 0.3
    fallback_intent: str = "conversation"
    enable_model_classification: bool = True
    classification_model_id: Optional[str] = None
    classification_max_tokens: int = 10
    category_prompt: str = (
        "You are an intent classifier. Reply with exactly one category name "
        "from the list and nothing else."
    )


@dataclass
class ExecutorConfig:
    """Configuration for function chain execution."""
    default_step_retries: int = 2
    step_backoff_base_seconds: float = 0.1
    step_backoff_max_seconds: float = 5.0
    background_workers: int = 4


@dataclass
class QueueConfig:
    """Configuration for the request queue and worker pool."""
    worker_count: int = 4
    max_queue_time_seconds: float = 3600.0
    default_max_retries: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 60.0
    backoff_jitter: bool = True
    poll_interval_seconds: float = 0.05
    stats_window_seconds: float = 60.0
    max_history: int = 1000


@dataclass
class BatchConfig:
    """Configuration for request batching."""
    enabled: bool = True
    window_ms: int = 500
    max_size: int = 10
    per_call_overhead_tokens: int = 100
    batchable_action_types: List[str] = field(default_factory=lambda: ["model_call"])


@dataclass
class UpstreamConfig:
    """Configuration for the OpenAI-compatible model API."""
    api_key: str = ""
    base_url: str = "https://openrouter.ai/api/v1"
    timeout_seconds: float = 60.0
    default_max_tokens: int = 1000
    temperature: float = 0.7
    external_timeout_seconds: float = 30.0


@dataclass
class CostConfig:
    """Configuration for cost estimation and savings attribution."""
    default_prompt_tokens: int = 500
    default_completion_tokens: int = 500
    step_overhead_tokens: int = 50
    context_cache_ttl_seconds: float = 1800.0


@dataclass
class LoggingConfig:
    """Configuration for system logging."""
    level: int = logging.INFO
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file_path: Optional[str] = "cosmo_engine.log"
    max_file_size_mb: int = 100
    backup_count: int = 5
    enable_console: bool = True
    enable_file: bool = True


@dataclass
class SystemConfig:
    """Main engine configuration."""
    classifier_config: ClassifierConfig = field(default_factory=ClassifierConfig)
    executor_config: ExecutorConfig = field(default_factory=ExecutorConfig)
    queue_config: QueueConfig = field(default_factory=QueueConfig)
    batch_config: BatchConfig = field(default_factory=BatchConfig)
    upstream_config: UpstreamConfig = field(default_factory=UpstreamConfig)
    cost_config: CostConfig = field(default_factory=CostConfig)
    logging_config: LoggingConfig = field(default_factory=LoggingConfig)
    debug_mode: bool = False
    default_timeout_seconds: float = 30.0
    metadata: Dict[str, Any] = field(default_factory=dict)

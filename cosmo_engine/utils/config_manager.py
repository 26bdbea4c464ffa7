"""
Configuration management for the COSMO execution engine.
"""

import json
import os
from pathlib import Path
from typing import Optional, Dict, Any

from ..models.config import (
    SystemConfig, ClassifierConfig, ExecutorConfig, QueueConfig, BatchConfig,
    UpstreamConfig, CostConfig, LoggingConfig,
)
from .error_handling import ConfigurationError
from .logging import get_logger

API_KEY_ENV_VARS = ("COSMO_API_KEY", "OPENAI_API_KEY")

_SECTIONS = {
    'classifier_config': ClassifierConfig,
    'executor_config': ExecutorConfig,
    'queue_config': QueueConfig,
    'batch_config': BatchConfig,
    'upstream_config': UpstreamConfig,
    'cost_config': CostConfig,
    'logging_config': LoggingConfig,
}


class ConfigManager:
    """
    Manages engine settings loading, validation, and updates.

    Settings live in a JSON file. The upstream API key may be left empty in the
    file and supplied through COSMO_API_KEY or OPENAI_API_KEY instead; a key
    taken from the environment is never written back to disk.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or "cosmo_config.json"
        self._config: Optional[SystemConfig] = None
        self._api_key_from_env = False
        self.logger = get_logger(__name__)

    def load_config(self) -> SystemConfig:
        """
        Load configuration from file or create default configuration.

        Returns:
            SystemConfig instance

        Raises:
            ConfigurationError: If configuration loading fails
        """
        try:
            if Path(self.config_path).exists():
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    config_data = json.load(f)
                config = self._dict_to_config(config_data)
                self.logger.info(f"Configuration loaded from {self.config_path}")
            else:
                config = SystemConfig()
                self.save_config(config)
                self.logger.info("Default configuration created")
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {str(e)}") from e

        self._validate_config(config)
        self._apply_environment(config)
        self._config = config
        return config

    def save_config(self, config: Optional[SystemConfig] = None) -> None:
        """
        Save configuration to file.

        Args:
            config: Configuration to save (uses current config if None)

        Raises:
            ConfigurationError: If configuration saving fails
        """
        config_to_save = config or self._config
        if not config_to_save:
            raise ConfigurationError("No configuration to save")

        try:
            config_dict = self._config_to_dict(config_to_save)

            Path(self.config_path).parent.mkdir(parents=True, exist_ok=True)

            with open(self.config_path, 'w', encoding='utf-8') as f:
                json.dump(config_dict, f, indent=2, default=str)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration: {str(e)}") from e

        self.logger.info(f"Configuration saved to {self.config_path}")

    def get_config(self) -> SystemConfig:
        """
        Get current configuration, loading if necessary.

        Returns:
            SystemConfig instance
        """
        if self._config is None:
            self._config = self.load_config()
        return self._config

    def update_config(self, updates: Dict[str, Any]) -> SystemConfig:
        """
        Update configuration with new values.

        Args:
            updates: Nested dictionary of configuration updates

        Returns:
            Updated SystemConfig instance

        Raises:
            ConfigurationError: If the updated configuration is invalid
        """
        current_config = self.get_config()
        config_dict = self._config_to_dict(current_config)

        self._deep_update(config_dict, updates)

        updated_config = self._dict_to_config(config_dict)
        self._validate_config(updated_config)
        self._apply_environment(updated_config)

        self._config = updated_config
        self.save_config()

        return updated_config

    def _apply_environment(self, config: SystemConfig) -> None:
        """Fill an empty upstream API key from the environment."""
        if config.upstream_config.api_key:
            return
        for var in API_KEY_ENV_VARS:
            value = os.environ.get(var)
            if value:
                config.upstream_config.api_key = value
                self._api_key_from_env = True
                self.logger.debug(f"Upstream API key taken from {var}")
                return

    def _validate_config(self, config: SystemConfig) -> None:
        """
        Validate configuration settings.

        Args:
            config: Configuration to validate

        Raises:
            ConfigurationError: If validation fails
        """
        classifier = config.classifier_config
        if classifier.min_keyword_score < 0:
            raise ConfigurationError("Minimum keyword score must not be negative",
                                     config_key="classifier_config.min_keyword_score")

        if config.queue_config.worker_count <= 0:
            raise ConfigurationError("Queue worker count must be positive",
                                     config_key="queue_config.worker_count")

        if config.queue_config.max_queue_time_seconds <= 0:
            raise ConfigurationError("Maximum queue time must be positive",
                                     config_key="queue_config.max_queue_time_seconds")

        if config.queue_config.default_max_retries < 0:
            raise ConfigurationError("Default max retries must not be negative",
                                     config_key="queue_config.default_max_retries")

        if config.executor_config.background_workers <= 0:
            raise ConfigurationError("Background worker count must be positive",
                                     config_key="executor_config.background_workers")

        batch = config.batch_config
        if batch.window_ms <= 0:
            raise ConfigurationError("Batch window must be positive",
                                     config_key="batch_config.window_ms")
        if batch.max_size < 1:
            raise ConfigurationError("Batch max size must be at least 1",
                                     config_key="batch_config.max_size")

        if config.upstream_config.timeout_seconds <= 0:
            raise ConfigurationError("Upstream timeout must be positive",
                                     config_key="upstream_config.timeout_seconds")

        if config.default_timeout_seconds <= 0:
            raise ConfigurationError("Default request timeout must be positive",
                                     config_key="default_timeout_seconds")

    def _dict_to_config(self, config_dict: Dict[str, Any]) -> SystemConfig:
        """Convert dictionary to SystemConfig object."""
        sections = {}
        for name, section_cls in _SECTIONS.items():
            try:
                sections[name] = section_cls(**config_dict.get(name, {}))
            except TypeError as e:
                raise ConfigurationError(f"Invalid {name}: {str(e)}", config_key=name) from e

        return SystemConfig(
            **sections,
            debug_mode=config_dict.get('debug_mode', False),
            default_timeout_seconds=config_dict.get('default_timeout_seconds', 30.0),
            metadata=config_dict.get('metadata', {})
        )

    def _config_to_dict(self, config: SystemConfig) -> Dict[str, Any]:
        """Convert SystemConfig object to dictionary."""
        config_dict = {name: dict(getattr(config, name).__dict__) for name in _SECTIONS}
        if self._api_key_from_env:
            config_dict['upstream_config']['api_key'] = ""
        config_dict.update({
            'debug_mode': config.debug_mode,
            'default_timeout_seconds': config.default_timeout_seconds,
            'metadata': config.metadata
        })
        return config_dict

    def _deep_update(self, base_dict: Dict[str, Any], updates: Dict[str, Any]) -> None:
        """Recursively update nested dictionary."""
        for key, value in updates.items():
            if key in base_dict and isinstance(base_dict[key], dict) and isinstance(value, dict):
                self._deep_update(base_dict[key], value)
            else:
                base_dict[key] = value

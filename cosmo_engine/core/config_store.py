"""
Read-only configuration store for intents, action mappings, chains, models and
routing settings.

The engine never mutates configuration. Every read goes through an immutable
ConfigSnapshot, and stores replace the whole snapshot atomically when the
underlying configuration changes, so in-flight executions always see one
consistent version.
"""

import json
import os
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, Any, List, Optional, Tuple, Iterable

from ..models import (
    Intent, ActionMapping, ChainStep, FunctionChain, Model, RoutingConfig,
)
from ..models.enums import ActionType, StepType, OnError, RoutingProfile
from ..utils import get_logger
from ..utils.error_handling import ConfigurationError


@dataclass(frozen=True)
class ConfigSnapshot:
    """One consistent version of the engine configuration."""
    intents: Tuple[Intent, ...] = ()
    action_mappings: Tuple[ActionMapping, ...] = ()
    chains: Tuple[FunctionChain, ...] = ()
    models: Tuple[Model, ...] = ()
    routing_config: RoutingConfig = field(default_factory=RoutingConfig)
    version: int = 0

    def active_intents(self) -> List[Intent]:
        return [intent for intent in self.intents if intent.active]

    def active_action_mappings(self) -> List[ActionMapping]:
        return [mapping for mapping in self.action_mappings if mapping.active]

    def active_chains(self) -> List[FunctionChain]:
        return [chain for chain in self.chains if chain.active]

    def active_models(self) -> List[Model]:
        return [model for model in self.models if model.is_active]

    def get_intent(self, key: str) -> Optional[Intent]:
        for intent in self.intents:
            if intent.key == key:
                return intent
        return None

    def get_chain(self, chain_key: str) -> Optional[FunctionChain]:
        for chain in self.chains:
            if chain.chain_key == chain_key:
                return chain
        return None

    def get_model(self, model_id: str) -> Optional[Model]:
        for model in self.models:
            if model.model_id == model_id:
                return model
        return None


def validate_snapshot(snapshot: ConfigSnapshot) -> None:
    """
    Validate referential integrity of a snapshot before it is published.

    Raises:
        ConfigurationError: On duplicate keys, out-of-range values, dangling
            references, empty active chains or cyclic fallback chains
    """
    _check_unique((intent.key for intent in snapshot.intents), "intent key")
    _check_unique((chain.chain_key for chain in snapshot.chains), "chain key")
    _check_unique((model.model_id for model in snapshot.models), "model id")

    for intent in snapshot.intents:
        if not 0 <= intent.priority <= 100:
            raise ConfigurationError(f"Intent {intent.key} priority must be 0-100",
                                     config_key=intent.key)

    intent_keys = {intent.key for intent in snapshot.intents}
    chain_keys = {chain.chain_key for chain in snapshot.chains}
    model_ids = {model.model_id for model in snapshot.models}

    for mapping in snapshot.action_mappings:
        if mapping.intent_key not in intent_keys:
            raise ConfigurationError(
                f"Action mapping {mapping.action_key} references unknown intent {mapping.intent_key}",
                config_key=mapping.action_key
            )
        if mapping.action_type == ActionType.CHAIN:
            chain_key = mapping.action_config.get("chain_key", mapping.action_key)
            if chain_key not in chain_keys:
                raise ConfigurationError(
                    f"Action mapping {mapping.action_key} references unknown chain {chain_key}",
                    config_key=mapping.action_key
                )

    for chain in snapshot.chains:
        if chain.active and not chain.steps:
            raise ConfigurationError(f"Active chain {chain.chain_key} has no steps",
                                     config_key=chain.chain_key)
        _check_unique((step.step_key for step in chain.steps),
                      f"step key in chain {chain.chain_key}")
        if chain.fallback_chain_id is not None and chain.fallback_chain_id not in chain_keys:
            raise ConfigurationError(
                f"Chain {chain.chain_key} falls back to unknown chain {chain.fallback_chain_id}",
                config_key=chain.chain_key
            )

    _check_fallback_acyclic(snapshot.chains)

    routing = snapshot.routing_config
    if not 0 <= routing.cost_performance_weight <= 100:
        raise ConfigurationError("cost_performance_weight must be 0-100",
                                 config_key="cost_performance_weight")
    for name in ("default_model_id", "fallback_model_id"):
        model_id = getattr(routing, name)
        if model_id is not None and model_id not in model_ids:
            raise ConfigurationError(f"Routing {name} references unknown model {model_id}",
                                     config_key=name)


def _check_unique(keys: Iterable[str], label: str) -> None:
    seen = set()
    for key in keys:
        if key in seen:
            raise ConfigurationError(f"Duplicate {label}: {key}", config_key=key)
        seen.add(key)


def _check_fallback_acyclic(chains: Iterable[FunctionChain]) -> None:
    """Walk every fallback path; revisiting a chain on the same path is a cycle."""
    fallback_of = {chain.chain_key: chain.fallback_chain_id for chain in chains}
    for start in fallback_of:
        path = [start]
        current = fallback_of.get(start)
        while current is not None:
            if current in path:
                cycle = " -> ".join(path + [current])
                raise ConfigurationError(f"Cyclic fallback chain: {cycle}", config_key=start)
            path.append(current)
            current = fallback_of.get(current)


class ConfigStore:
    """
    Read-only configuration interface consumed by the engine.

    Subclasses implement ``snapshot()``; the accessors below read from one
    snapshot each.
    """

    def snapshot(self) -> ConfigSnapshot:
        raise NotImplementedError

    def get_active_intents(self) -> List[Intent]:
        return self.snapshot().active_intents()

    def get_active_action_mappings(self) -> List[ActionMapping]:
        return self.snapshot().active_action_mappings()

    def get_active_chains(self) -> List[FunctionChain]:
        return self.snapshot().active_chains()

    def get_active_models(self) -> List[Model]:
        return self.snapshot().active_models()

    def get_routing_config(self) -> RoutingConfig:
        return self.snapshot().routing_config


class InMemoryConfigStore(ConfigStore):
    """Configuration held in memory, replaced through ``update``."""

    def __init__(self, intents: Iterable[Intent] = (), action_mappings: Iterable[ActionMapping] = (),
                 chains: Iterable[FunctionChain] = (), models: Iterable[Model] = (),
                 routing_config: Optional[RoutingConfig] = None):
        self.logger = get_logger(__name__)
        self._lock = threading.Lock()

        snapshot = ConfigSnapshot(
            intents=tuple(intents),
            action_mappings=tuple(action_mappings),
            chains=tuple(chains),
            models=tuple(models),
            routing_config=routing_config or RoutingConfig(),
            version=1,
        )
        validate_snapshot(snapshot)
        self._snapshot = snapshot

    def snapshot(self) -> ConfigSnapshot:
        return self._snapshot

    def update(self, intents: Optional[Iterable[Intent]] = None,
               action_mappings: Optional[Iterable[ActionMapping]] = None,
               chains: Optional[Iterable[FunctionChain]] = None,
               models: Optional[Iterable[Model]] = None,
               routing_config: Optional[RoutingConfig] = None) -> ConfigSnapshot:
        """
        Replace parts of the configuration and publish a new snapshot.

        Raises:
            ConfigurationError: If the resulting configuration is invalid; the
                current snapshot stays in place
        """
        with self._lock:
            changes: Dict[str, Any] = {}
            if intents is not None:
                changes["intents"] = tuple(intents)
            if action_mappings is not None:
                changes["action_mappings"] = tuple(action_mappings)
            if chains is not None:
                changes["chains"] = tuple(chains)
            if models is not None:
                changes["models"] = tuple(models)
            if routing_config is not None:
                changes["routing_config"] = routing_config

            candidate = replace(self._snapshot, version=self._snapshot.version + 1, **changes)
            validate_snapshot(candidate)
            self._snapshot = candidate

        self.logger.info(f"Configuration updated to version {candidate.version}")
        return candidate


class JsonConfigStore(ConfigStore):
    """
    Configuration read from a JSON file and reloaded when the file changes.

    The file's modification time is polled at most once per
    ``poll_interval_seconds``; ``invalidate()`` forces a re-read on the next
    access. A file that fails to parse or validate is logged and ignored, and
    the previous snapshot stays active.
    """

    def __init__(self, path: str, poll_interval_seconds: float = 1.0):
        self.path = path
        self.poll_interval_seconds = poll_interval_seconds
        self.logger = get_logger(__name__)
        self._lock = threading.Lock()
        self._mtime: Optional[float] = None
        self._last_check = 0.0
        self._version = 0

        # Initial load must succeed
        self._snapshot = self._load()

    def snapshot(self) -> ConfigSnapshot:
        now = time.monotonic()
        if now - self._last_check >= self.poll_interval_seconds:
            self._maybe_reload(now)
        return self._snapshot

    def invalidate(self) -> None:
        """Force a reload on the next read."""
        with self._lock:
            self._mtime = None
            self._last_check = 0.0

    def _maybe_reload(self, now: float) -> None:
        with self._lock:
            self._last_check = now
            try:
                mtime = os.path.getmtime(self.path)
            except OSError as e:
                self.logger.error(f"Cannot stat configuration file {self.path}: {str(e)}")
                return
            if mtime == self._mtime:
                return
            try:
                self._snapshot = self._load()
            except ConfigurationError as e:
                self.logger.error(f"Configuration reload failed, keeping version "
                                  f"{self._snapshot.version}: {e.message}")
                self._mtime = mtime

    def _load(self) -> ConfigSnapshot:
        try:
            mtime = os.path.getmtime(self.path)
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Failed to read configuration {self.path}: {str(e)}") from e

        self._version += 1
        snapshot = snapshot_from_dict(data, version=self._version)
        validate_snapshot(snapshot)
        self._mtime = mtime
        self.logger.info(f"Configuration loaded from {self.path} (version {snapshot.version})")
        return snapshot


# ============= JSON conversion =============

def snapshot_from_dict(data: Dict[str, Any], version: int = 1) -> ConfigSnapshot:
    """
    Build a snapshot from plain JSON-like data.

    Raises:
        ConfigurationError: If a record is malformed
    """
    try:
        return ConfigSnapshot(
            intents=tuple(intent_from_dict(item) for item in data.get("intents", [])),
            action_mappings=tuple(
                action_mapping_from_dict(item) for item in data.get("action_mappings", [])
            ),
            chains=tuple(chain_from_dict(item) for item in data.get("chains", [])),
            models=tuple(model_from_dict(item) for item in data.get("models", [])),
            routing_config=routing_config_from_dict(data.get("routing_config", {})),
            version=version,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Malformed configuration record: {str(e)}") from e


def _created_at(item: Dict[str, Any]) -> Dict[str, Any]:
    value = item.get("created_at")
    if value is None:
        return {}
    if isinstance(value, datetime):
        return {"created_at": value}
    return {"created_at": datetime.fromisoformat(value)}


def intent_from_dict(item: Dict[str, Any]) -> Intent:
    return Intent(
        key=item["key"],
        display_name=item.get("display_name", item["key"]),
        category=item.get("category", item["key"]),
        keywords=tuple(item.get("keywords", ())),
        priority=int(item.get("priority", 50)),
        required_functions=tuple(item.get("required_functions", ())),
        preferred_models=tuple(item.get("preferred_models", ())),
        context_needs=tuple(item.get("context_needs", ())),
        active=bool(item.get("active", True)),
        **_created_at(item),
    )


def action_mapping_from_dict(item: Dict[str, Any]) -> ActionMapping:
    return ActionMapping(
        intent_key=item["intent_key"],
        action_key=item["action_key"],
        action_type=ActionType(item["action_type"]),
        action_config=dict(item.get("action_config", {})),
        parameter_patterns=dict(item.get("parameter_patterns", {})),
        required_context=tuple(item.get("required_context", ())),
        conditions=dict(item.get("conditions") or {}),
        priority=int(item.get("priority", 50)),
        active=bool(item.get("active", True)),
        **_created_at(item),
    )


def chain_step_from_dict(item: Dict[str, Any]) -> ChainStep:
    return ChainStep(
        step_key=item["step_key"],
        function_key=item["function_key"],
        step_type=StepType(item.get("step_type", StepType.FUNCTION.value)),
        required=bool(item.get("required", True)),
        wait_for_result=bool(item.get("wait_for_result", True)),
        on_error=OnError(item.get("on_error", OnError.FAIL.value)),
        max_retries=item.get("max_retries"),
        config=dict(item.get("config", {})),
    )


def chain_from_dict(item: Dict[str, Any]) -> FunctionChain:
    return FunctionChain(
        chain_key=item["chain_key"],
        display_name=item.get("display_name", item["chain_key"]),
        steps=tuple(chain_step_from_dict(step) for step in item.get("steps", [])),
        trigger_intents=tuple(item.get("trigger_intents", ())),
        fallback_chain_id=item.get("fallback_chain_id"),
        active=bool(item.get("active", True)),
        **_created_at(item),
    )


def model_from_dict(item: Dict[str, Any]) -> Model:
    return Model(
        model_id=item["model_id"],
        provider=item.get("provider", ""),
        best_for=item.get("best_for", "general"),
        context_length=int(item.get("context_length", 8192)),
        max_completion_tokens=int(item.get("max_completion_tokens", 4096)),
        pricing_prompt=float(item.get("pricing_prompt", 0.0)),
        pricing_completion=float(item.get("pricing_completion", 0.0)),
        rate_limit_rpm=item.get("rate_limit_rpm"),
        rate_limit_tpm=item.get("rate_limit_tpm"),
        is_active=bool(item.get("is_active", True)),
        is_default=bool(item.get("is_default", False)),
        quality_tier=int(item.get("quality_tier", 1)),
        avg_latency_ms=item.get("avg_latency_ms"),
    )


def routing_config_from_dict(item: Dict[str, Any]) -> RoutingConfig:
    return RoutingConfig(
        default_model_id=item.get("default_model_id"),
        fallback_model_id=item.get("fallback_model_id"),
        routing_profile=RoutingProfile(item.get("routing_profile", RoutingProfile.BALANCED.value)),
        cost_performance_weight=int(item.get("cost_performance_weight", 50)),
        flags=dict(item.get("flags", {})),
    )

"""
Tests for configuration snapshots, validation and hot reload.
"""

import json
import os

import pytest

from cosmo_engine.core import InMemoryConfigStore, JsonConfigStore
from cosmo_engine.models import (
    ActionMapping, ActionType, ChainStep, FunctionChain, Intent, Model, OnError, RoutingConfig,
)
from cosmo_engine.utils import ConfigurationError


def _chain(key, fallback=None, steps=None):
    return FunctionChain(
        chain_key=key,
        display_name=key,
        steps=steps if steps is not None else (ChainStep(step_key="s1", function_key="f1"),),
        fallback_chain_id=fallback,
    )


def test_snapshot_accessors(store):
    snapshot = store.snapshot()

    assert snapshot.version == 1
    assert {intent.key for intent in store.get_active_intents()} == {
        "code_review", "greeting", "summarize", "conversation"
    }
    assert snapshot.get_chain("summarize_chain").steps[0].step_key == "clean"
    assert snapshot.get_model("premium").best_for == "coding"
    assert store.get_routing_config().default_model_id == "cheap"


def test_update_swaps_snapshot_atomically(store, models):
    before = store.snapshot()
    after = store.update(models=[m for m in models if m.model_id == "cheap"])

    assert after.version == before.version + 1
    assert before.get_model("premium") is not None
    assert after.get_model("premium") is None
    assert store.snapshot() is after


def test_invalid_update_keeps_current_snapshot(store):
    before = store.snapshot()

    with pytest.raises(ConfigurationError):
        store.update(routing_config=RoutingConfig(default_model_id="missing"))

    assert store.snapshot() is before


def test_cyclic_fallback_chains_rejected():
    with pytest.raises(ConfigurationError) as exc_info:
        InMemoryConfigStore(chains=[_chain("a", "b"), _chain("b", "c"), _chain("c", "a")])
    assert "Cyclic" in exc_info.value.message


def test_self_fallback_rejected():
    with pytest.raises(ConfigurationError):
        InMemoryConfigStore(chains=[_chain("a", "a")])


@pytest.mark.parametrize("kwargs", [
    {"intents": [Intent(key="x", display_name="X", category="c"),
                 Intent(key="x", display_name="X2", category="c")]},
    {"intents": [Intent(key="x", display_name="X", category="c", priority=101)]},
    {"action_mappings": [ActionMapping(intent_key="nobody", action_key="a",
                                       action_type=ActionType.FUNCTION)]},
    {"chains": [_chain("empty", steps=())]},
    {"chains": [_chain("dup", steps=(ChainStep(step_key="s", function_key="f"),
                                     ChainStep(step_key="s", function_key="g")))]},
    {"chains": [_chain("a", "ghost")]},
    {"routing_config": RoutingConfig(cost_performance_weight=150)},
])
def test_validation_errors(kwargs):
    with pytest.raises(ConfigurationError):
        InMemoryConfigStore(**kwargs)


def test_chain_mapping_must_reference_a_chain():
    intent = Intent(key="x", display_name="X", category="c")
    with pytest.raises(ConfigurationError):
        InMemoryConfigStore(
            intents=[intent],
            action_mappings=[ActionMapping(intent_key="x", action_key="missing_chain",
                                           action_type=ActionType.CHAIN)],
        )


def _write(path, data):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f)


def _config_data(default_model="cheap"):
    return {
        "intents": [{"key": "chat", "display_name": "Chat", "category": "conversation",
                     "keywords": ["chat"], "priority": 40}],
        "action_mappings": [{"intent_key": "chat", "action_key": "chat", "action_type": "model_call",
                             "conditions": {"eq": ["tier", "pro"]}}],
        "chains": [{"chain_key": "c", "display_name": "C",
                    "steps": [{"step_key": "s", "function_key": "f", "on_error": "retry",
                               "max_retries": 2}]}],
        "models": [{"model_id": "cheap", "provider": "openai", "best_for": "conversation",
                    "pricing_prompt": 0.5},
                   {"model_id": "other", "provider": "openai", "best_for": "conversation"}],
        "routing_config": {"default_model_id": default_model, "routing_profile": "cost_optimized",
                           "cost_performance_weight": 20},
    }


def test_json_store_loads_and_reloads(tmp_path):
    path = tmp_path / "cosmo.json"
    _write(path, _config_data())
    store = JsonConfigStore(str(path), poll_interval_seconds=0)

    snapshot = store.snapshot()
    assert snapshot.intents[0].keywords == ("chat",)
    assert snapshot.action_mappings[0].action_type == ActionType.MODEL_CALL
    assert snapshot.chains[0].steps[0].on_error == OnError.RETRY
    assert snapshot.routing_config.default_model_id == "cheap"

    _write(path, _config_data(default_model="other"))
    os.utime(path, (os.path.getmtime(path) + 5, os.path.getmtime(path) + 5))
    store.invalidate()

    assert store.snapshot().routing_config.default_model_id == "other"
    assert store.snapshot().version > snapshot.version


def test_json_store_keeps_old_snapshot_on_bad_reload(tmp_path):
    path = tmp_path / "cosmo.json"
    _write(path, _config_data())
    store = JsonConfigStore(str(path), poll_interval_seconds=0)
    good = store.snapshot()

    _write(path, _config_data(default_model="unknown-model"))
    os.utime(path, (os.path.getmtime(path) + 5, os.path.getmtime(path) + 5))
    store.invalidate()

    assert store.snapshot() is good


def test_json_store_requires_readable_file(tmp_path):
    with pytest.raises(ConfigurationError):
        JsonConfigStore(str(tmp_path / "missing.json"))


def test_model_pricing_estimate():
    model = Model(model_id="m", provider="p", best_for="c", pricing_prompt=2.0, pricing_completion=6.0)
    assert model.estimate_cost(1_000_000, 500_000) == pytest.approx(5.0)

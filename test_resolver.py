"""
Tests for action resolution and parameter extraction.
"""

from datetime import datetime, timedelta

import pytest

from cosmo_engine.core import ActionResolver
from cosmo_engine.models import ActionMapping, ActionType
from cosmo_engine.utils import ConfigurationError


def _mapping(action_key, priority=50, **kwargs):
    kwargs.setdefault("intent_key", "support")
    kwargs.setdefault("action_type", ActionType.FUNCTION)
    return ActionMapping(action_key=action_key, priority=priority, **kwargs)


def test_missing_required_context_resolves_to_nothing():
    mapping = _mapping("kb_lookup", required_context=("knowledge_base",))

    assert ActionResolver().resolve("support", [mapping], {"history": []}) is None


def test_selected_mapping_context_is_always_satisfied():
    mappings = [
        _mapping("kb_lookup", priority=90, required_context=("knowledge_base",)),
        _mapping("history_reply", priority=70, required_context=("history",)),
        _mapping("generic", priority=10),
    ]
    resolver = ActionResolver()

    for context in ({}, {"history": []}, {"knowledge_base": "kb"}, {"history": [], "knowledge_base": "kb"}):
        selected = resolver.resolve("support", mappings, context)
        assert set(selected.required_context) <= set(context)

    assert resolver.resolve("support", mappings, {"history": []}).action_key == "history_reply"
    assert resolver.resolve("support", mappings, {}).action_key == "generic"


def test_highest_priority_wins_and_ties_go_to_earliest_created():
    now = datetime.now()
    mappings = [
        _mapping("newer", priority=60, created_at=now),
        _mapping("older", priority=60, created_at=now - timedelta(hours=1)),
        _mapping("low", priority=20),
    ]

    assert ActionResolver().resolve("support", mappings).action_key == "older"


def test_inactive_and_foreign_mappings_are_ignored():
    mappings = [
        _mapping("disabled", priority=99, active=False),
        _mapping("other_intent", priority=98, intent_key="billing"),
        _mapping("enabled", priority=1),
    ]

    assert ActionResolver().resolve("support", mappings).action_key == "enabled"


def test_conditions_filter_candidates():
    mappings = [
        _mapping("pro_support", priority=80, conditions={"eq": ["tier", "pro"]}),
        _mapping("refunds", priority=70, conditions={"contains": ["input", "refund"]}),
        _mapping("confident", priority=60, conditions={"min_confidence": 0.9}),
        _mapping("default", priority=10),
    ]
    resolver = ActionResolver()

    assert resolver.resolve("support", mappings, {"tier": "pro"}, "hi").action_key == "pro_support"
    assert resolver.resolve("support", mappings, {"tier": "free"}, "I need a refund").action_key == "refunds"
    assert resolver.resolve("support", mappings, {}, "hi", confidence=0.95).action_key == "confident"
    assert resolver.resolve("support", mappings, {}, "hi", confidence=0.5).action_key == "default"


def test_resolve_all_orders_every_eligible_mapping():
    mappings = [_mapping("a", priority=10), _mapping("b", priority=30), _mapping("c", priority=20)]

    ordered = ActionResolver().resolve_all("support", mappings)

    assert [m.action_key for m in ordered] == ["b", "c", "a"]


def test_extract_parameters():
    mapping = _mapping("weather", parameter_patterns={
        "city": r"weather in (\w+)",
        "units": {"pattern": r"in (celsius|fahrenheit)", "default": "celsius"},
        "days": r"\d+",
    })

    parameters = ActionResolver().extract_parameters(mapping, "Weather in Paris for 3 days")

    assert parameters == {"city": "Paris", "units": "celsius", "days": "3"}


def test_extract_parameters_rejects_bad_patterns():
    mapping = _mapping("broken", parameter_patterns={"x": "(unclosed"})

    with pytest.raises(ConfigurationError):
        ActionResolver().extract_parameters(mapping, "anything")

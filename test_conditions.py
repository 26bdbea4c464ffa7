"""
Tests for condition parsing and evaluation.
"""

import pytest

from cosmo_engine.models.conditions import And, Always, Compare, Eq, Not, evaluate, parse_condition
from cosmo_engine.utils import ConfigurationError


def test_empty_condition_always_holds():
    assert parse_condition({}) == Always()
    assert parse_condition(None) == Always()
    assert evaluate(parse_condition({}), {})


def test_eq_in_and_comparisons():
    scope = {"tier": "pro", "lang": "py", "score": 4, "user": {"plan": "team"}}

    assert evaluate(parse_condition({"eq": ["tier", "pro"]}), scope)
    assert not evaluate(parse_condition({"eq": ["tier", "free"]}), scope)
    assert evaluate(parse_condition({"in": ["lang", ["py", "go"]]}), scope)
    assert evaluate(parse_condition({"gt": ["score", 3]}), scope)
    assert evaluate(parse_condition({"lte": ["score", 4]}), scope)
    assert not evaluate(parse_condition({"lt": {"field": "score", "value": 4}}), scope)
    assert evaluate(parse_condition({"eq": ["user.plan", "team"]}), scope)


def test_missing_fields_never_match():
    assert not evaluate(parse_condition({"eq": ["tier", None]}), {})
    assert not evaluate(parse_condition({"gt": ["score", 0]}), {"score": "high"})
    assert evaluate(parse_condition({"not": {"exists": "tier"}}), {})


def test_boolean_composition():
    condition = parse_condition({
        "or": [
            {"and": [{"eq": ["tier", "pro"]}, {"gte": ["score", 5]}]},
            {"contains": ["input", "urgent"]},
        ]
    })

    assert evaluate(condition, {"tier": "pro", "score": 5})
    assert evaluate(condition, {"input": "This is URGENT"})
    assert not evaluate(condition, {"tier": "pro", "score": 2, "input": "later"})


def test_multiple_keys_are_a_conjunction():
    condition = parse_condition({"eq": ["tier", "pro"], "exists": "workspace"})

    assert isinstance(condition, And)
    assert evaluate(condition, {"tier": "pro", "workspace": "w1"})
    assert not evaluate(condition, {"tier": "pro"})


def test_legacy_keys():
    keyword = parse_condition({"contains_keyword": ["refund", "chargeback"]})
    assert evaluate(keyword, {"input": "I want a refund"})
    assert not evaluate(keyword, {"input": "hello"})

    required = parse_condition({"requires_context": "history"})
    assert evaluate(required, {"history": []})
    assert not evaluate(required, {})

    confidence = parse_condition({"min_confidence": 0.7})
    assert evaluate(confidence, {"confidence": 0.9})
    assert not evaluate(confidence, {"confidence": 0.5})
    assert evaluate(confidence, {})


def test_parsed_nodes():
    assert parse_condition({"gt": ["score", 3]}) == Compare("score", "gt", 3.0)
    assert parse_condition({"not": {"eq": ["a", 1]}}) == Not(Eq("a", 1))


@pytest.mark.parametrize("raw", [
    {"matches": ["input", ".*"]},
    {"gt": ["score", "three"]},
    {"in": ["lang", "py"]},
    {"and": {"eq": ["a", 1]}},
    {"eq": ["only-field"]},
    ["eq", "a", 1],
])
def test_invalid_conditions_raise(raw):
    with pytest.raises(ConfigurationError):
        parse_condition(raw)

"""
Tests for planning, dry runs and replay.
"""

from dataclasses import replace

import pytest

from cosmo_engine.core import CosmoEngine
from cosmo_engine.models import ActionType, Preferences, StepType
from cosmo_engine.utils import ConfigurationError, RequestNotFoundError


def test_dry_run_plans_a_chain_without_upstream_calls(engine, fake_client):
    response = engine.dry_run("summarize the release notes")

    plan = response.plan
    assert response.status == "planned"
    assert plan.intent_key == "summarize"
    assert plan.action_type == ActionType.CHAIN
    assert plan.chain_key == "summarize_chain"
    assert [step.step_key for step in plan.steps] == ["clean", "summary"]
    assert all(step.available for step in plan.steps)
    assert plan.steps[1].step_type == StepType.MODEL_CALL
    assert plan.steps[1].model_id == plan.model_id
    assert plan.estimated_cost_usd > 0
    assert fake_client.calls == []


def test_dry_run_for_function_action_has_no_model(engine):
    plan = engine.dry_run("hello, my name is Ada").plan

    assert plan.action_type == ActionType.FUNCTION
    assert plan.parameters == {"name": "Ada"}
    assert plan.model_id is None
    assert plan.estimated_cost_usd == 0


def test_dry_run_token_estimates(engine, engine_config):
    plan = engine.dry_run("chat " * 40, Preferences(expected_completion_tokens=200)).plan

    overhead = engine_config.cost_config.step_overhead_tokens
    assert plan.estimated_prompt_tokens == 50 + overhead
    assert plan.estimated_completion_tokens == 200


def test_dry_run_reports_configuration_errors(engine, store, models):
    store.update(models=[replace(m, is_active=False) for m in models])

    response = engine.dry_run("review this function")

    assert response.status == "failed"
    assert "No model available" in response.error


def test_validate_only_detects_configuration_drift(engine, store, models):
    executed = engine.execute("review this function")
    assert executed.plan.model_id == "premium"

    unchanged = engine.replay(executed.request_id, "validate_only")
    assert unchanged.status == "validated"
    assert not unchanged.changed

    store.update(models=[m if m.model_id != "premium" else replace(m, is_active=False) for m in models])
    drifted = engine.replay(executed.request_id, "validate_only")

    assert drifted.changed
    assert drifted.differences["model_id"] == ("premium", "cheap")
    assert drifted.original_result == executed.result


def test_validate_only_without_an_original_decision(store, engine_config, fake_client):
    engine = CosmoEngine(store, engine_config, model_client=fake_client, autostart=False)
    try:
        queued = engine.execute("review this function", Preferences(timeout_seconds=0))
        validated = engine.replay(queued.request_id, "validate_only")
    finally:
        engine.shutdown()

    assert queued.status == "queued"
    assert validated.status == "no_original_decision"
    assert not validated.changed
    assert validated.differences == {}
    assert validated.plan.model_id == "premium"
    assert fake_client.calls == []


def test_replay_execute_runs_the_pipeline_again(engine, fake_client):
    executed = engine.execute("let's chat")
    calls_before = len(fake_client.calls)

    replayed = engine.replay(executed.request_id, "replay_execute")

    assert replayed.status == "completed"
    assert replayed.result == executed.result
    assert replayed.costs.request_id != executed.request_id
    assert len(fake_client.calls) == calls_before + 1


def test_replay_errors(engine):
    with pytest.raises(RequestNotFoundError):
        engine.replay("unknown", "validate_only")

    executed = engine.execute("let's chat")
    with pytest.raises(ConfigurationError):
        engine.replay(executed.request_id, "rewind")

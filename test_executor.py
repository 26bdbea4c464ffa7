"""
Tests for function chain execution.
"""

import threading
import time

import pytest

from cosmo_engine.core import CancellationToken, FunctionChainExecutor, FunctionRegistry
from cosmo_engine.core.executor import ChainExecution
from cosmo_engine.models import (
    ChainStatus, ChainStep, ExecutorConfig, FunctionChain, OnError, StepStatus, StepType,
)
from cosmo_engine.utils import InvalidTransitionError, TransientUpstreamError


def _chain(*steps, key="chain", fallback=None):
    return FunctionChain(chain_key=key, display_name=key, steps=tuple(steps), fallback_chain_id=fallback)


def _step(key, function_key=None, **kwargs):
    return ChainStep(step_key=key, function_key=function_key or key, **kwargs)


@pytest.fixture
def calls():
    return []


@pytest.fixture
def executor(calls):
    registry = FunctionRegistry()

    @registry.register("ok")
    def ok(data, config):
        calls.append("ok")
        return "ok"

    @registry.register("boom")
    def boom(data, config):
        calls.append("boom")
        raise RuntimeError("boom")

    @registry.register("after")
    def after(data, config):
        calls.append("after")
        return "after"

    config = ExecutorConfig(step_backoff_base_seconds=0.001, step_backoff_max_seconds=0.01)
    executor = FunctionChainExecutor(registry, config)
    yield executor
    executor.shutdown()


def test_fail_policy_stops_the_chain(executor, calls):
    chain = _chain(_step("s1", "ok"), _step("s2", "boom"), _step("s3", "after"))

    result = executor.execute(chain)

    assert result.status == ChainStatus.FAILED
    assert calls == ["ok", "boom"]
    assert [r.status for r in result.steps] == [StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED]
    assert "s2" in result.error


def test_continue_policy_runs_remaining_steps(executor, calls):
    chain = _chain(_step("s1", "boom", on_error=OnError.CONTINUE), _step("s2", "after"))

    result = executor.execute(chain)

    assert result.status == ChainStatus.COMPLETED
    assert calls == ["boom", "after"]
    assert result.step("s1").status == StepStatus.FAILED
    assert result.step("s1").error == "boom"
    assert result.output == "after"


def test_retry_policy_records_retries(executor):
    attempts = []

    def flaky(data, config):
        attempts.append(1)
        if len(attempts) < 3:
            raise TransientUpstreamError("try again")
        return "done"

    executor.registry.register("flaky", flaky)
    chain = _chain(_step("s1", "ok"),
                   _step("s2", "flaky", on_error=OnError.RETRY, max_retries=2),
                   _step("s3", "after"))

    result = executor.execute(chain)

    assert result.status == ChainStatus.COMPLETED
    assert result.step("s2").retries == 2
    assert result.step("s2").attempts == 3
    assert result.outputs == {"s1": "ok", "s2": "done", "s3": "after"}


def test_retry_exhaustion_fails(executor, calls):
    chain = _chain(_step("s1", "boom", on_error=OnError.RETRY, max_retries=1), _step("s2", "after"))

    result = executor.execute(chain)

    assert result.status == ChainStatus.FAILED
    assert result.step("s1").retries == 1
    assert calls == ["boom", "boom"]


def test_optional_unavailable_step_is_skipped(executor):
    chain = _chain(_step("maybe", "not_registered", required=False), _step("s2", "ok"))

    result = executor.execute(chain)

    assert result.status == ChainStatus.COMPLETED
    assert result.step("maybe").status == StepStatus.SKIPPED


def test_required_unavailable_step_fails(executor, calls):
    chain = _chain(_step("needed", "not_registered"), _step("s2", "ok"))

    result = executor.execute(chain)

    assert result.status == ChainStatus.FAILED
    assert calls == []


def test_fallback_runs_once(executor, calls):
    fallback = _chain(_step("f1", "ok"), key="fallback", fallback="primary")
    primary = _chain(_step("p1", "boom"), key="primary", fallback="fallback")
    chains = {"primary": primary, "fallback": fallback}

    result = executor.execute(primary, chain_lookup=chains.get)

    assert result.fallback_used
    assert result.status == ChainStatus.COMPLETED
    assert result.fallback_result.chain_key == "fallback"
    assert result.output == "ok"
    assert calls == ["boom", "ok"]


def test_fallback_is_not_followed_further(executor, calls):
    second = _chain(_step("x", "ok"), key="second")
    first = _chain(_step("y", "boom"), key="first", fallback="second")
    primary = _chain(_step("z", "boom"), key="primary", fallback="first")
    chains = {"primary": primary, "first": first, "second": second}

    result = executor.execute(primary, chain_lookup=chains.get)

    assert result.status == ChainStatus.FAILED
    assert result.fallback_result.chain_key == "first"
    assert calls == ["boom", "boom"]


def test_cancellation_at_step_boundary(executor):
    token = CancellationToken()

    def cancel_after(data, config):
        token.cancel()
        return "first"

    executor.registry.register("cancel_after", cancel_after)
    chain = _chain(_step("s1", "cancel_after"), _step("s2", "ok"))

    result = executor.execute(chain, cancel_token=token)

    assert result.status == ChainStatus.CANCELLED
    assert result.step("s1").status == StepStatus.COMPLETED
    assert result.step("s2").status == StepStatus.CANCELLED


def test_background_steps_are_joined(executor):
    released = threading.Event()

    def slow(data, config):
        released.wait(1.0)
        time.sleep(0.01)
        return "slow"

    executor.registry.register("slow", slow)
    executor.registry.register("release", lambda data, config: released.set() or "released")
    chain = _chain(_step("bg", "slow", wait_for_result=False), _step("fg", "release"))

    result = executor.execute(chain)

    assert result.status == ChainStatus.COMPLETED
    assert result.step("bg").background
    assert result.outputs["bg"] == "slow"


def test_failed_background_step_fails_chain(executor):
    chain = _chain(_step("bg", "boom", wait_for_result=False), _step("fg", "ok"))

    result = executor.execute(chain)

    assert result.status == ChainStatus.FAILED
    assert result.step("fg").status == StepStatus.COMPLETED


def test_transform_and_validation_steps(executor):
    executor.registry.register("upper", lambda data, config: {"input": data["input"].upper()})
    executor.registry.register("has_input", lambda data, config: bool(data.get("input")))
    chain = _chain(_step("t", "upper", step_type=StepType.TRANSFORM),
                   _step("v", "has_input", step_type=StepType.VALIDATION))

    assert executor.execute(chain, {"input": "abc"}).status == ChainStatus.COMPLETED

    rejected = executor.execute(chain, {"input": ""})
    assert rejected.status == ChainStatus.FAILED
    assert rejected.step("v").status == StepStatus.FAILED


def test_model_steps_use_the_invoker(executor):
    seen = []

    def invoker(step, data):
        seen.append((step.step_key, data["input"]))
        return "model output"

    chain = _chain(_step("m", "model", step_type=StepType.MODEL_CALL))

    result = executor.execute(chain, {"input": "question"}, model_invoker=invoker)

    assert result.output == "model output"
    assert seen == [("m", "question")]


def test_model_step_without_invoker_is_unavailable(executor):
    chain = _chain(_step("m", "model", step_type=StepType.MODEL_CALL))

    assert executor.execute(chain).status == ChainStatus.FAILED


def test_illegal_transition():
    execution = ChainExecution("c")
    execution.transition(ChainStatus.RUNNING)
    execution.transition(ChainStatus.COMPLETED)

    with pytest.raises(InvalidTransitionError):
        execution.transition(ChainStatus.RUNNING)

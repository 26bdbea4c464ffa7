"""
Function Chain Executor: runs ordered steps with per-step error policies.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Any, Callable

from ..models import ChainStep, FunctionChain, StepRecord, ChainExecutionResult
from ..models.config import ExecutorConfig
from ..models.enums import ChainStatus, StepStatus, StepType, OnError
from ..utils import get_logger, ExecutionLogger
from ..utils.error_handling import (
    InvalidTransitionError, RequestCancelledError, ResourceUnavailableError,
    StepValidationError, handle_error, compute_backoff_delay,
)

StepFunction = Callable[[Dict[str, Any], Dict[str, Any]], Any]
ModelInvoker = Callable[[ChainStep, Dict[str, Any]], Any]


class CancellationToken:
    """Cooperative cancellation flag checked at step boundaries."""

    def __init__(self, event: Optional[threading.Event] = None):
        self._event = event or threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout; returns True if cancellation arrived meanwhile."""
        return self._event.wait(timeout)


class FunctionRegistry:
    """
    Registry of callables available to chain steps.

    A step function receives the chain's working data and the step's config
    and returns the step output.
    """

    def __init__(self):
        self._functions: Dict[str, StepFunction] = {}
        self._lock = threading.Lock()

    def register(self, function_key: str, func: Optional[StepFunction] = None):
        """Register a function; usable as a decorator when func is omitted."""
        def decorator(f: StepFunction) -> StepFunction:
            with self._lock:
                self._functions[function_key] = f
            return f

        if func is not None:
            return decorator(func)
        return decorator

    def unregister(self, function_key: str) -> None:
        with self._lock:
            self._functions.pop(function_key, None)

    def get(self, function_key: str) -> Optional[StepFunction]:
        return self._functions.get(function_key)

    def is_available(self, function_key: str) -> bool:
        return function_key in self._functions

    def keys(self) -> List[str]:
        return sorted(self._functions)


_CHAIN_TRANSITIONS = {
    ChainStatus.PENDING: {ChainStatus.RUNNING, ChainStatus.CANCELLED},
    ChainStatus.RUNNING: {ChainStatus.COMPLETED, ChainStatus.FAILED, ChainStatus.CANCELLED},
}


class ChainExecution:
    """Lifecycle of one chain run: pending -> running -> completed/failed/cancelled."""

    def __init__(self, chain_key: str):
        self.chain_key = chain_key
        self.status = ChainStatus.PENDING

    def transition(self, new_status: ChainStatus) -> None:
        allowed = _CHAIN_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise InvalidTransitionError(
                f"Chain {self.chain_key} cannot move from {self.status.value} to {new_status.value}",
                current_state=self.status.value
            )
        self.status = new_status


class FunctionChainExecutor:
    """
    Executes function chains.

    Steps run in order. A step with ``wait_for_result=False`` is handed to a
    background pool and the chain moves on; all background steps are joined
    before the final status is decided. Failures follow the step's
    ``on_error`` policy (fail, continue or retry with exponential backoff).
    A failed chain with a fallback runs that fallback once with the original
    context; fallbacks are never followed further.
    """

    def __init__(self, registry: Optional[FunctionRegistry] = None,
                 config: Optional[ExecutorConfig] = None,
                 model_invoker: Optional[ModelInvoker] = None,
                 execution_logger: Optional[ExecutionLogger] = None):
        self.registry = registry or FunctionRegistry()
        self.config = config or ExecutorConfig()
        self.model_invoker = model_invoker
        self.logger = get_logger(__name__)
        self.execution_logger = execution_logger or ExecutionLogger()
        self._background_pool = ThreadPoolExecutor(
            max_workers=self.config.background_workers,
            thread_name_prefix="cosmo-step"
        )

    def execute(self, chain: FunctionChain, context: Optional[Dict[str, Any]] = None,
                cancel_token: Optional[CancellationToken] = None,
                chain_lookup: Optional[Callable[[str], Optional[FunctionChain]]] = None,
                model_invoker: Optional[ModelInvoker] = None) -> ChainExecutionResult:
        """
        Execute a chain, running its fallback once if it fails.

        Args:
            chain: Chain to run
            context: Initial working data
            cancel_token: Cooperative cancellation token
            chain_lookup: Resolves ``fallback_chain_id`` to a chain
            model_invoker: Overrides the executor's model invoker for this run

        Returns:
            ChainExecutionResult for the chain. When the fallback ran,
            ``fallback_result`` holds its own result and the top-level status,
            output and outputs reflect the fallback's outcome.
        """
        context = dict(context or {})
        token = cancel_token or CancellationToken()

        invoker = model_invoker or self.model_invoker
        result = self._run_chain(chain, context, token, invoker)

        if result.status != ChainStatus.FAILED or not chain.fallback_chain_id:
            return result

        fallback = chain_lookup(chain.fallback_chain_id) if chain_lookup else None
        if fallback is None or not fallback.active:
            self.logger.error(f"Fallback chain {chain.fallback_chain_id} for {chain.chain_key} unavailable")
            return result

        self.execution_logger.log_fallback(chain.chain_key, fallback.chain_key, result.error or "chain failed")

        # Depth limit: the fallback's own fallback is never followed
        fallback_result = self._run_chain(fallback, context, token, invoker)
        result.fallback_used = True
        result.fallback_result = fallback_result
        result.status = fallback_result.status
        result.output = fallback_result.output
        result.outputs = fallback_result.outputs
        result.error = fallback_result.error if fallback_result.status != ChainStatus.COMPLETED else None
        result.duration_ms += fallback_result.duration_ms
        return result

    def is_step_available(self, step: ChainStep, invoker: Optional[ModelInvoker] = None) -> bool:
        """Whether the function (or model invoker) behind a step exists."""
        if step.step_type == StepType.MODEL_CALL:
            return (invoker or self.model_invoker) is not None
        return self.registry.is_available(step.function_key)

    def _run_chain(self, chain: FunctionChain, context: Dict[str, Any],
                   token: CancellationToken, invoker: Optional[ModelInvoker]) -> ChainExecutionResult:
        start_time = time.time()
        execution = ChainExecution(chain.chain_key)
        execution.transition(ChainStatus.RUNNING)
        self.logger.info(f"Executing chain {chain.chain_key} ({len(chain.steps)} steps)")

        data: Dict[str, Any] = {**context, "steps": {}}
        records: List[StepRecord] = []
        background = []
        failed_record: Optional[StepRecord] = None
        last_output: Any = None
        cancelled = False

        for index, step in enumerate(chain.steps):
            # Step 1: Cancellation is checked at every step boundary
            if token.cancelled:
                cancelled = True
                records.extend(self._unrun_records(chain.steps[index:], StepStatus.CANCELLED))
                break

            # Step 2: Availability
            if not self.is_step_available(step, invoker):
                record = self._unavailable_record(step)
                records.append(record)
                self._log_step(chain.chain_key, record)
                if record.status == StepStatus.FAILED and step.on_error != OnError.CONTINUE:
                    failed_record = record
                    records.extend(self._unrun_records(chain.steps[index + 1:], StepStatus.SKIPPED))
                    break
                continue

            # Step 3: Background dispatch
            if not step.wait_for_result:
                record = self._new_record(step, data, background=True)
                records.append(record)
                future = self._background_pool.submit(
                    self._run_step, step, self._snapshot(data), token, record, chain.chain_key, invoker
                )
                background.append((step, record, future))
                continue

            # Step 4: Foreground step
            record = self._run_step(step, self._snapshot(data), token,
                                    self._new_record(step, data), chain.chain_key, invoker)
            records.append(record)

            if record.status == StepStatus.COMPLETED:
                self._absorb_output(data, step, record.output)
                last_output = record.output
            elif record.status == StepStatus.CANCELLED:
                cancelled = True
                records.extend(self._unrun_records(chain.steps[index + 1:], StepStatus.CANCELLED))
                break
            elif step.on_error != OnError.CONTINUE:
                failed_record = record
                records.extend(self._unrun_records(chain.steps[index + 1:], StepStatus.SKIPPED))
                break

        # Step 5: Join background steps before deciding the outcome
        for step, record, future in background:
            future.result()
            if record.status == StepStatus.COMPLETED:
                data["steps"][step.step_key] = record.output
            elif record.status == StepStatus.CANCELLED:
                cancelled = True
            elif step.on_error != OnError.CONTINUE and failed_record is None:
                failed_record = record

        if cancelled:
            execution.transition(ChainStatus.CANCELLED)
            error = "Chain cancelled"
        elif failed_record is not None:
            execution.transition(ChainStatus.FAILED)
            error = f"Step {failed_record.step_key} failed: {failed_record.error}"
        else:
            execution.transition(ChainStatus.COMPLETED)
            error = None

        duration_ms = (time.time() - start_time) * 1000
        self.logger.info(f"Chain {chain.chain_key} {execution.status.value} in {duration_ms:.1f}ms")

        return ChainExecutionResult(
            chain_key=chain.chain_key,
            status=execution.status,
            steps=records,
            outputs=dict(data["steps"]),
            output=last_output,
            error=error,
            duration_ms=duration_ms,
        )

    def _run_step(self, step: ChainStep, data: Dict[str, Any], token: CancellationToken,
                  record: StepRecord, chain_key: str,
                  invoker: Optional[ModelInvoker] = None) -> StepRecord:
        """Run one step with its retry policy, filling in the record."""
        max_retries = step.max_retries
        if max_retries is None:
            max_retries = self.config.default_step_retries
        start_time = time.time()

        while True:
            record.attempts += 1
            try:
                output = self._invoke(step, data, invoker)
                if step.step_type == StepType.VALIDATION and not output:
                    raise StepValidationError(f"Validation {step.step_key} rejected the input",
                                              step_key=step.step_key)
                record.status = StepStatus.COMPLETED
                record.output = output
                record.error = None
                record.error_retryable = False
                break
            except RequestCancelledError:
                record.status = StepStatus.CANCELLED
                break
            except Exception as e:
                error = handle_error(e, context={"chain_key": chain_key, "step_key": step.step_key})
                record.error = error.message
                record.error_retryable = error.retryable
                self.logger.warning(
                    f"Step {chain_key}/{step.step_key} attempt {record.attempts} failed: {error.message}"
                )

                if step.on_error == OnError.RETRY and record.retries < max_retries:
                    delay = compute_backoff_delay(
                        record.retries,
                        self.config.step_backoff_base_seconds,
                        self.config.step_backoff_max_seconds
                    )
                    record.retries += 1
                    if token.wait(delay):
                        record.status = StepStatus.CANCELLED
                        break
                    continue

                record.status = StepStatus.FAILED
                break

        record.duration_ms = (time.time() - start_time) * 1000
        self._log_step(chain_key, record)
        return record

    def _invoke(self, step: ChainStep, data: Dict[str, Any], invoker: Optional[ModelInvoker]) -> Any:
        if step.step_type == StepType.MODEL_CALL:
            invoker = invoker or self.model_invoker
            if invoker is None:
                raise ResourceUnavailableError("No model invoker configured", resource_type="model")
            return invoker(step, data)

        func = self.registry.get(step.function_key)
        if func is None:
            raise ResourceUnavailableError(f"Function {step.function_key} is not registered",
                                           resource_type="function")
        return func(data, dict(step.config))

    def _absorb_output(self, data: Dict[str, Any], step: ChainStep, output: Any) -> None:
        data["steps"][step.step_key] = output
        if step.step_type == StepType.TRANSFORM and isinstance(output, dict):
            data.update({key: value for key, value in output.items() if key != "steps"})

    def _snapshot(self, data: Dict[str, Any]) -> Dict[str, Any]:
        snapshot = dict(data)
        snapshot["steps"] = dict(data["steps"])
        return snapshot

    def _new_record(self, step: ChainStep, data: Dict[str, Any], background: bool = False) -> StepRecord:
        return StepRecord(
            step_key=step.step_key,
            function_key=step.function_key,
            step_type=step.step_type,
            status=StepStatus.FAILED,
            input=self._snapshot(data),
            background=background,
            on_error=step.on_error,
        )

    def _unavailable_record(self, step: ChainStep) -> StepRecord:
        if step.required:
            status = StepStatus.FAILED
            error = f"Required function {step.function_key} is unavailable"
        else:
            status = StepStatus.SKIPPED
            error = f"Optional function {step.function_key} is unavailable"
        return StepRecord(
            step_key=step.step_key,
            function_key=step.function_key,
            step_type=step.step_type,
            status=status,
            error=error,
            on_error=step.on_error,
        )

    def _unrun_records(self, steps, status: StepStatus) -> List[StepRecord]:
        return [
            StepRecord(
                step_key=step.step_key,
                function_key=step.function_key,
                step_type=step.step_type,
                status=status,
                on_error=step.on_error,
            )
            for step in steps
        ]

    def _log_step(self, chain_key: str, record: StepRecord) -> None:
        self.execution_logger.log_step(chain_key, {
            'step_key': record.step_key,
            'function_key': record.function_key,
            'status': record.status.value,
            'attempts': record.attempts,
            'retries': record.retries,
            'input_keys': sorted(record.input),
            'output': record.output,
            'error': record.error,
            'duration_ms': record.duration_ms,
        })

    def shutdown(self, wait: bool = True) -> None:
        """Stop the background step pool."""
        self._background_pool.shutdown(wait=wait)

"""
COSMO execution engine: the execution and queue control API.
"""

import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..models import (
    ActionMapping, Batch, ChainStep, ExecutionPlan, ExecutionResponse, Model, Preferences,
    QueueItem, QueueStats, ReplayResult, RequestRecord, UpstreamResponse,
)
from ..models.config import SystemConfig
from ..models.enums import ActionType, ChainStatus, OnError, Priority, QueueStatus, StepStatus
from ..utils import get_logger, ExecutionLogger
from ..utils.error_handling import (
    CosmoError, ChainExecutionError, ConfigurationError, FallbackError, RequestCancelledError,
    ResourceUnavailableError, TransientUpstreamError, UpstreamError,
)
from .batching import BatchAggregator
from .classifier import IntentClassifier
from .config_store import ConfigSnapshot, ConfigStore
from .executor import CancellationToken, FunctionChainExecutor, FunctionRegistry
from .interfaces import ExternalAPIClient, ModelClient
from .ledger import CostLedger, SessionContextCache, build_cost_record
from .queue import PriorityRequestQueue, Scheduler
from .replay import ExecutionPlanner, ReplayEngine, RequestHistory, estimate_prompt_tokens
from .resolver import ActionResolver
from .router import ModelRouter
from .streaming import StreamChannel

# Cost target for actions that make no upstream call
LOCAL_EXECUTION = Model(model_id="local", provider="local", best_for="local")

ContextProvider = Callable[[Optional[str], Dict[str, Any]], Any]


class _PromptScope(dict):
    def __missing__(self, key):
        return ""


class CosmoEngine:
    """
    Routes free-form requests to actions and upstream models.

    Every request becomes a queue item. Worker threads classify it, resolve
    its action, pick a model and execute, then append one cost record to the
    ledger. Compatible model calls may be merged by the batch aggregator
    before they reach a worker. ``execute`` waits up to the caller's timeout
    and returns ``completed``, ``failed`` or ``queued``; queued requests can
    be polled with ``get_response``.
    """

    def __init__(self, config_store: ConfigStore, system_config: Optional[SystemConfig] = None,
                 model_client: Optional[Any] = None, external_client: Optional[Any] = None,
                 registry: Optional[FunctionRegistry] = None, ledger: Optional[CostLedger] = None,
                 autostart: bool = True):
        self.config = system_config or SystemConfig()
        self.config_store = config_store
        self.logger = get_logger(__name__)
        self.execution_logger = ExecutionLogger()

        # Upstream clients
        self.model_client = model_client or ModelClient(self.config.upstream_config)
        self.external_client = external_client or ExternalAPIClient(self.config.upstream_config)

        # Routing and execution components
        self.registry = registry or FunctionRegistry()
        self.classifier = IntentClassifier(self.config.classifier_config, self.model_client)
        self.resolver = ActionResolver()
        self.router = ModelRouter(self.config.cost_config)
        self.executor = FunctionChainExecutor(
            self.registry, self.config.executor_config,
            model_invoker=self._invoke_default_model_step,
            execution_logger=self.execution_logger
        )

        # Metrics
        self.ledger = ledger or CostLedger()
        self.context_cache = SessionContextCache(self.config.cost_config.context_cache_ttl_seconds)
        self._context_providers: Dict[str, Tuple[ContextProvider, float]] = {}

        # Queue, batching and workers
        self.queue = PriorityRequestQueue(self.config.queue_config, self.execution_logger)
        self.batch_aggregator = BatchAggregator(self.queue, self._schedule_batch,
                                                self.config.batch_config, self.execution_logger)
        self.scheduler = Scheduler(self.queue, self._handle_item, self.config.queue_config)

        # Planning and replay
        self.history = RequestHistory(self.config.queue_config.max_history)
        self.planner = ExecutionPlanner(self.config_store, self.classifier, self.resolver,
                                        self.router, self.executor, self.config.cost_config)
        self.replay_engine = ReplayEngine(self.planner, self.history, self.execute)

        # Routing decision log for audit trail
        self.routing_log: List[Dict[str, Any]] = []
        self._max_log_entries = 1000
        self._stats_lock = threading.Lock()
        self._routing_stats = {
            'total_requests': 0,
            'batched_requests': 0,
            'fallback_routes': 0,
            'configuration_errors': 0,
            'action_usage': {action_type.value: 0 for action_type in ActionType},
            'model_usage': {},
        }

        if autostart:
            self.start()
        self.logger.info("CosmoEngine initialized")

    # ============= Lifecycle =============

    def start(self) -> None:
        """Start the worker pool."""
        self.scheduler.start()

    def shutdown(self) -> None:
        """Release open batches and stop the workers."""
        self.batch_aggregator.shutdown()
        self.scheduler.stop()
        self.executor.shutdown(wait=False)
        self.logger.info("CosmoEngine shut down")

    def register_context_provider(self, need: str, provider: ContextProvider,
                                  fetch_cost_usd: float = 0.0) -> None:
        """
        Register a provider for an intent context need (history, persona...).

        Args:
            need: Context key the provider fills
            provider: Called with (session_id, context), returns the value
            fetch_cost_usd: Cost of one fetch, reported as saved on cache hits
        """
        self._context_providers[need] = (provider, fetch_cost_usd)

    def register_function(self, function_key: str, func: Callable[..., Any]) -> None:
        """Register a function for FUNCTION and SYSTEM actions and chain steps."""
        self.registry.register(function_key, func)

    # ============= Execution API =============

    def execute(self, text: str, preferences: Optional[Preferences] = None,
                context: Optional[Dict[str, Any]] = None) -> ExecutionResponse:
        """
        Execute a request.

        Args:
            text: Free-form request text
            preferences: Caller preferences
            context: Caller-supplied context

        Returns:
            ExecutionResponse with status completed, failed or queued. Streaming
            requests return at once with status queued and a StreamChannel.
        """
        preferences = preferences or Preferences()
        context = dict(context or {})
        timeout = preferences.timeout_seconds
        if timeout is None:
            timeout = self.config.default_timeout_seconds
        deadline = time.monotonic() + timeout

        max_retries = preferences.max_retries
        if max_retries is None:
            max_retries = self.config.queue_config.default_max_retries
        if preferences.stream:
            # Content already sent cannot be taken back
            max_retries = 0

        item = QueueItem(
            payload={"text": text, "preferences": preferences, "context": context},
            priority=preferences.priority,
            max_retries=max_retries,
        )
        self.history.add(RequestRecord(request_id=item.id, text=text,
                                       preferences=preferences, context=context))
        with self._stats_lock:
            self._routing_stats['total_requests'] += 1

        stream = None
        if preferences.stream:
            stream = StreamChannel(item.id)
            item.payload["stream"] = stream

        # Step 1: Batch candidates are planned now, from keywords only, so they
        # can be grouped. Requests that need model classification go to a worker.
        try:
            if self._is_batch_candidate(preferences):
                plan = self.planner.plan(text, preferences, context, allow_model_call=False)
                if not self._needs_model_classification(plan):
                    item.payload["plan"] = plan
                    self.history.update(item.id, plan=plan)
                    if plan.action_type.value in self.config.batch_config.batchable_action_types:
                        item.batchable = True
        except CosmoError as e:
            return self._reject(item, e)

        # Step 2: Enqueue
        if item.batchable:
            plan = item.payload["plan"]
            self.queue.submit(item, hold=True)
            self.batch_aggregator.offer(item, plan.model_id, plan.action_type.value, context.keys())
            with self._stats_lock:
                self._routing_stats['batched_requests'] += 1
        else:
            self.queue.submit(item)

        if stream is not None:
            return ExecutionResponse(request_id=item.id, status="queued",
                                     plan=item.payload.get("plan"), stream=stream)

        # Step 3: Wait within the caller's timeout
        self.queue.wait(item.id, max(deadline - time.monotonic(), 0.0))
        return self._response_for(item)

    def get_response(self, request_id: str, timeout: Optional[float] = 0.0) -> ExecutionResponse:
        """
        Poll a request.

        Raises:
            RequestNotFoundError: If the request id is unknown
        """
        item = self.queue.wait(request_id, timeout)
        return self._response_for(item)

    def dry_run(self, text: str, preferences: Optional[Preferences] = None,
                context: Optional[Dict[str, Any]] = None) -> ExecutionResponse:
        """Plan a request and estimate its cost without any upstream call."""
        request_id = QueueItem(payload={}).id
        try:
            plan = self.replay_engine.dry_run(text, preferences, context)
        except CosmoError as e:
            self.logger.error(f"Dry run failed: {e.message}")
            return ExecutionResponse(request_id=request_id, status="failed", error=e.message)
        return ExecutionResponse(request_id=request_id, status="planned", plan=plan)

    def replay(self, request_id: str, mode: str = "validate_only") -> ReplayResult:
        """
        Replay a historical request.

        Raises:
            RequestNotFoundError: If the request id is unknown
        """
        return self.replay_engine.replay(request_id, mode)

    # ============= Queue control API =============

    def cancel(self, request_id: str) -> QueueStatus:
        """
        Cancel a request; processing requests stop at the next step boundary.

        Raises:
            RequestNotFoundError: If the request id is unknown
            InvalidTransitionError: If the request already finished
        """
        status = self.queue.cancel(request_id)
        item = self.queue.get_item(request_id)
        stream = item.payload.get("stream")
        if status == QueueStatus.CANCELLED and stream is not None:
            stream.send_error("Request cancelled")
        return status

    def reprioritize(self, request_id: str, priority: Priority) -> QueueItem:
        """
        Move a pending request to another priority tier.

        Raises:
            RequestNotFoundError: If the request id is unknown
            InvalidTransitionError: If the request is not pending
        """
        return self.queue.reprioritize(request_id, priority)

    def get_queue_stats(self) -> QueueStats:
        return self.queue.stats()

    # ============= Statistics =============

    def get_statistics(self) -> Dict[str, Any]:
        """Routing, queue, batching and cost statistics."""
        with self._stats_lock:
            stats = {
                'total_requests': self._routing_stats['total_requests'],
                'batched_requests': self._routing_stats['batched_requests'],
                'fallback_routes': self._routing_stats['fallback_routes'],
                'configuration_errors': self._routing_stats['configuration_errors'],
                'action_usage': dict(self._routing_stats['action_usage']),
                'model_usage': dict(self._routing_stats['model_usage']),
                'recent_decisions': len(self.routing_log),
                'log_capacity': self._max_log_entries,
            }

        queue_stats = self.queue.stats()
        finished = queue_stats.completed_count + queue_stats.failed_count
        stats['success_rate'] = (queue_stats.completed_count / finished * 100) if finished else 0
        stats['queue'] = queue_stats
        stats['batching'] = self.batch_aggregator.stats()
        stats['costs'] = self.ledger.totals()
        stats['savings_by_category'] = self.ledger.savings_by_category()
        stats['context_cache'] = self.context_cache.stats()
        return stats

    def get_recent_decisions(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Get recent routing decisions for debugging and analysis."""
        with self._stats_lock:
            return list(self.routing_log[-limit:]) if self.routing_log else []

    def clear_routing_log(self) -> None:
        """Clear the routing decision log."""
        with self._stats_lock:
            self.routing_log.clear()
        self.logger.info("Routing decision log cleared")

    def is_healthy(self) -> bool:
        """Check that workers run and at least one model is configured."""
        try:
            snapshot = self.config_store.snapshot()
            return self.scheduler.is_running and bool(snapshot.active_models())
        except CosmoError as e:
            self.logger.error(f"Health check failed: {e.message}")
            return False

    # ============= Worker side =============

    def _handle_item(self, item: QueueItem, token: CancellationToken) -> Any:
        if item.request_type == "batch":
            return self._run_batch(item)
        return self._process_request(item, token)

    def _process_request(self, item: QueueItem, token: CancellationToken) -> ExecutionResponse:
        stream: Optional[StreamChannel] = item.payload.get("stream")
        try:
            response = self._execute_plan(item, token, stream)
        except Exception as e:
            if stream is not None:
                stream.send_error(str(e))
            raise

        if stream is not None:
            stream.send_metadata({
                'request_id': item.id,
                'model_id': response.costs.model_id if response.costs else None,
                'cost_usd': response.costs.cost_usd if response.costs else 0.0,
            })
            stream.close()
        return response

    def _execute_plan(self, item: QueueItem, token: CancellationToken,
                      stream: Optional[StreamChannel]) -> ExecutionResponse:
        text = item.payload["text"]
        preferences: Preferences = item.payload["preferences"]
        context = dict(item.payload["context"])
        start_time = time.time()

        # Step 1: Plan (reused across retries)
        plan: Optional[ExecutionPlan] = item.payload.get("plan")
        if plan is None:
            try:
                plan = self.planner.plan(text, preferences, context, allow_model_call=True)
            except ConfigurationError:
                with self._stats_lock:
                    self._routing_stats['configuration_errors'] += 1
                raise
            item.payload["plan"] = plan
            self.history.update(item.id, plan=plan)
        self._log_decision(item.id, plan)

        snapshot = self.config_store.snapshot()

        # Step 2: Context needs of the intent
        context, context_saved = self._gather_context(plan, context, preferences.session_id, snapshot)

        if token.cancelled:
            raise RequestCancelledError()

        # Step 3: Dispatch by action type
        if plan.action_type == ActionType.MODEL_CALL:
            mapping = self._mapping_for(plan, snapshot)
            output, model, usage = self._run_model_call(plan, text, context, snapshot, mapping, stream)
        elif plan.action_type == ActionType.CHAIN:
            output, model, usage = self._run_chain(plan, text, context, snapshot, token)
            if stream is not None:
                stream.send_content(str(output.output))
        elif plan.action_type == ActionType.EXTERNAL_API:
            mapping = self._require_mapping(plan, snapshot)
            output = self.external_client.call(mapping.action_config, plan.parameters)
            model, usage = LOCAL_EXECUTION, []
            if stream is not None:
                stream.send_content(str(output))
        else:
            output = self._run_function(plan, text, context, snapshot)
            model, usage = LOCAL_EXECUTION, []
            if stream is not None:
                stream.send_content(str(output))

        # Step 4: Ledger
        latency_ms = (time.time() - start_time) * 1000
        record = build_cost_record(
            item.id, model,
            sum(response.prompt_tokens for response in usage),
            sum(response.completion_tokens for response in usage),
            latency_ms,
            baseline_model=self._baseline_model(snapshot, model),
            context_saved_usd=context_saved,
        )
        self.ledger.append(record)
        self.history.update(item.id, result=output, status=QueueStatus.COMPLETED.value)

        self.logger.info(f"Request {item.id} completed in {latency_ms:.1f}ms")
        return ExecutionResponse(request_id=item.id, status="completed", plan=plan,
                                 result=output, costs=record)

    def _run_model_call(self, plan: ExecutionPlan, text: str, context: Dict[str, Any],
                        snapshot: ConfigSnapshot, mapping: Optional[ActionMapping],
                        stream: Optional[StreamChannel]) -> Tuple[str, Model, List[UpstreamResponse]]:
        model = self._require_model(snapshot, plan.model_id)
        action_config = mapping.action_config if mapping else {}
        prompt = self._prepare_prompt(text, context, snapshot.get_intent(plan.intent_key))
        system_prompt = action_config.get("system_prompt")

        try:
            response = self._call_model(model, prompt, system_prompt, stream)
        except TransientUpstreamError:
            raise
        except UpstreamError as e:
            fallback = snapshot.get_model(snapshot.routing_config.fallback_model_id or "")
            if stream is not None or fallback is None or not fallback.is_active \
                    or fallback.model_id == model.model_id:
                raise
            self.execution_logger.log_fallback(model.model_id, fallback.model_id, e.message)
            with self._stats_lock:
                self._routing_stats['fallback_routes'] += 1
            try:
                response = self._call_model(fallback, prompt, system_prompt, stream)
            except TransientUpstreamError:
                raise
            except UpstreamError as fallback_error:
                raise FallbackError(
                    f"Primary and fallback models failed: {fallback_error.message}",
                    attempted_targets=[model.model_id, fallback.model_id]
                ) from fallback_error
            model = fallback

        return response.content, model, [response]

    def _run_chain(self, plan: ExecutionPlan, text: str, context: Dict[str, Any],
                   snapshot: ConfigSnapshot, token: CancellationToken):
        chain = snapshot.get_chain(plan.chain_key or "")
        if chain is None or not chain.active:
            raise ConfigurationError(f"Chain {plan.chain_key} is not configured or inactive",
                                     config_key=plan.chain_key)

        usage: List[UpstreamResponse] = []

        def invoke_model_step(step: ChainStep, data: Dict[str, Any]) -> str:
            model = self._require_model(snapshot, step.config.get("model_id") or plan.model_id)
            response = self._call_model(model, self._step_prompt(step, data),
                                        step.config.get("system_prompt"))
            usage.append(response)
            return response.content

        chain_context = {**context, "input": text, "parameters": plan.parameters,
                         "intent": plan.intent_key}
        result = self.executor.execute(chain, chain_context, token, snapshot.get_chain,
                                       model_invoker=invoke_model_step)

        if result.fallback_used:
            with self._stats_lock:
                self._routing_stats['fallback_routes'] += 1

        if result.status == ChainStatus.CANCELLED:
            raise RequestCancelledError()
        if result.status == ChainStatus.FAILED:
            final = result.fallback_result or result
            failing = [record for record in final.steps
                       if record.status == StepStatus.FAILED and record.on_error != OnError.CONTINUE]
            if any(record.error_retryable for record in failing):
                raise TransientUpstreamError(result.error or "Chain step failed transiently")
            raise ChainExecutionError(result.error or "Chain failed", chain_key=chain.chain_key,
                                      step_key=failing[0].step_key if failing else None)

        model = LOCAL_EXECUTION
        if usage:
            model = self._require_model(snapshot, usage[-1].model_id)
        return result, model, usage

    def _run_function(self, plan: ExecutionPlan, text: str, context: Dict[str, Any],
                      snapshot: ConfigSnapshot) -> Any:
        mapping = self._require_mapping(plan, snapshot)
        function_key = mapping.action_config.get("function_key", mapping.action_key)
        func = self.registry.get(function_key)
        if func is None:
            raise ResourceUnavailableError(f"Function {function_key} is not registered",
                                           resource_type=plan.action_type.value)
        data = {**context, "input": text, "parameters": plan.parameters, "intent": plan.intent_key}
        return func(data, dict(mapping.action_config))

    def _call_model(self, model: Model, prompt: str, system_prompt: Optional[str] = None,
                    stream: Optional[StreamChannel] = None) -> UpstreamResponse:
        max_tokens = min(self.config.upstream_config.default_max_tokens, model.max_completion_tokens)

        if stream is None:
            response = self.model_client.complete(
                model.model_id, prompt, system_prompt=system_prompt,
                max_tokens=max_tokens, rate_limit_rpm=model.rate_limit_rpm
            )
        else:
            start_time = time.time()
            parts = []
            for delta in self.model_client.stream(model.model_id, prompt, system_prompt=system_prompt,
                                                  max_tokens=max_tokens,
                                                  rate_limit_rpm=model.rate_limit_rpm):
                parts.append(delta)
                stream.send_content(delta)
            content = "".join(parts)
            # Streamed responses carry no usage block
            response = UpstreamResponse(
                content=content,
                model_id=model.model_id,
                prompt_tokens=estimate_prompt_tokens(prompt),
                completion_tokens=estimate_prompt_tokens(content),
                latency_ms=(time.time() - start_time) * 1000,
            )

        self.router.record_latency(model.model_id, response.latency_ms)
        return response

    def _invoke_default_model_step(self, step: ChainStep, data: Dict[str, Any]) -> str:
        """Model invoker for chains run directly on the executor."""
        snapshot = self.config_store.snapshot()
        model = self._require_model(snapshot, step.config.get("model_id")
                                    or snapshot.routing_config.default_model_id)
        return self._call_model(model, self._step_prompt(step, data),
                                step.config.get("system_prompt")).content

    # ============= Batching =============

    def _is_batch_candidate(self, preferences: Preferences) -> bool:
        return (self.config.batch_config.enabled
                and preferences.allow_batching
                and not preferences.stream
                and preferences.priority != Priority.CRITICAL)

    def _needs_model_classification(self, plan: ExecutionPlan) -> bool:
        """A weak keyword plan would be replaced by model classification on a worker."""
        classifier_config = self.config.classifier_config
        return (classifier_config.enable_model_classification
                and plan.confidence < classifier_config.min_keyword_score)

    def _schedule_batch(self, batch: Batch) -> None:
        """Queue a closed batch for execution at its most urgent member's priority."""
        priorities = []
        for request_id in batch.request_ids:
            priorities.append(self.queue.get_item(request_id).priority)
        priority = min(priorities, key=lambda p: p.rank) if priorities else Priority.NORMAL

        self.queue.submit(QueueItem(
            payload={"batch_id": batch.id},
            priority=priority,
            request_type="batch",
            max_retries=0,
        ))

    def _run_batch(self, item: QueueItem) -> Dict[str, Any]:
        batch = self.batch_aggregator.get_batch(item.payload["batch_id"])
        if batch is None:
            raise ResourceUnavailableError(f"Batch {item.payload['batch_id']} not found",
                                           resource_type="batch")
        self.batch_aggregator.execute_batch(batch, self._batch_call, self._finish_batched_member)
        return {
            'batch_id': batch.id,
            'status': batch.status.value,
            'size': batch.size,
            'api_calls_saved': batch.api_calls_saved,
            'tokens_saved': batch.tokens_saved,
        }

    def _batch_call(self, model_id: Optional[str], prompt: str) -> UpstreamResponse:
        model = self._require_model(self.config_store.snapshot(), model_id)
        return self._call_model(model, prompt)

    def _finish_batched_member(self, item: QueueItem, answer: str,
                               share: Dict[str, Any]) -> ExecutionResponse:
        plan: ExecutionPlan = item.payload["plan"]
        snapshot = self.config_store.snapshot()
        model = self._require_model(snapshot, plan.model_id)
        self._log_decision(item.id, plan)

        record = build_cost_record(
            item.id, model, share['prompt_tokens'], share['completion_tokens'], share['latency_ms'],
            baseline_model=self._baseline_model(snapshot, model),
            batch_tokens_saved=share['tokens_saved_share'],
        )
        self.ledger.append(record)
        self.history.update(item.id, result=answer, status=QueueStatus.COMPLETED.value)
        return ExecutionResponse(request_id=item.id, status="completed", plan=plan,
                                 result=answer, costs=record)

    # ============= Helpers =============

    def _gather_context(self, plan: ExecutionPlan, context: Dict[str, Any], session_id: Optional[str],
                        snapshot: ConfigSnapshot) -> Tuple[Dict[str, Any], float]:
        """Fill the intent's missing context needs from registered providers."""
        intent = snapshot.get_intent(plan.intent_key)
        if intent is None:
            return context, 0.0

        saved_total = 0.0
        for need in intent.context_needs:
            if need in context or need not in self._context_providers:
                continue
            provider, fetch_cost = self._context_providers[need]
            value, reused, saved = self.context_cache.get_or_fetch(
                session_id, need, lambda: provider(session_id, context), fetch_cost
            )
            context[need] = value
            saved_total += saved
            if reused:
                self.logger.debug(f"Reused cached context '{need}' for session {session_id}")
        return context, saved_total

    def _prepare_prompt(self, text: str, context: Dict[str, Any], intent) -> str:
        """Prefix the request with the context the intent asks for."""
        if intent is None:
            return text
        parts = [f"{need}: {context[need]}" for need in intent.context_needs if need in context]
        if not parts:
            return text
        return "Context:\n" + "\n".join(parts) + f"\n\nRequest: {text}"

    def _step_prompt(self, step: ChainStep, data: Dict[str, Any]) -> str:
        template = step.config.get("prompt_template")
        if template:
            return template.format_map(_PromptScope(data))
        return str(data.get("input", ""))

    def _mapping_for(self, plan: ExecutionPlan, snapshot: ConfigSnapshot) -> Optional[ActionMapping]:
        if plan.action_key is None:
            return None
        for mapping in snapshot.action_mappings:
            if mapping.intent_key == plan.intent_key and mapping.action_key == plan.action_key:
                return mapping
        return None

    def _require_mapping(self, plan: ExecutionPlan, snapshot: ConfigSnapshot) -> ActionMapping:
        mapping = self._mapping_for(plan, snapshot)
        if mapping is None:
            raise ConfigurationError(f"Action {plan.action_key} is no longer configured",
                                     config_key=plan.action_key)
        return mapping

    def _require_model(self, snapshot: ConfigSnapshot, model_id: Optional[str]) -> Model:
        model = snapshot.get_model(model_id or "")
        if model is None:
            raise ConfigurationError(f"Model {model_id} is not configured", config_key=model_id)
        return model

    def _baseline_model(self, snapshot: ConfigSnapshot, model: Model) -> Optional[Model]:
        if model is LOCAL_EXECUTION:
            return None
        return snapshot.get_model(snapshot.routing_config.default_model_id or "")

    def _log_decision(self, request_id: str, plan: ExecutionPlan) -> None:
        """Log routing decision for transparency and debugging."""
        entry = {
            'timestamp': datetime.now().isoformat(),
            'request_id': request_id,
            'intent_key': plan.intent_key,
            'confidence': plan.confidence,
            'category': plan.category,
            'action_type': plan.action_type.value,
            'action_key': plan.action_key,
            'chain_key': plan.chain_key,
            'model_id': plan.model_id,
            'cost_tier': plan.cost_tier,
            'reasoning': plan.model_reasoning,
        }
        with self._stats_lock:
            self.routing_log.append(entry)
            if len(self.routing_log) > self._max_log_entries:
                self.routing_log = self.routing_log[-self._max_log_entries // 2:]
            self._routing_stats['action_usage'][plan.action_type.value] += 1
            if plan.model_id:
                usage = self._routing_stats['model_usage']
                usage[plan.model_id] = usage.get(plan.model_id, 0) + 1

        self.execution_logger.log_routing_decision(entry)

    def _reject(self, item: QueueItem, error: CosmoError) -> ExecutionResponse:
        if isinstance(error, ConfigurationError):
            with self._stats_lock:
                self._routing_stats['configuration_errors'] += 1
        self.logger.error(f"Request {item.id} rejected: {error.message}")
        self.history.update(item.id, status=QueueStatus.FAILED.value)
        stream = item.payload.get("stream")
        if stream is not None:
            stream.send_error(error.message)
        return ExecutionResponse(request_id=item.id, status="failed", error=error.message, stream=stream)

    def _response_for(self, item: QueueItem) -> ExecutionResponse:
        status = item.status
        stream = item.payload.get("stream")

        if status == QueueStatus.COMPLETED and isinstance(item.result, ExecutionResponse):
            return item.result

        if status.is_terminal:
            self.history.update(item.id, status=status.value)
            if stream is not None and not stream.closed:
                stream.send_error(item.error or status.value)
            return ExecutionResponse(
                request_id=item.id,
                status="failed",
                plan=item.payload.get("plan"),
                error=item.error or f"Request {status.value}",
                stream=stream,
            )

        return ExecutionResponse(request_id=item.id, status="queued",
                                 plan=item.payload.get("plan"), stream=stream)

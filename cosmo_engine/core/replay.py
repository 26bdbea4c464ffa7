"""
Dry-run planning and replay of historical requests.
"""

import math
import threading
from collections import OrderedDict
from dataclasses import replace
from typing import Any, Callable, Dict, Optional, Tuple

from ..models import (
    ExecutionPlan, ExecutionResponse, PlannedStep, Preferences, ReplayResult, RequestRecord,
)
from ..models.config import CostConfig
from ..models.enums import ActionType, ReplayMode, StepType
from ..utils import get_logger
from ..utils.error_handling import ConfigurationError, RequestNotFoundError
from .classifier import IntentClassifier
from .config_store import ConfigStore
from .executor import FunctionChainExecutor
from .resolver import ActionResolver
from .router import ModelRouter


def estimate_prompt_tokens(text: str) -> int:
    """Rough token count: four characters per token, rounded up."""
    return math.ceil(len(text or "") / 4)


class RequestHistory:
    """Bounded history of executed requests, kept for replay."""

    def __init__(self, max_entries: int = 1000):
        self.max_entries = max_entries
        self._records: "OrderedDict[str, RequestRecord]" = OrderedDict()
        self._lock = threading.Lock()

    def add(self, record: RequestRecord) -> None:
        with self._lock:
            self._records[record.request_id] = record
            while len(self._records) > self.max_entries:
                self._records.popitem(last=False)

    def get(self, request_id: str) -> RequestRecord:
        with self._lock:
            record = self._records.get(request_id)
        if record is None:
            raise RequestNotFoundError(f"Unknown request {request_id}", request_id=request_id)
        return record

    def update(self, request_id: str, **fields) -> None:
        with self._lock:
            record = self._records.get(request_id)
            if record is None:
                return
            for name, value in fields.items():
                setattr(record, name, value)

    def __len__(self) -> int:
        return len(self._records)


class ExecutionPlanner:
    """
    Builds execution plans: classification, action resolution, chain planning
    and model selection, with token and cost estimates.

    Planning issues no upstream calls unless ``allow_model_call`` is set, in
    which case the classifier may make its model classification call.
    """

    def __init__(self, config_store: ConfigStore, classifier: IntentClassifier,
                 resolver: ActionResolver, router: ModelRouter,
                 executor: FunctionChainExecutor, cost_config: Optional[CostConfig] = None):
        self.config_store = config_store
        self.classifier = classifier
        self.resolver = resolver
        self.router = router
        self.executor = executor
        self.cost_config = cost_config or CostConfig()
        self.logger = get_logger(__name__)

    def plan(self, text: str, preferences: Optional[Preferences] = None,
             context: Optional[Dict[str, Any]] = None,
             allow_model_call: bool = False) -> ExecutionPlan:
        """
        Plan a request against the current configuration.

        Raises:
            ConfigurationError: If a resolved chain is missing or no model can
                be selected
        """
        snapshot = self.config_store.snapshot()
        preferences = preferences or Preferences()
        context = context or {}

        # Step 1: Classify and resolve
        classification = self.classifier.classify(
            text, snapshot.intents, context,
            allow_model_call=allow_model_call,
            model_id=snapshot.routing_config.default_model_id,
        )
        mapping = self.resolver.resolve(classification.intent_key, snapshot.action_mappings,
                                        context, text, classification.confidence)

        if mapping is None:
            # Safe default: a plain model call for the intent's category
            action_type, action_key, action_config, parameters = ActionType.MODEL_CALL, None, {}, {}
        else:
            action_type, action_key = mapping.action_type, mapping.action_key
            action_config = mapping.action_config
            parameters = self.resolver.extract_parameters(mapping, text)

        # Step 2: Token estimates
        prompt_tokens = preferences.expected_prompt_tokens or estimate_prompt_tokens(text)
        completion_tokens = (preferences.expected_completion_tokens
                             or self.cost_config.default_completion_tokens)
        routing_preferences = preferences
        if action_config.get("model_id") and not preferences.force_model_id:
            routing_preferences = replace(preferences, force_model_id=action_config["model_id"])
        routing_preferences = replace(routing_preferences, expected_prompt_tokens=prompt_tokens,
                                      expected_completion_tokens=completion_tokens)

        plan = ExecutionPlan(
            intent_key=classification.intent_key,
            confidence=classification.confidence,
            category=classification.category,
            action_key=action_key,
            action_type=action_type,
            parameters=parameters,
        )

        # Step 3: Chain planning
        upstream_calls = 0
        if action_type == ActionType.CHAIN:
            chain_key = action_config.get("chain_key", action_key)
            chain = snapshot.get_chain(chain_key)
            if chain is None or not chain.active:
                raise ConfigurationError(f"Chain {chain_key} is not configured or inactive",
                                         config_key=chain_key)
            plan.chain_key = chain.chain_key
            plan.steps = [
                PlannedStep(
                    step_key=step.step_key,
                    function_key=step.function_key,
                    step_type=step.step_type,
                    required=step.required,
                    wait_for_result=step.wait_for_result,
                    on_error=step.on_error,
                    available=self.executor.is_step_available(step),
                )
                for step in chain.steps
            ]
            upstream_calls = sum(1 for step in plan.steps if step.step_type == StepType.MODEL_CALL)
        elif action_type == ActionType.MODEL_CALL:
            upstream_calls = 1

        overhead = self.cost_config.step_overhead_tokens * max(len(plan.steps), 1)
        plan.estimated_prompt_tokens = prompt_tokens + overhead
        plan.estimated_completion_tokens = completion_tokens

        # Step 4: Model selection, only when an upstream call is planned
        if upstream_calls:
            selection = self.router.select_model(
                classification.category, routing_preferences,
                snapshot.routing_config, snapshot.models
            )
            plan.model_id = selection.model_id
            plan.model_reasoning = selection.reasoning
            plan.cost_tier = selection.cost_tier

            per_call = selection.model.estimate_cost(
                prompt_tokens + self.cost_config.step_overhead_tokens, completion_tokens
            )
            for step in plan.steps:
                if step.step_type == StepType.MODEL_CALL:
                    step.model_id = selection.model_id
                    step.estimated_cost_usd = per_call
            plan.estimated_cost_usd = per_call * upstream_calls

        return plan


class ReplayEngine:
    """
    Dry runs and replays.

    ``validate_only`` re-plans a stored request against the current
    configuration and reports which routing decisions would change.
    ``replay_execute`` runs the stored input through the full pipeline again
    and returns the fresh result next to the original one.
    """

    def __init__(self, planner: ExecutionPlanner, history: RequestHistory,
                 execute: Callable[[str, Preferences, Dict[str, Any]], ExecutionResponse]):
        self.planner = planner
        self.history = history
        self.execute = execute
        self.logger = get_logger(__name__)

    def dry_run(self, text: str, preferences: Optional[Preferences] = None,
                context: Optional[Dict[str, Any]] = None) -> ExecutionPlan:
        """Plan a request without any upstream call."""
        plan = self.planner.plan(text, preferences, context, allow_model_call=False)
        self.logger.info(
            f"Dry run: {plan.intent_key} -> {plan.action_type.value} "
            f"(model {plan.model_id}, est. ${plan.estimated_cost_usd:.6f})"
        )
        return plan

    def replay(self, request_id: str, mode: str = ReplayMode.VALIDATE_ONLY.value) -> ReplayResult:
        """
        Replay a historical request.

        Raises:
            RequestNotFoundError: If the request id is unknown
            ConfigurationError: If the mode is unknown
        """
        record = self.history.get(request_id)
        try:
            replay_mode = ReplayMode(mode)
        except ValueError as e:
            raise ConfigurationError(f"Unknown replay mode: {mode}", config_key="mode") from e

        # Requests that never reached planning have nothing to compare against
        original = record.plan.decision() if record.plan else None

        if replay_mode == ReplayMode.VALIDATE_ONLY:
            plan = self.planner.plan(record.text, record.preferences, record.context,
                                     allow_model_call=True)
            if original is None:
                self.logger.info(f"Replay validation of {request_id}: no original decision recorded")
                return ReplayResult(
                    request_id=request_id,
                    mode=replay_mode.value,
                    status="no_original_decision",
                    plan=plan,
                    original_result=record.result,
                )
            differences = self._differences(original, plan.decision())
            self.logger.info(f"Replay validation of {request_id}: "
                             f"{'changed ' + str(sorted(differences)) if differences else 'unchanged'}")
            return ReplayResult(
                request_id=request_id,
                mode=replay_mode.value,
                status="validated",
                changed=bool(differences),
                differences=differences,
                plan=plan,
                original_result=record.result,
            )

        response = self.execute(record.text, replace(record.preferences, stream=False),
                                dict(record.context))
        differences = {}
        if original is not None and response.plan:
            differences = self._differences(original, response.plan.decision())
        self.logger.info(f"Replay execution of {request_id} finished with {response.status}")
        return ReplayResult(
            request_id=request_id,
            mode=replay_mode.value,
            status=response.status,
            changed=bool(differences),
            differences=differences,
            plan=response.plan,
            original_result=record.result,
            result=response.result,
            costs=response.costs,
        )

    def _differences(self, original: Dict[str, Any],
                     current: Dict[str, Any]) -> Dict[str, Tuple[Any, Any]]:
        return {
            key: (original.get(key), value)
            for key, value in current.items()
            if original.get(key) != value
        }



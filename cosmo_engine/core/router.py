"""
Model Router implementation for cost/performance-weighted model selection.
"""

import threading
from collections import deque
from typing import Deque, Dict, List, Optional, Iterable

from ..models import Model, ModelSelection, Preferences, RoutingConfig
from ..models.config import CostConfig
from ..models.enums import RoutingProfile
from ..utils import get_logger
from ..utils.error_handling import ConfigurationError

DEFAULT_REAL_TIME_MAX_LATENCY_MS = 2000


def cost_tier(weight: int) -> str:
    """Label a cost/performance weight: low (<=33), balanced (<=66) or premium."""
    if weight <= 33:
        return "low"
    if weight <= 66:
        return "balanced"
    return "premium"


class ModelRouter:
    """
    Selects the upstream model for a request category.

    Candidates are the active models whose ``best_for`` matches the category,
    or every active model when none match. Cost and latency bounds from the
    caller's preferences remove candidates before scoring; the survivors are
    scored as ``w_quality * quality - w_cost * normalized_cost`` where the
    weights come from the routing config's cost/performance weight as adjusted
    by the routing profile.
    """

    def __init__(self, cost_config: Optional[CostConfig] = None, latency_window: int = 50):
        self.cost_config = cost_config or CostConfig()
        self.logger = get_logger(__name__)

        # Observed latency per model, for models without a configured average
        self._latencies: Dict[str, Deque[float]] = {}
        self._latency_window = latency_window
        self._latency_lock = threading.Lock()

    def select_model(self, category: str, preferences: Optional[Preferences],
                     routing_config: RoutingConfig, models: Iterable[Model]) -> ModelSelection:
        """
        Select a model.

        Args:
            category: Category of the classified intent
            preferences: Caller preferences (force, cost and latency bounds)
            routing_config: Current routing configuration
            models: Models from the current configuration snapshot

        Returns:
            ModelSelection with the chosen model and its reasoning

        Raises:
            ConfigurationError: If no model can be selected
        """
        preferences = preferences or Preferences()
        active = [model for model in models if model.is_active]
        by_id = {model.model_id: model for model in active}
        weight = self.effective_weight(routing_config)
        tier = cost_tier(weight)

        # Step 1: Explicit override
        if preferences.force_model_id:
            forced = by_id.get(preferences.force_model_id)
            if forced:
                return self._selection(forced, f"Forced by caller preference: {forced.model_id}",
                                       tier, 1)
            self.logger.warning(f"Forced model {preferences.force_model_id} is not active, ignoring")

        # Step 2: Automatic routing disabled
        if routing_config.flags.get("auto_routing", True) is False:
            default = by_id.get(routing_config.default_model_id or "")
            if default:
                return self._selection(default, "Automatic routing disabled, using default model",
                                       tier, 1)
            return self._fallback(routing_config, by_id, tier, 0,
                                  "automatic routing disabled and default model unavailable")

        # Step 3: Candidates for the category
        candidates = [m for m in active if m.best_for.lower() == (category or "").lower()]
        if not candidates:
            candidates = list(active)
        considered = len(candidates)

        # Step 4: Hard constraints
        max_latency = preferences.max_latency_ms
        if max_latency is None and routing_config.routing_profile == RoutingProfile.REAL_TIME:
            max_latency = routing_config.flags.get("real_time_max_latency_ms",
                                                   DEFAULT_REAL_TIME_MAX_LATENCY_MS)

        if preferences.max_cost_usd is not None:
            prompt_tokens, completion_tokens = self.expected_tokens(preferences)
            candidates = [
                m for m in candidates
                if m.estimate_cost(prompt_tokens, completion_tokens) <= preferences.max_cost_usd
            ]
        if max_latency is not None:
            candidates = [m for m in candidates if self._within_latency(m, max_latency)]

        if not candidates:
            return self._fallback(routing_config, by_id, tier, considered,
                                  "no candidate satisfies the cost/latency constraints")

        # Step 5: Weighted scoring
        scores = self.score_candidates(candidates, weight)
        best = min(candidates, key=lambda m: (-scores[m.model_id], m.pricing_prompt, m.model_id))

        reasoning = (
            f"Selected {best.model_id} for category '{category}' "
            f"(score {scores[best.model_id]:.3f}, weight {weight}, "
            f"profile {routing_config.routing_profile.value}, {len(candidates)} candidates)"
        )
        return self._selection(best, reasoning, tier, considered, score=scores[best.model_id])

    def score_candidates(self, candidates: List[Model], weight: int) -> Dict[str, float]:
        """Score candidates; quality and cost are normalized against the candidate set."""
        w_quality = weight / 100
        w_cost = 1 - w_quality
        max_tier = max(m.quality_tier for m in candidates) or 1
        max_price = max(m.total_price for m in candidates)

        scores = {}
        for model in candidates:
            quality = model.quality_tier / max_tier
            normalized_cost = model.total_price / max_price if max_price > 0 else 0.0
            scores[model.model_id] = w_quality * quality - w_cost * normalized_cost
        return scores

    def effective_weight(self, routing_config: RoutingConfig) -> int:
        """Apply the routing profile to the configured weight."""
        weight = routing_config.cost_performance_weight
        profile = routing_config.routing_profile
        if profile == RoutingProfile.COST_OPTIMIZED:
            return min(weight, 25)
        if profile == RoutingProfile.PERFORMANCE_FIRST:
            return max(weight, 75)
        return weight

    def expected_tokens(self, preferences: Preferences):
        prompt_tokens = preferences.expected_prompt_tokens or self.cost_config.default_prompt_tokens
        completion_tokens = (preferences.expected_completion_tokens
                             or self.cost_config.default_completion_tokens)
        return prompt_tokens, completion_tokens

    def record_latency(self, model_id: str, latency_ms: float) -> None:
        """Record an observed upstream latency for a model."""
        with self._latency_lock:
            samples = self._latencies.setdefault(model_id, deque(maxlen=self._latency_window))
            samples.append(latency_ms)

    def observed_latency(self, model_id: str) -> Optional[float]:
        with self._latency_lock:
            samples = self._latencies.get(model_id)
            if not samples:
                return None
            return sum(samples) / len(samples)

    def _within_latency(self, model: Model, max_latency_ms: float) -> bool:
        latency = model.avg_latency_ms
        if latency is None:
            latency = self.observed_latency(model.model_id)
        # Models with no latency data are not excluded
        return latency is None or latency <= max_latency_ms

    def _fallback(self, routing_config: RoutingConfig, by_id: Dict[str, Model], tier: str,
                  considered: int, reason: str) -> ModelSelection:
        fallback = by_id.get(routing_config.fallback_model_id or "")
        if fallback is None:
            raise ConfigurationError(f"No model available: {reason}, and no usable fallback model",
                                     config_key="fallback_model_id")
        self.logger.warning(f"Using fallback model {fallback.model_id}: {reason}")
        return self._selection(fallback, f"Fallback model used: {reason}", tier, considered,
                               used_fallback=True)

    def _selection(self, model: Model, reasoning: str, tier: str, considered: int,
                   score: Optional[float] = None, used_fallback: bool = False) -> ModelSelection:
        self.logger.debug(reasoning)
        return ModelSelection(
            model=model,
            reasoning=reasoning,
            cost_tier=tier,
            candidates_considered=considered,
            score=score,
            used_fallback=used_fallback,
        )

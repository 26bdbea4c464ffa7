"""
Cost & metrics ledger and the per-session context cache.
"""

import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..models import CostRecord, Model
from ..models.enums import SavingsCategory
from ..utils import get_logger

# Category order breaks ties when attributing savings
_SAVINGS_ORDER = (SavingsCategory.ROUTING, SavingsCategory.BATCHING, SavingsCategory.CONTEXT_REUSE)


def compute_savings(model: Model, prompt_tokens: int, completion_tokens: int,
                    baseline_model: Optional[Model] = None,
                    batch_tokens_saved: float = 0.0,
                    context_saved_usd: float = 0.0) -> Tuple[Optional[SavingsCategory], float, Dict[str, float]]:
    """
    Compute a request's savings per category.

    - routing: what the baseline model would have cost for the same tokens,
      minus the actual cost, when positive
    - batching: the request's share of the batch's saved overhead tokens at
      the model's prompt price
    - context_reuse: fetch cost avoided through session cache hits

    Returns:
        (attribution, total_savings_usd, breakdown); attribution is the largest
        non-zero category, or None when nothing was saved
    """
    breakdown = {category.value: 0.0 for category in _SAVINGS_ORDER}

    if baseline_model is not None and baseline_model.model_id != model.model_id:
        actual = model.estimate_cost(prompt_tokens, completion_tokens)
        baseline = baseline_model.estimate_cost(prompt_tokens, completion_tokens)
        breakdown[SavingsCategory.ROUTING.value] = max(baseline - actual, 0.0)

    if batch_tokens_saved > 0:
        breakdown[SavingsCategory.BATCHING.value] = batch_tokens_saved * model.pricing_prompt / 1_000_000

    if context_saved_usd > 0:
        breakdown[SavingsCategory.CONTEXT_REUSE.value] = context_saved_usd

    total = sum(breakdown.values())
    attribution = None
    best = 0.0
    for category in _SAVINGS_ORDER:
        if breakdown[category.value] > best:
            attribution, best = category, breakdown[category.value]

    return attribution, total, breakdown


def build_cost_record(request_id: str, model: Model, prompt_tokens: int, completion_tokens: int,
                      latency_ms: float, baseline_model: Optional[Model] = None,
                      batch_tokens_saved: float = 0.0, context_saved_usd: float = 0.0) -> CostRecord:
    """Build the ledger entry for a completed request."""
    attribution, savings, breakdown = compute_savings(
        model, prompt_tokens, completion_tokens, baseline_model,
        batch_tokens_saved, context_saved_usd
    )
    return CostRecord(
        request_id=request_id,
        model_id=model.model_id,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        cost_usd=model.estimate_cost(prompt_tokens, completion_tokens),
        latency_ms=latency_ms,
        savings_attribution=attribution,
        savings_usd=savings,
        savings_breakdown=breakdown,
    )


class CostLedger:
    """
    Append-only ledger of CostRecords, one per completed request.

    ``append`` is the only write. Every aggregate is computed from the records
    on demand.
    """

    def __init__(self):
        self.logger = get_logger(__name__)
        self._records: List[CostRecord] = []
        self._by_request: Dict[str, CostRecord] = {}
        self._lock = threading.Lock()

    def append(self, record: CostRecord) -> None:
        """
        Append a record.

        Raises:
            ValueError: If a record for the request already exists
        """
        with self._lock:
            if record.request_id in self._by_request:
                raise ValueError(f"Cost record for request {record.request_id} already exists")
            self._records.append(record)
            self._by_request[record.request_id] = record

        self.logger.info(
            f"Cost recorded for {record.request_id}: ${record.cost_usd:.6f} on {record.model_id}"
            + (f", saved ${record.savings_usd:.6f} ({record.savings_attribution.value})"
               if record.savings_attribution else "")
        )

    def get(self, request_id: str) -> Optional[CostRecord]:
        with self._lock:
            return self._by_request.get(request_id)

    def records(self) -> List[CostRecord]:
        with self._lock:
            return list(self._records)

    def totals(self) -> Dict[str, Any]:
        """Totals over all records."""
        records = self.records()
        count = len(records)
        return {
            'requests': count,
            'total_cost_usd': sum(r.cost_usd for r in records),
            'total_savings_usd': sum(r.savings_usd for r in records),
            'prompt_tokens': sum(r.prompt_tokens for r in records),
            'completion_tokens': sum(r.completion_tokens for r in records),
            'avg_latency_ms': sum(r.latency_ms for r in records) / count if count else 0.0,
        }

    def roi(self) -> Dict[str, float]:
        """Savings relative to spend."""
        totals = self.totals()
        cost = totals['total_cost_usd']
        savings = totals['total_savings_usd']
        return {
            'total_cost_usd': cost,
            'total_savings_usd': savings,
            'baseline_cost_usd': cost + savings,
            'roi_percent': (savings / cost * 100) if cost > 0 else 0.0,
        }

    def per_model_breakdown(self) -> Dict[str, Dict[str, Any]]:
        """Requests, tokens, cost and average latency per model."""
        breakdown: Dict[str, Dict[str, Any]] = {}
        for record in self.records():
            entry = breakdown.setdefault(record.model_id, {
                'requests': 0, 'prompt_tokens': 0, 'completion_tokens': 0,
                'cost_usd': 0.0, 'savings_usd': 0.0, 'total_latency_ms': 0.0,
            })
            entry['requests'] += 1
            entry['prompt_tokens'] += record.prompt_tokens
            entry['completion_tokens'] += record.completion_tokens
            entry['cost_usd'] += record.cost_usd
            entry['savings_usd'] += record.savings_usd
            entry['total_latency_ms'] += record.latency_ms

        for entry in breakdown.values():
            entry['avg_latency_ms'] = entry.pop('total_latency_ms') / entry['requests']
        return breakdown

    def savings_by_category(self) -> Dict[str, float]:
        """Savings summed per category across all records."""
        totals = {category.value: 0.0 for category in _SAVINGS_ORDER}
        for record in self.records():
            for category, amount in record.savings_breakdown.items():
                totals[category] = totals.get(category, 0.0) + amount
        return totals


class SessionContextCache:
    """
    Caches fetched context (history, persona, knowledge base...) per session.

    A hit within the TTL avoids the fetch and reports the fetch cost as saved.
    Requests without a session id always fetch.
    """

    def __init__(self, ttl_seconds: float = 1800.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Tuple[str, str], Tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get_or_fetch(self, session_id: Optional[str], need: str, fetcher: Callable[[], Any],
                     fetch_cost_usd: float = 0.0) -> Tuple[Any, bool, float]:
        """
        Return a cached context value or fetch it.

        Returns:
            (value, reused, saved_usd)
        """
        if not session_id:
            return fetcher(), False, 0.0

        key = (session_id, need)
        now = self._clock()
        with self._lock:
            cached = self._entries.get(key)
            if cached is not None and now - cached[0] < self.ttl_seconds:
                self._hits += 1
                return cached[1], True, fetch_cost_usd

        value = fetcher()
        with self._lock:
            self._entries[key] = (now, value)
            self._misses += 1
        return value, False, 0.0

    def invalidate(self, session_id: Optional[str] = None) -> None:
        """Drop one session's entries, or everything."""
        with self._lock:
            if session_id is None:
                self._entries.clear()
            else:
                for key in [k for k in self._entries if k[0] == session_id]:
                    del self._entries[key]

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                'entries': len(self._entries),
                'hits': self._hits,
                'misses': self._misses,
                'hit_rate': (self._hits / lookups * 100) if lookups else 0.0,
            }

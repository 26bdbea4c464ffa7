"""
Priority request queue and worker-pool scheduler.
"""

import heapq
import itertools
import threading
import time
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from ..models import QueueItem, QueueStats
from ..models.config import QueueConfig
from ..models.enums import Priority, QueueStatus
from ..utils import get_logger, ExecutionLogger
from ..utils.error_handling import (
    InvalidTransitionError, RequestCancelledError, RequestNotFoundError,
    handle_error, compute_backoff_delay,
)
from .executor import CancellationToken

TIER_ORDER = (Priority.CRITICAL, Priority.HIGH, Priority.NORMAL, Priority.LOW)


class PriorityRequestQueue:
    """
    Pending requests in one heap per priority tier.

    Tiers drain strictly in order (critical, high, normal, low) and each heap
    is ordered by the item's enqueue sequence, so dispatch is FIFO within a
    tier. Reprioritizing keeps the original sequence; a retry gets a new
    sequence and joins the back of its tier once its backoff delay elapses.

    Items can also be held outside the heaps (still pending) while the batch
    aggregator decides whether to merge them; held items are released back
    into the heaps or claimed and finished by the batch that owns them.

    Heap entries are deleted lazily: an entry is live only while it matches
    the item's current (priority, sequence) and the item is still pending.
    """

    def __init__(self, config: Optional[QueueConfig] = None,
                 execution_logger: Optional[ExecutionLogger] = None):
        self.config = config or QueueConfig()
        self.logger = get_logger(__name__)
        self.execution_logger = execution_logger or ExecutionLogger("queue")

        self._cond = threading.Condition()
        self._sequence = itertools.count(1)
        self._heaps: Dict[Priority, List[Tuple[int, str]]] = {tier: [] for tier in TIER_ORDER}
        self._delayed: List[Tuple[float, int, str]] = []
        self._live_entry: Dict[str, Tuple[Priority, int]] = {}
        self._items: Dict[str, QueueItem] = {}
        self._held: Set[str] = set()
        self._processing: Set[str] = set()
        self._terminal_ids: Deque[str] = deque()
        self._closed = False

        # Metrics
        self._completed_count = 0
        self._failed_count = 0
        self._finish_times: Deque[float] = deque()
        self._wait_samples: Deque[float] = deque(maxlen=self.config.max_history)

    # ============= Producer side =============

    def submit(self, item: QueueItem, hold: bool = False) -> QueueItem:
        """
        Enqueue a new item.

        Args:
            item: The item; it must be pending
            hold: Keep the item out of the heaps until ``release`` is called

        Raises:
            InvalidTransitionError: If the item is not pending or already known
        """
        with self._cond:
            if item.id in self._items:
                raise InvalidTransitionError(f"Request {item.id} already queued",
                                             current_state=self._items[item.id].status.value)
            if item.status != QueueStatus.PENDING:
                raise InvalidTransitionError(f"Cannot queue a {item.status.value} request",
                                             current_state=item.status.value)

            item.sequence = next(self._sequence)
            self._items[item.id] = item
            if hold:
                self._held.add(item.id)
            else:
                self._push_locked(item)
                self._cond.notify()

        self.logger.debug(f"Queued {item.id} ({item.priority.value}, seq {item.sequence}, held={hold})")
        return item

    def release(self, request_id: str) -> bool:
        """Move a held item into its tier; returns False if it is no longer pending."""
        with self._cond:
            item = self._require_locked(request_id)
            if request_id not in self._held:
                return False
            self._held.discard(request_id)
            if item.status != QueueStatus.PENDING:
                return False
            self._push_locked(item)
            self._cond.notify()
        self.logger.debug(f"Released held request {request_id}")
        return True

    def claim(self, request_id: str) -> bool:
        """Move a held item straight to processing; returns False if it is no longer pending."""
        with self._cond:
            item = self._require_locked(request_id)
            if request_id not in self._held:
                return False
            self._held.discard(request_id)
            if item.status != QueueStatus.PENDING:
                return False
            self._start_locked(item)
        self.execution_logger.log_queue_transition(request_id, "pending", "processing", "batched")
        return True

    # ============= Consumer side =============

    def get(self, timeout: Optional[float] = None) -> Optional[QueueItem]:
        """
        Take the next item for processing.

        Blocks up to timeout seconds (forever when None). Returns None on
        timeout or after ``close``.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._closed:
                self._expire_locked()
                self._promote_delayed_locked()

                item = self._pop_locked()
                if item is not None:
                    self._start_locked(item)
                    break

                wait_for = self._next_wakeup_locked(deadline)
                if wait_for is not None and wait_for <= 0:
                    return None
                self._cond.wait(wait_for)
            else:
                return None

        self.execution_logger.log_queue_transition(item.id, "pending", "processing")
        return item

    def complete(self, request_id: str, result: Any = None) -> bool:
        """Mark an item completed."""
        return self._finish(request_id, QueueStatus.COMPLETED, result=result)

    def fail(self, request_id: str, error: str) -> bool:
        """Mark an item failed."""
        return self._finish(request_id, QueueStatus.FAILED, error=error)

    def mark_cancelled(self, request_id: str, error: str = "Request cancelled") -> bool:
        """Mark an item cancelled (used by the owning worker)."""
        return self._finish(request_id, QueueStatus.CANCELLED, error=error)

    def retry(self, request_id: str, error: str) -> bool:
        """
        Re-enqueue a failed item if it has retries left.

        Returns:
            True when the item was re-queued, False when it was marked failed
        """
        with self._cond:
            item = self._require_locked(request_id)
            if item.status != QueueStatus.PROCESSING:
                raise InvalidTransitionError(f"Cannot retry a {item.status.value} request",
                                             current_state=item.status.value)

            if item.retry_count + 1 > item.max_retries:
                exhausted = True
            else:
                exhausted = False
                item.retry_count += 1
                item.error = error
                item.status = QueueStatus.PENDING
                item.started_at = None
                item.sequence = next(self._sequence)
                self._processing.discard(request_id)
                delay = compute_backoff_delay(
                    item.retry_count,
                    self.config.backoff_base_seconds,
                    self.config.backoff_max_seconds,
                    jitter=self.config.backoff_jitter
                )
                heapq.heappush(self._delayed, (time.monotonic() + delay, item.sequence, item.id))
                self._cond.notify()

        if exhausted:
            self.logger.warning(f"Request {request_id} exhausted {item.max_retries} retries")
            return not self.fail(request_id, error)

        self.execution_logger.log_queue_transition(
            request_id, "processing", "pending",
            f"retry {item.retry_count}/{item.max_retries} in {delay:.2f}s: {error}"
        )
        return True

    def requeue(self, request_id: str) -> bool:
        """
        Return a processing item to the back of its tier without counting a retry.

        Returns:
            False if the item is already terminal
        """
        with self._cond:
            item = self._require_locked(request_id)
            if item.status.is_terminal:
                return False
            if item.status != QueueStatus.PROCESSING:
                raise InvalidTransitionError(f"Cannot requeue a {item.status.value} request",
                                             current_state=item.status.value)
            item.status = QueueStatus.PENDING
            item.started_at = None
            item.sequence = next(self._sequence)
            self._processing.discard(request_id)
            self._push_locked(item)
            self._cond.notify()

        self.execution_logger.log_queue_transition(request_id, "processing", "pending", "requeued")
        return True

    # ============= Control =============

    def cancel(self, request_id: str) -> QueueStatus:
        """
        Cancel a request.

        A pending item is cancelled at once. A processing item gets its
        cancellation flag set and is finished by its worker at the next step
        boundary.

        Returns:
            The item's status after the call

        Raises:
            RequestNotFoundError: If the id is unknown
            InvalidTransitionError: If the item already finished
        """
        with self._cond:
            item = self._require_locked(request_id)
            status = item.status
            if status.is_terminal:
                raise InvalidTransitionError(f"Request {request_id} already {status.value}",
                                             current_state=status.value)
            item.cancel_requested.set()
            if status == QueueStatus.PENDING:
                self._finish_locked(item, QueueStatus.CANCELLED, error="Request cancelled")

        if status == QueueStatus.PENDING:
            self.execution_logger.log_queue_transition(request_id, "pending", "cancelled")
            return QueueStatus.CANCELLED

        self.logger.info(f"Cancellation requested for processing request {request_id}")
        return QueueStatus.PROCESSING

    def reprioritize(self, request_id: str, new_priority: Priority) -> QueueItem:
        """
        Move a pending item to another tier, keeping its enqueue sequence.

        Raises:
            RequestNotFoundError: If the id is unknown
            InvalidTransitionError: If the item is not pending
        """
        with self._cond:
            item = self._require_locked(request_id)
            if item.status != QueueStatus.PENDING:
                raise InvalidTransitionError(
                    f"Only pending requests can be reprioritized ({request_id} is {item.status.value})",
                    current_state=item.status.value
                )
            old_priority = item.priority
            item.priority = new_priority
            if request_id in self._live_entry:
                # The old heap entry goes stale
                self._push_locked(item)
                self._cond.notify()

        self.logger.info(f"Request {request_id} reprioritized {old_priority.value} -> {new_priority.value}")
        return item

    def wait(self, request_id: str, timeout: Optional[float] = None) -> QueueItem:
        """Block until the item is terminal or the timeout passes; returns the item."""
        item = self.get_item(request_id)
        item.done.wait(timeout)
        return item

    def get_item(self, request_id: str) -> QueueItem:
        with self._cond:
            return self._require_locked(request_id)

    def expire_stale(self) -> List[str]:
        """Expire pending items older than the maximum queue time."""
        with self._cond:
            return self._expire_locked()

    def stats(self) -> QueueStats:
        """Snapshot of queue health."""
        with self._cond:
            self._expire_locked()
            now = datetime.now()
            pending = [item for item in self._items.values() if item.status == QueueStatus.PENDING]
            pending_by_priority = {tier.value: 0 for tier in TIER_ORDER}
            for item in pending:
                pending_by_priority[item.priority.value] += 1

            window = self.config.stats_window_seconds
            cutoff = time.monotonic() - window
            while self._finish_times and self._finish_times[0] < cutoff:
                self._finish_times.popleft()
            throughput = len(self._finish_times) * 60.0 / window if window > 0 else 0.0

            avg_wait = sum(self._wait_samples) / len(self._wait_samples) if self._wait_samples else 0.0
            oldest = max(((now - item.created_at).total_seconds() * 1000 for item in pending), default=0.0)

            return QueueStats(
                pending_by_priority=pending_by_priority,
                processing_count=len(self._processing),
                throughput_per_minute=throughput,
                avg_wait_ms=avg_wait,
                completed_count=self._completed_count,
                failed_count=self._failed_count,
                oldest_pending_age_ms=oldest,
            )

    def close(self) -> None:
        """Wake all consumers; ``get`` returns None afterwards."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    # ============= Internals (lock held) =============

    def _require_locked(self, request_id: str) -> QueueItem:
        item = self._items.get(request_id)
        if item is None:
            raise RequestNotFoundError(f"Unknown request {request_id}", request_id=request_id)
        return item

    def _push_locked(self, item: QueueItem) -> None:
        heapq.heappush(self._heaps[item.priority], (item.sequence, item.id))
        self._live_entry[item.id] = (item.priority, item.sequence)

    def _pop_locked(self) -> Optional[QueueItem]:
        for tier in TIER_ORDER:
            heap = self._heaps[tier]
            while heap:
                sequence, request_id = heapq.heappop(heap)
                item = self._items.get(request_id)
                if (item is None or item.status != QueueStatus.PENDING
                        or self._live_entry.get(request_id) != (tier, sequence)):
                    continue
                del self._live_entry[request_id]
                return item
        return None

    def _promote_delayed_locked(self) -> None:
        now = time.monotonic()
        while self._delayed and self._delayed[0][0] <= now:
            _, sequence, request_id = heapq.heappop(self._delayed)
            item = self._items.get(request_id)
            if item is not None and item.status == QueueStatus.PENDING and item.sequence == sequence:
                self._push_locked(item)

    def _next_wakeup_locked(self, deadline: Optional[float]) -> Optional[float]:
        now = time.monotonic()
        candidates = [self.config.poll_interval_seconds * 20]
        if self._delayed:
            candidates.append(max(self._delayed[0][0] - now, 0.001))
        if deadline is not None:
            candidates.append(deadline - now)
        return min(candidates)

    def _start_locked(self, item: QueueItem) -> None:
        item.status = QueueStatus.PROCESSING
        item.started_at = datetime.now()
        self._processing.add(item.id)
        self._wait_samples.append(item.wait_ms or 0.0)

    def _expire_locked(self) -> List[str]:
        now = datetime.now()
        limit = self.config.max_queue_time_seconds
        expired = []
        for item in list(self._items.values()):
            if item.status == QueueStatus.PENDING and (now - item.created_at).total_seconds() > limit:
                self._finish_locked(item, QueueStatus.EXPIRED, error="Request expired in queue")
                expired.append(item.id)
        for request_id in expired:
            self.logger.warning(f"Request {request_id} expired after {limit}s in queue")
        return expired

    def _finish(self, request_id: str, status: QueueStatus, result: Any = None,
                error: Optional[str] = None) -> bool:
        with self._cond:
            item = self._require_locked(request_id)
            old_status = item.status
            if old_status.is_terminal:
                return False
            self._finish_locked(item, status, result, error)

        self.execution_logger.log_queue_transition(request_id, old_status.value, status.value, error)
        return True

    def _finish_locked(self, item: QueueItem, status: QueueStatus, result: Any = None,
                       error: Optional[str] = None) -> None:
        item.status = status
        item.completed_at = datetime.now()
        if result is not None:
            item.result = result
        if error is not None:
            item.error = error
        elif status == QueueStatus.COMPLETED:
            item.error = None

        self._processing.discard(item.id)
        self._held.discard(item.id)
        self._live_entry.pop(item.id, None)

        if status == QueueStatus.COMPLETED:
            self._completed_count += 1
            self._finish_times.append(time.monotonic())
        elif status == QueueStatus.FAILED:
            self._failed_count += 1

        self._terminal_ids.append(item.id)
        while len(self._terminal_ids) > self.config.max_history:
            self._items.pop(self._terminal_ids.popleft(), None)

        item.done.set()


QueueHandler = Callable[[QueueItem, CancellationToken], Any]


class Scheduler:
    """
    Pool of worker threads draining a PriorityRequestQueue.

    Each worker owns one item from dispatch to its terminal state (or its
    re-queue for retry). Handler failures marked retryable are retried per
    the item's ``max_retries``; all other failures fail the item at once.
    """

    def __init__(self, queue: PriorityRequestQueue, handler: QueueHandler,
                 config: Optional[QueueConfig] = None):
        self.queue = queue
        self.handler = handler
        self.config = config or queue.config
        self.logger = get_logger(__name__)
        self._workers: List[threading.Thread] = []
        self._running = threading.Event()

    def start(self) -> None:
        """Start the worker threads."""
        if self._running.is_set():
            return
        self._running.set()
        for index in range(self.config.worker_count):
            worker = threading.Thread(target=self._worker_loop, name=f"cosmo-worker-{index}",
                                      daemon=True)
            worker.start()
            self._workers.append(worker)
        self.logger.info(f"Scheduler started with {self.config.worker_count} workers")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the workers after their current item."""
        self._running.clear()
        self.queue.close()
        for worker in self._workers:
            worker.join(timeout)
        self._workers.clear()
        self.logger.info("Scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running.is_set()

    def _worker_loop(self) -> None:
        while self._running.is_set():
            item = self.queue.get(timeout=self.config.poll_interval_seconds)
            if item is None:
                continue
            self.process(item)

    def process(self, item: QueueItem) -> None:
        """Run the handler for one dispatched item and record its outcome."""
        token = CancellationToken(item.cancel_requested)
        if token.cancelled:
            self.queue.mark_cancelled(item.id)
            return

        try:
            result = self.handler(item, token)
        except RequestCancelledError as e:
            self.queue.mark_cancelled(item.id, e.message)
        except Exception as e:
            error = handle_error(e, context={"request_id": item.id})
            if error.retryable:
                self.queue.retry(item.id, error.message)
            else:
                self.logger.error(f"Request {item.id} failed: {error.message}")
                self.queue.fail(item.id, error.message)
        else:
            self.queue.complete(item.id, result)

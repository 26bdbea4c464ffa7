"""
Batch Aggregator: merges compatible model_call requests into one upstream call.
"""

import re
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from ..models import Batch, BatchMembership, QueueItem, UpstreamResponse
from ..models.config import BatchConfig
from ..models.enums import BatchStatus
from ..utils import get_logger, ExecutionLogger
from ..utils.error_handling import handle_error
from .queue import PriorityRequestQueue

COMBINED_PROMPT_HEADER = """You will answer multiple questions. Provide each answer in the format:

[ANSWER N]
(answer to question N)
[/ANSWER N]

Where N is the question number. Be thorough and complete for each answer.

Questions:"""

BatchCall = Callable[[Optional[str], str], UpstreamResponse]
MemberCallback = Callable[[QueueItem, str, Dict[str, Any]], Any]


def build_combined_prompt(prompts: List[str]) -> str:
    """Combine member prompts into one numbered prompt."""
    questions = "\n\n".join(f"Q{index}: {prompt}" for index, prompt in enumerate(prompts, start=1))
    return f"{COMBINED_PROMPT_HEADER}\n{questions}"


def extract_answers(content: str, count: int) -> Dict[int, str]:
    """Split a combined response into answers keyed by question number (1-based)."""
    answers = {}
    for number in range(1, count + 1):
        pattern = rf"\[ANSWER {number}\](.*?)\[/ANSWER {number}\]"
        match = re.search(pattern, content or "", re.IGNORECASE | re.DOTALL)
        if match and match.group(1).strip():
            answers[number] = match.group(1).strip()
    return answers


class BatchAggregator:
    """
    Groups compatible requests into batches.

    Requests are compatible when they share model, action type and the set of
    context keys. Each compatibility key has at most one open batch; the batch
    closes when its window timer fires or when it reaches the maximum size.
    Members stay pending in the queue (held) until their batch closes.

    A closed batch with one member is released back to the queue untouched.
    Larger batches go to the ``on_close`` callback, which is expected to
    schedule ``execute_batch``. Members without an answer in the combined
    response, and all members when the combined call fails, are re-queued to
    run on their own.
    """

    def __init__(self, queue: PriorityRequestQueue, on_close: Callable[[Batch], None],
                 config: Optional[BatchConfig] = None,
                 execution_logger: Optional[ExecutionLogger] = None):
        self.queue = queue
        self.on_close = on_close
        self.config = config or BatchConfig()
        self.logger = get_logger(__name__)
        self.execution_logger = execution_logger or ExecutionLogger("batching")

        self._lock = threading.Lock()
        self._open: Dict[Tuple[Any, ...], Batch] = {}
        self._batches: Dict[str, Batch] = {}
        self._timers: Dict[str, threading.Timer] = {}
        self._history: Deque[str] = deque()
        self._max_history = 1000

    @staticmethod
    def batch_key(model_id: Optional[str], action_type: str,
                  context_keys: Iterable[str]) -> Tuple[Any, ...]:
        return (model_id, action_type, tuple(sorted(context_keys)))

    def offer(self, item: QueueItem, model_id: Optional[str], action_type: str,
              context_keys: Iterable[str] = ()) -> BatchMembership:
        """
        Add a held queue item to the open batch for its key.

        The item must already be submitted to the queue with ``hold=True``.

        Returns:
            BatchMembership describing the batch joined
        """
        key = self.batch_key(model_id, action_type, context_keys)
        window = timedelta(milliseconds=self.config.window_ms)
        timer = None

        with self._lock:
            batch = self._open.get(key)
            if batch is None:
                now = datetime.now()
                batch = Batch(key=key, model_id=model_id, created_at=now,
                              window_expires_at=now + window)
                self._open[key] = batch
                self._batches[batch.id] = batch
                timer = threading.Timer(window.total_seconds(), self._on_window_expired, args=(batch.id,))
                timer.daemon = True
                self._timers[batch.id] = timer

            batch.request_ids.append(item.id)
            position = batch.size - 1
            full = batch.size >= self.config.max_size
            if full:
                self._close_locked(batch)

        if timer is not None and not full:
            timer.start()

        self.logger.debug(f"Request {item.id} joined batch {batch.id} at position {position}")
        membership = BatchMembership(
            batch_id=batch.id,
            request_id=item.id,
            position=position,
            window_expires_at=batch.window_expires_at,
        )

        if full:
            self._dispatch(batch)
        return membership

    def get_batch(self, batch_id: str) -> Optional[Batch]:
        with self._lock:
            return self._batches.get(batch_id)

    def flush(self) -> None:
        """Close every open batch now."""
        with self._lock:
            batches = list(self._open.values())
            for batch in batches:
                self._close_locked(batch)
        for batch in batches:
            self._dispatch(batch)

    def execute_batch(self, batch: Batch, call: BatchCall, on_answer: MemberCallback) -> Batch:
        """
        Run a closed batch as one upstream call.

        Args:
            batch: A closed batch
            call: Performs the upstream call: (model_id, prompt) -> UpstreamResponse
            on_answer: Builds a member's result from (item, answer, usage share);
                its return value completes the member's queue item

        Returns:
            The batch with its final status and savings
        """
        # Step 1: Claim live members; cancelled or expired ones are skipped
        members = [self.queue.get_item(request_id) for request_id in batch.request_ids
                   if self.queue.claim(request_id)]
        if not members:
            self._set_outcome(batch, BatchStatus.COMPLETED, 0)
            return batch

        # Step 2: One combined upstream call
        prompt = build_combined_prompt([item.payload.get("text", "") for item in members])
        try:
            response = call(batch.model_id, prompt)
        except Exception as e:
            error = handle_error(e, context={"batch_id": batch.id})
            self.logger.error(f"Batch {batch.id} call failed, re-queueing {len(members)} members: "
                              f"{error.message}")
            for item in members:
                self._resubmit(item)
            self._set_outcome(batch, BatchStatus.FAILED, 0, error.message)
            return batch

        # Step 3: Demultiplex answers per member; cancellations take effect now
        answers = extract_answers(response.content, len(members))
        resolved = []
        for number, item in enumerate(members, start=1):
            if item.cancel_requested.is_set():
                self.logger.info(f"Batch member {item.id} was cancelled during the call")
                self.queue.mark_cancelled(item.id)
            elif number in answers:
                resolved.append((item, answers[number]))
            else:
                self.logger.warning(f"Batch {batch.id} has no answer for {item.id}, re-queueing")
                self._resubmit(item)

        saved = max(len(resolved) - 1, 0)
        share = self._usage_share(response, len(resolved), saved)

        # Step 4: Finish members independently
        for item, answer in resolved:
            try:
                result = on_answer(item, answer, share)
            except Exception as e:
                error = handle_error(e, context={"batch_id": batch.id, "request_id": item.id})
                self.logger.error(f"Batch member {item.id} failed: {error.message}")
                self.queue.fail(item.id, error.message)
            else:
                self.queue.complete(item.id, result)

        status = BatchStatus.COMPLETED if resolved else BatchStatus.FAILED
        self._set_outcome(batch, status, saved, None if resolved else "No answers in combined response")
        return batch

    def stats(self) -> Dict[str, Any]:
        """Batch statistics over retained batches."""
        with self._lock:
            batches = list(self._batches.values())
            active = len(self._open)

        finished = [b for b in batches if b.status in (BatchStatus.COMPLETED, BatchStatus.FAILED)]
        completed = [b for b in finished if b.status == BatchStatus.COMPLETED]
        sizes = [b.size for b in batches if b.status != BatchStatus.OPEN]

        return {
            'active_batches': active,
            'total_batches': len(batches),
            'avg_batch_size': sum(sizes) / len(sizes) if sizes else 0.0,
            'api_calls_saved': sum(b.api_calls_saved for b in batches),
            'tokens_saved': sum(b.tokens_saved for b in batches),
            'success_rate': (len(completed) / len(finished) * 100) if finished else 0.0,
        }

    def shutdown(self) -> None:
        """Cancel window timers and release every open batch."""
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        self.flush()

    def _on_window_expired(self, batch_id: str) -> None:
        with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None or batch.status != BatchStatus.OPEN:
                return
            self._close_locked(batch)
        self._dispatch(batch)

    def _close_locked(self, batch: Batch) -> None:
        batch.status = BatchStatus.CLOSED
        batch.closed_at = datetime.now()
        if self._open.get(batch.key) is batch:
            del self._open[batch.key]
        timer = self._timers.pop(batch.id, None)
        if timer is not None:
            timer.cancel()

        self._history.append(batch.id)
        while len(self._history) > self._max_history:
            self._batches.pop(self._history.popleft(), None)

    def _dispatch(self, batch: Batch) -> None:
        self.execution_logger.log_batch(batch.id, {
            'status': batch.status.value,
            'size': batch.size,
            'model_id': batch.model_id,
        })
        if batch.size > 1:
            self.on_close(batch)
            return

        # A lone member runs as a normal request
        for request_id in batch.request_ids:
            self.queue.get_item(request_id).batchable = False
            self.queue.release(request_id)
        self._set_outcome(batch, BatchStatus.COMPLETED, 0)

    def _resubmit(self, item: QueueItem) -> None:
        if item.cancel_requested.is_set():
            self.queue.mark_cancelled(item.id)
            return
        item.batchable = False
        self.queue.requeue(item.id)

    def _usage_share(self, response: UpstreamResponse, resolved: int, saved: int) -> Dict[str, Any]:
        """Per-member share of the combined call's usage and the batch savings."""
        count = max(resolved, 1)
        return {
            'prompt_tokens': response.prompt_tokens // count,
            'completion_tokens': response.completion_tokens // count,
            'latency_ms': response.latency_ms,
            'batch_size': resolved,
            'api_calls_saved': saved,
            'tokens_saved_share': saved * self.config.per_call_overhead_tokens / count,
        }

    def _set_outcome(self, batch: Batch, status: BatchStatus, saved: int,
                     error: Optional[str] = None) -> None:
        with self._lock:
            batch.status = status
            batch.api_calls_saved = saved
            batch.tokens_saved = saved * self.config.per_call_overhead_tokens
            batch.error = error
        self.execution_logger.log_batch(batch.id, {
            'status': status.value,
            'size': batch.size,
            'api_calls_saved': batch.api_calls_saved,
            'tokens_saved': batch.tokens_saved,
            'error': error,
        })

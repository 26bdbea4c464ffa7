"""
Tests for batch aggregation and combined-response demultiplexing.
"""

import threading
import time

import pytest

from conftest import FakeModelClient
from cosmo_engine.core import BatchAggregator, PriorityRequestQueue
from cosmo_engine.core.batching import build_combined_prompt, extract_answers
from cosmo_engine.models import BatchConfig, BatchStatus, QueueConfig, QueueItem, QueueStatus
from cosmo_engine.utils import UpstreamError


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


@pytest.fixture
def queue():
    return PriorityRequestQueue(QueueConfig(poll_interval_seconds=0.01))


@pytest.fixture
def closed():
    return []


def _aggregator(queue, closed, **config):
    config.setdefault("window_ms", 200)
    return BatchAggregator(queue, closed.append, BatchConfig(**config))


def _held(queue, text):
    return queue.submit(QueueItem(payload={"text": text}), hold=True)


def _answer(item, answer, share):
    return answer


def test_requests_inside_window_merge_into_one_batch(queue, closed):
    aggregator = _aggregator(queue, closed, window_ms=200)
    first = _held(queue, "What is 2+2?")
    second = _held(queue, "Name a prime number")

    membership_a = aggregator.offer(first, "cheap", "model_call")
    time.sleep(0.05)
    membership_b = aggregator.offer(second, "cheap", "model_call")

    assert membership_a.batch_id == membership_b.batch_id
    assert (membership_a.position, membership_b.position) == (0, 1)
    assert _wait_for(lambda: closed)

    batch = closed[0]
    client = FakeModelClient(reply=lambda model_id, prompt: f"re: {prompt}")
    aggregator.execute_batch(batch, client.complete, _answer)

    assert batch.status == BatchStatus.COMPLETED
    assert batch.api_calls_saved == 1
    assert batch.tokens_saved == 100
    assert len(client.calls) == 1
    assert first.status == QueueStatus.COMPLETED and first.result == "re: What is 2+2?"
    assert second.status == QueueStatus.COMPLETED and second.result == "re: Name a prime number"


def test_single_member_batch_saves_nothing(queue, closed):
    aggregator = _aggregator(queue, closed, window_ms=20)
    item = _held(queue, "alone")

    membership = aggregator.offer(item, "cheap", "model_call")
    batch = aggregator.get_batch(membership.batch_id)

    assert _wait_for(lambda: batch.status == BatchStatus.COMPLETED)
    assert batch.api_calls_saved == 0
    assert closed == []
    assert not item.batchable
    assert queue.get(timeout=0) is item


def test_full_batch_closes_immediately(queue, closed):
    aggregator = _aggregator(queue, closed, window_ms=10_000, max_size=2)

    aggregator.offer(_held(queue, "a"), "cheap", "model_call")
    aggregator.offer(_held(queue, "b"), "cheap", "model_call")

    assert len(closed) == 1
    assert closed[0].size == 2
    assert closed[0].status == BatchStatus.CLOSED
    aggregator.shutdown()


def test_incompatible_requests_use_separate_batches(queue, closed):
    aggregator = _aggregator(queue, closed, window_ms=10_000)

    a = aggregator.offer(_held(queue, "a"), "cheap", "model_call", ["history"])
    b = aggregator.offer(_held(queue, "b"), "premium", "model_call", ["history"])
    c = aggregator.offer(_held(queue, "c"), "cheap", "model_call", [])
    d = aggregator.offer(_held(queue, "d"), "cheap", "model_call", ("history",))

    assert len({a.batch_id, b.batch_id, c.batch_id}) == 3
    assert d.batch_id == a.batch_id
    aggregator.shutdown()


def test_members_without_answers_are_requeued(queue, closed):
    aggregator = _aggregator(queue, closed, window_ms=10_000, max_size=2)
    first = _held(queue, "answered")
    second = _held(queue, "dropped")
    aggregator.offer(first, "cheap", "model_call")
    aggregator.offer(second, "cheap", "model_call")

    client = FakeModelClient(drop_answers={2})
    batch = aggregator.execute_batch(closed[0], client.complete, _answer)

    assert first.status == QueueStatus.COMPLETED
    assert second.status == QueueStatus.PENDING
    assert not second.batchable
    assert queue.get(timeout=0) is second
    assert batch.status == BatchStatus.COMPLETED
    assert batch.api_calls_saved == 0


def test_failed_call_requeues_every_member(queue, closed):
    aggregator = _aggregator(queue, closed, window_ms=10_000, max_size=2)
    members = [_held(queue, "a"), _held(queue, "b")]
    for item in members:
        aggregator.offer(item, "cheap", "model_call")

    client = FakeModelClient(failures=[UpstreamError("bad gateway")])
    batch = aggregator.execute_batch(closed[0], client.complete, _answer)

    assert batch.status == BatchStatus.FAILED
    assert batch.api_calls_saved == 0
    assert all(item.status == QueueStatus.PENDING for item in members)
    assert {queue.get(timeout=0).id, queue.get(timeout=0).id} == {item.id for item in members}


def test_member_failure_does_not_fail_siblings(queue, closed):
    aggregator = _aggregator(queue, closed, window_ms=10_000, max_size=2)
    good = _held(queue, "good")
    bad = _held(queue, "bad")
    aggregator.offer(good, "cheap", "model_call")
    aggregator.offer(bad, "cheap", "model_call")

    def on_answer(item, answer, share):
        if item is bad:
            raise RuntimeError("could not store answer")
        return answer

    aggregator.execute_batch(closed[0], FakeModelClient().complete, on_answer)

    assert good.status == QueueStatus.COMPLETED
    assert bad.status == QueueStatus.FAILED


def test_cancelled_members_are_skipped(queue, closed):
    aggregator = _aggregator(queue, closed, window_ms=10_000, max_size=2)
    kept = _held(queue, "kept")
    gone = _held(queue, "gone")
    aggregator.offer(kept, "cheap", "model_call")
    aggregator.offer(gone, "cheap", "model_call")
    queue.cancel(gone.id)

    client = FakeModelClient()
    aggregator.execute_batch(closed[0], client.complete, _answer)

    assert kept.status == QueueStatus.COMPLETED
    assert gone.status == QueueStatus.CANCELLED
    assert "Q2:" not in client.calls[0][1]


def test_member_cancelled_during_the_call_is_not_completed(queue, closed):
    aggregator = _aggregator(queue, closed, window_ms=10_000, max_size=2)
    kept = _held(queue, "kept")
    gone = _held(queue, "gone")
    aggregator.offer(kept, "cheap", "model_call")
    aggregator.offer(gone, "cheap", "model_call")

    client = FakeModelClient()
    entered = threading.Event()
    release = threading.Event()

    def slow_call(model_id, prompt):
        entered.set()
        release.wait(2.0)
        return client.complete(model_id, prompt)

    runner = threading.Thread(target=aggregator.execute_batch, args=(closed[0], slow_call, _answer))
    runner.start()
    assert entered.wait(2.0)
    assert queue.cancel(gone.id) == QueueStatus.PROCESSING
    release.set()
    runner.join(2.0)

    assert kept.status == QueueStatus.COMPLETED
    assert gone.status == QueueStatus.CANCELLED
    assert gone.result is None
    assert aggregator.get_batch(closed[0].id).api_calls_saved == 0


def test_stats_after_batches(queue, closed):
    aggregator = _aggregator(queue, closed, window_ms=10_000, max_size=2)
    aggregator.offer(_held(queue, "a"), "cheap", "model_call")
    aggregator.offer(_held(queue, "b"), "cheap", "model_call")
    aggregator.execute_batch(closed[0], FakeModelClient().complete, _answer)

    stats = aggregator.stats()

    assert stats["total_batches"] == 1
    assert stats["api_calls_saved"] == 1
    assert stats["avg_batch_size"] == 2
    assert stats["success_rate"] == 100


def test_combined_prompt_round_trip():
    prompt = build_combined_prompt(["first question", "second question"])

    assert "Q1: first question" in prompt
    assert "Q2: second question" in prompt

    content = "[ANSWER 1]\none\n[/ANSWER 1]\n[answer 2] two [/answer 2]\n[ANSWER 3][/ANSWER 3]"
    assert extract_answers(content, 3) == {1: "one", 2: "two"}

"""
Tests for online_recsys.update_queue.UpdateQueue
-------------------------------------------------
Covers:
- Tier-then-FIFO ordering
- Capacity enforcement and eviction order
- Batch dequeue, peek, clear
- Priority parsing on jobs
"""

import threading

import pytest

from online_recsys.events import FeedbackEvent, Priority, UpdateJob
from online_recsys.update_queue import UpdateQueue


def make_job(priority, user_id="u1", item_id="m1", value=5.0):
    return UpdateJob(user_id=user_id, item_id=item_id, value=value,
                     action="rate", priority=Priority.parse(priority))


# ===================================================================
# Ordering
# ===================================================================

class TestOrdering:
    """Jobs leave highest tier first, insertion order within a tier."""

    def test_mixed_priorities_drain_by_tier(self):
        queue = UpdateQueue(capacity=10)
        for p in ("high", "medium", "low", "high"):
            queue.enqueue(make_job(p))

        drained = queue.dequeue_batch(10)
        assert [j.priority.label for j in drained] == ["high", "high", "medium", "low"]

    def test_fifo_within_tier(self):
        queue = UpdateQueue(capacity=10)
        jobs = [make_job("medium", item_id=f"m{i}") for i in range(5)]
        for job in jobs:
            queue.enqueue(job)

        assert [j.item_id for j in queue.dequeue_batch(5)] == [f"m{i}" for i in range(5)]

    def test_new_job_lands_before_first_lower_priority(self):
        queue = UpdateQueue(capacity=10)
        queue.enqueue(make_job("low", item_id="a"))
        queue.enqueue(make_job("medium", item_id="b"))
        queue.enqueue(make_job("high", item_id="c"))
        queue.enqueue(make_job("medium", item_id="d"))

        assert [j.item_id for j in queue.peek_all()] == ["c", "b", "d", "a"]

    def test_dequeue_batch_respects_max_size(self):
        queue = UpdateQueue(capacity=10)
        for p in ("low", "high", "medium"):
            queue.enqueue(make_job(p))

        batch = queue.dequeue_batch(2)
        assert [j.priority for j in batch] == [Priority.HIGH, Priority.MEDIUM]
        assert len(queue) == 1
        assert queue.dequeue_batch(5)[0].priority == Priority.LOW
        assert queue.is_empty()

    def test_dequeue_from_empty_queue(self):
        assert UpdateQueue(capacity=3).dequeue_batch(10) == []


# ===================================================================
# Capacity
# ===================================================================

class TestCapacity:
    """Length never exceeds capacity; lowest tier oldest jobs go first."""

    def test_length_never_exceeds_capacity(self):
        queue = UpdateQueue(capacity=5)
        for i in range(20):
            queue.enqueue(make_job(["low", "medium", "high"][i % 3], item_id=f"m{i}"))
            assert len(queue) <= 5

    def test_evicts_oldest_of_lowest_tier(self):
        queue = UpdateQueue(capacity=3)
        queue.enqueue(make_job("low", item_id="old_low"))
        queue.enqueue(make_job("low", item_id="new_low"))
        queue.enqueue(make_job("high", item_id="h1"))

        evicted = queue.enqueue(make_job("medium", item_id="m1"))

        assert [j.item_id for j in evicted] == ["old_low"]
        assert [j.item_id for j in queue.peek_all()] == ["h1", "m1", "new_low"]
        assert queue.evicted_total == 1

    def test_never_evicts_higher_tier_while_lower_exists(self):
        queue = UpdateQueue(capacity=2)
        queue.enqueue(make_job("high", item_id="h1"))
        queue.enqueue(make_job("low", item_id="l1"))

        evicted = queue.enqueue(make_job("high", item_id="h2"))

        assert [j.item_id for j in evicted] == ["l1"]
        assert all(j.priority == Priority.HIGH for j in queue.peek_all())

    def test_incoming_job_can_be_evicted_when_lowest(self):
        queue = UpdateQueue(capacity=1)
        queue.enqueue(make_job("high", item_id="h1"))

        evicted = queue.enqueue(make_job("low", item_id="l1"))

        assert [j.item_id for j in evicted] == ["l1"]
        assert [j.item_id for j in queue.peek_all()] == ["h1"]

    def test_overflow_is_logged(self, caplog):
        queue = UpdateQueue(capacity=1)
        queue.enqueue(make_job("low"))
        with caplog.at_level("WARNING"):
            queue.enqueue(make_job("low"))
        assert "exceeded" in caplog.text

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            UpdateQueue(capacity=0)


# ===================================================================
# Inspection and concurrency
# ===================================================================

class TestInspection:

    def test_counts_by_priority_and_clear(self):
        queue = UpdateQueue(capacity=10)
        for p in ("low", "low", "high"):
            queue.enqueue(make_job(p))

        assert queue.counts_by_priority() == {"high": 1, "medium": 0, "low": 2}

        cleared = queue.clear()
        assert len(cleared) == 3
        assert queue.length() == 0

    def test_concurrent_enqueue_keeps_bookkeeping(self):
        queue = UpdateQueue(capacity=50)

        def producer(tag):
            for i in range(100):
                queue.enqueue(make_job("medium", item_id=f"{tag}-{i}"))

        threads = [threading.Thread(target=producer, args=(t,)) for t in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(queue) == 50
        assert len(queue.peek_all()) == 50
        assert queue.evicted_total == 350


class TestJobs:

    def test_from_event_applies_default_priority(self):
        event = FeedbackEvent(user_id="u1", item_id="m1", value=7.0)
        job = UpdateJob.from_event(event, Priority.MEDIUM)
        assert job.priority == Priority.MEDIUM
        assert job.to_dict()["priority"] == "medium"

    def test_sequence_is_monotonic(self):
        first, second = make_job("low"), make_job("low")
        assert second.sequence > first.sequence

    @pytest.mark.parametrize("raw,expected", [
        ("HIGH", Priority.HIGH), ("low", Priority.LOW), (2, Priority.MEDIUM), (Priority.HIGH, Priority.HIGH),
    ])
    def test_priority_parse(self, raw, expected):
        assert Priority.parse(raw) == expected

    @pytest.mark.parametrize("raw", ["urgent", 0, 4, None, True, 1.5])
    def test_priority_parse_rejects_unknown(self, raw):
        with pytest.raises(ValueError):
            Priority.parse(raw)

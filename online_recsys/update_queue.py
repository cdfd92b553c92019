"""
Priority Update Queue

Buffers feedback jobs waiting to be folded into the model. Jobs leave the
queue highest tier first and in insertion order inside a tier. When the
queue is over capacity the oldest jobs of the lowest non-empty tier are
evicted first.
"""

import logging
import threading
from collections import deque
from typing import Deque, Dict, List, Optional

from . import config
from .events import Priority, UpdateJob

logger = logging.getLogger(__name__)

# Highest tier first
_DRAIN_ORDER = sorted(Priority, key=lambda p: p.ordinal, reverse=True)


class UpdateQueue:
    """
    Thread-safe tier-then-FIFO queue of UpdateJobs.

    One deque per tier keeps both insertion and eviction O(1): a new job
    lands at the tail of its tier, which is the same position as inserting
    it before the first job of strictly lower priority in a single list.
    """

    def __init__(self, capacity: Optional[int] = None):
        self.capacity = capacity if capacity is not None else config.QUEUE_CONFIG["max_queue_size"]
        if self.capacity <= 0:
            raise ValueError(f"Queue capacity must be positive, got {self.capacity}")

        self._tiers: Dict[Priority, Deque[UpdateJob]] = {p: deque() for p in Priority}
        self._size = 0
        self._lock = threading.Lock()
        self.evicted_total = 0

    def enqueue(self, job: UpdateJob) -> List[UpdateJob]:
        """
        Insert a job and enforce capacity.

        Returns:
            Jobs evicted to make room (empty list in the common case)
        """
        evicted = []
        with self._lock:
            self._tiers[job.priority].append(job)
            self._size += 1

            while self._size > self.capacity:
                evicted.append(self._evict_one())

            self.evicted_total += len(evicted)

        if evicted:
            logger.warning(
                f"Update queue size exceeded ({self.capacity}), "
                f"dropped {len(evicted)} oldest low-priority job(s)"
            )
        return evicted

    def _evict_one(self) -> UpdateJob:
        for priority in reversed(_DRAIN_ORDER):
            tier = self._tiers[priority]
            if tier:
                self._size -= 1
                return tier.popleft()
        raise RuntimeError("Queue size bookkeeping out of sync")

    def dequeue_batch(self, max_size: int) -> List[UpdateJob]:
        """Remove and return up to max_size jobs from the head."""
        batch = []
        with self._lock:
            for priority in _DRAIN_ORDER:
                tier = self._tiers[priority]
                while tier and len(batch) < max_size:
                    batch.append(tier.popleft())
                if len(batch) >= max_size:
                    break
            self._size -= len(batch)
        return batch

    def peek_all(self) -> List[UpdateJob]:
        """Snapshot of the queue in drain order, for inspection."""
        with self._lock:
            return [job for priority in _DRAIN_ORDER for job in self._tiers[priority]]

    def clear(self) -> List[UpdateJob]:
        with self._lock:
            jobs = [job for priority in _DRAIN_ORDER for job in self._tiers[priority]]
            for tier in self._tiers.values():
                tier.clear()
            self._size = 0
        return jobs

    def length(self) -> int:
        return self._size

    def is_empty(self) -> bool:
        return self._size == 0

    def __len__(self) -> int:
        return self._size

    def counts_by_priority(self) -> Dict[str, int]:
        with self._lock:
            return {p.label: len(self._tiers[p]) for p in _DRAIN_ORDER}

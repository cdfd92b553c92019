"""
Online Learning Coordinator

Drains the update queue in batches and folds them into the latent factor
model without a full retrain:
- Threshold, manual and timer triggered drain cycles (one at a time)
- Rolling accuracy/loss via exponential moving average
- Learning rate adaptation from the recent accuracy trend
- Per-user cache invalidation after every applied batch
- Graceful shutdown that drains instead of discarding
"""

import enum
import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Union

from . import config
from .cache import RecommendationCache
from .evaluate import accuracy_from_mae, accuracy_trend, evaluate_mae, exponential_moving_average
from .events import FeedbackEvent, MetricsSnapshot, Priority, UpdateJob, utc_now
from .exceptions import BatchProcessingFailure, QueueOverflow
from .model import LatentFactorModel
from .update_queue import UpdateQueue

logger = logging.getLogger(__name__)

Listener = Callable[[str, Dict[str, Any]], None]


class CoordinatorState(enum.Enum):
    IDLE = "idle"
    DRAINING = "draining"
    STOPPED = "stopped"


class DeadLetterQueue:
    """Bounded buffer of jobs whose batch could not be applied."""

    def __init__(self, capacity: Optional[int] = None):
        capacity = capacity or config.ONLINE_LEARNING_CONFIG["dead_letter_capacity"]
        self._jobs: Deque[UpdateJob] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self.capacity = capacity

    def push(self, jobs: Iterable[UpdateJob]) -> int:
        """Park jobs; returns how many older jobs fell off the end."""
        jobs = list(jobs)
        with self._lock:
            overflow = max(0, len(self._jobs) + len(jobs) - self.capacity)
            self._jobs.extend(jobs)
        if overflow:
            logger.warning(f"Dead letter queue full, discarded {overflow} oldest job(s)")
        return overflow

    def drain(self) -> List[UpdateJob]:
        with self._lock:
            jobs = list(self._jobs)
            self._jobs.clear()
        return jobs

    def __len__(self) -> int:
        return len(self._jobs)


class OnlineLearningCoordinator:
    """
    Single worker that turns queued feedback into incremental model updates.

    Every drain cycle runs under one non-blocking lock, so a trigger that
    arrives while a cycle is active is a no-op. Threshold drains run inline
    on the submitting thread; interval drains run on a background timer
    thread started by start().
    """

    def __init__(self,
                 model: LatentFactorModel,
                 queue: Optional[UpdateQueue] = None,
                 cache: Optional[RecommendationCache] = None,
                 batch_size: Optional[int] = None,
                 update_threshold: Optional[int] = None,
                 update_interval: Optional[float] = None,
                 learning_rate: Optional[float] = None,
                 max_learning_rate: Optional[float] = None,
                 drain_pacing_seconds: Optional[float] = None,
                 dead_letter: Optional[DeadLetterQueue] = None,
                 default_priority: Union[Priority, str, None] = None):
        settings = config.ONLINE_LEARNING_CONFIG

        self.model = model
        self.queue = queue if queue is not None else UpdateQueue()
        self.cache = cache
        self.dead_letter = dead_letter
        if self.dead_letter is None and settings["enable_dead_letter"]:
            self.dead_letter = DeadLetterQueue()

        self.batch_size = batch_size or settings["batch_size"]
        self.update_threshold = update_threshold or settings["update_threshold"]
        self.update_interval = update_interval if update_interval is not None else settings["update_interval"]
        self.learning_rate = learning_rate if learning_rate is not None else settings["learning_rate"]
        self.max_learning_rate = (max_learning_rate if max_learning_rate is not None
                                  else settings["max_learning_rate"])
        self.drain_pacing_seconds = (drain_pacing_seconds if drain_pacing_seconds is not None
                                     else settings["drain_pacing_seconds"])
        self.validation_sample_size = settings["validation_sample_size"]
        self.ema_weight = settings["ema_weight"]
        self.min_trend_points = settings["min_trend_points"]
        self.trend_threshold = settings["trend_threshold"]
        self.lr_decay = settings["lr_decay"]
        self.lr_growth = settings["lr_growth"]
        self.default_priority = Priority.parse(default_priority or config.QUEUE_CONFIG["default_priority"])

        self._state = CoordinatorState.IDLE
        self._closed = False
        self._drain_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._timer_thread: Optional[threading.Thread] = None

        self._metrics = MetricsSnapshot(learning_rate=self.learning_rate)
        self._metrics_lock = threading.Lock()
        self._history: Deque[MetricsSnapshot] = deque(maxlen=settings["metrics_window"])

        self._listeners: List[Listener] = []
        self.counters = {
            "processed_batches": 0,
            "failed_batches": 0,
            "skipped_batches": 0,
            "processed_jobs": 0,
            "dropped_jobs": 0,
            "evicted_jobs": 0,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def is_draining(self) -> bool:
        return self._state is CoordinatorState.DRAINING

    def start(self) -> None:
        """Start the interval timer thread."""
        if self._closed:
            raise RuntimeError("Coordinator has been shut down")
        if self._timer_thread is not None and self._timer_thread.is_alive():
            return

        self._stop_event.clear()
        self._timer_thread = threading.Thread(
            target=self._timer_loop, name="online-learning-timer", daemon=True)
        self._timer_thread.start()
        logger.info(f"Online learning timer started (interval={self.update_interval}s)")

    def _timer_loop(self) -> None:
        while not self._stop_event.wait(self.update_interval):
            while not self.queue.is_empty() and not self._stop_event.is_set():
                if not self.trigger_drain():
                    break
                self._stop_event.wait(self.drain_pacing_seconds)

    def shutdown(self) -> None:
        """
        Stop the timer, then synchronously drain every queued job.

        New submissions are rejected as soon as shutdown starts.
        """
        if self._state is CoordinatorState.STOPPED:
            return

        self._closed = True
        self._stop_event.set()
        if self._timer_thread is not None:
            self._timer_thread.join()
            self._timer_thread = None

        remaining = len(self.queue)
        logger.info(f"Shutting down online learning, draining {remaining} queued job(s)")

        with self._drain_lock:
            while not self.queue.is_empty():
                self._run_cycle()
                if not self.queue.is_empty():
                    time.sleep(self.drain_pacing_seconds)
            self._state = CoordinatorState.STOPPED

        self._listeners.clear()
        logger.info(f"Online learning stopped: {self.counters}")

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def submit(self, job: Union[UpdateJob, FeedbackEvent]) -> List[UpdateJob]:
        """
        Enqueue a job and drain inline once the queue reaches the threshold.

        Returns:
            Jobs evicted from the queue to make room

        Raises:
            RuntimeError: After shutdown has started
        """
        if self._closed:
            raise RuntimeError("Coordinator has been shut down, feedback rejected")

        if isinstance(job, FeedbackEvent):
            job = UpdateJob.from_event(job, self.default_priority)

        evicted = self.queue.enqueue(job)
        if evicted:
            self.counters["evicted_jobs"] += len(evicted)
            self._notify("jobs_evicted", {
                "error": QueueOverflow(len(evicted), self.queue.capacity),
                "jobs": evicted,
            })

        if len(self.queue) >= self.update_threshold:
            self.trigger_drain()
        return evicted

    def trigger_drain(self) -> bool:
        """
        Run one drain cycle unless one is already active.

        Returns:
            True if a cycle ran, False if another cycle held the lock
        """
        if not self._drain_lock.acquire(blocking=False):
            logger.debug("Drain already in progress, trigger ignored")
            return False
        try:
            if self._state is CoordinatorState.STOPPED:
                return False
            self._run_cycle()
            return True
        finally:
            self._drain_lock.release()

    # ------------------------------------------------------------------
    # Drain cycle
    # ------------------------------------------------------------------

    def _run_cycle(self) -> None:
        """One drain cycle. Caller holds the drain lock."""
        batch = self.queue.dequeue_batch(self.batch_size)
        if not batch:
            return

        self._state = CoordinatorState.DRAINING
        try:
            self._process_batch(batch)
        finally:
            if self._state is CoordinatorState.DRAINING:
                self._state = CoordinatorState.IDLE

    def _process_batch(self, batch: List[UpdateJob]) -> None:
        records = [job.to_feedback() for job in batch]

        try:
            applied = self.model.incremental_train(records, learning_rate=self.learning_rate)
            if not applied:
                self.counters["skipped_batches"] += 1
                self._park(batch)
                self._notify("batch_skipped", {"batch_size": len(batch)})
                return

            snapshot = self._update_metrics(records)
            self._adjust_learning_rate()

            users = list(dict.fromkeys(job.user_id for job in batch))
            if self.cache is not None:
                self.cache.invalidate_users(users)
        except Exception as e:
            failure = BatchProcessingFailure(len(batch), e)
            logger.error(f"Error processing update batch: {failure}", exc_info=True)
            self.counters["failed_batches"] += 1
            self._park(batch)
            self._notify("batch_failed", {"batch_size": len(batch), "error": failure})
            return

        self.counters["processed_batches"] += 1
        self.counters["processed_jobs"] += len(batch)
        logger.info(
            f"Processed {len(batch)} update(s): accuracy={snapshot.accuracy:.4f}, "
            f"loss={snapshot.loss:.4f}, lr={self.learning_rate:.6f}"
        )
        self._notify("batch_processed", {
            "batch_size": len(batch),
            "users": users,
            "metrics": snapshot.copy(),
        })

    def _park(self, batch: List[UpdateJob]) -> None:
        if self.dead_letter is not None:
            self.dead_letter.push(batch)
        else:
            self.counters["dropped_jobs"] += len(batch)

    def _update_metrics(self, records: List[FeedbackEvent]) -> MetricsSnapshot:
        sample = records[:self.validation_sample_size]
        mae = evaluate_mae(self.model, sample)
        rating_span = self.model.max_rating - self.model.min_rating
        accuracy = accuracy_from_mae(mae, rating_span)

        with self._metrics_lock:
            metrics = self._metrics
            seeded = metrics.update_count > 0
            metrics.accuracy = exponential_moving_average(metrics.accuracy, accuracy, self.ema_weight, seeded)
            metrics.loss = exponential_moving_average(metrics.loss, mae, self.ema_weight, seeded)
            metrics.update_count += 1
            metrics.sample_size = len(records)
            metrics.last_updated = utc_now()
            metrics.learning_rate = self.learning_rate
            snapshot = metrics.copy()

        self._history.append(snapshot)
        return snapshot

    def _adjust_learning_rate(self) -> None:
        """Decay on a falling accuracy trend, grow (up to the ceiling) on a rising one."""
        if len(self._history) < self.min_trend_points:
            return

        slope = accuracy_trend([s.accuracy for s in self._history])
        previous = self.learning_rate

        if slope < -self.trend_threshold:
            self.learning_rate *= self.lr_decay
        elif slope > self.trend_threshold and self.learning_rate < self.max_learning_rate:
            self.learning_rate = min(self.max_learning_rate, self.learning_rate * self.lr_growth)

        if self.learning_rate != previous:
            logger.info(f"Adjusted learning rate {previous:.6f} -> {self.learning_rate:.6f} (slope={slope:.4f})")
            with self._metrics_lock:
                self._metrics.learning_rate = self.learning_rate

    # ------------------------------------------------------------------
    # Dead letters
    # ------------------------------------------------------------------

    def replay_dead_letters(self) -> int:
        """Move parked jobs back into the update queue. Returns the count moved."""
        if self.dead_letter is None:
            return 0
        jobs = self.dead_letter.drain()
        for job in jobs:
            self.submit(job)
        if jobs:
            logger.info(f"Replayed {len(jobs)} dead letter job(s)")
        return len(jobs)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, callback: Listener) -> None:
        self._listeners.append(callback)

    def _notify(self, event_name: str, payload: Dict[str, Any]) -> None:
        for callback in list(self._listeners):
            try:
                callback(event_name, payload)
            except Exception as e:
                logger.warning(f"Listener failed on {event_name}: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_metrics(self) -> MetricsSnapshot:
        with self._metrics_lock:
            return self._metrics.copy()

    def get_metrics_history(self) -> List[MetricsSnapshot]:
        return [s.copy() for s in self._history]

    def get_queue_status(self) -> Dict[str, Any]:
        return {
            "length": len(self.queue),
            "is_draining": self.is_draining,
            "state": self._state.value,
            "by_priority": self.queue.counts_by_priority(),
            "dead_letters": len(self.dead_letter) if self.dead_letter is not None else 0,
            **self.counters,
        }

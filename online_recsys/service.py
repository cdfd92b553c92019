"""
Recommendation Service

Public face of the pipeline. Wires the model, update queue, online
learning coordinator, hybrid scorer and cache together and exposes:
- record_feedback: ingest one feedback event
- recommend: ranked recommendations for a user
- predict: single user-item prediction
- get_metrics / get_queue_status: online learning observability
- shutdown: graceful drain then teardown
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Hashable, List, Mapping, Iterable, Optional, Sequence, Union

from . import config
from .cache import RecommendationCache, create_cache_store
from .events import FeedbackEvent, MetricsSnapshot, Priority, Recommendation, validate_rating
from .exceptions import InvalidFeedbackValue
from .hybrid import HybridScorer
from .model import LatentFactorModel
from .online_learning import OnlineLearningCoordinator
from .serialize import load_model
from .sources import (Catalog, ContentScorer, EventStore, FeedbackPopularitySource,
                      GenreAffinityContentScorer, InMemoryCatalog, InMemoryEventStore,
                      JsonlEventStore, StaticPopularitySource, UserHistoryStore)
from .update_queue import UpdateQueue

logger = logging.getLogger(__name__)


@dataclass
class RecommendOptions:
    """
    Per-request knobs for recommend().

    Only requests with the defaults (rated items excluded, no explicit
    candidate pool) are read from and written to the recommendation cache.
    """

    exclude_rated: bool = True
    candidates: Optional[Sequence[Hashable]] = None
    use_cache: bool = True

    @property
    def cacheable(self) -> bool:
        return self.use_cache and self.exclude_rated and self.candidates is None


class RecommendationService:
    """Feedback ingestion and recommendation serving over one shared model."""

    def __init__(self,
                 model: LatentFactorModel,
                 coordinator: OnlineLearningCoordinator,
                 cache: RecommendationCache,
                 popularity_source: StaticPopularitySource,
                 catalog: Optional[Catalog] = None,
                 content_scorer: Optional[ContentScorer] = None,
                 event_store: Optional[EventStore] = None,
                 scorer: Optional[HybridScorer] = None,
                 history: Optional[UserHistoryStore] = None):
        self.model = model
        self.coordinator = coordinator
        self.cache = cache
        self.popularity_source = popularity_source
        self.catalog = catalog
        self.content_scorer = content_scorer
        self.event_store = event_store
        self.scorer = scorer or HybridScorer(min_rating=model.min_rating, max_rating=model.max_rating)
        self.history = history or UserHistoryStore()
        self._closed = False
        self._shutdown_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    def record_feedback(self,
                        user_id: Hashable,
                        item_id: Hashable,
                        value: Any,
                        priority: Union[Priority, str, int, None] = None,
                        action: str = "rate") -> None:
        """
        Ingest one feedback event.

        The value is validated before anything is written. The event then
        lands in the point-prediction cache, the event store and the user's
        history, and is handed to the coordinator. Returns once the job is
        enqueued (and any threshold drain it triggered has finished).

        Raises:
            InvalidFeedbackValue: Value outside the rating range
            ValueError: Unknown priority
            RuntimeError: Service has been shut down
        """
        if self._closed:
            raise RuntimeError("Service has been shut down, feedback rejected")

        value = validate_rating(value, self.model.min_rating, self.model.max_rating)
        parsed_priority = (Priority.parse(priority) if priority is not None
                           else self.coordinator.default_priority)

        event = FeedbackEvent(user_id=user_id, item_id=item_id, value=value,
                              action=action, priority=parsed_priority)

        self.cache.record_point_prediction(user_id, item_id, value)

        if self.event_store is not None:
            try:
                self.event_store.append(event)
            except Exception as e:
                logger.warning(f"Failed to append feedback to event store: {e}")

        self._observe(user_id, item_id, value)
        self.coordinator.submit(event)

    def _observe(self, user_id: Hashable, item_id: Hashable, value: float) -> None:
        """Fold one rating into the user's history, the catalog and the popularity ranking."""
        if isinstance(self.catalog, InMemoryCatalog):
            self.catalog.ensure(item_id)
        if isinstance(self.popularity_source, FeedbackPopularitySource):
            self.popularity_source.record(item_id, value)

        genres = self.catalog.genres(item_id) if self.catalog is not None else ()
        self.history.record(user_id, item_id, genres)

    def replay_events(self, entries: Iterable[Mapping[str, Any]]) -> int:
        """
        Rebuild histories, catalog and popularity from logged feedback
        (e.g. JsonlEventStore.read_all()). Nothing is enqueued for training.

        Returns:
            Number of entries replayed; malformed entries are skipped
        """
        replayed = skipped = 0
        for entry in entries:
            try:
                value = validate_rating(entry["value"], self.model.min_rating, self.model.max_rating)
                self._observe(entry["user_id"], entry["item_id"], value)
                replayed += 1
            except (KeyError, InvalidFeedbackValue):
                skipped += 1

        if skipped:
            logger.warning(f"Skipped {skipped} malformed event log entries during replay")
        logger.info(f"Replayed {replayed} logged feedback event(s)")
        return replayed

    # ------------------------------------------------------------------
    # Serving
    # ------------------------------------------------------------------

    def recommend(self, user_id: Hashable, count: Optional[int] = None,
                  options: Optional[RecommendOptions] = None) -> List[Recommendation]:
        """
        Ranked recommendations for a user.

        Raises:
            ValueError: If count is not positive
        """
        count = count if count is not None else config.SERVING_CONFIG["default_recommendations"]
        if count <= 0:
            raise ValueError(f"count must be positive, got {count}")
        options = options or RecommendOptions()

        if options.cacheable:
            cached = self.cache.get_recommendations(user_id, count)
            if cached is not None:
                return cached

        history = self.history.get(user_id)
        exclude = history.rated_items if options.exclude_rated else ()

        recommendations = self.scorer.score_user(
            user_id=user_id,
            count=count,
            history=history,
            model=self.model,
            content_scorer=self.content_scorer,
            popularity_source=self.popularity_source,
            catalog=self.catalog,
            candidates=options.candidates,
            exclude=exclude,
        )

        if options.cacheable:
            self.cache.set_recommendations(user_id, count, recommendations)

        logger.info(f"Generated {len(recommendations)} recommendations for user {user_id}")
        return recommendations

    def recommend_batch(self, user_ids: Sequence[Hashable],
                        count: Optional[int] = None) -> Dict[Hashable, List[Recommendation]]:
        """
        Recommendations for many users, served in parallel chunks.

        A user whose request fails gets an empty list; the rest are unaffected.

        Returns:
            Dict user_id -> recommendations, in input order (duplicates collapse)
        """
        chunk_size = config.SERVING_CONFIG["batch_chunk_size"]
        unique_ids = list(dict.fromkeys(user_ids))
        results: Dict[Hashable, List[Recommendation]] = {}

        with ThreadPoolExecutor(max_workers=chunk_size) as executor:
            for start in range(0, len(unique_ids), chunk_size):
                chunk = unique_ids[start:start + chunk_size]
                futures = [executor.submit(self.recommend, user_id, count) for user_id in chunk]
                for user_id, future in zip(chunk, futures):
                    try:
                        results[user_id] = future.result()
                    except Exception as e:
                        logger.error(f"Batch recommendation failed for user {user_id}: {e}")
                        results[user_id] = []

        logger.info(f"Generated batch recommendations for {len(results)} user(s)")
        return results

    def predict(self, user_id: Hashable, item_id: Hashable) -> float:
        """The user's own latest feedback if cached, otherwise the model prediction."""
        cached = self.cache.get_point_prediction(user_id, item_id)
        if cached is not None:
            return float(cached)
        return self.model.predict(user_id, item_id)

    # ------------------------------------------------------------------
    # Observability and lifecycle
    # ------------------------------------------------------------------

    def get_metrics(self) -> MetricsSnapshot:
        return self.coordinator.get_metrics()

    def get_queue_status(self) -> Dict[str, Any]:
        return self.coordinator.get_queue_status()

    def refresh_popularity(self, ranked_items: Optional[Sequence[Hashable]] = None) -> int:
        """Optionally replace the popularity ranking, then drop every list that used it."""
        if ranked_items is not None:
            self.popularity_source.update(ranked_items)
        return self.cache.invalidate_tag(RecommendationCache.POPULARITY_TAG)

    def health(self) -> Dict[str, Any]:
        return {
            "model": self.model.get_model_info(),
            "cache": self.cache.health_check(),
            "queue": self.get_queue_status(),
            "users_with_history": len(self.history),
        }

    def shutdown(self) -> None:
        """Reject new feedback, drain everything queued, stop the coordinator."""
        with self._shutdown_lock:
            if self._closed:
                return
            self._closed = True
        self.coordinator.shutdown()
        logger.info("Recommendation service shut down")


def build_service(model: Optional[LatentFactorModel] = None,
                  model_path: Optional[Union[str, Path]] = None,
                  item_genres: Optional[Mapping[Hashable, Iterable[str]]] = None,
                  popular_items: Optional[Sequence[Hashable]] = None,
                  cache: Optional[RecommendationCache] = None,
                  event_store: Optional[EventStore] = None,
                  start: bool = True,
                  **coordinator_overrides) -> RecommendationService:
    """
    Build a service with default in-process collaborators.

    Args:
        model: Ready model; otherwise loaded from model_path, otherwise a
            fresh model initialized with MODEL_CONFIG capacities
        model_path: Pickled model to load when no model is given
        item_genres: Catalog contents (item -> genres); items seen in
            feedback are added as they arrive
        popular_items: Best-first popularity ranking; items rated later
            are ranked after these by their rating totals
        cache: Recommendation cache; defaults to the configured store
        event_store: Audit log; defaults to an in-memory store
        start: Start the coordinator's interval timer
        **coordinator_overrides: Keyword arguments for OnlineLearningCoordinator
            (batch_size, update_threshold, update_interval, ...)
    """
    if model is None:
        if model_path is not None and Path(model_path).exists():
            model = load_model(model_path)
        else:
            model = LatentFactorModel()
            model.initialize(config.MODEL_CONFIG["user_capacity"], config.MODEL_CONFIG["item_capacity"])

    catalog = InMemoryCatalog(item_genres)
    popularity_source = FeedbackPopularitySource(popular_items or ())
    cache = cache if cache is not None else RecommendationCache(create_cache_store())
    if event_store is None:
        event_store = InMemoryEventStore()

    coordinator = OnlineLearningCoordinator(
        model=model,
        queue=UpdateQueue(),
        cache=cache,
        **coordinator_overrides,
    )

    service = RecommendationService(
        model=model,
        coordinator=coordinator,
        cache=cache,
        popularity_source=popularity_source,
        catalog=catalog,
        content_scorer=GenreAffinityContentScorer(catalog),
        event_store=event_store,
    )

    if start:
        coordinator.start()
    logger.info(f"Recommendation service ready: {model.get_model_info()['total_users']} known users")
    return service


def build_default_service(start: bool = True) -> RecommendationService:
    """
    Service for the HTTP app: pickled model if present, JSON lines audit log.

    Feedback already in the log is replayed so histories, the catalog and
    the popularity ranking survive a restart.
    """
    event_store = JsonlEventStore(config.EVENT_LOG_PATH)
    service = build_service(
        model_path=config.DEFAULT_MODEL_PATH,
        event_store=event_store,
        start=False,
    )
    service.replay_events(event_store.read_all())

    if start:
        service.coordinator.start()
    return service

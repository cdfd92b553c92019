"""
Hybrid Scorer

Blends three signals into one ranking:
- Content similarity (external scorer)
- Collaborative score (latent factor model prediction rescaled to 0..1)
- Popularity (rank-derived score from the popularity source)

Blend weights depend on how much feedback the user has given: new users
lean on popularity and content, experienced users on the model. A
deterministic diversity boost favours items outside the user's usual genres.
"""

import logging
from numbers import Number
from typing import Any, Callable, Dict, Hashable, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from . import config
from .events import HybridWeights, Recommendation
from .model import LatentFactorModel
from .sources import Catalog, ContentScorer, PopularitySource, UserHistory

logger = logging.getLogger(__name__)

COMPONENTS = ("content", "collaborative", "popularity")

REASON_TEXT = {
    "content": "similar to genres you enjoy",
    "collaborative": "liked by people with similar taste",
    "popularity": "popular right now",
}

DEFAULT_EXPLANATION = "Recommended for you."


def _item_sort_key(item_id: Hashable):
    # Numeric ids sort numerically, everything else by its string form
    if isinstance(item_id, Number):
        return (0, item_id, "")
    return (1, 0, str(item_id))


def _ranking_key(rec: Recommendation):
    return (-rec.score, _item_sort_key(rec.item_id))


class HybridScorer:
    """Combine content, collaborative and popularity scores for one user."""

    def __init__(self,
                 min_rating: Optional[float] = None,
                 max_rating: Optional[float] = None,
                 collaborative_threshold: Optional[float] = None,
                 explanation_score_threshold: Optional[float] = None,
                 explanation_weight_threshold: Optional[float] = None,
                 candidate_multiplier: Optional[int] = None,
                 max_genres: Optional[int] = None,
                 diverse_user_threshold: Optional[float] = None):
        settings = config.HYBRID_CONFIG
        ratings = config.RATING_CONFIG

        self.min_rating = min_rating if min_rating is not None else ratings["min_rating"]
        self.max_rating = max_rating if max_rating is not None else ratings["max_rating"]
        self.collaborative_threshold = (collaborative_threshold if collaborative_threshold is not None
                                        else settings["collaborative_threshold"])
        self.explanation_score_threshold = (explanation_score_threshold if explanation_score_threshold is not None
                                            else settings["explanation_score_threshold"])
        self.explanation_weight_threshold = (explanation_weight_threshold if explanation_weight_threshold is not None
                                             else settings["explanation_weight_threshold"])
        self.candidate_multiplier = candidate_multiplier or settings["candidate_multiplier"]
        self.max_genres = max_genres or settings["max_genres"]
        self.diverse_user_threshold = (diverse_user_threshold if diverse_user_threshold is not None
                                       else settings["diverse_user_threshold"])

    # ------------------------------------------------------------------
    # Weights
    # ------------------------------------------------------------------

    def select_weights(self, feedback_count: int, genre_diversity: float = 0.0) -> HybridWeights:
        """
        Pick blend weights from the user's experience level.

        < 5 events: popularity and content heavy
        < 20 events: content heavy
        < 100 events: collaborative leads
        >= 100 events: collaborative grows with experience (capped at 0.7);
            diverse users get a larger diversity weight and content takes
            whatever is left so the weights still sum to 1.
        """
        if feedback_count < 5:
            return HybridWeights(content=0.4, collaborative=0.1, popularity=0.4, diversity=0.1)
        if feedback_count < 20:
            return HybridWeights(content=0.5, collaborative=0.3, popularity=0.15, diversity=0.05)
        if feedback_count < 100:
            return HybridWeights(content=0.4, collaborative=0.5, popularity=0.05, diversity=0.05)

        collaborative = min(0.7, 0.4 + (feedback_count - 100) * 0.001)
        popularity = 0.05
        diversity = 0.1 if genre_diversity > self.diverse_user_threshold else 0.05
        content = 1.0 - collaborative - popularity - diversity
        return HybridWeights(content=content, collaborative=collaborative,
                             popularity=popularity, diversity=diversity)

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    def normalize_collaborative(self, predictions: Mapping[Hashable, float]) -> Dict[Hashable, float]:
        """Rescale model predictions to 0..1 and drop those under the threshold."""
        span = self.max_rating - self.min_rating
        normalized = {}
        for item_id, prediction in predictions.items():
            score = min(1.0, max(0.0, (prediction - self.min_rating) / span))
            if score >= self.collaborative_threshold:
                normalized[item_id] = score
        return normalized

    @staticmethod
    def diversity_boost(item_genres: Set[str], genre_shares: Mapping[str, float],
                        diversity_weight: float) -> float:
        """
        Boost for items away from the user's usual genres.

        novelty = 1 - min(1, sum of the user's share in each of the item's
        genres); items with unknown genres get no boost.
        """
        if not item_genres or diversity_weight <= 0:
            return 0.0
        overlap = min(1.0, sum(genre_shares.get(g, 0.0) for g in item_genres))
        return diversity_weight * (1.0 - overlap)

    def explain(self, components: Mapping[str, float],
                weights: HybridWeights) -> Tuple[str, Tuple[str, ...]]:
        """Natural language reason plus the component names behind it."""
        weight_of = weights.as_dict()
        reasons = tuple(
            name for name in COMPONENTS
            if components.get(name, 0.0) > self.explanation_score_threshold
            and weight_of[name] > self.explanation_weight_threshold
        )
        if not reasons:
            return DEFAULT_EXPLANATION, ()
        text = " and ".join(REASON_TEXT[name] for name in reasons)
        return f"Recommended because it is {text}.", reasons

    # ------------------------------------------------------------------
    # Combination
    # ------------------------------------------------------------------

    def combine(self,
                content: Mapping[Hashable, float],
                collaborative: Mapping[Hashable, float],
                popularity: Mapping[Hashable, float],
                weights: HybridWeights,
                item_genres: Optional[Mapping[Hashable, Set[str]]] = None,
                genre_shares: Optional[Mapping[str, float]] = None) -> List[Recommendation]:
        """
        Weighted blend over the union of candidates.

        A component missing for an item counts as 0. The result is sorted
        by score (descending) then item id (ascending), so identical inputs
        always produce an identical ranking.
        """
        item_genres = item_genres or {}
        genre_shares = genre_shares or {}

        candidates = dict.fromkeys(list(content) + list(collaborative) + list(popularity))
        recommendations = []

        for item_id in candidates:
            components = {
                "content": content.get(item_id, 0.0),
                "collaborative": collaborative.get(item_id, 0.0),
                "popularity": popularity.get(item_id, 0.0),
            }
            score = (components["content"] * weights.content +
                     components["collaborative"] * weights.collaborative +
                     components["popularity"] * weights.popularity)
            score += self.diversity_boost(item_genres.get(item_id, set()), genre_shares, weights.diversity)

            explanation, reasons = self.explain(components, weights)
            recommendations.append(Recommendation(item_id, score, explanation, reasons))

        recommendations.sort(key=_ranking_key)
        return recommendations

    def cold_start(self, popularity: Sequence[Tuple[Hashable, float]], count: int) -> List[Recommendation]:
        """Top-N popular items for users we cannot personalize for."""
        recommendations = [
            Recommendation(item_id, float(score), f"{REASON_TEXT['popularity'].capitalize()}.", ("popularity",))
            for item_id, score in popularity
        ]
        recommendations.sort(key=_ranking_key)
        return recommendations[:count]

    # ------------------------------------------------------------------
    # End to end
    # ------------------------------------------------------------------

    def score_user(self,
                   user_id: Hashable,
                   count: int,
                   history: UserHistory,
                   model: Optional[LatentFactorModel],
                   content_scorer: Optional[ContentScorer],
                   popularity_source: PopularitySource,
                   catalog: Optional[Catalog] = None,
                   candidates: Optional[Sequence[Hashable]] = None,
                   exclude: Iterable[Hashable] = ()) -> List[Recommendation]:
        """
        Rank items for one user.

        Each external source is guarded: a source that raises is logged and
        treated as empty, and if scoring itself fails the user gets the
        popular items instead.

        Args:
            user_id: User to recommend for
            count: Number of recommendations wanted
            history: The user's feedback history
            model: Latent factor model (None or uninitialized disables the collaborative signal)
            content_scorer: Content similarity scorer (None disables the content signal)
            popularity_source: Popularity ranking
            catalog: Item -> genres lookup
            candidates: Explicit candidate pool; by default catalog items,
                popular items and items the model has trained
            exclude: Items that must not be recommended (e.g. already rated)
        """
        if count <= 0:
            return []

        exclude = set(exclude)
        pool_size = count * self.candidate_multiplier

        popular = [(item_id, score) for item_id, score in
                   self._guarded("popularity source", user_id,
                                 lambda: popularity_source.top(pool_size + len(exclude)), [])
                   if item_id not in exclude]

        try:
            return self._score_personalized(user_id, count, history, model, content_scorer,
                                            catalog, candidates, exclude, popular)
        except Exception as e:
            logger.error(f"Hybrid scoring failed for user {user_id}, serving popular items: {e}",
                         exc_info=True)
            return self.cold_start(popular, count)

    def _score_personalized(self, user_id, count, history, model, content_scorer,
                            catalog, candidates, exclude, popular) -> List[Recommendation]:
        pool_size = count * self.candidate_multiplier
        weights = self.select_weights(history.feedback_count, history.genre_diversity(self.max_genres))
        model_ready = model is not None and model.is_initialized

        if candidates is None:
            catalog_items = (self._guarded("catalog", user_id, catalog.items, [])
                             if catalog is not None else [])
            trained = model.trained_items() if model_ready else []
            candidates = list(catalog_items) + [i for i, _ in popular] + trained
        candidates = [item_id for item_id in dict.fromkeys(candidates) if item_id not in exclude]

        content = {}
        if content_scorer is not None and candidates:
            content = self._top(
                self._guarded("content scorer", user_id,
                              lambda: content_scorer.score(user_id, candidates, history), {}),
                pool_size)

        collaborative = {}
        if model_ready and candidates:
            known = [item_id for item_id in candidates if model.is_known(user_id, item_id)]
            if known:
                collaborative = self._top(
                    self.normalize_collaborative(model.predict_items(user_id, known)), pool_size)

        if not content and not collaborative:
            logger.info(f"Cold start for user {user_id}, serving popular items")
            return self.cold_start(popular, count)

        item_genres = {}
        if catalog is not None:
            scored = set(content) | set(collaborative) | {i for i, _ in popular}
            item_genres = self._guarded("catalog", user_id,
                                        lambda: {item_id: catalog.genres(item_id) for item_id in scored}, {})

        logger.debug(f"Scoring user {user_id} with weights {weights.as_dict()}")
        ranked = self.combine(content, collaborative, dict(popular[:pool_size]), weights,
                              item_genres=item_genres, genre_shares=history.genre_shares())
        return ranked[:count]

    @staticmethod
    def _guarded(source: str, user_id: Hashable, fn: Callable[[], Any], default: Any) -> Any:
        try:
            return fn()
        except Exception as e:
            logger.warning(f"{source.capitalize()} unavailable for user {user_id}, continuing without it: {e}")
            return default

    @staticmethod
    def _top(scores: Mapping[Hashable, float], n: int) -> Dict[Hashable, float]:
        ordered = sorted(scores.items(), key=lambda kv: (-kv[1], _item_sort_key(kv[0])))
        return dict(ordered[:n])

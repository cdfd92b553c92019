"""
Tests for online_recsys.hybrid.HybridScorer
-------------------------------------------
Covers:
- Weight tiers by feedback count
- Collaborative normalization and threshold
- Deterministic diversity boost
- combine() ordering, missing components, explanations
- Cold start via popularity
- score_user() end to end
- Failing content, popularity and catalog sources
- Feedback-driven popularity ranking
"""

from collections import Counter

import pytest

from online_recsys.events import HybridWeights
from online_recsys.hybrid import DEFAULT_EXPLANATION, HybridScorer
from online_recsys.sources import (FeedbackPopularitySource, GenreAffinityContentScorer, InMemoryCatalog,
                                   StaticPopularitySource, UserHistory)


@pytest.fixture
def scorer():
    return HybridScorer(min_rating=1.0, max_rating=10.0)


@pytest.fixture
def catalog():
    return InMemoryCatalog({
        "m1": ["Action"],
        "m2": ["Action", "Sci-Fi"],
        "m3": ["Drama"],
        "m4": ["Comedy"],
        "m5": ["Horror"],
    })


# ===================================================================
# Weights
# ===================================================================

class TestSelectWeights:

    def test_new_user(self, scorer):
        assert scorer.select_weights(0).as_dict() == {
            "content": 0.4, "collaborative": 0.1, "popularity": 0.4, "diversity": 0.1}

    @pytest.mark.parametrize("count,expected", [
        (4, (0.4, 0.1, 0.4, 0.1)),
        (5, (0.5, 0.3, 0.15, 0.05)),
        (19, (0.5, 0.3, 0.15, 0.05)),
        (20, (0.4, 0.5, 0.05, 0.05)),
        (99, (0.4, 0.5, 0.05, 0.05)),
    ])
    def test_tier_boundaries(self, scorer, count, expected):
        w = scorer.select_weights(count)
        assert (w.content, w.collaborative, w.popularity, w.diversity) == pytest.approx(expected)

    def test_expert_collaborative_weight(self, scorer):
        assert scorer.select_weights(150).collaborative == pytest.approx(0.45)

    def test_expert_collaborative_capped(self, scorer):
        assert scorer.select_weights(10_000).collaborative == pytest.approx(0.7)

    def test_diverse_expert_gets_diversity_boost(self, scorer):
        assert scorer.select_weights(150, genre_diversity=0.8).diversity == pytest.approx(0.1)
        assert scorer.select_weights(150, genre_diversity=0.5).diversity == pytest.approx(0.05)

    @pytest.mark.parametrize("count", [0, 3, 10, 50, 100, 150, 400, 5000])
    @pytest.mark.parametrize("diversity", [0.0, 0.9])
    def test_weights_always_sum_to_one(self, scorer, count, diversity):
        w = scorer.select_weights(count, diversity)
        assert sum(w.as_dict().values()) == pytest.approx(1.0)
        assert min(w.as_dict().values()) >= 0

    def test_invalid_weights_rejected(self):
        with pytest.raises(ValueError):
            HybridWeights(content=0.5, collaborative=0.5, popularity=0.5, diversity=0.0)
        with pytest.raises(ValueError):
            HybridWeights(content=1.1, collaborative=-0.1, popularity=0.0, diversity=0.0)


# ===================================================================
# Components
# ===================================================================

class TestComponents:

    def test_normalize_collaborative(self, scorer):
        normalized = scorer.normalize_collaborative({"a": 10.0, "b": 6.0, "c": 7.0, "d": 1.0})
        assert normalized == {"a": pytest.approx(1.0), "c": pytest.approx(6 / 9)}

    def test_diversity_boost_is_deterministic(self):
        shares = {"Action": 0.75, "Drama": 0.25}
        first = HybridScorer.diversity_boost({"Comedy"}, shares, 0.1)
        second = HybridScorer.diversity_boost({"Comedy"}, shares, 0.1)
        assert first == second == pytest.approx(0.1)

    def test_diversity_boost_bounded_by_weight(self):
        shares = {"Action": 0.75, "Drama": 0.25}
        assert HybridScorer.diversity_boost({"Action"}, shares, 0.1) == pytest.approx(0.025)
        assert HybridScorer.diversity_boost({"Action", "Drama"}, shares, 0.1) == pytest.approx(0.0)
        assert HybridScorer.diversity_boost(set(), shares, 0.1) == 0.0

    def test_explanation_mentions_strong_components(self, scorer):
        weights = HybridWeights(content=0.4, collaborative=0.5, popularity=0.05, diversity=0.05)
        text, reasons = scorer.explain({"content": 0.9, "collaborative": 0.8, "popularity": 1.0}, weights)
        assert reasons == ("content", "collaborative")
        assert "similar to genres you enjoy" in text
        assert "popular" not in text

    def test_explanation_default(self, scorer):
        weights = scorer.select_weights(0)
        assert scorer.explain({"content": 0.2}, weights) == (DEFAULT_EXPLANATION, ())


# ===================================================================
# Combination
# ===================================================================

class TestCombine:

    def test_union_and_missing_components(self, scorer):
        weights = HybridWeights(content=0.4, collaborative=0.5, popularity=0.1, diversity=0.0)
        ranked = scorer.combine({"a": 1.0}, {"b": 1.0}, {"c": 1.0}, weights)

        scores = {r.item_id: r.score for r in ranked}
        assert scores == {"b": pytest.approx(0.5), "a": pytest.approx(0.4), "c": pytest.approx(0.1)}
        assert [r.item_id for r in ranked] == ["b", "a", "c"]

    def test_ties_broken_by_item_id(self, scorer):
        weights = HybridWeights(content=1.0, collaborative=0.0, popularity=0.0, diversity=0.0)
        ranked = scorer.combine({"z": 0.5, "a": 0.5, "m": 0.5}, {}, {}, weights)
        assert [r.item_id for r in ranked] == ["a", "m", "z"]

    def test_numeric_ids_sort_numerically(self, scorer):
        weights = HybridWeights(content=1.0, collaborative=0.0, popularity=0.0, diversity=0.0)
        ranked = scorer.combine({10: 0.5, 9: 0.5}, {}, {}, weights)
        assert [r.item_id for r in ranked] == [9, 10]

    def test_combine_is_deterministic(self, scorer, catalog):
        weights = scorer.select_weights(0)
        args = ({"m1": 0.9, "m3": 0.4}, {"m2": 0.8}, {"m4": 1.0, "m5": 0.5}, weights)
        genres = {item: catalog.genres(item) for item in catalog.items()}
        shares = {"Action": 1.0}

        runs = [scorer.combine(*args, item_genres=genres, genre_shares=shares) for _ in range(5)]
        assert all(run == runs[0] for run in runs)

    def test_diversity_applied_after_weighting(self, scorer):
        weights = HybridWeights(content=0.9, collaborative=0.0, popularity=0.0, diversity=0.1)
        ranked = scorer.combine({"fam": 0.5, "new": 0.5}, {}, {}, weights,
                                item_genres={"fam": {"Action"}, "new": {"Drama"}},
                                genre_shares={"Action": 1.0})
        assert [r.item_id for r in ranked] == ["new", "fam"]
        assert ranked[0].score == pytest.approx(0.45 + 0.1)


# ===================================================================
# Scoring a user
# ===================================================================

class TestScoreUser:

    def test_cold_start_returns_popular_items(self, scorer, catalog):
        popularity = StaticPopularitySource(["m3", "m1", "m2"])
        recs = scorer.score_user("new_user", 2, UserHistory(), model=None,
                                 content_scorer=GenreAffinityContentScorer(catalog),
                                 popularity_source=popularity, catalog=catalog)

        assert [r.item_id for r in recs] == ["m3", "m1"]
        assert recs[0].reasons == ("popularity",)

    def test_cold_start_bounded_by_source(self, scorer):
        recs = scorer.score_user("new_user", 10, UserHistory(), model=None, content_scorer=None,
                                 popularity_source=StaticPopularitySource(["a", "b"]))
        assert len(recs) == 2

    def test_personalized_excludes_rated(self, scorer, catalog):
        history = UserHistory(feedback_count=3, rated_items={"m1"}, genre_counts=Counter({"Action": 3}))
        recs = scorer.score_user("u1", 3, history, model=None,
                                 content_scorer=GenreAffinityContentScorer(catalog),
                                 popularity_source=StaticPopularitySource(["m1", "m3", "m4"]),
                                 catalog=catalog, exclude=history.rated_items)

        item_ids = [r.item_id for r in recs]
        assert "m1" not in item_ids
        assert item_ids[0] == "m2"
        assert len(recs) == 3

    def test_collaborative_signal_from_trained_model(self, scorer, trained_model):
        history = UserHistory(feedback_count=30)
        recs = scorer.score_user("u1", 2, history, model=trained_model, content_scorer=None,
                                 popularity_source=StaticPopularitySource([]),
                                 candidates=["m1", "m2", "m3", "m4"])

        assert recs
        assert recs[0].item_id in {"m1", "m2"}

    def test_non_positive_count(self, scorer):
        assert scorer.score_user("u", 0, UserHistory(), None, None, StaticPopularitySource(["a"])) == []


class TestFailingSources:
    """A source that raises is skipped; the user is still served."""

    class BrokenScorer:
        def score(self, user_id, candidates, history):
            raise ConnectionError("content service unreachable")

    class BrokenPopularity:
        def top(self, n):
            raise TimeoutError("popularity backend timed out")

    class BrokenCatalog:
        def items(self):
            raise ConnectionError("catalog unreachable")

        def genres(self, item_id):
            raise ConnectionError("catalog unreachable")

    def test_content_scorer_failure_falls_back_to_popular(self, scorer, caplog):
        history = UserHistory(feedback_count=3, genre_counts=Counter({"Action": 3}))
        with caplog.at_level("WARNING"):
            recs = scorer.score_user("u1", 2, history, model=None,
                                     content_scorer=self.BrokenScorer(),
                                     popularity_source=StaticPopularitySource(["m3", "m1", "m4"]))

        assert [r.item_id for r in recs] == ["m3", "m1"]
        assert "Content scorer unavailable" in caplog.text

    def test_content_scorer_failure_keeps_collaborative_signal(self, scorer, trained_model):
        recs = scorer.score_user("u1", 2, UserHistory(feedback_count=30), model=trained_model,
                                 content_scorer=self.BrokenScorer(),
                                 popularity_source=StaticPopularitySource([]))

        assert recs
        assert recs[0].item_id in {"m1", "m2"}

    def test_popularity_failure_keeps_content_signal(self, scorer, catalog, caplog):
        history = UserHistory(feedback_count=3, genre_counts=Counter({"Action": 3}))
        with caplog.at_level("WARNING"):
            recs = scorer.score_user("u1", 2, history, model=None,
                                     content_scorer=GenreAffinityContentScorer(catalog),
                                     popularity_source=self.BrokenPopularity(), catalog=catalog)

        assert {r.item_id for r in recs} == {"m1", "m2"}
        assert "Popularity source unavailable" in caplog.text

    def test_every_source_failing_returns_empty(self, scorer):
        recs = scorer.score_user("u1", 3, UserHistory(feedback_count=3), model=None,
                                 content_scorer=self.BrokenScorer(),
                                 popularity_source=self.BrokenPopularity(),
                                 catalog=self.BrokenCatalog())
        assert recs == []

    def test_catalog_failure_still_ranks_popular(self, scorer):
        recs = scorer.score_user("u1", 2, UserHistory(), model=None, content_scorer=None,
                                 popularity_source=StaticPopularitySource(["a", "b", "c"]),
                                 catalog=self.BrokenCatalog())
        assert [r.item_id for r in recs] == ["a", "b"]

    def test_unexpected_scoring_error_serves_popular(self, scorer, mocker, caplog):
        mocker.patch.object(scorer, "combine", side_effect=ValueError("bad weights"))
        history = UserHistory(feedback_count=3, genre_counts=Counter({"Action": 3}))
        with caplog.at_level("ERROR"):
            recs = scorer.score_user("u1", 2, history, model=None,
                                     content_scorer=fixed_scorer({"m1": 0.9}),
                                     popularity_source=StaticPopularitySource(["m4", "m5"]))

        assert [r.item_id for r in recs] == ["m4", "m5"]
        assert "serving popular items" in caplog.text


def fixed_scorer(scores):
    class FixedScorer:
        def score(self, user_id, candidates, history):
            return dict(scores)
    return FixedScorer()


class TestFeedbackPopularity:

    def test_pinned_items_lead_then_rating_totals(self):
        source = FeedbackPopularitySource(["p1"])
        for item_id, value in (("a", 5), ("b", 9), ("a", 6), ("p1", 1)):
            source.record(item_id, value)

        assert [item_id for item_id, _ in source.top(5)] == ["p1", "a", "b"]
        assert source.top(3)[0][1] == pytest.approx(1.0)
        assert source.top(0) == []

    def test_update_repins(self):
        source = FeedbackPopularitySource()
        source.record("a", 10)
        source.record("b", 2)
        source.update(["b"])
        assert [item_id for item_id, _ in source.top(2)] == ["b", "a"]

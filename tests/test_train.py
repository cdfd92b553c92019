"""
Tests for online_recsys.train module
------------------------------------
Covers:
- events_from_dataframe()
- train_test_split_temporal()
- calculate_popular_items()
- train_latent_factor_model()
- train_and_evaluate()
"""

import numpy as np
import pandas as pd
import pytest

from online_recsys import train


FAST_CONFIG = {"n_factors": 4, "n_epochs": 5, "user_capacity": 2, "item_capacity": 2,
               "random_state": 1}


class TestEventsFromDataFrame:

    def test_converts_rows(self, tiny_interactions_df):
        events = train.events_from_dataframe(tiny_interactions_df)
        assert len(events) == 5
        assert (events[0].user_id, events[0].item_id, events[0].value) == ("u1", "m1", 9.0)
        assert events[0].action == "rate"

    def test_drops_missing_and_out_of_range(self, tiny_interactions_df, caplog):
        df = tiny_interactions_df.copy()
        df.loc[0, "rating"] = np.nan
        df.loc[1, "rating"] = 25
        with caplog.at_level("WARNING"):
            events = train.events_from_dataframe(df)
        assert len(events) == 3
        assert "Dropped 2" in caplog.text

    def test_keeps_timestamps(self, timed_interactions_df):
        events = train.events_from_dataframe(timed_interactions_df)
        assert events[0].timestamp == pd.Timestamp("2024-01-01").to_pydatetime()

    def test_missing_columns(self):
        with pytest.raises(ValueError):
            train.events_from_dataframe(pd.DataFrame({"user_id": ["u1"], "rating": [5]}))


class TestTrainTestSplit:
    """Unit tests for temporal train/test splitting"""

    def test_split_ratio(self, tiny_interactions_df):
        """Train/test split should approximately follow test_size ratio."""
        df = pd.concat([tiny_interactions_df] * 10, ignore_index=True)
        train_df, test_df = train.train_test_split_temporal(df, test_size=0.2, random_state=42)

        assert 0.15 <= len(test_df) / len(df) <= 0.25
        assert len(train_df) + len(test_df) == len(df)

    def test_temporal_split_orders_by_time(self, timed_interactions_df):
        """With timestamps, every test interaction is newer than every training one."""
        shuffled = timed_interactions_df.sample(frac=1.0, random_state=0)
        train_df, test_df = train.train_test_split_temporal(shuffled, test_size=0.2)

        assert len(test_df) == 10
        assert train_df["timestamp"].max() < test_df["timestamp"].min()


class TestPopularItems:

    def test_ranking(self):
        df = pd.DataFrame({
            "user_id": ["u1", "u2", "u3", "u1", "u2", "u1"],
            "item_id": ["a", "a", "a", "b", "b", "c"],
            "rating": [5, 5, 5, 9, 9, 10],
        })
        # a: 3 * 5 = 15, b: 2 * 9 = 18, c: 1 * 10 = 10
        assert train.calculate_popular_items(df, n_top=2) == ["b", "a"]


class TestTrainLatentFactorModel:

    def test_trains_and_grows_capacity(self, timed_interactions_df):
        model = train.train_latent_factor_model(timed_interactions_df, FAST_CONFIG)

        info = model.get_model_info()
        assert info["n_full_trains"] == 1
        assert info["user_capacity"] >= 5
        assert info["item_capacity"] >= 10
        assert len(model.training_history) == 5
        assert model.is_known("u1", "m1")

    def test_reuses_existing_model(self, timed_interactions_df, small_model):
        model = train.train_latent_factor_model(timed_interactions_df, FAST_CONFIG, model=small_model)
        assert model is small_model
        assert small_model.n_full_trains == 1

    def test_train_and_evaluate(self, timed_interactions_df):
        model, metrics = train.train_and_evaluate(timed_interactions_df, FAST_CONFIG)
        assert metrics["n_train"] == 40
        assert metrics["n_test"] == 10
        assert 0 <= metrics["test_mae"] <= 9
        assert metrics["test_rmse"] >= metrics["test_mae"]

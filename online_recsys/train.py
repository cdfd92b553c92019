"""
Model Training Module

Handles offline training orchestration from interaction DataFrames:
- Conversion of DataFrame rows into feedback records
- Temporal (or random) train/test splitting
- Full training of the latent factor model
- Popularity ranking for the cold start path
"""

import logging
from typing import Dict, Hashable, List, Optional, Tuple

import pandas as pd
from sklearn.model_selection import train_test_split

from . import config
from .evaluate import evaluate_mae, evaluate_rmse
from .events import FeedbackEvent
from .model import LatentFactorModel

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("user_id", "item_id", "rating")


def _check_columns(interactions_df: pd.DataFrame) -> None:
    missing = [c for c in REQUIRED_COLUMNS if c not in interactions_df.columns]
    if missing:
        raise ValueError(f"Interactions are missing required column(s): {missing}")


def events_from_dataframe(interactions_df: pd.DataFrame) -> List[FeedbackEvent]:
    """
    Convert interaction rows to FeedbackEvents.

    Rows with a missing or out-of-range rating are dropped with a warning.

    Args:
        interactions_df: DataFrame with user_id, item_id, rating
            (optional: timestamp, action)
    """
    _check_columns(interactions_df)

    min_rating = config.RATING_CONFIG["min_rating"]
    max_rating = config.RATING_CONFIG["max_rating"]

    df = interactions_df.dropna(subset=list(REQUIRED_COLUMNS))
    in_range = df["rating"].between(min_rating, max_rating)
    dropped = len(interactions_df) - int(in_range.sum())
    if dropped:
        logger.warning(f"Dropped {dropped} interaction(s) with missing or out-of-range ratings")
    df = df[in_range]

    has_timestamp = "timestamp" in df.columns
    has_action = "action" in df.columns

    events = []
    for row in df.itertuples(index=False):
        kwargs = {}
        if has_timestamp and not pd.isna(row.timestamp):
            kwargs["timestamp"] = pd.Timestamp(row.timestamp).to_pydatetime()
        events.append(FeedbackEvent(
            user_id=row.user_id,
            item_id=row.item_id,
            value=float(row.rating),
            action=row.action if has_action else "rate",
            **kwargs,
        ))
    return events


def train_test_split_temporal(interactions_df: pd.DataFrame,
                              test_size: float = 0.2,
                              random_state: int = 42) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Split interactions into train and test sets.

    Uses temporal splitting (train on older interactions, test on newer
    ones) when a timestamp column exists, otherwise a random split.
    """
    if 'timestamp' in interactions_df.columns:
        sorted_df = interactions_df.sort_values('timestamp')
        split_idx = int(len(sorted_df) * (1 - test_size))
        train_df = sorted_df.iloc[:split_idx].copy()
        test_df = sorted_df.iloc[split_idx:].copy()
    else:
        train_df, test_df = train_test_split(
            interactions_df,
            test_size=test_size,
            random_state=random_state
        )

    return train_df, test_df


def calculate_popular_items(interactions_df: pd.DataFrame, n_top: int = 50) -> List[Hashable]:
    """
    Most popular items by rating count * average rating, best first.

    Used to seed the popularity source for cold start users.
    """
    _check_columns(interactions_df)

    item_popularity = interactions_df.groupby('item_id').agg(
        rating_count=('rating', 'count'),
        avg_rating=('rating', 'mean'),
    )
    item_popularity['popularity_score'] = item_popularity['rating_count'] * item_popularity['avg_rating']

    return (item_popularity
            .sort_values('popularity_score', ascending=False)
            .head(n_top)
            .index
            .tolist())


def train_latent_factor_model(train_df: pd.DataFrame,
                              model_config: Optional[dict] = None,
                              model: Optional[LatentFactorModel] = None) -> LatentFactorModel:
    """
    Train the latent factor model from an interactions DataFrame.

    Steps:
    1. Convert rows to feedback events
    2. Initialize the model with capacity for every user/item seen
    3. Full mini-batch SGD training

    Args:
        train_df: Training interactions (user_id, item_id, rating)
        model_config: Overrides for MODEL_CONFIG (n_factors, learning_rate, n_epochs, ...)
        model: Existing model to train; a new one is created if omitted

    Example:
        >>> model = train_latent_factor_model(train_df, {"n_factors": 20, "n_epochs": 10})
        >>> model.predict("user_1", "item_7")
    """
    settings = {**config.MODEL_CONFIG, **(model_config or {})}

    events = events_from_dataframe(train_df)
    n_users = train_df['user_id'].nunique()
    n_items = train_df['item_id'].nunique()

    if model is None:
        model = LatentFactorModel(
            n_factors=settings['n_factors'],
            learning_rate=settings['learning_rate'],
            regularization=settings['regularization'],
            init_scale=settings['init_scale'],
            batch_size=settings['batch_size'],
            incremental_batch_size=settings['incremental_batch_size'],
            gradient_clip=settings['gradient_clip'],
            random_state=settings['random_state'],
        )

    if not model.is_initialized:
        model.initialize(
            user_capacity=max(n_users, settings['user_capacity']),
            item_capacity=max(n_items, settings['item_capacity']),
        )

    logger.info(f"Training latent factor model on {len(events)} interactions "
                f"({n_users} users, {n_items} items)")
    model.train(events, epochs=settings['n_epochs'], validation_split=settings['validation_split'])
    return model


def train_and_evaluate(interactions_df: pd.DataFrame,
                       model_config: Optional[dict] = None,
                       test_size: float = 0.2) -> Tuple[LatentFactorModel, Dict[str, float]]:
    """
    Temporal split, train, then report MAE/RMSE on the held-out interactions.
    """
    train_df, test_df = train_test_split_temporal(interactions_df, test_size=test_size)
    model = train_latent_factor_model(train_df, model_config)

    test_events = events_from_dataframe(test_df)
    metrics = {
        'test_mae': evaluate_mae(model, test_events),
        'test_rmse': evaluate_rmse(model, test_events),
        'n_train': len(train_df),
        'n_test': len(test_df),
    }
    logger.info(f"Held-out MAE={metrics['test_mae']:.4f}, RMSE={metrics['test_rmse']:.4f}")
    return model, metrics

"""
Pytest configuration and shared fixtures

This file contains fixtures that are available to all test files.
"""

import pytest
import pandas as pd

from online_recsys.cache import InMemoryCacheStore, RecommendationCache
from online_recsys.events import FeedbackEvent
from online_recsys.model import LatentFactorModel
from online_recsys.online_learning import OnlineLearningCoordinator
from online_recsys.update_queue import UpdateQueue


# ---------------------------------------------------
# DataFrame fixtures
# ---------------------------------------------------

@pytest.fixture
def tiny_interactions_df():
    """
    Tiny interactions DataFrame (3 users, 3 items) for unit tests
    """
    return pd.DataFrame({
        'user_id': ['u1', 'u1', 'u2', 'u2', 'u3'],
        'item_id': ['m1', 'm2', 'm1', 'm3', 'm2'],
        'rating': [9, 6, 8, 9, 3]
    })


@pytest.fixture
def timed_interactions_df():
    """
    50 interactions (5 users x 10 items) with timestamps, for training tests
    """
    users = ['u1'] * 10 + ['u2'] * 10 + ['u3'] * 10 + ['u4'] * 10 + ['u5'] * 10
    items = [f'm{i}' for i in range(1, 11)] * 5
    ratings = [9, 8, 6, 9, 8, 3, 9, 6, 8, 9,
               8, 9, 3, 8, 6, 9, 8, 3, 6, 8,
               6, 8, 9, 6, 8, 1, 9, 8, 9, 6,
               9, 6, 8, 9, 3, 8, 6, 9, 8, 3,
               8, 9, 6, 8, 9, 6, 3, 8, 6, 9]
    return pd.DataFrame({
        'user_id': users,
        'item_id': items,
        'rating': ratings,
        'timestamp': pd.date_range('2024-01-01', periods=50, freq='h'),
    })


# ---------------------------------------------------
# Feedback fixtures
# ---------------------------------------------------

@pytest.fixture
def sample_events():
    """Feedback events with a clear per-user taste signal."""
    events = []
    for user in ('u1', 'u2', 'u3'):
        for item, value in (('m1', 9), ('m2', 8), ('m3', 2), ('m4', 3)):
            if user == 'u3':
                value = 11 - value
            events.append(FeedbackEvent(user_id=user, item_id=item, value=float(value)))
    return events


# ---------------------------------------------------
# Component fixtures
# ---------------------------------------------------

@pytest.fixture
def small_model():
    """Initialized (untrained) model with small tables and a fixed seed."""
    model = LatentFactorModel(n_factors=4, learning_rate=0.05, random_state=7)
    model.initialize(user_capacity=4, item_capacity=4)
    return model


@pytest.fixture
def trained_model(small_model, sample_events):
    """small_model after a short full training run."""
    small_model.train(sample_events, epochs=200, validation_split=0.0)
    return small_model


@pytest.fixture
def memory_cache():
    """Recommendation cache over a fresh in-memory store."""
    return RecommendationCache(InMemoryCacheStore(max_entries=100))


@pytest.fixture
def coordinator(small_model, memory_cache):
    """
    Coordinator with batch size 10 / threshold 10, no timer thread and no
    pacing delay.
    """
    return OnlineLearningCoordinator(
        model=small_model,
        queue=UpdateQueue(capacity=100),
        cache=memory_cache,
        batch_size=10,
        update_threshold=10,
        update_interval=60.0,
        drain_pacing_seconds=0.0,
    )

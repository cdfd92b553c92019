"""
Model Evaluation Module

Provides the quality measures used by offline training and by the online
learning coordinator:
- MAE / RMSE against held-out or freshly received feedback
- Normalized accuracy derived from MAE
- Exponential moving average for rolling metrics
- Accuracy trend (linear regression slope) for learning rate adaptation
- Inference time/throughput
"""

import time
from typing import Dict, Iterable, List, Sequence, Tuple

import numpy as np
from scipy import stats
from sklearn.metrics import mean_absolute_error, mean_squared_error

from .model import LatentFactorModel


def _pairs_and_actuals(events: Iterable) -> Tuple[List[tuple], np.ndarray]:
    pairs, actuals = [], []
    for event in events:
        if isinstance(event, tuple):
            user_id, item_id, value = event
        else:
            user_id, item_id, value = event.user_id, event.item_id, event.value
        pairs.append((user_id, item_id))
        actuals.append(float(value))
    return pairs, np.asarray(actuals, dtype=np.float64)


def evaluate_mae(model: LatentFactorModel, events: Iterable) -> float:
    """
    Mean Absolute Error of current predictions on a set of feedback records.

    Metric: How far predictions are from what users actually rated
    Operationalization: MAE = mean(|predicted - actual|)

    Returns:
        MAE value, NaN when there is nothing to evaluate
    """
    pairs, actuals = _pairs_and_actuals(events)
    if len(actuals) == 0:
        return float('nan')
    predictions = model.batch_predict(pairs)
    return float(mean_absolute_error(actuals, predictions))


def evaluate_rmse(model: LatentFactorModel, events: Iterable) -> float:
    """
    Calculate Root Mean Squared Error on a set of feedback records (VECTORIZED).

    Example:
        >>> rmse = evaluate_rmse(model, test_events)
        >>> print(f"RMSE: {rmse:.4f}")
        RMSE: 1.0468
    """
    pairs, actuals = _pairs_and_actuals(events)
    if len(actuals) == 0:
        return float('nan')
    predictions = model.batch_predict(pairs)
    return float(np.sqrt(mean_squared_error(actuals, predictions)))


def accuracy_from_mae(mae: float, rating_span: float) -> float:
    """
    Convert MAE into a 0..1 accuracy score.

    accuracy = max(0, 1 - MAE / rating_span), so a perfect model scores 1
    and one that is off by the whole scale scores 0.
    """
    if rating_span <= 0:
        raise ValueError(f"rating_span must be positive, got {rating_span}")
    return max(0.0, 1.0 - mae / rating_span)


def exponential_moving_average(previous: float, sample: float,
                               weight: float, seeded: bool = True) -> float:
    """
    Fold a new sample into a rolling average.

    The first sample (seeded=False) is taken as-is.
    """
    if not seeded:
        return sample
    return previous * (1.0 - weight) + sample * weight


def accuracy_trend(values: Sequence[float]) -> float:
    """
    Slope of a metric over its recent history (simple linear regression).

    Returns:
        Slope per snapshot, 0.0 for fewer than two points or a flat series
    """
    if len(values) < 2:
        return 0.0
    y = np.asarray(values, dtype=np.float64)
    if np.allclose(y, y[0]):
        return 0.0
    x = np.arange(len(y), dtype=np.float64)
    return float(stats.linregress(x, y).slope)


def measure_inference_time(model: LatentFactorModel,
                           pairs: Sequence[Tuple],
                           n_samples: int = 100) -> Dict[str, float]:
    """
    Measure single-prediction latency over a sample of (user, item) pairs.

    Returns:
        Dict with:
        - mean_time_ms: Average inference time in milliseconds
        - p95_time_ms: 95th percentile latency
        - requests_per_second: Throughput
    """
    latencies = []

    for user_id, item_id in list(pairs)[:n_samples]:
        start_time = time.perf_counter()
        model.predict(user_id, item_id)
        latencies.append((time.perf_counter() - start_time) * 1000)

    if not latencies:
        return {'mean_time_ms': 0.0, 'p95_time_ms': 0.0, 'requests_per_second': 0.0}

    latencies = np.array(latencies)
    mean_time_ms = float(np.mean(latencies))

    return {
        'mean_time_ms': mean_time_ms,
        'p95_time_ms': float(np.percentile(latencies, 95)),
        'requests_per_second': 1000 / mean_time_ms if mean_time_ms > 0 else 0.0
    }

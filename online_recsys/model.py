"""
Latent Factor Recommendation Model

Matrix factorization with bias terms, trained with mini-batch SGD and kept
fresh with small incremental updates.

Prediction formula: r_ui = μ + b_u + b_i + q_i^T * p_u

Where:
- μ = global bias
- b_u = user bias
- b_i = item bias
- q_i = item latent factors
- p_u = user latent factors

Training never mutates the published parameters in place. Each run works on
a private copy and publishes it with a single reference swap, so concurrent
predictions always read a consistent snapshot.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Hashable, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from sklearn.model_selection import train_test_split

from . import config
from .exceptions import AlreadyTraining, InvalidFeedbackValue, NotInitializable, NotInitialized
from .events import validate_rating

logger = logging.getLogger(__name__)


class IdentifierIndex:
    """
    Append-only mapping from external identifiers to dense row indices.

    Once assigned, an index is never reused or changed for the lifetime of
    the owning model.
    """

    def __init__(self):
        self._forward: Dict[Hashable, int] = {}
        self._reverse: List[Hashable] = []
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[int]:
        return self._forward.get(key)

    def get_or_assign(self, key: Hashable) -> int:
        idx = self._forward.get(key)
        if idx is not None:
            return idx
        with self._lock:
            idx = self._forward.get(key)
            if idx is None:
                idx = len(self._reverse)
                self._reverse.append(key)
                self._forward[key] = idx
            return idx

    def key_for(self, idx: int) -> Hashable:
        return self._reverse[idx]

    def __contains__(self, key: Hashable) -> bool:
        return key in self._forward

    def __len__(self) -> int:
        return len(self._reverse)

    def __getstate__(self):
        return {"forward": dict(self._forward), "reverse": list(self._reverse)}

    def __setstate__(self, state):
        self._forward = state["forward"]
        self._reverse = state["reverse"]
        self._lock = threading.Lock()


@dataclass
class ModelParameters:
    """One consistent set of learned parameters."""

    user_factors: np.ndarray  # Shape: (user_capacity, n_factors)
    item_factors: np.ndarray  # Shape: (item_capacity, n_factors)
    user_bias: np.ndarray  # Shape: (user_capacity,)
    item_bias: np.ndarray  # Shape: (item_capacity,)
    user_trained: np.ndarray  # Rows that received at least one update
    item_trained: np.ndarray
    global_bias: float

    @property
    def user_capacity(self) -> int:
        return self.user_factors.shape[0]

    @property
    def item_capacity(self) -> int:
        return self.item_factors.shape[0]

    def copy(self) -> "ModelParameters":
        return ModelParameters(
            user_factors=self.user_factors.copy(),
            item_factors=self.item_factors.copy(),
            user_bias=self.user_bias.copy(),
            item_bias=self.item_bias.copy(),
            user_trained=self.user_trained.copy(),
            item_trained=self.item_trained.copy(),
            global_bias=float(self.global_bias),
        )


def _grow_rows(table: np.ndarray, new_rows: int, fill) -> np.ndarray:
    """Return a larger table with previously learned rows preserved."""
    extra_shape = (new_rows - table.shape[0],) + table.shape[1:]
    extra = fill(extra_shape).astype(table.dtype)
    return np.concatenate([table, extra], axis=0)


class LatentFactorModel:
    """
    Latent factor model with user/item embeddings and bias terms.

    Exactly one training run (full or incremental) may mutate the model at a
    time. A full train() that finds another run active raises AlreadyTraining;
    an incremental_train() in the same situation is skipped and logged.
    """

    def __init__(self,
                 n_factors: Optional[int] = None,
                 learning_rate: Optional[float] = None,
                 regularization: Optional[float] = None,
                 min_rating: Optional[float] = None,
                 max_rating: Optional[float] = None,
                 fallback_rating: Optional[float] = None,
                 init_scale: Optional[float] = None,
                 batch_size: Optional[int] = None,
                 incremental_batch_size: Optional[int] = None,
                 gradient_clip: Optional[float] = None,
                 random_state: Optional[int] = None):
        """
        Initialize model hyperparameters. Parameters are allocated by initialize().

        Args:
            n_factors: Number of latent factors to learn
            learning_rate: SGD step size for full training
            regularization: L2 regularization parameter
            min_rating: Lower bound of the rating scale
            max_rating: Upper bound of the rating scale
            fallback_rating: Prediction returned for unseen users/items (cold start)
            init_scale: Std of the normal factor initialization
            batch_size: Mini-batch size for full training
            incremental_batch_size: Mini-batch size for incremental updates
            gradient_clip: Absolute bound on every single parameter update
            random_state: Seed for initialization and shuffling
        """
        defaults = config.MODEL_CONFIG
        ratings = config.RATING_CONFIG

        self.n_factors = n_factors if n_factors is not None else defaults["n_factors"]
        self.learning_rate = learning_rate if learning_rate is not None else defaults["learning_rate"]
        self.regularization = regularization if regularization is not None else defaults["regularization"]
        self.min_rating = min_rating if min_rating is not None else ratings["min_rating"]
        self.max_rating = max_rating if max_rating is not None else ratings["max_rating"]
        self.fallback_rating = fallback_rating if fallback_rating is not None else ratings["fallback_rating"]
        self.init_scale = init_scale if init_scale is not None else defaults["init_scale"]
        self.batch_size = batch_size or defaults["batch_size"]
        self.incremental_batch_size = incremental_batch_size or defaults["incremental_batch_size"]
        self.gradient_clip = gradient_clip if gradient_clip is not None else defaults["gradient_clip"]
        self.random_state = random_state if random_state is not None else defaults["random_state"]

        self.user_index = IdentifierIndex()
        self.item_index = IdentifierIndex()

        self._params: Optional[ModelParameters] = None
        self._training_lock = threading.Lock()
        self._rng = np.random.default_rng(self.random_state)

        # Metadata
        self.training_history: List[dict] = []
        self.n_full_trains = 0
        self.n_incremental_updates = 0
        self.last_incremental_loss: Optional[float] = None

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def initialize(self, user_capacity: int, item_capacity: int,
                   n_factors: Optional[int] = None) -> None:
        """
        Allocate embeddings and biases.

        Factors start from N(0, init_scale), biases at zero and the global
        bias at the middle of the rating scale.

        Raises:
            NotInitializable: If a capacity or the factor count is not positive
            AlreadyTraining: If a training run is currently using the model
        """
        if n_factors is not None:
            if n_factors <= 0:
                raise NotInitializable(f"n_factors must be positive, got {n_factors}")
            self.n_factors = n_factors

        if user_capacity <= 0 or item_capacity <= 0:
            raise NotInitializable(
                f"Capacities must be positive, got users={user_capacity}, items={item_capacity}"
            )

        if not self._training_lock.acquire(blocking=False):
            raise AlreadyTraining("Cannot re-initialize while a training run is active")

        try:
            # Identifiers already handed out keep their rows
            user_capacity = max(user_capacity, len(self.user_index))
            item_capacity = max(item_capacity, len(self.item_index))

            self._params = ModelParameters(
                user_factors=self._rng.normal(0, self.init_scale, (user_capacity, self.n_factors)),
                item_factors=self._rng.normal(0, self.init_scale, (item_capacity, self.n_factors)),
                user_bias=np.zeros(user_capacity, dtype=np.float64),
                item_bias=np.zeros(item_capacity, dtype=np.float64),
                user_trained=np.zeros(user_capacity, dtype=bool),
                item_trained=np.zeros(item_capacity, dtype=bool),
                global_bias=(self.min_rating + self.max_rating) / 2.0,
            )
        finally:
            self._training_lock.release()

        logger.info(
            f"Initialized latent factor model: users={user_capacity}, "
            f"items={item_capacity}, factors={self.n_factors}"
        )

    @property
    def is_initialized(self) -> bool:
        return self._params is not None

    @property
    def is_training(self) -> bool:
        return self._training_lock.locked()

    def _require_params(self) -> ModelParameters:
        params = self._params
        if params is None:
            raise NotInitialized("Model not initialized. Call initialize() first.")
        return params

    # ------------------------------------------------------------------
    # Data preparation
    # ------------------------------------------------------------------

    def _encode(self, events: Iterable) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Map feedback records to (user_idx, item_idx, rating) arrays.

        Accepts FeedbackEvent-like objects (user_id, item_id, value) or
        plain (user_id, item_id, value) tuples. Out-of-range values are
        skipped with a warning.
        """
        users, items, ratings = [], [], []
        skipped = 0

        for event in events:
            if isinstance(event, tuple):
                user_id, item_id, value = event
            else:
                user_id, item_id, value = event.user_id, event.item_id, event.value

            try:
                rating = validate_rating(value, self.min_rating, self.max_rating)
            except InvalidFeedbackValue:
                skipped += 1
                continue

            users.append(self.user_index.get_or_assign(user_id))
            items.append(self.item_index.get_or_assign(item_id))
            ratings.append(rating)

        if skipped:
            logger.warning(f"Skipped {skipped} feedback record(s) with out-of-range values")

        return (np.asarray(users, dtype=np.int64),
                np.asarray(items, dtype=np.int64),
                np.asarray(ratings, dtype=np.float64))

    def _with_capacity(self, params: ModelParameters) -> ModelParameters:
        """
        Return a private copy of params large enough for every assigned index.

        Tables double when they grow so repeated small growths stay cheap.
        """
        working = params.copy()
        n_users, n_items = len(self.user_index), len(self.item_index)

        if n_users > working.user_capacity:
            new_rows = max(n_users, 2 * working.user_capacity)
            working.user_factors = _grow_rows(
                working.user_factors, new_rows,
                lambda shape: self._rng.normal(0, self.init_scale, shape))
            working.user_bias = _grow_rows(working.user_bias, new_rows, np.zeros)
            working.user_trained = _grow_rows(working.user_trained, new_rows, np.zeros)
            logger.info(f"Expanded user table to {new_rows} rows")

        if n_items > working.item_capacity:
            new_rows = max(n_items, 2 * working.item_capacity)
            working.item_factors = _grow_rows(
                working.item_factors, new_rows,
                lambda shape: self._rng.normal(0, self.init_scale, shape))
            working.item_bias = _grow_rows(working.item_bias, new_rows, np.zeros)
            working.item_trained = _grow_rows(working.item_trained, new_rows, np.zeros)
            logger.info(f"Expanded item table to {new_rows} rows")

        return working

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def _run_epoch(self, params: ModelParameters,
                   user_indices: np.ndarray,
                   item_indices: np.ndarray,
                   ratings_values: np.ndarray,
                   learning_rate: float,
                   batch_size: int) -> float:
        """Train one shuffled epoch of mini-batch SGD in place on params."""
        n_samples = len(ratings_values)
        order = self._rng.permutation(n_samples)
        reg = self.regularization
        clip = self.gradient_clip
        epoch_loss = 0.0

        for start in range(0, n_samples, batch_size):
            batch = order[start:start + batch_size]
            u = user_indices[batch]
            i = item_indices[batch]
            r = ratings_values[batch]

            pu = params.user_factors[u]
            qi = params.item_factors[i]
            pred = (params.global_bias +
                    params.user_bias[u] +
                    params.item_bias[i] +
                    np.sum(pu * qi, axis=1))

            error = r - pred
            epoch_loss += float(np.sum(error ** 2) +
                                reg * (np.sum(pu ** 2) + np.sum(qi ** 2)))

            factor_u_update = np.clip(learning_rate * (error[:, None] * qi - reg * pu), -clip, clip)
            factor_i_update = np.clip(learning_rate * (error[:, None] * pu - reg * qi), -clip, clip)
            bias_u_update = np.clip(learning_rate * (error - reg * params.user_bias[u]), -clip, clip)
            bias_i_update = np.clip(learning_rate * (error - reg * params.item_bias[i]), -clip, clip)

            # Rows repeated inside a batch accumulate their updates
            np.add.at(params.user_factors, u, factor_u_update)
            np.add.at(params.item_factors, i, factor_i_update)
            np.add.at(params.user_bias, u, bias_u_update)
            np.add.at(params.item_bias, i, bias_i_update)
            params.global_bias += float(np.clip(learning_rate * np.mean(error), -clip, clip))

        params.user_trained[user_indices] = True
        params.item_trained[item_indices] = True

        return epoch_loss / n_samples

    def _rmse(self, params: ModelParameters,
              user_indices: np.ndarray,
              item_indices: np.ndarray,
              ratings_values: np.ndarray) -> float:
        preds = self._predict_indices(params, user_indices, item_indices)
        return float(np.sqrt(np.mean((preds - ratings_values) ** 2)))

    def train(self, events: Iterable,
              epochs: Optional[int] = None,
              validation_split: Optional[float] = None) -> List[dict]:
        """
        Full mini-batch training on a set of feedback records.

        Args:
            events: FeedbackEvent objects or (user_id, item_id, value) tuples
            epochs: Number of passes over the training split
            validation_split: Share of records held out to report val RMSE

        Returns:
            Per-epoch history: epoch, train_loss, val_rmse, epoch_time

        Raises:
            NotInitialized: If called before initialize()
            AlreadyTraining: If another training run is in progress
        """
        self._require_params()
        epochs = epochs if epochs is not None else config.MODEL_CONFIG["n_epochs"]
        if validation_split is None:
            validation_split = config.MODEL_CONFIG["validation_split"]

        if not self._training_lock.acquire(blocking=False):
            raise AlreadyTraining("Model is already training")

        try:
            user_indices, item_indices, ratings_values = self._encode(events)
            n_samples = len(ratings_values)
            if n_samples == 0:
                logger.warning("No valid feedback to train on")
                return []

            val_user = val_item = val_ratings = np.empty(0)
            if 0 < validation_split < 1 and n_samples >= 2:
                (user_indices, val_user,
                 item_indices, val_item,
                 ratings_values, val_ratings) = train_test_split(
                    user_indices, item_indices, ratings_values,
                    test_size=validation_split,
                    random_state=self.random_state,
                )

            params = self._with_capacity(self._require_params())
            params.global_bias = float(np.mean(ratings_values))

            logger.info(
                f"Training on {len(ratings_values)} ratings "
                f"({len(val_ratings)} held out), users={len(self.user_index)}, "
                f"items={len(self.item_index)}, epochs={epochs}"
            )

            history = []
            start_time = time.time()
            for epoch in range(epochs):
                epoch_start = time.time()
                train_loss = self._run_epoch(params, user_indices, item_indices,
                                             ratings_values, self.learning_rate,
                                             self.batch_size)
                val_rmse = (self._rmse(params, val_user.astype(np.int64),
                                       val_item.astype(np.int64), val_ratings)
                            if len(val_ratings) else float("nan"))
                epoch_time = time.time() - epoch_start

                history.append({
                    "epoch": epoch + 1,
                    "train_loss": train_loss,
                    "val_rmse": val_rmse,
                    "epoch_time": epoch_time,
                })
                logger.info(
                    f"Epoch {epoch + 1}/{epochs}: loss = {train_loss:.4f}, "
                    f"val_rmse = {val_rmse:.4f} ({epoch_time:.2f}s)"
                )

            # Publish
            self._params = params
            self.training_history = history
            self.n_full_trains += 1

            logger.info(f"Training completed in {time.time() - start_time:.2f} seconds")
            return history
        finally:
            self._training_lock.release()

    def incremental_train(self, events: Iterable,
                          learning_rate: Optional[float] = None) -> bool:
        """
        Single-epoch, small-batch update from recent feedback.

        If a training run is already in progress the call is skipped: nothing
        is queued or retried.

        Returns:
            True if the update was applied, False if it was skipped

        Raises:
            NotInitialized: If called before initialize()
        """
        self._require_params()
        learning_rate = learning_rate if learning_rate is not None else self.learning_rate

        if not self._training_lock.acquire(blocking=False):
            logger.warning("Model is already training, skipping incremental update")
            return False

        try:
            user_indices, item_indices, ratings_values = self._encode(events)
            if len(ratings_values) == 0:
                logger.info("Incremental update had no valid feedback, nothing applied")
                return False

            params = self._with_capacity(self._require_params())
            loss = self._run_epoch(params, user_indices, item_indices, ratings_values,
                                   learning_rate, self.incremental_batch_size)

            self._params = params
            self.last_incremental_loss = loss
            self.n_incremental_updates += 1

            logger.info(
                f"Incremental training completed with {len(ratings_values)} new ratings "
                f"(loss={loss:.4f}, lr={learning_rate:.6f})"
            )
            return True
        finally:
            self._training_lock.release()

    # ------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------

    def _predict_indices(self, params: ModelParameters,
                         user_indices: np.ndarray,
                         item_indices: np.ndarray) -> np.ndarray:
        """Vectorized predictions with the cold start fallback applied."""
        predictions = np.full(len(user_indices), self.fallback_rating, dtype=np.float64)
        if len(user_indices) == 0:
            return predictions

        known = (user_indices < params.user_capacity) & (item_indices < params.item_capacity)
        in_range = np.flatnonzero(known)
        known[in_range] = (params.user_trained[user_indices[in_range]] &
                           params.item_trained[item_indices[in_range]])

        if known.any():
            u = user_indices[known]
            i = item_indices[known]
            raw = (params.global_bias +
                   params.user_bias[u] +
                   params.item_bias[i] +
                   np.sum(params.user_factors[u] * params.item_factors[i], axis=1))
            raw = np.where(np.isnan(raw), self.fallback_rating, raw)
            predictions[known] = np.clip(raw, self.min_rating, self.max_rating)

        return predictions

    def predict(self, user_id: Hashable, item_id: Hashable) -> float:
        """
        Predict rating for a single user-item pair.

        Unseen users or items get the fallback rating; this is the cold
        start policy, not an error.

        Raises:
            NotInitialized: If called before initialize()
        """
        params = self._require_params()
        u = self.user_index.get_or_assign(user_id)
        i = self.item_index.get_or_assign(item_id)
        prediction = self._predict_indices(params, np.array([u]), np.array([i]))
        return float(prediction[0])

    def batch_predict(self, pairs: Sequence[Tuple[Hashable, Hashable]]) -> np.ndarray:
        """
        Vectorized prediction for (user_id, item_id) pairs.

        Output length always equals input length; unseen pairs hold the
        fallback rating at their position.
        """
        params = self._require_params()
        user_indices = np.array([self.user_index.get_or_assign(u) for u, _ in pairs], dtype=np.int64)
        item_indices = np.array([self.item_index.get_or_assign(i) for _, i in pairs], dtype=np.int64)
        return self._predict_indices(params, user_indices, item_indices)

    def predict_items(self, user_id: Hashable, item_ids: Sequence[Hashable]) -> Dict[Hashable, float]:
        """Predictions for one user over a list of candidate items."""
        predictions = self.batch_predict([(user_id, item_id) for item_id in item_ids])
        return dict(zip(item_ids, predictions.tolist()))

    def is_known(self, user_id: Hashable, item_id: Hashable) -> bool:
        """True if both identifiers have trained embeddings."""
        params = self._params
        if params is None:
            return False
        u = self.user_index.get(user_id)
        i = self.item_index.get(item_id)
        if u is None or i is None or u >= params.user_capacity or i >= params.item_capacity:
            return False
        return bool(params.user_trained[u] and params.item_trained[i])

    def trained_items(self) -> List[Hashable]:
        """Identifiers of every item with a trained embedding, in index order."""
        params = self._params
        if params is None:
            return []
        n_items = min(len(self.item_index), params.item_capacity)
        return [self.item_index.key_for(int(idx))
                for idx in np.flatnonzero(params.item_trained[:n_items])]

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_model_info(self) -> dict:
        """
        Get model metadata and statistics.

        Returns:
            Dict with capacities, factor count, training state, etc.
        """
        params = self._params
        return {
            "algorithm": "Latent Factor Model (SGD with bias terms)",
            "is_initialized": params is not None,
            "is_training": self.is_training,
            "n_factors": self.n_factors,
            "learning_rate": self.learning_rate,
            "regularization": self.regularization,
            "total_users": len(self.user_index),
            "total_items": len(self.item_index),
            "user_capacity": params.user_capacity if params is not None else 0,
            "item_capacity": params.item_capacity if params is not None else 0,
            "global_bias": float(params.global_bias) if params is not None else None,
            "n_full_trains": self.n_full_trains,
            "n_incremental_updates": self.n_incremental_updates,
        }

    def __getstate__(self):
        state = self.__dict__.copy()
        del state["_training_lock"]
        return state

    def __setstate__(self, state):
        self.__dict__.update(state)
        self._training_lock = threading.Lock()

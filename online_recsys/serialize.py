"""
Model Serialization Module

Handles saving and loading trained latent factor models to/from disk.
"""

import logging
import os
import pickle
from pathlib import Path
from typing import Union

from .model import LatentFactorModel

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def save_model(model: LatentFactorModel, path: PathLike) -> None:
    """
    Save a model to a pickle file.

    Training locks are not pickled; the loaded model gets a fresh one.

    Args:
        model: LatentFactorModel (initialized or trained)
        path: File path to save model (.pkl extension)

    Example:
        >>> save_model(model, "models/latent_factor_model.pkl")
    """
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, 'wb') as f:
        pickle.dump(model, f)

    logger.info(f"Model saved to: {output_path}")


def load_model(path: PathLike) -> LatentFactorModel:
    """
    Load a model from a pickle file.

    Raises:
        FileNotFoundError: If model file doesn't exist
        TypeError: If the file holds something other than a LatentFactorModel
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Model file not found: {path}")

    with open(path, 'rb') as f:
        model = pickle.load(f)

    if not isinstance(model, LatentFactorModel):
        raise TypeError(f"Expected LatentFactorModel in {path}, found {type(model).__name__}")

    logger.info(f"Model loaded from: {path}")
    return model


def get_model_size(path: PathLike) -> float:
    """
    Get size of saved model file in megabytes.

    Metric: Disk space required for model
    Operationalization: File size in bytes / (1024^2)
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Model file not found: {path}")

    return os.path.getsize(path) / (1024 ** 2)


def verify_model_integrity(path: PathLike) -> bool:
    """True if the saved model loads successfully, False otherwise."""
    try:
        load_model(path)
        return True
    except Exception as e:
        logger.error(f"Model integrity check failed: {e}")
        return False

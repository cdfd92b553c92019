"""
Configuration file for the Online Recommendation Service

Contains all hyperparameters, paths, and constants used across the service.
"""

import os
from pathlib import Path

# ============================================================================
# PATHS
# ============================================================================

# Base directories
PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = PROJECT_ROOT / "data"
MODELS_DIR = PROJECT_ROOT / "models"

# Model paths
DEFAULT_MODEL_PATH = MODELS_DIR / "latent_factor_model.pkl"

# Feedback audit log (JSON lines)
EVENT_LOG_PATH = Path(os.getenv("EVENT_LOG_PATH", str(DATA_DIR / "feedback_events.jsonl")))

# ============================================================================
# RATING SCALE
# ============================================================================

RATING_CONFIG = {
    "min_rating": float(os.getenv("MIN_RATING", "1")),
    "max_rating": float(os.getenv("MAX_RATING", "10")),
    "fallback_rating": float(os.getenv("FALLBACK_RATING", "6.0")),  # Cold start prediction
}

# ============================================================================
# MODEL HYPERPARAMETERS
# ============================================================================

MODEL_CONFIG = {
    "n_factors": 50,  # Number of latent factors
    "user_capacity": int(os.getenv("USER_CAPACITY", "1000")),  # Initial user rows
    "item_capacity": int(os.getenv("ITEM_CAPACITY", "5000")),  # Initial item rows
    "learning_rate": 0.015,  # Full training learning rate
    "regularization": 0.005,  # L2 penalty on embeddings and biases
    "init_scale": 0.1,  # Std of the normal factor initialization
    "batch_size": 256,  # Mini-batch size for full training
    "incremental_batch_size": 32,  # Mini-batch size for incremental updates
    "n_epochs": 50,  # Full training epochs
    "validation_split": 0.2,  # Held-out share during full training
    "gradient_clip": 5.0,  # Per-update clip, prevents explosions
    "random_state": None,  # Seed for initialization and shuffling
}

# ============================================================================
# ONLINE LEARNING CONFIGURATION
# ============================================================================

ONLINE_LEARNING_CONFIG = {
    "batch_size": int(os.getenv("ONLINE_BATCH_SIZE", "32")),  # Jobs per drain cycle
    "learning_rate": 0.01,  # Initial incremental learning rate
    "max_learning_rate": 0.05,  # Ceiling for adaptive growth
    "update_threshold": int(os.getenv("ONLINE_UPDATE_THRESHOLD", "10")),  # Queue length that triggers a drain
    "update_interval": float(os.getenv("ONLINE_UPDATE_INTERVAL", "5.0")),  # Timer tick in seconds
    "drain_pacing_seconds": 0.1,  # Delay between consecutive drain cycles
    "validation_sample_size": 10,  # Jobs used to estimate accuracy per batch
    "ema_weight": 0.1,  # Weight of the newest sample in rolling metrics
    "metrics_window": 10,  # Snapshots kept for the learning rate trend
    "min_trend_points": 5,  # Snapshots needed before adapting
    "trend_threshold": 0.01,  # Slope magnitude that triggers an adjustment
    "lr_decay": 0.9,  # Multiplier when accuracy declines
    "lr_growth": 1.05,  # Multiplier when accuracy improves
    "enable_dead_letter": os.getenv("ENABLE_DEAD_LETTER", "false").lower() == "true",
    "dead_letter_capacity": 1000,
}

# ============================================================================
# UPDATE QUEUE
# ============================================================================

QUEUE_CONFIG = {
    "max_queue_size": int(os.getenv("MAX_QUEUE_SIZE", "1000")),
    "default_priority": "medium",
}

# ============================================================================
# HYBRID SCORING
# ============================================================================

HYBRID_CONFIG = {
    "collaborative_threshold": 0.6,  # Normalized model scores below this are ignored
    "explanation_score_threshold": 0.7,  # Component score needed to be mentioned
    "explanation_weight_threshold": 0.3,  # Component weight needed to be mentioned
    "candidate_multiplier": 2,  # Candidates fetched per requested recommendation
    "max_genres": 20,  # Genre count that means a fully diverse user
    "diverse_user_threshold": 0.7,
}

# ============================================================================
# CACHE CONFIGURATION
# ============================================================================

CACHE_CONFIG = {
    "backend": os.getenv("CACHE_BACKEND", "memory"),  # "memory" or "redis"
    "redis_url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
    "max_entries": 10000,  # In-memory store size
    "recommendation_ttl": 300,  # 5 minutes
    "prediction_ttl": 3600,  # 1 hour
    "tag_ttl_buffer": 300,  # Tag index outlives its entries by this much
}

# ============================================================================
# SERVING CONFIGURATION
# ============================================================================

SERVING_CONFIG = {
    "host": "0.0.0.0",
    "port": int(os.getenv("PORT", 8082)),
    "debug": False,
    "max_recommendations": 100,
    "default_recommendations": 20,
    "batch_chunk_size": 10,  # Users served concurrently by recommend_batch
    "timeout_ms": 600,  # Maximum response time in milliseconds
}

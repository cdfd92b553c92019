"""
Online Recommendation Package for Movie Recommendation System

This package contains modular components for:
- Latent factor model (full and incremental SGD training, prediction)
- Priority update queue for incoming feedback
- Online learning coordinator (batched incremental updates, rolling metrics)
- Hybrid scoring (content + collaborative + popularity + diversity)
- Recommendation caching with tag-based invalidation
- Serving (Flask API)
"""

__version__ = "2.0.0"

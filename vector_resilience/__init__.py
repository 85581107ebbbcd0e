"""Embedding cache, vector index lifecycle and graceful degradation for hybrid search."""

__version__ = "1.0.0"

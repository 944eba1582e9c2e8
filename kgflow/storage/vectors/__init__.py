"""
kgflow Vector Search
====================

- VectorSearch: nearest-neighbour search over FalkorDB vector indexes
- VectorIndexConfig: index registry entry
- EmbeddingProvider: protocol for query/document embedders

The sentence-transformers embedder lives in ``kgflow.storage.vectors.embeddings``
and needs the ``embeddings`` extra.
"""

from kgflow.storage.vectors.search import (
    EmbeddingProvider,
    VectorHit,
    VectorIndexConfig,
    VectorSearch,
)

__all__ = [
    "EmbeddingProvider",
    "VectorHit",
    "VectorIndexConfig",
    "VectorSearch",
]

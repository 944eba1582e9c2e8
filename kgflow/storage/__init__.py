"""
Storage Layer
=============

Read-side access to the property graph.

Components:
- graph/: FalkorDB client (Cypher over the Redis protocol)
- vectors/: vector index search and embedding providers

    QueryBuilder ──> FalkorDBClient.run()          (fetch / filter / expand)
               └──> VectorSearch.search()          (semantic)
                        └──> EmbeddingProvider.embed()
"""

from kgflow.storage.graph import FalkorDBClient, FalkorDBConfig
from kgflow.storage.vectors import EmbeddingProvider, VectorHit, VectorIndexConfig, VectorSearch

__all__ = [
    # Graph
    "FalkorDBClient",
    "FalkorDBConfig",
    # Vectors
    "EmbeddingProvider",
    "VectorHit",
    "VectorIndexConfig",
    "VectorSearch",
]

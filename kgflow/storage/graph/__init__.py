"""
kgflow Graph Storage
====================

FalkorDB access (Cypher-compatible, Redis protocol).

Components:
- FalkorDBClient: async client used by the pipeline engine
- FalkorDBConfig: connection settings

Example:
    from kgflow.storage.graph import FalkorDBClient, FalkorDBConfig

    client = FalkorDBClient(FalkorDBConfig(graph_name="code_graph"))
    await client.connect()
"""

from kgflow.storage.graph.client import FalkorDBClient
from kgflow.storage.graph.config import FalkorDBConfig

__all__ = [
    "FalkorDBClient",
    "FalkorDBConfig",
]

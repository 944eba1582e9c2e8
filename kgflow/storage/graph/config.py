"""
FalkorDB Configuration
======================

Connection and query-deadline settings for the FalkorDB client.

Every query runs under two limits derived from ``timeout_ms``: the server
aborts the query itself (``ro_query(timeout=...)``), and the client stops
waiting on the executor thread (``asyncio.wait_for``). A per-call timeout
passed to ``FalkorDBClient.run`` replaces the client-side limit only.

Usage:
    from kgflow.storage.graph import FalkorDBConfig

    config = FalkorDBConfig()                       # env vars or defaults
    config = FalkorDBConfig(graph_name="code_graph", timeout_ms=0)

Environment Variables:
    FALKORDB_HOST: Server host (default: localhost)
    FALKORDB_PORT: Server port (default: 6379)
    FALKORDB_GRAPH_NAME: Graph name (default: kgflow)
    FALKORDB_PASSWORD: Password (default: empty)
    FALKORDB_TIMEOUT_MS: Per-query timeout in ms, 0 disables it (default: 5000)
"""

import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional


def _env(key: str, default: Any, cast: Callable[[str], Any] = str) -> Callable[[], Any]:
    """Dataclass default factory reading ``key`` from the environment."""
    return lambda: cast(os.environ.get(key, default))


@dataclass
class FalkorDBConfig:
    """
    FalkorDB connection settings.

    Attributes:
        host: FalkorDB server host
        port: Server port
        graph_name: Graph to query
        timeout_ms: Per-query timeout in milliseconds (0 disables it)
        password: Authentication password (optional)
    """
    host: str = field(default_factory=_env("FALKORDB_HOST", "localhost"))
    port: int = field(default_factory=_env("FALKORDB_PORT", 6379, int))
    graph_name: str = field(default_factory=_env("FALKORDB_GRAPH_NAME", "kgflow"))
    timeout_ms: int = field(default_factory=_env("FALKORDB_TIMEOUT_MS", 5000, int))
    password: Optional[str] = field(default_factory=lambda: os.environ.get("FALKORDB_PASSWORD") or None)

    def __post_init__(self):
        if self.timeout_ms < 0:
            raise ValueError(f"timeout_ms must be >= 0, got {self.timeout_ms}")

    @property
    def timeout_seconds(self) -> Optional[float]:
        """Query timeout in seconds, None when disabled."""
        return self.timeout_ms / 1000 if self.timeout_ms else None

    @property
    def server_timeout(self) -> Optional[int]:
        """Timeout handed to ``ro_query`` (ms), None when disabled."""
        return self.timeout_ms or None

    def deadline(self, override: Optional[float] = None) -> Optional[float]:
        """Seconds the client waits for one query, ``override`` first."""
        return override if override is not None else self.timeout_seconds

    def connection_kwargs(self) -> Dict[str, Any]:
        return {"host": self.host, "port": self.port, "password": self.password}

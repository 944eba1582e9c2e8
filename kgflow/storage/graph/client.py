"""
FalkorDB Client
===============

Async client for the FalkorDB graph database.

FalkorDB speaks the Redis protocol and executes Cypher. The pipeline only
emits read queries, so every call goes through ``ro_query``.

Records are returned as dicts keyed by column alias; nodes and edges are
converted to ``{"properties": ..., "labels": ..., "id": ...}``.
"""

import asyncio
from typing import Any, Dict, List, Optional

import structlog
from falkordb import FalkorDB, Graph

from kgflow.exceptions import StoreQueryError
from kgflow.storage.graph.config import FalkorDBConfig

log = structlog.get_logger()


class FalkorDBClient:
    """
    Async client for FalkorDB.

    Example:
        client = FalkorDBClient(config)
        await client.connect()

        records = await client.run(
            "MATCH (n:Function) WHERE n.name STARTS WITH $prefix RETURN n",
            {"prefix": "create"},
        )

        await client.close()
    """

    def __init__(self, config: Optional[FalkorDBConfig] = None):
        self.config = config or FalkorDBConfig()
        self._db: Optional[FalkorDB] = None
        self._graph: Optional[Graph] = None
        self._connected = False

        log.info(
            f"FalkorDBClient initialized - "
            f"host={self.config.host}:{self.config.port}, "
            f"graph={self.config.graph_name}"
        )

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self):
        """Establish connection to FalkorDB."""
        if self._connected:
            log.debug("Already connected to FalkorDB")
            return

        # falkordb-py is synchronous
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self._connect_sync)

        log.info(f"Connected to FalkorDB at {self.config.host}:{self.config.port}")

    def _connect_sync(self):
        """Synchronous connection (called in executor)."""
        self._db = FalkorDB(**self.config.connection_kwargs())
        self._graph = self._db.select_graph(self.config.graph_name)
        self._connected = True

    async def close(self):
        """Close connection."""
        if not self._connected:
            return

        # Connections belong to the redis pool, just drop references
        self._connected = False
        self._db = None
        self._graph = None
        log.info("Disconnected from FalkorDB")

    async def __aenter__(self) -> "FalkorDBClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def run(
        self,
        cypher: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        """
        Execute a read-only Cypher query.

        Args:
            cypher: Cypher query string
            params: Query parameters
            timeout: Seconds before the call is abandoned
                     (default: config.timeout_ms)

        Returns:
            List of result records as dicts

        Raises:
            RuntimeError: If not connected
            StoreQueryError: If FalkorDB rejects the query
            asyncio.TimeoutError: If the deadline expires
        """
        if not self._connected:
            raise RuntimeError("Not connected to FalkorDB. Call connect() first.")

        deadline = self.config.deadline(timeout)
        loop = asyncio.get_event_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(None, self._run_sync, cypher, params or {}),
            timeout=deadline,
        )

    def _run_sync(self, cypher: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Execute query synchronously (called in executor)."""
        try:
            result = self._graph.ro_query(
                cypher,
                params,
                timeout=self.config.server_timeout,
            )
        except Exception as e:
            log.error(f"Query failed: {cypher[:100]}... Error: {e}")
            raise StoreQueryError(f"FalkorDB query failed: {e}", query=cypher) from e

        records = []
        if result.result_set:
            headers = result.header
            for row in result.result_set:
                record = {}
                for i, header in enumerate(headers):
                    # header format is [type, alias]
                    col_name = header[1] if len(header) > 1 else f"col_{i}"
                    record[col_name] = _convert_value(row[i])
                records.append(record)

        log.debug(
            f"Query executed: {cypher[:100]}... "
            f"(params={list(params.keys())}) -> {len(records)} records"
        )
        return records

    async def explain(
        self,
        cypher: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> List[str]:
        """
        Return FalkorDB's execution plan for a query, one operation per line.
        """
        if not self._connected:
            raise RuntimeError("Not connected to FalkorDB. Call connect() first.")

        loop = asyncio.get_event_loop()
        plan = await loop.run_in_executor(
            None, lambda: self._graph.explain(cypher, params or {})
        )
        return [line for line in str(plan).splitlines() if line.strip()]

    async def health_check(self) -> bool:
        """
        Check if FalkorDB is reachable.

        Returns:
            True if healthy, False otherwise
        """
        try:
            if not self._connected:
                await self.connect()
            await self.run("RETURN 1 AS ok")
            return True
        except Exception as e:
            log.warning(f"FalkorDB health check failed: {e}")
            return False


def _convert_value(value: Any) -> Any:
    """Convert FalkorDB Node/Edge/Path objects into plain structures."""
    if isinstance(value, list):
        return [_convert_value(v) for v in value]
    if hasattr(value, "properties"):
        return {
            "properties": dict(value.properties),
            "labels": getattr(value, "labels", []),
            "id": getattr(value, "id", None),
        }
    return value

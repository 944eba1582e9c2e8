"""
Vector Search
=============

Nearest-neighbour search over FalkorDB vector indexes.

Indexes are registered by name with the label/attribute pair FalkorDB
indexes on, and are injected at construction time together with the
embedding provider used to embed query texts.

FalkorDB yields a distance for each hit; it is converted to a similarity
in [0, 1] before ``min_score`` is applied:

    cosine:     similarity = 1 - distance
    euclidean:  similarity = 1 / (1 + distance)

When the search is constrained (identity list or field conditions) the
index is over-queried (``max(top_k * over_retrieve_factor, min_candidates)``)
so that enough candidates survive the WHERE clause.

Example:
    search = VectorSearch(
        graph=client,
        embedder=embedder,
        indexes=[VectorIndexConfig("code", label="Function", attribute="embedding")],
    )
    hits = await search.search("token refresh", index_name="code", top_k=20)
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Union

import structlog

from kgflow.config import PipelineSettings, get_default_settings
from kgflow.exceptions import ConfigurationError
from kgflow.models.conditions import FieldCondition, compile_conditions, property_ref

log = structlog.get_logger()

SIMILARITY_FUNCTIONS = ("cosine", "euclidean")


class EmbeddingProvider(Protocol):
    """Anything that turns texts into vectors."""

    async def embed(self, texts: List[str], is_query: bool = False) -> List[List[float]]:
        ...


@dataclass(frozen=True)
class VectorIndexConfig:
    """
    A FalkorDB vector index.

    Attributes:
        name: Registry name used by semantic steps
        label: Node label the index covers
        attribute: Vector property
        similarity: "cosine" or "euclidean"
        dimension: Expected vector size (checked when set)
        model: Embedding model name, informational
    """
    name: str
    label: str
    attribute: str = "embedding"
    similarity: str = "cosine"
    dimension: Optional[int] = None
    model: Optional[str] = None

    def __post_init__(self):
        if self.similarity not in SIMILARITY_FUNCTIONS:
            raise ValueError(
                f"similarity must be one of {SIMILARITY_FUNCTIONS}, got {self.similarity}"
            )


@dataclass
class VectorHit:
    """One vector search result."""
    properties: Dict[str, Any]
    score: float
    labels: List[str] = field(default_factory=list)


class VectorSearch:
    """Vector search adapter over a FalkorDB client."""

    def __init__(
        self,
        graph,
        embedder: EmbeddingProvider,
        indexes: Union[Iterable[VectorIndexConfig], Dict[str, VectorIndexConfig]] = (),
        settings: Optional[PipelineSettings] = None,
    ):
        """
        Args:
            graph: FalkorDBClient (anything with ``run(cypher, params, timeout)``)
            embedder: Provider used to embed query texts
            indexes: Registry of searchable indexes
            settings: Over-retrieval and timeout defaults
        """
        self.graph = graph
        self.embedder = embedder
        self.settings = settings or get_default_settings()
        if isinstance(indexes, dict):
            self._indexes = dict(indexes)
        else:
            self._indexes = {index.name: index for index in indexes}

    def register(self, index: VectorIndexConfig):
        self._indexes[index.name] = index

    def has_index(self, name: str) -> bool:
        return name in self._indexes

    def get_index(self, name: str) -> VectorIndexConfig:
        try:
            return self._indexes[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown vector index '{name}'. Registered: {sorted(self._indexes)}"
            )

    @property
    def index_names(self) -> List[str]:
        return sorted(self._indexes)

    def build_query(
        self,
        index: VectorIndexConfig,
        top_k: int,
        min_score: float = 0.0,
        filter_ids: Optional[Sequence[Any]] = None,
        conditions: Sequence[FieldCondition] = (),
        id_field: str = "uuid",
    ) -> tuple:
        """
        Build the Cypher query and parameters (without the query vector).

        Returns:
            (cypher, params) tuple
        """
        constrained = filter_ids is not None or bool(conditions)
        candidates = top_k
        if constrained:
            candidates = max(
                top_k * self.settings.over_retrieve_factor,
                self.settings.min_candidates,
            )

        params: Dict[str, Any] = {
            "label": index.label,
            "attribute": index.attribute,
            "candidates": candidates,
            "min_score": min_score,
            "top_k": top_k,
        }
        where = ["similarity >= $min_score"]
        if filter_ids is not None:
            params["filter_ids"] = list(filter_ids)
            where.append(f"{property_ref('node', id_field)} IN $filter_ids")
        where.extend(compile_conditions(conditions, "node", params, prefix="f"))

        if index.similarity == "cosine":
            similarity = "1.0 - score"
        else:
            similarity = "1.0 / (1.0 + score)"

        cypher = (
            "CALL db.idx.vector.queryNodes($label, $attribute, $candidates, vecf32($embedding)) "
            "YIELD node, score\n"
            f"WITH node, {similarity} AS similarity\n"
            f"WHERE {' AND '.join(where)}\n"
            "RETURN node, similarity AS score\n"
            f"ORDER BY score DESC, {property_ref('node', id_field)} ASC\n"
            "LIMIT $top_k"
        )
        return cypher, params

    async def search(
        self,
        query_text: str,
        index_name: str,
        top_k: int = 10,
        min_score: float = 0.0,
        filter_ids: Optional[Sequence[Any]] = None,
        conditions: Sequence[FieldCondition] = (),
        id_field: str = "uuid",
        timeout: Optional[float] = None,
    ) -> List[VectorHit]:
        """
        Search an index for entities similar to ``query_text``.

        Args:
            query_text: Natural-language query
            index_name: Registered index name
            top_k: Max hits returned
            min_score: Minimum similarity in [0, 1]
            filter_ids: Restrict hits to these entity ids
            conditions: Field conditions applied to candidate nodes
            id_field: Entity identifier property
            timeout: Seconds per network call (default: settings.vector_timeout)

        Returns:
            Hits ordered by similarity descending
        """
        index = self.get_index(index_name)
        if filter_ids is not None and not filter_ids:
            return []

        deadline = timeout if timeout is not None else self.settings.vector_timeout
        vectors = await asyncio.wait_for(
            self.embedder.embed([query_text], is_query=True),
            timeout=deadline,
        )
        if not vectors:
            raise ValueError(f"Embedding provider returned no vector for '{query_text[:50]}'")
        embedding = list(vectors[0])
        if index.dimension and len(embedding) != index.dimension:
            raise ConfigurationError(
                f"Index '{index.name}' expects {index.dimension} dimensions, "
                f"embedding provider produced {len(embedding)}"
            )

        cypher, params = self.build_query(
            index, top_k, min_score, filter_ids, conditions, id_field
        )
        params["embedding"] = embedding

        records = await self.graph.run(cypher, params, timeout=deadline)

        hits = []
        for record in records:
            node = record.get("node") or {}
            score = min(1.0, max(0.0, float(record.get("score") or 0.0)))
            hits.append(
                VectorHit(
                    properties=dict(node.get("properties", {})),
                    score=score,
                    labels=list(node.get("labels", [])),
                )
            )

        log.debug(
            f"Vector search '{query_text[:50]}' on {index.name}: "
            f"{len(hits)} hits (top_k={top_k}, constrained={filter_ids is not None or bool(conditions)})"
        )
        return hits

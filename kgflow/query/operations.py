"""
Pipeline Operations
===================

Typed, immutable steps of a query pipeline.

    fetch               initial store query (all / uuid / relationship / filter)
    filter              field conditions, or one relationship condition
    client_filter       arbitrary in-memory predicate
    expand              attach neighbours as context.related
    semantic            vector search (seed or constrained re-score)
    llm_rerank          LLM relevance judgement
    llm_structured      LLM structured field generation
    generate_embeddings compute vectors for entities

Operations never change once appended; the builder replaces the last
operation when two consecutive filters merge.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from kgflow.llm.executor import StructuredCallConfig
from kgflow.models.conditions import DIRECTIONS, FieldCondition, RelationshipCondition
from kgflow.models.results import SearchResult
from kgflow.reranking.reranker import RerankOptions

FETCH_MODES = ("all", "uuid", "relationship", "filter")
EXPAND_DIRECTIONS = DIRECTIONS + ("both",)

MetadataOverride = Callable[[List[SearchResult], Dict[str, Any]], Dict[str, Any]]


@dataclass(frozen=True)
class FetchOperation:
    """Initial store query."""
    mode: str = "all"
    ids: Tuple[Any, ...] = ()
    relationship: Optional[RelationshipCondition] = None
    conditions: Tuple[FieldCondition, ...] = ()

    type = "fetch"

    def __post_init__(self):
        if self.mode not in FETCH_MODES:
            raise ValueError(f"mode must be one of {FETCH_MODES}, got {self.mode}")
        if self.mode == "relationship" and self.relationship is None:
            raise ValueError("relationship fetch needs a RelationshipCondition")
        object.__setattr__(self, "ids", tuple(self.ids))
        object.__setattr__(self, "conditions", tuple(self.conditions))

    def describe(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"mode": self.mode}
        if self.ids:
            data["ids"] = list(self.ids)
        if self.relationship is not None:
            data["relationship"] = self.relationship.describe()
        if self.conditions:
            data["conditions"] = [c.describe() for c in self.conditions]
        return data


@dataclass(frozen=True)
class FilterOperation:
    """Field conditions (fusible) or a relationship condition (never fused)."""
    conditions: Tuple[FieldCondition, ...] = ()
    relationship: Optional[RelationshipCondition] = None

    type = "filter"

    def __post_init__(self):
        object.__setattr__(self, "conditions", tuple(self.conditions))
        if self.relationship is not None and self.conditions:
            raise ValueError("a filter holds field conditions or a relationship condition, not both")

    @property
    def is_fusible(self) -> bool:
        return self.relationship is None

    def merged_with(self, other: "FilterOperation") -> "FilterOperation":
        return FilterOperation(conditions=self.conditions + other.conditions)

    def describe(self) -> Dict[str, Any]:
        if self.relationship is not None:
            return {"relationship": self.relationship.describe()}
        return {"conditions": [c.describe() for c in self.conditions]}


@dataclass(frozen=True)
class ClientFilterOperation:
    """In-memory predicate over results."""
    predicate: Callable[[SearchResult], bool]
    description: str = ""

    type = "client_filter"

    def describe(self) -> Dict[str, Any]:
        return {"description": self.description or getattr(self.predicate, "__name__", "predicate")}


@dataclass(frozen=True)
class ExpandOperation:
    """Traverse ``relationship_type`` up to ``depth`` hops from each result."""
    relationship_type: Optional[str] = None
    depth: int = 1
    direction: str = "outgoing"
    target_label: Optional[str] = None

    type = "expand"

    def __post_init__(self):
        if self.depth < 1:
            raise ValueError(f"depth must be >= 1, got {self.depth}")
        if self.direction not in EXPAND_DIRECTIONS:
            raise ValueError(f"direction must be one of {EXPAND_DIRECTIONS}, got {self.direction}")

    def describe(self) -> Dict[str, Any]:
        return {
            "relationship_type": self.relationship_type,
            "depth": self.depth,
            "direction": self.direction,
            "target_label": self.target_label,
        }


@dataclass(frozen=True)
class SemanticOperation:
    """Vector search seeding or re-scoring the result set."""
    query_text: str
    index_name: str
    top_k: int = 10
    min_score: float = 0.0
    metadata_override: Optional[MetadataOverride] = None

    type = "semantic"

    def __post_init__(self):
        if self.top_k < 1:
            raise ValueError(f"top_k must be >= 1, got {self.top_k}")
        if not 0 <= self.min_score <= 1:
            raise ValueError(f"min_score must be in [0, 1], got {self.min_score}")

    def describe(self) -> Dict[str, Any]:
        return {
            "query": self.query_text,
            "index": self.index_name,
            "top_k": self.top_k,
            "min_score": self.min_score,
        }


@dataclass(frozen=True)
class LLMRerankOperation:
    """LLM relevance reranking."""
    question: str
    options: RerankOptions = field(default_factory=RerankOptions)
    metadata_override: Optional[MetadataOverride] = None

    type = "llm_rerank"

    def describe(self) -> Dict[str, Any]:
        return {"question": self.question, **self.options.to_dict()}


@dataclass(frozen=True)
class LLMStructuredOperation:
    """Structured LLM generation merged into each entity."""
    config: StructuredCallConfig

    type = "llm_structured"

    def describe(self) -> Dict[str, Any]:
        return {
            "output_fields": list(self.config.output_schema),
            "global_fields": list(self.config.global_schema or {}),
            "output_format": self.config.output_format,
            "merge_strategy": self.config.merge_strategy if isinstance(self.config.merge_strategy, str) else "custom",
        }


@dataclass(frozen=True)
class GenerateEmbeddingsOperation:
    """
    Embed a text built from ``source_fields`` into ``target_field``.

    With ``include_related`` the names of ``context.related`` entities are
    appended to the text.
    """
    source_fields: Tuple[str, ...]
    target_field: str = "embedding"
    provider: Any = None
    batch_size: Optional[int] = None
    include_related: bool = False
    related_field: str = "name"

    type = "generate_embeddings"

    def __post_init__(self):
        object.__setattr__(self, "source_fields", tuple(self.source_fields))
        if not self.source_fields:
            raise ValueError("source_fields must not be empty")

    def describe(self) -> Dict[str, Any]:
        return {
            "source_fields": list(self.source_fields),
            "target_field": self.target_field,
            "include_related": self.include_related,
        }


Operation = Union[
    FetchOperation,
    FilterOperation,
    ClientFilterOperation,
    ExpandOperation,
    SemanticOperation,
    LLMRerankOperation,
    LLMStructuredOperation,
    GenerateEmbeddingsOperation,
]

# Steps that can absorb following field-only filters into their store query
FUSION_HOSTS = (FetchOperation, ExpandOperation, SemanticOperation)

# Steps that produce the initial result set
DATA_PRODUCERS = (FetchOperation, SemanticOperation)

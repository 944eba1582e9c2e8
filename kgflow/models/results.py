"""
Pipeline Result Models
======================

Dataclasses for result entries, expansion context, LLM evaluations and
execution metadata.
"""

import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class RelatedEntity:
    """
    Neighbour discovered by an expand step.

    Attributes:
        entity: Neighbour properties
        relationship_type: Type of the first relationship on the path
        depth: Hops from the originating entity (1..requested depth)
    """
    entity: Dict[str, Any]
    relationship_type: str
    depth: int


@dataclass
class ResultContext:
    """Context attached to a result by expand and rerank steps."""
    related: List[RelatedEntity] = field(default_factory=list)
    llm_reasoning: Optional[str] = None


@dataclass
class SearchResult:
    """
    One entry of a pipeline result set.

    ``score`` is the blended ranking score; ``score_breakdown`` keeps the
    per-signal partial scores ("filter", "semantic", "previous", "llm") for
    observability and is never used to re-derive ``score``.
    """
    entity: Dict[str, Any]
    score: float = 1.0
    score_breakdown: Dict[str, float] = field(default_factory=dict)
    context: Optional[ResultContext] = None

    def __post_init__(self):
        if not isinstance(self.score, (int, float)) or not math.isfinite(self.score):
            raise ValueError(f"score must be a finite number, got {self.score!r}")
        self.score = float(self.score)

    def __repr__(self) -> str:
        related = len(self.context.related) if self.context else 0
        return (
            f"<SearchResult(entity={self.entity.get('uuid', '?')}, "
            f"score={self.score:.3f}, signals={sorted(self.score_breakdown)}, "
            f"related={related})>"
        )


@dataclass
class ItemEvaluation:
    """
    LLM relevance judgement for one result.

    Attributes:
        id: Identifier of the evaluated entity
        score: Relevance on a 0-10 scale
        reasoning: Short justification
    """
    id: str
    score: float
    reasoning: str = ""


@dataclass
class OperationMetadata:
    """
    Observability record for one executed (or fused) operation.

    Attributes:
        type: Operation type ("fetch", "filter", "expand", ...)
        config: Summary of the operation parameters
        input_count: Results entering the step
        output_count: Results leaving the step
        duration_ms: Wall time of the step
        merged_operations: Filters absorbed by this step
        optimized: True when at least one filter was fused into this step
        degraded: True when a best-effort step failed and was absorbed
        error: Error message of the absorbed failure
        details: Step-specific extras (vector index, evaluations, ...)
    """
    type: str
    config: Dict[str, Any] = field(default_factory=dict)
    input_count: int = 0
    output_count: int = 0
    duration_ms: float = 0.0
    merged_operations: List["OperationMetadata"] = field(default_factory=list)
    optimized: bool = False
    degraded: bool = False
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionMetadata:
    """Execution trace returned by ``execute_with_metadata()``."""
    operations: List[OperationMetadata] = field(default_factory=list)
    total_duration_ms: float = 0.0
    final_count: int = 0
    stale_count: int = 0

    @property
    def degraded(self) -> bool:
        """True if any best-effort step failed during execution."""
        return any(op.degraded for op in self.operations)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["degraded"] = self.degraded
        return data


@dataclass
class ExecutionResult:
    """Results plus their execution trace."""
    results: List[SearchResult]
    metadata: ExecutionMetadata

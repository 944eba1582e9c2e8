"""
Fusion Planning
===============

Turns the declared operation list into execution steps.

- A list that does not start with a data-producing operation (fetch or
  semantic) gets an implicit ``fetch(all)`` in front.
- A fusion host (fetch, expand, semantic) greedily absorbs every
  immediately following filter that holds only field conditions; the
  absorbed filters are recorded on the step as ``merged``.
- A relationship filter never fuses and ends the look-ahead.
- Filters on fields that only exist in memory (enrichment and computed
  columns, or anything written after an LLM/embedding step) are not pushed
  into a store query.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from kgflow.query.operations import (
    DATA_PRODUCERS,
    FUSION_HOSTS,
    FetchOperation,
    FilterOperation,
    GenerateEmbeddingsOperation,
    LLMStructuredOperation,
    Operation,
)

# Steps after which entity dicts may hold values the store does not have
_MODIFYING = (LLMStructuredOperation, GenerateEmbeddingsOperation)


@dataclass
class PlanStep:
    """One executed step: an operation plus the filters fused into it."""
    operation: Operation
    merged: List[FilterOperation] = field(default_factory=list)
    implicit: bool = False

    @property
    def type(self) -> str:
        return self.operation.type

    @property
    def optimized(self) -> bool:
        return bool(self.merged)

    @property
    def fused_conditions(self) -> tuple:
        conditions: tuple = ()
        for op in self.merged:
            conditions += op.conditions
        return conditions


@dataclass
class QueryPlan:
    """Result of ``explain()``."""
    entity_type: str
    steps: List[Dict[str, Any]] = field(default_factory=list)
    store_plan: Optional[List[str]] = None

    @property
    def round_trips(self) -> int:
        """Store/vector round trips the plan issues (LLM calls excluded)."""
        return sum(1 for step in self.steps if step.get("cypher") or step["type"] == "semantic")

    def __str__(self) -> str:
        lines = [f"QueryPlan({self.entity_type})"]
        for i, step in enumerate(self.steps):
            merged = f" + {len(step['merged'])} fused filter(s)" if step["merged"] else ""
            lines.append(f"  {i + 1}. {step['type']}{merged}")
            if step.get("cypher"):
                lines.extend(f"       {line}" for line in step["cypher"].splitlines())
        return "\n".join(lines)


def _touches(op: FilterOperation, names: Iterable[str]) -> bool:
    names = set(names)
    return any(condition.field in names for condition in op.conditions)


def plan_operations(
    operations: Sequence[Operation],
    optimize: bool = True,
    virtual_fields: Iterable[str] = (),
) -> List[PlanStep]:
    """
    Build execution steps from an operation list.

    Args:
        operations: Declared operations, in order
        optimize: Fuse filters into preceding store steps
        virtual_fields: Fields that only exist in memory

    Returns:
        Ordered plan steps
    """
    virtual = set(virtual_fields)
    ops = list(operations)
    steps: List[PlanStep] = []
    if not ops or not isinstance(ops[0], DATA_PRODUCERS):
        steps.append(PlanStep(FetchOperation(mode="all"), implicit=True))

    modified = False
    pending = steps[0] if steps else None
    i = 0
    while i < len(ops):
        op = ops[i]
        host: Optional[PlanStep] = None
        if pending is not None:
            host, pending = pending, None
        else:
            host = PlanStep(op)
            steps.append(host)
            i += 1

        if optimize and not modified and isinstance(host.operation, FUSION_HOSTS):
            while i < len(ops):
                candidate = ops[i]
                if not isinstance(candidate, FilterOperation) or not candidate.is_fusible:
                    break
                if _touches(candidate, virtual):
                    break
                host.merged.append(candidate)
                i += 1

        if isinstance(host.operation, _MODIFYING):
            modified = True
    return steps

"""
kgflow Models
=============

- EntityContext and its field descriptors
- FieldCondition / RelationshipCondition filter predicates
- SearchResult, RelatedEntity, ResultContext
- ItemEvaluation
- ExecutionMetadata, OperationMetadata, ExecutionResult
"""

from kgflow.models.conditions import (
    OPERATORS,
    FieldCondition,
    RelationshipCondition,
    matches_all,
    parse_conditions,
)
from kgflow.models.entity_context import (
    ComputedField,
    ContextField,
    EnrichmentField,
    EnrichmentRelationship,
    EntityContext,
)
from kgflow.models.results import (
    ExecutionMetadata,
    ExecutionResult,
    ItemEvaluation,
    OperationMetadata,
    RelatedEntity,
    ResultContext,
    SearchResult,
)

__all__ = [
    "OPERATORS",
    "ComputedField",
    "ContextField",
    "EnrichmentField",
    "EnrichmentRelationship",
    "EntityContext",
    "ExecutionMetadata",
    "ExecutionResult",
    "FieldCondition",
    "ItemEvaluation",
    "OperationMetadata",
    "RelatedEntity",
    "RelationshipCondition",
    "ResultContext",
    "SearchResult",
    "matches_all",
    "parse_conditions",
]

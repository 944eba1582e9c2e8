"""
kgflow Query
============

Lazy retrieval pipelines over a FalkorDB graph.

- QueryBuilder: fluent pipeline construction and terminals
- Operations: typed pipeline steps
- plan_operations / QueryPlan: filter fusion and explain()
- PipelineExecutor: step execution, scoring, pagination
"""

from kgflow.query.builder import QueryBuilder
from kgflow.query.executor import PipelineContext, PipelineExecutor
from kgflow.query.operations import (
    ClientFilterOperation,
    ExpandOperation,
    FetchOperation,
    FilterOperation,
    GenerateEmbeddingsOperation,
    LLMRerankOperation,
    LLMStructuredOperation,
    Operation,
    SemanticOperation,
)
from kgflow.query.plan import PlanStep, QueryPlan, plan_operations

__all__ = [
    "ClientFilterOperation",
    "ExpandOperation",
    "FetchOperation",
    "FilterOperation",
    "GenerateEmbeddingsOperation",
    "LLMRerankOperation",
    "LLMStructuredOperation",
    "Operation",
    "PipelineContext",
    "PipelineExecutor",
    "PlanStep",
    "QueryBuilder",
    "QueryPlan",
    "SemanticOperation",
    "plan_operations",
]

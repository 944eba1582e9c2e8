"""
kgflow: Retrieval Pipelines over Knowledge Graphs
=================================================

Lazy, fusable retrieval pipelines combining FalkorDB graph queries, vector
search and LLM reranking / structured extraction.

Quick Start:
    from kgflow import FalkorDBClient, QueryBuilder, RerankOptions

    async with FalkorDBClient() as graph:
        results = await (
            QueryBuilder(graph, "Function", vector_search=search,
                         entity_context=context, llm_provider=llm)
            .semantic("token refresh", index_name="code", top_k=50)
            .where(language="python")
            .llm_rerank("how are expired tokens refreshed?", RerankOptions(top_k=10))
            .execute()
        )

Componenti:
- query: QueryBuilder, operations, fusion planning
- llm: providers, structured executor, decoders
- reranking: LLMReranker
- storage: FalkorDBClient, VectorSearch
- models: EntityContext, SearchResult, metadata
"""

__version__ = "0.1.0"
__author__ = "kgflow Team"

from kgflow.config import PipelineSettings, get_default_settings, load_pipeline_settings
from kgflow.exceptions import (
    BatchExecutionError,
    ConfigurationError,
    KgflowError,
    LLMProviderError,
    OperationError,
    OutputDecodeError,
    StoreQueryError,
)
from kgflow.llm import (
    OpenRouterConfig,
    OpenRouterProvider,
    OutputField,
    StructuredCallConfig,
    StructuredLLMExecutor,
)
from kgflow.models import (
    ContextField,
    EnrichmentField,
    EnrichmentRelationship,
    EntityContext,
    ExecutionMetadata,
    SearchResult,
)
from kgflow.query import QueryBuilder, QueryPlan
from kgflow.reranking import LLMReranker, RerankOptions
from kgflow.storage import FalkorDBClient, FalkorDBConfig, VectorIndexConfig, VectorSearch

__all__ = [
    # Query
    "QueryBuilder",
    "QueryPlan",
    # Models
    "ContextField",
    "EnrichmentField",
    "EnrichmentRelationship",
    "EntityContext",
    "ExecutionMetadata",
    "SearchResult",
    # LLM
    "OpenRouterConfig",
    "OpenRouterProvider",
    "OutputField",
    "StructuredCallConfig",
    "StructuredLLMExecutor",
    "LLMReranker",
    "RerankOptions",
    # Storage
    "FalkorDBClient",
    "FalkorDBConfig",
    "VectorIndexConfig",
    "VectorSearch",
    # Config
    "PipelineSettings",
    "get_default_settings",
    "load_pipeline_settings",
    # Errors
    "BatchExecutionError",
    "ConfigurationError",
    "KgflowError",
    "LLMProviderError",
    "OperationError",
    "OutputDecodeError",
    "StoreQueryError",
]

"""
Query Builder
=============

Fluent, lazy construction of retrieval pipelines.

Operations are only recorded until a terminal method (``execute``,
``execute_with_metadata``, ``execute_flat``, ``count``, ``explain``) runs
them. Builders are mutable; every operation method returns ``self``.

Example:
    results = await (
        QueryBuilder(graph, "Function", vector_search=search, entity_context=ctx, llm_provider=llm)
        .semantic("token refresh", index_name="code", top_k=50)
        .where(language="python")
        .expand("CALLS", depth=2)
        .llm_rerank("how are expired tokens refreshed?", RerankOptions(top_k=10))
        .execute()
    )
"""

import asyncio
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog

from kgflow.config import PipelineSettings, get_default_settings
from kgflow.exceptions import ConfigurationError
from kgflow.llm.executor import StructuredCallConfig, StructuredLLMExecutor
from kgflow.llm.provider import LLMProvider
from kgflow.llm.schema import FieldType, OutputField
from kgflow.models.conditions import RelationshipCondition, parse_conditions
from kgflow.models.entity_context import EnrichmentRelationship, EntityContext
from kgflow.models.results import ExecutionResult, SearchResult
from kgflow.query.cypher import compile_count, compile_expand, compile_fetch
from kgflow.query.executor import PipelineContext, PipelineExecutor
from kgflow.query.operations import (
    ClientFilterOperation,
    ExpandOperation,
    FetchOperation,
    FilterOperation,
    GenerateEmbeddingsOperation,
    LLMRerankOperation,
    LLMStructuredOperation,
    MetadataOverride,
    Operation,
    SemanticOperation,
)
from kgflow.query.plan import QueryPlan, plan_operations
from kgflow.reranking.reranker import RerankOptions
from kgflow.storage.vectors.search import EmbeddingProvider, VectorSearch

log = structlog.get_logger()

ORDER_DIRECTIONS = ("asc", "desc")

SUMMARY_SYSTEM_PROMPT = (
    "You write short, factual summaries of knowledge graph entities. "
    "Never invent facts that are not present in the item."
)


class QueryBuilder:
    """
    Lazy pipeline over one entity type.

    Args:
        graph: FalkorDBClient (anything with ``run(cypher, params)``)
        entity_type: Node label of the queried entities
        settings: Pipeline defaults (default: packaged pipeline.yaml)
        vector_search: Adapter used by ``semantic()``
        entity_context: Prompt descriptor used by LLM steps; its computed
                        fields are returned by fetch queries
        llm_provider: Default provider for LLM steps
        embedder: Default provider for ``generate_embeddings()``
        structured_executor: Executor reused by LLM steps
        enrichment: Neighbour values collected into fetched entities
        identity: Entity -> identifier (default: ``entity[settings.id_field]``)
    """

    def __init__(
        self,
        graph,
        entity_type: str,
        *,
        settings: Optional[PipelineSettings] = None,
        vector_search: Optional[VectorSearch] = None,
        entity_context: Optional[EntityContext] = None,
        llm_provider: Optional[LLMProvider] = None,
        embedder: Optional[EmbeddingProvider] = None,
        structured_executor: Optional[StructuredLLMExecutor] = None,
        enrichment: Iterable[EnrichmentRelationship] = (),
        identity: Optional[Callable[[Dict[str, Any]], Any]] = None,
    ):
        if not entity_type:
            raise ConfigurationError("entity_type must not be empty")
        self.settings = settings or get_default_settings()
        self.context = PipelineContext(
            graph=graph,
            entity_type=entity_type,
            settings=self.settings,
            vector_search=vector_search,
            llm_provider=llm_provider,
            entity_context=entity_context,
            enrichment=tuple(enrichment),
            embedder=embedder,
            structured_executor=structured_executor,
            identity=identity,
        )
        self._operations: List[Operation] = []
        self._limit: Optional[int] = self.settings.default_limit
        self._offset = 0
        self._order_by: Optional[Tuple[str, str]] = None

    @property
    def entity_type(self) -> str:
        return self.context.entity_type

    @property
    def operations(self) -> List[Operation]:
        """Copy of the declared operation list."""
        return list(self._operations)

    def __repr__(self) -> str:
        chain = " -> ".join(op.type for op in self._operations) or "fetch(all)"
        return f"<QueryBuilder({self.entity_type}): {chain}>"

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------

    def _append_filter(self, op: FilterOperation):
        last = self._operations[-1] if self._operations else None
        if isinstance(last, FilterOperation) and last.is_fusible and op.is_fusible:
            self._operations[-1] = last.merged_with(op)
        else:
            self._operations.append(op)

    def where(self, filters: Optional[Dict[str, Any]] = None, **kwargs: Any) -> "QueryBuilder":
        """
        Keep entities matching all field conditions.

        Values are equality by default; lists mean membership, compiled
        regexes a full match, and dicts ``{operator: value}`` with the
        operators equals, contains, starts_with, ends_with, gt, gte, lt,
        lte, in, regex.

        On an empty pipeline the conditions become the initial fetch.
        """
        conditions = parse_conditions({**(filters or {}), **kwargs})
        if not conditions:
            return self
        if not self._operations:
            self._operations.append(FetchOperation(mode="filter", conditions=conditions))
        else:
            self._append_filter(FilterOperation(conditions=conditions))
        return self

    def where_uuid_in(self, ids: Sequence[Any]) -> "QueryBuilder":
        """Keep entities whose identifier is in ``ids``."""
        ids = tuple(ids)
        if not self._operations:
            self._operations.append(FetchOperation(mode="uuid", ids=ids))
        else:
            self._append_filter(FilterOperation(
                conditions=parse_conditions({self.settings.id_field: list(ids)})
            ))
        return self

    def where_related_by(
        self,
        relationship_type: str,
        target_value: Any,
        direction: str = "outgoing",
        target_label: Optional[str] = None,
        target_field: str = "name",
    ) -> "QueryBuilder":
        """
        Keep entities linked by ``relationship_type`` to the entity whose
        ``target_field`` equals ``target_value``.
        """
        relationship = RelationshipCondition(
            relationship_type=relationship_type,
            target_value=target_value,
            direction=direction,
            target_label=target_label,
            target_field=target_field,
        )
        if not self._operations:
            self._operations.append(FetchOperation(mode="relationship", relationship=relationship))
        else:
            self._operations.append(FilterOperation(relationship=relationship))
        return self

    def filter(self, predicate: Callable[[SearchResult], bool], description: str = "") -> "QueryBuilder":
        """Keep results for which ``predicate(result)`` is true (in memory)."""
        self._operations.append(ClientFilterOperation(predicate=predicate, description=description))
        return self

    # ------------------------------------------------------------------
    # Graph and vector steps
    # ------------------------------------------------------------------

    def expand(
        self,
        relationship_type: Optional[str] = None,
        depth: int = 1,
        direction: str = "outgoing",
        target_label: Optional[str] = None,
    ) -> "QueryBuilder":
        """Attach neighbours up to ``depth`` hops as ``context.related``."""
        self._operations.append(ExpandOperation(
            relationship_type=relationship_type,
            depth=depth,
            direction=direction,
            target_label=target_label,
        ))
        return self

    def semantic(
        self,
        query: str,
        index_name: str,
        top_k: int = 10,
        min_score: float = 0.0,
        metadata_override: Optional[MetadataOverride] = None,
    ) -> "QueryBuilder":
        """
        Vector search over ``index_name``.

        Over an empty result set it seeds the results with an unconstrained
        search; otherwise it re-scores the current results (0.3 existing +
        0.7 similarity) and drops those that are not among the hits.
        """
        if self.context.vector_search is None:
            raise ConfigurationError("semantic() requires a VectorSearch")
        if not self.context.vector_search.has_index(index_name):
            raise ConfigurationError(
                f"Unknown vector index '{index_name}'. "
                f"Registered: {self.context.vector_search.index_names}"
            )
        self._operations.append(SemanticOperation(
            query_text=query,
            index_name=index_name,
            top_k=top_k,
            min_score=min_score,
            metadata_override=metadata_override,
        ))
        return self

    # ------------------------------------------------------------------
    # LLM steps
    # ------------------------------------------------------------------

    def llm_rerank(
        self,
        question: str,
        options: Optional[RerankOptions] = None,
        metadata_override: Optional[MetadataOverride] = None,
    ) -> "QueryBuilder":
        """Rerank results by LLM-judged relevance to ``question``."""
        options = options or RerankOptions()
        if self.context.entity_context is None:
            raise ConfigurationError(
                f"llm_rerank() requires an EntityContext for {self.entity_type}"
            )
        if options.provider is None and self.context.llm_provider is None:
            raise ConfigurationError("llm_rerank() requires an LLM provider")
        self._operations.append(LLMRerankOperation(
            question=question, options=options, metadata_override=metadata_override
        ))
        return self

    def llm_generate_structured(self, config: StructuredCallConfig) -> "QueryBuilder":
        """Generate schema fields for every result and merge them into its entity."""
        if config.provider is None and self.context.llm_provider is None and self.context.structured_executor is None:
            raise ConfigurationError("llm_generate_structured() requires an LLM provider")
        self._operations.append(LLMStructuredOperation(config=config))
        return self

    def with_summaries(
        self,
        input_fields: Sequence[str],
        summary_fields: Sequence[str],
        instructions: Optional[str] = None,
        max_words: int = 60,
        **config: Any,
    ) -> "QueryBuilder":
        """Write a ``<field>_summary`` string for every field in ``summary_fields``."""
        schema = {
            f"{name}_summary": OutputField(
                type=FieldType.STRING,
                description=f"Summary of '{name}' in at most {max_words} words",
                required=True,
            )
            for name in summary_fields
        }
        if not schema:
            raise ConfigurationError("with_summaries() needs at least one summary field")
        call = StructuredCallConfig(
            output_schema=schema,
            input_fields=list(input_fields),
            system_prompt=SUMMARY_SYSTEM_PROMPT,
            user_task=f"Summarize each {self.entity_type}.",
            instructions=instructions,
            **config,
        )
        return self.llm_generate_structured(call)

    def generate_embeddings(
        self,
        source_fields: Sequence[str],
        target_field: str = "embedding",
        provider: Optional[EmbeddingProvider] = None,
        batch_size: Optional[int] = None,
        include_related: bool = False,
    ) -> "QueryBuilder":
        """Embed the concatenated ``source_fields`` into ``target_field``."""
        if provider is None and self.context.embedder is None:
            raise ConfigurationError("generate_embeddings() requires an embedding provider")
        self._operations.append(GenerateEmbeddingsOperation(
            source_fields=tuple(source_fields),
            target_field=target_field,
            provider=provider,
            batch_size=batch_size,
            include_related=include_related,
        ))
        return self

    # ------------------------------------------------------------------
    # Ordering and pagination
    # ------------------------------------------------------------------

    def limit(self, n: Optional[int]) -> "QueryBuilder":
        if n is not None and n < 0:
            raise ValueError(f"limit must be >= 0, got {n}")
        self._limit = n
        return self

    def offset(self, n: int) -> "QueryBuilder":
        if n < 0:
            raise ValueError(f"offset must be >= 0, got {n}")
        self._offset = n
        return self

    def order_by(self, field: str, direction: str = "asc") -> "QueryBuilder":
        """Sort by an entity field instead of score (missing values last)."""
        direction = direction.lower()
        if direction not in ORDER_DIRECTIONS:
            raise ValueError(f"direction must be one of {ORDER_DIRECTIONS}, got {direction}")
        self._order_by = (field, direction)
        return self

    # ------------------------------------------------------------------
    # Terminals
    # ------------------------------------------------------------------

    def _executor(self) -> PipelineExecutor:
        return PipelineExecutor(self.context)

    async def _run(
        self,
        timeout: Optional[float],
        optimize: bool,
        track_metadata: bool,
        paginate: bool = True,
    ) -> ExecutionResult:
        coro = self._executor().run(
            self._operations,
            limit=self._limit,
            offset=self._offset,
            order_by=self._order_by,
            optimize=optimize,
            track_metadata=track_metadata,
            paginate=paginate,
        )
        if timeout is None:
            return await coro
        return await asyncio.wait_for(coro, timeout=timeout)

    async def execute(self, timeout: Optional[float] = None, optimize: bool = True) -> List[SearchResult]:
        """
        Run the pipeline.

        Args:
            timeout: Overall deadline in seconds
            optimize: Fuse filters into store queries (False forces the
                      step-by-step path, same results)
        """
        outcome = await self._run(timeout, optimize, track_metadata=False)
        return outcome.results

    async def execute_with_metadata(
        self,
        timeout: Optional[float] = None,
        optimize: bool = True,
    ) -> ExecutionResult:
        """Run the pipeline and return results with their execution trace."""
        outcome = await self._run(timeout, optimize, track_metadata=True)
        log.info(
            f"Pipeline {self.entity_type}: {outcome.metadata.final_count} results in "
            f"{outcome.metadata.total_duration_ms:.0f}ms ({len(outcome.metadata.operations)} steps, "
            f"degraded={outcome.metadata.degraded})"
        )
        return outcome

    async def execute_flat(self, timeout: Optional[float] = None, optimize: bool = True) -> List[Dict[str, Any]]:
        """Run the pipeline and return bare entity dicts."""
        return [r.entity for r in await self.execute(timeout, optimize)]

    def _single_fetch(self) -> Optional[Tuple[FetchOperation, tuple]]:
        steps = plan_operations(self._operations, True, self.context.virtual_fields)
        if len(steps) != 1 or not isinstance(steps[0].operation, FetchOperation):
            return None
        return steps[0].operation, steps[0].fused_conditions

    async def count(self, timeout: Optional[float] = None) -> int:
        """
        Number of results the pipeline yields, ignoring offset and limit.

        A pipeline made of a fetch plus field filters is counted in a single
        store query.
        """
        single = self._single_fetch()
        if single is not None:
            fetch, conditions = single
            if fetch.mode == "uuid" and not fetch.ids:
                return 0
            cypher, params = compile_count(
                self.entity_type, fetch, conditions, self.settings.id_field
            )
            records = await self.context.graph.run(cypher, params, timeout=timeout)
            return int(records[0]["count"]) if records else 0

        outcome = await self._run(timeout, True, track_metadata=False, paginate=False)
        return len(outcome.results)

    async def explain(self, with_store_plan: bool = False) -> QueryPlan:
        """
        Describe how the pipeline would execute, without running it.

        Args:
            with_store_plan: Also ask the store for the execution plan of
                             the initial query (``GRAPH.EXPLAIN``)
        """
        steps = plan_operations(self._operations, True, self.context.virtual_fields)
        plan = QueryPlan(entity_type=self.entity_type)
        id_field = self.settings.id_field

        first_fetch = None
        for step in steps:
            entry: Dict[str, Any] = {
                "type": step.type,
                "config": step.operation.describe(),
                "merged": [op.describe() for op in step.merged],
                "implicit": step.implicit,
            }
            if isinstance(step.operation, FetchOperation):
                cypher, params = compile_fetch(
                    self.entity_type,
                    step.operation,
                    step.fused_conditions,
                    id_field,
                    self.context.enrichment,
                    self.context.computed_fields,
                )
                entry.update({"cypher": cypher, "params": params})
                if first_fetch is None:
                    first_fetch = (cypher, params)
            elif isinstance(step.operation, ExpandOperation):
                cypher, params = compile_expand(
                    self.entity_type, step.operation, [], step.fused_conditions, id_field
                )
                entry.update({"cypher": cypher, "params": {k: v for k, v in params.items() if k != "ids"}})
            elif isinstance(step.operation, SemanticOperation) and self.context.vector_search:
                search = self.context.vector_search
                cypher, params = search.build_query(
                    search.get_index(step.operation.index_name),
                    step.operation.top_k,
                    step.operation.min_score,
                    None,
                    step.fused_conditions,
                    id_field,
                )
                entry.update({"cypher": cypher, "params": params})
            plan.steps.append(entry)

        if with_store_plan and first_fetch is not None:
            plan.store_plan = await self.context.graph.explain(*first_fetch)
        return plan

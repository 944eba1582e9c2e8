"""
Pipeline Executor
=================

Walks the fusion plan once, each step transforming the previous step's
result set, then sorts, paginates and checks for stale ranking signals.

Failure policy:
- semantic and llm_rerank steps are best effort: a failure is logged, the
  step returns its input unchanged and its metadata is marked degraded
- llm_structured and generate_embeddings failures propagate
- configuration errors always propagate
- an empty result set is not an error
"""

import asyncio
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from kgflow.config import PipelineSettings
from kgflow.exceptions import BatchExecutionError, ConfigurationError, KgflowError
from kgflow.llm.executor import StructuredLLMExecutor, StructuredOutput
from kgflow.llm.provider import LLMProvider
from kgflow.models.conditions import FieldCondition, matches_all
from kgflow.models.entity_context import EnrichmentRelationship, EntityContext
from kgflow.models.results import (
    ExecutionMetadata,
    ExecutionResult,
    OperationMetadata,
    RelatedEntity,
    ResultContext,
    SearchResult,
)
from kgflow.query.cypher import (
    compile_expand,
    compile_fetch,
    compile_relationship_filter,
)
from kgflow.query.operations import (
    ClientFilterOperation,
    ExpandOperation,
    FetchOperation,
    FilterOperation,
    GenerateEmbeddingsOperation,
    LLMRerankOperation,
    LLMStructuredOperation,
    SemanticOperation,
)
from kgflow.query.plan import PlanStep, plan_operations
from kgflow.reranking.reranker import LLMReranker
from kgflow.storage.vectors.search import EmbeddingProvider, VectorSearch

log = structlog.get_logger()


@dataclass
class PipelineContext:
    """
    Dependencies shared by every step of one builder.

    Attributes:
        graph: Store client with ``run(cypher, params)``
        entity_type: Node label queried by the builder
        settings: Pipeline defaults
        vector_search: Adapter for semantic steps
        llm_provider: Default provider for LLM steps
        entity_context: Prompt descriptor of the entity type
        enrichment: Neighbour values collected by fetch steps
        embedder: Default provider for generate_embeddings steps
        structured_executor: Executor reused by LLM steps
        identity: Entity -> identifier
    """
    graph: Any
    entity_type: str
    settings: PipelineSettings
    vector_search: Optional[VectorSearch] = None
    llm_provider: Optional[LLMProvider] = None
    entity_context: Optional[EntityContext] = None
    enrichment: Tuple[EnrichmentRelationship, ...] = ()
    embedder: Optional[EmbeddingProvider] = None
    structured_executor: Optional[StructuredLLMExecutor] = None
    identity: Optional[Callable[[Dict[str, Any]], Any]] = None

    def __post_init__(self):
        if self.identity is None:
            id_field = self.settings.id_field
            self.identity = lambda entity: entity.get(id_field)

    @property
    def computed_fields(self) -> tuple:
        return self.entity_context.computed_fields if self.entity_context else ()

    @property
    def virtual_fields(self) -> List[str]:
        """Fields added to fetched entities that the store cannot filter on."""
        names = [rel.field_name for rel in self.enrichment]
        names.extend(cf.name for cf in self.computed_fields)
        return names


def _copy_context(result: SearchResult) -> ResultContext:
    if result.context is None:
        return ResultContext()
    return replace(result.context, related=list(result.context.related))


class PipelineExecutor:
    """Executes planned operations against a PipelineContext."""

    def __init__(self, context: PipelineContext):
        self.ctx = context
        self.settings = context.settings

    def result_id(self, result: SearchResult) -> Optional[str]:
        value = self.ctx.identity(result.entity)
        return None if value is None else str(value)

    def store_id(self, entity: Dict[str, Any]) -> Any:
        """Raw id property as stored, used to match entities in store queries."""
        return entity.get(self.settings.id_field)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        operations: Sequence[Any],
        limit: Optional[int] = None,
        offset: int = 0,
        order_by: Optional[Tuple[str, str]] = None,
        optimize: bool = True,
        track_metadata: bool = False,
        paginate: bool = True,
    ) -> ExecutionResult:
        """
        Execute an operation list.

        Args:
            operations: Declared operations
            limit: Max results after sorting
            offset: Results skipped after sorting
            order_by: (field, "asc"|"desc") replacing the score ordering
            optimize: Fuse filters into store queries
            track_metadata: Build ExecutionMetadata
            paginate: Apply offset/limit

        Returns:
            ExecutionResult (metadata is empty unless tracked)
        """
        start = time.time()
        steps = plan_operations(operations, optimize, self.ctx.virtual_fields)
        metadata = ExecutionMetadata() if track_metadata else None

        results: List[SearchResult] = []
        for step in steps:
            step_start = time.time()
            record = OperationMetadata(
                type=step.type,
                config=step.operation.describe(),
                input_count=len(results),
                optimized=step.optimized,
                merged_operations=[
                    OperationMetadata(type=op.type, config=op.describe())
                    for op in step.merged
                ],
            )
            if step.implicit:
                record.details["implicit"] = True

            results = await self._run_step(step, results, record)

            record.output_count = len(results)
            record.duration_ms = (time.time() - step_start) * 1000
            for merged in record.merged_operations:
                merged.input_count = record.input_count
                merged.output_count = record.output_count
            if metadata is not None:
                metadata.operations.append(record)

            log.debug(
                f"Step {step.type}: {record.input_count} -> {record.output_count} results "
                f"({record.duration_ms:.0f}ms, fused={len(step.merged)}, degraded={record.degraded})"
            )

        results = self.finalize(results, limit if paginate else None, offset if paginate else 0, order_by)
        stale_count = self.check_stale(results)

        if metadata is not None:
            metadata.total_duration_ms = (time.time() - start) * 1000
            metadata.final_count = len(results)
            metadata.stale_count = stale_count
        return ExecutionResult(results=results, metadata=metadata or ExecutionMetadata(final_count=len(results)))

    async def _run_step(
        self,
        step: PlanStep,
        results: List[SearchResult],
        record: OperationMetadata,
    ) -> List[SearchResult]:
        op = step.operation
        conditions = step.fused_conditions

        if isinstance(op, FetchOperation):
            return await self.fetch(op, conditions)
        if isinstance(op, FilterOperation):
            return await self.filter(op, results)
        if isinstance(op, ClientFilterOperation):
            return [r for r in results if op.predicate(r)]
        if isinstance(op, ExpandOperation):
            return await self.expand(op, conditions, results)
        if isinstance(op, SemanticOperation):
            return await self._best_effort(
                "semantic", self.semantic(op, conditions, results, record), results, record
            )
        if isinstance(op, LLMRerankOperation):
            return await self._best_effort(
                "llm_rerank", self.rerank(op, results, record), results, record
            )
        if isinstance(op, LLMStructuredOperation):
            return await self.structured(op, results, record)
        if isinstance(op, GenerateEmbeddingsOperation):
            return await self.generate_embeddings(op, results)
        raise ConfigurationError(f"Unsupported operation: {op!r}")

    async def _best_effort(
        self,
        name: str,
        coro,
        results: List[SearchResult],
        record: OperationMetadata,
    ) -> List[SearchResult]:
        try:
            return await coro
        except ConfigurationError:
            raise
        except Exception as e:
            log.warning(
                f"{name} step failed, continuing with {len(results)} results: {e}"
            )
            record.degraded = True
            record.error = str(e) or type(e).__name__
            return results

    # ------------------------------------------------------------------
    # Store steps
    # ------------------------------------------------------------------

    def _record_to_result(self, record: Dict[str, Any]) -> SearchResult:
        node = record.get("n") or {}
        entity = dict(node.get("properties", {}))
        for name in self.ctx.virtual_fields:
            if name in record and record[name] is not None:
                entity[name] = record[name]
        return SearchResult(entity=entity, score=1.0, score_breakdown={"filter": 1.0})

    async def fetch(
        self,
        op: FetchOperation,
        conditions: Sequence[FieldCondition] = (),
    ) -> List[SearchResult]:
        if op.mode == "uuid" and not op.ids:
            return []
        cypher, params = compile_fetch(
            self.ctx.entity_type,
            op,
            conditions,
            self.settings.id_field,
            self.ctx.enrichment,
            self.ctx.computed_fields,
        )
        records = await self.ctx.graph.run(cypher, params)
        return [self._record_to_result(r) for r in records]

    async def filter(self, op: FilterOperation, results: List[SearchResult]) -> List[SearchResult]:
        if op.relationship is None:
            return [r for r in results if matches_all(r.entity, op.conditions)]
        if not results:
            return []

        ids = [i for i in (self.store_id(r.entity) for r in results) if i is not None]
        cypher, params = compile_relationship_filter(
            self.ctx.entity_type, op.relationship, ids, self.settings.id_field
        )
        records = await self.ctx.graph.run(cypher, params)
        keep = {r.get("id") for r in records}
        return [r for r in results if self.store_id(r.entity) in keep]

    async def expand(
        self,
        op: ExpandOperation,
        conditions: Sequence[FieldCondition],
        results: List[SearchResult],
    ) -> List[SearchResult]:
        if not results:
            return []

        ids = [i for i in (self.store_id(r.entity) for r in results) if i is not None]
        related: Dict[Any, List[RelatedEntity]] = {}
        present = set()
        if ids:
            cypher, params = compile_expand(
                self.ctx.entity_type, op, ids, conditions, self.settings.id_field
            )
            records = await self.ctx.graph.run(cypher, params)

            seen: Dict[Any, set] = {}
            for record in records:
                source = record.get("source_id")
                present.add(source)
                node = record.get("related")
                if not node:
                    continue
                properties = dict(node.get("properties", {}))
                key = self.store_id(properties)
                key = node.get("id") if key is None else key
                # rows arrive ordered by depth, first hit is the shallowest
                if key in seen.setdefault(source, set()):
                    continue
                seen[source].add(key)
                related.setdefault(source, []).append(
                    RelatedEntity(
                        entity=properties,
                        relationship_type=record.get("relationship_type") or op.relationship_type or "",
                        depth=int(record.get("depth") or 1),
                    )
                )

        expanded = []
        for result in results:
            origin_id = self.store_id(result.entity)
            if conditions:
                if origin_id is None:
                    if not matches_all(result.entity, conditions):
                        continue
                elif origin_id not in present:
                    continue
            context = _copy_context(result)
            context.related.extend(related.get(origin_id, []))
            expanded.append(
                SearchResult(
                    entity=result.entity,
                    score=result.score,
                    score_breakdown=dict(result.score_breakdown),
                    context=context,
                )
            )
        return expanded

    # ------------------------------------------------------------------
    # Vector and LLM steps
    # ------------------------------------------------------------------

    async def semantic(
        self,
        op: SemanticOperation,
        conditions: Sequence[FieldCondition],
        results: List[SearchResult],
        record: OperationMetadata,
    ) -> List[SearchResult]:
        search = self.ctx.vector_search
        if search is None:
            raise ConfigurationError("Semantic search requires a VectorSearch")
        index = search.get_index(op.index_name)
        record.details.update({
            "vector_index": index.name,
            "model": index.model,
            "dimension": index.dimension,
        })

        if not results:
            hits = await search.search(
                op.query_text,
                index_name=op.index_name,
                top_k=op.top_k,
                min_score=op.min_score,
                conditions=conditions,
                id_field=self.settings.id_field,
            )
            output = [
                SearchResult(entity=hit.properties, score=hit.score, score_breakdown={"semantic": hit.score})
                for hit in hits
            ]
        else:
            by_id = {}
            for result in results:
                key = self.store_id(result.entity)
                if key is not None:
                    by_id[key] = result
            hits = await search.search(
                op.query_text,
                index_name=op.index_name,
                top_k=op.top_k,
                min_score=op.min_score,
                filter_ids=list(by_id),
                conditions=conditions,
                id_field=self.settings.id_field,
            )
            existing_weight = self.settings.semantic_existing_weight
            new_weight = self.settings.semantic_new_weight
            output = []
            for hit in hits:
                previous = by_id.get(self.store_id(hit.properties))
                if previous is None:
                    continue
                output.append(
                    SearchResult(
                        entity=previous.entity,
                        score=previous.score * existing_weight + hit.score * new_weight,
                        score_breakdown={
                            **previous.score_breakdown,
                            "semantic": hit.score,
                            "previous": previous.score,
                        },
                        context=previous.context,
                    )
                )

        if op.metadata_override is not None:
            record.details = op.metadata_override(output, dict(record.details))
        return output

    async def rerank(
        self,
        op: LLMRerankOperation,
        results: List[SearchResult],
        record: OperationMetadata,
    ) -> List[SearchResult]:
        if self.ctx.entity_context is None:
            raise ConfigurationError("llm_rerank requires an EntityContext")
        if not results:
            return []

        reranker = LLMReranker(
            provider=op.options.provider or self.ctx.llm_provider,
            entity_context=self.ctx.entity_context,
            settings=self.settings,
            identity=self.ctx.identity,
            executor=self.ctx.structured_executor,
        )
        outcome = await reranker.rerank(op.question, results, op.options)
        record.details.update({
            "evaluations": [
                {"id": e.id, "score": e.score, "reasoning": e.reasoning}
                for e in outcome.evaluations
            ],
            "query_feedback": outcome.query_feedback,
        })
        if op.metadata_override is not None:
            record.details = op.metadata_override(outcome.results, dict(record.details))
        return outcome.results

    async def structured(
        self,
        op: LLMStructuredOperation,
        results: List[SearchResult],
        record: OperationMetadata,
    ) -> List[SearchResult]:
        if not results:
            return []
        executor = self.ctx.structured_executor or StructuredLLMExecutor(
            self.ctx.llm_provider, self.settings
        )
        output = await executor.execute([r.entity for r in results], op.config)
        if isinstance(output, StructuredOutput):
            record.details["global_metadata"] = output.global_metadata
            entities = output.items
        else:
            entities = output
        return [
            SearchResult(
                entity=entity,
                score=result.score,
                score_breakdown=dict(result.score_breakdown),
                context=result.context,
            )
            for result, entity in zip(results, entities)
        ]

    def _embedding_text(self, op: GenerateEmbeddingsOperation, result: SearchResult) -> str:
        parts = [
            str(result.entity[name])
            for name in op.source_fields
            if result.entity.get(name) not in (None, "", [])
        ]
        if op.include_related and result.context and result.context.related:
            names = [
                str(r.entity.get(op.related_field))
                for r in result.context.related
                if r.entity.get(op.related_field) is not None
            ]
            if names:
                parts.append("Related: " + ", ".join(names))
        return "\n".join(parts)

    async def generate_embeddings(
        self,
        op: GenerateEmbeddingsOperation,
        results: List[SearchResult],
    ) -> List[SearchResult]:
        provider = op.provider or self.ctx.embedder
        if provider is None:
            raise ConfigurationError("generate_embeddings requires an embedding provider")

        texts = [self._embedding_text(op, r) for r in results]
        targets = [i for i, text in enumerate(texts) if text]
        batch_size = op.batch_size or self.settings.embedding_batch_size
        vectors: Dict[int, List[float]] = {}

        for start in range(0, len(targets), batch_size):
            chunk = targets[start:start + batch_size]
            try:
                embedded = await asyncio.wait_for(
                    provider.embed([texts[i] for i in chunk]),
                    timeout=self.settings.vector_timeout,
                )
            except KgflowError:
                raise
            except Exception as e:
                raise BatchExecutionError(f"Embedding generation failed: {e}") from e
            if len(embedded) != len(chunk):
                raise BatchExecutionError(
                    f"Embedding provider returned {len(embedded)} vectors for {len(chunk)} texts"
                )
            vectors.update(zip(chunk, (list(v) for v in embedded)))

        log.info(f"Generated {len(vectors)} embeddings into '{op.target_field}'")
        return [
            SearchResult(
                entity={**r.entity, op.target_field: vectors[i]} if i in vectors else r.entity,
                score=r.score,
                score_breakdown=dict(r.score_breakdown),
                context=r.context,
            )
            for i, r in enumerate(results)
        ]

    # ------------------------------------------------------------------
    # Final steps
    # ------------------------------------------------------------------

    def finalize(
        self,
        results: List[SearchResult],
        limit: Optional[int],
        offset: int,
        order_by: Optional[Tuple[str, str]] = None,
    ) -> List[SearchResult]:
        """Sort (score desc, then id), then apply offset and limit."""
        if order_by is not None:
            name, direction = order_by
            present = [r for r in results if r.entity.get(name) is not None]
            missing = [r for r in results if r.entity.get(name) is None]
            present.sort(
                key=lambda r: (_order_key(r.entity.get(name)), self.result_id(r) or ""),
                reverse=direction == "desc",
            )
            missing.sort(key=lambda r: self.result_id(r) or "")
            ordered = present + missing
        else:
            ordered = sorted(results, key=lambda r: (-r.score, self.result_id(r) or ""))

        ordered = ordered[offset:] if offset else ordered
        if limit is not None:
            ordered = ordered[:limit]
        return ordered

    def check_stale(self, results: List[SearchResult]) -> int:
        """Warn about results whose ranking signal is flagged as stale."""
        stale_field = self.settings.stale_field
        stale = [r for r in results if r.entity.get(stale_field) is True]
        if stale:
            sample = [self.result_id(r) for r in stale[:self.settings.stale_warning_sample]]
            more = f" (+{len(stale) - len(sample)} more)" if len(stale) > len(sample) else ""
            log.warning(
                f"{len(stale)} {self.ctx.entity_type} results have stale embeddings "
                f"('{stale_field}' set), ranking may be outdated: {sample}{more}"
            )
        return len(stale)


def _order_key(value: Any) -> tuple:
    if isinstance(value, bool):
        return (0, int(value))
    if isinstance(value, (int, float)):
        return (0, value)
    if isinstance(value, str):
        return (1, value)
    return (2, str(value))

"""
LLM Reranker
============

Relevance reranking of pipeline results with an LLM judge.

Each result is shown to the LLM through its EntityContext and scored on a
fixed evaluation schema (score 0-10 plus reasoning). Evaluations are mapped
back to results through an identity function, never by position, and the
normalised LLM score (score / 10) is merged with the score the result
already carried:

    weighted:        prior_weight * prior + llm_weight * llm   (default 0.3 / 0.7)
    multiplicative:  prior * llm
    llm_override:    llm

Example:
    reranker = LLMReranker(provider, entity_context)
    outcome = await reranker.rerank(
        "how does auth work?", results, RerankOptions(top_k=10)
    )
"""

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from kgflow.config import RERANK_STRATEGIES, PipelineSettings, get_default_settings
from kgflow.exceptions import ConfigurationError, OperationError
from kgflow.llm.executor import StructuredCallConfig, StructuredLLMExecutor
from kgflow.llm.provider import LLMProvider
from kgflow.llm.schema import FieldType, OutputField
from kgflow.models.entity_context import EntityContext
from kgflow.models.results import ItemEvaluation, ResultContext, SearchResult

log = structlog.get_logger()

LLM_SCORE_MAX = 10.0

EVALUATION_SCHEMA = {
    "score": OutputField(
        type=FieldType.NUMBER,
        description="Relevance to the question, 0 (unrelated) to 10 (exactly what is asked)",
        required=True,
        minimum=0,
        maximum=LLM_SCORE_MAX,
    ),
    "reasoning": OutputField(
        type=FieldType.STRING,
        description="One or two sentences justifying the score",
        required=True,
    ),
}

FEEDBACK_SCHEMA = {
    "query_feedback": OutputField(
        type=FieldType.STRING,
        description="How well the candidates cover the question and what is missing",
    ),
}

RERANK_SYSTEM_PROMPT = (
    "You are a precise relevance judge for a retrieval system. "
    "Score every candidate independently against the question."
)


@dataclass
class RerankOptions:
    """
    Options of one rerank step.

    Attributes:
        provider: LLM provider (default: the one injected in the builder)
        top_k: Keep the best k results after merging
        min_score: Drop results whose LLM score (0-10) is below this
        strategy: "weighted", "multiplicative" or "llm_override"
        prior_weight: Weight of the pre-rerank score ("weighted")
        llm_weight: Weight of the LLM score ("weighted")
        batch_size: Items per LLM call
        parallel: Concurrent LLM calls
        token_budget: Estimated tokens per LLM call
        output_format: Response format ("xml", "json", "yaml")
        with_feedback: Also ask for batch-level query feedback
        instructions: Extra judging instructions
        timeout: Seconds per LLM call
    """
    provider: Optional[LLMProvider] = None
    top_k: Optional[int] = None
    min_score: Optional[float] = None
    strategy: Optional[str] = None
    prior_weight: Optional[float] = None
    llm_weight: Optional[float] = None
    batch_size: Optional[int] = None
    parallel: Optional[int] = None
    token_budget: Optional[int] = None
    output_format: str = "xml"
    with_feedback: bool = False
    instructions: Optional[str] = None
    timeout: Optional[float] = None

    def __post_init__(self):
        if self.strategy is not None and self.strategy not in RERANK_STRATEGIES:
            raise ConfigurationError(
                f"strategy must be one of {RERANK_STRATEGIES}, got {self.strategy}"
            )
        if self.top_k is not None and self.top_k < 1:
            raise ConfigurationError(f"top_k must be >= 1, got {self.top_k}")
        if self.min_score is not None and not 0 <= self.min_score <= LLM_SCORE_MAX:
            raise ConfigurationError(f"min_score must be in [0, 10], got {self.min_score}")
        for name in ("prior_weight", "llm_weight"):
            value = getattr(self, name)
            if value is not None and not 0 <= value <= 1:
                raise ConfigurationError(f"{name} must be in [0, 1], got {value}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "top_k": self.top_k,
            "min_score": self.min_score,
            "strategy": self.strategy,
            "with_feedback": self.with_feedback,
            "output_format": self.output_format,
        }


@dataclass
class RerankResult:
    """Reranked results and the evaluations behind them."""
    results: List[SearchResult]
    evaluations: List[ItemEvaluation] = field(default_factory=list)
    query_feedback: Optional[str] = None


def merge_score(prior: float, llm: float, strategy: str, prior_weight: float, llm_weight: float) -> float:
    """
    Merge a pre-existing score with a normalised LLM score (both in [0, 1]).
    """
    if strategy == "multiplicative":
        return prior * llm
    if strategy == "llm_override":
        return llm
    return prior_weight * prior + llm_weight * llm


class LLMReranker:
    """
    Reranks SearchResults with the structured LLM executor.

    Args:
        provider: Default LLM provider
        entity_context: Prompt descriptor of the reranked entities
        settings: Weights, batching and timeout defaults
        identity: Entity -> identifier (default: ``entity[settings.id_field]``)
        executor: Structured executor to reuse
    """

    def __init__(
        self,
        provider: Optional[LLMProvider],
        entity_context: EntityContext,
        settings: Optional[PipelineSettings] = None,
        identity: Optional[Callable[[Dict[str, Any]], Any]] = None,
        executor: Optional[StructuredLLMExecutor] = None,
    ):
        if entity_context is None:
            raise ConfigurationError("LLM rerank requires an EntityContext")
        self.provider = provider
        self.entity_context = entity_context
        self.settings = settings or get_default_settings()
        id_field = self.settings.id_field
        self.identity = identity or (lambda entity: entity.get(id_field))
        self.executor = executor or StructuredLLMExecutor(provider, self.settings)

    def _resolve_weights(self, options: RerankOptions) -> Tuple[str, float, float]:
        strategy = options.strategy or self.settings.rerank_strategy
        prior_weight = (
            options.prior_weight if options.prior_weight is not None
            else self.settings.rerank_prior_weight
        )
        llm_weight = (
            options.llm_weight if options.llm_weight is not None
            else self.settings.rerank_llm_weight
        )
        if strategy == "weighted" and abs(prior_weight + llm_weight - 1.0) > 1e-9:
            raise ConfigurationError(
                f"rerank weights must sum to 1, got {prior_weight} + {llm_weight}"
            )
        return strategy, prior_weight, llm_weight

    def _ids(self, results: Sequence[SearchResult]) -> List[str]:
        ids = []
        for result in results:
            value = self.identity(result.entity)
            if value is None:
                raise OperationError(
                    "Cannot rerank an entity without identifier", operation="llm_rerank"
                )
            ids.append(str(value))
        if len(set(ids)) != len(ids):
            raise OperationError("Duplicate entity identifiers in rerank input", operation="llm_rerank")
        return ids

    def build_config(self, question: str, options: RerankOptions) -> StructuredCallConfig:
        return StructuredCallConfig(
            output_schema=EVALUATION_SCHEMA,
            entity_context=self.entity_context,
            system_prompt=RERANK_SYSTEM_PROMPT,
            user_task=f"Rate how relevant each {self.entity_context.entity_type} is to the question:\n{question}",
            instructions=options.instructions,
            global_schema=FEEDBACK_SCHEMA if options.with_feedback else None,
            output_format=options.output_format,
            batch_size=options.batch_size or self.settings.rerank_batch_size,
            parallel=options.parallel or self.settings.rerank_parallel,
            token_budget=options.token_budget or self.settings.rerank_token_budget,
            item_id=lambda entity: self.identity(entity),
            provider=options.provider or self.provider,
            timeout=options.timeout,
        )

    async def evaluate(
        self,
        question: str,
        results: Sequence[SearchResult],
        options: Optional[RerankOptions] = None,
    ) -> Tuple[List[ItemEvaluation], Optional[Dict[str, Any]]]:
        """
        Ask the LLM for one evaluation per result.

        Returns:
            (evaluations, global metadata) tuple
        """
        options = options or RerankOptions()
        self._ids(results)
        config = self.build_config(question, options)
        generated = await self.executor.generate([r.entity for r in results], config)
        evaluations = [
            ItemEvaluation(
                id=item_id,
                score=float(output["score"]),
                reasoning=output.get("reasoning", ""),
            )
            for item_id, output in zip(generated.ids, generated.outputs)
        ]
        return evaluations, generated.global_metadata

    def apply(
        self,
        results: Sequence[SearchResult],
        evaluations: Sequence[ItemEvaluation],
        options: Optional[RerankOptions] = None,
    ) -> List[SearchResult]:
        """
        Merge evaluations into results, then filter, sort and truncate.

        Results without an evaluation keep their score.
        """
        options = options or RerankOptions()
        strategy, prior_weight, llm_weight = self._resolve_weights(options)
        by_id = {evaluation.id: evaluation for evaluation in evaluations}

        reranked: List[SearchResult] = []
        for result in results:
            evaluation = by_id.get(str(self.identity(result.entity)))
            if evaluation is None:
                reranked.append(result)
                continue
            if options.min_score is not None and evaluation.score < options.min_score:
                continue
            llm = min(LLM_SCORE_MAX, max(0.0, evaluation.score)) / LLM_SCORE_MAX
            context = replace(result.context) if result.context else ResultContext()
            context.llm_reasoning = evaluation.reasoning
            reranked.append(
                SearchResult(
                    entity=result.entity,
                    score=merge_score(result.score, llm, strategy, prior_weight, llm_weight),
                    score_breakdown={**result.score_breakdown, "previous": result.score, "llm": llm},
                    context=context,
                )
            )

        reranked.sort(key=lambda r: (-r.score, str(self.identity(r.entity))))
        if options.top_k is not None:
            reranked = reranked[:options.top_k]
        return reranked

    async def rerank(
        self,
        question: str,
        results: Sequence[SearchResult],
        options: Optional[RerankOptions] = None,
    ) -> RerankResult:
        """
        Evaluate and rerank results.

        Raises:
            ConfigurationError: On invalid options or missing provider
            KgflowError: On LLM failures (callers decide whether to absorb them)
        """
        options = options or RerankOptions()
        self._resolve_weights(options)
        if not results:
            return RerankResult(results=[])

        evaluations, global_metadata = await self.evaluate(question, results, options)
        reranked = self.apply(results, evaluations, options)

        log.info(
            f"LLM rerank '{question[:50]}': {len(results)} -> {len(reranked)} results"
        )
        feedback = (global_metadata or {}).get("query_feedback")
        return RerankResult(results=reranked, evaluations=evaluations, query_feedback=feedback)

"""
kgflow Reranking
================

LLM relevance reranking and score merge strategies.
"""

from kgflow.reranking.reranker import (
    EVALUATION_SCHEMA,
    LLMReranker,
    RerankOptions,
    RerankResult,
    merge_score,
)

__all__ = [
    "EVALUATION_SCHEMA",
    "LLMReranker",
    "RerankOptions",
    "RerankResult",
    "merge_score",
]

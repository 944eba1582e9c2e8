"""
kgflow LLM
==========

Structured LLM execution: providers, output schemas, token-budget batching,
multi-format decoding and the batch executor.

Components:
- LLMProvider / OpenRouterProvider: text generation
- OutputField / normalize_schema: output schemas
- pack_batches: token-budget batching
- ResponseDecoder: XML / JSON / YAML / mixed decoding
- StructuredLLMExecutor: the batch executor
"""

from kgflow.llm.batching import Batch, estimate_item_tokens, pack_batches
from kgflow.llm.decoders import (
    DecodedResponse,
    JsonDecoder,
    PayloadDecoder,
    ResponseDecoder,
    XmlDecoder,
    YamlDecoder,
    get_decoder,
)
from kgflow.llm.executor import (
    GeneratedOutputs,
    StructuredCallConfig,
    StructuredLLMExecutor,
    StructuredOutput,
)
from kgflow.llm.provider import LLMProvider, OpenRouterConfig, OpenRouterProvider, supports_batch
from kgflow.llm.schema import FieldType, OutputField, OutputSchema, coerce_output, normalize_schema

__all__ = [
    # Providers
    "LLMProvider",
    "OpenRouterConfig",
    "OpenRouterProvider",
    "supports_batch",
    # Schemas
    "FieldType",
    "OutputField",
    "OutputSchema",
    "coerce_output",
    "normalize_schema",
    # Batching
    "Batch",
    "estimate_item_tokens",
    "pack_batches",
    # Decoding
    "DecodedResponse",
    "JsonDecoder",
    "PayloadDecoder",
    "ResponseDecoder",
    "XmlDecoder",
    "YamlDecoder",
    "get_decoder",
    # Executor
    "GeneratedOutputs",
    "StructuredCallConfig",
    "StructuredLLMExecutor",
    "StructuredOutput",
]

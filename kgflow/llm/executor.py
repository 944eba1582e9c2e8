"""
Structured LLM Executor
=======================

Runs one schema-driven LLM call over an ordered list of items:

1. Estimate prompt tokens per item and pack batches (item count + token budget)
2. Render each batch prompt (items labelled with ids, format instructions)
3. Dispatch batches with bounded concurrency, each call under a deadline
4. Decode every response, map outputs back to items by id, coerce types
5. Merge outputs into the original items, in original order

Any provider error, timeout or undecodable response fails the whole call;
remaining batches are cancelled and no partial result is returned.

Example:
    executor = StructuredLLMExecutor(provider)
    summaries = await executor.execute(
        functions,
        StructuredCallConfig(
            input_fields=["name", "source"],
            output_schema={"summary": {"type": "string", "required": True}},
            user_task="Summarize what each function does in one sentence.",
            parallel=4,
        ),
    )
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import structlog

from kgflow.config import PipelineSettings, get_default_settings
from kgflow.exceptions import (
    ConfigurationError,
    KgflowError,
    LLMProviderError,
    OutputDecodeError,
)
from kgflow.llm.batching import Batch, estimate_item_tokens, pack_batches
from kgflow.llm.decoders import FORMATS, ResponseDecoder
from kgflow.llm.prompts import build_prompt, exposed_fields, format_item
from kgflow.llm.provider import LLMProvider, supports_batch
from kgflow.llm.schema import coerce_output, normalize_schema
from kgflow.models.entity_context import EntityContext

log = structlog.get_logger()

MERGE_STRATEGIES = ("append", "preserve")

MergeFunction = Callable[[Dict[str, Any], Dict[str, Any]], Dict[str, Any]]


@dataclass
class StructuredCallConfig:
    """
    Configuration of one structured LLM call.

    Attributes:
        output_schema: Per-item output fields
        input_fields: Item properties shown to the LLM (ignored with entity_context)
        entity_context: Prompt descriptor for entity items
        system_prompt: Leading system prompt
        user_task: Task description (## Task)
        context_data: Extra JSON context (## Context)
        instructions: Additional instructions
        global_schema: Batch-level metadata fields; switches the return
                       value to StructuredOutput
        output_format: "xml", "json" or "yaml" for the item payload
        global_metadata_format: Format of the global payload (default: output_format)
        merge_strategy: "append" (outputs override), "preserve" (existing
                        fields win) or a callable ``(item, output) -> dict``
        batch_size: Max items per batch (default: settings.batch_size)
        parallel: Concurrent batches (default: settings.parallel)
        token_budget: Estimated tokens per batch (default: settings.token_budget)
        item_id: Identity function; outputs are mapped back through it.
                 Default labels items by their 1-based position
        provider: Overrides the executor's provider
        timeout: Seconds per LLM call (default: settings.llm_timeout)
        native_batch: Send all prompts through ``generate_batch`` when available
    """
    output_schema: Mapping[str, Any]
    input_fields: Optional[Sequence[str]] = None
    entity_context: Optional[EntityContext] = None
    system_prompt: Optional[str] = None
    user_task: Optional[str] = None
    context_data: Optional[Dict[str, Any]] = None
    instructions: Optional[str] = None
    global_schema: Optional[Mapping[str, Any]] = None
    output_format: str = "xml"
    global_metadata_format: Optional[str] = None
    merge_strategy: Union[str, MergeFunction] = "append"
    batch_size: Optional[int] = None
    parallel: Optional[int] = None
    token_budget: Optional[int] = None
    item_id: Optional[Callable[[Dict[str, Any]], Any]] = None
    provider: Optional[LLMProvider] = None
    timeout: Optional[float] = None
    native_batch: bool = False

    def __post_init__(self):
        self.output_schema = normalize_schema(self.output_schema)
        self.global_schema = normalize_schema(self.global_schema) or None
        if not self.output_schema:
            raise ConfigurationError("output_schema must define at least one field")
        for fmt in (self.output_format, self.global_metadata_format):
            if fmt is not None and fmt.lower() not in FORMATS:
                raise ConfigurationError(f"Unknown output format '{fmt}', expected one of {FORMATS}")
        if not callable(self.merge_strategy) and self.merge_strategy not in MERGE_STRATEGIES:
            raise ConfigurationError(
                f"merge_strategy must be one of {MERGE_STRATEGIES} or a callable, "
                f"got {self.merge_strategy!r}"
            )
        for name in ("batch_size", "parallel", "token_budget"):
            value = getattr(self, name)
            if value is not None and value < 1:
                raise ConfigurationError(f"{name} must be >= 1, got {value}")


@dataclass
class StructuredOutput:
    """Result of a call with a global schema."""
    items: List[Dict[str, Any]]
    global_metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GeneratedOutputs:
    """Decoded outputs aligned with the input items (before merging)."""
    ids: List[str]
    outputs: List[Dict[str, Any]]
    global_metadata: Optional[Dict[str, Any]] = None
    batch_count: int = 0
    duration_ms: float = 0.0


class StructuredLLMExecutor:
    """
    Token-budget aware batch executor for structured LLM output.

    Args:
        provider: Default LLM provider
        settings: Batching and timeout defaults
    """

    def __init__(
        self,
        provider: Optional[LLMProvider] = None,
        settings: Optional[PipelineSettings] = None,
    ):
        self.provider = provider
        self.settings = settings or get_default_settings()

    def _item_ids(self, items: Sequence[Dict[str, Any]], config: StructuredCallConfig) -> List[str]:
        if config.item_id is None:
            return [str(i + 1) for i in range(len(items))]
        ids = [str(config.item_id(item)) for item in items]
        if len(set(ids)) != len(ids):
            raise ConfigurationError("item_id must return a unique identifier per item")
        return ids

    def plan_batches(self, items: Sequence[Dict[str, Any]], config: StructuredCallConfig) -> List[Batch]:
        """Pack items into batches according to the config and settings."""
        names = exposed_fields(config.entity_context, config.input_fields)
        token_counts = [
            estimate_item_tokens(item, names, self.settings.default_item_tokens)
            for item in items
        ]
        response_fields = len(config.output_schema) + len(config.global_schema or {})
        return pack_batches(
            token_counts,
            batch_size=config.batch_size or self.settings.batch_size,
            token_budget=config.token_budget or self.settings.token_budget,
            base_overhead=self.settings.base_overhead_tokens,
            response_tokens=response_fields * self.settings.response_tokens_per_field,
        )

    def build_batch_prompt(
        self,
        items: Sequence[Dict[str, Any]],
        ids: Sequence[str],
        config: StructuredCallConfig,
        decoder: ResponseDecoder,
    ) -> str:
        formatted = [
            format_item(item, item_id, config.entity_context, config.input_fields)
            for item, item_id in zip(items, ids)
        ]
        return build_prompt(
            formatted,
            decoder.instructions(config.output_schema, config.global_schema),
            system_prompt=config.system_prompt,
            user_task=config.user_task,
            context_data=config.context_data,
            instructions=config.instructions,
        )

    async def _call_provider(
        self,
        provider: LLMProvider,
        prompt: str,
        timeout: Optional[float],
        batch_index: int,
    ) -> str:
        try:
            return await asyncio.wait_for(provider.generate_content(prompt), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise LLMProviderError(
                f"LLM call timed out after {timeout}s (batch {batch_index})",
                batch_index=batch_index,
            ) from e
        except KgflowError:
            raise
        except Exception as e:
            raise LLMProviderError(
                f"LLM provider failed on batch {batch_index}: {e}",
                batch_index=batch_index,
            ) from e

    def _decode_batch(
        self,
        response: str,
        ids: Sequence[str],
        config: StructuredCallConfig,
        decoder: ResponseDecoder,
        batch_index: int,
    ) -> tuple:
        decoded = decoder.decode(response, config.output_schema, config.global_schema)

        by_id: Dict[str, Dict[str, Any]] = {}
        anonymous = []
        for raw in decoded.items:
            raw_id = raw.get("id")
            if raw_id is None or not str(raw_id).strip():
                anonymous.append(raw)
                continue
            key = str(raw_id).strip()
            if key not in by_id:
                by_id[key] = raw
        if len(ids) == 1 and not by_id and len(anonymous) == 1:
            by_id[ids[0]] = anonymous[0]

        unexpected = set(by_id) - set(ids)
        if unexpected:
            log.debug(f"Batch {batch_index}: ignoring outputs for unknown ids {sorted(unexpected)[:5]}")

        outputs = []
        for item_id in ids:
            if item_id not in by_id:
                raise OutputDecodeError(
                    f"No output for item '{item_id}' in batch {batch_index}",
                    output_format=decoder.label,
                    raw_response=response,
                    batch_index=batch_index,
                )
            try:
                outputs.append(coerce_output(by_id[item_id], config.output_schema))
            except ValueError as e:
                raise OutputDecodeError(
                    f"Invalid output for item '{item_id}' in batch {batch_index}: {e}",
                    output_format=decoder.label,
                    raw_response=response,
                    batch_index=batch_index,
                ) from e
        return outputs, decoded.global_metadata

    async def generate(
        self,
        items: Sequence[Dict[str, Any]],
        config: StructuredCallConfig,
    ) -> GeneratedOutputs:
        """
        Run the call and return decoded outputs aligned with ``items``.

        Raises:
            ConfigurationError: If no provider is available
            LLMProviderError: On provider errors or timeouts
            OutputDecodeError: On unparseable or incomplete responses
        """
        start = time.time()
        items = list(items)
        if not items:
            return GeneratedOutputs(ids=[], outputs=[], global_metadata={} if config.global_schema else None)

        provider = config.provider or self.provider
        if provider is None:
            raise ConfigurationError("No LLM provider configured for structured call")

        ids = self._item_ids(items, config)
        decoder = ResponseDecoder(config.output_format, config.global_metadata_format)
        batches = self.plan_batches(items, config)
        timeout = config.timeout if config.timeout is not None else self.settings.llm_timeout
        parallel = config.parallel or self.settings.parallel

        prompts = [
            self.build_batch_prompt(
                [items[p] for p in batch.positions],
                [ids[p] for p in batch.positions],
                config,
                decoder,
            )
            for batch in batches
        ]

        log.info(
            f"Structured LLM call: {len(items)} items in {len(batches)} batches "
            f"(format={decoder.label}, parallel={parallel})"
        )

        if config.native_batch and supports_batch(provider):
            try:
                responses = await asyncio.wait_for(provider.generate_batch(prompts), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise LLMProviderError(f"Batch LLM call timed out after {timeout}s") from e
            except KgflowError:
                raise
            except Exception as e:
                raise LLMProviderError(f"Batch LLM call failed: {e}") from e
            if len(responses) != len(prompts):
                raise LLMProviderError(
                    f"generate_batch returned {len(responses)} responses for {len(prompts)} prompts"
                )
        else:
            semaphore = asyncio.Semaphore(parallel)

            async def run(batch: Batch, prompt: str) -> str:
                async with semaphore:
                    log.debug(f"Dispatching batch {batch.index} ({len(batch)} items, ~{batch.estimated_tokens} tokens)")
                    return await self._call_provider(provider, prompt, timeout, batch.index)

            tasks = [asyncio.ensure_future(run(b, p)) for b, p in zip(batches, prompts)]
            try:
                responses = await asyncio.gather(*tasks)
            except BaseException:
                for task in tasks:
                    task.cancel()
                raise

        outputs: List[Optional[Dict[str, Any]]] = [None] * len(items)
        global_metadata: Optional[Dict[str, Any]] = None
        for batch, response in zip(batches, responses):
            batch_outputs, batch_global = self._decode_batch(
                response, [ids[p] for p in batch.positions], config, decoder, batch.index
            )
            for position, output in zip(batch.positions, batch_outputs):
                outputs[position] = output
            if global_metadata is None and batch_global:
                global_metadata = batch_global

        if config.global_schema:
            try:
                global_metadata = coerce_output(global_metadata or {}, config.global_schema)
            except ValueError as e:
                raise OutputDecodeError(
                    f"Invalid global metadata: {e}", output_format=decoder.label
                ) from e

        duration_ms = (time.time() - start) * 1000
        log.info(f"Structured LLM call complete: {len(items)} items, {duration_ms:.0f}ms")
        return GeneratedOutputs(
            ids=ids,
            outputs=outputs,
            global_metadata=global_metadata,
            batch_count=len(batches),
            duration_ms=duration_ms,
        )

    def merge(self, item: Dict[str, Any], output: Dict[str, Any], strategy: Union[str, MergeFunction]) -> Dict[str, Any]:
        if callable(strategy):
            return strategy(item, output)
        if strategy == "preserve":
            return {**output, **item}
        return {**item, **output}

    async def execute(
        self,
        items: Sequence[Dict[str, Any]],
        config: StructuredCallConfig,
    ) -> Union[List[Dict[str, Any]], StructuredOutput]:
        """
        Run the call and merge outputs into the items.

        Returns:
            Merged items in input order, or a StructuredOutput when the
            config has a global schema
        """
        items = list(items)
        generated = await self.generate(items, config)
        merged = [
            self.merge(item, output, config.merge_strategy)
            for item, output in zip(items, generated.outputs)
        ]
        if config.global_schema:
            return StructuredOutput(items=merged, global_metadata=generated.global_metadata or {})
        return merged

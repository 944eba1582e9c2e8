"""
Prompt Construction
===================

Renders items for structured LLM calls, either through an EntityContext
(labelled, truncated, summary-aware) or from an explicit field list, and
assembles the full prompt:

    <system prompt>
    ## Task
    ## Context
    ## Items to Analyze (N total)
    ## Required Output Format
    ## Additional Instructions
"""

import json
from typing import Any, Dict, List, Optional, Sequence

from kgflow.models.entity_context import EntityContext

HEADER_MAX_LENGTH = 120
FIELD_MAX_LENGTH = 2500
ARRAY_MAX_ITEMS = 5

_VECTOR_MARKERS = ("embedding", "vector")


def is_vector_field(name: str) -> bool:
    """Vector properties are never rendered into prompts."""
    lowered = name.lower()
    return any(marker in lowered for marker in _VECTOR_MARKERS)


def truncate(text: str, max_length: Optional[int]) -> str:
    if max_length is None or len(text) <= max_length:
        return text
    if max_length <= 3:
        return text[:max_length]
    return text[:max_length - 3] + "..."


def render_value(value: Any, max_length: Optional[int] = FIELD_MAX_LENGTH, max_items: int = ARRAY_MAX_ITEMS) -> str:
    if isinstance(value, (list, tuple)):
        shown = [render_value(v, None, max_items) for v in value[:max_items]]
        text = ", ".join(shown)
        if len(value) > max_items:
            text += f" (+{len(value) - max_items} more)"
    elif isinstance(value, dict):
        text = json.dumps(value, ensure_ascii=False, default=str)
    else:
        text = str(value)
    return truncate(text, max_length)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def exposed_fields(context: Optional[EntityContext], input_fields: Optional[Sequence[str]]) -> List[str]:
    """Names of the item properties a prompt shows (used for token estimates)."""
    if context is not None:
        names = [f.name for f in context.fields if not is_vector_field(f.name)]
        names.extend(e.name for e in context.enrichments)
        return names
    return [name for name in (input_fields or []) if not is_vector_field(name)]


def format_entity(entity: Dict[str, Any], context: EntityContext, item_id: str) -> str:
    """Render one entity through its EntityContext."""
    header_parts = [
        render_value(entity.get(f.name), None)
        for f in context.required_fields
        if not _is_empty(entity.get(f.name))
    ]
    header = truncate(" - ".join(header_parts), HEADER_MAX_LENGTH)
    lines = [f'[id="{item_id}"] {header}'.rstrip()]

    for f in context.optional_fields:
        if is_vector_field(f.name):
            continue
        value = entity.get(f.name)
        if f.prefer_summary and not _is_empty(entity.get(f"{f.name}_summary")):
            value = entity.get(f"{f.name}_summary")
        if _is_empty(value):
            continue
        lines.append(f"{f.display_label}: {render_value(value, f.max_length or FIELD_MAX_LENGTH)}")

    for enrichment in context.enrichments:
        values = entity.get(enrichment.name)
        if _is_empty(values):
            continue
        if not isinstance(values, (list, tuple)):
            values = [values]
        shown = ", ".join(str(v) for v in values[:enrichment.max_items])
        lines.append(f"{enrichment.display_label}: {shown}")

    return "\n".join(lines)


def format_fields(entity: Dict[str, Any], input_fields: Sequence[str], item_id: str) -> str:
    """Render one item from an explicit field list."""
    lines = [f'[id="{item_id}"]']
    for name in input_fields:
        if is_vector_field(name):
            continue
        value = entity.get(name)
        if _is_empty(value):
            continue
        lines.append(f"{name}: {render_value(value)}")
    return "\n".join(lines)


def format_item(
    entity: Dict[str, Any],
    item_id: str,
    context: Optional[EntityContext] = None,
    input_fields: Optional[Sequence[str]] = None,
) -> str:
    if context is not None:
        return format_entity(entity, context, item_id)
    if input_fields:
        return format_fields(entity, input_fields, item_id)
    visible = [k for k in entity if not is_vector_field(k)]
    return format_fields(entity, visible, item_id)


def build_prompt(
    formatted_items: List[str],
    output_instructions: str,
    system_prompt: Optional[str] = None,
    user_task: Optional[str] = None,
    context_data: Optional[Dict[str, Any]] = None,
    instructions: Optional[str] = None,
) -> str:
    """Assemble the full prompt of one batch."""
    sections = []
    if system_prompt:
        sections.append(system_prompt.strip())
    if user_task:
        sections.append(f"## Task\n{user_task.strip()}")
    if context_data:
        sections.append(
            "## Context\n" + json.dumps(context_data, indent=2, ensure_ascii=False, default=str)
        )
    sections.append(
        f"## Items to Analyze ({len(formatted_items)} total)\n\n" + "\n\n".join(formatted_items)
    )
    sections.append(f"## Required Output Format\n{output_instructions}")
    if instructions:
        sections.append(f"## Additional Instructions\n{instructions.strip()}")
    return "\n\n".join(sections)

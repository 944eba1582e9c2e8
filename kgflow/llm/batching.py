"""
Token-Budget Batching
=====================

Greedy left-to-right packing of items into LLM batches under two
independent limits: a maximum item count and an estimated token budget.

Token estimates are rough (about four characters per token over the
serialized fields) and only decide batch boundaries.

Guarantees:
- every item lands in exactly one batch, in input order
- no batch is empty
- an item that alone exceeds the budget forms a singleton batch
"""

import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

CHARS_PER_TOKEN = 4


@dataclass
class Batch:
    """A group of item positions sent in one LLM call."""
    index: int
    positions: List[int] = field(default_factory=list)
    estimated_tokens: int = 0

    def __len__(self) -> int:
        return len(self.positions)


def estimate_value_tokens(value: Any) -> int:
    """Estimate tokens of one serialized value (empty values cost nothing)."""
    if value is None or value == "" or value == [] or value == {}:
        return 0
    if isinstance(value, str):
        text = value
    else:
        text = json.dumps(value, ensure_ascii=False, default=str)
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_item_tokens(
    item: Dict[str, Any],
    field_names: Optional[Iterable[str]],
    default_tokens: int = 100,
) -> int:
    """
    Estimate the prompt tokens one item contributes.

    Args:
        item: Item mapping
        field_names: Exposed fields; when None or empty, ``default_tokens``
        default_tokens: Estimate for items without exposed fields

    Returns:
        Token estimate
    """
    names = list(field_names or [])
    if not names:
        return default_tokens
    return sum(estimate_value_tokens(item.get(name)) for name in names)


def pack_batches(
    token_counts: Sequence[int],
    batch_size: int,
    token_budget: int,
    base_overhead: int = 1000,
    response_tokens: int = 0,
) -> List[Batch]:
    """
    Pack items into batches.

    A batch is closed before adding an item when
    ``overhead + batch tokens + item tokens + response_tokens > token_budget``
    and the batch is not empty, or after adding an item when it reaches
    ``batch_size``.

    Args:
        token_counts: Estimated tokens per item, in item order
        batch_size: Max items per batch
        token_budget: Estimated tokens allowed per prompt
        base_overhead: Fixed prompt scaffolding estimate
        response_tokens: Estimated response size per batch

    Returns:
        Batches covering every position exactly once
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    if token_budget < 1:
        raise ValueError(f"token_budget must be >= 1, got {token_budget}")

    batches: List[Batch] = []
    current = Batch(index=0, estimated_tokens=base_overhead)

    for position, tokens in enumerate(token_counts):
        would_exceed = current.estimated_tokens + tokens + response_tokens > token_budget
        if would_exceed and current.positions:
            batches.append(current)
            current = Batch(index=len(batches), estimated_tokens=base_overhead)

        current.positions.append(position)
        current.estimated_tokens += tokens

        if len(current.positions) >= batch_size:
            batches.append(current)
            current = Batch(index=len(batches), estimated_tokens=base_overhead)

    if current.positions:
        batches.append(current)
    return batches

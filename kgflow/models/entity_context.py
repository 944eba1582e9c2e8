"""
Entity Context
==============

Prompt-construction descriptor for one entity type: which properties an LLM
sees, how they are labelled and truncated, plus store-side extras
(enrichment relationships and computed fields) returned with each entity.

Built once per entity type and shared read-only.

Example:
    context = EntityContext(
        entity_type="Function",
        fields=(
            ContextField("name", required=True),
            ContextField("file", required=True),
            ContextField("source", label="Code", max_length=1500, prefer_summary=True),
        ),
        enrichments=(EnrichmentField("callers", label="Called by"),),
    )
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

DIRECTIONS = ("outgoing", "incoming")


@dataclass(frozen=True)
class ContextField:
    """
    One entity property exposed to the LLM.

    Attributes:
        name: Property name on the entity
        required: Required fields go in the item header line
        label: Display label (default: the property name)
        max_length: Truncation limit for the rendered value
        prefer_summary: Render ``<name>_summary`` instead when present
    """
    name: str
    required: bool = False
    label: Optional[str] = None
    max_length: Optional[int] = None
    prefer_summary: bool = False

    @property
    def display_label(self) -> str:
        return self.label or self.name


@dataclass(frozen=True)
class EnrichmentField:
    """A list-valued property (usually collected from neighbours) shown as a comma list."""
    name: str
    label: Optional[str] = None
    max_items: int = 10

    @property
    def display_label(self) -> str:
        return self.label or self.name


@dataclass(frozen=True)
class ComputedField:
    """
    Extra Cypher expression returned alongside each fetched entity.

    The expression may reference the entity as ``n``, e.g.
    ``ComputedField("degree", "size((n)--())")``.
    """
    name: str
    cypher: str
    description: Optional[str] = None


@dataclass(frozen=True)
class EnrichmentRelationship:
    """
    Neighbour values collected into fetched entities.

    ``Function -[:CALLS]-> Function`` collected as ``callees`` yields
    ``entity["callees"] == ["parse", "emit"]``.
    """
    relationship_type: str
    direction: str = "outgoing"
    target_label: Optional[str] = None
    target_field: str = "name"
    alias: Optional[str] = None

    def __post_init__(self):
        if self.direction not in DIRECTIONS:
            raise ValueError(f"direction must be one of {DIRECTIONS}, got {self.direction}")

    @property
    def field_name(self) -> str:
        return self.alias or f"{self.relationship_type.lower()}_{self.direction}"


@dataclass(frozen=True)
class EntityContext:
    """Prompt descriptor for one entity type."""
    entity_type: str
    fields: Tuple[ContextField, ...] = ()
    enrichments: Tuple[EnrichmentField, ...] = ()
    computed_fields: Tuple[ComputedField, ...] = ()

    def __post_init__(self):
        # Accept lists from callers, store tuples
        object.__setattr__(self, "fields", tuple(self.fields))
        object.__setattr__(self, "enrichments", tuple(self.enrichments))
        object.__setattr__(self, "computed_fields", tuple(self.computed_fields))

    @property
    def required_fields(self) -> List[ContextField]:
        return [f for f in self.fields if f.required]

    @property
    def optional_fields(self) -> List[ContextField]:
        return [f for f in self.fields if not f.required]

    def field_names(self) -> List[str]:
        """Names of every property read when rendering an entity."""
        names = [f.name for f in self.fields]
        names.extend(e.name for e in self.enrichments)
        return names

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityContext":
        """
        Build a context from a plain mapping (e.g. a YAML section).

        Args:
            data: ``{"entity_type": ..., "fields": [...], "enrichments": [...],
                  "computed_fields": [...]}`` where list entries are mappings
                  of the dataclass attributes, or bare field names

        Returns:
            EntityContext
        """
        def _field(entry):
            return ContextField(entry) if isinstance(entry, str) else ContextField(**entry)

        def _enrichment(entry):
            return EnrichmentField(entry) if isinstance(entry, str) else EnrichmentField(**entry)

        return cls(
            entity_type=data["entity_type"],
            fields=tuple(_field(f) for f in data.get("fields", [])),
            enrichments=tuple(_enrichment(e) for e in data.get("enrichments", [])),
            computed_fields=tuple(ComputedField(**c) for c in data.get("computed_fields", [])),
        )

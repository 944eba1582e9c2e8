"""
Cypher Compilation
==================

Renders pipeline store steps as parameterized, read-only Cypher.

The entity under query is always bound to ``n``; fused filter conditions
are rendered against it, so a fused filter has the same meaning as the
same filter evaluated in memory on the step's output.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

from kgflow.models.conditions import (
    FieldCondition,
    RelationshipCondition,
    compile_conditions,
    property_ref,
    quote_identifier,
)
from kgflow.models.entity_context import ComputedField, EnrichmentRelationship
from kgflow.query.operations import ExpandOperation, FetchOperation

CompiledQuery = Tuple[str, Dict[str, Any]]


def _label(entity_type: Optional[str]) -> str:
    return f":{quote_identifier(entity_type)}" if entity_type else ""


def _anchor_clause(
    relationship: RelationshipCondition,
    entity_type: str,
    params: Dict[str, Any],
) -> List[str]:
    params["target_value"] = relationship.target_value
    anchor_label = relationship.target_label or entity_type
    return [
        f"MATCH (target{_label(anchor_label)})",
        f"WHERE {property_ref('target', relationship.target_field)} = $target_value",
        f"MATCH {relationship.pattern('n' + _label(entity_type), 'target')}",
    ]


def _match_clauses(
    entity_type: str,
    fetch: FetchOperation,
    conditions: Sequence[FieldCondition],
    id_field: str,
    params: Dict[str, Any],
) -> List[str]:
    lines: List[str] = []
    if fetch.mode == "relationship":
        lines.extend(_anchor_clause(fetch.relationship, entity_type, params))
    else:
        lines.append(f"MATCH (n{_label(entity_type)})")
    where: List[str] = []

    if fetch.mode == "uuid":
        params["ids"] = list(fetch.ids)
        where.append(f"{property_ref('n', id_field)} IN $ids")
    where.extend(compile_conditions(list(fetch.conditions) + list(conditions), "n", params))

    if where:
        lines.append("WHERE " + " AND ".join(where))
    if fetch.mode == "relationship":
        lines.append("WITH DISTINCT n")
    return lines


def _enrichment_clauses(enrichment: Sequence[EnrichmentRelationship]) -> Tuple[List[str], List[str]]:
    lines: List[str] = []
    carried: List[str] = []
    for i, rel in enumerate(enrichment):
        other = f"e{i}{_label(rel.target_label)}"
        rel_pattern = f"[:{quote_identifier(rel.relationship_type)}]"
        if rel.direction == "outgoing":
            pattern = f"(n)-{rel_pattern}->({other})"
        else:
            pattern = f"({other})-{rel_pattern}->(n)"
        alias = quote_identifier(rel.field_name)
        lines.append(f"OPTIONAL MATCH {pattern}")
        lines.append(
            "WITH n" + "".join(f", {c}" for c in carried)
            + f", collect(DISTINCT {property_ref(f'e{i}', rel.target_field)}) AS {alias}"
        )
        carried.append(alias)
    return lines, carried


def compile_fetch(
    entity_type: str,
    fetch: FetchOperation,
    conditions: Sequence[FieldCondition] = (),
    id_field: str = "uuid",
    enrichment: Sequence[EnrichmentRelationship] = (),
    computed_fields: Sequence[ComputedField] = (),
) -> CompiledQuery:
    """
    Compile a fetch step plus fused field conditions.

    Returns:
        (cypher, params); the entity is returned as column ``n``, enrichment
        and computed fields as columns named after them
    """
    params: Dict[str, Any] = {}
    lines = _match_clauses(entity_type, fetch, conditions, id_field, params)
    enrichment_lines, carried = _enrichment_clauses(enrichment)
    lines.extend(enrichment_lines)

    columns = ["n"] + carried
    columns.extend(f"{cf.cypher} AS {quote_identifier(cf.name)}" for cf in computed_fields)
    lines.append("RETURN " + ", ".join(columns))
    return "\n".join(lines), params


def compile_count(
    entity_type: str,
    fetch: FetchOperation,
    conditions: Sequence[FieldCondition] = (),
    id_field: str = "uuid",
) -> CompiledQuery:
    params: Dict[str, Any] = {}
    lines = _match_clauses(entity_type, fetch, conditions, id_field, params)
    lines.append("RETURN count(n) AS count")
    return "\n".join(lines), params


def compile_expand(
    entity_type: str,
    expand: ExpandOperation,
    ids: Sequence[Any],
    conditions: Sequence[FieldCondition] = (),
    id_field: str = "uuid",
) -> CompiledQuery:
    """
    Compile an expand step plus fused field conditions on the originating entities.

    One row per (origin, path); origins without neighbours yield one row
    with ``related`` null so that fused conditions can be checked on every
    origin.
    """
    params: Dict[str, Any] = {"ids": list(ids)}
    where = [f"{property_ref('n', id_field)} IN $ids"]
    where.extend(compile_conditions(conditions, "n", params))

    rel_type = f":{quote_identifier(expand.relationship_type)}" if expand.relationship_type else ""
    rel = f"[{rel_type}*1..{int(expand.depth)}]"
    related = f"(related{_label(expand.target_label)})"
    if expand.direction == "outgoing":
        pattern = f"(n)-{rel}->{related}"
    elif expand.direction == "incoming":
        pattern = f"(n)<-{rel}-{related}"
    else:
        pattern = f"(n)-{rel}-{related}"

    source = property_ref("n", id_field)
    cypher = "\n".join([
        f"MATCH (n{_label(entity_type)})",
        "WHERE " + " AND ".join(where),
        f"OPTIONAL MATCH path = {pattern}",
        "WHERE related <> n",
        f"RETURN {source} AS source_id, related, "
        "type(relationships(path)[0]) AS relationship_type, length(path) AS depth",
        "ORDER BY source_id, depth",
    ])
    return cypher, params


def compile_relationship_filter(
    entity_type: str,
    relationship: RelationshipCondition,
    ids: Sequence[Any],
    id_field: str = "uuid",
) -> CompiledQuery:
    """Compile a relationship filter over the current result ids."""
    params: Dict[str, Any] = {}
    lines = _anchor_clause(relationship, entity_type, params)
    params["ids"] = list(ids)
    lines.append(f"WHERE {property_ref('n', id_field)} IN $ids")
    lines.append(f"RETURN DISTINCT {property_ref('n', id_field)} AS id")
    return "\n".join(lines), params

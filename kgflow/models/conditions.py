"""
Filter Conditions
=================

Field and relationship predicates shared by the query builder, the fusion
optimizer and the vector search adapter.

A FieldCondition has two equivalent renderings:

- ``to_cypher()``: a WHERE fragment pushed into a store query (fused)
- ``matches()``: in-memory evaluation over an entity dict (unfused)

Both follow Cypher semantics: a missing property never matches, regex is a
full match, string operators only apply to strings.

Example:
    conditions = parse_conditions({
        "type": "Function",
        "name": {"starts_with": "create"},
        "loc": {"gte": 10, "lt": 200},
    })
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

OPERATORS = (
    "equals",
    "contains",
    "starts_with",
    "ends_with",
    "gt",
    "gte",
    "lt",
    "lte",
    "in",
    "regex",
)

CYPHER_OPERATORS = {
    "equals": "=",
    "contains": "CONTAINS",
    "starts_with": "STARTS WITH",
    "ends_with": "ENDS WITH",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
    "in": "IN",
    "regex": "=~",
}

OPERATOR_ALIASES = {
    "eq": "equals",
    "=": "equals",
    "startsWith": "starts_with",
    "endsWith": "ends_with",
    "pattern": "regex",
    "matches": "regex",
    ">": "gt",
    ">=": "gte",
    "<": "lt",
    "<=": "lte",
}

DIRECTIONS = ("outgoing", "incoming")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def quote_identifier(name: str) -> str:
    """Backtick-quote a label, relationship type or property name."""
    return "`" + name.replace("`", "``") + "`"


def property_ref(alias: str, name: str) -> str:
    """Render ``alias.name``, quoting the property when needed."""
    if _IDENTIFIER.match(name):
        return f"{alias}.{name}"
    return f"{alias}.{quote_identifier(name)}"


def normalize_operator(operator: str) -> str:
    op = OPERATOR_ALIASES.get(operator, operator)
    if op not in OPERATORS:
        raise ValueError(f"Unknown filter operator '{operator}', expected one of {OPERATORS}")
    return op


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class FieldCondition:
    """
    Predicate on one entity property.

    Attributes:
        field: Property name
        operator: One of OPERATORS
        value: Comparison value (a tuple for "in", a pattern string for "regex")
    """
    field: str
    operator: str = "equals"
    value: Any = None

    def __post_init__(self):
        object.__setattr__(self, "operator", normalize_operator(self.operator))
        if self.operator == "in":
            if isinstance(self.value, (str, bytes)) or not isinstance(self.value, Iterable):
                raise ValueError(f"'in' condition on '{self.field}' needs a collection, got {self.value!r}")
            object.__setattr__(self, "value", tuple(self.value))
        elif self.operator == "regex":
            if isinstance(self.value, re.Pattern):
                object.__setattr__(self, "value", self.value.pattern)
            # Fail on invalid patterns at build time
            re.compile(self.value)
        elif self.operator in ("contains", "starts_with", "ends_with") and not isinstance(self.value, str):
            raise ValueError(f"'{self.operator}' condition on '{self.field}' needs a string value")

    def matches(self, entity: Dict[str, Any]) -> bool:
        """Evaluate the condition in memory."""
        actual = entity.get(self.field)
        if actual is None:
            return False

        op = self.operator
        if op == "equals":
            if isinstance(actual, bool) != isinstance(self.value, bool):
                return False
            return actual == self.value
        if op == "contains":
            return isinstance(actual, str) and self.value in actual
        if op == "starts_with":
            return isinstance(actual, str) and actual.startswith(self.value)
        if op == "ends_with":
            return isinstance(actual, str) and actual.endswith(self.value)
        if op == "in":
            return any(
                actual == candidate and isinstance(actual, bool) == isinstance(candidate, bool)
                for candidate in self.value
            )
        if op == "regex":
            return isinstance(actual, str) and re.fullmatch(self.value, actual) is not None

        # Numeric or string ordering, never across types
        comparable = (
            (_is_number(actual) and _is_number(self.value))
            or (isinstance(actual, str) and isinstance(self.value, str))
        )
        if not comparable:
            return False
        if op == "gt":
            return actual > self.value
        if op == "gte":
            return actual >= self.value
        if op == "lt":
            return actual < self.value
        return actual <= self.value

    def to_cypher(self, alias: str, param_name: str) -> str:
        """Render as a WHERE fragment using ``$param_name``."""
        return f"{property_ref(alias, self.field)} {CYPHER_OPERATORS[self.operator]} ${param_name}"

    def param_value(self) -> Any:
        return list(self.value) if self.operator == "in" else self.value

    def describe(self) -> Dict[str, Any]:
        return {"field": self.field, "operator": self.operator, "value": self.param_value()}


@dataclass(frozen=True)
class RelationshipCondition:
    """
    Keep entities linked by ``relationship_type`` to an anchor entity.

    Outgoing: ``(n)-[:REL]->(anchor)``; incoming: ``(anchor)-[:REL]->(n)``.
    The anchor is matched by ``anchor.<target_field> = target_value``.
    """
    relationship_type: str
    target_value: Any
    direction: str = "outgoing"
    target_label: Optional[str] = None
    target_field: str = "name"

    def __post_init__(self):
        if self.direction not in DIRECTIONS:
            raise ValueError(f"direction must be one of {DIRECTIONS}, got {self.direction}")

    def pattern(self, alias: str = "n", anchor: str = "target") -> str:
        rel = f"[:{quote_identifier(self.relationship_type)}]"
        if self.direction == "outgoing":
            return f"({alias})-{rel}->({anchor})"
        return f"({anchor})-{rel}->({alias})"

    def describe(self) -> Dict[str, Any]:
        return {
            "relationship_type": self.relationship_type,
            "target_value": self.target_value,
            "direction": self.direction,
            "target_label": self.target_label,
            "target_field": self.target_field,
        }


def parse_conditions(filters: Optional[Dict[str, Any]]) -> Tuple[FieldCondition, ...]:
    """
    Convert a builder-style filter mapping into FieldConditions.

    - plain value: equality (None values are skipped)
    - list/tuple/set: membership
    - compiled regex: full match
    - mapping: ``{operator: value, ...}``, all combined with AND
    """
    conditions: List[FieldCondition] = []
    for name, spec in (filters or {}).items():
        if spec is None:
            continue
        if isinstance(spec, dict):
            for operator, value in spec.items():
                conditions.append(FieldCondition(name, operator, value))
        elif isinstance(spec, re.Pattern):
            conditions.append(FieldCondition(name, "regex", spec))
        elif isinstance(spec, (list, tuple, set, frozenset)):
            conditions.append(FieldCondition(name, "in", spec))
        else:
            conditions.append(FieldCondition(name, "equals", spec))
    return tuple(conditions)


def compile_conditions(
    conditions: Iterable[FieldCondition],
    alias: str,
    params: Dict[str, Any],
    prefix: str = "p",
) -> List[str]:
    """
    Render conditions as WHERE fragments, registering their parameters.

    Parameter names are ``<prefix><n>`` with ``n`` unique within ``params``.
    """
    clauses = []
    for condition in conditions:
        index = len(params)
        name = f"{prefix}{index}"
        while name in params:
            index += 1
            name = f"{prefix}{index}"
        params[name] = condition.param_value()
        clauses.append(condition.to_cypher(alias, name))
    return clauses


def matches_all(entity: Dict[str, Any], conditions: Iterable[FieldCondition]) -> bool:
    return all(condition.matches(entity) for condition in conditions)

"""
Output Schemas
==============

Schema-driven description of what an LLM must return per item (and,
optionally, once per batch as global metadata). The same schema renders
the format instructions and coerces decoded values to typed Python values.

Example:
    schema = normalize_schema({
        "summary": {"type": "string", "description": "One-line summary", "required": True},
        "complexity": {"type": "number", "minimum": 0, "maximum": 10},
        "tags": {"type": "array", "items": {"type": "string"}},
    })
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import structlog

log = structlog.get_logger()


class FieldType(str, Enum):
    """Supported output field types."""
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


@dataclass(frozen=True)
class OutputField:
    """
    Definition of one output field.

    Attributes:
        type: Value type
        description: Instruction shown to the LLM
        required: Decoding fails when a required field is missing
        enum: Allowed values (violations are logged, not rejected)
        items: Element definition for arrays
        properties: Member definitions for objects
        minimum: Lower clamp for numbers
        maximum: Upper clamp for numbers
        default: Value used when a non-required field is absent
    """
    type: FieldType = FieldType.STRING
    description: str = ""
    required: bool = False
    enum: Optional[Tuple[Any, ...]] = None
    items: Optional["OutputField"] = None
    properties: Optional[Dict[str, "OutputField"]] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    default: Any = None

    def __post_init__(self):
        object.__setattr__(self, "type", FieldType(self.type))
        if self.enum is not None:
            object.__setattr__(self, "enum", tuple(self.enum))
        if self.minimum is not None and self.maximum is not None and self.minimum > self.maximum:
            raise ValueError(f"minimum {self.minimum} greater than maximum {self.maximum}")

    def to_json_schema(self) -> Dict[str, Any]:
        """Render as a JSON Schema fragment."""
        schema: Dict[str, Any] = {"type": self.type.value}
        if self.description:
            schema["description"] = self.description
        if self.enum:
            schema["enum"] = list(self.enum)
        if self.items is not None:
            schema["items"] = self.items.to_json_schema()
        if self.properties:
            schema["properties"] = {k: v.to_json_schema() for k, v in self.properties.items()}
        if self.minimum is not None:
            schema["minimum"] = self.minimum
        if self.maximum is not None:
            schema["maximum"] = self.maximum
        return schema

    def hint(self) -> str:
        """Short placeholder used in format examples."""
        parts = [self.description or self.type.value]
        if self.enum:
            parts.append("one of: " + ", ".join(str(v) for v in self.enum))
        if self.minimum is not None or self.maximum is not None:
            parts.append(f"range {self.minimum}-{self.maximum}")
        parts.append("REQUIRED" if self.required else "optional")
        return f"{self.type.value}: " + "; ".join(parts)


OutputSchema = Dict[str, OutputField]


def _to_field(spec: Union[OutputField, Mapping[str, Any], str]) -> OutputField:
    if isinstance(spec, OutputField):
        return spec
    if isinstance(spec, str):
        return OutputField(type=FieldType(spec))
    data = dict(spec)
    if isinstance(data.get("items"), (Mapping, str)):
        data["items"] = _to_field(data["items"])
    if isinstance(data.get("properties"), Mapping):
        data["properties"] = {k: _to_field(v) for k, v in data["properties"].items()}
    return OutputField(**data)


def normalize_schema(schema: Optional[Mapping[str, Any]]) -> OutputSchema:
    """Accept OutputFields, mappings or bare type names and return OutputFields."""
    if not schema:
        return {}
    return {name: _to_field(spec) for name, spec in schema.items()}


def schema_to_json_schema(schema: OutputSchema) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {name: f.to_json_schema() for name, f in schema.items()},
        "required": [name for name, f in schema.items() if f.required],
    }


def _to_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        return raw != 0
    text = str(raw).strip().lower()
    if text in ("true", "1", "yes"):
        return True
    if text in ("false", "0", "no", ""):
        return False
    raise ValueError(f"not a boolean: {raw!r}")


def _to_number(raw: Any, spec: OutputField) -> float:
    if isinstance(raw, bool):
        raise ValueError(f"not a number: {raw!r}")
    value = float(str(raw).strip()) if isinstance(raw, str) else float(raw)
    if value != value or value in (float("inf"), float("-inf")):
        raise ValueError(f"not a finite number: {raw!r}")
    if spec.minimum is not None:
        value = max(spec.minimum, value)
    if spec.maximum is not None:
        value = min(spec.maximum, value)
    return value


def convert_value(raw: Any, spec: OutputField) -> Any:
    """
    Coerce a decoded raw value to the field type.

    Raises:
        ValueError: If the value cannot be converted
    """
    if spec.type == FieldType.STRING:
        if isinstance(raw, (dict, list)):
            value = json.dumps(raw, ensure_ascii=False)
        else:
            value = str(raw).strip()
    elif spec.type == FieldType.NUMBER:
        value = _to_number(raw, spec)
    elif spec.type == FieldType.INTEGER:
        value = int(round(_to_number(raw, spec)))
    elif spec.type == FieldType.BOOLEAN:
        value = _to_bool(raw)
    elif spec.type == FieldType.ARRAY:
        if isinstance(raw, str):
            text = raw.strip()
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError:
                parsed = [part.strip() for part in text.split(",") if part.strip()]
            raw = parsed if isinstance(parsed, list) else [parsed]
        elif isinstance(raw, dict):
            raw = list(raw.values())
        elif not isinstance(raw, (list, tuple)):
            raw = [raw]
        value = [convert_value(v, spec.items) if spec.items else v for v in raw]
    else:
        if isinstance(raw, str):
            raw = json.loads(raw)
        if not isinstance(raw, dict):
            raise ValueError(f"not an object: {raw!r}")
        value = dict(raw)
        for key, member in (spec.properties or {}).items():
            if key in value and value[key] is not None:
                value[key] = convert_value(value[key], member)

    if spec.enum and value not in spec.enum:
        log.warning(f"Value {value!r} not in enum {list(spec.enum)}")
    return value


def _lookup(raw: Mapping[str, Any], name: str) -> Tuple[bool, Any]:
    if name in raw:
        return True, raw[name]
    lowered = name.lower()
    for key, value in raw.items():
        if isinstance(key, str) and key.lower() == lowered:
            return True, value
    return False, None


def coerce_output(raw: Mapping[str, Any], schema: OutputSchema) -> Dict[str, Any]:
    """
    Map a decoded raw mapping onto the schema.

    Unknown keys are dropped; absent optional fields take their default
    (when one is declared).

    Raises:
        ValueError: On a missing required field or an unconvertible value
    """
    result: Dict[str, Any] = {}
    for name, spec in schema.items():
        found, value = _lookup(raw, name)
        if not found or value is None or (isinstance(value, str) and not value.strip() and spec.type != FieldType.STRING):
            if spec.required:
                raise ValueError(f"missing required field '{name}'")
            if spec.default is not None:
                result[name] = spec.default
            continue
        try:
            result[name] = convert_value(value, spec)
        except (TypeError, ValueError) as e:
            raise ValueError(f"field '{name}': {e}") from e
    return result

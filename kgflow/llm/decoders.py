"""
Response Decoders
=================

Tagged decoders turning raw LLM text into per-item mappings and optional
batch-level (global) metadata.

One decoder per format:

- ``XmlDecoder``:  ``<items><item id="..."><field>...</field></item></items>``
- ``JsonDecoder``: ``{"items": [{"id": "...", "field": ...}]}``
- ``YamlDecoder``: ``items:\\n  - id: ...``

``ResponseDecoder`` combines an item decoder with a global-metadata decoder.
When both use the same format, global fields live next to ``items`` in one
payload. When they differ ("mixed"), each decoder locates its own payload
as a separate substring of the response: the item payload first, then the
global payload in what remains.

Decoders return raw values; typing against the output schema happens in
``kgflow.llm.schema.coerce_output``.
"""

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import yaml
from bs4 import BeautifulSoup, Tag

from kgflow.exceptions import OutputDecodeError
from kgflow.llm.schema import FieldType, OutputField, OutputSchema

FORMATS = ("xml", "json", "yaml")

Span = Tuple[int, int]


def _fenced_span(text: str, languages: Tuple[str, ...]) -> Optional[Span]:
    """Span of the body of the first ```lang fenced block."""
    pattern = r"```(?:%s)[ \t]*\r?\n(.*?)```" % "|".join(languages)
    match = re.search(pattern, text, re.DOTALL | re.IGNORECASE)
    if match:
        return match.start(1), match.end(1)
    return None


def _remove_payload(text: str, span: Span) -> str:
    """Cut a located payload (and its fence markers, if any) out of ``text``."""
    start, end = span
    head = text[:start]
    opening = re.search(r"```[A-Za-z]*[ \t]*\r?\n$", head)
    if opening:
        closing = text.find("```", end)
        if closing >= 0:
            return head[:opening.start()] + "\n" + text[closing + 3:]
    return head + "\n" + text[end:]


class PayloadDecoder(ABC):
    """Decoder for one payload format."""

    format: str = ""

    @abstractmethod
    def locate(self, text: str, items_only: bool = False) -> Optional[Span]:
        """
        Return the span of this format's payload inside ``text``.

        ``items_only`` narrows the span to the item payload when the global
        metadata is encoded in another format.
        """

    @abstractmethod
    def parse(self, payload: str, schema: OutputSchema, global_schema: OutputSchema) -> Dict[str, Any]:
        """
        Parse a located payload.

        Returns:
            ``{"items": [raw mappings], "global": {raw global fields}}``
            where either part may be empty
        """

    @abstractmethod
    def item_instructions(self, schema: OutputSchema, global_schema: OutputSchema) -> str:
        """Format instructions for the per-item payload (and inline global fields)."""

    @abstractmethod
    def global_instructions(self, global_schema: OutputSchema) -> str:
        """Format instructions for a standalone global payload (mixed mode)."""

    def extract(self, text: str, items_only: bool = False) -> Tuple[str, Span]:
        span = self.locate(text, items_only)
        if span is None:
            raise OutputDecodeError(
                f"No {self.format.upper()} payload found in response",
                output_format=self.format,
                raw_response=text,
            )
        return text[span[0]:span[1]], span


class XmlDecoder(PayloadDecoder):
    """Structured-markup decoder (lxml through BeautifulSoup, recovering parser)."""

    format = "xml"

    def locate(self, text: str, items_only: bool = False) -> Optional[Span]:
        fenced = _fenced_span(text, ("xml",))
        if fenced is not None:
            return fenced
        if items_only:
            match = re.search(r"<items\b.*</items\s*>", text, re.DOTALL)
            return match.span() if match else None
        start = text.find("<")
        end = text.rfind(">")
        if start < 0 or end < start:
            return None
        return start, end + 1

    def _soup(self, payload: str) -> BeautifulSoup:
        body = re.sub(r"<\?xml[^>]*\?>", "", payload)
        return BeautifulSoup(f"<response>{body}</response>", "xml")

    def parse(self, payload: str, schema: OutputSchema, global_schema: OutputSchema) -> Dict[str, Any]:
        soup = self._soup(payload)
        root = soup.find("response")
        items: List[Dict[str, Any]] = []

        container = root.find("items", recursive=False) if root else None
        if container is not None:
            for item in container.find_all("item", recursive=False):
                entry: Dict[str, Any] = {}
                item_id = item.get("id") or item.get("uuid")
                if item_id is not None:
                    entry["id"] = item_id
                for child in item.find_all(recursive=False):
                    spec = _schema_field(schema, child.name)
                    if child.name == "id" and "id" not in entry:
                        entry["id"] = child.get_text().strip()
                    elif spec is not None:
                        entry[spec[0]] = _element_value(child, spec[1])
                items.append(entry)

        global_data: Dict[str, Any] = {}
        if root is not None:
            for child in root.find_all(recursive=False):
                spec = _schema_field(global_schema, child.name)
                if spec is not None and child.name != "items":
                    global_data[spec[0]] = _element_value(child, spec[1])

        if container is None and not global_data:
            raise OutputDecodeError(
                "XML response has neither <items> nor global fields",
                output_format=self.format,
                raw_response=payload,
            )
        return {"items": items, "global": global_data, "has_items": container is not None}

    def _field_lines(self, schema: OutputSchema, indent: str) -> List[str]:
        lines = []
        for name, spec in schema.items():
            if spec.type == FieldType.ARRAY:
                element = _singular(name)
                lines.append(f"{indent}<{name}>")
                lines.append(f"{indent}  <{element}>{spec.items.hint() if spec.items else 'value'}</{element}>")
                lines.append(f"{indent}  <!-- repeat <{element}> for each value -->")
                lines.append(f"{indent}</{name}>")
            elif spec.type == FieldType.OBJECT and spec.properties:
                lines.append(f"{indent}<{name}>")
                for key, member in spec.properties.items():
                    lines.append(f"{indent}  <{key}>{member.hint()}</{key}>")
                lines.append(f"{indent}</{name}>")
            else:
                lines.append(f"{indent}<{name}>{spec.hint()}</{name}>")
        return lines

    def item_instructions(self, schema: OutputSchema, global_schema: OutputSchema) -> str:
        lines = [
            "Respond with XML only, using exactly this structure:",
            "```xml",
            "<items>",
            '  <item id="ITEM_ID">',
            *self._field_lines(schema, "    "),
            "  </item>",
            "  <!-- one <item> per input item, id copied from the input -->",
            "</items>",
        ]
        if global_schema:
            lines.extend(self._field_lines(global_schema, ""))
        lines.append("```")
        lines.append("Escape &, < and > inside values.")
        return "\n".join(lines)

    def global_instructions(self, global_schema: OutputSchema) -> str:
        return "\n".join([
            "Then add the batch-level fields as XML:",
            "```xml",
            *self._field_lines(global_schema, ""),
            "```",
        ])


class JsonDecoder(PayloadDecoder):
    """JSON decoder (fenced ```json block or first top-level object/array)."""

    format = "json"

    def locate(self, text: str, items_only: bool = False) -> Optional[Span]:
        fenced = _fenced_span(text, ("json",))
        if fenced is not None:
            return fenced
        starts = [i for i in (text.find("{"), text.find("[")) if i >= 0]
        if not starts:
            return None
        start = min(starts)
        closing = "}" if text[start] == "{" else "]"
        end = text.rfind(closing)
        if end < start:
            return None
        return start, end + 1

    def _load(self, payload: str) -> Any:
        try:
            return json.loads(payload)
        except json.JSONDecodeError as e:
            raise OutputDecodeError(
                f"Invalid JSON in response: {e}",
                output_format=self.format,
                raw_response=payload,
            ) from e

    def parse(self, payload: str, schema: OutputSchema, global_schema: OutputSchema) -> Dict[str, Any]:
        return _parse_structured(self._load(payload), self.format, payload, global_schema)

    def item_instructions(self, schema: OutputSchema, global_schema: OutputSchema) -> str:
        item = {"id": "ITEM_ID"}
        item.update({name: _example(spec) for name, spec in schema.items()})
        document: Dict[str, Any] = {"items": [item]}
        if global_schema:
            document.update({name: _example(spec) for name, spec in global_schema.items()})
        return "\n".join([
            "Respond with JSON only, using exactly this structure "
            "(one entry in \"items\" per input item, id copied from the input):",
            "```json",
            json.dumps(document, indent=2, ensure_ascii=False),
            "```",
        ])

    def global_instructions(self, global_schema: OutputSchema) -> str:
        document = {name: _example(spec) for name, spec in global_schema.items()}
        return "\n".join([
            "Then add the batch-level fields as a separate JSON block:",
            "```json",
            json.dumps(document, indent=2, ensure_ascii=False),
            "```",
        ])


class YamlDecoder(PayloadDecoder):
    """YAML decoder (fenced ```yaml block or the whole response)."""

    format = "yaml"

    def locate(self, text: str, items_only: bool = False) -> Optional[Span]:
        fenced = _fenced_span(text, ("yaml", "yml"))
        if fenced is not None:
            return fenced
        stripped = text.strip()
        if not stripped:
            return None
        start = text.find(stripped)
        return start, start + len(stripped)

    def parse(self, payload: str, schema: OutputSchema, global_schema: OutputSchema) -> Dict[str, Any]:
        try:
            data = yaml.safe_load(payload)
        except yaml.YAMLError as e:
            raise OutputDecodeError(
                f"Invalid YAML in response: {e}",
                output_format=self.format,
                raw_response=payload,
            ) from e
        return _parse_structured(data, self.format, payload, global_schema)

    def item_instructions(self, schema: OutputSchema, global_schema: OutputSchema) -> str:
        item = {"id": "ITEM_ID"}
        item.update({name: _example(spec) for name, spec in schema.items()})
        document: Dict[str, Any] = {"items": [item]}
        if global_schema:
            document.update({name: _example(spec) for name, spec in global_schema.items()})
        return "\n".join([
            "Respond with YAML only, using exactly this structure "
            "(one entry under items per input item, id copied from the input):",
            "```yaml",
            yaml.safe_dump(document, sort_keys=False, allow_unicode=True).rstrip(),
            "```",
        ])

    def global_instructions(self, global_schema: OutputSchema) -> str:
        document = {name: _example(spec) for name, spec in global_schema.items()}
        return "\n".join([
            "Then add the batch-level fields as a separate YAML block:",
            "```yaml",
            yaml.safe_dump(document, sort_keys=False, allow_unicode=True).rstrip(),
            "```",
        ])


DECODERS = {
    "xml": XmlDecoder,
    "json": JsonDecoder,
    "yaml": YamlDecoder,
}


def get_decoder(output_format: str) -> PayloadDecoder:
    try:
        return DECODERS[output_format.lower()]()
    except KeyError:
        raise ValueError(f"Unknown output format '{output_format}', expected one of {FORMATS}")


@dataclass
class DecodedResponse:
    """Raw decoded items plus optional global metadata."""
    items: List[Dict[str, Any]] = field(default_factory=list)
    global_metadata: Optional[Dict[str, Any]] = None


class ResponseDecoder:
    """
    Decoder for one structured LLM call.

    Args:
        output_format: Format of the per-item payload
        global_format: Format of the global-metadata payload
                       (default: same as output_format)
    """

    def __init__(self, output_format: str = "xml", global_format: Optional[str] = None):
        self.items_decoder = get_decoder(output_format)
        self.global_decoder = get_decoder(global_format or output_format)

    @property
    def is_mixed(self) -> bool:
        return self.items_decoder.format != self.global_decoder.format

    @property
    def label(self) -> str:
        if self.is_mixed:
            return f"mixed({self.items_decoder.format}+{self.global_decoder.format})"
        return self.items_decoder.format

    def instructions(self, schema: OutputSchema, global_schema: Optional[OutputSchema] = None) -> str:
        global_schema = global_schema or {}
        if global_schema and self.is_mixed:
            return "\n\n".join([
                self.items_decoder.item_instructions(schema, {}),
                self.global_decoder.global_instructions(global_schema),
            ])
        return self.items_decoder.item_instructions(schema, global_schema)

    def decode(
        self,
        text: str,
        schema: OutputSchema,
        global_schema: Optional[OutputSchema] = None,
    ) -> DecodedResponse:
        """
        Decode a raw response.

        Raises:
            OutputDecodeError: If a payload is missing or unparseable
        """
        global_schema = global_schema or {}
        if not text or not text.strip():
            raise OutputDecodeError("Empty response", output_format=self.label)

        payload, span = self.items_decoder.extract(text, items_only=self.is_mixed)
        parsed = self.items_decoder.parse(payload, schema, {} if self.is_mixed else global_schema)
        if not parsed.get("has_items"):
            raise OutputDecodeError(
                "Response has no items payload",
                output_format=self.items_decoder.format,
                raw_response=text,
            )

        global_metadata = None
        if global_schema:
            if self.is_mixed:
                remainder = _remove_payload(text, span)
                global_payload, _ = self.global_decoder.extract(remainder)
                global_metadata = self.global_decoder.parse(global_payload, {}, global_schema)["global"]
            else:
                global_metadata = parsed["global"]

        return DecodedResponse(items=parsed["items"], global_metadata=global_metadata)


def _parse_structured(data: Any, output_format: str, payload: str, global_schema: OutputSchema) -> Dict[str, Any]:
    """Shared JSON/YAML handling: a bare list of items or a mapping with "items"."""
    if isinstance(data, list):
        return {"items": [_as_mapping(i, output_format, payload) for i in data], "global": {}, "has_items": True}
    if not isinstance(data, dict):
        raise OutputDecodeError(
            f"Expected a mapping or list, got {type(data).__name__}",
            output_format=output_format,
            raw_response=payload,
        )
    raw_items = data.get("items")
    has_items = isinstance(raw_items, list)
    items = [_as_mapping(i, output_format, payload) for i in raw_items] if has_items else []
    global_data = {}
    for name in global_schema:
        for key, value in data.items():
            if isinstance(key, str) and key.lower() == name.lower():
                global_data[name] = value
                break
    return {"items": items, "global": global_data, "has_items": has_items}


def _as_mapping(item: Any, output_format: str, payload: str) -> Dict[str, Any]:
    if not isinstance(item, dict):
        raise OutputDecodeError(
            f"Item is not a mapping: {item!r}",
            output_format=output_format,
            raw_response=payload,
        )
    entry = dict(item)
    if "id" not in entry and "uuid" in entry:
        entry["id"] = entry["uuid"]
    if entry.get("id") is not None:
        entry["id"] = str(entry["id"])
    return entry


def _schema_field(schema: OutputSchema, tag_name: str) -> Optional[Tuple[str, OutputField]]:
    if tag_name in schema:
        return tag_name, schema[tag_name]
    lowered = tag_name.lower()
    for name, spec in schema.items():
        if name.lower() == lowered:
            return name, spec
    return None


def _element_value(element: Tag, spec: OutputField) -> Any:
    children = element.find_all(recursive=False)
    if spec.type == FieldType.ARRAY:
        if children:
            return [_element_value(c, spec.items or OutputField()) for c in children]
        return element.get_text().strip()
    if spec.type == FieldType.OBJECT and children:
        properties = spec.properties or {}
        return {
            c.name: _element_value(c, properties.get(c.name, OutputField()))
            for c in children
        }
    return element.get_text().strip()


def _singular(name: str) -> str:
    if name.endswith("ies"):
        return name[:-3] + "y"
    if name.endswith("s") and len(name) > 1:
        return name[:-1]
    return f"{name}_item"


def _example(spec: OutputField) -> Any:
    if spec.type == FieldType.ARRAY:
        return [_example(spec.items) if spec.items else "value"]
    if spec.type == FieldType.OBJECT and spec.properties:
        return {k: _example(v) for k, v in spec.properties.items()}
    return f"<{spec.hint()}>"

"""
kgflow Test Configuration
=========================

Shared fixtures for all tests.

FakeGraph answers the Cypher that kgflow compiles (fetch, count,
relationship filter, expand, vector search) from an in-memory graph, so
fused and step-by-step executions run against the same data.
"""

import copy
import re
from typing import Any, Dict, List, Optional

import pytest
from unittest.mock import AsyncMock, MagicMock

from kgflow.config import PipelineSettings
from kgflow.models.conditions import CYPHER_OPERATORS, FieldCondition, matches_all
from kgflow.models.entity_context import ContextField, EntityContext
from kgflow.storage.vectors.search import VectorIndexConfig, VectorSearch

ITEM_ID = re.compile(r'\[id="([^"]+)"\]')

_CLAUSE = re.compile(
    r"^(\w+)\.(`(?:[^`]|``)+`|\w+) (=~|=|CONTAINS|STARTS WITH|ENDS WITH|>=|<=|>|<|IN) \$(\w+)$"
)
_CYPHER_TO_OPERATOR = {symbol: name for name, symbol in CYPHER_OPERATORS.items()}
_EXPAND_PATTERN = re.compile(
    r"OPTIONAL MATCH path = \(n\)(<?)-\[(?::`([^`]+)`)?\*1\.\.(\d+)\]-(>?)\(related(?::`([^`]+)`)?\)"
)


class FakeGraph:
    """
    In-memory graph speaking the subset of Cypher kgflow emits.

    Args:
        nodes: label -> list of property dicts (each with a "uuid")
        edges: (source uuid, relationship type, target uuid) triples
        similarities: uuid -> vector similarity returned by vector queries, or
            a callable mapping the query embedding to such a dict
    """

    def __init__(self, nodes, edges=(), similarities=None):
        self.nodes = copy.deepcopy(nodes)
        self.edges = list(edges)
        self.similarities = similarities or {}
        self.queries: List[tuple] = []
        self.fail_vector = False
        self._by_id: Dict[str, Dict[str, Any]] = {}
        self._labels: Dict[str, str] = {}
        for label, entries in self.nodes.items():
            for props in entries:
                self._by_id[props["uuid"]] = props
                self._labels[props["uuid"]] = label
        self._edge_set = set(self.edges)

    @property
    def round_trips(self) -> int:
        return len(self.queries)

    def _node(self, uuid: str) -> Dict[str, Any]:
        return {
            "properties": copy.deepcopy(self._by_id[uuid]),
            "labels": [self._labels[uuid]],
            "id": list(self._by_id).index(uuid),
        }

    def _of_label(self, label: str) -> List[str]:
        return [props["uuid"] for props in self.nodes.get(label, [])]

    def _conditions(self, where_line: str, alias: str, params: Dict[str, Any]) -> List[FieldCondition]:
        conditions = []
        for clause in where_line[len("WHERE "):].split(" AND "):
            match = _CLAUSE.match(clause.strip())
            if match and match.group(1) == alias:
                name = match.group(2)
                if name.startswith("`"):
                    name = name[1:-1].replace("``", "`")
                conditions.append(
                    FieldCondition(name, _CYPHER_TO_OPERATOR[match.group(3)], params[match.group(4)])
                )
        return conditions

    async def run(self, cypher: str, params: Optional[Dict[str, Any]] = None, timeout=None):
        params = dict(params or {})
        self.queries.append((cypher, params))
        lines = cypher.splitlines()
        if "db.idx.vector.queryNodes" in cypher:
            return self._vector(lines, params)
        if "OPTIONAL MATCH path" in cypher:
            return self._expand(lines, params)
        return self._match(lines, params)

    async def explain(self, cypher: str, params=None):
        return ["Results", "    Project", "        Node By Label Scan | (n:Function)"]

    def _match(self, lines: List[str], params: Dict[str, Any]):
        if lines[0].startswith("MATCH (target"):
            anchor_label = re.match(r"MATCH \(target:`([^`]+)`\)", lines[0]).group(1)
            anchor_field = re.match(r"WHERE target\.(\w+) = \$target_value", lines[1]).group(1)
            anchors = {
                uuid for uuid in self._of_label(anchor_label)
                if self._by_id[uuid].get(anchor_field) == params["target_value"]
            }
            outgoing = re.match(r"MATCH \(n:`([^`]+)`\)-\[:`([^`]+)`\]->\(target\)", lines[2])
            if outgoing:
                label, rel = outgoing.groups()
                candidates = [
                    u for u in self._of_label(label)
                    if any((u, rel, a) in self._edge_set for a in anchors)
                ]
            else:
                rel, label = re.match(
                    r"MATCH \(target\)-\[:`([^`]+)`\]->\(n:`([^`]+)`\)", lines[2]
                ).groups()
                candidates = [
                    u for u in self._of_label(label)
                    if any((a, rel, u) in self._edge_set for a in anchors)
                ]
            rest = lines[3:]
        else:
            label = re.match(r"MATCH \(n:`([^`]+)`\)", lines[0]).group(1)
            candidates = self._of_label(label)
            rest = lines[1:]

        for line in rest:
            if line.startswith("WHERE "):
                conditions = self._conditions(line, "n", params)
                candidates = [u for u in candidates if matches_all(self._by_id[u], conditions)]

        last = rest[-1]
        if last.startswith("RETURN count(n)"):
            return [{"count": len(candidates)}]
        if last.startswith("RETURN DISTINCT"):
            return [{"id": u} for u in candidates]
        return [{"n": self._node(u)} for u in candidates]

    def _paths(self, origin: str, rel: Optional[str], depth: int, direction: str):
        found = []

        def walk(current, used, first, hops):
            if hops == depth:
                return
            for i, (src, rel_type, dst) in enumerate(self.edges):
                if i in used or (rel and rel_type != rel):
                    continue
                if direction in ("outgoing", "both") and src == current:
                    nxt = dst
                elif direction in ("incoming", "both") and dst == current:
                    nxt = src
                else:
                    continue
                found.append((nxt, first or rel_type, hops + 1))
                walk(nxt, used | {i}, first or rel_type, hops + 1)

        walk(origin, frozenset(), None, 0)
        return found

    def _expand(self, lines: List[str], params: Dict[str, Any]):
        label = re.match(r"MATCH \(n:`([^`]+)`\)", lines[0]).group(1)
        conditions = self._conditions(lines[1], "n", params)
        origins = [u for u in self._of_label(label) if matches_all(self._by_id[u], conditions)]
        incoming, rel, depth, outgoing, target_label = _EXPAND_PATTERN.match(lines[2]).groups()
        direction = "incoming" if incoming else "outgoing" if outgoing else "both"

        rows = []
        for origin in origins:
            paths = [
                (node, first, hops)
                for node, first, hops in self._paths(origin, rel, int(depth), direction)
                if node != origin and (target_label is None or self._labels[node] == target_label)
            ]
            if not paths:
                rows.append({"source_id": origin, "related": None, "relationship_type": None, "depth": None})
            for node, first, hops in paths:
                rows.append({
                    "source_id": origin,
                    "related": self._node(node),
                    "relationship_type": first,
                    "depth": hops,
                })
        rows.sort(key=lambda r: (r["source_id"], r["depth"] or 0))
        return rows

    def _vector(self, lines: List[str], params: Dict[str, Any]):
        if self.fail_vector:
            raise ConnectionError("vector index unavailable")
        similarities = self.similarities
        if callable(similarities):
            similarities = similarities(params["embedding"])
        ranked = sorted(
            ((u, similarities[u]) for u in self._of_label(params["label"]) if u in similarities),
            key=lambda pair: (-pair[1], pair[0]),
        )[:params["candidates"]]
        where_line = next(line for line in lines if line.startswith("WHERE "))
        conditions = self._conditions(where_line, "node", params)
        rows = [
            (u, score) for u, score in ranked
            if score >= params["min_score"] and matches_all(self._by_id[u], conditions)
        ]
        return [{"node": self._node(u), "score": score} for u, score in rows[:params["top_k"]]]


class FakeEmbedder:
    """Deterministic 3-dimensional embedder recording its calls."""

    def __init__(self):
        self.calls = []

    async def embed(self, texts, is_query=False):
        self.calls.append((list(texts), is_query))
        return [[float(len(text)), float(i), 1.0] for i, text in enumerate(texts)]


class ScriptedLLM:
    """LLM provider answering every prompt through ``respond(prompt)``."""

    def __init__(self, respond):
        self.respond = respond
        self.prompts: List[str] = []

    async def generate_content(self, prompt: str) -> str:
        self.prompts.append(prompt)
        result = self.respond(prompt)
        if isinstance(result, BaseException):
            raise result
        return result


# Sample data

FUNCTIONS = [
    {"uuid": "f1", "name": "create_user", "language": "python", "loc": 40, "module": "users",
     "summary": "Creates a user account"},
    {"uuid": "f2", "name": "create_token", "language": "python", "loc": 15, "module": "auth"},
    {"uuid": "f3", "name": "refresh_token", "language": "python", "loc": 120, "module": "auth",
     "embeddings_dirty": True},
    {"uuid": "f4", "name": "validateToken", "language": "typescript", "loc": 30, "module": "auth"},
    {"uuid": "f5", "name": "delete_user", "language": "python", "loc": 8, "module": "users"},
    {"uuid": "f6", "name": "hash_password", "language": "go", "loc": 55, "module": "crypto"},
]

MODULES = [
    {"uuid": "m1", "name": "auth"},
    {"uuid": "m2", "name": "users"},
    {"uuid": "m3", "name": "crypto"},
]

EDGES = [
    ("f1", "CALLS", "f6"),
    ("f1", "CALLS", "f2"),
    ("f2", "CALLS", "f6"),
    ("f3", "CALLS", "f2"),
    ("f3", "CALLS", "f4"),
    ("f2", "DEFINED_IN", "m1"),
    ("f3", "DEFINED_IN", "m1"),
    ("f4", "DEFINED_IN", "m1"),
    ("f1", "DEFINED_IN", "m2"),
    ("f5", "DEFINED_IN", "m2"),
    ("f6", "DEFINED_IN", "m3"),
]

SIMILARITIES = {"f1": 0.42, "f2": 0.81, "f3": 0.93, "f4": 0.77, "f5": 0.2, "f6": 0.55}


@pytest.fixture
def settings():
    """Packaged defaults, independent of any local pipeline.yaml edits."""
    return PipelineSettings()


@pytest.fixture
def code_graph():
    """Small code graph: six functions, three modules."""
    return FakeGraph({"Function": FUNCTIONS, "Module": MODULES}, EDGES, SIMILARITIES)


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def code_search(code_graph, fake_embedder, settings):
    return VectorSearch(
        graph=code_graph,
        embedder=fake_embedder,
        indexes=[VectorIndexConfig("code", label="Function", attribute="embedding", dimension=3)],
        settings=settings,
    )


@pytest.fixture
def function_context():
    return EntityContext(
        entity_type="Function",
        fields=[
            ContextField("name", required=True),
            ContextField("module", required=True),
            ContextField("language", label="Language"),
            ContextField("summary", label="Summary", max_length=200),
            ContextField("embedding"),
        ],
    )


@pytest.fixture
def scripted_llm():
    """Factory: ScriptedLLM(respond)."""
    return ScriptedLLM


@pytest.fixture
def rerank_llm():
    """
    Factory of LLM judges answering every batch in XML.

    Args:
        scores: item id -> score (0-10); unknown ids get 0
    """
    def factory(scores: Dict[str, float], reasoning: str = "matches the question"):
        def respond(prompt: str) -> str:
            body = "".join(
                f'<item id="{item_id}"><score>{scores.get(item_id, 0)}</score>'
                f"<reasoning>{reasoning}</reasoning></item>"
                for item_id in ITEM_ID.findall(prompt)
            )
            return f"Here is my evaluation.\n```xml\n<items>{body}</items>\n```"
        return ScriptedLLM(respond)
    return factory


@pytest.fixture
def prompt_ids():
    """Extract the item ids shown in a prompt."""
    return ITEM_ID.findall


# Mock FalkorDB client for unit tests
@pytest.fixture
def mock_falkordb():
    """Mock FalkorDB client for unit tests."""
    client = MagicMock()
    client.connect = AsyncMock()
    client.close = AsyncMock()
    client.run = AsyncMock(return_value=[])
    client.explain = AsyncMock(return_value=[])
    return client


@pytest.fixture
def graph_factory():
    """Factory: FakeGraph(nodes, edges, similarities)."""
    return FakeGraph

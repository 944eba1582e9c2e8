"""
Test QueryBuilder
=================

End-to-end pipeline behaviour against the in-memory FakeGraph.
"""

import re

import pytest
from structlog.testing import capture_logs

from kgflow.exceptions import BatchExecutionError, ConfigurationError, LLMProviderError
from kgflow.llm.executor import StructuredCallConfig
from kgflow.models.conditions import parse_conditions
from kgflow.models.entity_context import ComputedField, ContextField, EntityContext
from kgflow.query.builder import QueryBuilder
from kgflow.query.executor import PipelineContext, PipelineExecutor
from kgflow.query.operations import FetchOperation, FilterOperation
from kgflow.reranking.reranker import RerankOptions
from kgflow.storage.vectors.search import VectorIndexConfig, VectorSearch


@pytest.fixture
def make_builder(code_graph, code_search, function_context, settings):
    def factory(**kwargs):
        options = {
            "settings": settings,
            "vector_search": code_search,
            "entity_context": function_context,
        }
        options.update(kwargs)
        return QueryBuilder(code_graph, "Function", **options)
    return factory


def uuids(results):
    return [r.entity["uuid"] for r in results]


def snapshot(results):
    return [
        (
            r.entity["uuid"],
            round(r.score, 9),
            [(rel.entity["uuid"], rel.relationship_type, rel.depth) for rel in (r.context.related if r.context else [])],
        )
        for r in results
    ]


class TestBuilderConstruction:

    def test_operations_are_lazy(self, make_builder, code_graph):
        builder = make_builder().where(language="python").expand("CALLS")
        assert [op.type for op in builder.operations] == ["fetch", "expand"]
        assert code_graph.queries == []

    def test_consecutive_filters_merge_at_append_time(self, make_builder):
        builder = make_builder().semantic("token", "code").where(language="python").where(loc={"gt": 10})
        ops = builder.operations
        assert [op.type for op in ops] == ["semantic", "filter"]
        assert [c.field for c in ops[1].conditions] == ["language", "loc"]

    def test_relationship_filter_is_never_merged(self, make_builder):
        builder = (
            make_builder()
            .semantic("token", "code")
            .where(language="python")
            .where_related_by("DEFINED_IN", "auth", target_label="Module")
        )
        assert [op.type for op in builder.operations] == ["semantic", "filter", "filter"]

    def test_semantic_requires_registered_index(self, make_builder):
        with pytest.raises(ConfigurationError, match="Unknown vector index"):
            make_builder().semantic("token", "missing")

    def test_semantic_requires_vector_search(self, code_graph):
        with pytest.raises(ConfigurationError, match="requires a VectorSearch"):
            QueryBuilder(code_graph, "Function").semantic("token", "code")

    def test_generate_embeddings_requires_provider(self, make_builder):
        with pytest.raises(ConfigurationError):
            make_builder().generate_embeddings(["name"])

    def test_invalid_pagination(self, make_builder):
        with pytest.raises(ValueError, match="limit must be"):
            make_builder().limit(-1)
        with pytest.raises(ValueError, match="direction must be one of"):
            make_builder().order_by("loc", "up")


class TestFetchAndFilter:

    @pytest.mark.asyncio
    async def test_fetch_and_prefix_filter_fuse_into_one_query(self, code_graph, settings):
        executor = PipelineExecutor(PipelineContext(graph=code_graph, entity_type="Function", settings=settings))
        outcome = await executor.run(
            [FetchOperation(), FilterOperation(conditions=parse_conditions({"name": {"starts_with": "create"}}))],
            track_metadata=True,
        )

        assert code_graph.round_trips == 1
        cypher, params = code_graph.queries[0]
        assert "MATCH (n:`Function`)" in cypher
        assert "WHERE n.name STARTS WITH $p0" in cypher
        assert params == {"p0": "create"}

        assert uuids(outcome.results) == ["f1", "f2"]
        (fetch,) = outcome.metadata.operations
        assert fetch.optimized
        assert [m.type for m in fetch.merged_operations] == ["filter"]

    @pytest.mark.asyncio
    async def test_where_on_empty_pipeline_is_initial_fetch(self, make_builder, code_graph):
        results = await make_builder().where(language="python", loc={"gte": 15}).execute()
        assert uuids(results) == ["f1", "f2", "f3"]
        assert code_graph.round_trips == 1
        assert all(r.score == 1.0 and r.score_breakdown == {"filter": 1.0} for r in results)

    @pytest.mark.asyncio
    async def test_where_uuid_in(self, make_builder):
        results = await make_builder().where_uuid_in(["f4", "f2", "missing"]).execute()
        assert uuids(results) == ["f2", "f4"]

    @pytest.mark.asyncio
    async def test_where_uuid_in_empty_list_skips_store(self, make_builder, code_graph):
        assert await make_builder().where_uuid_in([]).execute() == []
        assert code_graph.round_trips == 0

    @pytest.mark.asyncio
    async def test_where_related_by_fetch(self, make_builder):
        results = await make_builder().where_related_by("DEFINED_IN", "users", target_label="Module").execute()
        assert uuids(results) == ["f1", "f5"]

    @pytest.mark.asyncio
    async def test_where_related_by_incoming(self, make_builder):
        results = await make_builder().where_related_by("CALLS", "create_token", direction="incoming").execute()
        assert uuids(results) == ["f6"]

    @pytest.mark.asyncio
    async def test_relationship_filter_after_fetch(self, make_builder, code_graph):
        results = await (
            make_builder()
            .where(language="python")
            .where_related_by("DEFINED_IN", "auth", target_label="Module")
            .execute()
        )
        assert uuids(results) == ["f2", "f3"]
        assert code_graph.round_trips == 2

    @pytest.mark.asyncio
    async def test_client_filter(self, make_builder):
        results = await make_builder().filter(lambda r: r.entity["loc"] > 50, "large").execute()
        assert uuids(results) == ["f3", "f6"]

    @pytest.mark.asyncio
    async def test_regex_is_full_match(self, make_builder):
        results = await make_builder().where(name=re.compile("create")).execute()
        assert results == []
        results = await make_builder().where(name=re.compile("create_.*")).execute()
        assert uuids(results) == ["f1", "f2"]

    @pytest.mark.asyncio
    async def test_empty_result_is_not_an_error(self, make_builder):
        assert await make_builder().where(language="cobol").expand("CALLS").execute() == []


class TestExpand:

    @pytest.mark.asyncio
    async def test_related_grouped_by_origin(self, make_builder):
        results = await make_builder().where(module="auth").expand("CALLS", depth=2).execute()
        assert snapshot(results) == [
            ("f2", 1.0, [("f6", "CALLS", 1)]),
            ("f3", 1.0, [("f2", "CALLS", 1), ("f4", "CALLS", 1), ("f6", "CALLS", 2)]),
            ("f4", 1.0, []),
        ]

    @pytest.mark.asyncio
    async def test_neighbour_kept_at_shallowest_depth(self, make_builder):
        (result,) = await make_builder().where_uuid_in(["f1"]).expand("CALLS", depth=2).execute()
        assert [(r.entity["uuid"], r.depth) for r in result.context.related] == [("f6", 1), ("f2", 1)]

    @pytest.mark.asyncio
    async def test_expand_target_label(self, make_builder):
        (result,) = await make_builder().where_uuid_in(["f3"]).expand(direction="outgoing", target_label="Module").execute()
        assert [(r.entity["name"], r.relationship_type) for r in result.context.related] == [("auth", "DEFINED_IN")]

    @pytest.mark.asyncio
    async def test_expand_does_not_rescore(self, make_builder):
        results = await make_builder().semantic("token", "code").expand("CALLS").execute()
        assert all(r.score_breakdown.keys() == {"semantic"} for r in results)


class TestFusionEquivalence:
    """Fused and forced step-by-step execution return the same results."""

    PIPELINES = [
        lambda b: b.where(language="python").where(loc={"gte": 15}),
        lambda b: b.where_uuid_in(["f1", "f2", "f3", "f6"]).where(name={"regex": ".*_token"}),
        lambda b: b.where(module="auth").expand("CALLS", depth=2).where(language="python"),
        lambda b: b.expand("CALLS").where(name={"contains": "user"}),
        lambda b: b.where(language="python").expand("CALLS", direction="both").where(loc={"lt": 100}).where(module=["users", "auth"]),
        lambda b: b.where_related_by("DEFINED_IN", "auth", target_label="Module").where(language="python").expand("DEFINED_IN"),
        lambda b: b.where(loc={"gt": 10}).expand("CALLS", direction="incoming", depth=3).where(name={"ends_with": "token"}).offset(1),
    ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("build", PIPELINES)
    async def test_fused_equals_unfused(self, make_builder, build):
        fused = await build(make_builder()).execute()
        unfused = await build(make_builder()).execute(optimize=False)
        assert snapshot(fused) == snapshot(unfused)

    @pytest.mark.asyncio
    async def test_fused_expand_filters_origins_in_store(self, make_builder, code_graph):
        await make_builder().where(module="auth").expand("CALLS").where(language="python").execute()
        assert code_graph.round_trips == 2
        expand_cypher, params = code_graph.queries[1]
        assert "WHERE n.uuid IN $ids AND n.language = $p1" in expand_cypher
        assert params["p1"] == "python"

    @pytest.mark.asyncio
    async def test_idempotent_execution(self, make_builder):
        builder = make_builder().semantic("token", "code").expand("CALLS", depth=2)
        first = await builder.execute()
        second = await builder.execute()
        assert snapshot(first) == snapshot(second)


class TestStoreIdentifiers:
    """Store-backed steps match on the raw id property, whatever the identity."""

    @pytest.fixture
    def int_graph(self, graph_factory):
        nodes = {"Function": [
            {"uuid": 1, "name": "parse", "language": "python"},
            {"uuid": 2, "name": "tokenize", "language": "python"},
            {"uuid": 3, "name": "scan", "language": "go"},
        ]}
        return graph_factory(nodes, [(1, "CALLS", 2), (2, "CALLS", 3)], {1: 0.9, 2: 0.5, 3: 0.7})

    @pytest.mark.asyncio
    async def test_integer_ids_expand(self, int_graph, settings):
        def build():
            return QueryBuilder(int_graph, "Function", settings=settings).expand("CALLS").where(language="python")

        fused = await build().execute()
        unfused = await build().execute(optimize=False)
        assert snapshot(fused) == [(1, 1.0, [(2, "CALLS", 1)]), (2, 1.0, [(3, "CALLS", 1)])]
        assert snapshot(unfused) == snapshot(fused)

    @pytest.mark.asyncio
    async def test_integer_ids_semantic(self, int_graph, fake_embedder, settings):
        search = VectorSearch(int_graph, fake_embedder, [VectorIndexConfig("code", label="Function")], settings)
        results = await (
            QueryBuilder(int_graph, "Function", settings=settings, vector_search=search)
            .where(language="python")
            .semantic("parser", "code")
            .execute()
        )
        assert uuids(results) == [1, 2]
        assert results[0].score == pytest.approx(0.3 + 0.7 * 0.9)

    @pytest.mark.asyncio
    async def test_custom_identity_expand(self, make_builder):
        builder = make_builder(identity=lambda entity: entity["name"])
        (result,) = await builder.where_uuid_in(["f1"]).expand("CALLS").execute()
        assert [r.entity["uuid"] for r in result.context.related] == ["f6", "f2"]

    @pytest.mark.asyncio
    async def test_custom_identity_relationship_filter(self, make_builder):
        builder = make_builder(identity=lambda entity: entity["name"])
        results = await (
            builder.where(language="python")
            .where_related_by("DEFINED_IN", "auth", target_label="Module")
            .execute()
        )
        assert uuids(results) == ["f2", "f3"]

    @pytest.mark.asyncio
    async def test_custom_identity_semantic(self, make_builder):
        builder = make_builder(identity=lambda entity: entity["name"])
        results = await builder.where(module="users").semantic("token", "code").execute()
        assert uuids(results) == ["f1", "f5"]


class TestSemantic:

    @pytest.mark.asyncio
    async def test_seeds_result_set(self, make_builder, fake_embedder):
        results = await make_builder().semantic("token", "code", top_k=3).execute()
        assert uuids(results) == ["f3", "f2", "f4"]
        assert results[0].score == pytest.approx(0.93)
        assert results[0].score_breakdown == {"semantic": pytest.approx(0.93)}
        assert fake_embedder.calls == [(["token"], True)]

    @pytest.mark.asyncio
    async def test_min_score(self, make_builder):
        results = await make_builder().semantic("token", "code", min_score=0.8).execute()
        assert uuids(results) == ["f3", "f2"]

    @pytest.mark.asyncio
    async def test_constrained_search_blends_scores(self, make_builder):
        results = await make_builder().where(module="users").semantic("token", "code").execute()
        assert uuids(results) == ["f1", "f5"]
        assert results[0].score == pytest.approx(0.3 * 1.0 + 0.7 * 0.42)
        assert results[0].score_breakdown == {
            "filter": 1.0,
            "semantic": pytest.approx(0.42),
            "previous": 1.0,
        }

    @pytest.mark.asyncio
    async def test_constrained_search_keeps_context(self, make_builder):
        (result,) = await make_builder().where_uuid_in(["f1"]).expand("CALLS").semantic("token", "code").execute()
        assert [r.entity["uuid"] for r in result.context.related] == ["f6", "f2"]

    @pytest.mark.asyncio
    async def test_seed_with_fused_filter(self, make_builder):
        outcome = await make_builder().semantic("token", "code", top_k=2).where(language="python").execute_with_metadata()
        assert uuids(outcome.results) == ["f3", "f2"]
        assert outcome.metadata.operations[0].optimized

    @pytest.mark.asyncio
    async def test_empty_results_are_reseeded(self, make_builder):
        results = await make_builder().where(module="nonexistent").semantic("token", "code", top_k=3).execute()
        assert uuids(results) == ["f3", "f2", "f4"]
        assert results[0].score_breakdown == {"semantic": pytest.approx(0.93)}

        results = await make_builder().filter(lambda r: False, "none").semantic("token", "code", top_k=2).execute()
        assert uuids(results) == ["f3", "f2"]

    @pytest.mark.asyncio
    async def test_relationship_filter_after_semantic_runs_separately(self, make_builder, code_graph):
        outcome = await (
            make_builder()
            .semantic("token", "code")
            .where_related_by("DEFINED_IN", "auth", target_label="Module")
            .execute_with_metadata()
        )
        semantic, relationship = outcome.metadata.operations
        assert (semantic.type, relationship.type) == ("semantic", "filter")
        assert semantic.merged_operations == [] and not semantic.optimized
        assert relationship.merged_operations == [] and not relationship.optimized
        assert (relationship.input_count, relationship.output_count) == (6, 3)
        assert uuids(outcome.results) == ["f3", "f2", "f4"]
        assert code_graph.round_trips == 2

    @pytest.mark.asyncio
    async def test_chained_semantic_converges_and_stays_bounded(
        self, code_graph, graph_factory, fake_embedder, function_context, settings
    ):
        first = {"f1": 0.9, "f2": 0.8, "f3": 0.7, "f4": 0.6, "f5": 0.5, "f6": 0.4}
        second = {"f1": 0.1, "f2": 0.2, "f3": 0.3, "f4": 0.4, "f5": 0.95, "f6": 1.0}
        # FakeEmbedder puts the query length first: "alpha" -> 5
        graph = graph_factory(
            code_graph.nodes,
            code_graph.edges,
            lambda embedding: first if embedding[0] == 5 else second,
        )
        search = VectorSearch(graph, fake_embedder, [VectorIndexConfig("code", label="Function")], settings)
        results = await (
            QueryBuilder(graph, "Function", settings=settings, vector_search=search)
            .semantic("alpha", "code")
            .semantic("beta search", "code")
            .execute()
        )

        assert uuids(results) == sorted(second, key=lambda k: -second[k])
        for result in results:
            uuid = result.entity["uuid"]
            assert 0.0 <= result.score <= 1.0
            assert result.score == pytest.approx(0.3 * first[uuid] + 0.7 * second[uuid])
            assert result.score_breakdown["previous"] == pytest.approx(first[uuid])
            assert result.score_breakdown["semantic"] == pytest.approx(second[uuid])

    @pytest.mark.asyncio
    async def test_failure_is_absorbed_and_flagged(self, make_builder, code_graph):
        code_graph.fail_vector = True
        outcome = await make_builder().where(module="auth").semantic("token", "code").execute_with_metadata()

        assert uuids(outcome.results) == ["f2", "f3", "f4"]
        assert all(r.score == 1.0 for r in outcome.results)
        assert outcome.metadata.degraded
        semantic = outcome.metadata.operations[1]
        assert semantic.degraded
        assert "vector index unavailable" in semantic.error

    @pytest.mark.asyncio
    async def test_metadata_override(self, make_builder):
        def override(results, meta):
            return {**meta, "hits": len(results)}

        outcome = await make_builder().semantic("token", "code", top_k=4, metadata_override=override).execute_with_metadata()
        details = outcome.metadata.operations[0].details
        assert details["hits"] == 4
        assert details["vector_index"] == "code"


class TestRerank:

    @pytest.mark.asyncio
    async def test_rerank_merges_scores(self, make_builder, rerank_llm):
        llm = rerank_llm({"f3": 9, "f2": 6, "f4": 2})
        results = await (
            make_builder(llm_provider=llm)
            .where(module="auth")
            .llm_rerank("how are tokens refreshed?", RerankOptions(top_k=2))
            .execute()
        )

        assert uuids(results) == ["f3", "f2"]
        assert results[0].score == pytest.approx(0.3 + 0.7 * 0.9)
        assert results[1].score == pytest.approx(0.3 + 0.7 * 0.6)
        assert results[0].score_breakdown == {"filter": 1.0, "previous": 1.0, "llm": pytest.approx(0.9)}
        assert results[0].context.llm_reasoning == "matches the question"
        assert len(llm.prompts) == 1
        assert "how are tokens refreshed?" in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_semantic_then_rerank_keeps_top_k(self, graph_factory, fake_embedder, function_context, settings, rerank_llm):
        nodes = [{"uuid": f"e{i:02d}", "name": f"auth_handler_{i}", "module": "auth"} for i in range(50)]
        similarities = {n["uuid"]: round(0.99 - i * 0.015, 3) for i, n in enumerate(nodes)}
        llm_scores = {n["uuid"]: (i * 7) % 11 for i, n in enumerate(nodes)}
        graph = graph_factory({"Function": nodes}, [], similarities)
        search = VectorSearch(graph, fake_embedder, [VectorIndexConfig("code", label="Function")], settings)
        llm = rerank_llm(llm_scores)

        results = await (
            QueryBuilder(
                graph, "Function",
                settings=settings, vector_search=search,
                entity_context=function_context, llm_provider=llm,
            )
            .semantic("authentication", "code", top_k=50)
            .llm_rerank("how does auth work?", RerankOptions(top_k=10))
            .execute()
        )

        merged = {
            uuid: 0.3 * similarities[uuid] + 0.7 * (llm_scores[uuid] / 10)
            for uuid in similarities
        }
        expected = sorted(merged, key=lambda uuid: (-merged[uuid], uuid))[:10]
        assert len(results) == 10
        assert uuids(results) == expected
        assert [r.score for r in results] == sorted((r.score for r in results), reverse=True)
        assert all({"semantic", "llm"} <= r.score_breakdown.keys() for r in results)
        assert len(llm.prompts) == 3

    def test_rerank_without_entity_context_fails_on_append(self, code_graph, rerank_llm):
        llm = rerank_llm({})
        builder = QueryBuilder(code_graph, "Function", llm_provider=llm)
        with pytest.raises(ConfigurationError, match="EntityContext"):
            builder.llm_rerank("how does auth work?")
        assert llm.prompts == []
        assert code_graph.queries == []

    def test_rerank_without_provider(self, make_builder):
        with pytest.raises(ConfigurationError, match="LLM provider"):
            make_builder().llm_rerank("q")

    @pytest.mark.asyncio
    async def test_provider_failure_degrades(self, make_builder, scripted_llm):
        llm = scripted_llm(lambda prompt: RuntimeError("rate limited"))
        outcome = await (
            make_builder(llm_provider=llm)
            .where(module="auth")
            .llm_rerank("q")
            .execute_with_metadata()
        )
        assert uuids(outcome.results) == ["f2", "f3", "f4"]
        rerank = outcome.metadata.operations[1]
        assert rerank.degraded
        assert "rate limited" in rerank.error

    @pytest.mark.asyncio
    async def test_incomplete_response_degrades(self, make_builder, scripted_llm):
        llm = scripted_llm(
            lambda prompt: '<items><item id="f2"><score>8</score><reasoning>ok</reasoning></item></items>'
        )
        outcome = await make_builder(llm_provider=llm).where(module="auth").llm_rerank("q").execute_with_metadata()
        assert outcome.metadata.degraded
        assert all(r.score == 1.0 for r in outcome.results)

    @pytest.mark.asyncio
    async def test_options_provider_overrides_default(self, make_builder, rerank_llm):
        default, override = rerank_llm({}), rerank_llm({"f2": 10})
        await (
            make_builder(llm_provider=default)
            .where(module="auth")
            .llm_rerank("q", RerankOptions(provider=override))
            .execute()
        )
        assert default.prompts == []
        assert len(override.prompts) == 1


class TestStructured:

    @staticmethod
    def summaries(prompt_ids):
        def respond(prompt):
            body = "".join(
                f'<item id="{i}"><name_summary>Summary of item {i}</name_summary></item>'
                for i in prompt_ids(prompt)
            )
            return f"<items>{body}</items>"
        return respond

    @pytest.mark.asyncio
    async def test_with_summaries(self, make_builder, scripted_llm, prompt_ids):
        llm = scripted_llm(self.summaries(prompt_ids))
        results = await make_builder(llm_provider=llm).where(module="auth").with_summaries(["name", "module"], ["name"]).execute()

        assert [r.entity["name_summary"] for r in results] == [
            "Summary of item 1", "Summary of item 2", "Summary of item 3",
        ]
        assert results[0].entity["name"] == "create_token"
        assert "## Items to Analyze (3 total)" in llm.prompts[0]
        assert "module: auth" in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_global_metadata_in_details(self, make_builder, scripted_llm, prompt_ids):
        def respond(prompt):
            body = "".join(f'<item id="{i}"><category>auth</category></item>' for i in prompt_ids(prompt))
            return f"<items>{body}</items>\n<theme>token lifecycle</theme>"

        config = StructuredCallConfig(
            output_schema={"category": {"type": "string", "required": True}},
            global_schema={"theme": "string"},
            input_fields=["name"],
        )
        outcome = await (
            make_builder(llm_provider=scripted_llm(respond))
            .where(module="auth")
            .llm_generate_structured(config)
            .execute_with_metadata()
        )
        assert all(r.entity["category"] == "auth" for r in outcome.results)
        assert outcome.metadata.operations[1].details["global_metadata"] == {"theme": "token lifecycle"}

    @pytest.mark.asyncio
    async def test_provider_failure_is_hard(self, make_builder, scripted_llm):
        llm = scripted_llm(lambda prompt: RuntimeError("quota exceeded"))
        builder = make_builder(llm_provider=llm).where(module="auth").with_summaries(["name"], ["name"])
        with pytest.raises(LLMProviderError, match="quota exceeded"):
            await builder.execute()

    @pytest.mark.asyncio
    async def test_filter_after_structured_runs_in_memory(self, make_builder, scripted_llm, prompt_ids):
        def respond(prompt):
            body = "".join(
                f'<item id="{i}"><category>{"io" if i == "2" else "auth"}</category></item>'
                for i in prompt_ids(prompt)
            )
            return f"<items>{body}</items>"

        config = StructuredCallConfig(output_schema={"category": {"type": "string", "required": True}}, input_fields=["name"])
        results = await (
            make_builder(llm_provider=scripted_llm(respond))
            .where(module="auth")
            .llm_generate_structured(config)
            .expand("CALLS")
            .where(category="io")
            .execute()
        )
        assert uuids(results) == ["f3"]


class TestGenerateEmbeddings:

    @pytest.mark.asyncio
    async def test_writes_target_field(self, make_builder, fake_embedder):
        results = await (
            make_builder(embedder=fake_embedder)
            .where(module="auth")
            .generate_embeddings(["name", "module"], target_field="vec")
            .execute()
        )
        assert results[0].entity["vec"] == [float(len("create_token\nauth")), 0.0, 1.0]
        assert fake_embedder.calls[-1] == (
            ["create_token\nauth", "refresh_token\nauth", "validateToken\nauth"], False,
        )

    @pytest.mark.asyncio
    async def test_include_related(self, make_builder, fake_embedder):
        await (
            make_builder(embedder=fake_embedder)
            .where_uuid_in(["f1"])
            .expand("CALLS")
            .generate_embeddings(["name"], include_related=True)
            .execute()
        )
        assert fake_embedder.calls[-1][0] == ["create_user\nRelated: hash_password, create_token"]

    @pytest.mark.asyncio
    async def test_provider_failure_is_hard(self, make_builder):
        class BrokenEmbedder:
            async def embed(self, texts, is_query=False):
                raise RuntimeError("model not loaded")

        builder = make_builder(embedder=BrokenEmbedder()).where(module="auth").generate_embeddings(["name"])
        with pytest.raises(BatchExecutionError, match="model not loaded"):
            await builder.execute()


class TestOrderingAndPagination:

    @pytest.mark.asyncio
    async def test_ties_broken_by_identifier(self, make_builder):
        results = await make_builder().execute()
        assert uuids(results) == ["f1", "f2", "f3", "f4", "f5", "f6"]

    @pytest.mark.asyncio
    async def test_offset_and_limit(self, make_builder):
        results = await make_builder().where(language="python").offset(1).limit(2).execute()
        assert uuids(results) == ["f2", "f3"]

    @pytest.mark.asyncio
    async def test_default_limit(self, make_builder, settings):
        results = await make_builder(settings=settings.with_overrides(default_limit=2)).execute()
        assert len(results) == 2

    @pytest.mark.asyncio
    async def test_order_by_field(self, make_builder):
        results = await make_builder().where(language="python").order_by("loc", "desc").execute()
        assert uuids(results) == ["f3", "f1", "f2", "f5"]

    @pytest.mark.asyncio
    async def test_order_by_missing_values_last(self, make_builder):
        results = await make_builder().order_by("summary").execute()
        assert uuids(results) == ["f1", "f2", "f3", "f4", "f5", "f6"]
        results = await make_builder().order_by("loc").limit(2).execute()
        assert uuids(results) == ["f5", "f2"]

    @pytest.mark.asyncio
    async def test_execute_flat(self, make_builder):
        (entity,) = await make_builder().where(module="crypto").execute_flat()
        assert entity["name"] == "hash_password"


class TestStaleWarning:

    @pytest.mark.asyncio
    async def test_stale_results_are_reported(self, make_builder):
        with capture_logs() as logs:
            outcome = await make_builder().semantic("token", "code", top_k=3).execute_with_metadata()

        assert uuids(outcome.results) == ["f3", "f2", "f4"]
        assert outcome.metadata.stale_count == 1
        warnings = [e for e in logs if e["log_level"] == "warning"]
        assert len(warnings) == 1
        assert "stale embeddings" in warnings[0]["event"]
        assert "f3" in warnings[0]["event"]

    @pytest.mark.asyncio
    async def test_no_warning_without_stale_results(self, make_builder):
        with capture_logs() as logs:
            await make_builder().where(module="users").execute()
        assert not [e for e in logs if e["log_level"] == "warning"]


class TestCountAndExplain:

    @pytest.mark.asyncio
    async def test_count_single_query(self, make_builder, code_graph):
        assert await make_builder().where(language="python").where(loc={"gt": 10}).limit(1).count() == 3
        assert code_graph.round_trips == 1
        assert code_graph.queries[0][0].endswith("RETURN count(n) AS count")

    @pytest.mark.asyncio
    async def test_count_runs_pipeline_without_pagination(self, make_builder):
        builder = make_builder().where(module="auth").expand("CALLS").where(language="python").limit(1)
        assert await builder.count() == 2

    @pytest.mark.asyncio
    async def test_count_relationship_fetch(self, make_builder):
        assert await make_builder().where_related_by("DEFINED_IN", "auth", target_label="Module").count() == 3

    @pytest.mark.asyncio
    async def test_explain(self, make_builder, code_graph):
        plan = await (
            make_builder()
            .where(language="python")
            .where(name={"starts_with": "create"})
            .expand("CALLS")
            .explain(with_store_plan=True)
        )
        assert [s["type"] for s in plan.steps] == ["fetch", "expand"]
        fetch = plan.steps[0]
        assert len(fetch["merged"]) == 1
        assert "n.language = $p0 AND n.name STARTS WITH $p1" in fetch["cypher"]
        assert plan.round_trips == 2
        assert plan.store_plan and "Node By Label Scan" in plan.store_plan[-1]
        assert "fused filter" in str(plan)
        assert code_graph.queries == []

    @pytest.mark.asyncio
    async def test_explain_semantic_step(self, make_builder):
        plan = await make_builder().semantic("token", "code").where(language="python").explain()
        (step,) = plan.steps
        assert "db.idx.vector.queryNodes" in step["cypher"]
        assert "node.language = $f" in step["cypher"]

    @pytest.mark.asyncio
    async def test_implicit_fetch_is_reported(self, make_builder):
        plan = await make_builder().expand("CALLS").explain()
        assert plan.steps[0]["implicit"]


class TestVirtualFields:

    @pytest.mark.asyncio
    async def test_computed_field_filtered_in_memory(self, mock_falkordb, settings):
        context = EntityContext(
            "Function",
            fields=[ContextField("name", required=True)],
            computed_fields=[ComputedField("degree", "size((n)--())")],
        )
        mock_falkordb.run.return_value = [
            {"n": {"properties": {"uuid": "f1", "name": "create_user"}, "labels": ["Function"], "id": 0}, "degree": 3},
            {"n": {"properties": {"uuid": "f5", "name": "delete_user"}, "labels": ["Function"], "id": 4}, "degree": 1},
        ]
        results = await (
            QueryBuilder(mock_falkordb, "Function", settings=settings, entity_context=context)
            .where(name={"ends_with": "user"})
            .where(degree={"gt": 2})
            .execute()
        )

        assert uuids(results) == ["f1"]
        assert results[0].entity["degree"] == 3
        mock_falkordb.run.assert_awaited_once()
        cypher = mock_falkordb.run.call_args[0][0]
        assert "size((n)--()) AS `degree`" in cypher
        assert "n.degree" not in cypher

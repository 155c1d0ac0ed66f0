from __future__ import annotations

from dataclasses import replace

import pytest

from sqla_relgraph import (
    ArrayService,
    Cardinality,
    CorrelatedJoin,
    Discriminator,
    EmptyJoin,
    GraphConfig,
    JoinKind,
    LoadedRelation,
    NodeMeta,
    PushDownJoin,
    SchemaRegistry,
    SemiJoin,
    ServiceRelation,
    UnsupportedJoinError,
    choose_strategy,
    group_rows,
    merge_rows,
)
from sqla_relgraph.strategies import LIFTED

from ..services import SpyService


@pytest.fixture
def scores() -> SpyService:
    return SpyService(rows=[{"user_id": 1, "score": 9}])


class TestCrossBackendJoin:
    def test_inner(self, scores: SpyService) -> None:
        users = LoadedRelation("users", rows=({"id": 1}, {"id": 2}))
        right = ServiceRelation("scores", scores)

        rows = users.join(right, {"id": "user_id"}).to_array()

        assert rows == [{"id": 1, "score": 9}]
        assert scores.calls == [{"user_id": (1, 2)}]

    def test_left(self, scores: SpyService) -> None:
        users = LoadedRelation("users", rows=({"id": 1}, {"id": 2}))
        right = ServiceRelation("scores", scores)

        rows = users.left_join(right, {"id": "user_id"}).to_array()

        assert rows == [{"id": 1, "score": 9}, {"id": 2, "score": None}]

    def test_left_keeps_parent_count(self) -> None:
        users = LoadedRelation("users", rows=({"id": 1}, {"id": 2}, {"id": 3}))
        duplicated = ServiceRelation(
            "scores", ArrayService([{"user_id": 1, "score": 9}, {"user_id": 1, "score": 7}])
        )

        inner = users.join(duplicated, {"id": "user_id"}).to_array()
        left = users.left_join(duplicated, {"id": "user_id"}).to_array()

        assert inner == [{"id": 1, "score": 9}]
        assert len(left) == 3

    def test_service_parent_is_preloaded(self, scores: SpyService) -> None:
        users = ServiceRelation("users", ArrayService([{"id": 1}, {"id": 2}]))

        rows = users.join(ServiceRelation("scores", scores), {"id": "user_id"}).to_array()

        assert rows == [{"id": 1, "score": 9}]
        assert scores.calls == [{"user_id": (1, 2)}]

    def test_without_preload(self, scores: SpyService) -> None:
        users = ServiceRelation("users", ArrayService([{"id": 1}, {"id": 2}]))
        graph = users.graph(GraphConfig(preload_cross_backend=False)).join(
            ServiceRelation("scores", scores), {"id": "user_id"}
        )

        assert graph.to_array() == [{"id": 1, "score": 9}]
        assert scores.calls == [{"user_id": (1, 2)}]

    def test_child_filter_on_join_column(self, scores: SpyService) -> None:
        users = LoadedRelation("users", rows=({"id": 1}, {"id": 2}))

        graph = users.join(ServiceRelation("scores", scores), {"id": "user_id"}).where(scores={"user_id": 2})

        assert graph.to_array() == []
        assert scores.calls == [{"user_id": (2,)}]

    def test_child_filter_on_join_column_without_preload(self, scores: SpyService) -> None:
        users = ServiceRelation("users", ArrayService([{"id": 1}, {"id": 2}]))
        graph = (
            users.graph(GraphConfig(preload_cross_backend=False))
            .join(ServiceRelation("scores", scores), {"id": "user_id"})
            .where(scores={"user_id": [2, 3]})
        )

        assert graph.to_array() == []
        assert scores.calls == [{"user_id": (2,)}]

    def test_filtered_child_relation_keeps_its_filter(self, scores: SpyService) -> None:
        users = LoadedRelation("users", rows=({"id": 1}, {"id": 2}))
        right = ServiceRelation("scores", scores).where(user_id=1)

        assert users.join(right, {"id": "user_id"}).to_array() == [{"id": 1, "score": 9}]
        assert scores.calls == [{"user_id": (1,)}]

    def test_many(self) -> None:
        users = LoadedRelation("users", rows=({"id": 1}, {"id": 2}))
        logins = ServiceRelation("logins", ArrayService([{"user_id": 1, "at": "a"}, {"user_id": 1, "at": "b"}]))

        rows = users.left_join(logins, {"id": "user_id"}, cardinality="many").to_array()

        assert rows == [
            {"id": 1, "logins": [{"user_id": 1, "at": "a"}, {"user_id": 1, "at": "b"}]},
            {"id": 2, "logins": []},
        ]


class TestEmptyParent:
    def test_loaded_parent_skips_fetch(self, scores: SpyService) -> None:
        users = LoadedRelation("users")
        right = ServiceRelation("scores", scores)

        assert users.join(right, {"id": "user_id"}).to_array() == []
        assert users.left_join(right, {"id": "user_id"}).to_array() == []
        assert scores.calls == []

    def test_service_parent_skips_fetch(self, scores: SpyService) -> None:
        users = ServiceRelation("users", ArrayService([]))

        assert users.join(ServiceRelation("scores", scores), {"id": "user_id"}).to_array() == []
        assert scores.calls == []

    def test_without_preload_skips_fetch(self, scores: SpyService) -> None:
        users = ServiceRelation("users", ArrayService([]))
        graph = users.graph(GraphConfig(preload_cross_backend=False)).join(
            ServiceRelation("scores", scores), {"id": "user_id"}
        )

        assert graph.to_array() == []
        assert scores.calls == []

    def test_null_keys_skip_fetch(self, scores: SpyService) -> None:
        users = LoadedRelation("users", rows=({"id": None},))

        rows = users.left_join(ServiceRelation("scores", scores), {"id": "user_id"}).to_array()

        assert rows == [{"id": None}]
        assert scores.calls == []


class TestGroupRows:
    def test_skips_null_keys(self) -> None:
        index = group_rows([{"k": 1}, {"k": None}, {"k": 1}], ["k"])

        assert dict(index) == {1: [{"k": 1}, {"k": 1}]}

    def test_composite(self) -> None:
        index = group_rows([{"a": 1, "b": 2}, {"a": 1, "b": None}], ["a", "b"])

        assert list(index) == [(1, 2)]


class TestMergeRows:
    def test_one_flat_merge_with_collisions(self) -> None:
        meta = NodeMeta("profile", (("id", "user_id"),), JoinKind.INNER, Cardinality.ONE)

        rows = merge_rows(
            [{"id": 1, "name": "alice"}],
            [{"id": 5, "user_id": 1, "name": "main"}],
            meta,
        )

        assert rows == [{"id": 1, "name": "alice", "profile_id": 5, "profile_name": "main"}]

    def test_one_uses_first_match(self) -> None:
        meta = NodeMeta("score", (("id", "user_id"),), JoinKind.INNER, Cardinality.ONE)

        rows = merge_rows([{"id": 1}], [{"user_id": 1, "v": 1}, {"user_id": 1, "v": 2}], meta)

        assert rows == [{"id": 1, "v": 1}]

    def test_left_one_unmatched_uses_known_columns(self) -> None:
        meta = NodeMeta("score", (("id", "user_id"),), JoinKind.LEFT, Cardinality.ONE)

        rows = merge_rows([{"id": 1}], [], meta, child_columns=["user_id", "v"])

        assert rows == [{"id": 1, "v": None}]

    def test_left_one_unmatched_keeps_matched_column_order(self) -> None:
        meta = NodeMeta("score", (("id", "user_id"),), JoinKind.LEFT, Cardinality.ONE)

        rows = merge_rows(
            [{"id": 1}, {"id": 2}],
            [{"user_id": 1, "v": 1, "a": 2}],
            meta,
            child_columns=("a", "user_id", "v"),
        )

        assert rows == [{"id": 1, "v": 1, "a": 2}, {"id": 2, "v": None, "a": None}]
        assert list(rows[1]) == list(rows[0]) == ["id", "v", "a"]

    def test_many_attaches_lists(self) -> None:
        meta = NodeMeta("posts", (("id", "author_id"),), JoinKind.LEFT, Cardinality.MANY)
        posts = [{"id": 10, "author_id": 1}, {"id": 11, "author_id": 1}]

        rows = merge_rows([{"id": 1}, {"id": 2}], posts, meta)

        assert rows == [{"id": 1, "posts": posts}, {"id": 2, "posts": []}]

    def test_inner_drops_null_parent_keys(self) -> None:
        meta = NodeMeta("posts", (("id", "author_id"),), JoinKind.INNER, Cardinality.MANY)

        assert merge_rows([{"id": None}], [{"author_id": None}], meta) == []

    def test_composite_keys_match_exactly(self) -> None:
        meta = NodeMeta("x", (("a", "a"), ("b", "b")), JoinKind.INNER, Cardinality.MANY)
        child = [{"a": 1, "b": 2, "v": 1}, {"a": 1, "b": 3, "v": 2}]

        rows = merge_rows([{"a": 1, "b": 3}], child, meta)

        assert rows == [{"a": 1, "b": 3, "x": [{"a": 1, "b": 3, "v": 2}]}]

    def test_inputs_untouched(self) -> None:
        meta = NodeMeta("score", (("id", "user_id"),), JoinKind.INNER, Cardinality.ONE)
        parent = [{"id": 1}]
        child = [{"user_id": 1, "v": 1}]

        merge_rows(parent, child, meta)

        assert parent == [{"id": 1}]
        assert child == [{"user_id": 1, "v": 1}]

    def test_source_discriminator(self) -> None:
        meta = NodeMeta(
            "commentable",
            (("commentable_id", "id"),),
            JoinKind.LEFT,
            Cardinality.ONE,
            discriminator=Discriminator("commentable_type", "post", "source"),
        )
        comments = [
            {"id": 1, "commentable_type": "post", "commentable_id": 7},
            {"id": 2, "commentable_type": "company", "commentable_id": 7},
        ]

        rows = merge_rows(comments, [{"id": 7, "title": "hello"}], meta)

        assert [row["title"] for row in rows] == ["hello", None]

    def test_into_carrier_and_lift(self) -> None:
        inner = NodeMeta("employees", (("id", "department_id"),), JoinKind.INNER, Cardinality.MANY)
        carriers = merge_rows(
            [{"id": 10, "company_id": 1}, {"id": 11, "company_id": 1}],
            [{"id": 100, "department_id": 10}],
            inner,
            into_carrier=True,
        )
        assert carriers == [{"id": 10, "company_id": 1, LIFTED: [{"id": 100, "department_id": 10}]}]

        head = NodeMeta("employees", (("id", "company_id"),), JoinKind.INNER, Cardinality.MANY, collapsed=True)
        rows = merge_rows([{"id": 1}, {"id": 2}], carriers, head)

        assert rows == [{"id": 1, "employees": [{"id": 100, "department_id": 10}]}]


class TestChooseStrategy:
    def test_push_down(self, offline_registry: SchemaRegistry) -> None:
        graph = offline_registry.graph("employees").join("department")

        assert isinstance(choose_strategy(graph, graph.nodes[0]), PushDownJoin)

    def test_many_is_semi_join(self, offline_registry: SchemaRegistry) -> None:
        graph = offline_registry.graph("companies").join("departments")

        assert isinstance(choose_strategy(graph, graph.nodes[0]), SemiJoin)

    def test_through_is_semi_join(self, offline_registry: SchemaRegistry) -> None:
        graph = offline_registry.graph("employees").join("company")
        head = graph.nodes[0]

        assert isinstance(choose_strategy(graph, head), SemiJoin)
        assert isinstance(choose_strategy(head, head.nodes[0]), SemiJoin)

    def test_child_with_children_is_semi_join(self, offline_registry: SchemaRegistry) -> None:
        graph = offline_registry.graph("employees").joins(department="company")

        assert isinstance(choose_strategy(graph, graph.nodes[0]), SemiJoin)

    def test_source_discriminator_is_semi_join(self, offline_registry: SchemaRegistry) -> None:
        graph = offline_registry.graph("comments").join("commentable", target="posts")

        assert isinstance(choose_strategy(graph, graph.nodes[0]), SemiJoin)

    def test_native_joins_disabled(self, offline_registry: SchemaRegistry) -> None:
        graph = offline_registry.graph("employees").join("department")
        config = GraphConfig(native_joins=False)

        assert isinstance(choose_strategy(graph, graph.nodes[0], config), CorrelatedJoin)

    def test_cross_backend(self, offline_registry: SchemaRegistry) -> None:
        graph = offline_registry.graph("users").join(LoadedRelation("scores"), {"id": "user_id"})

        assert isinstance(choose_strategy(graph, graph.nodes[0]), CorrelatedJoin)

    def test_pruned(self, offline_registry: SchemaRegistry) -> None:
        graph = offline_registry.graph("employees").join("department")
        child = replace(graph.nodes[0], meta=replace(graph.nodes[0].meta, pruned=True))

        assert isinstance(choose_strategy(graph, child), EmptyJoin)

    def test_full_push_down(self, offline_registry: SchemaRegistry) -> None:
        graph = offline_registry.graph("employees").join("department", kind="full")

        assert isinstance(choose_strategy(graph, graph.nodes[0]), PushDownJoin)

    def test_right_is_unsupported(self, offline_registry: SchemaRegistry) -> None:
        graph = offline_registry.graph("employees").join("department", kind="right")

        with pytest.raises(UnsupportedJoinError, match="right"):
            choose_strategy(graph, graph.nodes[0])

    def test_full_correlated_is_unsupported(self) -> None:
        users = LoadedRelation("users", rows=({"id": 1},))
        graph = users.join(LoadedRelation("scores"), {"id": "user_id"}, kind="full")

        with pytest.raises(UnsupportedJoinError, match="CorrelatedJoin does not support full"):
            graph.to_array()

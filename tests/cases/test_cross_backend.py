from __future__ import annotations

from typing import Any

import pytest

from sqla_relgraph import ArrayService, GraphConfig, SchemaRegistry, ServiceRelation

from ..services import SpyService


@pytest.fixture
def scores() -> SpyService:
    return SpyService(rows=[{"user_id": 1, "score": 9}, {"user_id": 3, "score": 1}])


class TestSqlParentServiceChild:
    def test_left(self, registry: SchemaRegistry, seed_data: dict[str, list[Any]], scores: SpyService) -> None:
        rows = (
            registry.graph("users")
            .where(active=True)
            .left_join(ServiceRelation("scores", scores), {"id": "user_id"})
            .to_array()
        )

        assert rows == [
            {"id": 1, "name": "alice", "active": True, "score": 9},
            {"id": 2, "name": "bob", "active": True, "score": None},
        ]
        assert scores.calls == [{"user_id": (1, 2)}]

    def test_inner(self, registry: SchemaRegistry, seed_data: dict[str, list[Any]], scores: SpyService) -> None:
        rows = registry.graph("users").join(ServiceRelation("scores", scores), {"id": "user_id"}).pluck("name")

        assert rows == ["alice", "charlie"]

    def test_no_parent_rows_no_fetch(
        self, registry: SchemaRegistry, seed_data: dict[str, list[Any]], scores: SpyService
    ) -> None:
        graph = registry.graph("users").where(id=[]).join(ServiceRelation("scores", scores), {"id": "user_id"})

        assert graph.to_array() == []
        assert scores.calls == []

    def test_service_child_with_filter(
        self, registry: SchemaRegistry, seed_data: dict[str, list[Any]], scores: SpyService
    ) -> None:
        rows = (
            registry.graph("users")
            .join(ServiceRelation("scores", scores), {"id": "user_id"})
            .where(scores={"score": 1})
            .pluck("name")
        )

        assert rows == ["charlie"]
        assert scores.calls == [{"user_id": (1, 2, 3), "score": 1}]

    def test_service_child_filter_on_join_column(
        self, registry: SchemaRegistry, seed_data: dict[str, list[Any]], scores: SpyService
    ) -> None:
        rows = (
            registry.graph("users")
            .join(ServiceRelation("scores", scores), {"id": "user_id"})
            .where(scores={"user_id": 3})
            .pluck("name")
        )

        assert rows == ["charlie"]
        assert scores.calls == [{"user_id": (3,)}]

    def test_without_preload(
        self, registry: SchemaRegistry, seed_data: dict[str, list[Any]], scores: SpyService
    ) -> None:
        graph = registry.graph("users", config=GraphConfig(preload_cross_backend=False)).join(
            ServiceRelation("scores", scores), {"id": "user_id"}
        )

        assert graph.pluck("name") == ["alice", "charlie"]
        assert scores.calls == [{"user_id": (1, 2, 3)}]

    def test_sql_grandchild_under_preloaded_node(
        self, registry: SchemaRegistry, seed_data: dict[str, list[Any]], scores: SpyService
    ) -> None:
        rows = (
            registry.graph("users")
            .where(id=1)
            .join("posts")
            .join(ServiceRelation("scores", scores), {"id": "user_id"})
            .to_array()
        )

        assert len(rows) == 1
        assert rows[0]["score"] == 9
        assert [post["id"] for post in rows[0]["posts"]] == [1, 2]


class TestServiceParentSqlChild:
    def test_sql_child_is_narrowed(self, registry: SchemaRegistry, seed_data: dict[str, list[Any]]) -> None:
        logins = ServiceRelation("logins", ArrayService([{"user_id": 1, "at": "mon"}, {"user_id": 3, "at": "tue"}]))

        rows = logins.join(registry.relation("users"), {"user_id": "id"}, name="user").to_array()

        assert rows == [
            {"user_id": 1, "at": "mon", "name": "alice", "active": True},
            {"user_id": 3, "at": "tue", "name": "charlie", "active": False},
        ]

    def test_left_unmatched_keeps_column_order(
        self, registry: SchemaRegistry, seed_data: dict[str, list[Any]]
    ) -> None:
        logins = ServiceRelation("logins", ArrayService([{"user_id": 99}]))

        (row,) = logins.left_join(registry.relation("users"), {"user_id": "id"}, name="user").to_array()

        assert row == {"user_id": 99, "name": None, "active": None}
        assert list(row) == ["user_id", "name", "active"]

    def test_sql_child_with_own_joins(self, registry: SchemaRegistry, seed_data: dict[str, list[Any]]) -> None:
        logins = ServiceRelation("logins", ArrayService([{"user_id": 2}]))

        graph = logins.join(registry.relation("users"), {"user_id": "id"}, name="user", cardinality="many")
        graph = graph.node("user", lambda node: node.join("posts"))

        (row,) = graph.to_array()
        assert [user["name"] for user in row["user"]] == ["bob"]
        assert [post["title"] for post in row["user"][0]["posts"]] == ["Bob Post 1"]


class TestServiceCapabilities:
    def test_unsupported_operations_run_in_memory(self) -> None:
        service = ArrayService(
            [{"id": 3, "k": "a"}, {"id": 1, "k": "b"}, {"id": 2, "k": "a"}],
            supports=frozenset(),
        )
        relation = ServiceRelation("items", service).where(k="a").order("id").limit(1)

        assert relation.to_array() == [{"id": 2, "k": "a"}]

    def test_unknown_capability(self) -> None:
        with pytest.raises(ValueError, match="Unknown service capabilities"):
            ArrayService([], supports=frozenset({"join"}))

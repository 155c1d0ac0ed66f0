"""Basic sqla-relgraph usage examples.

Demonstrates registry setup, association traversal, graph joins,
nested conditions and cross-backend correlation.

NOTE: This file is illustrative, it won't run standalone
without seeded data.
"""

from __future__ import annotations

from typing import Any

import sqlalchemy as sa

from sqla_relgraph import (
    ArrayService,
    GraphConfig,
    SchemaRegistry,
    ServiceRelation,
    schemas_from_declarative,
)

from .models import Base


# ── 1. Build the registry once at startup ────────────────────────────

engine = sa.create_engine("sqlite:///:memory:")


def setup() -> SchemaRegistry:
    Base.metadata.create_all(engine)

    registry = schemas_from_declarative(Base, engine)
    companies = registry["companies"].has_many("employees", through="departments")

    return registry.with_schema(companies).validate()


# ── 2. Association traversal ─────────────────────────────────────────


def departments_of(registry: SchemaRegistry, company_id: int) -> list[dict[str, Any]]:
    return registry.relation("companies").where(id=company_id).association("departments").to_array()


def employees_of(registry: SchemaRegistry, company_id: int) -> list[str]:
    return registry.relation("companies").where(id=company_id).association("employees").call().pluck("name")


# ── 3. Graph joins ───────────────────────────────────────────────────


def employees_with_department(registry: SchemaRegistry) -> list[dict[str, Any]]:
    # one-to-one edges merge flat, colliding names get the association prefix
    return registry.graph("employees").join("department").to_array()


def companies_tree(registry: SchemaRegistry) -> list[dict[str, Any]]:
    return registry.graph("companies").left_joins(departments="employees").to_array()


# ── 4. Conditions on nested nodes ────────────────────────────────────


def companies_with_rnd(registry: SchemaRegistry) -> list[dict[str, Any]]:
    return (
        registry.graph("companies")
        .joins(departments="employees")
        .where(departments={"name": "rnd"})
        .to_array()
    )


# ── 5. Cross-backend joins ───────────────────────────────────────────


def employees_with_badges(registry: SchemaRegistry) -> list[dict[str, Any]]:
    badges = ServiceRelation(
        "badges",
        ArrayService([{"employee_id": 1, "badge": "gold"}]),
    )
    return registry.graph("employees").left_join(badges, {"id": "employee_id"}).to_array()


# ── 6. Forcing correlated joins ──────────────────────────────────────


def correlated_tree(registry: SchemaRegistry) -> str:
    graph = registry.graph("companies", config=GraphConfig(native_joins=False)).joins(
        departments="employees"
    )
    return graph.visualize()

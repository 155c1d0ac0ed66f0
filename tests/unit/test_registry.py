from __future__ import annotations

import logging

import pytest
import sqlalchemy as sa

from sqla_relgraph import (
    AssociationType,
    BelongsTo,
    BoundAssociation,
    ConfigurationError,
    HasMany,
    HasOne,
    LoadedRelation,
    RelationSchema,
    ResolutionError,
    SchemaRegistry,
    SqlRelation,
    UnknownAssociationError,
    schemas_from_declarative,
)

from ..models import Base


def _factory(context):
    raise AssertionError("factory should not be called")


class TestRelationSchema:
    def test_builders_return_new_schema(self) -> None:
        schema = RelationSchema("users", _factory, entity="user")
        extended = schema.has_many("posts")

        assert schema.associations == {}
        assert list(extended.associations) == ["posts"]

    def test_entity_drives_foreign_key(self) -> None:
        schema = RelationSchema("users", _factory, entity="user").has_many("posts")

        assert schema.get_association("posts").foreign_key == "user_id"

    def test_discriminator_defaults(self) -> None:
        assert RelationSchema("users", _factory).discriminator == "users"
        assert RelationSchema("users", _factory, entity="user").discriminator == "user"
        assert RelationSchema("users", _factory, entity="user", type_name="User").discriminator == "User"

    def test_duplicate_association(self) -> None:
        schema = RelationSchema("users", _factory).has_many("posts")

        with pytest.raises(ConfigurationError, match="already defined"):
            schema.has_one("posts")

    def test_duplicate_view(self) -> None:
        schema = RelationSchema("users", _factory).view("active", lambda r: r)

        with pytest.raises(ConfigurationError, match="already defined"):
            schema.view("active", lambda r: r)

    def test_unknown_association(self) -> None:
        with pytest.raises(UnknownAssociationError) as exc_info:
            RelationSchema("users", _factory).get_association("posts")

        assert exc_info.value.relation == "users"
        assert exc_info.value.name == "posts"


class TestSchemaRegistry:
    def test_duplicate_relation(self) -> None:
        with pytest.raises(ConfigurationError, match="registered twice"):
            SchemaRegistry.of(RelationSchema("users", _factory), RelationSchema("users", _factory))

    def test_unknown_relation(self, offline_registry: SchemaRegistry) -> None:
        with pytest.raises(ResolutionError, match="Unknown relation 'nope'"):
            offline_registry.relation("nope")

    def test_mapping_protocol(self, offline_registry: SchemaRegistry) -> None:
        assert "users" in offline_registry
        assert "nope" not in offline_registry
        assert offline_registry.get("nope") is None
        assert len(offline_registry) == len(list(offline_registry)) == 7

    def test_relation_binds_registry_and_context(self, offline_registry: SchemaRegistry) -> None:
        relation = offline_registry.relation("users", {"tenant": 1})

        assert isinstance(relation, SqlRelation)
        assert relation.registry is offline_registry
        assert relation.context == {"tenant": 1}

    def test_with_schema_is_new_registry(self, offline_registry: SchemaRegistry) -> None:
        extended = offline_registry.with_schema(RelationSchema("extra", _factory))

        assert "extra" in extended
        assert "extra" not in offline_registry

    def test_validate(self, offline_registry: SchemaRegistry) -> None:
        assert offline_registry.validate() is offline_registry

    def test_validate_unknown_target(self) -> None:
        registry = SchemaRegistry.of(RelationSchema("users", _factory).has_many("posts"))

        with pytest.raises(ResolutionError, match="unknown relation 'posts'"):
            registry.validate()

    def test_missing_view(self, offline_registry: SchemaRegistry) -> None:
        registry = offline_registry.with_schema(
            offline_registry["users"].has_many("old_posts", "posts", foreign_key="author_id", view="oldest")
        )

        with pytest.raises(ResolutionError, match="View 'oldest' not found"):
            registry.graph("users").join("old_posts")

    def test_view_and_condition_applied(self, offline_registry: SchemaRegistry) -> None:
        registry = offline_registry.with_schema(
            offline_registry["users"].has_many(
                "first_posts",
                "posts",
                foreign_key="author_id",
                view="newest",
                condition=lambda relation: relation.where(id=1),
            )
        )

        node = registry.graph("users").join("first_posts").fetch_node("first_posts")

        assert node.relation.ordering == (("id", True),)
        assert node.relation.filters == {"id": 1}

    def test_polymorphic_target_required(self, offline_registry: SchemaRegistry) -> None:
        with pytest.raises(ResolutionError, match="explicit target"):
            offline_registry.graph("comments").join("commentable")

    def test_bound_association_needs_registry(self, offline_registry: SchemaRegistry) -> None:
        bound = BoundAssociation(
            owner=LoadedRelation("companies"),
            definition=offline_registry.get_association("companies", "departments"),
        )

        with pytest.raises(ResolutionError, match="not attached to a schema registry"):
            bound.call()


class TestSchemasFromDeclarative:
    @pytest.fixture
    def reflected(self) -> SchemaRegistry:
        return schemas_from_declarative(Base, sa.create_engine("sqlite://"))

    def test_every_table(self, reflected: SchemaRegistry) -> None:
        assert set(reflected) == {
            "companies",
            "departments",
            "employees",
            "users",
            "profiles",
            "roles",
            "posts",
            "comments",
        }

    def test_many_to_one(self, reflected: SchemaRegistry) -> None:
        assoc = reflected.get_association("posts", "author")

        assert isinstance(assoc, BelongsTo)
        assert assoc.type is AssociationType.BELONGS_TO
        assert assoc.target == "users"
        assert (assoc.source_key, assoc.target_key) == ("author_id", "id")

    def test_one_to_many(self, reflected: SchemaRegistry) -> None:
        assoc = reflected.get_association("users", "posts")

        assert isinstance(assoc, HasMany)
        assert (assoc.source_key, assoc.target_key) == ("id", "author_id")

    def test_one_to_one(self, reflected: SchemaRegistry) -> None:
        assoc = reflected.get_association("users", "profile")

        assert isinstance(assoc, HasOne)
        assert assoc.target_key == "user_id"

    def test_type_name_is_class_name(self, reflected: SchemaRegistry) -> None:
        assert reflected["posts"].discriminator == "Post"

    def test_many_to_many_skipped(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="sqla_relgraph.registry"):
            reflected = schemas_from_declarative(Base, sa.create_engine("sqlite://"))

        with pytest.raises(UnknownAssociationError):
            reflected.get_association("users", "roles")

        assert "Skipping relationship users.roles" in caplog.text
        assert "Skipping relationship roles.users" in caplog.text

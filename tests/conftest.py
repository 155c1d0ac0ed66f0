from __future__ import annotations

import os
from collections.abc import Iterator
from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy import orm

from sqla_relgraph import SchemaRegistry, relgraph_cache_clear

from .models import (
    Base,
    Comment,
    Company,
    Department,
    Employee,
    Post,
    Profile,
    Role,
    User,
    build_registry,
    user_roles,
)


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["sqlite", "postgres"],
        help="Database backend to test against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def db_config(db_backend: str, tmp_path_factory: pytest.TempPathFactory) -> Iterator[str]:
    match db_backend:
        case "postgres":
            from testcontainers.postgres import PostgresContainer

            pg = PostgresContainer(image="postgres:latest")
            if os.name == "nt":
                pg.get_container_host_ip = lambda: "127.0.0.1"
            with pg:
                host = pg.get_container_host_ip()
                dsn = (
                    f"postgresql+psycopg://{pg.username}:{pg.password}"
                    f"@{host}:{pg.get_exposed_port(pg.port)}/{pg.dbname}"
                )
                yield dsn

        case "sqlite":
            tmp = tmp_path_factory.mktemp("db")
            yield f"sqlite:///{tmp}/test.db"


@pytest.fixture(scope="session")
def engine(db_config: str) -> Iterator[sa.Engine]:
    engine = sa.create_engine(db_config, echo=False)
    yield engine
    engine.dispose()


@pytest.fixture(scope="session")
def _create_tables(engine: sa.Engine) -> Iterator[None]:
    with engine.begin() as conn:
        Base.metadata.create_all(conn)
    yield
    with engine.begin() as conn:
        Base.metadata.drop_all(conn)


@pytest.fixture
def connection(engine: sa.Engine, _create_tables: None) -> Iterator[sa.Connection]:
    with engine.connect() as conn:
        trans = conn.begin()
        yield conn
        trans.rollback()


@pytest.fixture
def session(connection: sa.Connection) -> Iterator[orm.Session]:
    sess = orm.Session(bind=connection, expire_on_commit=False)
    yield sess
    sess.close()


@pytest.fixture
def registry(connection: sa.Connection) -> SchemaRegistry:
    return build_registry(connection)


@pytest.fixture(scope="session")
def offline_registry() -> SchemaRegistry:
    """Registry over an engine that is never connected; for structural tests."""
    return build_registry(sa.create_engine("sqlite://"))


@pytest.fixture
def seed_data(session: orm.Session) -> dict[str, list[Any]]:
    acme = Company(id=1, name="acme")
    globex = Company(id=2, name="globex")
    session.add_all([acme, globex])
    session.flush()

    rnd = Department(id=10, name="rnd", company_id=1)
    sales = Department(id=11, name="sales", company_id=1)
    ops = Department(id=12, name="ops", company_id=2)
    session.add_all([rnd, sales, ops])
    session.flush()

    ann = Employee(id=100, name="ann", department_id=10)
    ben = Employee(id=101, name="ben", department_id=12)
    session.add_all([ann, ben])
    session.flush()

    alice = User(id=1, name="alice", active=True)
    bob = User(id=2, name="bob", active=True)
    charlie = User(id=3, name="charlie", active=False)
    session.add_all([alice, bob, charlie])
    session.flush()

    profile_alice = Profile(id=1, bio="Alice bio", user_id=1)
    profile_bob = Profile(id=2, bio="Bob bio", user_id=2)
    session.add_all([profile_alice, profile_bob])
    session.flush()

    admin = Role(id=1, name="admin")
    session.add(admin)
    session.flush()
    session.execute(user_roles.insert().values([{"user_id": 1, "role_id": 1}]))

    post1 = Post(id=1, title="Alice Post 1", author_id=1)
    post2 = Post(id=2, title="Alice Post 2", author_id=1)
    post3 = Post(id=3, title="Bob Post 1", author_id=2)
    session.add_all([post1, post2, post3])
    session.flush()

    comment1 = Comment(id=1, text="Great post!", commentable_type="post", commentable_id=1)
    comment2 = Comment(id=2, text="Nice work", commentable_type="post", commentable_id=1)
    comment3 = Comment(id=3, text="Good company", commentable_type="company", commentable_id=1)
    comment4 = Comment(id=4, text="Meh", commentable_type="post", commentable_id=3)
    session.add_all([comment1, comment2, comment3, comment4])
    session.flush()

    session.expunge_all()

    return {
        "companies": [acme, globex],
        "departments": [rnd, sales, ops],
        "employees": [ann, ben],
        "users": [alice, bob, charlie],
        "profiles": [profile_alice, profile_bob],
        "posts": [post1, post2, post3],
        "comments": [comment1, comment2, comment3, comment4],
    }


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    relgraph_cache_clear()

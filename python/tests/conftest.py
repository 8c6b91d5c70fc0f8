"""Pytest configuration and fixtures for Shroud tests.

Test isolation strategy:
- Engine tests run against in-memory graphs and ``InMemoryRuleStore``
- SQL tests get a fresh in-memory SQLite database per test
- Route tests use TestClient with a prebuilt visibility service wired to
  the same SQLite database
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SHROUD_ENV", "test")

from collections.abc import Generator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from shroud.api.deps import get_db
from shroud.app import create_app
from shroud.config import clear_settings_cache
from shroud.db.engine import create_db_engine
from shroud.db.models import Base
from shroud.db.session import create_session_factory, transaction
from shroud.services.catalog import publish_catalog_snapshot
from shroud.services.rules import SqlRuleStore
from shroud.services.visibility.computer import ExclusionComputer
from shroud.services.visibility.query import VisibilityQueryService
from shroud.services.visibility.registry import GraphRegistry
from tests.factories import InMemoryRuleStore, seed_catalog


@pytest.fixture(autouse=True)
def _fresh_settings() -> Generator[None, None, None]:
    """Drop cached settings so monkeypatched env vars take effect."""
    clear_settings_cache()
    yield
    clear_settings_cache()


# =============================================================================
# Engine fixtures
# =============================================================================


@pytest.fixture
def registry() -> GraphRegistry:
    return GraphRegistry()


@pytest.fixture
def rule_store() -> InMemoryRuleStore:
    return InMemoryRuleStore()


@pytest.fixture
def sleeps() -> list[float]:
    """Records backoff delays instead of sleeping."""
    return []


@pytest.fixture
def computer(registry, rule_store, sleeps) -> ExclusionComputer:
    return ExclusionComputer(registry, rule_store, retry_delays=(0.1, 0.5), sleep=sleeps.append)


@pytest.fixture
def service(registry, rule_store, computer) -> Generator[VisibilityQueryService, None, None]:
    """Visibility service over the in-memory store with a short query wait."""
    svc = VisibilityQueryService(
        registry,
        rule_store,
        computer=computer,
        workers=2,
        query_wait_timeout_s=2.0,
    )
    yield svc
    rule_store.unblock()
    svc.close()


# =============================================================================
# SQL fixtures
# =============================================================================


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    """A private in-memory SQLite database with the full schema."""
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return create_session_factory(engine)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def sql_service(session_factory) -> Generator[VisibilityQueryService, None, None]:
    """Visibility service reading rules from the SQLite database."""
    svc = VisibilityQueryService(
        GraphRegistry(),
        SqlRuleStore(session_factory),
        workers=2,
        query_wait_timeout_s=5.0,
        retry_delays=(),
    )
    yield svc
    svc.close()


# =============================================================================
# App fixtures
# =============================================================================


@pytest.fixture
def app(sql_service, session_factory, db_session) -> FastAPI:
    """App over the SQLite database with the scenario catalog published as version 1."""
    with transaction(db_session):
        seed_catalog(db_session)
    publish_catalog_snapshot(db_session, sql_service.registry)

    app = create_app(visibility_service=sql_service)

    def override_get_db() -> Generator[Session, None, None]:
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return app


@pytest.fixture
def client(app: FastAPI) -> Generator[TestClient, None, None]:
    with TestClient(app) as client:
        yield client

"""
Pytest configuration and shared fixtures.
"""

import os

import pytest

from listkeeper.db.base import Base
from listkeeper.db.session import build_engine, build_session_maker

import support_models  # noqa: F401  (registers every test table on Base.metadata)


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests, no external deps")
    config.addinivalue_line("markers", "db: requires a PostgreSQL database (DATABASE_URL)")


def pytest_collection_modifyitems(config, items):
    run_db = os.environ.get("RUN_DB_TESTS") == "1"

    skip_db = pytest.mark.skip(reason="db tests skipped by default; set RUN_DB_TESTS=1 to enable")

    for item in items:
        if "db" in item.keywords and not run_db:
            item.add_marker(skip_db)


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database per test."""
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    maker = build_session_maker(engine)
    with maker() as session:
        yield session


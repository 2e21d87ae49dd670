import os

# Must be set before the app module builds its settings and engine.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["INGEST_ON_STARTUP"] = "false"

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from app import app, get_session
from db import create_db_engine, init_db
from sync_status import SyncStatus


@pytest.fixture
def engine():
    """
    A fresh in-memory database per test.
    """
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    """
    Session on the test DB, for direct DB operations in tests.
    """
    with Session(engine) as s:
        yield s


@pytest.fixture
def sync_status():
    return SyncStatus()


@pytest.fixture
def client(engine, sync_status):
    """
    A TestClient whose requests read from the test database.
    """
    def get_test_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides = {get_session: get_test_session}
    app.state.sync_status = sync_status
    with TestClient(app) as c:
        yield c
    app.dependency_overrides = {}

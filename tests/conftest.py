"""
Pytest configuration and fixtures for CityCircle Loops tests.

Provides test database isolation and common test utilities.
"""
import sys
import os
import pathlib

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from citycircle.core.clock import ManualClock
from citycircle.db import Base
from citycircle import models  # noqa: F401 (registers tables on Base)
from tests.helpers.checkin_helpers import T0, make_store

# Use in-memory SQLite for tests to ensure complete isolation
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite://")

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False  # Set to True for SQL debugging
)


# pysqlite starts transactions on its own, which breaks SAVEPOINT handling.
# Let SQLAlchemy emit BEGIN so services can commit and roll back inside a test.
@event.listens_for(test_engine, "connect")
def _sqlite_connect(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(test_engine, "begin")
def _sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN")


TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="session", autouse=True)
def setup_test_db():
    """Create and tear down the test schema once per test session."""
    Base.metadata.drop_all(bind=test_engine)
    Base.metadata.create_all(bind=test_engine)
    yield
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def db():
    """
    Provide a clean database session for each test.

    The session works inside SAVEPOINTs of an outer transaction that is rolled
    back after the test, so service code may commit and roll back freely and
    nothing leaks between tests.
    """
    connection = test_engine.connect()
    transaction = connection.begin()
    session = TestingSessionLocal(bind=connection, join_transaction_mode="create_savepoint")

    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture
def clock():
    """Manual clock starting at T0; advance it instead of sleeping."""
    return ManualClock(T0)


@pytest.fixture
def store(db):
    return make_store(db)


def override_get_db(db_session):
    """Dependency override for get_db that hands out the test session."""
    def _override():
        yield db_session
    return _override


@pytest.fixture(scope="function")
def client(db, clock):
    """
    FastAPI TestClient wired to the test database and the manual clock.

    The orchestrator dependency is replaced with one using SQL collaborators
    and the test clock; it is exposed as client.orchestrator.
    """
    from fastapi.testclient import TestClient
    from citycircle.main import app
    from citycircle.db import get_db
    from citycircle.services.checkin_orchestrator import CheckInOrchestrator, get_checkin_orchestrator
    from citycircle.services.collaborators import SqlBalanceLedger, SqlTransactionLog

    orchestrator = CheckInOrchestrator(
        balance=SqlBalanceLedger(clock=clock),
        transactions=SqlTransactionLog(),
        clock=clock,
    )
    app.dependency_overrides[get_db] = override_get_db(db)
    app.dependency_overrides[get_checkin_orchestrator] = lambda: orchestrator

    try:
        with TestClient(app, raise_server_exceptions=False) as test_client:
            test_client.orchestrator = orchestrator
            yield test_client
    finally:
        app.dependency_overrides.clear()

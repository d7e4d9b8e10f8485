"""Shared test fixtures.

Sets environment variables BEFORE any supportdesk imports so that
``supportdesk.config.settings`` and the Fernet key in
``supportdesk.models.mailbox`` resolve without a real .env file or PostgreSQL.
"""

import os

from cryptography.fernet import Fernet

# --- Environment setup (must happen before supportdesk imports) ------------
_test_key = Fernet.generate_key().decode()

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("GOOGLE_PUBSUB_TOPIC", "projects/test-project/topics/gmail-push")
os.environ.setdefault("GOOGLE_PUBSUB_CLAIM_EMAIL", "pubsub@test-project.iam.gserviceaccount.com")
os.environ.setdefault("ENCRYPTION_KEY", _test_key)
os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key")

# --- Now it's safe to import supportdesk modules ---------------------------
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from starlette.testclient import TestClient

from supportdesk.database import Base, get_db
from supportdesk.main import app
# Register every model with Base.metadata
import supportdesk.models.conversation  # noqa: F401
import supportdesk.models.conversation_event  # noqa: F401
import supportdesk.models.file  # noqa: F401
import supportdesk.models.job  # noqa: F401
import supportdesk.models.mailbox  # noqa: F401
import supportdesk.models.message  # noqa: F401
import supportdesk.models.user_profile  # noqa: F401


# In-memory SQLite engine shared across the test session
_engine = create_engine("sqlite://", connect_args={"check_same_thread": False})


# pysqlite needs these two hooks for SAVEPOINT to work
@event.listens_for(_engine, "connect")
def _do_connect(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(_engine, "begin")
def _do_begin(conn):
    conn.exec_driver_sql("BEGIN")


_TestingSession = sessionmaker(autocommit=False, autoflush=False)


@pytest.fixture(scope="session", autouse=True)
def _create_tables():
    """Create all tables once, drop them when the session ends."""
    Base.metadata.create_all(bind=_engine)
    yield
    Base.metadata.drop_all(bind=_engine)


@pytest.fixture()
def db_session():
    """Yield a session whose commits and rollbacks stay inside one outer
    transaction that is rolled back after each test."""
    connection = _engine.connect()
    transaction = connection.begin()
    session = _TestingSession(bind=connection, join_transaction_mode="create_savepoint")
    yield session
    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture(autouse=True)
def published():
    """Capture realtime publishes instead of talking to Redis."""
    with patch("supportdesk.services.realtime._get_client") as mock_get_client:
        yield mock_get_client.return_value.publish


@pytest.fixture()
def client(db_session):
    """FastAPI TestClient with ``get_db`` overridden to use the test session."""

    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()

# tests/conftest.py
"""Pytest Configuration & Shared Fixtures."""

import os
from datetime import datetime, timedelta, UTC

import pytest
from dotenv import load_dotenv
from sqlalchemy.orm import sessionmaker

load_dotenv()

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


# ===== ZEIT =====

@pytest.fixture
def now():
    """Fester Bezugszeitpunkt für deterministische Scores"""
    return NOW


# ===== DATABASE FIXTURES =====

@pytest.fixture(scope="session")
def test_database_url():
    """Test Database URL (uses SQLite by default, override with TEST_DATABASE_URL)."""
    return os.getenv("TEST_DATABASE_URL", "sqlite://")


@pytest.fixture(scope="session")
def test_engine(test_database_url):
    """SQLAlchemy engine mit Schema (init_db)."""
    from triage_engine.models import init_db

    engine, _ = init_db(test_database_url)
    yield engine
    engine.dispose()


@pytest.fixture
def connection(test_engine):
    """Connection mit äußerer Transaktion (wird nach jedem Test zurückgerollt)."""
    connection = test_engine.connect()
    transaction = connection.begin()
    yield connection
    transaction.rollback()
    connection.close()


@pytest.fixture
def session_factory(connection):
    """Session-Factory an die Test-Connection gebunden; commit() = SAVEPOINT release."""
    return sessionmaker(bind=connection, join_transaction_mode="create_savepoint")


@pytest.fixture
def session(session_factory):
    """Database session for tests (auto-rollback after each test)."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_email(session):
    """Legt E-Mails für Tests an"""
    from triage_engine.models import Email

    def _make_email(email_id, user_id="u1", **values):
        labels = values.pop("labels", [])
        values.setdefault("subject", "Hello")
        values.setdefault("from_email", "someone@example.com")
        values.setdefault("category", "MISC/Uncategorized")
        values.setdefault("received_at", (NOW - timedelta(hours=2)).replace(tzinfo=None))
        email = Email(id=email_id, user_id=user_id, **values)
        email.labels = labels
        session.add(email)
        session.flush()
        return email

    return _make_email


@pytest.fixture
def make_rule(session):
    """Legt Zuordnungsregeln für Tests an"""
    from triage_engine.models import ProjectAssignmentRuleRecord

    def _make_rule(project_id, conditions=None, user_id="u1", **values):
        actions = values.pop("actions", {"confidence": "high"})
        values.setdefault("name", f"Regel {project_id}")
        record = ProjectAssignmentRuleRecord(user_id=user_id, project_id=project_id, **values)
        record.conditions = conditions
        record.actions = actions
        session.add(record)
        session.flush()
        return record

    return _make_rule


# ===== CELERY FIXTURES =====

@pytest.fixture(scope="session")
def celery_config():
    """Celery configuration for testing."""
    return {
        "broker_url": "memory://",
        "result_backend": "cache+memory://",
        "task_always_eager": True,  # Execute tasks synchronously in tests
        "task_eager_propagates": True,  # Propagate exceptions
        "task_track_started": True,
        "result_expires": 3600,
    }


@pytest.fixture
def celery_app(celery_config):
    """Celery app instance for testing."""
    from triage_engine.celery_app import celery_app as app
    app.config_from_object(celery_config)
    yield app

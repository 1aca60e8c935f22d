"""
Pytest configuration and fixtures for Account Guard tests

This file ensures:
1. Clean database state for each test
2. Proper test isolation
3. Identity provider calls never leave the process
"""
import os

# Force test environment before any application module reads configuration
os.environ.setdefault("TESTING", "1")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from contextlib import contextmanager  # noqa: E402
from typing import Optional  # noqa: E402
from unittest.mock import patch  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from src.account_guard.models import audit_log, failure_event  # noqa: E402,F401
from src.account_guard.models.database import Account, Base  # noqa: E402
from src.account_guard.services import lock_events  # noqa: E402
from src.account_guard.services.ingestion_service import FailureIngestionService  # noqa: E402
from src.account_guard.services.lock_manager import LockManager  # noqa: E402
from src.account_guard.services.session_service import session_service  # noqa: E402
from src.api.dependencies import (  # noqa: E402
    get_db,
    get_ingestion_service,
    get_lock_manager,
    get_reconciliation_job,
)
from src.api.main import app  # noqa: E402
from tests.fakes import NOW, FakeGateway  # noqa: E402
from tests.test_utils_auth import create_test_headers  # noqa: E402


@pytest.fixture(scope="function")
def test_db_engine():
    """
    Create a fresh in-memory SQLite database for each test.
    This ensures complete isolation between tests.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_db_session(test_db_engine):
    """Create a database session for testing."""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)

    session = TestingSessionLocal()

    yield session

    session.close()


@pytest.fixture(scope="function")
def session_scope(test_db_session):
    """Stands in for get_session(), bound to the test session."""

    @contextmanager
    def _scope():
        yield test_db_session
        test_db_session.commit()

    return _scope


@pytest.fixture(autouse=True)
def isolate_lock_hook(session_scope):
    """
    Route the session-revocation subscriber to the test database and drop
    any subscriber a test registered.
    """
    with patch("src.account_guard.services.session_service.get_session", side_effect=session_scope):
        session_service.register()
        yield
    with lock_events._subscribers_lock:
        lock_events._subscribers.clear()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def lock_manager(gateway):
    return LockManager(gateway=gateway, propagation_timeout=1.0)


@pytest.fixture
def ingestion_service(lock_manager):
    return FailureIngestionService(lock_manager=lock_manager, clock=lambda: NOW)


@pytest.fixture
def make_account(test_db_session):
    """Factory for accounts in the test database."""

    def _make(subject: str, email: Optional[str] = None, provider_ref: Optional[str] = None, **kwargs):
        account = Account(subject=subject, email=email, provider_ref=provider_ref, **kwargs)
        test_db_session.add(account)
        test_db_session.commit()
        test_db_session.refresh(account)
        return account

    return _make


@pytest.fixture
def alice(make_account):
    return make_account("user-alice", email="alice@example.com", provider_ref="auth0|alice")


@pytest.fixture
def admin_account(make_account):
    return make_account("admin-root", email="root@example.com", is_admin=True)


@pytest.fixture
def admin_headers(admin_account, test_db_session):
    return create_test_headers(admin_account.subject, test_db_session)


@pytest.fixture
def client(test_db_session, lock_manager, ingestion_service):
    """
    FastAPI TestClient wired to the test database and fake gateway.
    The lifespan is not run, so no scheduler thread starts.
    """

    def override_get_db():
        yield test_db_session
        test_db_session.commit()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_lock_manager] = lambda: lock_manager
    app.dependency_overrides[get_ingestion_service] = lambda: ingestion_service
    app.dependency_overrides[get_reconciliation_job] = lambda: None

    yield TestClient(app)

    app.dependency_overrides.clear()

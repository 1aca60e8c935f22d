"""
API tests for the login-flow routes under /api/security.
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from src.account_guard.models.database import utcnow
from src.account_guard.models.failure_event import EventOrigin, FailureReason
from src.account_guard.services.event_store import event_store
from tests.fakes import NOW
from tests.test_utils_auth import create_test_headers


def _fail(client, identifier="alice@example.com", **extra):
    return client.post("/api/security/failed-login", json={"identifier": identifier, **extra})


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["status"] == "online"


def test_failed_login_counts_and_locks_on_third(client, alice, gateway):
    bodies = [_fail(client).json() for _ in range(3)]

    assert [b["locked"] for b in bodies] == [False, False, True]
    assert [b["attempts_remaining"] for b in bodies] == [2, 1, 0]
    assert bodies[2]["is_new_lock"]
    assert bodies[2]["subject"] == alice.subject
    assert gateway.calls == [("auth0|alice", True)]


def test_failed_login_uses_client_address_when_not_given(client, alice, test_db_session):
    _fail(client)

    (event,) = event_store.list_in_window(test_db_session, NOW - timedelta(hours=1), NOW)
    assert event.source_ip == "testclient"


def test_failed_login_accepts_reason(client, alice, test_db_session):
    response = _fail(client, reason="expired_token")

    assert response.status_code == 200
    (event,) = event_store.list_in_window(test_db_session, NOW - timedelta(hours=1), NOW)
    assert event.reason == FailureReason.EXPIRED_TOKEN


@pytest.mark.parametrize("payload", [{"identifier": ""}, {"identifier": "x", "reason": "bogus"}, {}])
def test_failed_login_validation(client, payload):
    assert client.post("/api/security/failed-login", json=payload).status_code == 422


def test_unknown_identifier_is_accepted_but_not_locked(client):
    body = _fail(client, identifier="ghost@example.com").json()

    assert body["resolved"] is False
    assert body["locked"] is False


def test_lock_status(client, alice):
    assert client.get(f"/api/security/lock-status/{alice.subject}").json()["locked"] is False

    for _ in range(3):
        _fail(client)

    assert client.get("/api/security/lock-status/alice@example.com").json()["locked"] is True


def test_ingest_key_enforced_when_configured(client, alice, monkeypatch):
    monkeypatch.setenv("INGEST_API_KEY", "s3cret")

    assert _fail(client).status_code == 401
    response = client.post(
        "/api/security/failed-login",
        json={"identifier": "alice@example.com"},
        headers={"X-Ingest-Key": "s3cret"},
    )
    assert response.status_code == 200


def test_ensure_account_creates_and_is_idempotent(client):
    payload = {"subject": "carol", "email": "Carol@Example.com", "provider_ref": "auth0|carol"}

    first = client.post("/api/security/accounts", json=payload)
    second = client.post("/api/security/accounts", json=payload)

    assert first.status_code == 200
    assert first.json()["email"] == "carol@example.com"
    assert first.json()["locked"] is False
    assert second.json()["subject"] == "carol"


def test_ensure_account_requires_an_identifier(client):
    assert client.post("/api/security/accounts", json={"display_name": "nobody"}).status_code == 422


def test_list_failures_requires_admin(client, alice, test_db_session):
    headers = create_test_headers(alice.subject, test_db_session)
    assert client.get("/api/security/failures").status_code == 401
    assert client.get("/api/security/failures", headers=headers).status_code == 403


def test_list_failures_for_admin(client, alice, admin_headers, test_db_session):
    recent = utcnow() - timedelta(hours=2)
    event_store.record(
        test_db_session, alice.subject, recent, FailureReason.INVALID_CREDENTIALS, EventOrigin.PROVIDER_SYNC
    )
    event_store.record(
        test_db_session, alice.subject, recent - timedelta(days=3), FailureReason.INVALID_CREDENTIALS, EventOrigin.LOCAL
    )
    test_db_session.commit()

    body = client.get("/api/security/failures", headers=admin_headers).json()

    assert body["total"] == 1
    assert body["events"][0]["subject"] == alice.subject
    assert body["events"][0]["origin"] == "provider_sync"

    wider = client.get("/api/security/failures?hours=168", headers=admin_headers).json()
    assert wider["total"] == 2


def test_list_failures_is_paged(client, alice, admin_headers, test_db_session):
    start = utcnow() - timedelta(hours=3)
    for minutes in (0, 10, 20):
        event_store.record(
            test_db_session,
            alice.subject,
            start + timedelta(minutes=minutes),
            FailureReason.INVALID_CREDENTIALS,
            EventOrigin.LOCAL,
        )
    test_db_session.commit()

    first = client.get("/api/security/failures?limit=2", headers=admin_headers).json()
    second = client.get("/api/security/failures?limit=2&offset=2", headers=admin_headers).json()

    assert first["total"] == 3
    assert (first["limit"], first["offset"]) == (2, 0)
    assert len(first["events"]) == 2
    assert len(second["events"]) == 1
    # Newest first across pages
    assert second["events"][0]["occurred_at"] < first["events"][1]["occurred_at"]


def test_list_failures_default_page_is_capped(client, alice, admin_headers, test_db_session):
    now = utcnow()
    for minutes in range(25):
        event_store.record(
            test_db_session,
            alice.subject,
            now - timedelta(minutes=minutes + 1),
            FailureReason.INVALID_CREDENTIALS,
            EventOrigin.LOCAL,
        )
    test_db_session.commit()

    body = client.get("/api/security/failures", headers=admin_headers).json()

    assert body["total"] == 25
    assert len(body["events"]) == 20
    assert client.get("/api/security/failures?limit=0", headers=admin_headers).status_code == 422


def test_ensure_account_conflict_is_409(client, make_account):
    make_account("s1")
    make_account("s2", email="x@example.com")

    response = client.post("/api/security/accounts", json={"subject": "s1", "email": "x@example.com"})

    assert response.status_code == 409
    assert "conflicts" in response.json()["detail"]


def test_storage_failure_during_report_is_503(client, alice, gateway, test_db_session, monkeypatch):
    def broken_flush(*args, **kwargs):
        raise OperationalError("INSERT INTO failure_events", {}, Exception("database is locked"))

    monkeypatch.setattr(test_db_session, "flush", broken_flush)

    response = _fail(client, alice.subject)

    assert response.status_code == 503
    assert response.json() == {"detail": "Storage unavailable"}
    assert gateway.calls == []


def test_token_without_session_is_rejected(client, admin_account):
    headers = create_test_headers(admin_account.subject)

    response = client.get("/api/security/failures", headers=headers)

    assert response.status_code == 401
    assert response.json()["detail"] == "Session expired or revoked"

"""
API tests for administrative lock management and manual reconciliation.
"""

from datetime import timedelta

from src.account_guard.models.audit_log import AuditLog
from src.account_guard.models.database import utcnow
from src.account_guard.models.failure_event import EventOrigin, FailureReason
from src.account_guard.services.account_registry import account_registry
from src.account_guard.services.event_store import event_store
from src.account_guard.services.reconciliation_service import ProviderReconciliationJob
from src.api import dependencies
from src.api.dependencies import get_reconciliation_job
from src.api.main import app
from tests.fakes import NOW, FakeIdentityProvider, minutes_ago, provider_entry
from tests.test_utils_auth import create_test_headers


def test_admin_routes_reject_missing_and_bad_tokens(client, alice):
    assert client.post(f"/api/admin/accounts/{alice.subject}/lock").status_code == 401
    assert (
        client.post(
            f"/api/admin/accounts/{alice.subject}/lock",
            headers={"Authorization": "Bearer not-a-jwt"},
        ).status_code
        == 401
    )


def test_expired_token_is_rejected(client, alice, admin_account):
    headers = create_test_headers(admin_account.subject, expires_delta=timedelta(minutes=-5))

    assert client.post(f"/api/admin/accounts/{alice.subject}/lock", headers=headers).status_code == 401


def test_non_admin_is_forbidden(client, alice, test_db_session):
    headers = create_test_headers(alice.subject, test_db_session)

    assert client.post(f"/api/admin/accounts/{alice.subject}/lock", headers=headers).status_code == 403


def test_locked_admin_is_refused(client, alice, admin_account, admin_headers, test_db_session):
    account_registry.set_locked(test_db_session, admin_account.subject, source="admin")
    test_db_session.commit()

    response = client.post(f"/api/admin/accounts/{alice.subject}/lock", headers=admin_headers)

    assert response.status_code == 403
    assert response.json()["detail"] == "Account is locked"


def test_admin_lock_is_idempotent_and_propagates_once(client, alice, admin_headers, gateway, test_db_session):
    first = client.post(f"/api/admin/accounts/{alice.subject}/lock", headers=admin_headers)
    second = client.post(f"/api/admin/accounts/{alice.subject}/lock", headers=admin_headers)

    assert first.json() == {"subject": alice.subject, "locked": True, "changed": True}
    assert second.json()["changed"] is False
    assert gateway.calls == [("auth0|alice", True)]

    audit = test_db_session.query(AuditLog).filter(AuditLog.event_type == "account_locked").one()
    assert audit.actor == "admin-root"


def test_admin_unlock_clears_lock_and_unblocks(client, alice, admin_headers, gateway, test_db_session):
    client.post(f"/api/admin/accounts/{alice.subject}/lock", headers=admin_headers)

    response = client.post(f"/api/admin/accounts/{alice.subject}/unlock", headers=admin_headers)

    assert response.status_code == 200
    assert response.json()["changed"] is True
    assert not account_registry.is_locked(test_db_session, alice.subject)
    assert gateway.calls == [("auth0|alice", True), ("auth0|alice", False)]


def test_unlock_of_unlocked_account_is_a_no_op(client, alice, admin_headers, gateway):
    response = client.post(f"/api/admin/accounts/{alice.subject}/unlock", headers=admin_headers)

    assert response.json()["changed"] is False
    assert gateway.calls == []


def test_unlock_does_not_reset_window(client, alice, admin_headers):
    for _ in range(3):
        client.post("/api/security/failed-login", json={"identifier": alice.subject})
    client.post(f"/api/admin/accounts/{alice.subject}/unlock", headers=admin_headers)

    body = client.post("/api/security/failed-login", json={"identifier": alice.subject}).json()

    assert body["failure_count"] == 4
    assert body["locked"] is True


def test_unknown_subject_is_404(client, admin_headers):
    assert client.post("/api/admin/accounts/nobody/lock", headers=admin_headers).status_code == 404
    assert client.post("/api/admin/accounts/nobody/unlock", headers=admin_headers).status_code == 404


def test_get_account(client, alice, admin_headers):
    body = client.get(f"/api/admin/accounts/{alice.subject}", headers=admin_headers).json()

    assert body["email"] == "alice@example.com"
    assert body["provider_ref"] == "auth0|alice"


def test_reconciliation_without_provider_is_409(client, admin_headers):
    assert client.post("/api/admin/reconciliation/run", headers=admin_headers).status_code == 409


def test_manual_reconciliation_run(client, alice, admin_headers, lock_manager, session_scope, gateway):
    provider = FakeIdentityProvider([provider_entry("alice@example.com", minutes_ago(m)) for m in (3, 2, 1)])
    job = ProviderReconciliationJob(provider, lock_manager=lock_manager, session_scope=session_scope, clock=lambda: NOW)
    app.dependency_overrides[get_reconciliation_job] = lambda: job

    body = client.post("/api/admin/reconciliation/run", headers=admin_headers).json()

    assert body["imported"] == 3
    assert body["locked_subjects"] == [alice.subject]
    assert gateway.calls == [("auth0|alice", True)]


def test_manual_reconciliation_fetch_failure_is_502(client, admin_headers, lock_manager, session_scope):
    job = ProviderReconciliationJob(
        FakeIdentityProvider(fail_fetch=True), lock_manager=lock_manager, session_scope=session_scope
    )
    app.dependency_overrides[get_reconciliation_job] = lambda: job

    assert client.post("/api/admin/reconciliation/run", headers=admin_headers).status_code == 502


def test_lock_revokes_admin_session_for_good(client, make_account, admin_headers, test_db_session):
    make_account("admin-two", is_admin=True)
    other_headers = create_test_headers("admin-two", test_db_session)
    assert client.get("/api/admin/accounts/admin-two", headers=other_headers).status_code == 200

    client.post("/api/admin/accounts/admin-two/lock", headers=admin_headers)
    client.post("/api/admin/accounts/admin-two/unlock", headers=admin_headers)

    response = client.get("/api/admin/accounts/admin-two", headers=other_headers)
    assert response.status_code == 401
    assert response.json()["detail"] == "Session expired or revoked"
    # A fresh login after the unlock works again
    fresh = create_test_headers("admin-two", test_db_session)
    assert client.get("/api/admin/accounts/admin-two", headers=fresh).status_code == 200


def test_provider_status_route(client, alice, admin_headers, gateway):
    client.post(f"/api/admin/accounts/{alice.subject}/lock", headers=admin_headers)

    body = client.get(f"/api/admin/accounts/{alice.subject}/provider-status", headers=admin_headers).json()

    assert body == {
        "subject": alice.subject,
        "provider_ref": "auth0|alice",
        "locked": True,
        "provider_blocked": True,
        "in_sync": True,
    }


def test_resync_route_resends_lock(client, alice, admin_headers, gateway, test_db_session):
    account_registry.set_locked(test_db_session, alice.subject, source="admin")
    test_db_session.commit()

    body = client.post(f"/api/admin/accounts/{alice.subject}/resync", headers=admin_headers).json()

    assert body["propagated"] is True
    assert body["locked"] is True
    assert gateway.calls == [("auth0|alice", True)]
    assert client.post("/api/admin/accounts/nobody/resync", headers=admin_headers).status_code == 404


def test_security_summary(client, alice, make_account, admin_headers, test_db_session):
    make_account("user-bob", email="bob@example.com")
    now = utcnow()
    for subject, hours_ago in [(alice.subject, 1), (alice.subject, 2), ("user-bob", 3), ("user-bob", 30)]:
        event = event_store.record(
            test_db_session,
            subject,
            now - timedelta(hours=hours_ago),
            FailureReason.INVALID_CREDENTIALS,
            EventOrigin.LOCAL,
        )
        event.flagged_at_insert = hours_ago == 1
    test_db_session.commit()
    client.post(f"/api/admin/accounts/{alice.subject}/lock", headers=admin_headers)

    body = client.get("/api/admin/security-summary", headers=admin_headers).json()

    assert body["failed_login_count"] == 3
    assert body["flagged_login_count"] == 1
    assert body["distinct_subjects"] == 2
    assert body["locked_account_count"] == 1
    assert body["unresolved_alert_count"] == 1
    assert body["recent_alerts"][0]["event_type"] == "account_locked"
    assert [e["subject"] for e in body["recent_failures"]] == [alice.subject, alice.subject, "user-bob"]

    wider = client.get("/api/admin/security-summary?hours=48", headers=admin_headers).json()
    assert wider["failed_login_count"] == 4


def test_audit_list_filters_and_pages(client, alice, admin_headers):
    client.post(f"/api/admin/accounts/{alice.subject}/lock", headers=admin_headers)
    client.post(f"/api/admin/accounts/{alice.subject}/unlock", headers=admin_headers)

    everything = client.get("/api/admin/audit", headers=admin_headers).json()
    critical = client.get("/api/admin/audit?severity=critical", headers=admin_headers).json()
    page = client.get("/api/admin/audit?limit=1&offset=1", headers=admin_headers).json()

    assert everything["total"] == 2
    # Newest first
    assert [e["event_type"] for e in everything["entries"]] == ["account_unlocked", "account_locked"]
    assert [e["event_type"] for e in critical["entries"]] == ["account_locked"]
    assert [e["event_type"] for e in page["entries"]] == ["account_locked"]


def test_resolve_alert(client, alice, admin_headers):
    client.post(f"/api/admin/accounts/{alice.subject}/lock", headers=admin_headers)
    entry_id = client.get("/api/admin/audit?severity=critical", headers=admin_headers).json()["entries"][0]["id"]

    resolved = client.post(f"/api/admin/audit/{entry_id}/resolve", headers=admin_headers).json()

    assert resolved["resolved"] is True
    assert resolved["resolved_by"] == "admin-root"
    assert client.get("/api/admin/audit?unresolved=true", headers=admin_headers).json()["total"] == 0
    summary = client.get("/api/admin/security-summary", headers=admin_headers).json()
    assert summary["unresolved_alert_count"] == 0
    assert client.post("/api/admin/audit/9999/resolve", headers=admin_headers).status_code == 404


def test_close_identity_provider_releases_client(monkeypatch):
    closed = []

    class ClosingProvider(FakeIdentityProvider):
        def close(self):
            closed.append(True)

    monkeypatch.setattr(dependencies, "_identity_provider", ClosingProvider())

    dependencies.close_identity_provider()

    assert closed == [True]
    assert dependencies._identity_provider is None

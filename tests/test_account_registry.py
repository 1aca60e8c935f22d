"""
Tests for account lookup, alias resolution and the lock flag.
"""

import pytest

from src.account_guard.errors import AccountConflictError, ResolutionError
from src.account_guard.models.database import Account
from src.account_guard.services.account_registry import account_registry


@pytest.mark.parametrize("alias", ["user-alice", "alice@example.com", "ALICE@example.com", "auth0|alice"])
def test_resolve_by_subject_email_or_provider_ref(test_db_session, alice, alias):
    assert account_registry.resolve_by_subject_or_alias(test_db_session, alias).subject == alice.subject


def test_resolve_unknown_alias_raises(test_db_session, alice):
    with pytest.raises(ResolutionError) as exc_info:
        account_registry.resolve_by_subject_or_alias(test_db_session, "nobody@example.com")
    assert exc_info.value.alias == "nobody@example.com"


def test_get_unknown_subject_raises(test_db_session):
    with pytest.raises(ResolutionError):
        account_registry.get(test_db_session, "missing")


def test_set_locked_transitions_once(test_db_session, alice):
    assert account_registry.set_locked(test_db_session, alice.subject) is True
    assert account_registry.set_locked(test_db_session, alice.subject) is False
    test_db_session.commit()

    account = account_registry.get(test_db_session, alice.subject)
    assert account.locked
    assert account.lock_source == "threshold"
    assert account.locked_at is not None


def test_set_unlocked_clears_lock(test_db_session, alice):
    account_registry.set_locked(test_db_session, alice.subject, source="admin")

    assert account_registry.set_unlocked(test_db_session, alice.subject) is True
    assert account_registry.set_unlocked(test_db_session, alice.subject) is False
    assert not account_registry.is_locked(test_db_session, alice.subject)


def test_is_locked_unknown_subject_is_false(test_db_session):
    assert account_registry.is_locked(test_db_session, "missing") is False


def test_ensure_creates_then_reuses(test_db_session):
    created = account_registry.ensure(test_db_session, subject="bob", email="Bob@Example.com")
    again = account_registry.ensure(test_db_session, email="bob@example.com", provider_ref="auth0|bob")

    assert created.id == again.id
    assert again.email == "bob@example.com"
    assert again.provider_ref == "auth0|bob"
    assert test_db_session.query(Account).count() == 1


def test_ensure_insert_conflict_raises_conflict_error(test_db_session, alice, monkeypatch):
    # Another writer registered the same subject between lookup and insert
    def not_found(db, alias):
        raise ResolutionError(alias)

    monkeypatch.setattr(account_registry, "resolve_by_subject_or_alias", not_found)

    with pytest.raises(AccountConflictError):
        account_registry.ensure(test_db_session, subject=alice.subject)


def test_ensure_update_conflict_raises_conflict_error(test_db_session, make_account):
    make_account("s1")
    make_account("s2", email="x@example.com")

    with pytest.raises(AccountConflictError):
        account_registry.ensure(test_db_session, subject="s1", email="x@example.com")

    # The session is usable again and nothing was written
    assert account_registry.get(test_db_session, "s1").email is None
    assert account_registry.get(test_db_session, "s2").email == "x@example.com"

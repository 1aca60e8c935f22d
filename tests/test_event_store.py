"""
Tests for the failure event store: window counting, dedup lookup and retention.
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from src.account_guard.errors import StorageError
from src.account_guard.models.failure_event import EventOrigin, FailureEvent, FailureReason
from src.account_guard.services.event_store import event_store
from tests.fakes import NOW, minutes_ago


def _record(db, subject, occurred_at, origin=EventOrigin.LOCAL):
    return event_store.record(
        db,
        subject=subject,
        occurred_at=occurred_at,
        reason=FailureReason.INVALID_CREDENTIALS,
        origin=origin,
        source_ip="198.51.100.4",
    )


def test_record_is_visible_before_commit(test_db_session):
    event = _record(test_db_session, "s1", NOW)

    assert event.id is not None
    assert event_store.count_in_window(test_db_session, "s1", NOW - timedelta(hours=1), NOW) == 1


def test_count_in_window_is_inclusive_on_both_ends(test_db_session):
    start = NOW - timedelta(hours=24)
    _record(test_db_session, "s1", start)
    _record(test_db_session, "s1", NOW)
    _record(test_db_session, "s1", start - timedelta(seconds=1))
    _record(test_db_session, "s1", NOW + timedelta(seconds=1))
    test_db_session.commit()

    assert event_store.count_in_window(test_db_session, "s1", start, NOW) == 2


def test_count_in_window_counts_every_origin(test_db_session):
    _record(test_db_session, "s1", minutes_ago(30), EventOrigin.LOCAL)
    _record(test_db_session, "s1", minutes_ago(20), EventOrigin.PROVIDER_SYNC)
    _record(test_db_session, "other", minutes_ago(10))
    test_db_session.commit()

    assert event_store.count_in_window(test_db_session, "s1", minutes_ago(60), NOW) == 2


def test_naive_datetimes_are_treated_as_utc(test_db_session):
    _record(test_db_session, "s1", NOW.replace(tzinfo=None))
    test_db_session.commit()

    stored = test_db_session.query(FailureEvent).one()
    assert stored.occurred_at == NOW
    assert stored.occurred_at.tzinfo is not None


@pytest.mark.parametrize(
    "offset_ms, expected",
    [(0, True), (999, True), (-1000, True), (1000, True), (1001, False), (-2500, False)],
)
def test_exists_matches_within_tolerance(test_db_session, offset_ms, expected):
    _record(test_db_session, "s1", NOW)
    test_db_session.commit()

    candidate = NOW + timedelta(milliseconds=offset_ms)
    assert event_store.exists(test_db_session, "s1", candidate, tolerance_seconds=1) is expected


def test_exists_is_per_subject(test_db_session):
    _record(test_db_session, "s1", NOW)
    test_db_session.commit()

    assert not event_store.exists(test_db_session, "s2", NOW)


def test_list_in_window_newest_first(test_db_session):
    _record(test_db_session, "a", minutes_ago(50))
    _record(test_db_session, "b", minutes_ago(5))
    _record(test_db_session, "c", minutes_ago(60 * 30))
    test_db_session.commit()

    events = event_store.list_in_window(test_db_session, NOW - timedelta(hours=24), NOW)

    assert [e.subject for e in events] == ["b", "a"]


def test_purge_older_than_removes_only_expired(test_db_session):
    _record(test_db_session, "s1", NOW - timedelta(days=31))
    _record(test_db_session, "s1", NOW - timedelta(days=1))
    test_db_session.commit()

    removed = event_store.purge_older_than(test_db_session, NOW - timedelta(days=30))

    assert removed == 1
    assert test_db_session.query(FailureEvent).count() == 1


def test_storage_failures_are_wrapped(test_db_session, monkeypatch):
    def broken_flush(*args, **kwargs):
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(test_db_session, "flush", broken_flush)

    with pytest.raises(StorageError):
        _record(test_db_session, "s1", NOW)

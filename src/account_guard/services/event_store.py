"""
Event store for authentication failure events.

Append-only access to ``failure_events``; the only queries the lockout
core needs are per-subject window counts, the reconciliation dedup lookup
and the cross-subject window listing and totals used by the admin views.
"""

from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from loguru import logger
from sqlalchemy import case, distinct, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src import config
from src.account_guard.errors import StorageError
from src.account_guard.models.database import as_utc
from src.account_guard.models.failure_event import EventOrigin, FailureEvent, FailureReason


class EventStore:
    """Durable record of failure events, queryable by subject and time window."""

    def record(
        self,
        db: Session,
        subject: str,
        occurred_at: datetime,
        reason: FailureReason,
        origin: EventOrigin,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        provider_log_id: Optional[str] = None,
    ) -> FailureEvent:
        """
        Append a failure event and flush it.

        The flush makes the row visible to later reads on the same session
        (record-then-evaluate); the caller commits.

        Raises:
            StorageError: if the row cannot be written
        """
        event = FailureEvent(
            subject=subject,
            occurred_at=as_utc(occurred_at),
            reason=reason,
            origin=origin,
            source_ip=source_ip,
            user_agent=user_agent[:500] if user_agent else None,
            provider_log_id=provider_log_id,
        )
        try:
            db.add(event)
            db.flush()
        except SQLAlchemyError as e:
            logger.error(f"Failed to record failure event for '{subject}': {e}")
            raise StorageError(f"Could not record failure event for '{subject}'") from e

        logger.debug(f"Recorded {origin.value} failure event #{event.id} for '{subject}' at {event.occurred_at}")
        return event

    def count_in_window(
        self, db: Session, subject: str, window_start: datetime, window_end: datetime
    ) -> int:
        """Count events for ``subject`` with occurred_at in [window_start, window_end]."""
        try:
            return (
                db.query(func.count(FailureEvent.id))
                .filter(
                    FailureEvent.subject == subject,
                    FailureEvent.occurred_at >= as_utc(window_start),
                    FailureEvent.occurred_at <= as_utc(window_end),
                )
                .scalar()
                or 0
            )
        except SQLAlchemyError as e:
            raise StorageError(f"Could not count failure events for '{subject}'") from e

    def exists(
        self,
        db: Session,
        subject: str,
        occurred_at: datetime,
        tolerance_seconds: Optional[int] = None,
    ) -> bool:
        """True if an event for ``subject`` lies within ±tolerance of ``occurred_at``."""
        if tolerance_seconds is None:
            tolerance_seconds = config.DEDUP_TOLERANCE_SECONDS
        tolerance = timedelta(seconds=tolerance_seconds)
        occurred_at = as_utc(occurred_at)
        try:
            match = (
                db.query(FailureEvent.id)
                .filter(
                    FailureEvent.subject == subject,
                    FailureEvent.occurred_at >= occurred_at - tolerance,
                    FailureEvent.occurred_at <= occurred_at + tolerance,
                )
                .first()
            )
        except SQLAlchemyError as e:
            raise StorageError(f"Could not look up failure events for '{subject}'") from e
        return match is not None

    def list_in_window(
        self,
        db: Session,
        window_start: datetime,
        window_end: datetime,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[FailureEvent]:
        """Events across subjects in [window_start, window_end], newest first, optionally paged."""
        try:
            query = (
                db.query(FailureEvent)
                .filter(
                    FailureEvent.occurred_at >= as_utc(window_start),
                    FailureEvent.occurred_at <= as_utc(window_end),
                )
                .order_by(FailureEvent.occurred_at.desc(), FailureEvent.id.desc())
                .offset(offset)
            )
            if limit is not None:
                query = query.limit(limit)
            return query.all()
        except SQLAlchemyError as e:
            raise StorageError("Could not list failure events") from e

    def window_totals(self, db: Session, window_start: datetime, window_end: datetime) -> Tuple[int, int, int]:
        """
        Cross-subject totals for [window_start, window_end].

        Returns:
            (events, events flagged at insert, distinct subjects)
        """
        try:
            total, flagged, subjects = (
                db.query(
                    func.count(FailureEvent.id),
                    func.coalesce(func.sum(case((FailureEvent.flagged_at_insert.is_(True), 1), else_=0)), 0),
                    func.count(distinct(FailureEvent.subject)),
                )
                .filter(
                    FailureEvent.occurred_at >= as_utc(window_start),
                    FailureEvent.occurred_at <= as_utc(window_end),
                )
                .one()
            )
        except SQLAlchemyError as e:
            raise StorageError("Could not total failure events") from e
        return int(total or 0), int(flagged or 0), int(subjects or 0)

    def purge_older_than(self, db: Session, cutoff: datetime) -> int:
        """Retention sweep: delete events that occurred before ``cutoff``."""
        try:
            deleted = (
                db.query(FailureEvent)
                .filter(FailureEvent.occurred_at < as_utc(cutoff))
                .delete(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError("Could not purge expired failure events") from e

        if deleted:
            logger.info(f"Retention sweep removed {deleted} failure events older than {cutoff}")
        return deleted


# Global store instance
event_store = EventStore()

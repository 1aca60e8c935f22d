"""
Security summary for administrators: recent failures, locked accounts and
the alerts that still need someone to look at them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.account_guard.errors import StorageError
from src.account_guard.models.audit_log import AuditLog
from src.account_guard.models.database import Account, utcnow
from src.account_guard.models.failure_event import FailureEvent
from src.account_guard.services.event_store import EventStore, event_store

# Audit severities that count as alerts (lock transitions, provider failures)
ALERT_SEVERITIES = ("critical",)


@dataclass
class SecuritySummary:
    window_start: datetime
    window_end: datetime
    failed_login_count: int = 0
    flagged_login_count: int = 0
    distinct_subjects: int = 0
    locked_account_count: int = 0
    unresolved_alert_count: int = 0
    recent_failures: List[FailureEvent] = field(default_factory=list)
    recent_alerts: List[AuditLog] = field(default_factory=list)


class SecuritySummaryService:
    """Read-only aggregation over the event store, registry and audit log."""

    def __init__(self, store: Optional[EventStore] = None, recent_limit: int = 20, alert_limit: int = 10):
        self.store = store or event_store
        self.recent_limit = recent_limit
        self.alert_limit = alert_limit

    def build(self, db: Session, window: timedelta, now: Optional[datetime] = None) -> SecuritySummary:
        """
        Summarize the trailing window ending at ``now``.

        Alerts are unresolved critical audit entries inside the same
        window; locked accounts are counted regardless of when they locked.
        """
        window_end = now or utcnow()
        window_start = window_end - window
        summary = SecuritySummary(window_start=window_start, window_end=window_end)

        (
            summary.failed_login_count,
            summary.flagged_login_count,
            summary.distinct_subjects,
        ) = self.store.window_totals(db, window_start, window_end)
        summary.recent_failures = self.store.list_in_window(
            db, window_start, window_end, limit=self.recent_limit
        )

        try:
            summary.locked_account_count = (
                db.query(func.count(Account.id)).filter(Account.locked.is_(True)).scalar() or 0
            )
        except SQLAlchemyError as e:
            raise StorageError("Could not count locked accounts") from e

        try:
            alerts = db.query(AuditLog).filter(
                AuditLog.severity.in_(ALERT_SEVERITIES),
                AuditLog.resolved.is_(False),
                AuditLog.timestamp >= window_start,
            )
            summary.unresolved_alert_count = alerts.count()
            summary.recent_alerts = (
                alerts.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(self.alert_limit).all()
            )
        except SQLAlchemyError as e:
            raise StorageError("Could not load unresolved alerts") from e

        return summary


# Global service instance
security_summary_service = SecuritySummaryService()

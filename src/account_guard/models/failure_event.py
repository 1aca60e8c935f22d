"""
Failure event model for account lockout decisions.

One row per observed authentication failure, whichever channel saw it.
Rows are immutable once committed and swept after the retention window.
"""

import enum

from sqlalchemy import Boolean, Column, Enum, Index, Integer, String

# Import Base from database module
from src.account_guard.models.database import Base, UTCDateTime, utcnow


class FailureReason(str, enum.Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_NOT_FOUND = "account_not_found"
    ACCOUNT_LOCKED = "account_locked"
    INVALID_TOKEN = "invalid_token"
    EXPIRED_TOKEN = "expired_token"


class EventOrigin(str, enum.Enum):
    LOCAL = "local"  # reported by the application's login flow
    PROVIDER_SYNC = "provider_sync"  # imported from the identity provider's log


class FailureEvent(Base):
    """
    A single failed authentication attempt.

    ``subject`` is the account subject once resolvable, otherwise the raw
    login identifier. ``occurred_at`` is the attempt time (not the insert
    time) and together with ``subject`` forms the reconciliation key.
    """

    __tablename__ = "failure_events"

    id = Column(Integer, primary_key=True, index=True)
    subject = Column(String(255), nullable=False, index=True)
    source_ip = Column(String(45), nullable=True)  # IPv6 max length
    user_agent = Column(String(500), nullable=True)
    occurred_at = Column(UTCDateTime, nullable=False, index=True)
    reason = Column(
        Enum(FailureReason, values_callable=lambda e: [m.value for m in e], native_enum=False, length=32),
        nullable=False,
        default=FailureReason.INVALID_CREDENTIALS,
    )
    origin = Column(
        Enum(EventOrigin, values_callable=lambda e: [m.value for m in e], native_enum=False, length=20),
        nullable=False,
        default=EventOrigin.LOCAL,
    )

    # Audit snapshot only; lock decisions always recount the window
    flagged_at_insert = Column(Boolean, default=False, nullable=False)
    recorded_at = Column(UTCDateTime, default=utcnow, nullable=False)
    provider_log_id = Column(String(128), nullable=True)  # provider log entry id for imported events

    __table_args__ = (Index("ix_failure_events_subject_occurred", "subject", "occurred_at"),)

    def __repr__(self):
        return (
            f"<FailureEvent(subject={self.subject}, at={self.occurred_at}, "
            f"reason={self.reason}, origin={self.origin})>"
        )


class PendingEvaluation(Base):
    """
    Subject whose provider-imported events still need a lock evaluation.

    Written in the same transaction as the import and removed once the
    subject's lock-and-propagate step finishes, so an interrupted
    reconciliation run resumes on the next one.
    """

    __tablename__ = "pending_evaluations"

    subject = Column(String(255), primary_key=True)
    queued_at = Column(UTCDateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<PendingEvaluation(subject={self.subject}, queued={self.queued_at})>"

"""
Failure ingestion: the synchronous path for failures seen by the login flow.

record -> evaluate -> lock -> propagate, in that order, on one session.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from loguru import logger
from sqlalchemy.orm import Session

from src.account_guard.errors import ResolutionError
from src.account_guard.models.database import as_utc, utcnow
from src.account_guard.models.failure_event import EventOrigin, FailureReason
from src.account_guard.services.account_registry import AccountRegistry, account_registry
from src.account_guard.services.audit_service import audit_service
from src.account_guard.services.event_store import EventStore, event_store
from src.account_guard.services.lock_manager import LockManager, commit_or_raise
from src.account_guard.services.lockout_policy import LockoutPolicy, lockout_policy


@dataclass
class IngestResult:
    subject: str
    event_id: int
    flagged: bool  # window count reached the threshold with this event
    locked: bool  # account lock state after this call
    failure_count: int
    attempts_remaining: int  # failures left before the threshold
    is_new_lock: bool  # this call performed the lock transition
    resolved: bool  # False when recorded under a raw, unknown alias

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class FailureIngestionService:
    """Records locally observed authentication failures and applies the lockout policy."""

    def __init__(
        self,
        lock_manager: LockManager,
        store: Optional[EventStore] = None,
        registry: Optional[AccountRegistry] = None,
        policy: Optional[LockoutPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.lock_manager = lock_manager
        self.store = store or event_store
        self.registry = registry or account_registry
        self.policy = policy or lockout_policy
        self.clock = clock

    def report_failure(
        self,
        db: Session,
        subject_or_alias: str,
        reason: FailureReason = FailureReason.INVALID_CREDENTIALS,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> IngestResult:
        """
        Record one failed login and lock the account if it crossed the threshold.

        An identifier that matches no account is still recorded under the
        raw alias so the attempt is not lost, but nothing is locked.

        Args:
            db: Database session (committed by this call)
            subject_or_alias: Subject, email or provider user id from the login attempt
            reason: Why the attempt failed
            ip_address: Client address
            user_agent: Client user agent
            occurred_at: Attempt time; defaults to now

        Returns:
            IngestResult with the window count and lock flags

        Raises:
            ResolutionError: the identifier is empty
            StorageError: the event or lock could not be persisted
        """
        if not subject_or_alias or not subject_or_alias.strip():
            raise ResolutionError(subject_or_alias or "", "Empty login identifier")

        received_at = self.clock()
        occurred_at = as_utc(occurred_at) if occurred_at else received_at

        try:
            subject = self.registry.resolve_by_subject_or_alias(db, subject_or_alias).subject
            resolved = True
        except ResolutionError:
            subject = subject_or_alias.strip()
            resolved = False
            logger.warning(f"Failed login for unknown identifier '{subject}'; recording without lock evaluation")

        event = self.store.record(
            db,
            subject=subject,
            occurred_at=occurred_at,
            reason=reason,
            origin=EventOrigin.LOCAL,
            source_ip=ip_address,
            user_agent=user_agent,
        )

        # A back-dated report must not fall outside the window it is counted in
        decision = self.policy.evaluate(db, subject, max(received_at, occurred_at))
        event.flagged_at_insert = decision.should_lock

        audit_service.log_failed_login(
            db,
            subject,
            reason.value,
            attempt_count=decision.failure_count_in_window,
            flagged=decision.should_lock,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        is_new_lock = False
        if resolved and decision.is_new_lock:
            is_new_lock = self.lock_manager.apply_decision(db, decision)
        else:
            commit_or_raise(db, f"failure event for '{subject}'")

        locked = resolved and self.registry.is_locked(db, subject)
        logger.info(
            f"Failure for '{subject}' recorded: {decision.failure_count_in_window}/{self.policy.threshold} "
            f"in window, locked={locked}"
        )

        return IngestResult(
            subject=subject,
            event_id=event.id,
            flagged=decision.should_lock,
            locked=locked,
            failure_count=decision.failure_count_in_window,
            attempts_remaining=self.policy.attempts_remaining(decision),
            is_new_lock=is_new_lock,
            resolved=resolved,
        )

    def is_locked(self, db: Session, subject_or_alias: str) -> bool:
        """Lock check for the request-authorization path; unknown identifiers are not locked."""
        try:
            subject = self.registry.resolve_by_subject_or_alias(db, subject_or_alias).subject
        except ResolutionError:
            return False
        return self.registry.is_locked(db, subject)

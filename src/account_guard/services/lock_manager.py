"""
Lock manager: the only writer of ``Account.locked``.

Threshold locks from ingestion and reconciliation and manual locks from
administrators all go through here, so every transition is audited, sent
to the lock hook and propagated to the identity provider the same way.
"""

from dataclasses import dataclass
from typing import Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.account_guard.errors import StorageError
from src.account_guard.services import lock_events
from src.account_guard.services.account_registry import AccountRegistry, account_registry
from src.account_guard.services.audit_service import audit_service
from src.account_guard.services.lockout_policy import LockDecision
from src.account_guard.services.propagation import (
    LockPropagationGateway,
    NullLockGateway,
    propagate_block_state,
    read_block_state,
)


@dataclass
class ProviderStatus:
    subject: str
    provider_ref: Optional[str]
    locked: bool
    provider_blocked: Optional[bool]  # None when unknown or there is no provider

    @property
    def in_sync(self) -> Optional[bool]:
        if self.provider_blocked is None:
            return None
        return self.provider_blocked == self.locked


@dataclass
class ProviderResync:
    subject: str
    provider_ref: Optional[str]
    locked: bool
    propagated: bool


def commit_or_raise(db: Session, what: str):
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(f"Could not commit {what}") from e


class LockManager:
    """Applies lock decisions and administrative lock changes."""

    def __init__(
        self,
        gateway: Optional[LockPropagationGateway] = None,
        registry: Optional[AccountRegistry] = None,
        propagation_timeout: Optional[float] = None,
    ):
        self.gateway = gateway or NullLockGateway()
        self.registry = registry or account_registry
        self.propagation_timeout = propagation_timeout

    def apply_decision(self, db: Session, decision: LockDecision, source: str = "threshold") -> bool:
        """
        Lock the subject if the decision requires it.

        Commits everything pending on ``db`` (the triggering event
        included) before the provider is called.

        Returns:
            True if this call performed the unlocked -> locked transition
        """
        if not decision.should_lock:
            return False

        transitioned = self.registry.set_locked(db, decision.subject, source=source)
        if transitioned:
            audit_service.log_account_locked(
                db, decision.subject, source, attempt_count=decision.failure_count_in_window
            )
        commit_or_raise(db, f"lock of '{decision.subject}'")

        if transitioned:
            logger.warning(
                f"Account '{decision.subject}' locked after {decision.failure_count_in_window} failures in window"
            )
            self._after_transition(db, decision.subject, blocked=True)
        return transitioned

    def admin_lock(self, db: Session, subject: str, actor: str) -> bool:
        """
        Administrative lock. Idempotent.

        Raises:
            ResolutionError: no account has this subject
        """
        self.registry.get(db, subject)
        transitioned = self.registry.set_locked(db, subject, source="admin")
        if transitioned:
            audit_service.log_account_locked(db, subject, "admin", actor=actor)
        commit_or_raise(db, f"lock of '{subject}'")

        if transitioned:
            logger.warning(f"Account '{subject}' locked by administrator '{actor}'")
            self._after_transition(db, subject, blocked=True)
        return transitioned

    def admin_unlock(self, db: Session, subject: str, actor: str) -> bool:
        """
        Administrative unlock, the only way back from a lock.

        Stored failure events are left as they are: the account stays
        unlocked until a new failure brings the window back over the
        threshold.

        Raises:
            ResolutionError: no account has this subject
        """
        self.registry.get(db, subject)
        transitioned = self.registry.set_unlocked(db, subject)
        if transitioned:
            audit_service.log_account_unlocked(db, subject, actor)
        commit_or_raise(db, f"unlock of '{subject}'")

        if transitioned:
            logger.warning(f"Account '{subject}' unlocked by administrator '{actor}'")
            self._after_transition(db, subject, blocked=False)
        else:
            logger.info(f"Unlock of '{subject}' requested by '{actor}' but account was not locked")
        return transitioned

    def provider_status(self, db: Session, subject: str) -> ProviderStatus:
        """
        Compare the local lock flag with the provider's block flag.

        Raises:
            ResolutionError: no account has this subject
        """
        account = self.registry.get(db, subject)
        locked = self.registry.is_locked(db, subject)
        provider_blocked = None
        if account.provider_ref:
            provider_blocked = read_block_state(
                self.gateway, account.provider_ref, timeout=self.propagation_timeout
            )
        return ProviderStatus(
            subject=subject,
            provider_ref=account.provider_ref,
            locked=locked,
            provider_blocked=provider_blocked,
        )

    def resync_provider(self, db: Session, subject: str, actor: str) -> ProviderResync:
        """
        Send the current local lock state to the provider again.

        For follow-up after a failed or timed-out propagation; the local
        flag is not changed and the lock hook is not fired.

        Raises:
            ResolutionError: no account has this subject
        """
        account = self.registry.get(db, subject)
        locked = self.registry.is_locked(db, subject)
        if not account.provider_ref:
            logger.info(f"Resync of '{subject}' requested by '{actor}' but it has no provider reference")
            return ProviderResync(subject=subject, provider_ref=None, locked=locked, propagated=False)

        propagated = propagate_block_state(
            db, self.gateway, subject, account.provider_ref, locked, timeout=self.propagation_timeout
        )
        audit_service.log_provider_resync(db, subject, account.provider_ref, locked, actor, propagated)
        commit_or_raise(db, f"provider resync of '{subject}'")
        return ProviderResync(
            subject=subject, provider_ref=account.provider_ref, locked=locked, propagated=propagated
        )

    def _after_transition(self, db: Session, subject: str, blocked: bool):
        """Hook dispatch and provider propagation; never raises."""
        if blocked:
            lock_events.notify_locked(subject)

        try:
            provider_ref = self.registry.get(db, subject).provider_ref
        except Exception as e:
            logger.error(f"Could not load provider reference for '{subject}': {e}")
            return

        if provider_ref:
            propagate_block_state(
                db, self.gateway, subject, provider_ref, blocked, timeout=self.propagation_timeout
            )
        else:
            logger.debug(f"Account '{subject}' has no provider reference; nothing to propagate")

        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Could not persist propagation audit for '{subject}': {e}")

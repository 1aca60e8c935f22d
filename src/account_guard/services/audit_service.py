"""
Audit logging service for security events.

Provides centralized security event logging with configurable severity levels.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.account_guard.errors import StorageError
from src.account_guard.models.audit_log import AuditLog
from src.account_guard.models.database import utcnow


class AuditLogService:
    """Service for logging security events."""

    @staticmethod
    def log_event(
        db: Session,
        event_type: str,
        severity: str,
        description: str,
        subject: Optional[str] = None,
        actor: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        success: bool = True,
        additional_data: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        """
        Log a security event to the audit log.

        The entry is added to the caller's session; the caller owns the
        commit so the audit row lands in the same transaction as the
        change it describes.

        Args:
            db: Database session
            event_type: Type of event (account_locked, propagation_failed, etc.)
            severity: Severity level (info, warning, critical)
            description: Human-readable description
            subject: Account subject or raw alias (if applicable)
            actor: Admin subject for manual actions
            ip_address: IP address of request
            user_agent: User agent string
            success: Whether the action succeeded
            additional_data: Extra context as dictionary

        Returns:
            Created AuditLog entry
        """
        # Convert additional_data to JSON string
        additional_json = None
        if additional_data:
            try:
                additional_json = json.dumps(additional_data, default=str)
            except (TypeError, ValueError) as e:
                logger.warning(f"Failed to serialize additional_data: {e}")

        audit_entry = AuditLog(
            timestamp=utcnow(),
            event_type=event_type,
            severity=severity,
            subject=subject,
            actor=actor,
            ip_address=ip_address,
            user_agent=user_agent,
            description=description,
            additional_data=additional_json,
            success=success,
        )
        db.add(audit_entry)

        # Also log to application logger for immediate visibility
        log_level = (
            "info"
            if severity == "info"
            else "warning" if severity == "warning" else "error"
        )
        getattr(logger, log_level)(
            f"AUDIT[{event_type}]: {description} | Subject: {subject or 'N/A'} | IP: {ip_address or 'N/A'}"
        )

        return audit_entry

    @staticmethod
    def log_failed_login(
        db: Session,
        subject: str,
        reason: str,
        attempt_count: int,
        flagged: bool,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ):
        """Log failed login attempt."""
        return AuditLogService.log_event(
            db=db,
            event_type="failed_login",
            severity="warning" if flagged else "info",
            description=f"Failed login for '{subject}': {reason} (attempt {attempt_count} in window)",
            subject=subject,
            ip_address=ip_address,
            user_agent=user_agent,
            success=False,
            additional_data={"reason": reason, "attempt_count": attempt_count},
        )

    @staticmethod
    def log_account_locked(
        db: Session,
        subject: str,
        source: str,
        attempt_count: Optional[int] = None,
        actor: Optional[str] = None,
    ):
        """Log an unlocked -> locked transition."""
        if source == "admin":
            description = f"Account '{subject}' locked by administrator '{actor}'"
        else:
            description = f"Account '{subject}' locked after {attempt_count} failed attempts"

        return AuditLogService.log_event(
            db=db,
            event_type="account_locked",
            severity="critical",
            description=description,
            subject=subject,
            actor=actor,
            additional_data={"source": source, "attempt_count": attempt_count},
        )

    @staticmethod
    def log_account_unlocked(db: Session, subject: str, actor: str):
        """Log an explicit administrative unlock."""
        return AuditLogService.log_event(
            db=db,
            event_type="account_unlocked",
            severity="warning",
            description=f"Account '{subject}' unlocked by administrator '{actor}'",
            subject=subject,
            actor=actor,
        )

    @staticmethod
    def log_propagation_failed(
        db: Session, subject: str, provider_ref: str, blocked: bool, error: str
    ):
        """Log a provider block/unblock call that needs manual follow-up."""
        action = "block" if blocked else "unblock"
        return AuditLogService.log_event(
            db=db,
            event_type="propagation_failed",
            severity="critical",
            description=f"Identity provider {action} failed for '{subject}': {error}",
            subject=subject,
            success=False,
            additional_data={"provider_ref": provider_ref, "blocked": blocked},
        )

    @staticmethod
    def log_propagation_timeout(
        db: Session, subject: str, provider_ref: str, blocked: bool, timeout: float
    ):
        """Log a provider call that outlived its timeout; the provider may or may not have applied it."""
        action = "block" if blocked else "unblock"
        return AuditLogService.log_event(
            db=db,
            event_type="propagation_timeout",
            severity="critical",
            description=(
                f"Identity provider {action} for '{subject}' timed out after {timeout}s; "
                "outcome unknown, check provider status"
            ),
            subject=subject,
            success=False,
            additional_data={"provider_ref": provider_ref, "blocked": blocked, "timeout": timeout},
        )

    @staticmethod
    def log_provider_resync(
        db: Session, subject: str, provider_ref: str, blocked: bool, actor: str, propagated: bool
    ):
        """Log an administrator re-sending the local lock state to the provider."""
        return AuditLogService.log_event(
            db=db,
            event_type="provider_resync",
            severity="info" if propagated else "warning",
            description=(
                f"Administrator '{actor}' re-sent blocked={blocked} for '{subject}' "
                f"({'acknowledged' if propagated else 'not acknowledged'})"
            ),
            subject=subject,
            actor=actor,
            success=propagated,
            additional_data={"provider_ref": provider_ref, "blocked": blocked},
        )

    @staticmethod
    def log_reconciliation_run(db: Session, summary: Dict[str, Any]):
        """Log the outcome of a provider reconciliation run."""
        return AuditLogService.log_event(
            db=db,
            event_type="reconciliation_run",
            severity="info",
            description=(
                f"Reconciliation imported {summary.get('imported', 0)} of "
                f"{summary.get('fetched', 0)} provider entries, "
                f"locked {len(summary.get('locked_subjects', []))} account(s)"
            ),
            additional_data=summary,
        )

    @staticmethod
    def list_events(
        db: Session,
        event_type: Optional[str] = None,
        severity: Optional[str] = None,
        unresolved_only: bool = False,
        since: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[int, List[AuditLog]]:
        """
        Page through audit entries, newest first.

        Returns:
            (total matching entries, entries on this page)
        """
        try:
            query = db.query(AuditLog)
            if event_type:
                query = query.filter(AuditLog.event_type == event_type)
            if severity:
                query = query.filter(AuditLog.severity == severity)
            if unresolved_only:
                query = query.filter(AuditLog.resolved.is_(False))
            if since is not None:
                query = query.filter(AuditLog.timestamp >= since)

            total = query.count()
            entries = (
                query.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            raise StorageError("Could not read the audit log") from e
        return total, entries

    @staticmethod
    def resolve_event(db: Session, event_id: int, actor: str) -> Optional[AuditLog]:
        """
        Mark an audit entry as handled. Resolving twice keeps the first resolver.

        Returns:
            The entry, or None if no entry has this id
        """
        try:
            entry = db.get(AuditLog, event_id)
        except SQLAlchemyError as e:
            raise StorageError(f"Could not load audit entry {event_id}") from e
        if entry is None:
            return None

        if not entry.resolved:
            entry.resolved = True
            entry.resolved_at = utcnow()
            entry.resolved_by = actor
            logger.info(f"Audit entry {event_id} ({entry.event_type}) resolved by '{actor}'")
        return entry


# Global service instance
audit_service = AuditLogService()

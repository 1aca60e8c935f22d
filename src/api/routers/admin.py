from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from loguru import logger
from sqlalchemy.orm import Session

from src.account_guard.models.database import Account
from src.account_guard.services.account_registry import account_registry
from src.account_guard.services.audit_service import audit_service
from src.account_guard.services.lock_manager import LockManager, commit_or_raise
from src.account_guard.services.reconciliation_service import ProviderReconciliationJob
from src.account_guard.services.security_summary import security_summary_service
from src.api import schemas
from src.api.dependencies import (
    get_current_admin_account,
    get_db,
    get_lock_manager,
    get_reconciliation_job,
)

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/accounts/{subject}", response_model=schemas.AccountResponse)
def get_account(
    subject: str,
    db: Session = Depends(get_db),
    admin: Account = Depends(get_current_admin_account),
):
    return account_registry.get(db, subject)


@router.post("/accounts/{subject}/lock", response_model=schemas.LockChangeResponse)
def lock_account(
    subject: str,
    db: Session = Depends(get_db),
    admin: Account = Depends(get_current_admin_account),
    lock_manager: LockManager = Depends(get_lock_manager),
):
    """Lock an account immediately. Locking a locked account is a no-op."""
    changed = lock_manager.admin_lock(db, subject, actor=admin.subject)
    return schemas.LockChangeResponse(subject=subject, locked=True, changed=changed)


@router.post("/accounts/{subject}/unlock", response_model=schemas.LockChangeResponse)
def unlock_account(
    subject: str,
    db: Session = Depends(get_db),
    admin: Account = Depends(get_current_admin_account),
    lock_manager: LockManager = Depends(get_lock_manager),
):
    """
    Unlock an account and unblock it at the identity provider.

    This is the only way out of a lock; nothing expires automatically.
    """
    if subject == admin.subject:
        # A locked admin cannot reach this route anyway; guard the obvious misuse
        raise HTTPException(status_code=400, detail="Administrators cannot unlock themselves")

    changed = lock_manager.admin_unlock(db, subject, actor=admin.subject)
    return schemas.LockChangeResponse(subject=subject, locked=False, changed=changed)


@router.get("/accounts/{subject}/provider-status", response_model=schemas.ProviderStatusResponse)
def get_provider_status(
    subject: str,
    db: Session = Depends(get_db),
    admin: Account = Depends(get_current_admin_account),
    lock_manager: LockManager = Depends(get_lock_manager),
):
    """Local lock flag next to the identity provider's block flag."""
    provider_status = lock_manager.provider_status(db, subject)
    return schemas.ProviderStatusResponse(
        subject=provider_status.subject,
        provider_ref=provider_status.provider_ref,
        locked=provider_status.locked,
        provider_blocked=provider_status.provider_blocked,
        in_sync=provider_status.in_sync,
    )


@router.post("/accounts/{subject}/resync", response_model=schemas.ProviderResyncResponse)
def resync_provider(
    subject: str,
    db: Session = Depends(get_db),
    admin: Account = Depends(get_current_admin_account),
    lock_manager: LockManager = Depends(get_lock_manager),
):
    """
    Send the local lock state to the identity provider again.

    Use after a failed or timed-out propagation; locking an already locked
    account does not reach the provider.
    """
    result = lock_manager.resync_provider(db, subject, actor=admin.subject)
    return schemas.ProviderResyncResponse(
        subject=result.subject,
        provider_ref=result.provider_ref,
        locked=result.locked,
        propagated=result.propagated,
    )


@router.get("/security-summary", response_model=schemas.SecuritySummaryResponse)
def get_security_summary(
    hours: int = Query(24, ge=1, le=24 * 90),
    db: Session = Depends(get_db),
    admin: Account = Depends(get_current_admin_account),
):
    """Failures, locked accounts and unresolved alerts for the trailing window."""
    summary = security_summary_service.build(db, timedelta(hours=hours))
    return schemas.SecuritySummaryResponse.model_validate(summary)


@router.get("/audit", response_model=schemas.AuditListResponse)
def list_audit_log(
    event_type: Optional[str] = None,
    severity: Optional[str] = None,
    unresolved: bool = False,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    admin: Account = Depends(get_current_admin_account),
):
    total, entries = audit_service.list_events(
        db,
        event_type=event_type,
        severity=severity,
        unresolved_only=unresolved,
        limit=limit,
        offset=offset,
    )
    return schemas.AuditListResponse(total=total, limit=limit, offset=offset, entries=entries)


@router.post("/audit/{event_id}/resolve", response_model=schemas.AuditLogResponse)
def resolve_audit_entry(
    event_id: int,
    db: Session = Depends(get_db),
    admin: Account = Depends(get_current_admin_account),
):
    """Mark an alert as handled."""
    entry = audit_service.resolve_event(db, event_id, actor=admin.subject)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Audit entry {event_id} not found")
    commit_or_raise(db, f"resolution of audit entry {event_id}")
    return entry


@router.post("/reconciliation/run", response_model=schemas.ReconciliationResponse)
def run_reconciliation(
    admin: Account = Depends(get_current_admin_account),
    job: Optional[ProviderReconciliationJob] = Depends(get_reconciliation_job),
):
    """
    Run provider reconciliation now.

    Returns immediately with ``skipped_overlap`` if a scheduled run is
    already in progress.
    """
    if job is None:
        raise HTTPException(status_code=409, detail="No identity provider configured")

    logger.info(f"Manual reconciliation triggered by '{admin.subject}'")
    report = job.run()
    return schemas.ReconciliationResponse(**report.to_dict())

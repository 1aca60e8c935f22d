"""
Routes called by the login flow: failure reports, lock checks and
account registration after a successful authentication.
"""

from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from loguru import logger
from sqlalchemy.orm import Session

from src import config
from src.account_guard.models.database import utcnow
from src.account_guard.services.account_registry import account_registry
from src.account_guard.services.event_store import event_store
from src.account_guard.services.ingestion_service import FailureIngestionService
from src.api import schemas
from src.api.dependencies import (
    get_current_admin_account,
    get_db,
    get_ingestion_service,
    require_ingest_key,
)
from src.api.limiter import INGEST_RATE_LIMIT, exempt_when_testing, limiter

router = APIRouter(prefix="/api/security", tags=["security"])


@router.post(
    "/failed-login",
    response_model=schemas.IngestResponse,
    dependencies=[Depends(require_ingest_key)],
)
@limiter.limit(INGEST_RATE_LIMIT, exempt_when=exempt_when_testing)
def report_failed_login(
    request: Request,
    report: schemas.FailedLoginReport,
    db: Session = Depends(get_db),
    service: FailureIngestionService = Depends(get_ingestion_service),
):
    """
    Record a failed login and apply the lockout policy.

    The response tells the caller whether the account is now locked so the
    login flow can refuse further attempts immediately.
    """
    client_ip = report.ip_address or (request.client.host if request.client else None)
    user_agent = report.user_agent or request.headers.get("user-agent")

    result = service.report_failure(
        db,
        report.identifier,
        reason=report.reason,
        ip_address=client_ip,
        user_agent=user_agent,
        occurred_at=report.occurred_at,
    )

    return schemas.IngestResponse(**result.to_dict())


@router.get(
    "/lock-status/{subject}",
    response_model=schemas.LockStatusResponse,
    dependencies=[Depends(require_ingest_key)],
)
def get_lock_status(
    subject: str,
    db: Session = Depends(get_db),
    service: FailureIngestionService = Depends(get_ingestion_service),
):
    """Lock check for a subject or alias; unknown identifiers report unlocked."""
    return schemas.LockStatusResponse(subject=subject, locked=service.is_locked(db, subject))


@router.post(
    "/accounts",
    response_model=schemas.AccountResponse,
    dependencies=[Depends(require_ingest_key)],
)
def ensure_account(payload: schemas.AccountEnsure, db: Session = Depends(get_db)):
    """Register (or complete) the account for an identity that just authenticated."""
    if not (payload.subject or payload.email or payload.provider_ref):
        raise HTTPException(status_code=422, detail="One of subject, email or provider_ref is required")

    return account_registry.ensure(
        db,
        subject=payload.subject,
        email=payload.email,
        provider_ref=payload.provider_ref,
        display_name=payload.display_name,
    )


@router.get("/failures", response_model=schemas.FailureListResponse)
def list_failures(
    hours: Optional[int] = Query(None, ge=1, le=24 * 90),
    limit: int = Query(20, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    admin=Depends(get_current_admin_account),
):
    """
    Failure events across all subjects for the trailing window (default:
    lockout window), newest first, one page at a time.
    """
    window_end = utcnow()
    window_start = window_end - timedelta(hours=hours or config.LOCKOUT_WINDOW_HOURS)
    total, _, _ = event_store.window_totals(db, window_start, window_end)
    events = event_store.list_in_window(db, window_start, window_end, limit=limit, offset=offset)
    logger.debug(f"Admin '{admin.subject}' listed {len(events)} of {total} failure events")
    return schemas.FailureListResponse(
        window_start=window_start,
        window_end=window_end,
        total=total,
        limit=limit,
        offset=offset,
        events=events,
    )

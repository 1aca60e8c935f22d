from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from src.account_guard.models.failure_event import EventOrigin, FailureReason


# --- Ingestion Schemas ---
class FailedLoginReport(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=255)  # subject, email or provider user id
    reason: FailureReason = FailureReason.INVALID_CREDENTIALS
    ip_address: Optional[str] = Field(None, max_length=45)  # defaults to the caller's address
    user_agent: Optional[str] = Field(None, max_length=500)
    occurred_at: Optional[datetime] = None


class IngestResponse(BaseModel):
    subject: str
    event_id: int
    flagged: bool
    locked: bool
    failure_count: int
    attempts_remaining: int
    is_new_lock: bool
    resolved: bool


class LockStatusResponse(BaseModel):
    subject: str
    locked: bool


# --- Account Schemas ---
class AccountEnsure(BaseModel):
    subject: Optional[str] = Field(None, max_length=128)
    email: Optional[EmailStr] = None
    provider_ref: Optional[str] = Field(None, max_length=255)
    display_name: Optional[str] = Field(None, max_length=100)


class AccountResponse(BaseModel):
    subject: str
    email: Optional[str] = None
    provider_ref: Optional[str] = None
    display_name: Optional[str] = None
    is_admin: bool
    locked: bool
    locked_at: Optional[datetime] = None
    lock_source: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LockChangeResponse(BaseModel):
    subject: str
    locked: bool
    changed: bool


# --- Failure Event Schemas ---
class FailureEventResponse(BaseModel):
    id: int
    subject: str
    source_ip: Optional[str] = None
    user_agent: Optional[str] = None
    occurred_at: datetime
    reason: FailureReason
    origin: EventOrigin
    flagged_at_insert: bool
    provider_log_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class FailureListResponse(BaseModel):
    window_start: datetime
    window_end: datetime
    total: int
    limit: int
    offset: int
    events: List[FailureEventResponse]


# --- Reconciliation Schemas ---
class ReconciliationResponse(BaseModel):
    started_at: datetime
    finished_at: Optional[datetime] = None
    fetched: int
    imported: int
    duplicates: int
    skipped: int
    evaluated_subjects: List[str]
    locked_subjects: List[str]
    pending_subjects: int
    cancelled: bool
    skipped_overlap: bool


# --- Provider Sync Schemas ---
class ProviderStatusResponse(BaseModel):
    subject: str
    provider_ref: Optional[str] = None
    locked: bool
    provider_blocked: Optional[bool] = None  # None when the provider could not be read
    in_sync: Optional[bool] = None


class ProviderResyncResponse(BaseModel):
    subject: str
    provider_ref: Optional[str] = None
    locked: bool
    propagated: bool


# --- Audit Schemas ---
class AuditLogResponse(BaseModel):
    id: int
    timestamp: datetime
    event_type: str
    severity: str
    subject: Optional[str] = None
    actor: Optional[str] = None
    ip_address: Optional[str] = None
    description: str
    success: bool
    resolved: bool
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class AuditListResponse(BaseModel):
    total: int
    limit: int
    offset: int
    entries: List[AuditLogResponse]


class SecuritySummaryResponse(BaseModel):
    window_start: datetime
    window_end: datetime
    failed_login_count: int
    flagged_login_count: int
    distinct_subjects: int
    locked_account_count: int
    unresolved_alert_count: int
    recent_failures: List[FailureEventResponse]
    recent_alerts: List[AuditLogResponse]

    model_config = ConfigDict(from_attributes=True)

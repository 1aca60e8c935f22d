"""
Audit logging model for security events.

Tracks lock transitions, propagation failures and reconciliation runs
for forensics and manual follow-up.
"""

from sqlalchemy import Boolean, Column, Integer, String, Text

# Import Base from database module
from src.account_guard.models.database import Base, UTCDateTime, utcnow


class AuditLog(Base):
    """
    Audit log for security events.

    Tracks:
    - Failed login attempts
    - Account lock / unlock transitions
    - Identity provider propagation failures
    - Reconciliation runs
    """

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(
        UTCDateTime,
        default=utcnow,
        nullable=False,
        index=True,
    )

    # Event details
    event_type = Column(
        String(50), nullable=False, index=True
    )  # failed_login, account_locked, etc.
    severity = Column(String(20), nullable=False, index=True)  # info, warning, critical

    # Subject information
    subject = Column(String(255), nullable=True, index=True)  # May be a raw alias
    actor = Column(String(128), nullable=True)  # admin subject for manual actions

    # Request information
    ip_address = Column(String(45), nullable=True, index=True)  # IPv6 max length
    user_agent = Column(String(500), nullable=True)

    # Event details
    description = Column(Text, nullable=False)
    additional_data = Column(Text, nullable=True)  # JSON string for extra context

    # Success/failure
    success = Column(Boolean, default=True, nullable=False)

    # Follow-up by an administrator
    resolved = Column(Boolean, default=False, nullable=False, index=True)
    resolved_at = Column(UTCDateTime, nullable=True)
    resolved_by = Column(String(128), nullable=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, type={self.event_type}, subject={self.subject}, time={self.timestamp})>"

"""
Sessions for administrator bearer tokens.

Every issued token is registered as a session; the auth dependency only
accepts tokens whose session exists, is unrevoked and unexpired.
Subscribed to the lock hook so that a lock ends every live session of the
subject, whichever channel caused it.
"""

import hashlib
from datetime import timedelta
from typing import Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.account_guard.errors import StorageError
from src.account_guard.models.database import UserSession, get_session, utcnow
from src.account_guard.services import lock_events
from src.account_guard.utils.jwt_utils import ACCESS_TOKEN_EXPIRE_MINUTES, get_token_expiration


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SessionService:
    """Creates, checks and revokes issued sessions"""

    def create_session(
        self,
        db: Session,
        subject: str,
        token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> UserSession:
        """
        Register an issued token. The caller commits.

        The session expires with the token.
        """
        expires_at = get_token_expiration(token) or utcnow() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
        user_session = UserSession(
            subject=subject,
            token_hash=hash_token(token),
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        db.add(user_session)
        try:
            db.flush()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Could not create session for '{subject}'") from e
        logger.info(f"Session created for '{subject}', expires {expires_at}")
        return user_session

    def get_active_session(self, db: Session, token: str) -> Optional[UserSession]:
        """The unrevoked, unexpired session for ``token``, or None."""
        now = utcnow()
        try:
            user_session = (
                db.query(UserSession)
                .filter(
                    UserSession.token_hash == hash_token(token),
                    UserSession.revoked.is_(False),
                    UserSession.expires_at > now,
                )
                .first()
            )
        except SQLAlchemyError as e:
            raise StorageError("Could not read sessions") from e

        if user_session is not None:
            user_session.last_activity = now
        return user_session

    def revoke_all_for_subject(self, subject: str, reason: Optional[str] = "account_locked") -> int:
        """Mark every unrevoked session of ``subject`` as revoked."""
        with get_session() as db:
            revoked = (
                db.query(UserSession)
                .filter(UserSession.subject == subject, UserSession.revoked.is_(False))
                .update(
                    {UserSession.revoked: True, UserSession.last_activity: utcnow()},
                    synchronize_session=False,
                )
            )

        if revoked:
            logger.info(f"Revoked {revoked} session(s) for '{subject}' ({reason})")
        return revoked

    def on_account_locked(self, subject: str):
        self.revoke_all_for_subject(subject)

    def register(self):
        """Attach to the lock hook"""
        lock_events.subscribe(self.on_account_locked)


# Global service instance
session_service = SessionService()

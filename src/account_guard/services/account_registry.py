"""
Account registry: durable accounts, alias resolution and the lock flag.

Only LockManager should call ``set_locked`` / ``set_unlocked``; everything
else reads.
"""

import uuid
from typing import Optional

from loguru import logger
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from src.account_guard.errors import AccountConflictError, ResolutionError, StorageError
from src.account_guard.models.database import Account, utcnow


class AccountRegistry:
    """Lookup and lock-flag persistence for accounts."""

    def get(self, db: Session, subject: str) -> Account:
        """
        Fetch an account by subject.

        Raises:
            ResolutionError: no account has this subject
            StorageError: the registry could not be read
        """
        try:
            account = db.query(Account).filter(Account.subject == subject).first()
        except SQLAlchemyError as e:
            raise StorageError(f"Could not load account '{subject}'") from e
        if account is None:
            raise ResolutionError(subject)
        return account

    def resolve_by_subject_or_alias(self, db: Session, alias: str) -> Account:
        """
        Map a login identifier to an account.

        Provider logs may name a user by email or by the provider's own user
        id, and the login flow may pass a subject directly, so all three are
        tried.

        Raises:
            ResolutionError: nothing matches
            StorageError: the registry could not be read
        """
        if not alias or not alias.strip():
            raise ResolutionError(alias or "", "Empty login identifier")

        value = alias.strip()
        try:
            account = (
                db.query(Account)
                .filter(
                    or_(
                        Account.subject == value,
                        Account.email == value.lower(),
                        Account.provider_ref == value,
                    )
                )
                .first()
            )
        except SQLAlchemyError as e:
            raise StorageError(f"Could not resolve alias '{alias}'") from e
        if account is None:
            raise ResolutionError(alias)
        return account

    def is_locked(self, db: Session, subject: str) -> bool:
        """Fresh read of the local lock flag; unknown subjects are not locked."""
        try:
            locked = db.query(Account.locked).filter(Account.subject == subject).scalar()
        except SQLAlchemyError as e:
            raise StorageError(f"Could not read lock state for '{subject}'") from e
        return bool(locked)

    def set_locked(self, db: Session, subject: str, source: str = "threshold") -> bool:
        """
        Lock an account. Idempotent.

        Uses a conditional UPDATE so that of several concurrent callers
        exactly one performs the unlocked -> locked transition.

        Returns:
            True if this call flipped the flag, False if it was already locked
        """
        now = utcnow()
        try:
            result = db.execute(
                update(Account)
                .where(Account.subject == subject, Account.locked.is_(False))
                .values(locked=True, locked_at=now, lock_source=source, updated_at=now)
            )
            db.flush()
        except SQLAlchemyError as e:
            raise StorageError(f"Could not lock account '{subject}'") from e

        transitioned = result.rowcount == 1
        if not transitioned:
            logger.debug(f"Account '{subject}' already locked; lock is a no-op")
        return transitioned

    def set_unlocked(self, db: Session, subject: str) -> bool:
        """Clear the lock flag. Returns True if the account was locked."""
        now = utcnow()
        try:
            result = db.execute(
                update(Account)
                .where(Account.subject == subject, Account.locked.is_(True))
                .values(locked=False, locked_at=None, lock_source=None, updated_at=now)
            )
            db.flush()
        except SQLAlchemyError as e:
            raise StorageError(f"Could not unlock account '{subject}'") from e
        return result.rowcount == 1

    def ensure(
        self,
        db: Session,
        subject: Optional[str] = None,
        email: Optional[str] = None,
        provider_ref: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> Account:
        """
        Return the account for a successfully authenticated identity,
        creating it the first time the subject is seen.

        Raises:
            AccountConflictError: the email or provider reference belongs to another account
            StorageError: the account could not be saved
        """
        normalized_email = email.strip().lower() if email else None
        for candidate in (subject, provider_ref, normalized_email):
            if not candidate:
                continue
            try:
                account = self.resolve_by_subject_or_alias(db, candidate)
            except ResolutionError:
                continue
            if provider_ref and not account.provider_ref:
                account.provider_ref = provider_ref
            if normalized_email and not account.email:
                account.email = normalized_email
            self._commit(db, f"update of account '{account.subject}'")
            return account

        account = Account(
            subject=subject or str(uuid.uuid4()),
            email=normalized_email,
            provider_ref=provider_ref,
            display_name=display_name,
        )
        db.add(account)
        self._commit(db, f"account for '{subject or normalized_email}'")

        db.refresh(account)
        logger.info(f"Registered account '{account.subject}' (email={account.email}, provider_ref={account.provider_ref})")
        return account

    @staticmethod
    def _commit(db: Session, what: str):
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise AccountConflictError(f"The {what} conflicts with an existing account") from e
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Could not save the {what}") from e


# Global registry instance
account_registry = AccountRegistry()

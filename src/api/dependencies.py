import secrets
import threading
from typing import Generator, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader, OAuth2PasswordBearer
from loguru import logger
from sqlalchemy.orm import Session

from src import config
from src.account_guard.models.database import (
    Account,
    create_engine_instance,
    create_session_factory,
    create_tables,
)
from src.account_guard.providers.auth0_provider import Auth0Provider
from src.account_guard.providers.base_provider import BaseIdentityProvider
from src.account_guard.services.account_registry import account_registry
from src.account_guard.services.ingestion_service import FailureIngestionService
from src.account_guard.services.lock_manager import LockManager
from src.account_guard.services.propagation import (
    LockPropagationGateway,
    NullLockGateway,
    ProviderLockGateway,
)
from src.account_guard.services.reconciliation_service import (
    ProviderReconciliationJob,
    ReconciliationScheduler,
)
from src.account_guard.services.session_service import session_service
from src.account_guard.utils.jwt_utils import decode_access_token

# Global instances so the provider client and the run lock are shared by all requests
_identity_provider: Optional[BaseIdentityProvider] = None
_lock_manager: Optional[LockManager] = None
_ingestion_service: Optional[FailureIngestionService] = None
_reconciliation_job: Optional[ProviderReconciliationJob] = None
_scheduler: Optional[ReconciliationScheduler] = None
_services_lock = threading.RLock()

_tables_initialized_url: Optional[str] = None
_tables_init_lock = threading.Lock()

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)
ingest_key_header = APIKeyHeader(name="X-Ingest-Key", auto_error=False)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get a database session.
    Auto-commits on success, rolls back on exception.
    """
    global _tables_initialized_url
    engine = create_engine_instance()
    engine_url = str(engine.url)
    if _tables_initialized_url != engine_url:
        with _tables_init_lock:
            if _tables_initialized_url != engine_url:
                create_tables()
                _tables_initialized_url = engine_url

    session_local = create_session_factory()
    db = session_local()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_identity_provider() -> Optional[BaseIdentityProvider]:
    """Auth0 client when management credentials are configured, else None."""
    global _identity_provider
    with _services_lock:
        if _identity_provider is None:
            provider = Auth0Provider()
            if provider.is_configured():
                logger.info(f"Identity provider: Auth0 ({provider.domain})")
                _identity_provider = provider
            else:
                logger.warning("Auth0 management credentials not configured; locks stay local")
        return _identity_provider


def get_lock_gateway() -> LockPropagationGateway:
    provider = get_identity_provider()
    return ProviderLockGateway(provider) if provider else NullLockGateway()


def get_lock_manager() -> LockManager:
    global _lock_manager
    with _services_lock:
        if _lock_manager is None:
            _lock_manager = LockManager(gateway=get_lock_gateway())
            # Locks end live sessions
            session_service.register()
        return _lock_manager


def get_ingestion_service() -> FailureIngestionService:
    global _ingestion_service
    with _services_lock:
        if _ingestion_service is None:
            _ingestion_service = FailureIngestionService(lock_manager=get_lock_manager())
        return _ingestion_service


def get_reconciliation_job() -> Optional[ProviderReconciliationJob]:
    """None when there is no provider to reconcile against."""
    global _reconciliation_job
    with _services_lock:
        if _reconciliation_job is None:
            provider = get_identity_provider()
            if provider is None:
                return None
            _reconciliation_job = ProviderReconciliationJob(provider, lock_manager=get_lock_manager())
        return _reconciliation_job


def start_scheduler() -> Optional[ReconciliationScheduler]:
    global _scheduler
    if not config.RECONCILE_ENABLED:
        logger.info("Reconciliation scheduler disabled (RECONCILE_ENABLED=false)")
        return None

    job = get_reconciliation_job()
    if job is None:
        logger.info("Reconciliation scheduler not started: no identity provider configured")
        return None

    with _services_lock:
        if _scheduler is None:
            _scheduler = ReconciliationScheduler(job)
        _scheduler.start()
        return _scheduler


def stop_scheduler():
    global _scheduler
    with _services_lock:
        if _scheduler is not None:
            _scheduler.stop()
            _scheduler = None


def close_identity_provider():
    """Release the provider client; services built on it are dropped with it."""
    global _identity_provider, _lock_manager, _ingestion_service, _reconciliation_job
    with _services_lock:
        if _identity_provider is not None:
            _identity_provider.close()
            logger.info("Identity provider client closed")
        _identity_provider = None
        _lock_manager = None
        _ingestion_service = None
        _reconciliation_job = None


def require_ingest_key(api_key: Optional[str] = Depends(ingest_key_header)):
    """
    Guard for the login-flow routes.

    Disabled when INGEST_API_KEY is empty so local development needs no key.
    """
    expected = config.get("INGEST_API_KEY", "")
    if not expected:
        return
    if not api_key or not secrets.compare_digest(api_key, expected):
        logger.warning("Rejected ingest call with missing or invalid X-Ingest-Key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid ingest key",
        )


def validate_token(token: str, db: Session) -> Optional[Account]:
    """
    Validate a JWT and return the account named by its ``sub`` claim.

    Args:
        token: JWT token string
        db: Database session

    Returns:
        Account if the token is valid and the account exists, None otherwise
    """
    if not token:
        return None

    payload = decode_access_token(token)
    if not payload:
        logger.debug("Token validation failed: Invalid or expired token")
        return None

    subject = payload.get("sub")
    account = db.query(Account).filter(Account.subject == subject).first()
    if account is None:
        logger.warning(f"Token valid but account '{subject}' not found in database")
    return account


def get_current_account(
    token: Optional[str] = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> Account:
    """
    Get the authenticated account from the bearer token.

    Locked accounts are refused here, which makes the lock effective on
    every authenticated route.

    Raises:
        HTTPException: 401 if the token is invalid or its session is gone,
            403 if the account is locked
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if not token:
        logger.debug("No token provided in request")
        raise credentials_exception

    account = validate_token(token, db)
    if account is None:
        raise credentials_exception

    if session_service.get_active_session(db, token) is None:
        logger.warning(f"Rejected token for '{account.subject}': session expired or revoked")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session expired or revoked",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if account_registry.is_locked(db, account.subject):
        logger.warning(f"Rejected request from locked account '{account.subject}'")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is locked")

    return account


def get_current_admin_account(account: Account = Depends(get_current_account)) -> Account:
    if not account.is_admin:
        logger.warning(f"Non-admin account '{account.subject}' attempted an admin operation")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return account

import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, Optional

from loguru import logger
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    create_engine,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

# Create base class for all models
Base = declarative_base()

_engine_instance = None
_engine_url = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Coerce a datetime to timezone-aware UTC (naive values are taken as UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    DateTime column that always stores naive UTC and returns aware UTC.

    SQLite drops tzinfo when it stores a datetime, so window comparisons
    are only correct if every value is converted to UTC before binding.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return as_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        return as_utc(value)


# Import security models after Base is created to avoid circular imports
# These models use the same Base and will be included in create_all()
try:
    from src.account_guard.models.audit_log import AuditLog
    from src.account_guard.models.failure_event import FailureEvent, PendingEvaluation
except ImportError:
    # Models not yet created, will be imported later
    pass


class Account(Base):
    """Protected account: lock flag plus the identity provider reference"""
    __tablename__ = 'accounts'

    id = Column(Integer, primary_key=True)
    subject = Column(String(128), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=True, index=True)  # alias used by provider logs
    provider_ref = Column(String(255), unique=True, nullable=True, index=True)  # e.g. auth0|abc123
    display_name = Column(String(100), nullable=True)
    is_admin = Column(Boolean, default=False, nullable=False)

    # Lock state (written only through LockManager)
    locked = Column(Boolean, default=False, nullable=False)
    locked_at = Column(UTCDateTime, nullable=True)
    lock_source = Column(String(20), nullable=True)  # threshold, admin

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<Account(subject={self.subject}, email={self.email}, locked={self.locked})>"


class UserSession(Base):
    """Issued login session; revoked when the owning account is locked"""
    __tablename__ = 'user_sessions'

    id = Column(Integer, primary_key=True)
    subject = Column(String(128), nullable=False, index=True)

    # store only hashed token in DB (never store raw token)
    token_hash = Column(String(128), unique=True, nullable=False, index=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    last_activity = Column(UTCDateTime, default=utcnow, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    revoked = Column(Boolean, default=False, nullable=False)

    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)


# Database setup functions
def get_database_path() -> str:
    """Get the path to the SQLite database file"""
    from src import config
    config.DATA_DIR.mkdir(parents=True, exist_ok=True)
    return str(config.DATABASE_PATH)


def create_engine_instance():
    """Create SQLAlchemy engine instance"""
    global _engine_instance, _engine_url
    database_url = os.environ.get("DATABASE_URL", "").strip()
    if database_url:
        target_url = database_url
    else:
        db_path = get_database_path()
        target_url = f"sqlite:///{db_path}"

    if _engine_instance is not None and _engine_url == target_url:
        return _engine_instance

    logger.info(f"Creating database engine: {target_url}")
    connect_args = {"check_same_thread": False} if target_url.startswith("sqlite") else {}
    engine_kwargs = {}
    if target_url in {"sqlite:///:memory:", "sqlite://"}:
        # Keep one shared in-memory DB connection for tests.
        engine_kwargs["poolclass"] = StaticPool

    engine = create_engine(
        target_url,
        echo=False,
        connect_args=connect_args,
        **engine_kwargs,
    )

    _engine_instance = engine
    _engine_url = target_url

    return engine


def create_session_factory():
    """Create session factory"""
    engine = create_engine_instance()
    return sessionmaker(bind=engine, expire_on_commit=False)


def create_tables():
    """Create all database tables"""
    # Registers the security models on Base.metadata
    from src.account_guard.models import audit_log, failure_event  # noqa: F401

    engine = create_engine_instance()
    logger.info("Creating database tables...")
    Base.metadata.create_all(engine)
    logger.info("Database tables created successfully")


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Get database session (context manager)"""
    SessionLocal = create_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_database():
    """Initialize the database schema and the optional bootstrap admin."""
    logger.info("Initializing database...")

    create_tables()

    from src import config

    admin_subject = config.get("BOOTSTRAP_ADMIN_SUBJECT", "").strip()
    if not admin_subject:
        logger.info("No BOOTSTRAP_ADMIN_SUBJECT configured; skipping admin bootstrap")
        return

    with get_session() as session:
        if session.query(Account).filter(Account.subject == admin_subject).first():
            logger.info("Bootstrap admin already present")
            return

        session.add(
            Account(
                subject=admin_subject,
                email=config.get("BOOTSTRAP_ADMIN_EMAIL", "").strip().lower() or None,
                display_name="Administrator",
                is_admin=True,
            )
        )
        logger.warning(f"Bootstrap admin account '{admin_subject}' created")

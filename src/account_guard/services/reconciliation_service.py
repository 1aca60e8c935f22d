"""
Provider reconciliation.

Imports failures the identity provider saw but the login flow never
reported, then re-evaluates only the subjects that gained events.
Runs on a timer (ReconciliationScheduler) or on demand.
"""

import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, ContextManager, Dict, List, Optional, Set

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src import config
from src.account_guard.errors import ReconciliationFetchError, ResolutionError, StorageError
from src.account_guard.models.database import get_session, utcnow
from src.account_guard.models.failure_event import EventOrigin, FailureReason, PendingEvaluation
from src.account_guard.providers.base_provider import BaseIdentityProvider, ProviderLogEntry
from src.account_guard.services.account_registry import AccountRegistry, account_registry
from src.account_guard.services.audit_service import audit_service
from src.account_guard.services.event_store import EventStore, event_store
from src.account_guard.services.lock_manager import LockManager, commit_or_raise
from src.account_guard.services.lockout_policy import LockoutPolicy, lockout_policy

# Provider log type -> failure reason. Codes not listed here are skipped.
PROVIDER_REASON_CODES: Dict[str, FailureReason] = {
    "f": FailureReason.INVALID_CREDENTIALS,
    "fp": FailureReason.INVALID_CREDENTIALS,
    "fu": FailureReason.ACCOUNT_NOT_FOUND,
    "limit_wc": FailureReason.ACCOUNT_LOCKED,
    "limit_mu": FailureReason.ACCOUNT_LOCKED,
}


@dataclass
class ReconciliationReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    fetched: int = 0
    imported: int = 0
    duplicates: int = 0
    skipped: int = 0
    evaluated_subjects: List[str] = field(default_factory=list)
    locked_subjects: List[str] = field(default_factory=list)
    pending_subjects: int = 0  # left for the next run after a cancel
    cancelled: bool = False
    skipped_overlap: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ProviderReconciliationJob:
    """Pull, dedup, import and re-evaluate. One run at a time."""

    def __init__(
        self,
        provider: BaseIdentityProvider,
        lock_manager: LockManager,
        session_scope: Callable[[], ContextManager[Session]] = get_session,
        store: Optional[EventStore] = None,
        registry: Optional[AccountRegistry] = None,
        policy: Optional[LockoutPolicy] = None,
        window: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.provider = provider
        self.lock_manager = lock_manager
        self.session_scope = session_scope
        self.store = store or event_store
        self.registry = registry or account_registry
        self.policy = policy or lockout_policy
        self.window = window or timedelta(hours=config.RECONCILE_WINDOW_HOURS)
        self.clock = clock

        self._run_lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._stop_event: Optional[threading.Event] = None

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def cancel(self):
        """Stop the active run at the next entry or subject boundary."""
        self._cancel_event.set()

    def run(
        self, now: Optional[datetime] = None, stop_event: Optional[threading.Event] = None
    ) -> ReconciliationReport:
        """
        Execute one reconciliation pass.

        If another run is active this returns immediately with
        ``skipped_overlap`` set. A set ``stop_event`` cancels the run like
        ``cancel()``, including when it was set before the run started.

        Raises:
            ReconciliationFetchError: the provider log could not be read; nothing was written
            StorageError: the import could not be persisted
        """
        now = now or self.clock()
        if not self._run_lock.acquire(blocking=False):
            logger.info("Reconciliation already running; skipping this trigger")
            return ReconciliationReport(started_at=now, finished_at=now, skipped_overlap=True)

        self._cancel_event.clear()
        self._stop_event = stop_event
        try:
            return self._run(now)
        finally:
            self._stop_event = None
            self._run_lock.release()

    def _cancelled(self) -> bool:
        if self._stop_event is not None and self._stop_event.is_set():
            return True
        return self._cancel_event.is_set()

    def _run(self, now: datetime) -> ReconciliationReport:
        report = ReconciliationReport(started_at=now)
        window_start = now - self.window
        logger.info(f"Reconciliation started for window {window_start} .. {now}")

        if self._cancelled():
            report.cancelled = True
            report.finished_at = self.clock()
            logger.warning("Reconciliation cancelled before fetching the provider log")
            return report

        # Whole window first; a fetch failure leaves the store untouched
        entries = self.provider.fetch_failure_log(window_start, now)
        report.fetched = len(entries)

        with self.session_scope() as db:
            touched = self._load_pending(db)
            if touched:
                logger.info(f"Resuming {len(touched)} subject(s) left pending by an earlier run")

            for entry in entries:
                if self._cancelled():
                    report.cancelled = True
                    break
                subject = self._import_entry(db, entry, report)
                if subject:
                    touched.add(subject)

            for subject in sorted(touched):
                if self._cancelled():
                    report.cancelled = True
                    break
                self._evaluate_subject(db, subject, now, report)

            report.pending_subjects = len(touched) - len(report.evaluated_subjects)
            report.finished_at = self.clock()
            audit_service.log_reconciliation_run(db, report.to_dict())
            commit_or_raise(db, "reconciliation summary")

        log = logger.warning if report.cancelled else logger.info
        log(
            f"Reconciliation {'cancelled' if report.cancelled else 'finished'}: "
            f"fetched={report.fetched} imported={report.imported} duplicates={report.duplicates} "
            f"skipped={report.skipped} locked={report.locked_subjects} pending={report.pending_subjects}"
        )
        return report

    def _load_pending(self, db: Session) -> Set[str]:
        try:
            return {row.subject for row in db.query(PendingEvaluation.subject).all()}
        except SQLAlchemyError as e:
            raise StorageError("Could not read pending evaluations") from e

    def _import_entry(
        self, db: Session, entry: ProviderLogEntry, report: ReconciliationReport
    ) -> Optional[str]:
        """Import one provider entry; returns the subject if a new event was written."""
        reason = PROVIDER_REASON_CODES.get(entry.reason_code)
        if reason is None:
            logger.warning(f"Skipping provider entry {entry.log_id}: unknown reason code '{entry.reason_code}'")
            report.skipped += 1
            return None

        if entry.occurred_at is None:
            logger.warning(f"Skipping provider entry {entry.log_id}: missing or malformed timestamp")
            report.skipped += 1
            return None

        try:
            subject = self.registry.resolve_by_subject_or_alias(db, entry.subject_alias).subject
        except ResolutionError:
            logger.warning(f"Skipping provider entry {entry.log_id}: no account for '{entry.subject_alias}'")
            report.skipped += 1
            return None

        if self.store.exists(db, subject, entry.occurred_at):
            report.duplicates += 1
            return None

        self.store.record(
            db,
            subject=subject,
            occurred_at=entry.occurred_at,
            reason=reason,
            origin=EventOrigin.PROVIDER_SYNC,
            source_ip=entry.ip_address,
            user_agent=entry.user_agent,
            provider_log_id=entry.log_id,
        )
        db.merge(PendingEvaluation(subject=subject, queued_at=utcnow()))
        commit_or_raise(db, f"imported provider event for '{subject}'")

        report.imported += 1
        return subject

    def _evaluate_subject(
        self, db: Session, subject: str, now: datetime, report: ReconciliationReport
    ):
        """Evaluate, lock and propagate one subject, then clear its pending marker."""
        decision = self.policy.evaluate(db, subject, now)
        if decision.is_new_lock and self.lock_manager.apply_decision(db, decision):
            report.locked_subjects.append(subject)

        try:
            db.query(PendingEvaluation).filter(PendingEvaluation.subject == subject).delete(
                synchronize_session=False
            )
        except SQLAlchemyError as e:
            raise StorageError(f"Could not clear pending evaluation for '{subject}'") from e
        commit_or_raise(db, f"evaluation of '{subject}'")
        report.evaluated_subjects.append(subject)


class ReconciliationScheduler:
    """Background thread: reconciliation then the retention sweep, every interval."""

    def __init__(
        self,
        job: ProviderReconciliationJob,
        interval_seconds: Optional[float] = None,
        retention_days: Optional[int] = None,
        session_scope: Callable[[], ContextManager[Session]] = get_session,
        store: Optional[EventStore] = None,
    ):
        self.job = job
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None else config.RECONCILE_INTERVAL_MINUTES * 60
        )
        self.retention_days = retention_days if retention_days is not None else config.EVENT_RETENTION_DAYS
        self.session_scope = session_scope
        self.store = store or event_store

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.is_alive:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="reconciliation-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Reconciliation scheduler started (every {self.interval_seconds:.0f}s)")

    def stop(self, timeout: float = 10.0):
        """Cancel any in-flight run and wait for the thread to exit."""
        self._stop_event.set()
        self.job.cancel()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Reconciliation scheduler did not stop within timeout")
            self._thread = None
        logger.info("Reconciliation scheduler stopped")

    def _loop(self):
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(self.interval_seconds)

    def tick(self):
        """One scheduled pass; errors are logged and retried at the next tick."""
        if self._stop_event.is_set():
            logger.debug("Reconciliation scheduler stopping; skipping tick")
            return

        try:
            self.job.run(stop_event=self._stop_event)
        except ReconciliationFetchError as e:
            logger.error(f"Reconciliation fetch failed, will retry next tick: {e}")
        except Exception as e:
            logger.exception(f"Reconciliation run failed: {e}")

        try:
            self.purge_expired_events()
        except Exception as e:
            logger.error(f"Retention sweep failed: {e}")

    def purge_expired_events(self) -> int:
        cutoff = utcnow() - timedelta(days=self.retention_days)
        with self.session_scope() as db:
            return self.store.purge_older_than(db, cutoff)

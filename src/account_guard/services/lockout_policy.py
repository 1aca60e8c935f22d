"""
Lockout policy: decides whether a subject must be locked.

N failures inside a rolling window lock the account (3 in 24 hours by
default). The decision is recomputed from the event store on every call;
nothing is cached between calls.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from src import config
from src.account_guard.services.account_registry import AccountRegistry, account_registry
from src.account_guard.services.event_store import EventStore, event_store


@dataclass(frozen=True)
class LockDecision:
    subject: str
    failure_count_in_window: int
    should_lock: bool
    is_new_lock: bool  # True only on the unlocked -> locked transition


class LockoutPolicy:
    """Rolling-window failure threshold."""

    def __init__(
        self,
        store: Optional[EventStore] = None,
        registry: Optional[AccountRegistry] = None,
        threshold: Optional[int] = None,
        window: Optional[timedelta] = None,
    ):
        self.store = store or event_store
        self.registry = registry or account_registry
        self.threshold = threshold if threshold is not None else config.LOCKOUT_THRESHOLD
        self.window = window or timedelta(hours=config.LOCKOUT_WINDOW_HOURS)

    def window_bounds(self, now: datetime):
        return now - self.window, now

    def evaluate(self, db: Session, subject: str, now: datetime) -> LockDecision:
        """
        Count the subject's failures in [now - window, now] and decide.

        Must run after the triggering event has been recorded on ``db`` so
        that event is part of the count. The lock flag is read fresh from
        the registry, never from a loaded Account instance.

        Args:
            db: Database session
            subject: Account subject (or raw alias for unresolved identifiers)
            now: Evaluation time; the window ends here inclusively

        Returns:
            LockDecision for the subject
        """
        window_start, window_end = self.window_bounds(now)
        count = self.store.count_in_window(db, subject, window_start, window_end)
        should_lock = count >= self.threshold
        is_new_lock = should_lock and not self.registry.is_locked(db, subject)

        return LockDecision(
            subject=subject,
            failure_count_in_window=count,
            should_lock=should_lock,
            is_new_lock=is_new_lock,
        )

    def attempts_remaining(self, decision: LockDecision) -> int:
        return max(0, self.threshold - decision.failure_count_in_window)


# Global policy instance
lockout_policy = LockoutPolicy()

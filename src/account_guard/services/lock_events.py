"""
Lock notification hook.

Subscribers (session invalidation, alerting) are called with the subject
after every unlocked -> locked transition. A failing subscriber is logged
and does not affect the lock or the other subscribers.
"""

import threading
from typing import Callable, List

from loguru import logger

LockCallback = Callable[[str], None]

_subscribers: List[LockCallback] = []
_subscribers_lock = threading.Lock()


def subscribe(callback: LockCallback):
    """Register a callback for lock transitions (no-op if already registered)"""
    with _subscribers_lock:
        if callback not in _subscribers:
            _subscribers.append(callback)


def notify_locked(subject: str) -> int:
    """Call every subscriber; returns how many completed without error"""
    with _subscribers_lock:
        callbacks = list(_subscribers)

    delivered = 0
    for callback in callbacks:
        try:
            callback(subject)
            delivered += 1
        except Exception as e:
            logger.error(f"Lock subscriber {getattr(callback, '__qualname__', callback)} failed for '{subject}': {e}")
    return delivered

"""
Lock propagation to the identity provider.

Fire-and-log: the local lock is already committed when these calls run, so
a provider failure or timeout is logged and audited but never raised.

Calls for one provider reference run one at a time, and a call that is
still queued when a newer request for the same reference arrives is
dropped, so a late block can never overwrite a later unblock.
"""

import itertools
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from functools import partial
from typing import Dict, Optional, Tuple

from loguru import logger
from sqlalchemy.orm import Session

from src import config
from src.account_guard.errors import PropagationError
from src.account_guard.providers.base_provider import BaseIdentityProvider
from src.account_guard.services.audit_service import audit_service

# Shared worker pool so a hung provider call cannot hold the caller past its timeout
_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="lock-propagation")

_state_lock = threading.Lock()
_ref_locks: Dict[str, threading.Lock] = {}
_latest_request: Dict[str, int] = {}
_request_ids = itertools.count(1)


class LockPropagationGateway(ABC):
    """Pushes local lock state to the remote identity provider"""

    @abstractmethod
    def set_provider_blocked(self, provider_ref: str, blocked: bool) -> None:
        """Raises PropagationError on failure"""

    @abstractmethod
    def get_provider_blocked(self, provider_ref: str) -> Optional[bool]:
        """Current provider block flag, or None when there is no provider"""


class ProviderLockGateway(LockPropagationGateway):
    """Gateway backed by an identity provider client"""

    def __init__(self, provider: BaseIdentityProvider):
        self.provider = provider

    def set_provider_blocked(self, provider_ref: str, blocked: bool) -> None:
        self.provider.set_blocked(provider_ref, blocked)

    def get_provider_blocked(self, provider_ref: str) -> Optional[bool]:
        return self.provider.is_blocked(provider_ref)


class NullLockGateway(LockPropagationGateway):
    """Used when no identity provider is configured; local locks only"""

    def set_provider_blocked(self, provider_ref: str, blocked: bool) -> None:
        logger.debug(f"No identity provider configured; skipping blocked={blocked} for {provider_ref}")

    def get_provider_blocked(self, provider_ref: str) -> Optional[bool]:
        return None


def _register_request(provider_ref: str) -> Tuple[int, threading.Lock]:
    """Mark a new request as the newest for ``provider_ref``."""
    with _state_lock:
        request_id = next(_request_ids)
        _latest_request[provider_ref] = request_id
        ref_lock = _ref_locks.setdefault(provider_ref, threading.Lock())
    return request_id, ref_lock


def _is_latest(provider_ref: str, request_id: int) -> bool:
    with _state_lock:
        return _latest_request.get(provider_ref) == request_id


def _send(
    gateway: LockPropagationGateway,
    provider_ref: str,
    blocked: bool,
    request_id: int,
    ref_lock: threading.Lock,
) -> bool:
    """
    Worker body. Returns False without calling the provider when a newer
    request for the same reference was registered while this one waited.
    """
    with ref_lock:
        if not _is_latest(provider_ref, request_id):
            logger.info(f"Dropped stale blocked={blocked} for {provider_ref}; superseded by a newer request")
            return False
        gateway.set_provider_blocked(provider_ref, blocked)
        return True


def _log_late_outcome(subject: str, provider_ref: str, blocked: bool, future: Future):
    action = "block" if blocked else "unblock"
    try:
        sent = future.result()
    except Exception as e:
        logger.error(f"Provider {action} for '{subject}' ({provider_ref}) failed after its timeout: {e}")
        return
    if sent:
        logger.warning(f"Provider {action} for '{subject}' ({provider_ref}) completed after its timeout")


def propagate_block_state(
    db: Session,
    gateway: LockPropagationGateway,
    subject: str,
    provider_ref: str,
    blocked: bool,
    timeout: Optional[float] = None,
) -> bool:
    """
    Run one gateway call with a bounded wait.

    Failures are written to the audit log on ``db`` (caller commits) for
    manual follow-up. No retries. A call that is still queued at the
    timeout is cancelled; one already talking to the provider cannot be,
    so it is audited as a timeout with an unknown outcome and its late
    result goes to the application log.

    Returns:
        True if the provider acknowledged the change in time
    """
    if timeout is None:
        timeout = config.PROPAGATION_TIMEOUT_SECONDS

    action = "block" if blocked else "unblock"
    request_id, ref_lock = _register_request(provider_ref)
    future = _executor.submit(_send, gateway, provider_ref, blocked, request_id, ref_lock)
    try:
        sent = future.result(timeout=timeout)
    except FutureTimeoutError:
        if future.cancel():
            error = f"timed out after {timeout}s before the call started; cancelled"
        else:
            future.add_done_callback(partial(_log_late_outcome, subject, provider_ref, blocked))
            logger.error(
                f"Provider {action} for '{subject}' ({provider_ref}) timed out after {timeout}s; "
                "call still in flight, local state kept"
            )
            audit_service.log_propagation_timeout(db, subject, provider_ref, blocked, timeout)
            return False
    except PropagationError as e:
        error = str(e)
    except Exception as e:
        error = f"unexpected error: {e}"
    else:
        if sent:
            logger.info(f"Propagated {action} of '{subject}' to identity provider ({provider_ref})")
        return sent

    logger.error(f"Provider {action} for '{subject}' ({provider_ref}) failed: {error}; local state kept")
    audit_service.log_propagation_failed(db, subject, provider_ref, blocked, error)
    return False


def read_block_state(
    gateway: LockPropagationGateway, provider_ref: str, timeout: Optional[float] = None
) -> Optional[bool]:
    """Provider block flag with the same bounded wait; None if it cannot be read."""
    if timeout is None:
        timeout = config.PROPAGATION_TIMEOUT_SECONDS

    future = _executor.submit(gateway.get_provider_blocked, provider_ref)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        future.cancel()
        logger.error(f"Reading provider block state for {provider_ref} timed out after {timeout}s")
    except PropagationError as e:
        logger.error(f"Reading provider block state for {provider_ref} failed: {e}")
    except Exception as e:
        logger.error(f"Unexpected error reading provider block state for {provider_ref}: {e}")
    return None

"""
Exception hierarchy for Account Guard.

Shared by the stores, services, provider clients and API layer so every
module raises and catches the same types.
"""

from typing import Optional


class AccountGuardError(Exception):
    """Base for all Account Guard errors."""


class StorageError(AccountGuardError):
    """Event store or account registry could not be read or written.

    Fatal to the current ingestion call: the caller must not treat the
    attempt as uncounted.
    """


class ResolutionError(AccountGuardError):
    """A subject or alias could not be mapped to an account."""

    def __init__(self, alias: str, message: Optional[str] = None):
        self.alias = alias
        super().__init__(message or f"No account matches '{alias}'")


class PropagationError(AccountGuardError):
    """The identity provider rejected or failed a block/unblock call.

    Always caught at the call site and logged; local lock state wins.
    """

    def __init__(self, provider_ref: str, message: str):
        self.provider_ref = provider_ref
        super().__init__(message)


class ReconciliationFetchError(AccountGuardError):
    """The provider failure log could not be pulled; the run is aborted."""


class AccountConflictError(AccountGuardError):
    """An account write would reuse another account's email or provider reference."""

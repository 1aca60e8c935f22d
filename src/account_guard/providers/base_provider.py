"""
Base provider interface for identity providers
Ensures consistent API for log import and remote blocking
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional


@dataclass
class ProviderLogEntry:
    """One failed-authentication entry from the provider's log"""

    subject_alias: str  # email, provider user id or username, as the provider reports it
    occurred_at: Optional[datetime]  # None when the provider timestamp could not be parsed
    reason_code: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    log_id: Optional[str] = None


class BaseIdentityProvider(ABC):
    """Abstract base class for identity providers"""

    name = "base"

    def is_configured(self) -> bool:
        """Whether credentials are present (override in subclass)"""
        return True

    @abstractmethod
    def fetch_failure_log(
        self, window_start: datetime, window_end: datetime
    ) -> List[ProviderLogEntry]:
        """
        Return every failed-authentication entry in [window_start, window_end].

        Implementations fetch the complete window before returning so the
        caller never works on a partial import.

        Raises:
            ReconciliationFetchError: the log could not be read
        """

    @abstractmethod
    def set_blocked(self, provider_ref: str, blocked: bool) -> None:
        """
        Block or unblock the user at the provider.

        Raises:
            PropagationError: the provider rejected or did not answer the call
        """

    @abstractmethod
    def is_blocked(self, provider_ref: str) -> bool:
        """
        Read the user's block flag at the provider.

        Raises:
            PropagationError: the provider could not be asked
        """

    def close(self):
        """Release network resources (override in subclass)"""

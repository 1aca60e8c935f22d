"""
Auth0 Provider - Management API client for failure-log import and user blocking
Used only when Auth0 management credentials are configured
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from loguru import logger

from src import config
from src.account_guard.errors import PropagationError, ReconciliationFetchError

from .base_provider import BaseIdentityProvider, ProviderLogEntry

# Auth0 log event types that describe a failed or refused login
FAILURE_LOG_TYPES = ("f", "fp", "fu", "limit_wc", "limit_mu")


def _parse_log_date(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _text(log: Dict[str, Any], *keys: str) -> Optional[str]:
    """First non-empty string value among ``keys``"""
    for key in keys:
        value = log.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _format_query_date(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


class Auth0Provider(BaseIdentityProvider):
    """Auth0 Management API provider"""

    name = "auth0"

    def __init__(
        self,
        domain: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        page_size: Optional[int] = None,
        max_pages: Optional[int] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.domain = (domain if domain is not None else config.AUTH0_DOMAIN).strip()
        self.client_id = client_id if client_id is not None else config.AUTH0_MANAGEMENT_CLIENT_ID
        self.client_secret = (
            client_secret if client_secret is not None else config.AUTH0_MANAGEMENT_CLIENT_SECRET
        )
        self.page_size = page_size or config.AUTH0_LOG_PAGE_SIZE
        self.max_pages = max_pages or config.AUTH0_MAX_LOG_PAGES
        self.base_url = f"https://{self.domain}" if self.domain else ""
        self.client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def is_configured(self) -> bool:
        """Check if Auth0 management credentials are present"""
        return bool(self.domain and self.client_id and self.client_secret)

    def _get_management_token(self) -> str:
        """Client-credentials token for the Management API, cached until shortly before expiry"""
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        response = self.client.post(
            "/oauth/token",
            json={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "audience": f"{self.base_url}/api/v2/",
            },
        )
        response.raise_for_status()
        payload = response.json()

        self._token = payload["access_token"]
        expires_in = int(payload.get("expires_in", 3600))
        self._token_expires_at = time.monotonic() + max(0, expires_in - 60)
        logger.debug(f"Obtained Auth0 management token (expires in {expires_in}s)")
        return self._token

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._get_management_token()}"}

    def fetch_failure_log(
        self, window_start: datetime, window_end: datetime
    ) -> List[ProviderLogEntry]:
        """
        Page through /api/v2/logs for failed-login types in the window.

        All pages are read before anything is returned; any HTTP or decoding
        failure aborts the whole fetch.
        """
        if not self.is_configured():
            raise ReconciliationFetchError("Auth0 is not configured")

        query = (
            f"type:({' OR '.join(FAILURE_LOG_TYPES)}) AND "
            f"date:[{_format_query_date(window_start)} TO {_format_query_date(window_end)}]"
        )
        entries: List[ProviderLogEntry] = []

        try:
            for page in range(self.max_pages):
                response = self.client.get(
                    "/api/v2/logs",
                    headers=self._headers(),
                    params={
                        "q": query,
                        "page": page,
                        "per_page": self.page_size,
                        "sort": "date:-1",
                    },
                )
                response.raise_for_status()
                logs = response.json()
                if not isinstance(logs, list):
                    raise ReconciliationFetchError("Unexpected Auth0 log response shape")

                entries.extend(self._to_entry(log) for log in logs)
                if len(logs) < self.page_size:
                    break
            else:
                logger.warning(
                    f"Auth0 log import stopped at the {self.max_pages}-page cap; "
                    "older entries in the window were not read"
                )
        except httpx.HTTPError as e:
            logger.error(f"Auth0 log fetch failed: {e}")
            raise ReconciliationFetchError(f"Auth0 log fetch failed: {e}") from e
        except (ValueError, KeyError) as e:
            logger.error(f"Auth0 log response could not be decoded: {e}")
            raise ReconciliationFetchError(f"Auth0 log response could not be decoded: {e}") from e

        logger.info(f"Fetched {len(entries)} failure log entries from Auth0")
        return entries

    @staticmethod
    def _to_entry(log: Any) -> ProviderLogEntry:
        """Map one log record; malformed records become entries the importer skips"""
        if not isinstance(log, dict):
            logger.warning(f"Auth0 log record is not an object: {log!r:.100}")
            return ProviderLogEntry(subject_alias="", occurred_at=None, reason_code="")

        return ProviderLogEntry(
            subject_alias=_text(log, "user_name", "user_id") or "",
            occurred_at=_parse_log_date(log.get("date")),
            reason_code=_text(log, "type") or "",
            ip_address=_text(log, "ip"),
            user_agent=_text(log, "user_agent"),
            log_id=_text(log, "log_id", "_id"),
        )

    def set_blocked(self, provider_ref: str, blocked: bool) -> None:
        """PATCH the user's ``blocked`` flag"""
        if not self.is_configured():
            raise PropagationError(provider_ref, "Auth0 is not configured")

        try:
            response = self.client.patch(
                f"/api/v2/users/{quote(provider_ref, safe='')}",
                headers=self._headers(),
                json={"blocked": blocked},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise PropagationError(provider_ref, f"Auth0 rejected blocked={blocked}: {e}") from e

        logger.info(f"Auth0 user {provider_ref} {'blocked' if blocked else 'unblocked'}")

    def is_blocked(self, provider_ref: str) -> bool:
        """GET the user and read its ``blocked`` flag"""
        if not self.is_configured():
            raise PropagationError(provider_ref, "Auth0 is not configured")

        try:
            response = self.client.get(
                f"/api/v2/users/{quote(provider_ref, safe='')}",
                headers=self._headers(),
                params={"fields": "user_id,blocked"},
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise PropagationError(provider_ref, f"Auth0 user lookup failed: {e}") from e
        except ValueError as e:
            raise PropagationError(provider_ref, f"Auth0 user response could not be decoded: {e}") from e

        return bool(payload.get("blocked", False)) if isinstance(payload, dict) else False

    def close(self):
        self.client.close()

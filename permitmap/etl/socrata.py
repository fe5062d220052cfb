"""Socrata (SODA) API client helpers."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
import logging
import os
import time

import requests
from requests import Response
from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import SocrataConfig, SyncConfig


LOGGER = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class SocrataError(RuntimeError):
    """Raised when the Socrata API rejects a request."""


class TransientSocrataError(SocrataError):
    """Raised for failures worth retrying (rate limiting, server errors, network)."""


def soql_timestamp(value: datetime) -> str:
    """Render ``value`` as a SoQL timestamp literal in UTC.

    Precision is truncated to milliseconds, which can only move the bound
    earlier, so a ``>`` filter built from it never skips a row.
    """

    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}"


def soql_string(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def build_page_where(
    after: datetime,
    *,
    after_id: str | None = None,
    until: datetime | None = None,
) -> str:
    """Build the rolling watermark filter for one page request.

    With ``after_id`` the filter also admits rows sharing the watermark
    timestamp whose ``:id`` sorts after the last row already applied.
    """

    after_literal = soql_string(soql_timestamp(after))
    if after_id is None:
        clause = f":updated_at > {after_literal}"
    else:
        clause = (
            f"(:updated_at > {after_literal} OR "
            f"(:updated_at = {after_literal} AND :id > {soql_string(after_id)}))"
        )
    if until is not None:
        clause += f" AND :updated_at <= {soql_string(soql_timestamp(until))}"
    return clause


class SocrataClient:
    """Lightweight SODA client with retry handling for transient failures."""

    def __init__(
        self,
        resource_url: str,
        *,
        app_token: str | None = None,
        user_agent: str = "permitmap-sync/1.0",
        timeout: int = 60,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        session: requests.Session | None = None,
    ):
        self.resource_url = resource_url
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self._sleep = sleep
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": user_agent, "Accept": "application/json"})
        if app_token:
            self._session.headers["X-App-Token"] = app_token
        verify = os.getenv("REQUESTS_CA_BUNDLE") or os.getenv("SSL_CERT_FILE")
        if verify and Path(verify).exists():
            self._session.verify = verify

    @classmethod
    def from_config(cls, socrata: SocrataConfig, sync: SyncConfig, **kwargs: Any) -> "SocrataClient":
        return cls(
            socrata.resource_url,
            app_token=socrata.app_token,
            user_agent=socrata.user_agent,
            timeout=socrata.timeout,
            max_attempts=sync.max_attempts,
            retry_base_delay=sync.retry_base_delay,
            retry_max_delay=sync.retry_max_delay,
            **kwargs,
        )

    def close(self) -> None:
        self._session.close()

    def _handle_response(self, response: Response) -> List[Dict[str, Any]]:
        if response.status_code in TRANSIENT_STATUS_CODES:
            raise TransientSocrataError(f"Socrata API error: {response.status_code} {response.reason}")
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise SocrataError(f"{exc}\n{response.text[:500]}") from exc
        try:
            payload = response.json()
        except ValueError as exc:
            raise SocrataError("Socrata returned a non-JSON body") from exc
        if not isinstance(payload, list):
            raise SocrataError(f"Unexpected Socrata payload: {str(payload)[:500]}")
        return payload

    def _get_once(self, params: Dict[str, str]) -> List[Dict[str, Any]]:
        try:
            response = self._session.get(self.resource_url, params=params, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientSocrataError(str(exc)) from exc
        return self._handle_response(response)

    def query(self, params: Dict[str, str]) -> List[Dict[str, Any]]:
        """Run one SODA query, retrying transient failures with exponential backoff."""

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.retry_base_delay,
                min=self.retry_base_delay,
                max=self.retry_max_delay,
            ),
            retry=retry_if_exception_type(TransientSocrataError),
            sleep=self._sleep,
            before_sleep=before_sleep_log(LOGGER, logging.WARNING),
            reraise=True,
        )
        return retrying(self._get_once, params)

    def fetch_page(
        self,
        *,
        after: datetime,
        after_id: str | None = None,
        until: datetime | None = None,
        limit: int = 5000,
    ) -> List[Dict[str, Any]]:
        """Fetch the next page of records newer than the rolling watermark."""

        params = {
            "$select": ":*, *",
            "$where": build_page_where(after, after_id=after_id, until=until),
            "$order": ":updated_at ASC, :id ASC",
            "$limit": str(limit),
        }
        LOGGER.debug("Fetching page where %s", params["$where"])
        return self.query(params)

    def newest_updated_after(self, watermark: datetime) -> Optional[str]:
        """Return the newest ``:updated_at`` beyond ``watermark``, or ``None`` if nothing is newer."""

        rows = self.query(
            {
                "$select": "max(:updated_at) AS max_updated",
                "$where": f":updated_at > {soql_string(soql_timestamp(watermark))}",
                "$limit": "1",
            }
        )
        if not rows:
            return None
        return rows[0].get("max_updated") or None


__all__ = [
    "SocrataClient",
    "SocrataError",
    "TransientSocrataError",
    "build_page_where",
    "soql_timestamp",
]

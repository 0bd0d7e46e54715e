"""
REST ledger service client.

Idempotent by external_id: every entry is looked up before it is POSTed,
so a transfer retried after a partial failure only sends what is missing.
Only lookups are retried by the HTTP adapter; a POST that may have reached
the ledger is never sent twice.
"""

import logging

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .base import LedgerAPIError, LedgerConnectionError, LedgerError
from .entries import LedgerEntry

logger = logging.getLogger(__name__)

TRANSACTIONS_ENDPOINT = "/api/v1/transactions"


class LedgerClient:
    """Ledger REST API backend for approved transactions."""

    DEFAULT_TIMEOUT = 30
    closes_session = False

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

        self.session = requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )
        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _request(self, method: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{TRANSACTIONS_ENDPOINT}"
        logger.debug("Ledger request: %s %s", method, url)
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise LedgerConnectionError(f"Cannot reach ledger at {self.base_url}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise LedgerError(f"Ledger request failed: {e}") from e

        if response.ok:
            return response

        try:
            body = response.json()
        except ValueError:
            body = {}
        message = body.get("message") or response.reason
        logger.error("Ledger error %d on %s: %s", response.status_code, method, message)
        raise LedgerAPIError(
            status_code=response.status_code,
            message=message,
            response_body=response.text,
            errors=body.get("errors"),
        )

    def exists(self, external_id: str) -> bool:
        """Check whether a transaction with this external_id is stored."""
        response = self._request("GET", params={"external_id": external_id})
        return bool(response.json().get("data"))

    def create_transaction(self, entry: LedgerEntry, session_id: str | None = None) -> bool:
        """
        Create one transaction unless it already exists.

        Returns:
            True if created, False if it was already stored
        """
        if self.exists(entry.external_id):
            logger.info("Ledger already has %s", entry.external_id)
            return False

        payload = entry.to_dict()
        if session_id:
            payload["import_session_id"] = session_id

        try:
            response = self._request("POST", json=payload)
        except LedgerAPIError as e:
            if e.status_code != 409:
                raise
            logger.warning("Ledger reported %s as a duplicate", entry.external_id)
            return False

        logger.info(
            "Created ledger transaction %s (%s)",
            response.json().get("data", {}).get("id"),
            entry.external_id,
        )
        return True

    def record_many(self, entries: list[LedgerEntry], session_id: str) -> list[str]:
        """
        Create every missing entry.

        Raises on the first failure; entries created before it stay stored
        and are skipped on the next attempt.
        """
        return [
            entry.external_id
            for entry in entries
            if self.create_transaction(entry, session_id)
        ]

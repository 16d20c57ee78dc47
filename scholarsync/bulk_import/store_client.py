"""
ScholarSync Store Client

The persisted record store the import engine talks to. The engine only
depends on RecordStore; HttpRecordStore is the REST implementation.

Transport failures (connection errors, timeouts, HTTP 5xx) raise
StoreUnavailable and may be retried without re-parsing the upload. HTTP 4xx
and bodies of the wrong shape raise StoreRejected.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import requests

from import_config import (
    CHECK_DUPLICATES_PATH,
    MERGE_IMPORT_PATH,
    RESOLVE_IMPORT_PATH,
    ImportSettings,
)
from import_errors import StoreRejected, StoreUnavailable

logger = logging.getLogger(__name__)


class RecordStore(ABC):
    """
    Interface to the persisted students and disbursements.

    Every method receives and returns plain JSON-shaped values.
    """

    @abstractmethod
    def check_duplicates(self, signatures: list[dict[str, Any]], upload_id: str = "") -> list[dict[str, Any]]:
        """
        Look up possible matches for each signature.

        Returns [{row_index, matches: [{match_type, name, award_number,
        institution, program, db_seq?, score?}]}].
        """

    @abstractmethod
    def resolve_import(self, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Classify an upload against persisted records.

        Returns {clean, auto_merge, conflicts, summary}; matched entries carry
        db_student and db_disbursements snapshots.
        """

    @abstractmethod
    def merge_import(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Apply one commit chunk. Returns {stats, created?}."""


class HttpRecordStore(RecordStore):
    """RecordStore over the REST endpoints, one requests.Session per store."""

    def __init__(self, settings: Optional[ImportSettings] = None, session: Optional[requests.Session] = None):
        self.settings = settings or ImportSettings()
        self.base_url = self.settings.base_url.rstrip("/")
        self.timeout = self.settings.timeout
        self.session = session or requests.Session()
        self._setup_authentication()

    def _setup_authentication(self) -> None:
        self.session.headers.update({"Accept": "application/json"})
        if self.settings.api_key:
            self.session.headers.update({"Authorization": f"Bearer {self.settings.api_key}"})

    def _post(self, path: str, payload: dict[str, Any]) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.Timeout as e:
            logger.warning("[store_client] POST %s timed out after %.1fs", path, self.timeout)
            raise StoreUnavailable(
                reason="Record store timed out",
                details=[url, str(e)],
                operator_fix_steps=["Retry the step; the upload does not need to be parsed again."],
            ) from e
        except requests.RequestException as e:
            logger.warning("[store_client] POST %s failed: %s", path, e)
            raise StoreUnavailable(
                reason="Record store unreachable",
                details=[url, str(e)],
                operator_fix_steps=[
                    "Check the network connection and the store base URL.",
                    "Retry the step; the upload does not need to be parsed again.",
                ],
            ) from e

        status = response.status_code
        if status >= 500:
            logger.warning("[store_client] POST %s returned HTTP %d", path, status)
            raise StoreUnavailable(
                reason=f"Record store error (HTTP {status})",
                details=[url, _body_excerpt(response)],
                operator_fix_steps=["Retry the step later."],
                status_code=status,
            )
        if status >= 400:
            logger.error("[store_client] POST %s rejected with HTTP %d", path, status)
            raise StoreRejected(
                reason=f"Record store rejected the request (HTTP {status})",
                details=[url, _body_excerpt(response)],
                operator_fix_steps=["Review the rejected rows and the store's message, then retry."],
                status_code=status,
            )
        try:
            return response.json()
        except ValueError as e:
            raise StoreRejected(
                reason="Record store returned a body that is not JSON",
                details=[url, _body_excerpt(response)],
                status_code=status,
            ) from e

    def check_duplicates(self, signatures: list[dict[str, Any]], upload_id: str = "") -> list[dict[str, Any]]:
        body = self._post(CHECK_DUPLICATES_PATH, {"upload_id": upload_id, "students": signatures})
        if isinstance(body, dict) and isinstance(body.get("results"), list):
            body = body["results"]
        return _expect(body, list, CHECK_DUPLICATES_PATH)

    def resolve_import(self, payload: dict[str, Any]) -> dict[str, Any]:
        return _expect(self._post(RESOLVE_IMPORT_PATH, payload), dict, RESOLVE_IMPORT_PATH)

    def merge_import(self, payload: dict[str, Any]) -> dict[str, Any]:
        return _expect(self._post(MERGE_IMPORT_PATH, payload), dict, MERGE_IMPORT_PATH)

    def close(self) -> None:
        self.session.close()


def _expect(body: Any, kind: type, path: str):
    if not isinstance(body, kind):
        raise StoreRejected(
            reason="Record store response has an unexpected shape",
            details=[path, f"expected {kind.__name__}, got {type(body).__name__}"],
        )
    return body


def _body_excerpt(response: requests.Response, limit: int = 200) -> str:
    text = response.text or ""
    return text[:limit]

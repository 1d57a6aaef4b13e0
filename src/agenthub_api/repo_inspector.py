from __future__ import annotations

import logging
from typing import Any

import httpx

from agenthub_api.config import Settings
from agenthub_api.redaction import redact_sensitive_text

logger = logging.getLogger(__name__)


class RepoInspector:
    """Client for the repository inspection service.

    Every failure mode (not configured, unreachable, timeout, non-2xx,
    unparsable body) is logged and turned into "no data"; callers treat the
    snapshot as best-effort enrichment.
    """

    def __init__(self, base_url: str | None, *, token: str | None = None, timeout_seconds: float = 5.0) -> None:
        self._base_url = base_url.rstrip("/") if base_url else None
        self._token = token
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "RepoInspector":
        return cls(
            settings.inspector_url,
            token=settings.inspector_token,
            timeout_seconds=settings.inspector_timeout_seconds,
        )

    @property
    def configured(self) -> bool:
        return self._base_url is not None

    def inspect(self) -> dict[str, Any] | None:
        if self._base_url is None:
            logger.warning("repository inspection skipped: INSPECTOR_URL is not configured")
            return None

        snapshot: dict[str, Any] = {}
        repo_info = self._fetch_repo_info()
        if repo_info is not None:
            snapshot["repo_info"] = repo_info
        git_status = self._fetch_git_status()
        if git_status is not None:
            snapshot["git_status"] = git_status
        return snapshot or None

    def _fetch_repo_info(self) -> dict[str, Any] | None:
        response = self._get("/repo-info")
        if response is None:
            return None
        try:
            data = response.json()
        except ValueError as exc:
            logger.warning("repository inspection returned unparsable repo info: %s", exc)
            return None
        if not isinstance(data, dict):
            logger.warning("repository inspection returned repo info that is not an object")
            return None
        return data

    def _fetch_git_status(self) -> str | None:
        response = self._get("/git-status")
        if response is None:
            return None
        return response.text

    def _get(self, path: str) -> httpx.Response | None:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        url = f"{self._base_url}{path}"
        try:
            response = httpx.get(url, headers=headers, timeout=self._timeout_seconds)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            sanitized_error = redact_sensitive_text(str(exc), extra_secrets=(self._token or "",))
            logger.warning("repository inspection call %s failed: %s", path, sanitized_error)
            return None
        return response

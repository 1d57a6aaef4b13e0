from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_UNSAFE_ID_CHARS_RE = re.compile(r"[^a-zA-Z0-9._-]")


def sanitize_project_id(project_id: str) -> str:
    return _UNSAFE_ID_CHARS_RE.sub("_", project_id)


def project_file_name(project_id: str) -> str:
    sanitized = sanitize_project_id(project_id)
    if sanitized != project_id:
        # "~" never survives sanitization, so hashed names cannot clash with plain ones.
        digest = hashlib.sha256(project_id.encode("utf-8")).hexdigest()[:12]
        sanitized = f"{sanitized}~{digest}"
    return f"{sanitized}.json"


class ProjectStateFiles:
    """One pretty-printed JSON document per project under ``state_dir``.

    Writes for the same project are serialized. Every call to :meth:`save`
    gets a submission number; a submission that is older than one already
    written is skipped because each document is a full snapshot, so the file
    always converges to the most recently submitted state.

    Write failures are logged and counted, never raised: the in-memory state
    held by the caller stays authoritative.
    """

    def __init__(self, state_dir: str | Path) -> None:
        self._state_dir = Path(state_dir).expanduser()
        self._guard = threading.Lock()
        self._file_locks: dict[str, threading.Lock] = {}
        self._submitted: dict[str, int] = {}
        self._attempted: dict[str, int] = {}
        self.failed_writes = 0
        self.last_error: str | None = None

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    @property
    def healthy(self) -> bool:
        return self.last_error is None

    def path_for(self, project_id: str) -> Path:
        return self._state_dir / project_file_name(project_id)

    def load(self, project_id: str) -> dict[str, Any] | None:
        path = self.path_for(project_id)
        with self._file_lock(project_id):
            if not path.exists():
                return None
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
                logger.error("cannot read state document %s: %s", path, exc)
                self._quarantine_locked(path)
                return None
        if not isinstance(data, dict):
            logger.error("state document %s is not a JSON object", path)
            self.quarantine(project_id)
            return None
        return data

    def quarantine(self, project_id: str) -> Path | None:
        with self._file_lock(project_id):
            return self._quarantine_locked(self.path_for(project_id))

    def save(self, project_id: str, payload: dict[str, Any]) -> bool:
        with self._guard:
            submission = self._submitted.get(project_id, 0) + 1
            self._submitted[project_id] = submission
            lock = self._file_locks.setdefault(project_id, threading.Lock())

        with lock:
            if self._attempted.get(project_id, 0) >= submission:
                return True
            self._attempted[project_id] = submission
            path = self.path_for(project_id)
            try:
                self._write_atomic(path, payload)
            except (OSError, TypeError, ValueError) as exc:
                self.failed_writes += 1
                self.last_error = f"{path}: {exc}"
                logger.error(
                    "persistence failure for project %r, in-memory state is now ahead of disk: %s",
                    project_id,
                    exc,
                )
                return False

        if self.last_error is not None:
            logger.info("persistence recovered for project %r", project_id)
            self.last_error = None
        return True

    def _file_lock(self, project_id: str) -> threading.Lock:
        with self._guard:
            return self._file_locks.setdefault(project_id, threading.Lock())

    def _write_atomic(self, path: Path, payload: dict[str, Any]) -> None:
        text = json.dumps(payload, ensure_ascii=False, indent=2)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.tmp")
        tmp_path.write_text(text + "\n", encoding="utf-8")
        tmp_path.replace(path)

    @staticmethod
    def _quarantine_locked(path: Path) -> Path | None:
        if not path.exists():
            return None
        target = path.with_name(f"{path.name}.corrupt")
        try:
            path.replace(target)
        except OSError as exc:
            logger.error("cannot quarantine state document %s: %s", path, exc)
            return None
        logger.error("quarantined unreadable state document %s as %s", path, target)
        return target

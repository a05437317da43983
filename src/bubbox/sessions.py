"""Persistent mapping from conversation to its last backend session."""

from __future__ import annotations

import json
import os
import threading
from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class SessionRecord:
    """Last known backend state for one conversation."""

    conversation_id: str
    session_id: str | None = None
    backend: dict[str, Any] = field(default_factory=dict)
    updated_at: str = field(default_factory=_now)

    @property
    def runtime(self) -> str | None:
        value = self.backend.get("runtime")
        return value if isinstance(value, str) else None

    @classmethod
    def from_payload(cls, conversation_id: str, payload: object) -> SessionRecord | None:
        if not isinstance(payload, dict):
            return None
        session_id = payload.get("session_id")
        if session_id is not None and not isinstance(session_id, str):
            return None
        backend = payload.get("backend")
        if not isinstance(backend, dict):
            backend = {}
        updated_at = payload.get("updated_at")
        if not isinstance(updated_at, str):
            updated_at = _now()
        return cls(conversation_id, session_id, dict(backend), updated_at)


class SessionRegistry:
    """
    A JSON-file key-value store for session records.

    The registry never checks whether a stored session id is still valid; the
    worker revalidates it against the backend on every launch.
    """

    def __init__(self, file_path: str | Path) -> None:
        self.file_path = Path(file_path)
        self._lock = threading.RLock()
        self._records: dict[str, SessionRecord] = self._load()

    def _load(self) -> dict[str, SessionRecord]:
        """Load records from the JSON file."""
        if not self.file_path.exists():
            return {}
        try:
            with open(self.file_path, encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error("sessions.load_failed path={} error={}", self.file_path, e)
            return {}
        if not isinstance(raw, dict):
            logger.error("sessions.load_failed path={} error=not an object", self.file_path)
            return {}
        records: dict[str, SessionRecord] = {}
        for conversation_id, payload in raw.items():
            record = SessionRecord.from_payload(conversation_id, payload)
            if record is None:
                logger.warning("sessions.skip_malformed conversation={}", conversation_id)
                continue
            records[conversation_id] = record
        return records

    def _save(self) -> None:
        """Write all records through a temporary file."""
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        data = {key: {k: v for k, v in asdict(rec).items() if k != "conversation_id"} for key, rec in self._records.items()}
        staging = self.file_path.with_suffix(".json.tmp")
        try:
            with open(staging, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(staging, self.file_path)
        except OSError as e:
            logger.error("sessions.save_failed path={} error={}", self.file_path, e)

    def get(self, conversation_id: str) -> SessionRecord | None:
        with self._lock:
            return self._records.get(conversation_id)

    def session_id(self, conversation_id: str) -> str | None:
        record = self.get(conversation_id)
        return record.session_id if record is not None else None

    def set_session(self, conversation_id: str, session_id: str) -> SessionRecord:
        """Remember the session id reported by the latest result frame."""
        with self._lock:
            current = self._records.get(conversation_id) or SessionRecord(conversation_id)
            if current.session_id == session_id and conversation_id in self._records:
                return current
            record = replace(current, session_id=session_id, updated_at=_now())
            self._records[conversation_id] = record
            self._save()
            return record

    def set_backend(self, conversation_id: str, backend: dict[str, Any]) -> SessionRecord:
        """Pin the runtime and model configuration used for a conversation."""
        with self._lock:
            current = self._records.get(conversation_id) or SessionRecord(conversation_id)
            record = replace(current, backend=dict(backend), updated_at=_now())
            self._records[conversation_id] = record
            self._save()
            return record

    def forget(self, conversation_id: str) -> bool:
        with self._lock:
            if self._records.pop(conversation_id, None) is None:
                return False
            self._save()
            return True

    def all(self) -> list[SessionRecord]:
        with self._lock:
            return sorted(self._records.values(), key=lambda record: record.conversation_id)

"""JSONL tape store kept in the conversation folder."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import cast
from urllib.parse import quote, unquote

from loguru import logger
from republic.tape import InMemoryQueryMixin, TapeEntry

TAPE_FILE_SUFFIX = ".jsonl"


class TapeFile:
    """Append-only entries for one tape, read incrementally."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._entries: list[TapeEntry] = []
        self._offset = 0

    def _next_id(self) -> int:
        if self._entries:
            return cast(int, self._entries[-1].id + 1)
        return 1

    def reset(self) -> None:
        with self._lock:
            self.path.unlink(missing_ok=True)
            self._entries = []
            self._offset = 0

    def read(self) -> list[TapeEntry]:
        with self._lock:
            return self._read_locked()

    def _read_locked(self) -> list[TapeEntry]:
        if not self.path.exists():
            self._entries = []
            self._offset = 0
            return []
        if self.path.stat().st_size < self._offset:
            self._entries = []
            self._offset = 0

        with self.path.open("r", encoding="utf-8") as handle:
            handle.seek(self._offset)
            for raw_line in handle:
                line = raw_line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("tape.skip_malformed path={}", self.path.name)
                    continue
                entry = _entry_from_payload(payload)
                if entry is not None:
                    self._entries.append(entry)
            self._offset = handle.tell()
        return list(self._entries)

    def append(self, entry: TapeEntry) -> None:
        with self._lock:
            self._read_locked()
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                stored = TapeEntry(self._next_id(), entry.kind, dict(entry.payload), dict(entry.meta))
                handle.write(json.dumps(_entry_to_payload(stored), ensure_ascii=False) + "\n")
                self._entries.append(stored)
                self._offset = handle.tell()


class FileTapeStore(InMemoryQueryMixin):
    """Republic tape store with one JSONL file per tape under ``root``.

    A tape doubles as a conversation session: it exists once its file does.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self._files: dict[str, TapeFile] = {}
        self._lock = threading.Lock()

    def list_tapes(self) -> list[str]:
        if not self.root.is_dir():
            return []
        names = (unquote(path.name.removesuffix(TAPE_FILE_SUFFIX)) for path in self.root.glob(f"*{TAPE_FILE_SUFFIX}"))
        return sorted(names)

    def exists(self, tape: str) -> bool:
        return self._tape_file(tape).path.exists()

    def reset(self, tape: str) -> None:
        self._tape_file(tape).reset()

    def read(self, tape: str) -> list[TapeEntry] | None:
        tape_file = self._tape_file(tape)
        if not tape_file.path.exists():
            return None
        return tape_file.read()

    def append(self, tape: str, entry: TapeEntry) -> None:
        self._tape_file(tape).append(entry)

    def _tape_file(self, tape: str) -> TapeFile:
        with self._lock:
            if tape not in self._files:
                self._files[tape] = TapeFile(self.root / f"{quote(tape, safe='')}{TAPE_FILE_SUFFIX}")
            return self._files[tape]


def _entry_to_payload(entry: TapeEntry) -> dict[str, object]:
    return {
        "id": entry.id,
        "kind": entry.kind,
        "payload": dict(entry.payload),
        "meta": dict(entry.meta),
        "timestamp": entry.timestamp,
    }


def _entry_from_payload(payload: object) -> TapeEntry | None:
    if not isinstance(payload, dict):
        return None
    entry_id = payload.get("id")
    kind = payload.get("kind")
    entry_payload = payload.get("payload")
    if not isinstance(entry_id, int) or not isinstance(kind, str) or not isinstance(entry_payload, dict):
        return None
    meta = payload.get("meta")
    if not isinstance(meta, dict):
        meta = {}
    return TapeEntry(entry_id, kind, dict(entry_payload), dict(meta), payload.get("timestamp", 0.0))

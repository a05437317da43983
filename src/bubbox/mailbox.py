"""Filesystem mailbox feeding follow-up input to one live worker."""

from __future__ import annotations

import json
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

MESSAGE_SUFFIX = ".json"
CLOSE_SENTINEL = "_close"
MESSAGE_TYPE = "message"


@dataclass(frozen=True)
class MailboxMessage:
    """One follow-up record."""

    name: str
    text: str


class Mailbox:
    """At-most-once inbound queue plus a close sentinel under one directory.

    The host only creates records and the worker only removes them, so no
    locking is needed across processes. Every record is written to a temporary
    name first and renamed into place, which keeps half-written files out of
    ``drain``.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self._lock = threading.Lock()
        self._last_ms = 0
        self._counter = 0
        self.last_drained: str | None = None

    @property
    def sentinel(self) -> Path:
        return self.root / CLOSE_SENTINEL

    def _ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def _next_name(self) -> str:
        with self._lock:
            now_ms = max(int(time.time() * 1000), self._last_ms)
            if now_ms == self._last_ms:
                self._counter += 1
            else:
                self._counter = 0
            self._last_ms = now_ms
            return f"{now_ms:013d}-{self._counter:06d}{MESSAGE_SUFFIX}"

    def publish(self, text: str) -> Path:
        """Queue one text message; returns the record path."""

        self._ensure_root()
        target = self.root / self._next_name()
        staging = target.with_name(f".{target.name}.tmp")
        staging.write_text(json.dumps({"type": MESSAGE_TYPE, "text": text}, ensure_ascii=False), encoding="utf-8")
        os.replace(staging, target)
        logger.debug("mailbox.publish record={} chars={}", target.name, len(text))
        return target

    def pending(self) -> list[Path]:
        if not self.root.is_dir():
            return []
        return sorted(self.root.glob(f"*{MESSAGE_SUFFIX}"))

    def drain(self) -> list[MailboxMessage]:
        """Read and remove every pending message, in name order.

        ``last_drained`` keeps the name of the newest record removed, skipped
        records included.
        """

        self._ensure_root()
        messages: list[MailboxMessage] = []
        for path in self.pending():
            try:
                raw = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                continue
            _unlink(path)
            self.last_drained = path.name
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError as exc:
                logger.warning("mailbox.malformed record={} error={}", path.name, exc)
                continue
            if not isinstance(payload, dict) or payload.get("type") != MESSAGE_TYPE:
                logger.warning("mailbox.unsupported record={}", path.name)
                continue
            text = payload.get("text")
            if not isinstance(text, str) or not text:
                logger.warning("mailbox.empty record={}", path.name)
                continue
            messages.append(MailboxMessage(name=path.name, text=text))
        return messages

    def drain_text(self) -> str | None:
        """Drain and join pending texts with newlines; ``None`` when empty."""

        messages = self.drain()
        if not messages:
            return None
        return "\n".join(message.text for message in messages)

    def request_close(self) -> None:
        self._ensure_root()
        self.sentinel.touch(exist_ok=True)
        logger.debug("mailbox.close_requested root={}", self.root)

    def poll_close(self) -> bool:
        """Consume the sentinel; ``True`` when it was present."""

        if not self.sentinel.exists():
            return False
        _unlink(self.sentinel)
        return True


def _unlink(path: Path) -> None:
    # Another actor removing the record first still counts as consumed.
    path.unlink(missing_ok=True)

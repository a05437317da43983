"""Backend driving the Republic LLM client, one tape per session."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from loguru import logger
from republic import LLM
from republic.tape import TapeEntry

from bubbox.errors import BackendError
from bubbox.protocol import RepublicBackend, TaskEnvelope
from bubbox.worker.backends.tape_store import FileTapeStore

INSTRUCTIONS_FILE = "CLAUDE.md"
MAX_INSTRUCTIONS_CHARS = 12_000


class RepublicAgent:
    def __init__(self, config: RepublicBackend, envelope: TaskEnvelope, group_dir: Path, *, llm: Any = None) -> None:
        self.config = config
        self.envelope = envelope
        self.group_dir = group_dir
        self.store = FileTapeStore(group_dir / ".tapes")
        self._llm = llm
        self._partial: dict[str, asyncio.Queue[str]] = {}

    async def start(self) -> None:
        if self._llm is not None:
            return
        try:
            self._llm = LLM(
                self.config.model,
                api_key=self.envelope.secret(self.config.api_key),
                api_base=self.config.api_base,
                tape_store=self.store,
            )
        except Exception as exc:
            raise BackendError(f"republic client setup failed: {exc!s}") from exc
        logger.info("republic.ready model={}", self.config.model)

    async def session_exists(self, session_id: str) -> bool:
        return self.store.exists(session_id)

    async def create_session(self, title: str) -> str:
        session_id = f"{title}-{uuid.uuid4().hex[:8]}"
        self.store.append(session_id, TapeEntry(0, "anchor", {"name": "session/start"}, {"title": title}))
        return session_id

    async def prompt(self, session_id: str, text: str) -> str:
        if self._llm is None:
            raise BackendError("republic backend is not started")
        queue = self._queue(session_id)
        tape = self._llm.tape(session_id)
        try:
            stream = await tape.stream_events_async(
                prompt=text,
                system_prompt=self._system_prompt(),
                max_tokens=self.config.max_tokens,
            )
        except Exception as exc:
            raise BackendError(f"model call failed: {exc!s}") from exc

        accumulated = ""
        final_event: dict[str, Any] | None = None
        error_event: dict[str, Any] | None = None
        async for event in stream:
            kind = getattr(event, "kind", None)
            data = getattr(event, "data", None)
            if not isinstance(data, dict):
                continue
            if kind == "text":
                delta = data.get("delta")
                if isinstance(delta, str) and delta:
                    accumulated += delta
                    queue.put_nowait(accumulated)
            elif kind == "error":
                error_event = data
            elif kind == "final":
                final_event = data

        if (stream_error := getattr(stream, "error", None)) is not None:
            raise BackendError(_format_error(stream_error))
        if error_event is not None or (final_event is not None and final_event.get("ok") is False):
            raise BackendError(_format_error_event(error_event))
        if final_event is not None and isinstance(final_text := final_event.get("text"), str):
            return final_text
        return accumulated

    async def partial_output(self, session_id: str) -> AsyncIterator[str]:
        queue = self._queue(session_id)
        while True:
            yield await queue.get()

    async def close(self) -> None:
        self._partial.clear()

    def _queue(self, session_id: str) -> asyncio.Queue[str]:
        return self._partial.setdefault(session_id, asyncio.Queue())

    def _system_prompt(self) -> str | None:
        blocks = [block for block in (self.config.system_prompt, self._read_instructions()) if block]
        return "\n\n".join(blocks) or None

    def _read_instructions(self) -> str:
        path = self.group_dir / INSTRUCTIONS_FILE
        if not path.is_file():
            return ""
        try:
            content = path.read_text(encoding="utf-8").strip()
        except OSError:
            return ""
        return content[:MAX_INSTRUCTIONS_CHARS]


def _format_error(error: object) -> str:
    kind = getattr(error, "kind", None)
    message = getattr(error, "message", None)
    kind_value = getattr(kind, "value", kind)
    if isinstance(kind_value, str) and isinstance(message, str):
        return f"{kind_value}: {message}"
    if isinstance(message, str):
        return message
    return str(error)


def _format_error_event(error_event: dict[str, Any] | None) -> str:
    if error_event is None:
        return "model_error: unknown"
    kind = error_event.get("kind")
    message = error_event.get("message")
    if isinstance(kind, str) and isinstance(message, str):
        return f"{kind}: {message}"
    if isinstance(message, str):
        return message
    return "model_error: unknown"

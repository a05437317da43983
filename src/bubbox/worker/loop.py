"""Request/response loop run by the worker inside the sandbox."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Callable
from contextlib import suppress
from enum import StrEnum

from loguru import logger

from bubbox.errors import BackendError
from bubbox.mailbox import Mailbox
from bubbox.protocol import ResultFrame, TaskEnvelope, mark_scheduled
from bubbox.worker.backends.base import AgentBackend

DEFAULT_POLL_INTERVAL = 0.5


class WorkerState(StrEnum):
    INITIALIZING = "initializing"
    RESOLVING_SESSION = "resolving_session"
    ROUND_ACTIVE = "round_active"
    AWAITING_INPUT = "awaiting_input"
    CLOSING = "closing"
    CLOSED = "closed"


def write_stdout(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


class WorkerLoop:
    """Drive one backend session until the close sentinel or a fatal failure.

    Every round ends in exactly one frame on ``emit``. Diagnostics go to the
    logger, which writes to stderr inside the worker.
    """

    def __init__(
        self,
        envelope: TaskEnvelope,
        backend: AgentBackend,
        mailbox: Mailbox,
        *,
        emit: Callable[[str], None] = write_stdout,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        session_title: str | None = None,
    ) -> None:
        self.envelope = envelope
        self.backend = backend
        self.mailbox = mailbox
        self.emit = emit
        self.poll_interval = poll_interval
        self.session_title = session_title or f"bubbox-{envelope.conversation_id}"
        self.state = WorkerState.INITIALIZING
        self.session_id: str | None = None
        self.rounds = 0
        self._latest_text = ""
        self._listener: asyncio.Task[None] | None = None

    async def run(self) -> int:
        """Run to completion; returns the process exit code."""

        with logger.contextualize(conversation=self.envelope.conversation_id):
            try:
                return await self._run()
            finally:
                await self._shutdown()

    async def _run(self) -> int:
        try:
            await self.backend.start()
            self.state = WorkerState.RESOLVING_SESSION
            session_id = await self._resolve_session()
        except BackendError as exc:
            logger.error("worker.setup_failed error={}", exc)
            self._write(ResultFrame.failure(str(exc), self.envelope.session_id))
            return 1

        self.session_id = session_id
        self._listener = asyncio.create_task(self._listen(session_id))
        prompt: str | None = self._first_prompt()
        while prompt is not None:
            if await self._round(session_id, prompt):
                return 1
            if self.mailbox.poll_close():
                logger.info("worker.close_after_round rounds={}", self.rounds)
                return 0
            prompt = await self._await_input()
        return 0

    async def _resolve_session(self) -> str:
        prior = self.envelope.session_id
        if prior and await self.backend.session_exists(prior):
            logger.info("worker.session_resumed session={}", prior)
            return prior
        if prior:
            logger.warning("worker.session_stale session={}", prior)
        session_id = await self.backend.create_session(self.session_title)
        logger.info("worker.session_created session={}", session_id)
        return session_id

    def _first_prompt(self) -> str:
        prompt = self.envelope.prompt
        if self.envelope.is_scheduled_task:
            prompt = mark_scheduled(prompt)
        if pending := self.mailbox.drain_text():
            logger.info("worker.folded_pending chars={}", len(pending))
            prompt = f"{prompt}\n{pending}"
        return prompt

    async def _round(self, session_id: str, prompt: str) -> bool:
        """Run one round and emit its frame; ``True`` when the worker must stop."""

        self.state = WorkerState.ROUND_ACTIVE
        self.rounds += 1
        self._latest_text = ""
        timeout = self.envelope.round_timeout_seconds
        logger.info("worker.round rounds={} chars={}", self.rounds, len(prompt))
        try:
            async with asyncio.timeout(timeout):
                reply = await self.backend.prompt(session_id, prompt)
        except TimeoutError:
            logger.error("worker.round_timeout budget={}s fatal={}", timeout, self.envelope.round_timeout_is_fatal)
            self._write(ResultFrame.failure(f"round timed out after {timeout:g}s", session_id))
            return self.envelope.round_timeout_is_fatal
        except BackendError as exc:
            logger.error("worker.round_failed error={}", exc)
            self._write(ResultFrame.failure(str(exc), session_id))
            return False
        except Exception as exc:
            logger.exception("worker.round_error")
            self._write(ResultFrame.failure(f"{type(exc).__name__}: {exc!s}", session_id))
            return False

        text = reply or self._latest_text or None
        self._write(ResultFrame.success(text, session_id))
        return False

    async def _await_input(self) -> str | None:
        self.state = WorkerState.AWAITING_INPUT
        while True:
            if self.mailbox.poll_close():
                logger.info("worker.close_requested rounds={}", self.rounds)
                return None
            if (text := self.mailbox.drain_text()) is not None:
                return text
            await asyncio.sleep(self.poll_interval)

    async def _listen(self, session_id: str) -> None:
        try:
            async for text in self.backend.partial_output(session_id):
                self._latest_text = text
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("worker.listener_stopped error={}", exc)

    async def _shutdown(self) -> None:
        self.state = WorkerState.CLOSING
        if self._listener is not None:
            self._listener.cancel()
            with suppress(asyncio.CancelledError):
                await self._listener
        try:
            await self.backend.close()
        except Exception:
            logger.exception("worker.backend_close_failed")
        self.state = WorkerState.CLOSED
        logger.info("worker.closed rounds={}", self.rounds)

    def _write(self, frame: ResultFrame) -> None:
        # Tag the frame with the newest mailbox record it answers.
        frame.last_input = self.mailbox.last_drained
        self.emit(frame.render())

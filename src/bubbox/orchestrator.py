"""Host-side driver keeping one sandboxed worker per active conversation."""

from __future__ import annotations

import asyncio
import shutil
from collections.abc import Awaitable, Callable, Mapping
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Literal

from loguru import logger

from bubbox.config import Settings
from bubbox.errors import BubboxError, LaunchError, ProtocolError
from bubbox.mailbox import Mailbox
from bubbox.protocol import (
    FrameParser,
    OpenCodeBackend,
    RepublicBackend,
    ResultFrame,
    TaskEnvelope,
    mark_scheduled,
    parse_backend,
)
from bubbox.sandbox import Mount, WorkerHandle, WorkerLauncher
from bubbox.sessions import SessionRecord, SessionRegistry
from bubbox.supervisor import cleanup_orphans

ReplyStatus = Literal["success", "error", "timeout"]
SendOutcome = Literal["launched", "queued"]

# Share of the worker budget a single round may use when a conversation
# overrides the budget below the configured round timeout.
ROUND_BUDGET_SHARE = 0.9


@dataclass(frozen=True)
class Conversation:
    """Identity and sandbox inputs for one conversation."""

    id: str
    chat_jid: str | None = None
    is_main: bool = False
    mounts: tuple[Mount, ...] = ()
    secrets: Mapping[str, str] = field(default_factory=dict, repr=False)
    backend: OpenCodeBackend | RepublicBackend | None = None
    timeout_seconds: float | None = None


@dataclass(frozen=True)
class Reply:
    """What the caller sees for one round."""

    conversation_id: str
    status: ReplyStatus
    text: str | None = None
    error: str | None = None
    session_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "success"


@dataclass(frozen=True)
class WorkerExit:
    """Summary of one worker's lifetime."""

    conversation_id: str
    instance: str
    exit_code: int | None
    frames: int
    timed_out: bool = False
    closed: bool = False


OnReply = Callable[[Reply], Awaitable[None]]


@dataclass
class _LiveWorker:
    conversation: Conversation
    handle: WorkerHandle
    mailbox: Mailbox
    parser: FrameParser = field(default_factory=FrameParser)
    published: list[str] = field(default_factory=list)
    answered_through: str | None = None
    frames: int = 0
    closing: bool = False
    exiting: bool = False
    timed_out: bool = False
    task: asyncio.Task[WorkerExit] | None = None

    def unanswered(self) -> list[str]:
        """Follow-up records no frame has covered yet."""
        return [name for name in self.published if self.answered_through is None or name > self.answered_through]

    @property
    def owes_reply(self) -> bool:
        return self.frames == 0 or bool(self.unanswered())


class Orchestrator:
    """Launch, feed, close and reap workers; one per conversation at a time."""

    def __init__(
        self,
        settings: Settings,
        *,
        launcher: WorkerLauncher | None = None,
        registry: SessionRegistry | None = None,
        on_reply: OnReply | None = None,
    ) -> None:
        self.settings = settings
        self.launcher = launcher or WorkerLauncher(settings)
        self.registry = registry or SessionRegistry(settings.sessions_file)
        self.on_reply = on_reply
        self._workers: dict[str, _LiveWorker] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._background: set[asyncio.Task[SendOutcome]] = set()
        self._started = False
        self._stopping = False

    async def __aenter__(self) -> Orchestrator:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    async def start(self) -> list[str]:
        """Reap orphans from a previous host process; runs once."""

        if self._started:
            return []
        self._started = True
        return await cleanup_orphans(
            self.launcher.runtime,
            self.launcher.name_prefix,
            grace_seconds=self.settings.kill_grace_seconds,
        )

    def is_active(self, conversation_id: str) -> bool:
        live = self._workers.get(conversation_id)
        return live is not None and not live.closing and not live.exiting

    def active_conversations(self) -> list[str]:
        return [cid for cid in self._workers if self.is_active(cid)]

    async def send(self, conversation: Conversation, prompt: str, *, scheduled: bool = False) -> SendOutcome:
        """Deliver one turn: follow-up to the live worker, or a fresh launch."""

        if self._stopping:
            raise BubboxError("orchestrator is shutting down")
        if not self._started:
            await self.start()

        lock = self._locks.setdefault(conversation.id, asyncio.Lock())
        async with lock:
            live = self._workers.get(conversation.id)
            if live is not None and not live.closing and not live.exiting:
                record = live.mailbox.publish(mark_scheduled(prompt) if scheduled else prompt)
                live.published.append(record.name)
                logger.info("orchestrator.queued conversation={} instance={}", conversation.id, live.handle.name)
                return "queued"
            if live is not None and live.task is not None:
                await asyncio.wait({live.task})
            await self._launch(conversation, prompt, scheduled=scheduled)
            return "launched"

    async def wait(self, conversation_id: str) -> WorkerExit | None:
        """Wait until the conversation's current worker exits."""

        live = self._workers.get(conversation_id)
        if live is None or live.task is None:
            return None
        return await asyncio.shield(live.task)

    async def close(self, conversation_id: str) -> WorkerExit | None:
        """Ask the worker to finish, escalating to stop and kill if it lingers."""

        live = self._workers.get(conversation_id)
        if live is None or live.task is None:
            return None
        if not live.closing:
            live.closing = True
            live.mailbox.request_close()
            logger.info("orchestrator.close conversation={} instance={}", conversation_id, live.handle.name)
            done, _ = await asyncio.wait({live.task}, timeout=self.settings.close_grace_seconds)
            if not done:
                logger.warning("orchestrator.close_overdue instance={}", live.handle.name)
                await self._escalate(live)
        return await asyncio.shield(live.task)

    async def shutdown(self) -> None:
        self._stopping = True
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*(self.close(cid) for cid in list(self._workers)))

    def _backend_for(
        self, conversation: Conversation, record: SessionRecord | None
    ) -> OpenCodeBackend | RepublicBackend:
        if conversation.backend is not None:
            return conversation.backend
        if record is not None and record.backend:
            try:
                return parse_backend(record.backend)
            except ProtocolError as exc:
                logger.warning("orchestrator.stored_backend_invalid conversation={} error={}", conversation.id, exc)
        return self._default_backend()

    def _default_backend(self) -> OpenCodeBackend | RepublicBackend:
        overrides: dict[str, object] = {"api_key": self.settings.api_key_secret}
        if self.settings.model:
            overrides["model"] = self.settings.model
        if self.settings.runtime == "republic":
            return RepublicBackend(**overrides)  # type: ignore[arg-type]
        return OpenCodeBackend(provider=self.settings.provider, **overrides)  # type: ignore[arg-type]

    def _round_timeout(self, lifetime: float) -> float:
        if self.settings.round_timeout_seconds < lifetime:
            return self.settings.round_timeout_seconds
        return lifetime * ROUND_BUDGET_SHARE

    async def _launch(self, conversation: Conversation, prompt: str, *, scheduled: bool) -> _LiveWorker:
        record = self.registry.get(conversation.id)
        backend = self._backend_for(conversation, record)
        lifetime = conversation.timeout_seconds or self.settings.worker_timeout_seconds
        envelope = TaskEnvelope(
            prompt=prompt,
            conversation_id=conversation.id,
            session_id=record.session_id if record is not None else None,
            chat_jid=conversation.chat_jid,
            is_main=conversation.is_main,
            is_scheduled_task=scheduled,
            secrets=dict(conversation.secrets),
            backend=backend,
            round_timeout_seconds=self._round_timeout(lifetime),
            round_timeout_is_fatal=self.settings.round_timeout_is_fatal,
            poll_interval_seconds=self.settings.poll_interval_seconds,
        )
        spec = self.launcher.build_spec(conversation.id, mounts=conversation.mounts, timeout_seconds=lifetime)
        try:
            handle = await self.launcher.launch(spec)
        except LaunchError:
            logger.exception("orchestrator.launch_failed conversation={} instance={}", conversation.id, spec.name)
            shutil.rmtree(self.settings.mailbox_dir(spec.name).parent, ignore_errors=True)
            raise

        self.registry.set_backend(conversation.id, backend.model_dump(mode="json"))
        live = _LiveWorker(conversation=conversation, handle=handle, mailbox=Mailbox(handle.mailbox_root))
        self._workers[conversation.id] = live
        await self._write_envelope(live, envelope)
        live.task = asyncio.create_task(self._drive(live), name=f"bubbox:{handle.name}")
        logger.info(
            "orchestrator.launched conversation={} instance={} runtime={} resume={}",
            conversation.id,
            handle.name,
            backend.runtime,
            envelope.session_id or "-",
        )
        return live

    async def _write_envelope(self, live: _LiveWorker, envelope: TaskEnvelope) -> None:
        stdin = live.handle.process.stdin
        if stdin is None:
            raise LaunchError("worker stdin is not writable", instance=live.handle.name)
        try:
            stdin.write(envelope.to_json().encode("utf-8") + b"\n")
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning("orchestrator.envelope_write_failed instance={} error={}", live.handle.name, exc)
        finally:
            stdin.close()
            with suppress(BrokenPipeError, ConnectionResetError):
                await stdin.wait_closed()

    async def _drive(self, live: _LiveWorker) -> WorkerExit:
        process = live.handle.process
        with logger.contextualize(conversation=live.conversation.id):
            stderr_task = asyncio.create_task(self._pump_stderr(live))
            try:
                async with asyncio.timeout(live.handle.timeout_seconds):
                    await self._pump_frames(live)
                    await process.wait()
            except TimeoutError:
                live.timed_out = True
                logger.warning(
                    "orchestrator.timeout instance={} budget={}s", live.handle.name, live.handle.timeout_seconds
                )
                await self._escalate(live)
                # Frames already written before the kill are still delivered.
                with suppress(TimeoutError):
                    async with asyncio.timeout(self.settings.kill_grace_seconds):
                        await self._pump_frames(live)
            finally:
                live.exiting = True
            _, pending = await asyncio.wait({stderr_task}, timeout=self.settings.kill_grace_seconds)
            for task in pending:
                task.cancel()
            return await self._finish(live)

    async def _pump_frames(self, live: _LiveWorker) -> None:
        stdout = live.handle.process.stdout
        if stdout is None:
            return
        while True:
            try:
                line = await stdout.readline()
            except ValueError as exc:
                # Over-long line: the reader already discarded it.
                logger.warning("orchestrator.line_dropped instance={} error={}", live.handle.name, exc)
                continue
            if not line:
                return
            frame = live.parser.feed(line.decode("utf-8", errors="replace"))
            if frame is not None:
                await self._deliver(live, frame)

    async def _pump_stderr(self, live: _LiveWorker) -> None:
        stderr = live.handle.process.stderr
        if stderr is None:
            return
        while line := await stderr.readline():
            logger.debug("worker.stderr instance={} {}", live.handle.name, line.decode("utf-8", errors="replace").rstrip())

    async def _deliver(self, live: _LiveWorker, frame: ResultFrame) -> None:
        cid = live.conversation.id
        live.frames += 1
        if frame.last_input and (live.answered_through is None or frame.last_input > live.answered_through):
            live.answered_through = frame.last_input
        if frame.new_session_id:
            self.registry.set_session(cid, frame.new_session_id)
        logger.info(
            "orchestrator.frame instance={} status={} session={} chars={}",
            live.handle.name,
            frame.status,
            frame.new_session_id or "-",
            len(frame.result or ""),
        )
        if frame.status == "error":
            await self._emit(Reply(cid, "error", error=frame.error, session_id=frame.new_session_id))
        elif not frame.is_announcement:
            await self._emit(Reply(cid, "success", text=frame.result, session_id=frame.new_session_id))

    async def _escalate(self, live: _LiveWorker) -> None:
        """Stop the instance, then kill it if it outlives the grace window."""

        name = live.handle.name
        process = live.handle.process
        grace = self.settings.kill_grace_seconds
        await self.launcher.runtime.stop(name, grace_seconds=grace)
        if await _wait_exit(process, grace):
            return
        logger.warning("orchestrator.kill instance={}", name)
        await self.launcher.runtime.kill(name)
        if await _wait_exit(process, grace):
            return
        logger.error("orchestrator.kill_client instance={}", name)
        with suppress(ProcessLookupError):
            process.kill()
        await process.wait()

    async def _finish(self, live: _LiveWorker) -> WorkerExit:
        cid = live.conversation.id
        name = live.handle.name
        leftover = [] if live.closing else live.mailbox.drain()
        shutil.rmtree(live.handle.mailbox_root.parent, ignore_errors=True)
        if self._workers.get(cid) is live:
            del self._workers[cid]

        exit_code = live.handle.process.returncode
        unanswered = f"worker {name} exited with code {exit_code} before replying"
        if live.timed_out:
            if live.owes_reply:
                budget = live.handle.timeout_seconds
                await self._emit(Reply(cid, "timeout", error=f"worker {name} timed out after {budget:g}s"))
            if leftover:
                logger.warning("orchestrator.dropped_followups instance={}", name)
        elif live.closing:
            if live.owes_reply:
                logger.info("orchestrator.closed_unanswered instance={}", name)
        elif leftover and live.frames > 0 and not self._stopping:
            carried = {message.name for message in leftover}
            # Follow-ups the dead worker consumed but never answered.
            if any(record not in carried for record in live.unanswered()):
                await self._emit(Reply(cid, "error", error=unanswered))
            text = "\n".join(message.text for message in leftover)
            logger.info("orchestrator.replace instance={} carried_chars={}", name, len(text))
            task = asyncio.create_task(self.send(live.conversation, text))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        elif live.owes_reply:
            await self._emit(Reply(cid, "error", error=unanswered))

        logger.info(
            "orchestrator.exited instance={} code={} frames={} timed_out={}",
            name,
            exit_code,
            live.frames,
            live.timed_out,
        )
        return WorkerExit(
            conversation_id=cid,
            instance=name,
            exit_code=exit_code,
            frames=live.frames,
            timed_out=live.timed_out,
            closed=live.closing,
        )

    async def _emit(self, reply: Reply) -> None:
        if self.on_reply is None:
            logger.info("orchestrator.reply conversation={} status={}", reply.conversation_id, reply.status)
            return
        try:
            await self.on_reply(reply)
        except Exception:
            logger.exception("orchestrator.reply_callback_failed conversation={}", reply.conversation_id)


async def _wait_exit(process: asyncio.subprocess.Process, timeout: float) -> bool:
    try:
        async with asyncio.timeout(timeout):
            await process.wait()
    except TimeoutError:
        return False
    return True

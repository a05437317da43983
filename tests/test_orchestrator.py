from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from bubbox.config import Settings
from bubbox.errors import BubboxError, LaunchError
from bubbox.mailbox import Mailbox
from bubbox.orchestrator import Conversation, Orchestrator, Reply
from bubbox.protocol import OUTPUT_END_MARKER, RepublicBackend, TaskEnvelope
from bubbox.sandbox import SANDBOX_MAILBOX_PATH, ContainerRuntime, SandboxSpec, WorkerLauncher
from bubbox.worker.loop import WorkerLoop


class EchoBackend:
    def __init__(self) -> None:
        self.sessions: set[str] = set()
        self.start_delay = 0.0
        self.prompts: list[str] = []
        self.delays: dict[str, float] = {}
        self.hang_on: set[str] = set()
        self.crash_on: set[str] = set()

    async def start(self) -> None:
        if self.start_delay:
            await asyncio.sleep(self.start_delay)

    async def session_exists(self, session_id: str) -> bool:
        return session_id in self.sessions

    async def create_session(self, title: str) -> str:
        session_id = f"s{len(self.sessions) + 1}"
        self.sessions.add(session_id)
        return session_id

    async def prompt(self, session_id: str, text: str) -> str:
        self.prompts.append(text)
        if text in self.crash_on:
            # The container dies mid-round.
            raise asyncio.CancelledError
        if text in self.hang_on:
            await asyncio.sleep(60)
        await asyncio.sleep(self.delays.get(text, 0))
        return f"re: {text}"

    async def partial_output(self, session_id: str) -> AsyncIterator[str]:
        await asyncio.Event().wait()
        yield ""

    async def close(self) -> None:
        return None


class FakeStdin:
    def __init__(self, on_close) -> None:
        self.buffer = bytearray()
        self.closed = False
        self._on_close = on_close

    def write(self, data: bytes) -> None:
        self.buffer.extend(data)

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._on_close(bytes(self.buffer))

    async def wait_closed(self) -> None:
        return None


class FakeProcess:
    """A worker container: the real loop running in-process behind pipe-like streams."""

    def __init__(self, runtime: FakeRuntime, spec: SandboxSpec, *, crash: bool, crash_after: int | None) -> None:
        self.runtime = runtime
        self.spec = spec
        self.crash = crash
        self.crash_after = crash_after
        self.stdin = FakeStdin(self._boot)
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode: int | None = None
        self.pid = 4242
        self.frames = 0
        self._done = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def mailbox_root(self) -> Path:
        return next(mount.host_path for mount in self.spec.mounts if mount.sandbox_path == SANDBOX_MAILBOX_PATH)

    def _boot(self, raw: bytes) -> None:
        self._task = asyncio.create_task(self._serve(raw))

    async def _serve(self, raw: bytes) -> None:
        code = 1
        try:
            envelope = TaskEnvelope.from_json(raw)
            self.runtime.envelopes.append(envelope)
            if self.crash:
                return
            loop = WorkerLoop(
                envelope,
                self.runtime.backend,
                Mailbox(self.mailbox_root),
                emit=self._emit,
                poll_interval=envelope.poll_interval_seconds,
            )
            code = await loop.run()
        except asyncio.CancelledError:
            code = 137
        finally:
            self._exit(code)

    def _emit(self, text: str) -> None:
        self.stdout.feed_data(text.encode("utf-8"))
        self.frames += text.count(OUTPUT_END_MARKER)
        if self.crash_after is not None and self.frames >= self.crash_after and self._task is not None:
            self._task.cancel()

    def _exit(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._done.set()

    async def wait(self) -> int:
        await self._done.wait()
        assert self.returncode is not None
        return self.returncode

    def kill(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        else:
            self._exit(-9)


class FakeRuntime(ContainerRuntime):
    def __init__(self, *, image: bool = True, orphans: list[str] | None = None) -> None:
        super().__init__("fake-docker")
        self.image = image
        self.orphans = list(orphans or [])
        self.backend = EchoBackend()
        self.envelopes: list[TaskEnvelope] = []
        self.processes: dict[str, FakeProcess] = {}
        self.stopped: list[str] = []
        self.killed: list[str] = []
        self.ignore_stop = False
        self.crash_next = False
        self.crash_after: list[int] = []

    async def image_exists(self, image: str) -> bool:
        return self.image

    async def start(self, spec: SandboxSpec) -> asyncio.subprocess.Process:
        crash_after = self.crash_after.pop(0) if self.crash_after else None
        process = FakeProcess(self, spec, crash=self.crash_next, crash_after=crash_after)
        self.crash_next = False
        self.processes[spec.name] = process
        return process  # type: ignore[return-value]

    async def stop(self, name: str, *, grace_seconds: float = 10.0) -> bool:
        self.stopped.append(name)
        if name in self.orphans:
            self.orphans.remove(name)
            return True
        process = self.processes.get(name)
        if process is None:
            return False
        if not self.ignore_stop:
            process.kill()
        return True

    async def kill(self, name: str) -> bool:
        self.killed.append(name)
        process = self.processes.get(name)
        if process is None:
            return False
        process.kill()
        return True

    async def list_names(self, prefix: str) -> list[str]:
        return [name for name in self.orphans if name.startswith(prefix)]


def _orchestrator(settings: Settings, runtime: FakeRuntime, replies: list[Reply]) -> Orchestrator:
    async def on_reply(reply: Reply) -> None:
        replies.append(reply)

    return Orchestrator(settings, launcher=WorkerLauncher(settings, runtime), on_reply=on_reply)


async def _wait_for(predicate, timeout: float = 3.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_normal_turn_records_session_and_closes(settings: Settings) -> None:
    runtime = FakeRuntime()
    replies: list[Reply] = []
    orchestrator = _orchestrator(settings, runtime, replies)
    chat = Conversation("chat-1")

    assert await orchestrator.send(chat, "hello") == "launched"
    await _wait_for(lambda: len(replies) == 1)
    exit_info = await orchestrator.close("chat-1")

    assert replies == [Reply("chat-1", "success", text="re: hello", session_id="s1")]
    assert orchestrator.registry.session_id("chat-1") == "s1"
    assert exit_info is not None
    assert exit_info.closed and exit_info.exit_code == 0 and exit_info.frames == 1
    assert not settings.mailbox_dir(exit_info.instance).exists()
    assert not orchestrator.is_active("chat-1")


@pytest.mark.asyncio
async def test_follow_up_goes_through_mailbox(settings: Settings) -> None:
    runtime = FakeRuntime()
    replies: list[Reply] = []
    orchestrator = _orchestrator(settings, runtime, replies)
    chat = Conversation("chat-1")

    await orchestrator.send(chat, "hello")
    await _wait_for(lambda: len(replies) == 1)
    assert await orchestrator.send(chat, "again") == "queued"
    await _wait_for(lambda: len(replies) == 2)
    await orchestrator.shutdown()

    assert [reply.text for reply in replies] == ["re: hello", "re: again"]
    assert {reply.session_id for reply in replies} == {"s1"}
    assert len(runtime.envelopes) == 1


@pytest.mark.asyncio
async def test_new_worker_resumes_recorded_session(settings: Settings) -> None:
    runtime = FakeRuntime()
    replies: list[Reply] = []
    orchestrator = _orchestrator(settings, runtime, replies)
    chat = Conversation("chat-1", backend=RepublicBackend(model="m"))

    await orchestrator.send(chat, "hello")
    await _wait_for(lambda: len(replies) == 1)
    await orchestrator.close("chat-1")
    assert await orchestrator.send(Conversation("chat-1"), "later") == "launched"
    await _wait_for(lambda: len(replies) == 2)
    await orchestrator.shutdown()

    assert runtime.envelopes[0].session_id is None
    assert runtime.envelopes[1].session_id == "s1"
    assert runtime.envelopes[1].backend == RepublicBackend(model="m")
    assert replies[1].session_id == "s1"


@pytest.mark.asyncio
async def test_lifetime_timeout_reports_timeout(settings: Settings) -> None:
    runtime = FakeRuntime()
    runtime.backend.start_delay = 60
    replies: list[Reply] = []
    orchestrator = _orchestrator(settings, runtime, replies)

    await orchestrator.send(Conversation("slow", timeout_seconds=0.2), "hello")
    exit_info = await orchestrator.wait("slow")

    assert exit_info is not None and exit_info.timed_out
    assert [reply.status for reply in replies] == ["timeout"]
    assert runtime.stopped == [exit_info.instance]
    assert orchestrator.registry.session_id("slow") is None


@pytest.mark.asyncio
async def test_exit_without_reply_is_an_error(settings: Settings) -> None:
    runtime = FakeRuntime()
    runtime.crash_next = True
    replies: list[Reply] = []
    orchestrator = _orchestrator(settings, runtime, replies)

    await orchestrator.send(Conversation("chat-1"), "hello")
    exit_info = await orchestrator.wait("chat-1")

    assert exit_info is not None and exit_info.exit_code == 1
    assert len(replies) == 1
    assert replies[0].status == "error"
    assert "before replying" in (replies[0].error or "")
    assert orchestrator.registry.session_id("chat-1") is None


@pytest.mark.asyncio
async def test_follow_up_left_by_a_dead_worker_moves_to_a_new_one(settings: Settings) -> None:
    runtime = FakeRuntime()
    runtime.crash_after = [1]
    replies: list[Reply] = []
    orchestrator = _orchestrator(settings, runtime, replies)
    chat = Conversation("chat-1")

    async def on_reply(reply: Reply) -> None:
        replies.append(reply)
        if len(replies) == 1:
            await orchestrator.send(chat, "again")

    orchestrator.on_reply = on_reply
    await orchestrator.send(chat, "hello")
    await _wait_for(lambda: len(replies) == 2)
    await orchestrator.shutdown()

    assert [reply.text for reply in replies] == ["re: hello", "re: again"]
    assert [envelope.prompt for envelope in runtime.envelopes] == ["hello", "again"]
    assert runtime.envelopes[1].session_id == "s1"


@pytest.mark.asyncio
async def test_launch_error_reaches_caller(settings: Settings) -> None:
    orchestrator = _orchestrator(settings, FakeRuntime(image=False), [])

    with pytest.raises(LaunchError):
        await orchestrator.send(Conversation("chat-1"), "hello")
    assert orchestrator.active_conversations() == []
    assert not (settings.resolve_home() / "ipc").exists() or not any((settings.resolve_home() / "ipc").iterdir())


@pytest.mark.asyncio
async def test_start_reaps_orphans_once(settings: Settings) -> None:
    runtime = FakeRuntime(orphans=["bubbox-old-1-aa", "other"])
    orchestrator = _orchestrator(settings, runtime, [])

    assert await orchestrator.start() == ["bubbox-old-1-aa"]
    assert await orchestrator.start() == []
    assert runtime.orphans == ["other"]


@pytest.mark.asyncio
async def test_shutdown_closes_every_worker(settings: Settings) -> None:
    runtime = FakeRuntime()
    replies: list[Reply] = []
    async with _orchestrator(settings, runtime, replies) as orchestrator:
        await orchestrator.send(Conversation("a"), "one")
        await orchestrator.send(Conversation("b"), "two")
        await _wait_for(lambda: len(replies) == 2)
        assert sorted(orchestrator.active_conversations()) == ["a", "b"]

    assert orchestrator.active_conversations() == []
    assert all(process.returncode == 0 for process in runtime.processes.values())
    with pytest.raises(BubboxError, match="shutting down"):
        await orchestrator.send(Conversation("a"), "three")


@pytest.mark.asyncio
async def test_envelope_carries_worker_settings(settings: Settings) -> None:
    runtime = FakeRuntime()
    replies: list[Reply] = []
    orchestrator = _orchestrator(settings, runtime, replies)

    await orchestrator.send(Conversation("chat-1"), "hello")
    await _wait_for(lambda: len(replies) == 1)
    await orchestrator.shutdown()

    envelope = runtime.envelopes[0]
    assert envelope.poll_interval_seconds == settings.poll_interval_seconds
    assert envelope.round_timeout_seconds == settings.round_timeout_seconds
    assert envelope.round_timeout_is_fatal is settings.round_timeout_is_fatal


@pytest.mark.asyncio
async def test_crash_after_follow_up_was_taken_is_an_error(settings: Settings) -> None:
    runtime = FakeRuntime()
    runtime.backend.delays["hello"] = 0.3
    runtime.backend.crash_on.add("again")
    replies: list[Reply] = []
    orchestrator = _orchestrator(settings, runtime, replies)
    chat = Conversation("chat-1")

    await orchestrator.send(chat, "hello")
    await _wait_for(lambda: "hello" in runtime.backend.prompts)
    assert await orchestrator.send(chat, "again") == "queued"
    exit_info = await orchestrator.wait("chat-1")

    assert exit_info is not None and exit_info.exit_code == 137
    assert runtime.backend.prompts == ["hello", "again"]
    assert [(reply.status, reply.text) for reply in replies] == [("success", "re: hello"), ("error", None)]
    assert "before replying" in (replies[1].error or "")
    assert len(runtime.envelopes) == 1


@pytest.mark.asyncio
async def test_lifetime_timeout_during_follow_up_round_reports_timeout(settings: Settings) -> None:
    runtime = FakeRuntime()
    runtime.backend.delays["hello"] = 0.3
    runtime.backend.hang_on.add("again")
    replies: list[Reply] = []
    orchestrator = _orchestrator(settings, runtime, replies)
    chat = Conversation("chat-1", timeout_seconds=1.0)

    await orchestrator.send(chat, "hello")
    await _wait_for(lambda: "hello" in runtime.backend.prompts)
    await orchestrator.send(chat, "again")
    exit_info = await orchestrator.wait("chat-1")

    assert exit_info is not None and exit_info.timed_out
    assert [reply.status for reply in replies] == ["success", "timeout"]
    assert orchestrator.registry.session_id("chat-1") == "s1"


@pytest.mark.asyncio
async def test_idle_worker_past_its_budget_stops_silently(settings: Settings) -> None:
    runtime = FakeRuntime()
    replies: list[Reply] = []
    orchestrator = _orchestrator(settings, runtime, replies)
    chat = Conversation("chat-1", timeout_seconds=0.5)

    await orchestrator.send(chat, "hello")
    await _wait_for(lambda: len(replies) == 1)
    await orchestrator.send(chat, "again")
    exit_info = await orchestrator.wait("chat-1")

    assert exit_info is not None and exit_info.timed_out
    assert [reply.text for reply in replies] == ["re: hello", "re: again"]


@pytest.mark.asyncio
async def test_round_timeout_ends_worker_and_next_turn_resumes(settings: Settings) -> None:
    settings = settings.model_copy(update={"round_timeout_seconds": 0.2})
    runtime = FakeRuntime()
    runtime.backend.hang_on.add("hello")
    replies: list[Reply] = []
    orchestrator = _orchestrator(settings, runtime, replies)
    chat = Conversation("chat-1")

    await orchestrator.send(chat, "hello")
    exit_info = await orchestrator.wait("chat-1")

    assert exit_info is not None and exit_info.exit_code == 1 and not exit_info.timed_out
    assert [reply.status for reply in replies] == ["error"]
    assert "timed out" in (replies[0].error or "")
    assert orchestrator.registry.session_id("chat-1") == "s1"

    assert await orchestrator.send(chat, "later") == "launched"
    await _wait_for(lambda: len(replies) == 2)
    await orchestrator.shutdown()

    assert runtime.envelopes[1].session_id == "s1"
    assert replies[1] == Reply("chat-1", "success", text="re: later", session_id="s1")


@pytest.mark.asyncio
async def test_close_escalates_to_stop_then_kill(settings: Settings) -> None:
    runtime = FakeRuntime()
    runtime.ignore_stop = True
    runtime.backend.hang_on.add("hello")
    replies: list[Reply] = []
    orchestrator = _orchestrator(settings, runtime, replies)

    await orchestrator.send(Conversation("chat-1"), "hello")
    await _wait_for(lambda: "hello" in runtime.backend.prompts)
    exit_info = await orchestrator.close("chat-1")

    assert exit_info is not None and exit_info.closed and not exit_info.timed_out
    assert runtime.stopped == [exit_info.instance]
    assert runtime.killed == [exit_info.instance]
    assert replies == []

"""Sandbox specs, the container runtime CLI wrapper, and the worker launcher."""

from __future__ import annotations

import asyncio
import secrets
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from bubbox.config import Settings, conversation_slug
from bubbox.errors import LaunchError

SANDBOX_MAILBOX_PATH = "/workspace/ipc/input"
SANDBOX_GROUP_PATH = "/workspace/group"
STREAM_LIMIT_BYTES = 16 * 1024 * 1024
CLI_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class Mount:
    """One pre-validated host path exposed inside the sandbox."""

    host_path: Path
    sandbox_path: str
    readonly: bool = False

    def to_args(self) -> list[str]:
        suffix = ":ro" if self.readonly else ""
        return ["-v", f"{self.host_path}:{self.sandbox_path}{suffix}"]


@dataclass(frozen=True)
class SandboxSpec:
    """Everything needed to start one worker instance."""

    image: str
    name: str
    mounts: tuple[Mount, ...]
    timeout_seconds: float
    env: tuple[tuple[str, str], ...] = ()

    def run_args(self) -> list[str]:
        args = ["run", "-i", "--rm", "--name", self.name]
        for mount in self.mounts:
            args.extend(mount.to_args())
        for key, value in self.env:
            args.extend(["-e", f"{key}={value}"])
        args.append(self.image)
        return args


@dataclass
class WorkerHandle:
    """A started worker: its instance name and the local process driving it."""

    name: str
    process: asyncio.subprocess.Process
    timeout_seconds: float
    mailbox_root: Path


class ContainerRuntime:
    """Async wrapper over a docker-compatible CLI."""

    def __init__(self, binary: str = "docker") -> None:
        self.binary = binary

    async def _exec(self, *args: str, timeout: float = CLI_TIMEOUT_SECONDS) -> tuple[int, str, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return 127, "", f"{exc!s}"
        try:
            async with asyncio.timeout(timeout):
                stdout, stderr = await proc.communicate()
        except TimeoutError:
            proc.kill()
            await proc.wait()
            return 124, "", f"{self.binary} {args[0]} timed out"
        return (
            proc.returncode if proc.returncode is not None else 1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def image_exists(self, image: str) -> bool:
        code, _, _ = await self._exec("image", "inspect", image)
        return code == 0

    async def start(self, spec: SandboxSpec) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            self.binary,
            *spec.run_args(),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT_BYTES,
        )

    async def stop(self, name: str, *, grace_seconds: float = 10.0) -> bool:
        code, _, stderr = await self._exec("stop", "-t", str(int(grace_seconds)), name, timeout=grace_seconds + 15)
        if code != 0:
            logger.warning("runtime.stop_failed instance={} code={} stderr={}", name, code, stderr.strip())
        return code == 0

    async def kill(self, name: str) -> bool:
        code, _, stderr = await self._exec("kill", name)
        if code != 0:
            logger.warning("runtime.kill_failed instance={} code={} stderr={}", name, code, stderr.strip())
        return code == 0

    async def list_names(self, prefix: str) -> list[str]:
        code, stdout, stderr = await self._exec("ps", "--filter", f"name=^{prefix}", "--format", "{{.Names}}")
        if code != 0:
            logger.warning("runtime.list_failed code={} stderr={}", code, stderr.strip())
            return []
        return [line.strip() for line in stdout.splitlines() if line.strip().startswith(prefix)]


class WorkerLauncher:
    """Build sandbox specs and start worker instances."""

    def __init__(self, settings: Settings, runtime: ContainerRuntime | None = None) -> None:
        self.settings = settings
        self.runtime = runtime or ContainerRuntime(settings.container_runtime)

    @property
    def name_prefix(self) -> str:
        return f"{self.settings.instance_prefix}-"

    def new_instance_name(self, conversation_id: str) -> str:
        stamp = int(time.time() * 1000)
        return f"{self.name_prefix}{conversation_slug(conversation_id)}-{stamp}-{secrets.token_hex(3)}"

    def build_spec(
        self,
        conversation_id: str,
        *,
        name: str | None = None,
        mounts: Sequence[Mount] = (),
        timeout_seconds: float | None = None,
    ) -> SandboxSpec:
        name = name or self.new_instance_name(conversation_id)
        group_dir = self.settings.conversation_dir(conversation_id)
        mailbox_dir = self.settings.mailbox_dir(name)
        group_dir.mkdir(parents=True, exist_ok=True)
        mailbox_dir.mkdir(parents=True, exist_ok=True)
        ordered = (
            Mount(group_dir, SANDBOX_GROUP_PATH),
            Mount(mailbox_dir, SANDBOX_MAILBOX_PATH),
            *mounts,
        )
        return SandboxSpec(
            image=self.settings.image,
            name=name,
            mounts=ordered,
            timeout_seconds=timeout_seconds or self.settings.worker_timeout_seconds,
            env=(("BUBBOX_LOG_LEVEL", self.settings.log_level),),
        )

    async def launch(self, spec: SandboxSpec) -> WorkerHandle:
        """Start the instance; raise ``LaunchError`` when it cannot be created."""

        _check_mounts(spec.mounts)
        if not await self.runtime.image_exists(spec.image):
            raise LaunchError(f"sandbox image not found: {spec.image}", instance=spec.name)
        try:
            process = await self.runtime.start(spec)
        except OSError as exc:
            raise LaunchError(f"failed to start {spec.name}: {exc!s}", instance=spec.name) from exc
        code = await _early_exit(process, self.settings.launch_check_seconds)
        if code is not None and code != 0:
            detail = await _read_stderr(process)
            logger.error("launcher.early_exit instance={} code={} stderr={}", spec.name, code, detail)
            message = f"{spec.name} exited with code {code} at startup"
            raise LaunchError(f"{message}: {detail}" if detail else message, instance=spec.name)
        logger.info("launcher.started instance={} mounts={}", spec.name, len(spec.mounts))
        return WorkerHandle(
            name=spec.name,
            process=process,
            timeout_seconds=spec.timeout_seconds,
            mailbox_root=self.settings.mailbox_dir(spec.name),
        )


def _check_mounts(mounts: Iterable[Mount]) -> None:
    for mount in mounts:
        if not mount.host_path.exists():
            raise LaunchError(f"mount source does not exist: {mount.host_path}")
        if not mount.sandbox_path.startswith("/"):
            raise LaunchError(f"mount target must be absolute: {mount.sandbox_path}")


async def _early_exit(process: asyncio.subprocess.Process, window: float) -> int | None:
    if window <= 0:
        return process.returncode
    try:
        async with asyncio.timeout(window):
            return await process.wait()
    except TimeoutError:
        return None


async def _read_stderr(process: asyncio.subprocess.Process) -> str:
    if process.stderr is None:
        return ""
    try:
        async with asyncio.timeout(CLI_TIMEOUT_SECONDS):
            raw = await process.stderr.read()
    except TimeoutError:
        return ""
    return raw.decode("utf-8", errors="replace").strip()

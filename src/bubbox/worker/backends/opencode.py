"""Backend speaking HTTP to an ``opencode serve`` process in the sandbox."""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import AsyncIterator, Sequence
from contextlib import suppress
from pathlib import Path
from typing import Any

import httpx
from loguru import logger

from bubbox.errors import BackendError, SessionNotFoundError
from bubbox.protocol import OpenCodeBackend, TaskEnvelope

OPENCODE_HOST = "127.0.0.1"
OPENCODE_PORT = 4096
CONFIG_FILE = "opencode.json"
CONFIG_SCHEMA = "https://opencode.ai/config.json"
MCP_SERVER_NAME = "bubbox"
STARTUP_TIMEOUT_SECONDS = 30.0
STOP_TIMEOUT_SECONDS = 5.0
PART_UPDATED_EVENT = "message.part.updated"


def build_config(config: OpenCodeBackend, envelope: TaskEnvelope, group_folder: str) -> dict[str, Any]:
    """Render ``opencode.json`` for one worker lifetime."""

    provider: dict[str, Any] = {}
    if api_key := envelope.secret(config.api_key):
        provider["apiKey"] = api_key
    rendered: dict[str, Any] = {
        "$schema": CONFIG_SCHEMA,
        "model": config.model,
        "permission": {"edit": "allow", "bash": "allow", "webfetch": "allow"},
        "provider": {config.provider: provider},
        "instructions": ["CLAUDE.md"],
    }
    if config.mcp_command:
        rendered["mcp"] = {
            MCP_SERVER_NAME: {
                "type": "local",
                "command": list(config.mcp_command),
                "environment": {
                    "BUBBOX_CHAT_JID": envelope.chat_jid or "",
                    "BUBBOX_GROUP_FOLDER": group_folder,
                    "BUBBOX_IS_MAIN": "1" if envelope.is_main else "0",
                },
            }
        }
    return rendered


def extract_text(parts: object) -> str:
    if not isinstance(parts, list):
        return ""
    return "".join(
        part["text"]
        for part in parts
        if isinstance(part, dict) and part.get("type") == "text" and isinstance(part.get("text"), str)
    )


class OpenCodeAgent:
    """Runs ``opencode serve`` and talks to it over its HTTP API.

    Pass ``command=()`` together with a prepared ``client`` to reuse a server
    that is already running.
    """

    def __init__(
        self,
        config: OpenCodeBackend,
        envelope: TaskEnvelope,
        group_dir: Path,
        *,
        client: httpx.AsyncClient | None = None,
        command: Sequence[str] = ("opencode", "serve", "--hostname", OPENCODE_HOST, "--port", str(OPENCODE_PORT)),
    ) -> None:
        self.config = config
        self.envelope = envelope
        self.group_dir = group_dir
        self.command = tuple(command)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=f"http://{OPENCODE_HOST}:{OPENCODE_PORT}",
            timeout=httpx.Timeout(30.0, read=None),
        )
        self._server: asyncio.subprocess.Process | None = None

    @property
    def config_path(self) -> Path:
        return self.group_dir / CONFIG_FILE

    def write_config(self) -> Path:
        self.group_dir.mkdir(parents=True, exist_ok=True)
        payload = build_config(self.config, self.envelope, self.group_dir.name)
        self.config_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        logger.info("opencode.config path={} model={}", self.config_path, self.config.model)
        return self.config_path

    async def start(self) -> None:
        self.write_config()
        if self.command:
            env = {**os.environ, "OPENCODE_PROJECT": str(self.group_dir)}
            try:
                self._server = await asyncio.create_subprocess_exec(*self.command, cwd=self.group_dir, env=env)
            except OSError as exc:
                raise BackendError(f"failed to start opencode: {exc!s}") from exc
        await self._wait_ready()
        logger.info("opencode.ready")

    async def _wait_ready(self) -> None:
        try:
            async with asyncio.timeout(STARTUP_TIMEOUT_SECONDS):
                while True:
                    if self._server is not None and self._server.returncode is not None:
                        raise BackendError(f"opencode exited with code {self._server.returncode} during startup")
                    with suppress(httpx.TransportError):
                        response = await self._client.get("/config")
                        if response.status_code == httpx.codes.OK:
                            return
                    await asyncio.sleep(0.2)
        except TimeoutError as exc:
            raise BackendError(f"opencode not ready after {STARTUP_TIMEOUT_SECONDS:g}s") from exc

    async def session_exists(self, session_id: str) -> bool:
        response = await self._request("GET", f"/session/{session_id}")
        if response.status_code == httpx.codes.NOT_FOUND:
            return False
        _raise_for_status(response, "session lookup")
        return True

    async def create_session(self, title: str) -> str:
        response = await self._request("POST", "/session", json={"title": title})
        _raise_for_status(response, "session create")
        session_id = _json(response).get("id")
        if not isinstance(session_id, str) or not session_id:
            raise BackendError("session create returned no id")
        return session_id

    async def prompt(self, session_id: str, text: str) -> str:
        response = await self._request(
            "POST",
            f"/session/{session_id}/message",
            json={"parts": [{"type": "text", "text": text}]},
            timeout=None,
        )
        if response.status_code == httpx.codes.NOT_FOUND:
            raise SessionNotFoundError(f"session {session_id} not found")
        _raise_for_status(response, "prompt")
        return extract_text(_json(response).get("parts"))

    async def partial_output(self, session_id: str) -> AsyncIterator[str]:
        async with self._client.stream("GET", "/event", timeout=None) as response:
            _raise_for_status(response, "event stream")
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                try:
                    event = json.loads(line[len("data:") :].strip())
                except json.JSONDecodeError:
                    continue
                if text := _part_text(event, session_id):
                    yield text

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
        if self._server is None or self._server.returncode is not None:
            return
        self._server.terminate()
        try:
            async with asyncio.timeout(STOP_TIMEOUT_SECONDS):
                await self._server.wait()
        except TimeoutError:
            logger.warning("opencode.kill pid={}", self._server.pid)
            self._server.kill()
            await self._server.wait()
        logger.info("opencode.stopped")

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise BackendError(f"opencode {method} {url} failed: {exc!s}") from exc


def _raise_for_status(response: httpx.Response, action: str) -> None:
    if response.is_success:
        return
    try:
        detail = response.text[:200]
    except httpx.ResponseNotRead:
        detail = ""
    raise BackendError(f"{action} failed with HTTP {response.status_code} {detail}".rstrip())


def _json(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as exc:
        raise BackendError(f"invalid JSON from opencode: {exc!s}") from exc
    return payload if isinstance(payload, dict) else {}


def _part_text(event: object, session_id: str) -> str | None:
    if not isinstance(event, dict) or event.get("type") != PART_UPDATED_EVENT:
        return None
    properties = event.get("properties")
    part = properties.get("part") if isinstance(properties, dict) else None
    if not isinstance(part, dict) or part.get("type") != "text":
        return None
    if part.get("sessionID") not in (None, session_id):
        return None
    text = part.get("text")
    return text if isinstance(text, str) and text else None

"""Wire types shared by the host and the worker.

The host writes one ``TaskEnvelope`` to the worker's stdin. The worker answers
with zero or more result frames on stdout, each framed by the two marker lines.
Anything printed between frames is diagnostics and is never parsed.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from bubbox.errors import ProtocolError

OUTPUT_START_MARKER = "---BUBBOX_OUTPUT_START---"
OUTPUT_END_MARKER = "---BUBBOX_OUTPUT_END---"
DEFAULT_OPENCODE_MODEL = "anthropic/claude-sonnet-4-20250514"
DEFAULT_REPUBLIC_MODEL = "openrouter:qwen/qwen3-coder-next"
SCHEDULED_TASK_PREFIX = (
    "[SCHEDULED TASK - The following message was sent automatically "
    "and is not coming directly from the user or group.]"
)


def mark_scheduled(prompt: str) -> str:
    return f"{SCHEDULED_TASK_PREFIX}\n\n{prompt}"


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class OpenCodeBackend(_WireModel):
    """Run rounds against an ``opencode serve`` process inside the sandbox."""

    runtime: Literal["opencode"] = "opencode"
    provider: str = "anthropic"
    model: str = DEFAULT_OPENCODE_MODEL
    api_key: str | None = Field(default=None, description="Secret name holding the provider key")
    mcp_command: list[str] | None = Field(default=None, description="Local MCP server exposing host tools")


class RepublicBackend(_WireModel):
    """Run rounds through the Republic LLM client with a tape per session."""

    runtime: Literal["republic"] = "republic"
    model: str = DEFAULT_REPUBLIC_MODEL
    api_key: str | None = Field(default=None, description="Secret name holding the provider key")
    api_base: str | None = None
    max_tokens: int = 1024
    system_prompt: str | None = None


BackendConfig = Annotated[OpenCodeBackend | RepublicBackend, Field(discriminator="runtime")]


class TaskEnvelope(_WireModel):
    """The only message a worker receives outside its mailbox."""

    prompt: str
    conversation_id: str
    session_id: str | None = None
    chat_jid: str | None = None
    is_main: bool = False
    is_scheduled_task: bool = False
    secrets: dict[str, str] = Field(default_factory=dict, repr=False)
    backend: BackendConfig = Field(default_factory=OpenCodeBackend)
    round_timeout_seconds: float | None = Field(default=None, gt=0)
    round_timeout_is_fatal: bool = True
    poll_interval_seconds: float = Field(default=0.5, gt=0)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> TaskEnvelope:
        try:
            return cls.model_validate_json(raw)
        except ValidationError as exc:
            raise ProtocolError(f"invalid task envelope: {exc}") from exc

    def secret(self, name: str | None) -> str | None:
        """Resolve a credential-name reference against the envelope's secrets."""

        if not name:
            return None
        return self.secrets.get(name) or None


class ResultFrame(_WireModel):
    """Outcome of one request/response round."""

    status: Literal["success", "error"]
    result: str | None = None
    new_session_id: str | None = None
    error: str | None = None
    last_input: str | None = Field(default=None, description="Last mailbox record this round consumed")

    @model_validator(mode="after")
    def _check_error(self) -> ResultFrame:
        if self.status == "success" and self.error is not None:
            raise ValueError("success frames carry no error")
        if self.status == "error" and not self.error:
            self.error = "unknown error"
        return self

    @classmethod
    def success(cls, result: str | None, session_id: str | None, last_input: str | None = None) -> ResultFrame:
        return cls(status="success", result=result, new_session_id=session_id, last_input=last_input)

    @classmethod
    def failure(cls, error: str, session_id: str | None, last_input: str | None = None) -> ResultFrame:
        return cls(status="error", result=None, new_session_id=session_id, error=error, last_input=last_input)

    @property
    def is_announcement(self) -> bool:
        """A success without text only reports the session id."""
        return self.status == "success" and self.result is None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.status, "result": self.result}
        if self.new_session_id is not None:
            payload["newSessionId"] = self.new_session_id
        if self.error is not None:
            payload["error"] = self.error
        if self.last_input is not None:
            payload["lastInput"] = self.last_input
        return payload

    def render(self) -> str:
        body = json.dumps(self.to_payload(), ensure_ascii=False)
        return f"{OUTPUT_START_MARKER}\n{body}\n{OUTPUT_END_MARKER}\n"

    @classmethod
    def parse(cls, raw: str) -> ResultFrame:
        try:
            return cls.model_validate_json(raw)
        except ValidationError as exc:
            raise ProtocolError(f"invalid result frame: {exc}") from exc


class FrameParser:
    """Incremental parser for a worker's stdout, fed one line at a time."""

    def __init__(self) -> None:
        self._buffer: list[str] | None = None
        self.dropped = 0

    @property
    def inside_frame(self) -> bool:
        return self._buffer is not None

    def feed(self, line: str) -> ResultFrame | None:
        text = line.rstrip("\r\n")
        if text == OUTPUT_START_MARKER:
            if self._buffer is not None:
                self.dropped += 1
                logger.warning("frame.unterminated lines={}", len(self._buffer))
            self._buffer = []
            return None
        if text == OUTPUT_END_MARKER:
            if self._buffer is None:
                return None
            payload = "\n".join(self._buffer).strip()
            self._buffer = None
            try:
                return ResultFrame.parse(payload)
            except ProtocolError as exc:
                self.dropped += 1
                logger.warning("frame.malformed error={}", exc)
                return None
        if self._buffer is not None:
            self._buffer.append(text)
        return None


_BACKEND_ADAPTER: TypeAdapter[OpenCodeBackend | RepublicBackend] = TypeAdapter(BackendConfig)


def parse_backend(data: object) -> OpenCodeBackend | RepublicBackend:
    """Validate a stored backend mapping; raises ``ProtocolError`` when unusable."""

    try:
        return _BACKEND_ADAPTER.validate_python(data)
    except ValidationError as exc:
        raise ProtocolError(f"invalid backend config: {exc}") from exc

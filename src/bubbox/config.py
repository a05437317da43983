"""Configuration management for Bubbox."""

from __future__ import annotations

from hashlib import md5
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from bubbox.errors import ConfigurationError

DEFAULT_HOME = Path.home() / ".bubbox"
RuntimeName = Literal["opencode", "republic"]


class Settings(BaseSettings):
    """Host-side settings, read from ``BUBBOX_*`` environment variables and ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="BUBBOX_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    home: Path = Field(default=DEFAULT_HOME, description="Root for sessions, mailboxes and conversation folders")

    # Sandbox
    image: str = Field(default="bubbox-agent:latest", description="Worker image reference")
    container_runtime: str = Field(default="docker", description="Container runtime CLI")
    instance_prefix: str = Field(default="bubbox", description="Reserved prefix for worker instance names")

    # Time budgets
    worker_timeout_seconds: float = Field(default=1800.0, gt=0, description="Whole-lifetime budget per worker")
    round_timeout_seconds: float = Field(default=1500.0, gt=0, description="Budget for one backend round")
    round_timeout_is_fatal: bool = Field(default=True, description="Round timeout ends the worker")
    close_grace_seconds: float = Field(default=15.0, ge=0)
    kill_grace_seconds: float = Field(default=10.0, ge=0)
    launch_check_seconds: float = Field(default=0.5, ge=0, description="Exit window that counts as a failed launch")
    poll_interval_seconds: float = Field(default=0.5, gt=0)

    # Backend defaults for conversations without a stored choice
    runtime: RuntimeName = "opencode"
    provider: str = "anthropic"
    model: str | None = Field(default=None, description="Model id; each runtime has its own default")
    api_key_secret: str | None = Field(default=None, description="Name of the secret holding the provider key")

    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check_budgets(self) -> Settings:
        if self.round_timeout_seconds >= self.worker_timeout_seconds:
            raise ValueError("round_timeout_seconds must be shorter than worker_timeout_seconds")
        if not self.instance_prefix or "-" in self.instance_prefix:
            raise ValueError("instance_prefix must be a non-empty name without '-'")
        return self

    def resolve_home(self) -> Path:
        return self.home.expanduser().resolve()

    @property
    def sessions_file(self) -> Path:
        return self.resolve_home() / "sessions.json"

    def conversation_dir(self, conversation_id: str) -> Path:
        return self.resolve_home() / "conversations" / conversation_slug(conversation_id)

    def mailbox_dir(self, instance: str) -> Path:
        return self.resolve_home() / "ipc" / instance / "input"


def conversation_slug(conversation_id: str) -> str:
    """Filesystem and container-name safe slug for one conversation."""

    readable = "".join(ch if ch.isalnum() else "-" for ch in conversation_id.casefold()).strip("-")[:24]
    digest = md5(conversation_id.encode("utf-8")).hexdigest()[:8]  # noqa: S324
    return f"{readable}-{digest}" if readable else digest


def load_settings(**overrides: object) -> Settings:
    """Load settings, turning validation failures into ``ConfigurationError``."""

    try:
        return Settings(**overrides)  # type: ignore[arg-type]
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc

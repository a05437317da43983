"""Agent runtimes available inside the worker, keyed by ``runtime``."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

from bubbox.errors import ConfigurationError
from bubbox.protocol import TaskEnvelope
from bubbox.worker.backends.base import AgentBackend

BackendFactory = Callable[[Any, TaskEnvelope, Path], AgentBackend]


def _opencode(config: Any, envelope: TaskEnvelope, group_dir: Path) -> AgentBackend:
    from bubbox.worker.backends.opencode import OpenCodeAgent

    return OpenCodeAgent(config, envelope, group_dir)


def _republic(config: Any, envelope: TaskEnvelope, group_dir: Path) -> AgentBackend:
    from bubbox.worker.backends.republic import RepublicAgent

    return RepublicAgent(config, envelope, group_dir)


BACKENDS: dict[str, BackendFactory] = {
    "opencode": _opencode,
    "republic": _republic,
}


def build_backend(envelope: TaskEnvelope, group_dir: Path) -> AgentBackend:
    """Pick the runtime named by the envelope; the only place that dispatches on it."""

    factory = BACKENDS.get(envelope.backend.runtime)
    if factory is None:
        raise ConfigurationError(f"unknown runtime: {envelope.backend.runtime}")
    return factory(envelope.backend, envelope, group_dir)


__all__ = ["BACKENDS", "AgentBackend", "build_backend"]

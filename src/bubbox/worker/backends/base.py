"""Narrow interface every agent runtime implements inside the worker."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable


@runtime_checkable
class AgentBackend(Protocol):
    """One agent runtime, set up once per worker lifetime."""

    async def start(self) -> None:
        """Bring the runtime up; raise ``BackendError`` when it cannot start."""
        ...

    async def session_exists(self, session_id: str) -> bool: ...

    async def create_session(self, title: str) -> str: ...

    async def prompt(self, session_id: str, text: str) -> str:
        """Run one round and return the final reply text, possibly empty."""
        ...

    def partial_output(self, session_id: str) -> AsyncIterator[str]:
        """Yield the cumulative reply text observed so far, latest last."""
        ...

    async def close(self) -> None: ...

"""Startup cleanup of worker instances left behind by a crashed host."""

from __future__ import annotations

from loguru import logger

from bubbox.sandbox import ContainerRuntime


async def cleanup_orphans(runtime: ContainerRuntime, prefix: str, *, grace_seconds: float = 10.0) -> list[str]:
    """Stop every running instance whose name carries the reserved prefix.

    Returns the names that received a stop request. A failure on one instance
    is logged and does not abort the pass.
    """

    names = [name for name in await runtime.list_names(prefix) if name.startswith(prefix)]
    if not names:
        logger.info("supervisor.clean prefix={}", prefix)
        return []

    stopped: list[str] = []
    for name in names:
        logger.warning("supervisor.orphan instance={}", name)
        if await runtime.stop(name, grace_seconds=grace_seconds) or await runtime.kill(name):
            stopped.append(name)
        else:
            logger.error("supervisor.orphan_survived instance={}", name)
    logger.info("supervisor.done found={} stopped={}", len(names), len(stopped))
    return stopped

"""Worker entrypoint: ``python -m bubbox.worker`` inside the sandbox image."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

from loguru import logger

from bubbox.errors import BubboxError
from bubbox.logging_utils import configure_logging
from bubbox.mailbox import Mailbox
from bubbox.protocol import ResultFrame, TaskEnvelope
from bubbox.sandbox import SANDBOX_GROUP_PATH, SANDBOX_MAILBOX_PATH
from bubbox.worker.backends import build_backend
from bubbox.worker.loop import WorkerLoop, write_stdout


def main() -> int:
    configure_logging(profile="worker")
    # stdin closing means no further envelopes, not shutdown.
    raw = sys.stdin.read()
    try:
        envelope = TaskEnvelope.from_json(raw)
        backend = build_backend(envelope, Path(SANDBOX_GROUP_PATH))
    except BubboxError as exc:
        logger.error("worker.bad_envelope error={}", exc)
        write_stdout(ResultFrame.failure(str(exc), None).render())
        return 2

    loop = WorkerLoop(
        envelope,
        backend,
        Mailbox(Path(SANDBOX_MAILBOX_PATH)),
        poll_interval=envelope.poll_interval_seconds,
    )
    return asyncio.run(loop.run())


if __name__ == "__main__":
    sys.exit(main())

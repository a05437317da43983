"""Code that runs inside the sandbox."""

from bubbox.worker.loop import WorkerLoop, WorkerState

__all__ = ["WorkerLoop", "WorkerState"]

"""Bubbox - one disposable sandbox per conversation."""

from bubbox.orchestrator import Conversation, Orchestrator, Reply, WorkerExit
from bubbox.protocol import ResultFrame, TaskEnvelope

__version__ = "0.1.0"

__all__ = ["Conversation", "Orchestrator", "Reply", "ResultFrame", "TaskEnvelope", "WorkerExit"]

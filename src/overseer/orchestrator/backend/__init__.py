"""Worker backend implementations."""

from overseer.orchestrator.backend.base import (
    WorkerBackend,
    WorkerBackendError,
    WorkerHandle,
    WorkerRunState,
)
from overseer.orchestrator.backend.command_backend import CommandWorkerBackend
from overseer.orchestrator.backend.thread_backend import ThreadWorkerBackend, WorkerContext

__all__ = [
    "CommandWorkerBackend",
    "ThreadWorkerBackend",
    "WorkerBackend",
    "WorkerBackendError",
    "WorkerContext",
    "WorkerHandle",
    "WorkerRunState",
]

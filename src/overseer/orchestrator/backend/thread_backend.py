"""In-process backend running a Python callable per task in a thread."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from overseer.orchestrator.backend.base import (
    WorkerBackendError,
    WorkerHandle,
    WorkerRunState,
)
from overseer.orchestrator.models import TaskView
from overseer.oversight.models import ObservationKind, ObservationSignal, QuestionOption

logger = logging.getLogger(__name__)

_TERMINATE_JOIN_SECONDS = 2.0


class WorkerContext:
    """Channel between a worker function and the orchestrator."""

    def __init__(self, task: TaskView) -> None:
        self.task = task
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._pending: list[ObservationSignal] = []
        self._cost = 0.0

    def observe(
        self,
        kind: ObservationKind | str,
        message: str,
        *,
        evidence: Sequence[str] = (),
        options: Sequence[QuestionOption] = (),
        trigger_type: str | None = None,
    ) -> None:
        signal = ObservationSignal(
            kind=ObservationKind(kind),
            message=message,
            evidence=tuple(evidence),
            options=tuple(options),
            trigger_type=trigger_type,
        )
        with self._lock:
            self._pending.append(signal)

    def add_cost(self, amount: float) -> None:
        with self._lock:
            self._cost += amount

    @property
    def cost(self) -> float:
        with self._lock:
            return self._cost

    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        self._stop.set()

    def drain(self) -> list[ObservationSignal]:
        with self._lock:
            drained, self._pending = self._pending, []
        return drained


WorkerFunction = Callable[[TaskView, WorkerContext], None]


@dataclass(slots=True)
class _ThreadRun:
    handle: WorkerHandle
    context: WorkerContext
    finished: threading.Event
    failed: bool = False
    reaped: bool = False
    thread: threading.Thread | None = None


class ThreadWorkerBackend:
    """Run ``function(task, context)`` in a daemon thread per worker.

    Returning normally completes the task; raising fails it.
    :class:`WorkerBackendError` carries an explicit retry hint, any other
    exception is classified from its message.
    """

    def __init__(self, function: WorkerFunction) -> None:
        self._function = function
        self._runs: dict[str, _ThreadRun] = {}
        self._lock = threading.Lock()

    def spawn_worker(self, task: TaskView, *, worker_id: str) -> WorkerHandle:
        handle = WorkerHandle(
            worker_id=worker_id,
            task_id=task.task_id,
            outcome_id=task.outcome_id,
        )
        run = _ThreadRun(handle=handle, context=WorkerContext(task), finished=threading.Event())
        thread = threading.Thread(
            target=self._run,
            args=(run,),
            daemon=True,
            name=f"overseer-worker-{worker_id}",
        )
        run.thread = thread
        with self._lock:
            self._runs[worker_id] = run
        thread.start()
        return handle

    def worker_status(self, handle: WorkerHandle) -> WorkerRunState:
        run = self._get_run(handle)
        if not run.finished.is_set():
            return WorkerRunState.RUNNING
        run.reaped = True
        return WorkerRunState.FAILED if run.failed else WorkerRunState.COMPLETED

    def terminate_worker(self, handle: WorkerHandle) -> None:
        run = self._get_run(handle)
        run.context.request_stop()
        if run.thread is not None:
            run.thread.join(timeout=_TERMINATE_JOIN_SECONDS)
        if run.thread is not None and run.thread.is_alive():
            logger.warning(
                "Worker thread did not stop in time: worker_id=%s task_id=%s",
                handle.worker_id,
                handle.task_id,
            )
        with self._lock:
            self._runs.pop(handle.worker_id, None)

    def observations(self, handle: WorkerHandle) -> list[ObservationSignal]:
        run = self._get_run(handle)
        drained = run.context.drain()
        if run.reaped:
            with self._lock:
                self._runs.pop(handle.worker_id, None)
        return drained

    def _get_run(self, handle: WorkerHandle) -> _ThreadRun:
        with self._lock:
            run = self._runs.get(handle.worker_id)
        if run is None:
            raise WorkerBackendError(f"Unknown worker: {handle.worker_id}", transient=False)
        return run

    def _run(self, run: _ThreadRun) -> None:
        handle = run.handle
        try:
            self._function(run.context.task, run.context)
        except WorkerBackendError as error:
            run.failed = True
            handle.error_summary = str(error)
            handle.transient_hint = error.transient
        except Exception as error:  # noqa: BLE001
            run.failed = True
            handle.error_summary = f"{type(error).__name__}: {error}"
            logger.debug("Worker function raised: worker_id=%s", handle.worker_id, exc_info=True)
        finally:
            handle.cost = run.context.cost
            run.finished.set()

"""Subprocess-based backend running a command template per task."""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from overseer.errors import ValidationError
from overseer.orchestrator.backend.base import (
    WorkerBackendError,
    WorkerHandle,
    WorkerRunState,
    signal_from_payload,
)
from overseer.orchestrator.models import TaskView
from overseer.oversight.models import ObservationSignal
from overseer.storage.codec import dump_json

logger = logging.getLogger(__name__)

OBSERVATION_PREFIX = "OBSERVATION "
_STDERR_TAIL_CHARS = 2_000


@dataclass(slots=True)
class _CommandRun:
    handle: WorkerHandle
    process: subprocess.Popen[str]
    stdout_path: Path
    stderr_path: Path
    stdout_handle: IO[str]
    stderr_handle: IO[str]
    started_monotonic: float
    state: WorkerRunState = WorkerRunState.RUNNING
    bytes_consumed: int = 0
    pending: list[ObservationSignal] = field(default_factory=list)


class CommandWorkerBackend:
    """Execute a shell-style command template for every spawned worker.

    Supported placeholders: ``{task_id}``, ``{outcome_id}``, ``{title}``,
    ``{description}``, ``{worker_id}`` and ``{task_file}`` (JSON task payload
    written into the worker directory). Stdout lines starting with
    ``OBSERVATION `` carry JSON observation objects.
    """

    def __init__(
        self,
        *,
        command_template: str,
        workdir_root: Path,
        timeout_seconds: int = 1_800,
    ) -> None:
        if not command_template.strip():
            raise ValidationError("Worker command template must not be empty.")
        self.command_template = command_template
        self.workdir_root = workdir_root
        self.timeout_seconds = timeout_seconds
        self._runs: dict[str, _CommandRun] = {}
        self._lock = threading.Lock()

    def spawn_worker(self, task: TaskView, *, worker_id: str) -> WorkerHandle:
        workdir = self.workdir_root / worker_id
        workdir.mkdir(parents=True, exist_ok=True)
        task_file = workdir / "task.json"
        task_file.write_text(
            dump_json(
                {
                    "task_id": task.task_id,
                    "outcome_id": task.outcome_id,
                    "title": task.title,
                    "description": task.description,
                    "phase": task.phase.value,
                    "attempt": task.attempts,
                    "required_capabilities": task.required_capabilities,
                },
            ),
            "utf-8",
        )
        run_args, command_head = _build_run_args(
            command_template=self.command_template,
            values={
                "task_id": task.task_id,
                "outcome_id": task.outcome_id,
                "title": task.title,
                "description": task.description,
                "worker_id": worker_id,
                "task_file": str(task_file),
            },
        )

        env = os.environ.copy()
        env["OVERSEER_TASK_ID"] = task.task_id
        env["OVERSEER_OUTCOME_ID"] = task.outcome_id
        env["OVERSEER_WORKER_ID"] = worker_id

        stdout_path = workdir / "stdout.log"
        stderr_path = workdir / "stderr.log"
        stdout_handle = stdout_path.open("w", encoding="utf-8")
        stderr_handle = stderr_path.open("w", encoding="utf-8")
        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                env=env,
                cwd=workdir,
                stdout=stdout_handle,
                stderr=stderr_handle,
                text=True,
            )
        except FileNotFoundError as error:
            stdout_handle.close()
            stderr_handle.close()
            raise WorkerBackendError(
                f"Worker command not found: {command_head}",
                transient=False,
            ) from error
        except OSError as error:
            stdout_handle.close()
            stderr_handle.close()
            raise WorkerBackendError(
                f"Worker command failed to start: {error}",
                transient=True,
            ) from error

        handle = WorkerHandle(
            worker_id=worker_id,
            task_id=task.task_id,
            outcome_id=task.outcome_id,
        )
        with self._lock:
            self._runs[worker_id] = _CommandRun(
                handle=handle,
                process=process,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
                stdout_handle=stdout_handle,
                stderr_handle=stderr_handle,
                started_monotonic=time.monotonic(),
            )
        logger.debug("Spawned worker process: worker_id=%s pid=%s", worker_id, process.pid)
        return handle

    def worker_status(self, handle: WorkerHandle) -> WorkerRunState:
        run = self._get_run(handle)
        if run.state != WorkerRunState.RUNNING:
            return run.state

        returncode = run.process.poll()
        if returncode is None:
            if time.monotonic() - run.started_monotonic < self.timeout_seconds:
                return WorkerRunState.RUNNING
            _terminate_process(run.process)
            handle.timed_out = True
            handle.exit_code = 124
            handle.error_summary = f"Worker timed out after {self.timeout_seconds}s"
            self._finish(run, WorkerRunState.FAILED)
            return run.state

        handle.exit_code = returncode
        if returncode == 0:
            self._finish(run, WorkerRunState.COMPLETED)
        else:
            handle.error_summary = _stderr_tail(run.stderr_path) or f"exit code {returncode}"
            self._finish(run, WorkerRunState.FAILED)
        return run.state

    def terminate_worker(self, handle: WorkerHandle) -> None:
        run = self._get_run(handle)
        if run.state == WorkerRunState.RUNNING:
            _terminate_process(run.process)
            handle.exit_code = run.process.returncode
            handle.error_summary = "Worker terminated"
            self._finish(run, WorkerRunState.FAILED)
        self._forget(handle)

    def observations(self, handle: WorkerHandle) -> list[ObservationSignal]:
        run = self._get_run(handle)
        if run.state == WorkerRunState.RUNNING:
            self._collect(run, final=False)
        drained, run.pending = run.pending, []
        if run.state != WorkerRunState.RUNNING:
            self._forget(handle)
        return drained

    def _get_run(self, handle: WorkerHandle) -> _CommandRun:
        with self._lock:
            run = self._runs.get(handle.worker_id)
        if run is None:
            raise WorkerBackendError(f"Unknown worker: {handle.worker_id}", transient=False)
        return run

    def _forget(self, handle: WorkerHandle) -> None:
        """Drop a reaped run; its handle is unknown afterwards."""

        with self._lock:
            self._runs.pop(handle.worker_id, None)

    def _finish(self, run: _CommandRun, state: WorkerRunState) -> None:
        run.stdout_handle.close()
        run.stderr_handle.close()
        self._collect(run, final=True)
        run.state = state

    def _collect(self, run: _CommandRun, *, final: bool) -> None:
        """Parse stdout written since the last call into observations.

        Only complete lines are consumed while the worker runs; undecodable
        bytes are replaced so a noisy worker cannot break collection.
        """

        try:
            with run.stdout_path.open("rb") as stream:
                stream.seek(run.bytes_consumed)
                chunk = stream.read()
        except OSError:
            return
        if not final:
            chunk = chunk[: chunk.rfind(b"\n") + 1]
        run.bytes_consumed += len(chunk)
        for raw_line in chunk.split(b"\n"):
            line = raw_line.decode("utf-8", errors="replace")
            signal = parse_observation_line(line, worker_id=run.handle.worker_id)
            if signal is not None:
                run.pending.append(signal)


def parse_observation_line(line: str, *, worker_id: str = "") -> ObservationSignal | None:
    """Decode one stdout line; non-observation and malformed lines yield ``None``."""

    stripped = line.strip()
    if not stripped.startswith(OBSERVATION_PREFIX):
        return None
    raw = stripped[len(OBSERVATION_PREFIX) :]
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Malformed observation JSON from worker %s: %r", worker_id, raw[:200])
        return None
    if not isinstance(payload, dict):
        logger.warning("Observation payload from worker %s is not an object", worker_id)
        return None
    try:
        return signal_from_payload(payload)
    except ValidationError as error:
        logger.warning("Invalid observation from worker %s: %s", worker_id, error)
        return None


def _build_run_args(*, command_template: str, values: dict[str, str]) -> tuple[list[str], str]:
    try:
        rendered = command_template.strip().format(
            **{key: shlex.quote(value) for key, value in values.items()},
        )
    except (KeyError, IndexError) as error:
        raise WorkerBackendError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise WorkerBackendError(
            "Worker command template rendered empty command.",
            transient=False,
        )
    return argv, argv[0]


def _stderr_tail(path: Path) -> str:
    try:
        text = path.read_text("utf-8", errors="replace")
    except OSError:
        return ""
    return text.strip()[-_STDERR_TAIL_CHARS:]


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)

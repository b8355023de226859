"""Phase-gated task orchestration over a worker backend."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from uuid import uuid4

from overseer.errors import ConcurrencyConflict, OverseerError, ValidationError
from overseer.orchestrator.backend.base import (
    WorkerBackend,
    WorkerBackendError,
    WorkerHandle,
    WorkerRunState,
)
from overseer.orchestrator.failure_classifier import classify_worker_failure
from overseer.orchestrator.models import (
    OrchestrationOptions,
    OrchestrationPhase,
    OrchestrationResult,
    OrchestrationState,
    OutcomeStatus,
    PhaseCounts,
    TaskPhase,
    TaskStatus,
    TaskView,
    WorkerStatus,
)
from overseer.orchestrator.repository import OrchestratorRepository
from overseer.oversight.auto_resolver import AutoResolver
from overseer.oversight.models import ObservationSignal
from overseer.oversight.observer import ObservationCollector

logger = logging.getLogger(__name__)

InfrastructureValidator = Callable[[str], list[str]]
"""Return problems found for an outcome's infrastructure; empty means ready."""


@dataclass(slots=True)
class OrchestrationTickSummary:
    spawned: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    observations: int = 0
    escalations: int = 0
    auto_resolved: int = 0


@dataclass(slots=True)
class _ActiveWorker:
    handle: WorkerHandle
    task: TaskView


class OrchestrationContext:
    """Run state of one orchestration, owned by the orchestrator that started it."""

    def __init__(self, outcome_id: str, options: OrchestrationOptions) -> None:
        self.outcome_id = outcome_id
        self.options = options
        self.workers: dict[str, _ActiveWorker] = {}
        self.errors: list[str] = []
        self.iterations = 0
        self.started_monotonic = time.monotonic()
        self._stop = threading.Event()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        self._stop.set()

    def wait(self, seconds: float) -> None:
        self._stop.wait(timeout=seconds)

    def active_count(self, phase: TaskPhase) -> int:
        return sum(1 for worker in self.workers.values() if worker.task.phase == phase)

    def budget_exhausted(self) -> str | None:
        max_iterations = self.options.max_iterations
        if max_iterations and self.iterations >= max_iterations:
            return f"Iteration budget exhausted after {self.iterations} iteration(s)"
        max_run_seconds = self.options.max_run_seconds
        if max_run_seconds and time.monotonic() - self.started_monotonic >= max_run_seconds:
            return f"Time budget of {max_run_seconds:g}s exhausted"
        return None


class OrchestrationHandle:
    """Completion and error channel of a background orchestration."""

    def __init__(self, orchestrator: TaskOrchestrator, context: OrchestrationContext) -> None:
        self._orchestrator = orchestrator
        self._context = context
        self._done = threading.Event()
        self._result: OrchestrationResult | None = None
        self._error: BaseException | None = None

    @property
    def outcome_id(self) -> str:
        return self._context.outcome_id

    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the run finishes; returns False on timeout."""

        return self._done.wait(timeout=timeout)

    @property
    def result(self) -> OrchestrationResult | None:
        return self._result

    @property
    def error(self) -> BaseException | None:
        return self._error

    def state(self) -> OrchestrationState:
        return self._orchestrator.get_orchestration_state(self._context.outcome_id)

    def stop(self) -> None:
        """Ask the run to terminate its workers and return."""

        self._context.request_stop()

    def _finish(
        self,
        *,
        result: OrchestrationResult | None = None,
        error: BaseException | None = None,
    ) -> None:
        self._result = result
        self._error = error
        self._done.set()


class TaskOrchestrator:
    """Claim tasks phase by phase and drive workers through their lifecycle.

    Infrastructure tasks run first, up to ``max_infrastructure_workers`` at a
    time. Execution tasks become claimable once the infrastructure phase is
    finished and validated, and run up to ``max_execution_workers`` at a
    time. Each outcome has at most one live orchestration per orchestrator.
    """

    def __init__(  # noqa: PLR0913
        self,
        repository: OrchestratorRepository,
        backend: WorkerBackend,
        *,
        collector: ObservationCollector,
        auto_resolver: AutoResolver | None = None,
        infrastructure_validator: InfrastructureValidator | None = None,
        transient_exit_codes: tuple[int, ...] = (137, 143),
    ) -> None:
        self.repository = repository
        self.backend = backend
        self.collector = collector
        self.auto_resolver = auto_resolver
        self.infrastructure_validator = infrastructure_validator
        self.transient_exit_codes = transient_exit_codes
        self._contexts: dict[str, OrchestrationContext] = {}
        self._contexts_lock = threading.Lock()

    # -- claiming and phases --------------------------------------------------

    def claim_next_task(self, outcome_id: str, phase: TaskPhase) -> TaskView | None:
        return self.repository.claim_next_task(outcome_id, phase)

    def claim_task(self, task_id: str) -> TaskView:
        return self.repository.claim_task(task_id)

    def advance_phase(self, outcome_id: str, *, skip_validation: bool = False) -> bool:
        """Unlock the execution phase once infrastructure is done; True when unlocked."""

        return not self._advance_phase_problems(outcome_id, skip_validation=skip_validation)

    def get_orchestration_state(self, outcome_id: str) -> OrchestrationState:
        outcome = self.repository.get_outcome(outcome_id)
        counts = self.repository.phase_counts(outcome_id)
        running = self.repository.list_workers(outcome_id, status=WorkerStatus.RUNNING)
        return OrchestrationState(
            outcome_id=outcome_id,
            current_phase=current_phase(outcome.infrastructure_ready, counts),
            infrastructure_workers=[
                worker for worker in running if worker.phase == TaskPhase.INFRASTRUCTURE
            ],
            execution_workers=[
                worker for worker in running if worker.phase == TaskPhase.EXECUTION
            ],
        )

    def active_outcomes(self) -> list[str]:
        with self._contexts_lock:
            return sorted(self._contexts)

    # -- orchestration runs ---------------------------------------------------

    def run_orchestrated(
        self,
        outcome_id: str,
        options: OrchestrationOptions | None = None,
    ) -> OrchestrationResult:
        """Run the orchestration loop in the calling thread until a terminal state."""

        context = self._acquire_context(outcome_id, options or OrchestrationOptions())
        try:
            return self._run_loop(context)
        finally:
            self._release_context(context)

    def start_orchestrated(
        self,
        outcome_id: str,
        options: OrchestrationOptions | None = None,
    ) -> OrchestrationHandle:
        """Run the orchestration loop in a background thread."""

        context = self._acquire_context(outcome_id, options or OrchestrationOptions())
        handle = OrchestrationHandle(self, context)
        thread = threading.Thread(
            target=self._run_in_background,
            args=(context, handle),
            daemon=True,
            name=f"overseer-orchestrator-{outcome_id[:12]}",
        )
        try:
            thread.start()
        except RuntimeError:
            self._release_context(context)
            raise
        logger.info("Background orchestration started: outcome_id=%s", outcome_id)
        return handle

    def stop_orchestrated(self, outcome_id: str) -> bool:
        with self._contexts_lock:
            context = self._contexts.get(outcome_id)
        if context is None:
            return False
        context.request_stop()
        return True

    def run_once(self, context: OrchestrationContext) -> OrchestrationTickSummary:
        """One tick: reap, auto-resolve, advance phase and fill free worker slots."""

        summary = OrchestrationTickSummary()
        outcome_id = context.outcome_id
        options = context.options

        self._recover_stale_tasks(context)
        self._reap_workers(context, summary)

        if options.auto_resolve and self.auto_resolver is not None:
            batch = self.auto_resolver.auto_resolve_all_pending(outcome_id)
            summary.auto_resolved = batch.resolved

        ready = self.advance_phase(outcome_id, skip_validation=options.skip_validation)

        self._fill_slots(
            context,
            TaskPhase.INFRASTRUCTURE,
            options.max_infrastructure_workers,
            summary,
        )
        if ready:
            self._fill_slots(context, TaskPhase.EXECUTION, options.max_execution_workers, summary)
        return summary

    def _run_in_background(
        self,
        context: OrchestrationContext,
        handle: OrchestrationHandle,
    ) -> None:
        result: OrchestrationResult | None = None
        failure: Exception | None = None
        try:
            result = self._run_loop(context)
        except Exception as error:
            logger.exception("Background orchestration failed: outcome_id=%s", context.outcome_id)
            failure = error
        finally:
            self._release_context(context)
        handle._finish(result=result, error=failure)  # noqa: SLF001

    def _run_loop(self, context: OrchestrationContext) -> OrchestrationResult:
        try:
            while True:
                if context.stop_requested:
                    self._shutdown_workers(context, reason="orchestration stopped")
                    return self._result(context, success=False, message="Orchestration stopped")

                summary = self.run_once(context)
                context.iterations += 1
                logger.debug("Orchestration tick: outcome_id=%s %s", context.outcome_id, summary)

                terminal = self._terminal_result(context)
                if terminal is not None:
                    return terminal

                exhausted = context.budget_exhausted()
                if exhausted is not None:
                    self._shutdown_workers(context, reason="budget exhausted")
                    return self._result(context, success=False, message=exhausted)

                context.wait(context.options.poll_interval_seconds)
        except BaseException:
            self._shutdown_workers(context, reason="orchestration error")
            raise

    def _acquire_context(
        self,
        outcome_id: str,
        options: OrchestrationOptions,
    ) -> OrchestrationContext:
        _validate_options(options)
        outcome = self.repository.get_outcome(outcome_id)
        if outcome.status in {OutcomeStatus.ACHIEVED, OutcomeStatus.ARCHIVED}:
            raise ValidationError(
                f"Outcome {outcome_id} is {outcome.status.value}; it cannot be orchestrated.",
            )
        with self._contexts_lock:
            if outcome_id in self._contexts:
                raise ConcurrencyConflict(
                    f"Orchestration already running for outcome {outcome_id}.",
                )
            context = OrchestrationContext(outcome_id, options)
            self._contexts[outcome_id] = context
        try:
            if outcome.status in {OutcomeStatus.DRAFT, OutcomeStatus.DORMANT}:
                self.repository.activate_outcome(outcome_id)
            self._recover_stale_tasks(context)
        except OverseerError:
            self._release_context(context)
            raise
        return context

    def _release_context(self, context: OrchestrationContext) -> None:
        with self._contexts_lock:
            if self._contexts.get(context.outcome_id) is context:
                del self._contexts[context.outcome_id]

    def _recover_stale_tasks(self, context: OrchestrationContext) -> int:
        """Requeue tasks left claimed or running by workers that stopped reporting."""

        stale_seconds = context.options.stale_task_seconds
        if not stale_seconds:
            return 0
        return self.repository.recover_stale_tasks(
            context.outcome_id,
            stale_after=timedelta(seconds=stale_seconds),
            exclude_task_ids=[active.task.task_id for active in context.workers.values()],
        )

    # -- worker lifecycle -----------------------------------------------------

    def _fill_slots(
        self,
        context: OrchestrationContext,
        phase: TaskPhase,
        limit: int,
        summary: OrchestrationTickSummary,
    ) -> None:
        while context.active_count(phase) < limit and not context.stop_requested:
            worker_id = f"worker-{uuid4().hex[:12]}"
            task = self.repository.claim_next_task(context.outcome_id, phase, worker_id=worker_id)
            if task is None:
                return
            if not self._spawn(context, task, worker_id, summary):
                return

    def _spawn(
        self,
        context: OrchestrationContext,
        task: TaskView,
        worker_id: str,
        summary: OrchestrationTickSummary,
    ) -> bool:
        """Start a worker for a claimed task; False stops filling slots this tick."""

        try:
            self.repository.register_worker(
                outcome_id=context.outcome_id,
                task_id=task.task_id,
                phase=task.phase,
                worker_id=worker_id,
            )
        except ConcurrencyConflict:
            logger.warning("Task already has a running worker: task_id=%s", task.task_id)
            self.repository.release_task(task.task_id, reason="worker already running")
            return False

        started = self.repository.start_task(task.task_id, worker_id=worker_id)
        if started is None:
            self.repository.finish_worker(worker_id, status=WorkerStatus.STOPPED)
            return False

        try:
            handle = self.backend.spawn_worker(started, worker_id=worker_id)
        except WorkerBackendError as error:
            logger.warning("Worker spawn failed: task_id=%s error=%s", task.task_id, error)
            self._record_failure(
                started,
                WorkerHandle(
                    worker_id=worker_id,
                    task_id=task.task_id,
                    outcome_id=context.outcome_id,
                    error_summary=str(error),
                    transient_hint=error.transient,
                ),
                summary,
            )
            return False

        context.workers[worker_id] = _ActiveWorker(handle=handle, task=started)
        summary.spawned += 1
        logger.info(
            "Worker spawned: worker_id=%s task_id=%s phase=%s attempt=%d",
            worker_id,
            task.task_id,
            task.phase.value,
            started.attempts,
        )
        return True

    def _reap_workers(
        self,
        context: OrchestrationContext,
        summary: OrchestrationTickSummary,
    ) -> None:
        for worker_id, active in list(context.workers.items()):
            try:
                state = self.backend.worker_status(active.handle)
                signals = self.backend.observations(active.handle)
            except Exception as error:  # noqa: BLE001
                self._abandon_worker(context, active, error, summary)
                continue
            self._forward_observations(context, active, signals, summary)
            if state == WorkerRunState.RUNNING:
                continue

            del context.workers[worker_id]
            if state == WorkerRunState.COMPLETED:
                self.repository.complete_task(active.task.task_id)
                self.repository.finish_worker(
                    worker_id,
                    status=WorkerStatus.COMPLETED,
                    cost=active.handle.cost,
                )
                summary.completed += 1
                logger.info(
                    "Task completed: task_id=%s worker_id=%s",
                    active.task.task_id,
                    worker_id,
                )
            else:
                self._record_failure(active.task, active.handle, summary)
        if context.workers:
            self.repository.touch_tasks(
                [active.task.task_id for active in context.workers.values()],
            )

    def _abandon_worker(
        self,
        context: OrchestrationContext,
        active: _ActiveWorker,
        error: Exception,
        summary: OrchestrationTickSummary,
    ) -> None:
        """Fail one worker whose backend state can no longer be read."""

        worker_id = active.handle.worker_id
        logger.warning(
            "Worker backend error: worker_id=%s task_id=%s error=%s",
            worker_id,
            active.task.task_id,
            error,
        )
        context.errors.append(f"worker {worker_id}: {type(error).__name__}: {error}")
        del context.workers[worker_id]
        try:
            self.backend.terminate_worker(active.handle)
        except Exception:  # noqa: BLE001
            logger.debug("Terminate after backend error failed: worker_id=%s", worker_id)
        active.handle.error_summary = f"Worker backend error: {type(error).__name__}: {error}"
        self._record_failure(active.task, active.handle, summary)

    def _forward_observations(
        self,
        context: OrchestrationContext,
        active: _ActiveWorker,
        signals: list[ObservationSignal],
        summary: OrchestrationTickSummary,
    ) -> None:
        for signal in signals:
            try:
                observation = self.collector.record(
                    context.outcome_id,
                    active.task.task_id,
                    signal,
                )
            except OverseerError as error:
                logger.warning(
                    "Observation dropped: task_id=%s error=%s",
                    active.task.task_id,
                    error,
                )
                context.errors.append(f"observation from {active.task.task_id}: {error}")
                continue
            summary.observations += 1
            if observation.escalation_id is not None:
                summary.escalations += 1

    def _record_failure(
        self,
        task: TaskView,
        handle: WorkerHandle,
        summary: OrchestrationTickSummary,
    ) -> None:
        error_summary = handle.error_summary or "worker failed without details"
        classification = classify_worker_failure(
            error_summary=error_summary,
            exit_code=handle.exit_code,
            timed_out=handle.timed_out,
            transient_hint=handle.transient_hint,
            transient_exit_codes=self.transient_exit_codes,
        )
        status = self.repository.fail_task(
            task.task_id,
            failure_class=classification.failure_class,
            error_summary=error_summary,
            retryable=classification.retryable,
        )
        self.repository.finish_worker(
            handle.worker_id,
            status=WorkerStatus.FAILED,
            cost=handle.cost,
            error_summary=error_summary,
        )
        if status == TaskStatus.PENDING:
            summary.retried += 1
            logger.info(
                "Task attempt failed, retry scheduled: task_id=%s class=%s",
                task.task_id,
                classification.failure_class.value,
            )
        elif status == TaskStatus.FAILED:
            summary.failed += 1
            summary.escalations += 1
            self.collector.record_failure(self.repository.get_task(task.task_id), classification)

    def _shutdown_workers(self, context: OrchestrationContext, *, reason: str) -> None:
        for worker_id, active in list(context.workers.items()):
            try:
                self.backend.terminate_worker(active.handle)
                self.repository.release_task(active.task.task_id, reason=reason)
                self.repository.finish_worker(
                    worker_id,
                    status=WorkerStatus.STOPPED,
                    cost=active.handle.cost,
                    error_summary=reason,
                )
            except (OverseerError, WorkerBackendError):
                logger.exception("Worker shutdown failed: worker_id=%s", worker_id)
            del context.workers[worker_id]

    # -- terminal states ------------------------------------------------------

    def _advance_phase_problems(self, outcome_id: str, *, skip_validation: bool) -> list[str]:
        outcome = self.repository.get_outcome(outcome_id)
        if outcome.infrastructure_ready:
            return []

        counts = self.repository.phase_counts(outcome_id)[TaskPhase.INFRASTRUCTURE]
        if counts.unfinished:
            return [f"{counts.unfinished} infrastructure task(s) unfinished"]
        unresolved = self.repository.unresolved_failed_tasks(outcome_id, TaskPhase.INFRASTRUCTURE)
        if unresolved:
            return [
                f"infrastructure task {task.task_id} failed without a resolved escalation"
                for task in unresolved
            ]
        if not skip_validation and self.infrastructure_validator is not None:
            problems = self.infrastructure_validator(outcome_id)
            if problems:
                logger.warning(
                    "Infrastructure validation failed: outcome_id=%s problems=%s",
                    outcome_id,
                    problems,
                )
                return problems

        if self.repository.mark_infrastructure_ready(outcome_id):
            logger.info("Execution phase unlocked: outcome_id=%s", outcome_id)
        return []

    def _terminal_result(self, context: OrchestrationContext) -> OrchestrationResult | None:
        if context.workers:
            return None
        outcome_id = context.outcome_id
        outcome = self.repository.get_outcome(outcome_id)
        counts = self.repository.phase_counts(outcome_id)
        phase = current_phase(outcome.infrastructure_ready, counts)

        if phase == OrchestrationPhase.COMPLETE:
            failed = counts[TaskPhase.INFRASTRUCTURE].failed + counts[TaskPhase.EXECUTION].failed
            if failed:
                return self._result(
                    context,
                    success=False,
                    message=f"All tasks finished; {failed} failed permanently",
                )
            return self._result(context, success=True, message="All tasks completed")

        if self.repository.count_claimable(outcome_id, TaskPhase.INFRASTRUCTURE) or (
            outcome.infrastructure_ready
            and self.repository.count_claimable(outcome_id, TaskPhase.EXECUTION)
        ):
            return None

        pending_escalations = len(
            self.collector.escalations.list_pending_escalations(outcome_id),
        )
        if pending_escalations:
            if context.options.wait_for_escalations:
                return None
            return self._result(
                context,
                success=False,
                message=f"Blocked on {pending_escalations} pending escalation(s)",
            )

        held = len(self.collector.escalations.list_held_escalations(outcome_id))
        if held:
            return self._result(
                context,
                success=False,
                message=f"Held by {held} escalation decision(s)",
            )

        if not outcome.infrastructure_ready:
            problems = self._advance_phase_problems(
                outcome_id,
                skip_validation=context.options.skip_validation,
            )
            if not problems:
                return None
            context.errors.extend(problems)
            return self._result(
                context,
                success=False,
                message="Infrastructure phase cannot complete",
            )
        return self._result(context, success=False, message="No claimable tasks remain")

    def _result(
        self,
        context: OrchestrationContext,
        *,
        success: bool,
        message: str,
    ) -> OrchestrationResult:
        outcome = self.repository.get_outcome(context.outcome_id)
        counts = self.repository.phase_counts(context.outcome_id)
        result = OrchestrationResult(
            success=success,
            phase=current_phase(outcome.infrastructure_ready, counts),
            message=message,
            errors=list(context.errors),
        )
        logger.info(
            "Orchestration finished: outcome_id=%s success=%s phase=%s message=%s",
            context.outcome_id,
            success,
            result.phase.value,
            message,
        )
        return result


def current_phase(
    infrastructure_ready: bool,
    counts: dict[TaskPhase, PhaseCounts],
) -> OrchestrationPhase:
    if not infrastructure_ready:
        return OrchestrationPhase.INFRASTRUCTURE
    if counts[TaskPhase.EXECUTION].unfinished:
        return OrchestrationPhase.EXECUTION
    return OrchestrationPhase.COMPLETE


def _validate_options(options: OrchestrationOptions) -> None:
    if options.max_infrastructure_workers < 1:
        raise ValidationError("max_infrastructure_workers must be >= 1.")
    if options.max_execution_workers < 1:
        raise ValidationError("max_execution_workers must be >= 1.")
    if options.poll_interval_seconds <= 0:
        raise ValidationError("poll_interval_seconds must be > 0.")
    if options.max_iterations is not None and options.max_iterations < 0:
        raise ValidationError("max_iterations must be >= 0.")
    if options.max_run_seconds is not None and options.max_run_seconds < 0:
        raise ValidationError("max_run_seconds must be >= 0.")
    if options.stale_task_seconds is not None and options.stale_task_seconds <= 0:
        raise ValidationError("stale_task_seconds must be > 0.")

"""Run coordinator.

The only entry point that creates and drives runs. Every run:

1. requires a PUBLISHED definition,
2. holds the ``pipeline:{code}`` lease (renewed by a heartbeat) for as
   long as it executes,
3. is persisted with its final status, and the lease is always released.

The lease is released while a run waits on a gate; approving the gate
re-acquires it before execution continues.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from relayflow.config import EngineConfig
from relayflow.errors import (
    CoordinationError,
    GateRejection,
    GuardError,
    LockContentionError,
    NotFoundError,
    ReplayConfirmationRequired,
)
from relayflow.pipeline.events import EngineEvent, EventEmitter, EventType
from relayflow.pipeline.lifecycle import LifecycleManager
from relayflow.pipeline.models import (
    DeadLetterStatus,
    PipelineDefinition,
    Run,
    RunError,
    RunStatus,
    new_id,
)
from relayflow.pipeline.validator import CompiledGraph, compile_definition
from relayflow.runtime.adapters import AdapterRegistry
from relayflow.runtime.dead_letter import DeadLetterHandler
from relayflow.runtime.executor import DagExecutor, ExecutionResult, RunControl
from relayflow.runtime.locks import DistributedLockService, LockResult, pipeline_lock_key
from relayflow.runtime.store import StateStore

logger = logging.getLogger(__name__)

Action = Callable[[RunControl], Awaitable[ExecutionResult]]


class RunCoordinator:
    """Starts, drives and controls pipeline runs.

    Args:
        store: Persists runs and reads run errors.
        lifecycle: Source of published definitions.
        registry: Capability registry for compilation and purity checks.
        executor: The DAG executor.
        locks: Distributed lock service for pipeline leases.
        dead_letters: Dead-letter handler used by record retries.
        emitter: Receives run-level events.
        config: Engine configuration (lock TTLs, lock waiting).
        clock: Wall clock returning UNIX seconds.
    """

    def __init__(
        self,
        *,
        store: StateStore,
        lifecycle: LifecycleManager,
        registry: AdapterRegistry,
        executor: DagExecutor,
        locks: DistributedLockService,
        dead_letters: DeadLetterHandler,
        emitter: EventEmitter | None = None,
        config: EngineConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._lifecycle = lifecycle
        self._registry = registry
        self._executor = executor
        self._locks = locks
        self._dead_letters = dead_letters
        self._emitter = emitter or EventEmitter()
        self._config = config or EngineConfig()
        self._clock = clock
        self._controls: dict[str, RunControl] = {}
        self._tasks: dict[str, asyncio.Task[Run]] = {}

    @property
    def config(self) -> EngineConfig:
        return self._config

    @config.setter
    def config(self, config: EngineConfig) -> None:
        """Lock settings apply from the next acquisition on."""
        self._config = config

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_run(self, run_id: str) -> Run:
        run = self._store.get_run(run_id)
        if run is None:
            raise NotFoundError(f"Run '{run_id}' not found")
        return run

    def list_runs(
        self, pipeline_code: str | None = None, status: RunStatus | None = None
    ) -> list[Run]:
        return self._store.list_runs(pipeline_code, status)

    def active_runs(self) -> list[str]:
        return list(self._controls)

    async def join(self, run_id: str) -> Run:
        """Wait for a run started with ``wait=False`` and return its record."""
        task = self._tasks.get(run_id)
        if task is not None:
            return await task
        return self.get_run(run_id)

    # ------------------------------------------------------------------
    # Starting runs
    # ------------------------------------------------------------------

    async def start(
        self,
        pipeline_code: str,
        trigger: str = "manual",
        seed_records: list[dict[str, Any]] | None = None,
        *,
        wait: bool = True,
        resume: bool = True,
    ) -> Run:
        """Start a run of the published definition of *pipeline_code*.

        Args:
            pipeline_code: Pipeline to run.
            trigger: Label of what started the run.
            seed_records: Records handed to seed-driven sources.
            wait: Drive the run to completion (or pause) before returning.
                With ``False`` the run continues in a background task.
            resume: Continue from the last committed checkpoint.

        Raises:
            LifecycleGuardError: If the pipeline is not PUBLISHED.
            LockContentionError: If another run holds the pipeline lock.
        """
        definition = self._lifecycle.published_definition(pipeline_code)
        record = self._lifecycle.get(pipeline_code)
        graph = compile_definition(definition, self._registry)
        lock = await self._acquire(pipeline_code)

        run = Run(
            id=new_id("run"),
            pipeline_code=pipeline_code,
            definition_version=record.published_revision or 0,
            trigger=trigger,
            seed_records=list(seed_records or []),
        )
        await self._begin(run, lock, EventType.RUN_STARTED, {"trigger": trigger})
        logger.info("Run %s of '%s' started (trigger=%s)", run.id, pipeline_code, trigger)

        action: Action = functools.partial(
            self._executor.execute, run, graph, resume_checkpoint=resume
        )
        return await self._launch(run, lock, action, wait)

    async def _acquire(self, pipeline_code: str) -> LockResult:
        settings = self._config.locks
        key = pipeline_lock_key(pipeline_code)
        lock = await self._locks.acquire(
            key, settings.pipeline_ttl_ms, wait=settings.wait_for_lock
        )
        if not lock.acquired:
            await self._emitter.emit(
                EngineEvent(
                    type=EventType.LOCK_CONTENDED,
                    pipeline_code=pipeline_code,
                    data={"key": key, "current_owner": lock.current_owner},
                )
            )
            raise LockContentionError(key, lock.current_owner)
        return lock

    async def _begin(
        self, run: Run, lock: LockResult, event: EventType, data: dict[str, Any]
    ) -> None:
        await self._emit(event, run, data=data)
        run.status = RunStatus.RUNNING
        run.lock_token = lock.token
        if run.started_at is None:
            run.started_at = self._clock()
        self._store.save_run(run)

    async def _launch(self, run: Run, lock: LockResult, action: Action, wait: bool) -> Run:
        control = RunControl()
        self._controls[run.id] = control
        if wait:
            return await self._drive(run, lock, action, control)
        task = asyncio.create_task(self._drive(run, lock, action, control), name=f"run:{run.id}")
        self._tasks[run.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(run.id, None))
        return run

    async def _drive(
        self, run: Run, lock: LockResult, action: Action, control: RunControl
    ) -> Run:
        settings = self._config.locks
        key = pipeline_lock_key(run.pipeline_code)
        token = lock.token
        if token is None:
            message = f"Lease '{key}' for run {run.id} was granted without a token"
            self._controls.pop(run.id, None)
            self._terminate(run, RunStatus.FAILED, message)
            raise CoordinationError(message)

        async def lost() -> None:
            logger.error("Run %s lost pipeline lock '%s'; cancelling it", run.id, key)
            await self._emit(EventType.LOCK_LOST, run, data={"key": key})
            control.lock_lost = True
            control.request_cancel()

        heartbeat = self._locks.heartbeat(
            key,
            token,
            settings.pipeline_ttl_ms,
            max(settings.retry_interval_ms, settings.pipeline_ttl_ms // 3),
            on_lost=lost,
        )
        try:
            try:
                result = await action(control)
            except Exception as exc:
                logger.exception("Run %s aborted by an unexpected error", run.id)
                result = ExecutionResult(
                    status=RunStatus.FAILED, error=str(exc), metrics=run.metrics
                )
            if control.lock_lost and result.status == RunStatus.CANCELLED:
                result.error = f"Lost pipeline lock '{key}'"
            await self._finish(run, result)
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
            self._controls.pop(run.id, None)
            await self._locks.release(key, token)
            run.lock_token = None
            self._store.save_run(run)
        return run

    async def _finish(self, run: Run, result: ExecutionResult) -> None:
        run.metrics = result.metrics
        if result.status == RunStatus.PAUSED:
            await self._emit(
                EventType.RUN_PAUSED,
                run,
                result.waiting_step or "",
                {"preview": (result.paused_state or {}).get("preview", [])},
            )
            run.status = RunStatus.PAUSED
            run.waiting_step = result.waiting_step
            run.paused_state = result.paused_state
            run.paused_at = self._clock()
            self._store.save_run(run)
            logger.info("Run %s paused at gate '%s'", run.id, run.waiting_step)
            return

        event = {
            RunStatus.SUCCEEDED: EventType.RUN_SUCCEEDED,
            RunStatus.FAILED: EventType.RUN_FAILED,
            RunStatus.CANCELLED: EventType.RUN_CANCELLED,
        }[result.status]
        await self._emit(event, run, data={"error": result.error, "metrics": result.metrics})
        self._terminate(run, result.status, result.error)
        if result.status == RunStatus.FAILED:
            logger.error("Run %s failed: %s", run.id, result.error)
        else:
            logger.info("Run %s finished %s", run.id, result.status.value)

    def _terminate(self, run: Run, status: RunStatus, error: str | None = None) -> None:
        run.status = status
        run.error = error
        run.finished_at = self._clock()
        run.waiting_step = None
        run.paused_state = None
        self._store.save_run(run)

    # ------------------------------------------------------------------
    # Control operations
    # ------------------------------------------------------------------

    async def cancel(self, run_id: str) -> Run:
        """Request cancellation. A no-op on terminal runs.

        Executing runs stop at the next step or batch boundary; paused
        runs are cancelled immediately.
        """
        run = self.get_run(run_id)
        if run.status.is_terminal:
            return run
        control = self._controls.get(run_id)
        if control is not None:
            control.request_cancel()
            logger.info("Cancellation requested for run %s", run_id)
            return run
        if run.status in (RunStatus.RUNNING, RunStatus.PENDING):
            logger.warning("Run %s is not driven by this process; marking it cancelled", run_id)
        await self._emit(EventType.RUN_CANCELLED, run, data={"waiting_step": run.waiting_step})
        self._terminate(run, RunStatus.CANCELLED)
        return run

    def _paused_at_gate(self, run: Run, step_key: str) -> None:
        if run.status != RunStatus.PAUSED or run.waiting_step != step_key:
            raise GuardError(
                f"Run {run.id} is {run.status.value}"
                + (f" waiting on '{run.waiting_step}'" if run.waiting_step else "")
                + f"; gate '{step_key}' cannot be decided"
            )

    async def approve_gate(self, run_id: str, step_key: str, *, wait: bool = True) -> Run:
        """Approve the gate a run is waiting on and resume it.

        Raises:
            GuardError: If the run is not paused at *step_key*.
            LockContentionError: If another run took the pipeline lock
                while this one was paused.
        """
        run = self.get_run(run_id)
        if run.status.is_terminal:
            return run
        self._paused_at_gate(run, step_key)
        graph = self._graph_for(run)
        lock = await self._acquire(run.pipeline_code)

        await self._emit(EventType.GATE_APPROVED, run, step_key)
        run.approved_gates.append(step_key)
        await self._begin(run, lock, EventType.RUN_RESUMED, {"gate": step_key})
        logger.info("Gate '%s' approved; resuming run %s", step_key, run.id)

        action: Action = functools.partial(self._executor.resume, run, graph)
        return await self._launch(run, lock, action, wait)

    async def reject_gate(self, run_id: str, step_key: str, reason: str = "") -> Run:
        """Reject the gate; the run ends FAILED with the rejection reason."""
        run = self.get_run(run_id)
        if run.status.is_terminal:
            return run
        self._paused_at_gate(run, step_key)
        rejection = GateRejection(step_key, reason)
        await self._emit(EventType.GATE_REJECTED, run, step_key, {"reason": reason})
        await self._emit(EventType.RUN_FAILED, run, step_key, {"error": str(rejection)})
        self._terminate(run, RunStatus.FAILED, str(rejection))
        logger.info("Run %s failed: %s", run.id, rejection)
        return run

    async def expire_gates(self, now: float | None = None) -> list[str]:
        """Auto-approve TIMEOUT gates whose ``timeoutSeconds`` has elapsed.

        Returns:
            Ids of the runs that were resumed.
        """
        now = self._clock() if now is None else now
        resumed = []
        for run in self._store.list_runs(status=RunStatus.PAUSED):
            if not run.waiting_step or run.paused_at is None:
                continue
            step = self._graph_for(run).steps.get(run.waiting_step)
            if step is None or str(step.config.get("approvalType", "")).upper() != "TIMEOUT":
                continue
            if run.paused_at + float(step.config.get("timeoutSeconds", 0)) > now:
                continue
            try:
                await self.approve_gate(run.id, run.waiting_step)
            except LockContentionError as exc:
                logger.info("Timeout gate of run %s not resumed yet: %s", run.id, exc)
                continue
            resumed.append(run.id)
        return resumed

    async def retry_record(
        self,
        error_id: str,
        patch: dict[str, Any] | None = None,
        *,
        confirm: bool = False,
        wait: bool = True,
    ) -> Run | None:
        """Patch a failed record and replay it from the step it failed in.

        The replay runs the current published definition in a new run.
        The error is resolved once that run succeeds without new failures.

        Returns:
            The replay run, or ``None`` if the error was already resolved.

        Raises:
            NotFoundError: If the error does not exist.
            ReplayConfirmationRequired: If the replay path contains a
                non-pure adapter and *confirm* is not set.
            GuardError: If the failed step no longer exists or the record
                was discarded from the dead-letter queue.
            LockContentionError: If the pipeline is busy.
        """
        error = self._store.get_error(error_id)
        if error is None:
            raise NotFoundError(f"Run error '{error_id}' not found")
        if error.resolved:
            logger.info("Error %s already resolved; retry ignored", error_id)
            return None

        entry = self._store.find_dead_letter(error.id)
        if entry is not None and entry.status == DeadLetterStatus.DISCARDED:
            raise GuardError(f"Dead letter '{entry.id}' for error '{error_id}' was discarded")

        definition = self._lifecycle.published_definition(error.pipeline_code)
        graph = compile_definition(definition, self._registry)
        if error.step_key not in graph.steps:
            raise GuardError(
                f"Step '{error.step_key}' no longer exists in '{error.pipeline_code}'"
            )
        impure = self._impure_steps(graph, error.step_key)
        if impure and not confirm:
            raise ReplayConfirmationRequired(
                f"Replay from '{error.step_key}' runs non-pure step(s) "
                f"{', '.join(impure)}; confirmation required"
            )

        lock = await self._acquire(error.pipeline_code)
        run = Run(
            id=new_id("run"),
            pipeline_code=error.pipeline_code,
            definition_version=self._lifecycle.get(error.pipeline_code).published_revision or 0,
            trigger=f"retry:{error.id}",
        )
        try:
            _, audit = self._dead_letters.apply_patch(error.id, patch, replay_run_id=run.id)
        except Exception:
            await self._locks.release(pipeline_lock_key(error.pipeline_code), lock.token or "")
            raise
        await self._emit(
            EventType.RECORD_RETRIED,
            run,
            error.step_key,
            {"error_id": error.id, "audit_id": audit.id},
        )
        await self._begin(run, lock, EventType.RUN_STARTED, {"trigger": run.trigger})
        logger.info("Replaying error %s in run %s from '%s'", error.id, run.id, error.step_key)

        async def replay(control: RunControl) -> ExecutionResult:
            result = await self._executor.replay(
                run, graph, error.step_key, [audit.resulting_payload], control
            )
            await self._resolve_if_clean(error, run, result)
            return result

        return await self._launch(run, lock, replay, wait)

    async def _resolve_if_clean(
        self, error: RunError, run: Run, result: ExecutionResult
    ) -> None:
        if result.status == RunStatus.SUCCEEDED and not result.metrics.get("records_failed"):
            self._dead_letters.mark_retried(error, run.id)

    def _impure_steps(self, graph: CompiledGraph, step_key: str) -> list[str]:
        impure = []
        for key in [step_key, *sorted(graph.descendants(step_key))]:
            step = graph.steps[key]
            capability = self._registry.capability(step.adapter_code) if step.adapter_code else None
            if capability is not None and not capability.pure:
                impure.append(key)
        return impure

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _graph_for(self, run: Run) -> CompiledGraph:
        revision = self._lifecycle.revision(run.pipeline_code, run.definition_version)
        return compile_definition(
            PipelineDefinition.from_dict(revision.definition), self._registry
        )

    async def shutdown(self) -> None:
        """Cancel in-flight runs cooperatively and wait for them to stop."""
        for control in self._controls.values():
            control.request_cancel()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _emit(
        self,
        event_type: EventType,
        run: Run,
        step_key: str = "",
        data: dict[str, Any] | None = None,
    ) -> None:
        await self._emitter.emit(
            EngineEvent(
                type=event_type,
                pipeline_code=run.pipeline_code,
                run_id=run.id,
                step_key=step_key,
                data=data or {},
            )
        )

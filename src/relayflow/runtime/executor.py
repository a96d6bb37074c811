"""DAG executor.

Runs a :class:`CompiledGraph` for one run:

1. Each source step is invoked once (with the resume cursor and any
   trigger seed records). Its output is filtered against the committed
   checkpoint and fed downstream in batches of ``throughput.batchSize``.
2. Every batch is walked in topological order by the
   :class:`ConcurrencyController`. Route steps partition records by branch
   label. A step whose incoming edges all carried nothing is skipped,
   and so is everything that only it feeds.
3. Adapter calls go through the circuit breaker, a mandatory timeout and
   the retry policy. When retries are exhausted the chunk is dead-lettered
   (if enabled) or the step fails.
4. After a batch is fully processed the checkpoint may advance. Gate
   steps pause the run and persist everything needed to continue from
   the gate's successors.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from relayflow.config import ExecutorSettings
from relayflow.errors import (
    CircuitOpenError,
    FatalConfigError,
    RelayflowError,
    TransientAdapterError,
)
from relayflow.pipeline.conditions import evaluate_condition
from relayflow.pipeline.events import EngineEvent, EventEmitter, EventType
from relayflow.pipeline.models import (
    ErrorPolicy,
    Run,
    RunStatus,
    Settings,
    Step,
    StepType,
)
from relayflow.pipeline.validator import ELSE_LABEL, CompiledGraph
from relayflow.runtime.adapters import (
    Adapter,
    AdapterRegistry,
    ConnectionResolver,
    ExecutionContext,
    StaticConnectionResolver,
    StepOutput,
    invoke_adapter,
)
from relayflow.runtime.checkpoint import CheckpointManager, CheckpointTracker
from relayflow.runtime.circuit import CircuitBreaker, CircuitState, circuit_key
from relayflow.runtime.concurrency import (
    ConcurrencyController,
    HaltReason,
    StepOutcome,
    StepStatus,
    WalkResult,
)
from relayflow.runtime.dead_letter import DeadLetterHandler
from relayflow.runtime.store import MemoryStateStore, StateStore

logger = logging.getLogger(__name__)

Records = list[dict[str, Any]]


@dataclass
class RunControl:
    """Cooperative cancellation flag shared between coordinator and executor.

    ``lock_lost`` is set when the pipeline lease expired under the run.
    """

    cancel_requested: bool = False
    lock_lost: bool = False

    def request_cancel(self) -> None:
        self.cancel_requested = True


@dataclass
class ExecutionResult:
    """Outcome of :meth:`DagExecutor.execute`, ``resume`` or ``replay``."""

    status: RunStatus
    error: str | None = None
    metrics: dict[str, Any] = field(default_factory=dict)
    waiting_step: str | None = None
    paused_state: dict[str, Any] | None = None


class _StepFailed(Exception):
    def __init__(self, cause: BaseException, fatal: bool = False) -> None:
        super().__init__(str(cause))
        self.cause = cause
        self.fatal = fatal


class _StepCancelled(Exception):
    pass


class _RetriesExhausted(Exception):
    def __init__(self, cause: BaseException, attempts: int) -> None:
        super().__init__(str(cause))
        self.cause = cause
        self.attempts = attempts


@dataclass
class _Walk:
    """State of one pass over the graph for a single batch."""

    outputs: dict[str, Any] = field(default_factory=dict)
    resolved: dict[str, StepStatus] = field(default_factory=dict)
    injected: dict[str, Records] = field(default_factory=dict)
    gate_inputs: dict[str, Records] = field(default_factory=dict)
    finalizing: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "outputs": copy.deepcopy(self.outputs),
            "resolved": {k: v.value for k, v in self.resolved.items()},
            "injected": copy.deepcopy(self.injected),
            "gate_inputs": copy.deepcopy(self.gate_inputs),
            "finalizing": self.finalizing,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> _Walk:
        return cls(
            outputs=copy.deepcopy(data.get("outputs") or {}),
            resolved={k: StepStatus(v) for k, v in (data.get("resolved") or {}).items()},
            injected=copy.deepcopy(data.get("injected") or {}),
            gate_inputs=copy.deepcopy(data.get("gate_inputs") or {}),
            finalizing=bool(data.get("finalizing", False)),
        )


@dataclass
class _Mark:
    """Where in a source stream a walk started.

    ``records`` is the source's stream after cursor filtering; a paused
    run keeps it so approval continues without invoking the source again.
    """

    source_index: int
    source_cursor: dict[str, Any]
    position: int
    batch_end: int
    records: Records = field(default_factory=list)


@dataclass
class _RunState:
    run: Run
    graph: CompiledGraph
    control: RunControl
    tracker: CheckpointTracker | None
    controller: ConcurrencyController
    metrics: dict[str, Any]
    buffers: dict[str, Records] = field(default_factory=dict)
    branch_failures: dict[str, str] = field(default_factory=dict)

    @property
    def settings(self) -> Settings:
        return self.graph.definition.settings


def new_metrics() -> dict[str, Any]:
    return {
        "records_in": 0,
        "records_loaded": 0,
        "records_failed": 0,
        "records_dead_lettered": 0,
        "records_unrouted": 0,
        "batches": 0,
        "checkpoints": 0,
        "failed_steps": [],
        "steps": {},
    }


class DagExecutor:
    """Executes compiled pipeline graphs.

    Args:
        registry: Capability registry used to dispatch adapter steps.
        store: State store for errors, dead letters and checkpoints.
        circuit_breaker: Shared breaker; one is created when omitted.
        checkpoints: Checkpoint manager; built on *store* when omitted.
        dead_letters: Dead-letter handler; built on *store* when omitted.
        connections: Resolves ``connectionCode`` references.
        emitter: Event emitter for step and run events.
        settings: Executor defaults (step timeout, batch size).
        sleep: Awaitable sleep used for retry backoff; injectable for tests.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        *,
        store: StateStore | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        checkpoints: CheckpointManager | None = None,
        dead_letters: DeadLetterHandler | None = None,
        connections: ConnectionResolver | None = None,
        emitter: EventEmitter | None = None,
        settings: ExecutorSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._store = store or MemoryStateStore()
        self._emitter = emitter or EventEmitter()
        self._breaker = circuit_breaker or CircuitBreaker()
        self._checkpoints = checkpoints or CheckpointManager(self._store)
        self._dead_letters = dead_letters or DeadLetterHandler(self._store, self._emitter)
        self._connections = connections or StaticConnectionResolver()
        self._settings = settings or ExecutorSettings()
        self._sleep = sleep

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def settings(self) -> ExecutorSettings:
        return self._settings

    @settings.setter
    def settings(self, settings: ExecutorSettings) -> None:
        self._settings = settings

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def execute(
        self,
        run: Run,
        graph: CompiledGraph,
        control: RunControl | None = None,
        *,
        resume_checkpoint: bool = True,
    ) -> ExecutionResult:
        """Run *graph* from its sources.

        Args:
            run: The run record; ``seed_records`` feed seed-driven sources.
            graph: The compiled definition.
            control: Cancellation flag polled at step and batch boundaries.
            resume_checkpoint: Start from the pipeline's last committed
                checkpoint.
        """
        state = self._new_state(run, graph, control, resume=resume_checkpoint)
        return await self._drive(state, source_index=0)

    async def resume(
        self, run: Run, graph: CompiledGraph, control: RunControl | None = None
    ) -> ExecutionResult:
        """Continue a PAUSED run from the successors of its waiting gate.

        The gate's pending input becomes its output; steps resolved before
        the pause are not executed again.

        Raises:
            ValueError: If the run carries no paused state.
        """
        paused = run.paused_state
        gate = run.waiting_step
        if not paused or not gate:
            raise ValueError(f"Run {run.id} has no paused state to resume")

        state = self._new_state(run, graph, control, resume=True)
        state.metrics = copy.deepcopy(paused.get("metrics") or run.metrics or new_metrics())
        state.buffers = copy.deepcopy(paused.get("buffers") or {})
        walk = _Walk.from_dict(paused["walk"])
        walk.outputs[gate] = walk.gate_inputs.pop(gate, [])
        walk.resolved[gate] = StepStatus.COMPLETED
        self._count(state, gate, len(walk.outputs[gate]), len(walk.outputs[gate]))

        if paused.get("mode") == "replay":
            state.tracker = None
            return await self._finish_replay(state, walk)
        mark = _Mark(
            source_index=int(paused.get("source_index", 0)),
            source_cursor=dict(paused.get("source_cursor") or {}),
            position=int(paused.get("position", 0)),
            batch_end=int(paused.get("batch_end", 0)),
            records=copy.deepcopy(paused.get("source_records") or []),
        )
        return await self._drive(state, mark.source_index, pending=(walk, mark))

    async def replay(
        self,
        run: Run,
        graph: CompiledGraph,
        step_key: str,
        records: Records,
        control: RunControl | None = None,
    ) -> ExecutionResult:
        """Process *records* starting at *step_key*.

        Only *step_key* and its descendants execute; checkpoints are not
        touched.
        """
        state = self._new_state(run, graph, control, resume=False)
        state.tracker = None
        reachable = graph.descendants(step_key) | {step_key}
        walk = _Walk(
            resolved={k: StepStatus.SKIPPED for k in graph.order if k not in reachable},
            injected={step_key: copy.deepcopy(records)},
        )
        state.metrics["records_in"] += len(records)
        return await self._finish_replay(state, walk)

    # ------------------------------------------------------------------
    # Driving batches
    # ------------------------------------------------------------------

    def _new_state(
        self,
        run: Run,
        graph: CompiledGraph,
        control: RunControl | None,
        *,
        resume: bool,
    ) -> _RunState:
        settings = graph.definition.settings
        return _RunState(
            run=run,
            graph=graph,
            control=control or RunControl(),
            tracker=self._checkpoints.tracker(run, settings.checkpoint, resume=resume),
            controller=ConcurrencyController(settings.parallel),
            metrics=copy.deepcopy(run.metrics) if run.metrics else new_metrics(),
        )

    async def _drive(
        self,
        state: _RunState,
        source_index: int,
        pending: tuple[_Walk, _Mark] | None = None,
    ) -> ExecutionResult:
        graph = state.graph
        sources = graph.sources
        batch_size = max(1, state.settings.throughput.batch_size or self._settings.batch_size)

        for index in range(source_index, len(sources)):
            source = sources[index]
            tracker = self._tracker_for(state, source)
            if pending is not None:
                walk, mark = pending
                pending = None
                records = mark.records
                outcome = await self._run_batch(state, walk)
                if outcome is not None:
                    return self._halted(state, outcome, walk, mark)
                flushed = await self._after_batch(
                    state, source, mark, records[mark.position:mark.batch_end], len(records)
                )
                if flushed is not None:
                    return self._halted(state, flushed[1], flushed[0], mark)
                position = mark.batch_end
                cursor_entry = mark.source_cursor
            else:
                cursor_entry = tracker.cursor_for(source) if tracker else {}
                try:
                    extracted = await self._extract(state, source, cursor_entry)
                except _StepCancelled:
                    return self._cancelled(state)
                except _StepFailed as failure:
                    result = await self._source_failed(state, source, failure)
                    if result is not None:
                        return result
                    continue
                records = tracker.skip(source, extracted, cursor_entry) if tracker else extracted
                state.metrics["records_in"] += len(records)
                self._count(state, source, 0, len(records))
                position = 0

            while position < len(records):
                if state.control.cancel_requested:
                    return self._cancelled(state)
                batch = records[position:position + batch_size]
                mark = _Mark(index, cursor_entry, position, position + len(batch), records)
                started = time.monotonic()

                walk = _Walk(
                    outputs={source: batch},
                    resolved={
                        k: (StepStatus.COMPLETED if k == source else StepStatus.SKIPPED)
                        for k in sources
                    },
                )
                state.metrics["batches"] += 1
                outcome = await self._run_batch(state, walk)
                if outcome is not None:
                    return self._halted(state, outcome, walk, mark)

                flushed = await self._after_batch(state, source, mark, batch, len(records))
                if flushed is not None:
                    return self._halted(state, flushed[1], flushed[0], mark)
                position = mark.batch_end
                await self._throttle(state, len(batch), started)

            if any(state.buffers.values()):
                flushed = await self._flush(state)
                if flushed is not None:
                    end = _Mark(index, cursor_entry, len(records), len(records), records)
                    return self._halted(state, flushed[1], flushed[0], end)

        return self._finished(state)

    def _tracker_for(self, state: _RunState, source: str) -> CheckpointTracker | None:
        """The checkpoint tracker for *source*, or ``None`` if it is not cursored.

        Seed-driven sources are never cursored; each trigger supplies a new
        seed batch.
        """
        step = state.graph.steps[source]
        capability = self._registry.capability(step.adapter_code) if step.adapter_code else None
        if capability is not None and capability.seeded:
            return None
        return state.tracker

    async def _after_batch(
        self,
        state: _RunState,
        source: str,
        mark: _Mark,
        batch: Records,
        total: int,
    ) -> tuple[_Walk, WalkResult] | None:
        """Flush buffers and advance the checkpoint once a batch is done.

        Returns the finalization walk when it halted the run.
        """
        tracker = self._tracker_for(state, source)
        if tracker is None or not tracker.enabled:
            return None
        end_of_stream = mark.batch_end >= total
        absolute = int(mark.source_cursor.get("offset", 0)) + mark.batch_end
        if not (end_of_stream or tracker.due(source, absolute)):
            return None
        if any(state.buffers.values()):
            flushed = await self._flush(state)
            if flushed is not None:
                return flushed
        checkpoint = tracker.commit(source, absolute, batch, final=end_of_stream)
        if checkpoint is not None:
            state.metrics["checkpoints"] += 1
            await self._emit(
                EventType.CHECKPOINT_COMMITTED,
                state,
                source,
                data={"cursor": checkpoint.cursor},
            )
        return None

    async def _throttle(self, state: _RunState, count: int, started: float) -> None:
        rps = state.settings.throughput.rate_limit_rps
        if not rps or count == 0:
            return
        remaining = count / rps - (time.monotonic() - started)
        if remaining > 0:
            await self._sleep(remaining)

    async def _flush(self, state: _RunState) -> tuple[_Walk, WalkResult] | None:
        """Run a finalization walk that drains every accumulation buffer."""
        walk = _Walk(
            resolved={k: StepStatus.SKIPPED for k in state.graph.sources},
            finalizing=True,
        )
        outcome = await self._run_batch(state, walk)
        if outcome is not None:
            return walk, outcome
        return None

    async def _run_batch(self, state: _RunState, walk: _Walk) -> WalkResult | None:
        """Walk the graph once. Returns the result only when the run must halt."""
        graph = state.graph
        result = await state.controller.walk(
            graph.order,
            {k: graph.predecessors(k) for k in graph.order},
            lambda key: self._run_step(state, walk, key),
            resolved=walk.resolved,
            should_stop=lambda: state.control.cancel_requested,
        )
        walk.resolved = result.resolved
        for key, exc in result.failures.items():
            state.branch_failures[key] = str(exc)
            if key not in state.metrics["failed_steps"]:
                state.metrics["failed_steps"].append(key)
        if result.halted is not None:
            return result
        if result.failures and not self._tolerates_failures(state):
            # CONTINUE: the batch finished its independent branches; stop here.
            result.halted = HaltReason.FAILED
            return result
        return None

    @staticmethod
    def _tolerates_failures(state: _RunState) -> bool:
        parallel = state.settings.parallel
        return parallel.enabled and parallel.error_policy == ErrorPolicy.BEST_EFFORT

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def _halted(
        self,
        state: _RunState,
        outcome: WalkResult,
        walk: _Walk,
        mark: _Mark,
    ) -> ExecutionResult:
        if outcome.halted == HaltReason.PAUSED and outcome.paused_step:
            gate = state.graph.steps[outcome.paused_step]
            preview_count = int(gate.config.get("previewCount", 10))
            paused_state = {
                "mode": "batch",
                "source_index": mark.source_index,
                "source_cursor": dict(mark.source_cursor),
                "position": mark.position,
                "batch_end": mark.batch_end,
                "source_records": copy.deepcopy(mark.records),
                "walk": walk.to_dict(),
                "buffers": copy.deepcopy(state.buffers),
                "metrics": copy.deepcopy(state.metrics),
                "preview": copy.deepcopy(
                    walk.gate_inputs.get(outcome.paused_step, [])[:preview_count]
                ),
            }
            return ExecutionResult(
                status=RunStatus.PAUSED,
                metrics=state.metrics,
                waiting_step=outcome.paused_step,
                paused_state=paused_state,
            )
        if outcome.halted == HaltReason.CANCELLED:
            return self._cancelled(state)
        return ExecutionResult(
            status=RunStatus.FAILED,
            error=self._failure_message(state),
            metrics=state.metrics,
        )

    def _cancelled(self, state: _RunState) -> ExecutionResult:
        logger.info("Run %s cancelled at a step boundary", state.run.id)
        return ExecutionResult(status=RunStatus.CANCELLED, metrics=state.metrics)

    def _finished(self, state: _RunState) -> ExecutionResult:
        if state.branch_failures and not self._tolerates_failures(state):
            return ExecutionResult(
                status=RunStatus.FAILED,
                error=self._failure_message(state),
                metrics=state.metrics,
            )
        return ExecutionResult(status=RunStatus.SUCCEEDED, metrics=state.metrics)

    @staticmethod
    def _failure_message(state: _RunState) -> str:
        if not state.branch_failures:
            return "Run failed"
        return "; ".join(f"{k}: {v}" for k, v in state.branch_failures.items())

    async def _finish_replay(self, state: _RunState, walk: _Walk) -> ExecutionResult:
        outcome = await self._run_batch(state, walk)
        if outcome is None and any(state.buffers.values()):
            flushed = await self._flush(state)
            if flushed is not None:
                walk, outcome = flushed
        if outcome is not None:
            result = self._halted(state, outcome, walk, _Mark(0, {}, 0, 0))
            if result.paused_state is not None:
                result.paused_state["mode"] = "replay"
            return result
        return self._finished(state)

    async def _source_failed(
        self, state: _RunState, source: str, failure: _StepFailed
    ) -> ExecutionResult | None:
        state.branch_failures[source] = str(failure.cause)
        state.metrics["failed_steps"].append(source)
        if failure.fatal or not self._tolerates_failures(state):
            return ExecutionResult(
                status=RunStatus.FAILED,
                error=self._failure_message(state),
                metrics=state.metrics,
            )
        return None

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _extract(
        self, state: _RunState, source: str, cursor: dict[str, Any] | None = None
    ) -> Records:
        step = state.graph.steps[source]
        if state.control.cancel_requested:
            raise _StepCancelled()
        if cursor is None:
            cursor = state.tracker.cursor_for(source) if state.tracker else {}
        await self._emit(EventType.STEP_STARTED, state, source)
        records = await self._execute_adapter(
            state, step, list(state.run.seed_records), cursor=cursor, single_call=True
        )
        await self._emit(
            EventType.STEP_COMPLETED, state, source, data={"records": len(records)}
        )
        return records

    async def _run_step(self, state: _RunState, walk: _Walk, key: str) -> StepOutcome:
        if state.control.cancel_requested:
            return StepOutcome(StepStatus.CANCELLED)

        step = state.graph.steps[key]
        if key in walk.injected:
            inputs, active = walk.injected[key], True
        else:
            inputs, active = self._gather(state.graph, walk, key)

        has_buffer = bool(state.buffers.get(key))
        if not active and not (walk.finalizing and has_buffer):
            await self._emit(EventType.STEP_SKIPPED, state, key)
            return StepOutcome(StepStatus.SKIPPED)

        try:
            if step.type == StepType.GATE:
                return await self._gate(state, walk, step, inputs)
            if step.type == StepType.ROUTE:
                walk.outputs[key] = self._partition(state, step, inputs)
                self._count(state, key, len(inputs), len(inputs))
                return StepOutcome(StepStatus.COMPLETED)

            explicit_batch = step.config.get("batchSize")
            if explicit_batch:
                buffer = state.buffers.setdefault(key, [])
                buffer.extend(inputs)
                if len(buffer) < int(explicit_batch) and not walk.finalizing:
                    return StepOutcome(StepStatus.DEFERRED)
                inputs = state.buffers.pop(key)

            await self._emit(
                EventType.STEP_STARTED, state, key, data={"records": len(inputs)}
            )
            output = await self._execute_adapter(state, step, inputs)
            walk.outputs[key] = output
            self._count(state, key, len(inputs), len(output))
            if step.is_terminal:
                state.metrics["records_loaded"] += len(output)
            await self._emit(
                EventType.STEP_COMPLETED, state, key, data={"records": len(output)}
            )
            return StepOutcome(StepStatus.COMPLETED)
        except _StepCancelled:
            return StepOutcome(StepStatus.CANCELLED)
        except _StepFailed as failure:
            await self._emit(
                EventType.STEP_FAILED,
                state,
                key,
                data={"error": str(failure.cause), "fatal": failure.fatal},
            )
            logger.error("Step '%s' failed in run %s: %s", key, state.run.id, failure.cause)
            return StepOutcome(StepStatus.FAILED, failure.cause, fatal=failure.fatal)

    @staticmethod
    def _gather(graph: CompiledGraph, walk: _Walk, key: str) -> tuple[Records, bool]:
        """Collect input carried by active incoming edges."""
        records: Records = []
        active = False
        for edge in graph.incoming.get(key, []):
            if walk.resolved.get(edge.source) != StepStatus.COMPLETED:
                continue
            output = walk.outputs.get(edge.source)
            if isinstance(output, dict):
                branch = output.get(edge.label or "", [])
                if not branch:
                    continue
                records.extend(branch)
            else:
                records.extend(output or [])
            active = True
        return records, active

    def _partition(
        self, state: _RunState, step: Step, records: Records
    ) -> dict[str, Records]:
        """Split *records* by branch label; unmatched records go to ``else``."""
        branches = step.config.get("branches", [])
        first_match = str(step.config.get("mode", "first")).lower() != "all"
        labels = {e.label for e in state.graph.outgoing.get(step.key, []) if e.label}
        out: dict[str, Records] = {}
        for record in records:
            matched = False
            for branch in branches:
                if evaluate_condition(str(branch.get("when", "")), record):
                    out.setdefault(str(branch["label"]), []).append(record)
                    matched = True
                    if first_match:
                        break
            if not matched:
                out.setdefault(ELSE_LABEL, []).append(record)
        unrouted = sum(len(v) for k, v in out.items() if k not in labels)
        if unrouted:
            state.metrics["records_unrouted"] += unrouted
            logger.debug("Route '%s' dropped %d unrouted record(s)", step.key, unrouted)
        return out

    async def _gate(
        self, state: _RunState, walk: _Walk, step: Step, inputs: Records
    ) -> StepOutcome:
        if step.key in state.run.approved_gates:
            walk.outputs[step.key] = inputs
            self._count(state, step.key, len(inputs), len(inputs))
            return StepOutcome(StepStatus.COMPLETED)

        approval = str(step.config.get("approvalType", "MANUAL")).upper()
        if approval == "THRESHOLD":
            threshold = float(step.config.get("errorThresholdPercent", 0))
            seen = max(state.metrics["records_in"], 1)
            error_rate = state.metrics["records_failed"] * 100.0 / seen
            if error_rate < threshold:
                logger.info(
                    "Gate '%s' auto-approved (error rate %.2f%% < %.2f%%)",
                    step.key,
                    error_rate,
                    threshold,
                )
                walk.outputs[step.key] = inputs
                self._count(state, step.key, len(inputs), len(inputs))
                return StepOutcome(StepStatus.COMPLETED)

        walk.gate_inputs[step.key] = inputs
        logger.info(
            "Run %s waiting on %s gate '%s' with %d record(s)",
            state.run.id,
            approval,
            step.key,
            len(inputs),
        )
        return StepOutcome(StepStatus.PAUSED)

    # ------------------------------------------------------------------
    # Adapter invocation
    # ------------------------------------------------------------------

    async def _execute_adapter(
        self,
        state: _RunState,
        step: Step,
        inputs: Records,
        *,
        cursor: dict[str, Any] | None = None,
        single_call: bool = False,
    ) -> Records:
        adapter = self._registry.get(step.adapter_code)
        if adapter is None:
            raise _StepFailed(
                FatalConfigError(f"Adapter '{step.adapter_code}' is not registered"),
                fatal=True,
            )
        try:
            connection = (
                self._connections.resolve(step.connection_code) if step.connection_code else {}
            )
        except FatalConfigError as exc:
            raise _StepFailed(exc, fatal=True) from exc

        context = ExecutionContext(
            run_id=state.run.id,
            pipeline_code=state.run.pipeline_code,
            step_key=step.key,
            cursor=dict(cursor or {}),
            seed_records=list(state.run.seed_records),
            connection=connection,
        )

        if single_call:
            chunks = [inputs]
        elif not inputs:
            return []
        else:
            size = 1 if not adapter.capability.batchable else int(
                step.config.get("batchSize")
                or state.settings.throughput.batch_size
                or self._settings.batch_size
            )
            chunks = [inputs[i:i + size] for i in range(0, len(inputs), size)]

        output: Records = []
        for chunk in chunks:
            if state.control.cancel_requested and not single_call:
                raise _StepCancelled()
            try:
                result = await self._invoke(state, step, adapter, chunk, context)
            except _RetriesExhausted as exhausted:
                if single_call or not state.settings.dead_letter_queue:
                    raise _StepFailed(exhausted.cause) from exhausted.cause
                await self._dead_letter_chunk(state, step, chunk, exhausted)
                continue
            output.extend(result.records)
            for failure in result.failures:
                state.metrics["records_failed"] += 1
                self._count(state, step.key, 0, 0, failed=1)
                error = await self._dead_letters.record_error(
                    run_id=state.run.id,
                    pipeline_code=state.run.pipeline_code,
                    step_key=step.key,
                    message=failure.message,
                    payload=failure.record,
                )
                if state.settings.dead_letter_queue:
                    await self._dead_letters.dead_letter(error, failure.message)
                    state.metrics["records_dead_lettered"] += 1
        return output

    async def _dead_letter_chunk(
        self,
        state: _RunState,
        step: Step,
        chunk: Records,
        exhausted: _RetriesExhausted,
    ) -> None:
        reason = f"Retries exhausted after {exhausted.attempts} attempt(s): {exhausted.cause}"
        for record in chunk:
            state.metrics["records_failed"] += 1
            self._count(state, step.key, 0, 0, failed=1)
            error = await self._dead_letters.record_error(
                run_id=state.run.id,
                pipeline_code=state.run.pipeline_code,
                step_key=step.key,
                message=str(exhausted.cause),
                payload=record,
                exc=exhausted.cause,
            )
            await self._dead_letters.dead_letter(error, reason)
            state.metrics["records_dead_lettered"] += 1

    async def _invoke(
        self,
        state: _RunState,
        step: Step,
        adapter: Adapter,
        chunk: Records,
        context: ExecutionContext,
    ) -> StepOutput:
        """Call the adapter with breaker, timeout and retry policy applied.

        Raises:
            _StepFailed: On FatalConfigError (no retry).
            _RetriesExhausted: When the retry budget is spent or the
                error is not retryable.
        """
        policy = state.settings.retry
        key = circuit_key(step.adapter_code, step.connection_code)
        timeout_ms = int(
            step.config.get("timeoutMs")
            or state.settings.step_timeout_ms
            or self._settings.step_timeout_ms
        )
        attempt = 0
        while True:
            context.attempt = attempt
            try:
                if not self._breaker.allow(key):
                    raise CircuitOpenError(
                        f"Circuit open for '{key}'", adapter_code=step.adapter_code
                    )
                try:
                    output = await asyncio.wait_for(
                        invoke_adapter(adapter, step, chunk, context),
                        timeout=timeout_ms / 1000.0,
                    )
                except asyncio.TimeoutError as exc:
                    raise TransientAdapterError(
                        f"Adapter '{step.adapter_code}' timed out after {timeout_ms}ms",
                        adapter_code=step.adapter_code,
                    ) from exc
                await self._record_success(state, step, key)
                return output
            except CircuitOpenError as exc:
                last: BaseException = exc
            except FatalConfigError as exc:
                self._breaker.record_failure(key)
                raise _StepFailed(exc, fatal=True) from exc
            except Exception as exc:
                last = exc
                await self._record_failure(state, step, key)

            retryable = last.is_retryable if isinstance(last, RelayflowError) else True
            if not retryable or attempt >= policy.max_retries:
                raise _RetriesExhausted(last, attempt + 1)

            delay_ms = policy.delay_for_attempt(attempt)
            await self._emit(
                EventType.STEP_RETRY,
                state,
                step.key,
                data={"attempt": attempt + 1, "delay_ms": delay_ms, "error": str(last)},
            )
            logger.warning(
                "Step '%s' attempt %d failed (%s); retrying in %dms",
                step.key,
                attempt + 1,
                last,
                delay_ms,
            )
            await self._sleep(delay_ms / 1000.0)
            attempt += 1

    async def _record_success(self, state: _RunState, step: Step, key: str) -> None:
        before = self._breaker.state(key)
        after = self._breaker.record_success(key)
        if after == CircuitState.CLOSED and before != CircuitState.CLOSED:
            await self._emit(
                EventType.CIRCUIT_CLOSED, state, step.key, data={"circuit": key}
            )

    async def _record_failure(self, state: _RunState, step: Step, key: str) -> None:
        before = self._breaker.state(key)
        after = self._breaker.record_failure(key)
        if after == CircuitState.OPEN and before != CircuitState.OPEN:
            await self._emit(
                EventType.CIRCUIT_OPENED, state, step.key, data={"circuit": key}
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _count(
        state: _RunState, key: str, records_in: int, records_out: int, failed: int = 0
    ) -> None:
        counters = state.metrics["steps"].setdefault(key, {"in": 0, "out": 0, "failed": 0})
        counters["in"] += records_in
        counters["out"] += records_out
        counters["failed"] += failed

    async def _emit(
        self,
        event_type: EventType,
        state: _RunState,
        step_key: str = "",
        data: dict[str, Any] | None = None,
    ) -> None:
        await self._emitter.emit(
            EngineEvent(
                type=event_type,
                pipeline_code=state.run.pipeline_code,
                run_id=state.run.id,
                step_key=step_key,
                data=data or {},
            )
        )

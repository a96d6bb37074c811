"""Concurrency controller for steps within one run.

Walks a compiled DAG by repeatedly launching every step whose
predecessors have all resolved. With parallel execution disabled the
limit is one and steps run strictly in topological order; otherwise
independent branches run concurrently up to ``max_concurrent_steps``.

The controller never interrupts a running step. Halting (cancellation,
gate pause, FAIL_FAST) stops new launches and waits for in-flight steps
to finish.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field

from relayflow.pipeline.models import ErrorPolicy, ParallelExecution

logger = logging.getLogger(__name__)


class StepStatus(str, enum.Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


# Statuses that count as "resolved" for scheduling successors.
RESOLVED_STATUSES = frozenset(
    {StepStatus.COMPLETED, StepStatus.SKIPPED, StepStatus.DEFERRED, StepStatus.FAILED}
)


class HaltReason(str, enum.Enum):
    PAUSED = "paused"
    CANCELLED = "cancelled"
    FAILED = "failed"
    FATAL = "fatal"


_HALT_PRIORITY = {
    HaltReason.PAUSED: 0,
    HaltReason.CANCELLED: 1,
    HaltReason.FAILED: 2,
    HaltReason.FATAL: 3,
}


@dataclass
class StepOutcome:
    """What happened when a step was run.

    Attributes:
        status: Resolution of the step.
        error: The failure, for FAILED outcomes.
        fatal: Abort the whole run regardless of error policy.
    """

    status: StepStatus
    error: BaseException | None = None
    fatal: bool = False


@dataclass
class WalkResult:
    """Outcome of one walk over the graph."""

    resolved: dict[str, StepStatus] = field(default_factory=dict)
    failures: dict[str, BaseException] = field(default_factory=dict)
    halted: HaltReason | None = None
    paused_step: str | None = None

    @property
    def failed(self) -> bool:
        return self.halted in (HaltReason.FAILED, HaltReason.FATAL)


StepRunner = Callable[[str], Awaitable[StepOutcome]]


class ConcurrencyController:
    """Schedules step execution for a run under a parallel-execution policy."""

    def __init__(self, policy: ParallelExecution | None = None) -> None:
        self._policy = policy or ParallelExecution()

    @property
    def policy(self) -> ParallelExecution:
        return self._policy

    @property
    def limit(self) -> int:
        if not self._policy.enabled:
            return 1
        return max(1, self._policy.max_concurrent_steps)

    def _halts_on_failure(self) -> bool:
        return (
            not self._policy.enabled
            or self._policy.error_policy == ErrorPolicy.FAIL_FAST
        )

    async def walk(
        self,
        order: list[str],
        predecessors: Mapping[str, list[str]],
        run_step: StepRunner,
        *,
        resolved: Mapping[str, StepStatus] | None = None,
        should_stop: Callable[[], bool] = lambda: False,
    ) -> WalkResult:
        """Run every unresolved step in *order* through *run_step*.

        Args:
            order: Step keys in topological order.
            predecessors: Direct predecessors per step key.
            run_step: Coroutine executing one step.
            resolved: Steps already resolved (resumed walks).
            should_stop: Polled before each launch; ``True`` halts the walk
                as cancelled.

        Returns:
            A :class:`WalkResult`. Steps never launched are absent from
            ``resolved``.
        """
        result = WalkResult(resolved=dict(resolved or {}))
        position = {key: i for i, key in enumerate(order)}
        pending = [k for k in order if k not in result.resolved]
        running: dict[asyncio.Task[StepOutcome], str] = {}

        def halt(reason: HaltReason) -> None:
            if result.halted is None or _HALT_PRIORITY[reason] > _HALT_PRIORITY[result.halted]:
                result.halted = reason

        try:
            while True:
                if result.halted is None and should_stop():
                    halt(HaltReason.CANCELLED)

                if result.halted is None:
                    for key in list(pending):
                        if len(running) >= self.limit:
                            break
                        preds = predecessors.get(key, [])
                        if all(result.resolved.get(p) in RESOLVED_STATUSES for p in preds):
                            pending.remove(key)
                            task = asyncio.create_task(run_step(key), name=f"step:{key}")
                            running[task] = key
                        elif not self._policy.enabled:
                            # Sequential mode: strictly topological, no look-ahead.
                            break

                if not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=lambda t: position[running[t]]):
                    key = running.pop(task)
                    try:
                        outcome = task.result()
                    except Exception as exc:
                        logger.exception("Step '%s' raised outside its handler", key)
                        outcome = StepOutcome(StepStatus.FAILED, exc)
                    self._record(key, outcome, result, halt)
        finally:
            for task in running:
                task.cancel()

        return result

    def _record(
        self,
        key: str,
        outcome: StepOutcome,
        result: WalkResult,
        halt: Callable[[HaltReason], None],
    ) -> None:
        if outcome.status == StepStatus.PAUSED:
            result.paused_step = result.paused_step or key
            halt(HaltReason.PAUSED)
            return
        if outcome.status == StepStatus.CANCELLED:
            halt(HaltReason.CANCELLED)
            return

        result.resolved[key] = outcome.status
        if outcome.status != StepStatus.FAILED:
            return

        result.failures[key] = outcome.error or RuntimeError(f"Step '{key}' failed")
        if outcome.fatal:
            halt(HaltReason.FATAL)
        elif self._halts_on_failure():
            halt(HaltReason.FAILED)
        else:
            logger.info(
                "Step '%s' failed; continuing independent branches (%s)",
                key,
                self._policy.error_policy.value,
            )

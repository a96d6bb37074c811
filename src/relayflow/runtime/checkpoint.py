"""Checkpoint manager.

Persists the resume cursor of a pipeline's source steps. The owning run
is the only writer while it holds the pipeline lock, and the executor
only commits a cursor after every record up to it has been processed
downstream.

Strategies:

- ``COUNT``: offsets land on multiples of ``interval`` (200, then 300,
  never 250); end of stream commits the exact total.
- ``INTERVAL``: after any batch once ``interval`` ms have elapsed since
  the previous commit.
- ``TIMESTAMP``: after every batch, storing the highest committed value
  of the watermark field. Resume skips records at or below it.
"""

from __future__ import annotations

import copy
import logging
import time
from collections.abc import Callable
from typing import Any

from relayflow.pipeline.conditions import resolve_path
from relayflow.pipeline.models import (
    Checkpoint,
    CheckpointPolicy,
    CheckpointStrategy,
    Run,
)
from relayflow.runtime.store import StateStore

logger = logging.getLogger(__name__)


class CheckpointTracker:
    """Cursor bookkeeping for one run.

    Created by :meth:`CheckpointManager.tracker`; not shared across runs.
    """

    def __init__(
        self,
        store: StateStore,
        run: Run,
        policy: CheckpointPolicy,
        base: Checkpoint | None,
        clock: Callable[[], float],
    ) -> None:
        self._store = store
        self._run = run
        self._policy = policy
        self._clock = clock
        self._cursor: dict[str, dict[str, Any]] = copy.deepcopy(base.cursor) if base else {}
        self._last_commit_at = clock()

    @property
    def enabled(self) -> bool:
        return self._policy.enabled

    @property
    def strategy(self) -> CheckpointStrategy:
        return self._policy.strategy

    @property
    def cursor(self) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._cursor)

    def cursor_for(self, source: str) -> dict[str, Any]:
        return dict(self._cursor.get(source, {}))

    def resume_offset(self, source: str) -> int:
        if not self.enabled or self.strategy == CheckpointStrategy.TIMESTAMP:
            return 0
        return int(self._cursor.get(source, {}).get("offset", 0))

    def skip(
        self,
        source: str,
        records: list[dict[str, Any]],
        entry: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Drop records already covered by the committed cursor.

        Args:
            source: Source step key.
            records: Everything the source produced.
            entry: Cursor entry to filter against instead of the current one.
        """
        if not self.enabled:
            return records
        if entry is None:
            entry = self._cursor.get(source, {})
        if self.strategy == CheckpointStrategy.TIMESTAMP:
            watermark = entry.get("watermark")
            if watermark is None:
                return records
            field_name = self._policy.watermark_field
            kept = []
            for record in records:
                value = resolve_path(record, field_name)
                if value is None or _after(value, watermark):
                    kept.append(record)
            return kept
        return records[int(entry.get("offset", 0)):]

    def due(self, source: str, offset: int) -> bool:
        """Whether a commit at absolute *offset* would advance the cursor."""
        if not self.enabled:
            return False
        if self.strategy == CheckpointStrategy.COUNT:
            target = (offset // self._policy.interval) * self._policy.interval
            return target > self.resume_offset(source)
        if self.strategy == CheckpointStrategy.INTERVAL:
            elapsed_ms = (self._clock() - self._last_commit_at) * 1000.0
            return elapsed_ms >= self._policy.interval
        return True

    def commit(
        self,
        source: str,
        offset: int,
        records: list[dict[str, Any]] | None = None,
        *,
        final: bool = False,
    ) -> Checkpoint | None:
        """Advance and persist the cursor for *source*.

        Args:
            source: Source step key.
            offset: Absolute number of source records fully processed.
            records: The batch just processed (TIMESTAMP watermark input).
            final: End of stream; COUNT commits the exact offset.

        Returns:
            The written checkpoint, or ``None`` if the cursor did not move.
        """
        if not self.enabled:
            return None

        entry = dict(self._cursor.get(source, {}))
        if self.strategy == CheckpointStrategy.TIMESTAMP:
            watermark = entry.get("watermark")
            for record in records or []:
                value = resolve_path(record, self._policy.watermark_field)
                if value is not None and (watermark is None or _after(value, watermark)):
                    watermark = value
            if watermark is None or watermark == entry.get("watermark"):
                return None
            entry["watermark"] = watermark
        else:
            if self.strategy == CheckpointStrategy.COUNT and not final:
                target = (offset // self._policy.interval) * self._policy.interval
            else:
                target = offset
            if target <= int(entry.get("offset", 0)):
                return None
            entry["offset"] = target

        self._cursor[source] = entry
        checkpoint = Checkpoint(
            pipeline_code=self._run.pipeline_code,
            run_id=self._run.id,
            cursor=copy.deepcopy(self._cursor),
        )
        self._store.commit_checkpoint(self._run, checkpoint)
        self._last_commit_at = self._clock()
        logger.debug(
            "Checkpoint for '%s' advanced: %s=%s",
            self._run.pipeline_code,
            source,
            entry,
        )
        return checkpoint


def _after(value: Any, watermark: Any) -> bool:
    try:
        return value > watermark
    except TypeError:
        return str(value) > str(watermark)


class CheckpointManager:
    """Loads, resets and hands out trackers for pipeline checkpoints."""

    def __init__(
        self, store: StateStore, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._store = store
        self._clock = clock

    def load(self, pipeline_code: str) -> Checkpoint | None:
        return self._store.get_checkpoint(pipeline_code)

    def reset(self, pipeline_code: str) -> bool:
        removed = self._store.delete_checkpoint(pipeline_code)
        if removed:
            logger.info("Checkpoint for '%s' reset", pipeline_code)
        return removed

    def tracker(
        self, run: Run, policy: CheckpointPolicy, *, resume: bool = True
    ) -> CheckpointTracker:
        base = self.load(run.pipeline_code) if (resume and policy.enabled) else None
        if base is not None:
            logger.info(
                "Run %s resuming '%s' from checkpoint %s",
                run.id,
                run.pipeline_code,
                base.cursor,
            )
        return CheckpointTracker(self._store, run, policy, base, self._clock)

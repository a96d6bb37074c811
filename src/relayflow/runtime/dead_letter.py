"""Dead-letter handler.

Owns record-level failures: :class:`RunError` records, the
:class:`DeadLetterEntry` rows created when a record's retry budget is
exhausted, and the append-only :class:`RetryAudit` trail written each
time an operator patches and retries a failed record.
"""

from __future__ import annotations

import logging
import traceback
from typing import Any

from relayflow.errors import GuardError, NotFoundError
from relayflow.pipeline.events import EngineEvent, EventEmitter, EventType
from relayflow.pipeline.models import (
    DeadLetterEntry,
    DeadLetterStatus,
    RetryAudit,
    RunError,
    new_id,
)
from relayflow.runtime.store import StateStore

logger = logging.getLogger(__name__)

# Keys an operator patch may never overwrite.
PROTECTED_PAYLOAD_KEYS = frozenset({"_messageId", "_queue", "_receivedAt"})


class DeadLetterHandler:
    """Persists record failures and dead letters for later replay."""

    def __init__(self, store: StateStore, emitter: EventEmitter | None = None) -> None:
        self._store = store
        self._emitter = emitter or EventEmitter()

    async def record_error(
        self,
        *,
        run_id: str,
        pipeline_code: str,
        step_key: str,
        message: str,
        payload: dict[str, Any],
        exc: BaseException | None = None,
    ) -> RunError:
        """Persist a record-level failure.

        The RECORD_FAILED event is emitted before the error is stored.
        """
        stack = ""
        if exc is not None:
            stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        error = RunError(
            id=new_id("err"),
            run_id=run_id,
            pipeline_code=pipeline_code,
            step_key=step_key,
            message=message,
            payload=dict(payload),
            stack_trace=stack,
        )
        await self._emitter.emit(
            EngineEvent(
                type=EventType.RECORD_FAILED,
                pipeline_code=pipeline_code,
                run_id=run_id,
                step_key=step_key,
                data={"error_id": error.id, "message": message},
            )
        )
        self._store.save_error(error)
        return error

    async def dead_letter(self, error: RunError, reason: str) -> DeadLetterEntry:
        """Route *error* out of its run."""
        entry = DeadLetterEntry(
            id=new_id("dlq"),
            error_id=error.id,
            run_id=error.run_id,
            pipeline_code=error.pipeline_code,
            step_key=error.step_key,
            payload=dict(error.payload),
            reason=reason,
        )
        await self._emitter.emit(
            EngineEvent(
                type=EventType.RECORD_DEAD_LETTERED,
                pipeline_code=error.pipeline_code,
                run_id=error.run_id,
                step_key=error.step_key,
                data={"entry_id": entry.id, "error_id": error.id, "reason": reason},
            )
        )
        self._store.save_dead_letter(entry)
        return entry

    def get_entry(self, entry_id: str) -> DeadLetterEntry:
        entry = self._store.get_dead_letter(entry_id)
        if entry is None:
            raise NotFoundError(f"Dead letter '{entry_id}' not found")
        return entry

    def list_entries(
        self,
        pipeline_code: str | None = None,
        status: DeadLetterStatus | None = None,
    ) -> list[DeadLetterEntry]:
        return self._store.list_dead_letters(pipeline_code, status)

    async def discard(self, entry_id: str) -> DeadLetterEntry:
        """Mark an entry discarded. Discarding twice is a no-op.

        Raises:
            NotFoundError: If the entry does not exist.
            GuardError: If the entry was already retried.
        """
        entry = self.get_entry(entry_id)
        if entry.status == DeadLetterStatus.DISCARDED:
            return entry
        if entry.status == DeadLetterStatus.RETRIED:
            raise GuardError(f"Dead letter '{entry_id}' was already retried")
        await self._emitter.emit(
            EngineEvent(
                type=EventType.DEAD_LETTER_DISCARDED,
                pipeline_code=entry.pipeline_code,
                run_id=entry.run_id,
                step_key=entry.step_key,
                data={"entry_id": entry.id},
            )
        )
        entry.status = DeadLetterStatus.DISCARDED
        self._store.save_dead_letter(entry)
        return entry

    def apply_patch(
        self,
        error_id: str,
        patch: dict[str, Any] | None,
        replay_run_id: str | None = None,
    ) -> tuple[RunError, RetryAudit]:
        """Patch a failed record's payload and append the audit.

        Args:
            error_id: The RunError being retried.
            patch: Field overrides merged over the original payload.
            replay_run_id: The run that will replay the patched record.

        Returns:
            The error and the freshly appended audit, whose
            ``resulting_payload`` is what the replay should process.

        Raises:
            NotFoundError: If the error does not exist.
            GuardError: If the patch touches a protected key.
        """
        error = self._store.get_error(error_id)
        if error is None:
            raise NotFoundError(f"Run error '{error_id}' not found")
        patch = dict(patch or {})
        blocked = PROTECTED_PAYLOAD_KEYS.intersection(patch)
        if blocked:
            raise GuardError(f"Patch may not modify: {', '.join(sorted(blocked))}")

        resulting = {**error.payload, **patch}
        audit = RetryAudit(
            id=new_id("audit"),
            error_id=error.id,
            previous_payload=dict(error.payload),
            patch=patch,
            resulting_payload=resulting,
            replay_run_id=replay_run_id,
        )
        self._store.append_audit(audit)
        logger.info("Retry audit %s recorded for error %s", audit.id, error.id)
        return error, audit

    def mark_retried(self, error: RunError, replay_run_id: str) -> None:
        error.resolved = True
        self._store.save_error(error)
        entry = self._store.find_dead_letter(error.id)
        if entry is not None and entry.status == DeadLetterStatus.PENDING:
            entry.status = DeadLetterStatus.RETRIED
            self._store.save_dead_letter(entry)
        logger.info("Error %s resolved by replay run %s", error.id, replay_run_id)

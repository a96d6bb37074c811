"""Engine event system for observability.

Every state change and failure path emits a typed event before the
corresponding state mutation. Storage and retention of events is left
to subscribers; :class:`LoggingEventSink` writes them to the log.
"""

from __future__ import annotations

import enum
import json
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine

logger = logging.getLogger(__name__)


class EventType(str, enum.Enum):
    """Typed event categories emitted by the engine."""

    RUN_STARTED = "run_started"
    RUN_SUCCEEDED = "run_succeeded"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"
    RUN_PAUSED = "run_paused"
    RUN_RESUMED = "run_resumed"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_SKIPPED = "step_skipped"
    STEP_RETRY = "step_retry"
    STEP_FAILED = "step_failed"
    RECORD_FAILED = "record_failed"
    RECORD_DEAD_LETTERED = "record_dead_lettered"
    RECORD_RETRIED = "record_retried"
    DEAD_LETTER_DISCARDED = "dead_letter_discarded"
    CHECKPOINT_COMMITTED = "checkpoint_committed"
    GATE_APPROVED = "gate_approved"
    GATE_REJECTED = "gate_rejected"
    CIRCUIT_OPENED = "circuit_opened"
    CIRCUIT_CLOSED = "circuit_closed"
    LOCK_CONTENDED = "lock_contended"
    LOCK_LOST = "lock_lost"
    TRIGGER_FIRED = "trigger_fired"
    TRIGGER_SKIPPED = "trigger_skipped"
    MESSAGE_DEAD_LETTERED = "message_dead_lettered"
    LIFECYCLE_TRANSITION = "lifecycle_transition"


@dataclass
class EngineEvent:
    """A single engine event.

    Attributes:
        type: The event category.
        pipeline_code: Pipeline the event concerns (empty if none).
        run_id: Run the event concerns (empty if none).
        step_key: Step the event concerns (empty for run-level events).
        timestamp: UNIX epoch when the event occurred.
        data: Arbitrary event-specific payload.
    """

    type: EventType
    pipeline_code: str = ""
    run_id: str = ""
    step_key: str = ""
    timestamp: float = field(default_factory=time.time)
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "pipeline_code": self.pipeline_code,
            "run_id": self.run_id,
            "step_key": self.step_key,
            "timestamp": self.timestamp,
            "data": self.data,
        }


# Callback type: async function that receives an EngineEvent
EventCallback = Callable[[EngineEvent], Coroutine[Any, Any, None]]


class EventEmitter:
    """Observer-pattern event emitter for engine events.

    Register callbacks with :meth:`on` (one type) or :meth:`on_all`
    (every type) and fire events with :meth:`emit`.
    """

    def __init__(self) -> None:
        self._listeners: dict[EventType, list[EventCallback]] = defaultdict(list)

    @property
    def listeners(self) -> dict[EventType, list[EventCallback]]:
        """Return the mapping of event types to registered callbacks."""
        return dict(self._listeners)

    def on(self, event_type: EventType, callback: EventCallback) -> None:
        """Register a callback for a specific event type.

        Args:
            event_type: The event category to listen for.
            callback: Async callable invoked when the event fires.
        """
        self._listeners[event_type].append(callback)

    def on_all(self, callback: EventCallback) -> None:
        for event_type in EventType:
            self._listeners[event_type].append(callback)

    async def emit(self, event: EngineEvent) -> None:
        """Fire an event, invoking all registered callbacks.

        Exceptions in callbacks are logged but do not prevent
        other callbacks from running.

        Args:
            event: The event to emit.
        """
        for callback in self._listeners.get(event.type, []):
            try:
                await callback(event)
            except Exception as exc:
                logger.error(
                    "Event callback error for %s: %s",
                    event.type.value,
                    exc,
                )


class LoggingEventSink:
    """Writes each event as one structured JSON log line."""

    def __init__(self, log: logging.Logger | None = None, level: int = logging.INFO) -> None:
        self._log = log or logging.getLogger("relayflow.events")
        self._level = level

    def attach(self, emitter: EventEmitter) -> None:
        emitter.on_all(self)

    async def __call__(self, event: EngineEvent) -> None:
        level = self._level
        if event.type in (
            EventType.RUN_FAILED,
            EventType.STEP_FAILED,
            EventType.LOCK_LOST,
            EventType.RECORD_DEAD_LETTERED,
            EventType.MESSAGE_DEAD_LETTERED,
        ):
            level = logging.WARNING
        self._log.log(level, "event %s", json.dumps(event.to_dict(), default=str))


class EventRecorder:
    """Collects events in memory, newest last."""

    def __init__(self, limit: int = 10_000) -> None:
        self._limit = limit
        self.events: list[EngineEvent] = []

    def attach(self, emitter: EventEmitter) -> None:
        emitter.on_all(self)

    async def __call__(self, event: EngineEvent) -> None:
        self.events.append(event)
        if len(self.events) > self._limit:
            del self.events[: len(self.events) - self._limit]

    def of_type(self, event_type: EventType) -> list[EngineEvent]:
        return [e for e in self.events if e.type == event_type]

    def for_run(self, run_id: str) -> list[EngineEvent]:
        return [e for e in self.events if e.run_id == run_id]

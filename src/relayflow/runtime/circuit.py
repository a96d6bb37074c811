"""Per adapter/connection circuit breaker.

CLOSED -> OPEN after ``failure_threshold`` consecutive failures within
``failure_window_ms``. OPEN rejects calls without invoking the adapter
until ``reset_timeout_ms`` has elapsed, then moves to HALF_OPEN and
admits one trial call at a time. ``success_threshold`` consecutive
successes in HALF_OPEN close the circuit; any failure reopens it.

Circuits are shared by every run using the same key. All mutation
happens on the event loop thread, so plain counters are sufficient.
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from relayflow.config import CircuitBreakerSettings

logger = logging.getLogger(__name__)


class CircuitState(str, enum.Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class Circuit:
    """Mutable state of one circuit."""

    failure_count: int = 0
    success_count: int = 0
    state: CircuitState = CircuitState.CLOSED
    opened_at: float | None = None
    window_started_at: float | None = None
    last_used_at: float = 0.0
    trial_in_flight: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "failureCount": self.failure_count,
            "successCount": self.success_count,
            "state": self.state.value,
            "openedAt": self.opened_at,
        }


def circuit_key(adapter_code: str, connection_code: str = "") -> str:
    return f"{adapter_code}:{connection_code or '-'}"


class CircuitBreaker:
    """Registry of circuits keyed by (adapter code, connection code).

    Args:
        settings: Thresholds and timeouts.
        clock: Monotonic clock returning seconds; injectable for tests.
    """

    def __init__(
        self,
        settings: CircuitBreakerSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or CircuitBreakerSettings()
        self._clock = clock
        self._circuits: dict[str, Circuit] = {}

    @property
    def settings(self) -> CircuitBreakerSettings:
        return self._settings

    @settings.setter
    def settings(self, settings: CircuitBreakerSettings) -> None:
        """Apply new thresholds; existing circuits keep their counts."""
        self._settings = settings

    def _circuit(self, key: str) -> Circuit:
        circuit = self._circuits.get(key)
        if circuit is None:
            if len(self._circuits) >= self._settings.max_circuits:
                self.evict_idle()
            if len(self._circuits) >= self._settings.max_circuits:
                oldest = min(self._circuits, key=lambda k: self._circuits[k].last_used_at)
                del self._circuits[oldest]
            circuit = Circuit(last_used_at=self._clock())
            self._circuits[key] = circuit
        return circuit

    def state(self, key: str) -> CircuitState:
        circuit = self._circuits.get(key)
        if circuit is None:
            return CircuitState.CLOSED
        self._maybe_half_open(circuit)
        return circuit.state

    def allow(self, key: str) -> bool:
        """Return whether a call may proceed for *key*.

        In HALF_OPEN, the first caller claims the trial slot; others are
        rejected until that trial reports back.
        """
        circuit = self._circuit(key)
        circuit.last_used_at = self._clock()
        self._maybe_half_open(circuit)

        if circuit.state == CircuitState.CLOSED:
            return True
        if circuit.state == CircuitState.OPEN:
            return False
        if circuit.trial_in_flight:
            return False
        circuit.trial_in_flight = True
        return True

    def record_success(self, key: str) -> CircuitState:
        circuit = self._circuit(key)
        circuit.last_used_at = self._clock()
        if circuit.state == CircuitState.HALF_OPEN:
            circuit.trial_in_flight = False
            circuit.success_count += 1
            if circuit.success_count >= self._settings.success_threshold:
                logger.info("Circuit '%s' closed after successful trials", key)
                self._reset(circuit)
        else:
            circuit.failure_count = 0
            circuit.window_started_at = None
        return circuit.state

    def record_failure(self, key: str) -> CircuitState:
        circuit = self._circuit(key)
        now = self._clock()
        circuit.last_used_at = now

        if circuit.state == CircuitState.HALF_OPEN:
            circuit.trial_in_flight = False
            self._open(key, circuit, now)
            return circuit.state
        if circuit.state == CircuitState.OPEN:
            return circuit.state

        window = self._settings.failure_window_ms / 1000.0
        if circuit.window_started_at is None or now - circuit.window_started_at > window:
            circuit.window_started_at = now
            circuit.failure_count = 0
        circuit.failure_count += 1
        if circuit.failure_count >= self._settings.failure_threshold:
            self._open(key, circuit, now)
        return circuit.state

    def reset(self, key: str) -> None:
        circuit = self._circuits.get(key)
        if circuit is not None:
            self._reset(circuit)

    def evict_idle(self) -> int:
        """Drop circuits unused for ``idle_timeout_ms``. Returns the count removed."""
        cutoff = self._clock() - self._settings.idle_timeout_ms / 1000.0
        stale = [
            k
            for k, c in self._circuits.items()
            if c.last_used_at < cutoff and not c.trial_in_flight
        ]
        for key in stale:
            del self._circuits[key]
        if stale:
            logger.debug("Evicted %d idle circuit(s)", len(stale))
        return len(stale)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Return the state of every tracked circuit."""
        for circuit in self._circuits.values():
            self._maybe_half_open(circuit)
        return {k: c.to_dict() for k, c in self._circuits.items()}

    def _maybe_half_open(self, circuit: Circuit) -> None:
        if circuit.state != CircuitState.OPEN or circuit.opened_at is None:
            return
        if self._clock() - circuit.opened_at >= self._settings.reset_timeout_ms / 1000.0:
            circuit.state = CircuitState.HALF_OPEN
            circuit.success_count = 0
            circuit.trial_in_flight = False

    def _open(self, key: str, circuit: Circuit, now: float) -> None:
        logger.warning(
            "Circuit '%s' opened after %d failure(s)", key, circuit.failure_count
        )
        circuit.state = CircuitState.OPEN
        circuit.opened_at = now
        circuit.success_count = 0

    @staticmethod
    def _reset(circuit: Circuit) -> None:
        circuit.state = CircuitState.CLOSED
        circuit.failure_count = 0
        circuit.success_count = 0
        circuit.opened_at = None
        circuit.window_started_at = None
        circuit.trial_in_flight = False

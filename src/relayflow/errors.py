"""Error hierarchy for the relayflow engine.

Every failure the engine knows how to classify maps to one of these
types. The executor consults :attr:`RelayflowError.is_retryable` to
decide whether an adapter failure goes back through the retry policy or
propagates immediately.
"""

from __future__ import annotations

from typing import Any


class RelayflowError(Exception):
    """Base exception for all relayflow errors."""

    @property
    def is_retryable(self) -> bool:
        """Whether this error is safe to retry."""
        return False


class ValidationError(RelayflowError):
    """Structural or schema problem in a definition. Never retried."""


class CompilationError(ValidationError):
    """A definition failed compilation.

    Attributes:
        issues: The structured validation issues that blocked compilation.
    """

    def __init__(self, issues: list[Any]) -> None:
        self.issues = list(issues)
        summary = "; ".join(str(i) for i in self.issues[:5])
        if len(self.issues) > 5:
            summary += f"; ... ({len(self.issues) - 5} more)"
        super().__init__(
            f"Definition has {len(self.issues)} validation issue(s): {summary}"
        )


class TransientAdapterError(RelayflowError):
    """Network/timeout class failure raised by (or on behalf of) an adapter.

    Attributes:
        adapter_code: The adapter that failed, when known.
        status_code: Upstream HTTP status, if applicable.
        retryable: Whether the retry policy should consider this failure.
    """

    def __init__(
        self,
        message: str,
        *,
        adapter_code: str = "",
        status_code: int | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.adapter_code = adapter_code
        self.status_code = status_code
        self.retryable = retryable

    @property
    def is_retryable(self) -> bool:
        return self.retryable


class CircuitOpenError(TransientAdapterError):
    """The circuit for an adapter/connection pair is open; no call was made."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)


class FatalConfigError(RelayflowError):
    """Missing connection or secret reference. Aborts the run."""


class LockContentionError(RelayflowError):
    """Another holder owns the lock for this key.

    Attributes:
        key: The contended lock key.
        current_owner: Token of the current holder, when known.
    """

    def __init__(self, key: str, current_owner: str | None = None) -> None:
        self.key = key
        self.current_owner = current_owner
        super().__init__(f"Lock '{key}' is held by {current_owner or 'another owner'}")


class CoordinationError(RelayflowError):
    """The coordinator found its own run or lease bookkeeping inconsistent."""


class GateRejection(RelayflowError):
    """An approval gate was explicitly rejected by an operator."""

    def __init__(self, step_key: str, reason: str = "") -> None:
        self.step_key = step_key
        self.reason = reason
        message = f"Gate '{step_key}' rejected"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class GuardError(RelayflowError):
    """An operation is not permitted in the current state."""


class LifecycleGuardError(GuardError):
    """Invalid lifecycle transition, or a run requested on an unpublished pipeline."""


class ReplayConfirmationRequired(GuardError):
    """Replaying through a non-pure adapter needs explicit confirmation."""


class NotFoundError(RelayflowError):
    """A referenced pipeline, run, error or entry does not exist."""

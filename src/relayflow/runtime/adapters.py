"""Adapter capability registry.

Adapters are dispatched by code through a single ``execute(step,
records, context)`` contract. The executor only ever looks at an
adapter's :class:`AdapterCapability`; registering a new adapter never
changes executor logic.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from relayflow.errors import FatalConfigError
from relayflow.pipeline.models import Step, StepType

logger = logging.getLogger(__name__)

_SCHEMA_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list, tuple),
}


@dataclass(frozen=True)
class ConfigField:
    """One entry of an adapter's config schema.

    Attributes:
        name: Key within ``step.config``.
        type: One of ``string``, ``integer``, ``number``, ``boolean``,
            ``object``, ``array``.
        required: Whether the key must be present.
        choices: Allowed values, if restricted.
    """

    name: str
    type: str = "string"
    required: bool = False
    choices: tuple[Any, ...] | None = None


@dataclass(frozen=True)
class AdapterCapability:
    """What the executor needs to know about an adapter.

    Attributes:
        code: Registry key referenced by ``Step.adapter_code``.
        type: Step type this adapter implements.
        pure: No side effects; dead-letter replay needs no confirmation.
        is_async: ``execute`` is a coroutine function. Synchronous
            adapters are run in a worker thread.
        batchable: Accepts many records per call; otherwise one at a time.
        seeded: Source output is the trigger seed; no checkpoint applies.
        required_connections: Config keys that must name a connection.
        config_schema: Fields checked at FULL validation.
    """

    code: str
    type: StepType
    pure: bool = False
    is_async: bool = True
    batchable: bool = True
    seeded: bool = False
    required_connections: tuple[str, ...] = ()
    config_schema: tuple[ConfigField, ...] = ()


@dataclass
class RecordFailure:
    """A record an adapter could not process, with the reason."""

    record: dict[str, Any]
    message: str


@dataclass
class StepOutput:
    """Result of one adapter invocation."""

    records: list[dict[str, Any]] = field(default_factory=list)
    failures: list[RecordFailure] = field(default_factory=list)


@dataclass
class ExecutionContext:
    """Per-invocation context handed to adapters.

    Attributes:
        run_id: The run being executed.
        pipeline_code: The pipeline being executed.
        step_key: Key of the step being invoked.
        attempt: Zero-based attempt number for this invocation.
        cursor: Committed cursor for source steps. Informational: sources
            return their full stream and the engine drops records the
            cursor already covers.
        seed_records: Records supplied by the trigger.
        connection: Resolved connection settings for the step.
    """

    run_id: str
    pipeline_code: str
    step_key: str
    attempt: int = 0
    cursor: dict[str, Any] = field(default_factory=dict)
    seed_records: list[dict[str, Any]] = field(default_factory=list)
    connection: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class Adapter(Protocol):
    """Protocol that all adapters must satisfy."""

    capability: AdapterCapability

    def execute(
        self,
        step: Step,
        records: list[dict[str, Any]],
        context: ExecutionContext,
    ) -> StepOutput | Awaitable[StepOutput]: ...


async def invoke_adapter(
    adapter: Adapter,
    step: Step,
    records: list[dict[str, Any]],
    context: ExecutionContext,
) -> StepOutput:
    """Call *adapter* honoring its ``is_async`` capability flag."""
    if adapter.capability.is_async:
        result = adapter.execute(step, records, context)
        if inspect.isawaitable(result):
            result = await result
    else:
        result = await asyncio.to_thread(adapter.execute, step, records, context)
    if isinstance(result, list):
        return StepOutput(records=result)
    return result  # type: ignore[return-value]


class AdapterRegistry:
    """Registry mapping adapter codes to adapter instances."""

    def __init__(self) -> None:
        self._adapters: dict[str, Adapter] = {}

    def register(self, adapter: Adapter) -> None:
        """Register *adapter* under its capability code.

        Args:
            adapter: The adapter instance to register. Re-registering a
                code replaces the previous adapter.
        """
        code = adapter.capability.code
        if code in self._adapters:
            logger.debug("Replacing adapter registration for '%s'", code)
        self._adapters[code] = adapter

    def get(self, code: str) -> Adapter | None:
        return self._adapters.get(code)

    def capability(self, code: str) -> AdapterCapability | None:
        adapter = self._adapters.get(code)
        return adapter.capability if adapter else None

    def has(self, code: str) -> bool:
        return code in self._adapters

    @property
    def codes(self) -> list[str]:
        """Return all registered adapter codes."""
        return list(self._adapters.keys())


def check_config(
    capability: AdapterCapability, config: Mapping[str, Any]
) -> list[tuple[str, str]]:
    """Check *config* against the capability's schema.

    Returns:
        ``(field, message)`` pairs, empty when the config conforms.
    """
    problems: list[tuple[str, str]] = []
    for spec in capability.config_schema:
        if spec.name not in config or config[spec.name] is None:
            if spec.required:
                problems.append((spec.name, f"'{spec.name}' is required"))
            continue
        value = config[spec.name]
        expected = _SCHEMA_TYPES.get(spec.type)
        bad_bool = isinstance(value, bool) and spec.type in ("integer", "number")
        if expected is not None and (not isinstance(value, expected) or bad_bool):
            problems.append(
                (spec.name, f"'{spec.name}' must be of type {spec.type}")
            )
            continue
        if spec.choices is not None and value not in spec.choices:
            allowed = ", ".join(str(c) for c in spec.choices)
            problems.append((spec.name, f"'{spec.name}' must be one of: {allowed}"))
    for key in capability.required_connections:
        if not config.get(key):
            problems.append((key, f"connection reference '{key}' is required"))
    return problems


class ConnectionResolver(Protocol):
    """Resolves a connection code to its settings."""

    def resolve(self, code: str) -> dict[str, Any]: ...


class StaticConnectionResolver:
    """Connection resolver backed by a fixed mapping of code to settings."""

    def __init__(self, connections: Mapping[str, dict[str, Any]] | None = None) -> None:
        self._connections = dict(connections or {})

    def add(self, code: str, settings: dict[str, Any]) -> None:
        self._connections[code] = dict(settings)

    def resolve(self, code: str) -> dict[str, Any]:
        """Return the settings for *code*.

        Raises:
            FatalConfigError: If no connection with that code is known.
        """
        if code not in self._connections:
            raise FatalConfigError(f"Unknown connection '{code}'")
        return dict(self._connections[code])

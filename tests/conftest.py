"""Shared fixtures: test adapters, definition factories and a wired engine."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from relayflow.config import EngineConfig
from relayflow.engine import Engine
from relayflow.errors import TransientAdapterError
from relayflow.pipeline.events import EventRecorder
from relayflow.pipeline.models import PipelineDefinition, Step, StepType
from relayflow.runtime.adapters import (
    AdapterCapability,
    AdapterRegistry,
    ExecutionContext,
    StepOutput,
)
from relayflow.runtime.builtin import MemorySink, create_default_registry


class FlakyTransform:
    """Fails ``failures_left`` times with a transient error, then tags records."""

    capability = AdapterCapability(code="flaky", type=StepType.TRANSFORM, pure=True)

    def __init__(self) -> None:
        self.failures_left = 0
        self.calls = 0

    async def execute(
        self, step: Step, records: list[dict[str, Any]], context: ExecutionContext
    ) -> StepOutput:
        self.calls += 1
        if self.failures_left > 0:
            self.failures_left -= 1
            raise TransientAdapterError("upstream unavailable", adapter_code="flaky")
        return StepOutput(records=[{**r, "touched": True} for r in records])


class BlockingTransform:
    """Parks inside ``execute`` until :attr:`release` is set."""

    capability = AdapterCapability(code="blocking", type=StepType.TRANSFORM, pure=True)

    def __init__(self) -> None:
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def execute(
        self, step: Step, records: list[dict[str, Any]], context: ExecutionContext
    ) -> StepOutput:
        self.entered.set()
        await self.release.wait()
        return StepOutput(records=records)


class FailingLoad:
    """A side-effecting sink that always raises."""

    capability = AdapterCapability(code="failing-load", type=StepType.LOAD)

    def __init__(self) -> None:
        self.calls = 0

    async def execute(
        self, step: Step, records: list[dict[str, Any]], context: ExecutionContext
    ) -> StepOutput:
        self.calls += 1
        raise RuntimeError("sink rejected batch")


@pytest.fixture()
def sink() -> MemorySink:
    return MemorySink()


@pytest.fixture()
def flaky() -> FlakyTransform:
    return FlakyTransform()


@pytest.fixture()
def blocking() -> BlockingTransform:
    return BlockingTransform()


@pytest.fixture()
def failing_load() -> FailingLoad:
    return FailingLoad()


@pytest.fixture()
def registry(
    sink: MemorySink,
    flaky: FlakyTransform,
    blocking: BlockingTransform,
    failing_load: FailingLoad,
) -> AdapterRegistry:
    """The built-in adapters plus the test adapters above."""
    registry = create_default_registry(sink)
    for adapter in (flaky, blocking, failing_load):
        registry.register(adapter)
    return registry


@pytest.fixture()
def make_definition() -> Callable[..., PipelineDefinition]:
    """Factory for definitions.

    Without ``steps`` it builds ``extract -> load`` over *records* into the
    memory sink bucket named after the pipeline code. Retries default to
    zero so failing tests do not sleep.
    """

    def _build(
        code: str = "orders",
        *,
        records: list[dict[str, Any]] | None = None,
        steps: list[dict[str, Any]] | None = None,
        edges: list[dict[str, Any]] | None = None,
        settings: dict[str, Any] | None = None,
        triggers: list[dict[str, Any]] | None = None,
    ) -> PipelineDefinition:
        if steps is None:
            steps = [
                extract_step(records if records is not None else [{"id": 1}, {"id": 2}]),
                load_step(code),
            ]
            edges = [{"from": "extract", "to": "load"}]
        return PipelineDefinition.from_dict(
            {
                "code": code,
                "steps": steps,
                "edges": edges or [],
                "triggers": triggers or [],
                "settings": {"retryPolicy": {"maxRetries": 0}, **(settings or {})},
            }
        )

    return _build


def extract_step(records: list[dict[str, Any]], key: str = "extract") -> dict[str, Any]:
    return {
        "key": key,
        "type": "extract",
        "adapterCode": "memory-extract",
        "config": {"records": records},
    }


def load_step(target: str, key: str = "load") -> dict[str, Any]:
    return {"key": key, "type": "load", "adapterCode": "memory-load", "config": {"target": target}}


@pytest.fixture()
def step_dicts() -> Any:
    """``extract_step`` and ``load_step`` for modules that build custom graphs."""

    class _Steps:
        extract = staticmethod(extract_step)
        load = staticmethod(load_step)

    return _Steps


@pytest.fixture()
def engine(registry: AdapterRegistry) -> Engine:
    return Engine.from_config(EngineConfig(), registry=registry, log_events=False)


@pytest.fixture()
def events(engine: Engine) -> EventRecorder:
    recorder = EventRecorder()
    recorder.attach(engine.emitter)
    return recorder

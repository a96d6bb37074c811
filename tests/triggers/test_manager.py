"""Tests for the trigger manager wired into an engine."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from relayflow.engine import Engine
from relayflow.pipeline.events import EventRecorder, EventType
from relayflow.pipeline.models import PipelineDefinition, RunStatus
from relayflow.runtime.locks import pipeline_lock_key

MakeDefinition = Callable[..., PipelineDefinition]

TRIGGERS: list[dict[str, Any]] = [
    {"key": "nightly", "type": "schedule", "cron": "0 2 * * *"},
    {"key": "inbound", "type": "webhook", "code": "orders-in"},
    {"key": "signup", "type": "event", "eventType": "customer.created"},
    {"key": "inbox", "type": "message", "queueName": "orders.in"},
    {"key": "drops", "type": "file", "connectionRef": "drop", "pathGlob": "*.csv"},
    {"key": "paused", "type": "schedule", "cron": "* * * * *", "enabled": False},
]


def _seeded(make_definition: MakeDefinition, step_dicts: Any) -> PipelineDefinition:
    return make_definition(
        steps=[
            {"key": "seed", "type": "extract", "adapterCode": "seed-extract"},
            step_dicts.load("orders"),
        ],
        edges=[{"from": "seed", "to": "load"}],
        triggers=TRIGGERS,
    )


class TestEnableDisable:
    async def test_publish_registers_every_enabled_trigger(
        self, engine: Engine, make_definition: MakeDefinition, step_dicts: Any
    ) -> None:
        await engine.deploy(_seeded(make_definition, step_dicts))
        triggers = engine.triggers

        assert triggers.enabled_pipelines == ["orders"]
        assert [e.trigger_key for e in triggers.scheduler.entries()] == ["nightly"]
        assert triggers.webhooks.codes() == ["orders-in"]
        assert triggers.consumers.get("orders", "inbox") is not None
        assert triggers.files.watched() == [("orders", "drops")]

    async def test_archive_removes_triggers(
        self, engine: Engine, make_definition: MakeDefinition, step_dicts: Any
    ) -> None:
        await engine.deploy(_seeded(make_definition, step_dicts))
        await engine.lifecycle.archive("orders")
        triggers = engine.triggers

        assert triggers.enabled_pipelines == []
        assert triggers.scheduler.entries() == []
        assert triggers.webhooks.codes() == []
        assert triggers.consumers.consumers() == []
        assert triggers.files.watched() == []
        assert await triggers.emit_event("customer.created") == []


class TestFire:
    async def test_event_starts_subscribed_pipeline(
        self,
        engine: Engine,
        make_definition: MakeDefinition,
        step_dicts: Any,
        sink: Any,
    ) -> None:
        await engine.deploy(_seeded(make_definition, step_dicts))

        [run] = await engine.triggers.emit_event("customer.created", {"email": "a@b"})
        finished = await engine.coordinator.join(run.id)

        assert finished.status == RunStatus.SUCCEEDED
        assert finished.trigger == "signup"
        assert sink.read("orders") == [{"email": "a@b", "_eventType": "customer.created"}]

    async def test_unsubscribed_event_starts_nothing(
        self, engine: Engine, make_definition: MakeDefinition, step_dicts: Any
    ) -> None:
        await engine.deploy(_seeded(make_definition, step_dicts))
        assert await engine.triggers.emit_event("customer.deleted") == []

    async def test_contention_is_reported_not_raised(
        self,
        engine: Engine,
        make_definition: MakeDefinition,
        step_dicts: Any,
        events: EventRecorder,
    ) -> None:
        await engine.deploy(_seeded(make_definition, step_dicts))
        await engine.locks.acquire(pipeline_lock_key("orders"))

        assert await engine.triggers.fire("orders", "nightly") is None

        [skipped] = events.of_type(EventType.TRIGGER_SKIPPED)
        assert skipped.data["trigger"] == "nightly"
        assert "pipeline:orders" in skipped.data["reason"]

    async def test_unpublished_pipeline_is_skipped(
        self, engine: Engine, make_definition: MakeDefinition, events: EventRecorder
    ) -> None:
        await engine.lifecycle.create(make_definition())
        assert await engine.triggers.fire("orders", "manual") is None
        assert len(events.of_type(EventType.TRIGGER_FIRED)) == 1
        assert len(events.of_type(EventType.TRIGGER_SKIPPED)) == 1

"""Tests for the run coordinator: locking, gates, cancellation and retries."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from relayflow.config import EngineConfig, LockSettings
from relayflow.engine import Engine
from relayflow.errors import (
    CoordinationError,
    GuardError,
    LifecycleGuardError,
    LockContentionError,
    NotFoundError,
    ReplayConfirmationRequired,
)
from relayflow.pipeline.events import EventRecorder, EventType
from relayflow.pipeline.models import PipelineDefinition, RunStatus
from relayflow.runtime.adapters import AdapterRegistry
from relayflow.runtime.builtin import MemorySink
from relayflow.runtime.locks import LockResult, pipeline_lock_key

MakeDefinition = Callable[..., PipelineDefinition]


def _gated(
    make_definition: MakeDefinition, step_dicts: Any, **gate_config: Any
) -> PipelineDefinition:
    return make_definition(
        steps=[
            step_dicts.extract([{"id": 1}, {"id": 2}]),
            {"key": "gate", "type": "gate", "config": {"approvalType": "MANUAL", **gate_config}},
            step_dicts.load("orders"),
        ],
        edges=[{"from": "extract", "to": "gate"}, {"from": "gate", "to": "load"}],
    )


def _validated(
    make_definition: MakeDefinition, step_dicts: Any, **settings: Any
) -> PipelineDefinition:
    return make_definition(
        steps=[
            step_dicts.extract([{"id": 1, "email": "a@b"}, {"id": 2}]),
            {
                "key": "check",
                "type": "validate",
                "adapterCode": "required-fields",
                "config": {"fields": ["email"]},
            },
            step_dicts.load("orders"),
        ],
        edges=[{"from": "extract", "to": "check"}, {"from": "check", "to": "load"}],
        settings=settings,
    )


class TestStart:
    async def test_unpublished_pipeline_is_refused(
        self, engine: Engine, make_definition: MakeDefinition
    ) -> None:
        await engine.lifecycle.create(make_definition())
        with pytest.raises(LifecycleGuardError, match="only PUBLISHED pipelines run"):
            await engine.coordinator.start("orders")

    async def test_run_is_persisted_and_lock_released(
        self,
        engine: Engine,
        make_definition: MakeDefinition,
        sink: MemorySink,
        events: EventRecorder,
    ) -> None:
        await engine.deploy(make_definition())
        run = await engine.coordinator.start("orders", trigger="cli")

        assert run.status == RunStatus.SUCCEEDED
        assert run.trigger == "cli"
        assert run.definition_version == engine.lifecycle.get("orders").published_revision == 3
        assert run.started_at is not None and run.finished_at is not None
        assert engine.coordinator.get_run(run.id).status == RunStatus.SUCCEEDED
        assert sink.read("orders") == [{"id": 1}, {"id": 2}]
        assert not await engine.locks.is_locked(pipeline_lock_key("orders"))

        types = [e.type for e in events.for_run(run.id)]
        assert types[0] == EventType.RUN_STARTED
        assert types[-1] == EventType.RUN_SUCCEEDED

    async def test_contended_lock_rejects_second_run(
        self, engine: Engine, make_definition: MakeDefinition, events: EventRecorder
    ) -> None:
        await engine.deploy(make_definition())
        held = await engine.locks.acquire(pipeline_lock_key("orders"))

        with pytest.raises(LockContentionError) as excinfo:
            await engine.coordinator.start("orders")

        assert excinfo.value.current_owner == held.token
        assert len(events.of_type(EventType.LOCK_CONTENDED)) == 1
        assert engine.coordinator.list_runs("orders") == []

    async def test_lease_without_token_fails_the_run(
        self,
        engine: Engine,
        make_definition: MakeDefinition,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        await engine.deploy(make_definition())

        async def tokenless(key: str, *args: Any, **kwargs: Any) -> LockResult:
            return LockResult(acquired=True, key=key, token=None)

        monkeypatch.setattr(engine.locks, "acquire", tokenless)

        with pytest.raises(CoordinationError, match="without a token"):
            await engine.coordinator.start("orders")

        [run] = engine.coordinator.list_runs("orders")
        assert run.status == RunStatus.FAILED
        assert engine.coordinator.active_runs() == []

    async def test_background_run_can_be_joined(
        self, engine: Engine, make_definition: MakeDefinition
    ) -> None:
        await engine.deploy(make_definition())
        run = await engine.coordinator.start("orders", wait=False)
        finished = await engine.coordinator.join(run.id)
        assert finished.status == RunStatus.SUCCEEDED

    async def test_unknown_run(self, engine: Engine) -> None:
        with pytest.raises(NotFoundError):
            engine.coordinator.get_run("run-missing")


class TestGates:
    async def test_pause_releases_lock_and_approval_resumes(
        self,
        engine: Engine,
        make_definition: MakeDefinition,
        step_dicts: Any,
        sink: MemorySink,
        events: EventRecorder,
    ) -> None:
        await engine.deploy(_gated(make_definition, step_dicts))
        run = await engine.coordinator.start("orders")

        assert run.status == RunStatus.PAUSED
        assert run.waiting_step == "gate"
        assert not await engine.locks.is_locked(pipeline_lock_key("orders"))
        paused = events.of_type(EventType.RUN_PAUSED)[0]
        assert paused.data["preview"] == [{"id": 1}, {"id": 2}]

        resumed = await engine.coordinator.approve_gate(run.id, "gate")

        assert resumed.status == RunStatus.SUCCEEDED
        assert resumed.waiting_step is None
        assert sink.read("orders") == [{"id": 1}, {"id": 2}]
        assert len(events.of_type(EventType.GATE_APPROVED)) == 1
        assert len(events.of_type(EventType.RUN_RESUMED)) == 1

    async def test_deciding_the_wrong_gate_is_refused(
        self, engine: Engine, make_definition: MakeDefinition, step_dicts: Any
    ) -> None:
        await engine.deploy(_gated(make_definition, step_dicts))
        run = await engine.coordinator.start("orders")
        with pytest.raises(GuardError, match="gate 'other' cannot be decided"):
            await engine.coordinator.approve_gate(run.id, "other")

    async def test_rejection_fails_the_run(
        self,
        engine: Engine,
        make_definition: MakeDefinition,
        step_dicts: Any,
        sink: MemorySink,
    ) -> None:
        await engine.deploy(_gated(make_definition, step_dicts))
        run = await engine.coordinator.start("orders")

        rejected = await engine.coordinator.reject_gate(run.id, "gate", "bad data")

        assert rejected.status == RunStatus.FAILED
        assert rejected.error == "Gate 'gate' rejected: bad data"
        assert sink.read("orders") == []
        # Deciding a terminal run is a no-op.
        again = await engine.coordinator.approve_gate(run.id, "gate")
        assert again.status == RunStatus.FAILED

    async def test_timeout_gate_auto_approves(
        self,
        engine: Engine,
        make_definition: MakeDefinition,
        step_dicts: Any,
    ) -> None:
        definition = _gated(
            make_definition, step_dicts, approvalType="TIMEOUT", timeoutSeconds=60
        )
        await engine.deploy(definition)
        run = await engine.coordinator.start("orders")
        assert run.paused_at is not None

        assert await engine.coordinator.expire_gates(now=run.paused_at + 30) == []
        assert await engine.coordinator.expire_gates(now=run.paused_at + 61) == [run.id]
        assert engine.coordinator.get_run(run.id).status == RunStatus.SUCCEEDED


class TestCancel:
    async def test_paused_run_is_cancelled_immediately(
        self, engine: Engine, make_definition: MakeDefinition, step_dicts: Any
    ) -> None:
        await engine.deploy(_gated(make_definition, step_dicts))
        run = await engine.coordinator.start("orders")

        cancelled = await engine.coordinator.cancel(run.id)

        assert cancelled.status == RunStatus.CANCELLED
        assert cancelled.finished_at is not None

    async def test_executing_run_stops_at_boundary(
        self,
        engine: Engine,
        blocking: Any,
        make_definition: MakeDefinition,
        step_dicts: Any,
        sink: MemorySink,
    ) -> None:
        definition = make_definition(
            steps=[
                step_dicts.extract([{"id": 1}]),
                {"key": "hold", "type": "transform", "adapterCode": "blocking"},
                step_dicts.load("orders"),
            ],
            edges=[{"from": "extract", "to": "hold"}, {"from": "hold", "to": "load"}],
        )
        await engine.deploy(definition)
        run = await engine.coordinator.start("orders", wait=False)
        await asyncio.wait_for(blocking.entered.wait(), timeout=1)

        await engine.coordinator.cancel(run.id)
        blocking.release.set()
        finished = await asyncio.wait_for(engine.coordinator.join(run.id), timeout=1)

        assert finished.status == RunStatus.CANCELLED
        assert sink.read("orders") == []
        assert not await engine.locks.is_locked(pipeline_lock_key("orders"))

    async def test_lost_lease_cancels_executing_run(
        self,
        registry: AdapterRegistry,
        blocking: Any,
        make_definition: MakeDefinition,
        step_dicts: Any,
        sink: MemorySink,
    ) -> None:
        config = EngineConfig(locks=LockSettings(pipeline_ttl_ms=60, retry_interval_ms=10))
        engine = Engine.from_config(config, registry=registry, log_events=False)
        events = EventRecorder()
        events.attach(engine.emitter)
        definition = make_definition(
            steps=[
                step_dicts.extract([{"id": 1}]),
                {"key": "hold", "type": "transform", "adapterCode": "blocking"},
                step_dicts.load("orders"),
            ],
            edges=[{"from": "extract", "to": "hold"}, {"from": "hold", "to": "load"}],
        )
        await engine.deploy(definition)
        run = await engine.coordinator.start("orders", wait=False)
        await asyncio.wait_for(blocking.entered.wait(), timeout=1)

        token = engine.coordinator.get_run(run.id).lock_token
        assert token is not None
        assert await engine.locks.store.compare_and_delete(pipeline_lock_key("orders"), token)
        for _ in range(100):
            if events.of_type(EventType.LOCK_LOST):
                break
            await asyncio.sleep(0.01)
        blocking.release.set()
        finished = await asyncio.wait_for(engine.coordinator.join(run.id), timeout=1)

        assert [e.run_id for e in events.of_type(EventType.LOCK_LOST)] == [run.id]
        assert finished.status == RunStatus.CANCELLED
        assert finished.error == "Lost pipeline lock 'pipeline:orders'"
        assert sink.read("orders") == []

    async def test_cancel_is_noop_on_terminal_runs(
        self, engine: Engine, make_definition: MakeDefinition
    ) -> None:
        await engine.deploy(make_definition())
        run = await engine.coordinator.start("orders")
        assert (await engine.coordinator.cancel(run.id)).status == RunStatus.SUCCEEDED


class TestRetryRecord:
    async def test_non_pure_replay_needs_confirmation(
        self, engine: Engine, make_definition: MakeDefinition, step_dicts: Any
    ) -> None:
        await engine.deploy(_validated(make_definition, step_dicts))
        run = await engine.coordinator.start("orders")
        error = engine.store.list_errors(run_id=run.id)[0]

        with pytest.raises(ReplayConfirmationRequired, match="load"):
            await engine.coordinator.retry_record(error.id, {"email": "x@y"})
        assert engine.store.list_audits(error.id) == []

    async def test_patched_replay_resolves_error(
        self,
        engine: Engine,
        make_definition: MakeDefinition,
        step_dicts: Any,
        sink: MemorySink,
    ) -> None:
        await engine.deploy(_validated(make_definition, step_dicts))
        run = await engine.coordinator.start("orders")
        assert run.metrics["records_failed"] == 1
        error = engine.store.list_errors(run_id=run.id)[0]

        replay = await engine.coordinator.retry_record(error.id, {"email": "x@y"}, confirm=True)

        assert replay is not None
        assert replay.status == RunStatus.SUCCEEDED
        assert replay.trigger == f"retry:{error.id}"
        assert sink.read("orders")[-1] == {"id": 2, "email": "x@y"}
        assert engine.store.get_error(error.id).resolved is True
        audits = engine.store.list_audits(error.id)
        assert [a.replay_run_id for a in audits] == [replay.id]

        # Already resolved: nothing to do.
        assert await engine.coordinator.retry_record(error.id, confirm=True) is None

    async def test_replay_that_fails_again_leaves_error_open(
        self, engine: Engine, make_definition: MakeDefinition, step_dicts: Any
    ) -> None:
        await engine.deploy(_validated(make_definition, step_dicts))
        run = await engine.coordinator.start("orders")
        error = engine.store.list_errors(run_id=run.id)[0]

        replay = await engine.coordinator.retry_record(error.id, {"name": "n"}, confirm=True)

        assert replay is not None
        assert replay.metrics["records_failed"] == 1
        assert engine.store.get_error(error.id).resolved is False

    async def test_unknown_error(self, engine: Engine) -> None:
        with pytest.raises(NotFoundError):
            await engine.coordinator.retry_record("err-missing")

    async def test_discarded_dead_letter_is_not_replayed(
        self, engine: Engine, make_definition: MakeDefinition, step_dicts: Any
    ) -> None:
        await engine.deploy(_validated(make_definition, step_dicts, deadLetterQueue=True))
        run = await engine.coordinator.start("orders")
        error = engine.store.list_errors(run_id=run.id)[0]
        entry = engine.store.find_dead_letter(error.id)
        assert entry is not None
        await engine.dead_letters.discard(entry.id)

        with pytest.raises(GuardError, match="discarded"):
            await engine.coordinator.retry_record(error.id, {"email": "x@y"}, confirm=True)

        assert engine.store.list_audits(error.id) == []
        assert engine.store.get_error(error.id).resolved is False
        assert not await engine.locks.is_locked(pipeline_lock_key("orders"))

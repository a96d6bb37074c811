"""Tests for the pipeline lifecycle state machine."""

from collections.abc import Callable

import pytest

from relayflow.config import LifecycleSettings
from relayflow.errors import (
    CompilationError,
    LifecycleGuardError,
    NotFoundError,
    ValidationError,
)
from relayflow.pipeline.events import EventEmitter, EventRecorder, EventType
from relayflow.pipeline.lifecycle import LifecycleManager
from relayflow.pipeline.models import (
    LifecycleState,
    PipelineDefinition,
    RevisionKind,
)
from relayflow.runtime.adapters import AdapterRegistry
from relayflow.runtime.store import MemoryStateStore

MakeDefinition = Callable[..., PipelineDefinition]


@pytest.fixture()
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture()
def lifecycle(registry: AdapterRegistry, recorder: EventRecorder) -> LifecycleManager:
    emitter = EventEmitter()
    recorder.attach(emitter)
    return LifecycleManager(MemoryStateStore(), registry, emitter=emitter)


def _without_records(definition: PipelineDefinition) -> PipelineDefinition:
    """Passes QUICK validation but fails FULL (memory-extract needs records)."""
    data = definition.to_dict()
    data["steps"][0]["config"] = {}
    return PipelineDefinition.from_dict(data)


class TestTransitions:
    async def test_full_publish_path(
        self, lifecycle: LifecycleManager, make_definition: MakeDefinition
    ) -> None:
        await lifecycle.create(make_definition())
        assert lifecycle.get("orders").state == LifecycleState.DRAFT

        await lifecycle.submit_for_review("orders")
        assert lifecycle.get("orders").state == LifecycleState.REVIEW

        revision = await lifecycle.approve("orders", "ship it")
        record = lifecycle.get("orders")
        assert record.state == LifecycleState.PUBLISHED
        assert record.published_revision == revision.number
        assert revision.kind == RevisionKind.PUBLISHED
        assert lifecycle.published_definition("orders").code == "orders"

    async def test_reject_returns_to_draft(
        self,
        lifecycle: LifecycleManager,
        make_definition: MakeDefinition,
        recorder: EventRecorder,
    ) -> None:
        await lifecycle.create(make_definition())
        await lifecycle.submit_for_review("orders")
        await lifecycle.reject("orders", "needs a filter")

        assert lifecycle.get("orders").state == LifecycleState.DRAFT
        transitions = recorder.of_type(EventType.LIFECYCLE_TRANSITION)
        assert transitions[-1].data == {
            "from": "REVIEW",
            "to": "DRAFT",
            "reason": "needs a filter",
        }

    async def test_archive_and_reactivate(
        self, lifecycle: LifecycleManager, make_definition: MakeDefinition
    ) -> None:
        await lifecycle.create(make_definition())
        await lifecycle.submit_for_review("orders")
        await lifecycle.approve("orders")

        await lifecycle.archive("orders")
        # Archiving twice is a no-op.
        await lifecycle.archive("orders")
        assert lifecycle.get("orders").state == LifecycleState.ARCHIVED

        await lifecycle.reactivate("orders")
        assert lifecycle.get("orders").state == LifecycleState.DRAFT

    async def test_publish_from_draft_requires_review_by_default(
        self, lifecycle: LifecycleManager, make_definition: MakeDefinition
    ) -> None:
        await lifecycle.create(make_definition())
        with pytest.raises(LifecycleGuardError, match="requires review"):
            await lifecycle.publish("orders")

    async def test_publish_from_draft_without_review(
        self, registry: AdapterRegistry, make_definition: MakeDefinition
    ) -> None:
        lifecycle = LifecycleManager(
            MemoryStateStore(), registry, LifecycleSettings(require_review=False)
        )
        await lifecycle.create(make_definition())
        await lifecycle.publish("orders")
        assert lifecycle.get("orders").state == LifecycleState.PUBLISHED


class TestGuards:
    async def test_create_requires_code(
        self, lifecycle: LifecycleManager, make_definition: MakeDefinition
    ) -> None:
        with pytest.raises(ValidationError):
            await lifecycle.create(make_definition(code=""))

    async def test_create_rejects_existing_code(
        self, lifecycle: LifecycleManager, make_definition: MakeDefinition
    ) -> None:
        await lifecycle.create(make_definition())
        with pytest.raises(LifecycleGuardError, match="already exists"):
            await lifecycle.create(make_definition())

    async def test_unknown_pipeline(self, lifecycle: LifecycleManager) -> None:
        with pytest.raises(NotFoundError):
            lifecycle.get("missing")

    async def test_save_draft_only_in_draft(
        self, lifecycle: LifecycleManager, make_definition: MakeDefinition
    ) -> None:
        await lifecycle.create(make_definition())
        await lifecycle.submit_for_review("orders")
        with pytest.raises(LifecycleGuardError, match="requires DRAFT"):
            await lifecycle.save_draft("orders", make_definition())

    async def test_save_draft_code_must_match(
        self, lifecycle: LifecycleManager, make_definition: MakeDefinition
    ) -> None:
        await lifecycle.create(make_definition())
        with pytest.raises(ValidationError, match="does not match"):
            await lifecycle.save_draft("orders", make_definition(code="invoices"))

    async def test_draft_pipeline_does_not_run(
        self, lifecycle: LifecycleManager, make_definition: MakeDefinition
    ) -> None:
        await lifecycle.create(make_definition())
        with pytest.raises(LifecycleGuardError, match="only PUBLISHED"):
            lifecycle.published_definition("orders")

    async def test_cannot_archive_a_draft(
        self, lifecycle: LifecycleManager, make_definition: MakeDefinition
    ) -> None:
        await lifecycle.create(make_definition())
        with pytest.raises(LifecycleGuardError):
            await lifecycle.archive("orders")


class TestValidationAtPublish:
    async def test_submit_runs_quick_validation(
        self, lifecycle: LifecycleManager, make_definition: MakeDefinition
    ) -> None:
        definition = make_definition()
        definition.edges[0].target = "ghost"
        await lifecycle.create(definition)

        with pytest.raises(CompilationError):
            await lifecycle.submit_for_review("orders")
        assert lifecycle.get("orders").state == LifecycleState.DRAFT

    async def test_approve_runs_full_validation(
        self, lifecycle: LifecycleManager, make_definition: MakeDefinition
    ) -> None:
        await lifecycle.create(_without_records(make_definition()))
        await lifecycle.submit_for_review("orders")

        with pytest.raises(CompilationError) as excinfo:
            await lifecycle.approve("orders")
        assert excinfo.value.issues[0].reason == "invalid_config"
        assert lifecycle.get("orders").state == LifecycleState.REVIEW

    async def test_advisory_validation_is_stored_not_reused(
        self, lifecycle: LifecycleManager, make_definition: MakeDefinition
    ) -> None:
        await lifecycle.create(_without_records(make_definition()))
        issues = lifecycle.validate("orders")
        assert len(issues) == 1
        assert lifecycle.get("orders").last_validation[0]["reason"] == "invalid_config"

        await lifecycle.save_draft("orders", make_definition())
        assert lifecycle.validate("orders") == []


class TestHooks:
    async def test_publish_and_archive_hooks(
        self, lifecycle: LifecycleManager, make_definition: MakeDefinition
    ) -> None:
        published: list[str] = []
        archived: list[str] = []

        async def on_publish(code: str, definition: PipelineDefinition) -> None:
            published.append(f"{code}:{len(definition.steps)}")

        async def on_archive(code: str) -> None:
            archived.append(code)

        lifecycle.on_publish(on_publish)
        lifecycle.on_archive(on_archive)

        await lifecycle.create(make_definition())
        await lifecycle.submit_for_review("orders")
        await lifecycle.approve("orders")
        await lifecycle.archive("orders")

        assert published == ["orders:2"]
        assert archived == ["orders"]


class TestRevisions:
    async def test_timeline_marks_current_and_latest(
        self, lifecycle: LifecycleManager, make_definition: MakeDefinition
    ) -> None:
        await lifecycle.create(make_definition())
        await lifecycle.submit_for_review("orders")
        await lifecycle.approve("orders")
        await lifecycle.archive("orders")
        await lifecycle.reactivate("orders")
        await lifecycle.save_draft("orders", make_definition(records=[{"id": 9}]))

        timeline = lifecycle.timeline("orders")
        assert [e["kind"] for e in timeline] == ["DRAFT", "REVIEW", "PUBLISHED", "DRAFT"]
        assert [e["is_current"] for e in timeline] == [False, False, True, False]
        assert timeline[-1]["is_latest"] is True
        assert "definition" not in timeline[0]
        assert lifecycle.has_unpublished_changes("orders")

    async def test_diff_reports_step_and_edge_changes(
        self,
        lifecycle: LifecycleManager,
        make_definition: MakeDefinition,
        step_dicts: type,
    ) -> None:
        await lifecycle.create(make_definition())
        changed = make_definition(
            steps=[
                step_dicts.extract([{"id": 5}]),
                step_dicts.load("orders"),
                step_dicts.load("audit", key="audit"),
            ],
            edges=[
                {"from": "extract", "to": "load"},
                {"from": "extract", "to": "audit"},
            ],
        )
        revision = await lifecycle.save_draft("orders", changed)

        diff = lifecycle.diff("orders", 1, revision.number)
        assert diff["steps_added"] == ["audit"]
        assert diff["steps_changed"] == ["extract"]
        assert diff["steps_removed"] == []
        assert diff["edges_added"] == ["extract->audit"]
        assert diff["settings_changed"] == []

    async def test_prune_keeps_newest_drafts(
        self, lifecycle: LifecycleManager, make_definition: MakeDefinition
    ) -> None:
        await lifecycle.create(make_definition())
        for i in range(4):
            await lifecycle.save_draft("orders", make_definition(records=[{"id": i}]))

        assert lifecycle.prune_drafts("orders", keep=2) == 3
        assert [r.number for r in lifecycle.revisions("orders")] == [4, 5]
        assert lifecycle.prune_drafts("orders", keep=2) == 0

    async def test_numbers_are_not_reused_after_pruning(
        self, lifecycle: LifecycleManager, make_definition: MakeDefinition
    ) -> None:
        await lifecycle.create(make_definition())
        await lifecycle.save_draft("orders", make_definition(records=[{"id": 1}]))
        issued = [r.number for r in lifecycle.revisions("orders")]

        assert lifecycle.prune_drafts("orders", keep=0) == 2
        assert lifecycle.revisions("orders") == []

        revision = await lifecycle.save_draft("orders", make_definition(records=[{"id": 2}]))
        assert revision.number == 3
        assert revision.number > max(issued)
        assert lifecycle.get("orders").last_revision == 3

"""Pipeline lifecycle state machine.

States and transitions::

    DRAFT --submit--> REVIEW --approve--> PUBLISHED --archive--> ARCHIVED
      ^                 |                                            |
      +----reject-------+                                            |
      +-------------------------reactivate--------------------------+

Every transition is checked against the current state and raises
:class:`LifecycleGuardError` when it does not apply. Publishing always
runs a fresh FULL validation at call time; results of earlier (advisory)
validations are stored for display and never reused.
"""

from __future__ import annotations

import copy
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from relayflow.config import LifecycleSettings
from relayflow.errors import (
    CompilationError,
    LifecycleGuardError,
    NotFoundError,
    ValidationError,
)
from relayflow.pipeline.events import EngineEvent, EventEmitter, EventType
from relayflow.pipeline.models import (
    LifecycleState,
    PipelineDefinition,
    PipelineRecord,
    Revision,
    RevisionKind,
    new_id,
)
from relayflow.pipeline.validator import (
    ValidationIssue,
    ValidationLevel,
    validate_definition,
)
from relayflow.runtime.adapters import AdapterRegistry
from relayflow.runtime.store import StateStore

logger = logging.getLogger(__name__)

PublishHook = Callable[[str, PipelineDefinition], Awaitable[None]]
ArchiveHook = Callable[[str], Awaitable[None]]


class LifecycleManager:
    """Guards lifecycle transitions and keeps the revision history.

    Args:
        store: Persists pipeline records and revisions.
        registry: Capability registry used for validation.
        settings: Lifecycle settings (``require_review``).
        emitter: Receives ``LIFECYCLE_TRANSITION`` events.
    """

    def __init__(
        self,
        store: StateStore,
        registry: AdapterRegistry,
        settings: LifecycleSettings | None = None,
        emitter: EventEmitter | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._settings = settings or LifecycleSettings()
        self._emitter = emitter or EventEmitter()
        self._publish_hooks: list[PublishHook] = []
        self._archive_hooks: list[ArchiveHook] = []

    @property
    def settings(self) -> LifecycleSettings:
        return self._settings

    @settings.setter
    def settings(self, settings: LifecycleSettings) -> None:
        self._settings = settings

    def on_publish(self, hook: PublishHook) -> None:
        self._publish_hooks.append(hook)

    def on_archive(self, hook: ArchiveHook) -> None:
        self._archive_hooks.append(hook)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, code: str) -> PipelineRecord:
        record = self._store.get_pipeline(code)
        if record is None:
            raise NotFoundError(f"Pipeline '{code}' not found")
        return record

    def exists(self, code: str) -> bool:
        return self._store.get_pipeline(code) is not None

    def list_pipelines(self) -> list[PipelineRecord]:
        return self._store.list_pipelines()

    def draft_definition(self, code: str) -> PipelineDefinition:
        return PipelineDefinition.from_dict(self.get(code).draft)

    def published_definition(self, code: str) -> PipelineDefinition:
        """Return the definition runs execute.

        Raises:
            LifecycleGuardError: If the pipeline is not PUBLISHED.
        """
        record = self.get(code)
        if record.state != LifecycleState.PUBLISHED or record.published_revision is None:
            raise LifecycleGuardError(
                f"Pipeline '{code}' is {record.state.value}; only PUBLISHED pipelines run"
            )
        revision = self.revision(code, record.published_revision)
        return PipelineDefinition.from_dict(revision.definition)

    def revisions(self, code: str) -> list[Revision]:
        self.get(code)
        return self._store.list_revisions(code)

    def revision(self, code: str, number: int) -> Revision:
        for revision in self._store.list_revisions(code):
            if revision.number == number:
                return revision
        raise NotFoundError(f"Revision {number} of '{code}' not found")

    def timeline(self, code: str) -> list[dict[str, Any]]:
        """Revisions with derived ``is_current`` and ``is_latest`` flags."""
        record = self.get(code)
        revisions = self._store.list_revisions(code)
        latest = revisions[-1].number if revisions else None
        entries = []
        for revision in revisions:
            entry = revision.to_dict()
            del entry["definition"]
            entry["is_current"] = revision.number == record.published_revision
            entry["is_latest"] = revision.number == latest
            entries.append(entry)
        return entries

    def diff(self, code: str, a: int, b: int) -> dict[str, list[str]]:
        """Compare the definitions of revisions *a* and *b*.

        Returns:
            Step keys and ``source->target`` edge descriptors that were
            added, removed or changed going from *a* to *b*.
        """
        before = self.revision(code, a).definition
        after = self.revision(code, b).definition

        old_steps = {s["key"]: s for s in before.get("steps", [])}
        new_steps = {s["key"]: s for s in after.get("steps", [])}
        old_edges = {_edge_id(e) for e in before.get("edges", [])}
        new_edges = {_edge_id(e) for e in after.get("edges", [])}

        return {
            "steps_added": sorted(new_steps.keys() - old_steps.keys()),
            "steps_removed": sorted(old_steps.keys() - new_steps.keys()),
            "steps_changed": sorted(
                k for k in old_steps.keys() & new_steps.keys() if old_steps[k] != new_steps[k]
            ),
            "edges_added": sorted(new_edges - old_edges),
            "edges_removed": sorted(old_edges - new_edges),
            "settings_changed": (
                ["settings"] if before.get("settings") != after.get("settings") else []
            ),
        }

    def has_unpublished_changes(self, code: str) -> bool:
        record = self.get(code)
        if record.published_revision is None:
            return True
        published = self.revision(code, record.published_revision).definition
        return _normalize(record.draft) != _normalize(published)

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------

    async def create(
        self, definition: PipelineDefinition, message: str = ""
    ) -> PipelineRecord:
        """Register a new pipeline in DRAFT.

        Raises:
            ValidationError: If the definition has no code.
            LifecycleGuardError: If the code is already taken.
        """
        if not definition.code:
            raise ValidationError("Pipeline definition requires a code")
        if self.exists(definition.code):
            raise LifecycleGuardError(f"Pipeline '{definition.code}' already exists")
        record = PipelineRecord(code=definition.code, draft=definition.to_dict())
        await self._emit(definition.code, None, LifecycleState.DRAFT)
        self._append(record, RevisionKind.DRAFT, message or "created")
        logger.info("Created pipeline '%s'", record.code)
        return record

    async def save_draft(
        self, code: str, definition: PipelineDefinition, message: str = ""
    ) -> Revision:
        """Replace the working draft and record a DRAFT revision.

        Raises:
            LifecycleGuardError: If the pipeline is not in DRAFT.
            ValidationError: If the definition's code does not match.
        """
        record = self._require(code, LifecycleState.DRAFT, "save a draft")
        if definition.code != code:
            raise ValidationError(
                f"Definition code '{definition.code}' does not match pipeline '{code}'"
            )
        record.draft = definition.to_dict()
        record.updated_at = time.time()
        return self._append(record, RevisionKind.DRAFT, message)

    def validate(
        self, code: str, level: ValidationLevel = ValidationLevel.FULL
    ) -> list[ValidationIssue]:
        """Advisory validation of the working draft.

        The result is stored on the record for display only; no
        transition ever relies on it.
        """
        record = self.get(code)
        issues = validate_definition(
            PipelineDefinition.from_dict(record.draft), self._registry, level
        )
        record.last_validation = [i.to_dict() for i in issues]
        self._store.save_pipeline(record)
        return issues

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def submit_for_review(self, code: str, message: str = "") -> Revision:
        """DRAFT -> REVIEW. The draft must pass QUICK validation."""
        record = self._require(code, LifecycleState.DRAFT, "submit for review")
        self._revalidate(record, ValidationLevel.QUICK)
        await self._transition(record, LifecycleState.REVIEW)
        return self._append(record, RevisionKind.REVIEW, message)

    async def reject(self, code: str, reason: str = "") -> PipelineRecord:
        """REVIEW -> DRAFT."""
        record = self._require(code, LifecycleState.REVIEW, "reject")
        await self._transition(record, LifecycleState.DRAFT, reason=reason)
        return record

    async def approve(self, code: str, message: str = "") -> Revision:
        """REVIEW -> PUBLISHED after a fresh FULL validation."""
        record = self._require(code, LifecycleState.REVIEW, "approve")
        return await self._publish(record, message)

    async def publish(self, code: str, message: str = "") -> Revision:
        """Publish from REVIEW, or from DRAFT when review is not required.

        FULL validation always runs here, whatever was checked before.

        Raises:
            LifecycleGuardError: On a state that cannot publish.
            CompilationError: If FULL validation reports issues.
        """
        record = self.get(code)
        if record.state == LifecycleState.REVIEW:
            return await self._publish(record, message)
        if record.state == LifecycleState.DRAFT and not self._settings.require_review:
            return await self._publish(record, message)
        if record.state == LifecycleState.DRAFT:
            raise LifecycleGuardError(
                f"Pipeline '{code}' requires review before it can be published"
            )
        raise LifecycleGuardError(
            f"Cannot publish pipeline '{code}' from {record.state.value}"
        )

    async def archive(self, code: str) -> PipelineRecord:
        """PUBLISHED -> ARCHIVED; disables triggers. Idempotent on ARCHIVED."""
        record = self.get(code)
        if record.state == LifecycleState.ARCHIVED:
            return record
        if record.state != LifecycleState.PUBLISHED:
            raise LifecycleGuardError(
                f"Cannot archive pipeline '{code}' from {record.state.value}"
            )
        await self._transition(record, LifecycleState.ARCHIVED)
        for hook in self._archive_hooks:
            await hook(code)
        return record

    async def reactivate(self, code: str) -> PipelineRecord:
        """ARCHIVED -> DRAFT."""
        record = self._require(code, LifecycleState.ARCHIVED, "reactivate")
        await self._transition(record, LifecycleState.DRAFT)
        return record

    def prune_drafts(self, code: str, keep: int = 10) -> int:
        """Delete old DRAFT revisions, keeping the newest *keep*.

        The published revision and REVIEW/PUBLISHED snapshots are never
        removed. Returns the number of revisions deleted.
        """
        record = self.get(code)
        drafts = [
            r
            for r in self._store.list_revisions(code)
            if r.kind == RevisionKind.DRAFT and r.number != record.published_revision
        ]
        doomed = drafts[: max(0, len(drafts) - keep)]
        for revision in doomed:
            self._store.delete_revision(code, revision.number)
        if doomed:
            logger.info("Pruned %d draft revision(s) of '%s'", len(doomed), code)
        return len(doomed)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _publish(self, record: PipelineRecord, message: str) -> Revision:
        definition = self._revalidate(record, ValidationLevel.FULL)
        await self._transition(record, LifecycleState.PUBLISHED, save=False)
        revision = self._append(record, RevisionKind.PUBLISHED, message)
        record.published_revision = revision.number
        self._store.save_pipeline(record)
        for hook in self._publish_hooks:
            await hook(record.code, definition)
        logger.info("Published '%s' as revision %d", record.code, revision.number)
        return revision

    def _revalidate(
        self, record: PipelineRecord, level: ValidationLevel
    ) -> PipelineDefinition:
        try:
            definition = PipelineDefinition.from_dict(record.draft)
        except ValueError as exc:
            raise ValidationError(f"Draft of '{record.code}' cannot be parsed: {exc}") from exc
        issues = validate_definition(definition, self._registry, level)
        if issues:
            logger.info(
                "%s validation of '%s' failed with %d issue(s)",
                level.value.upper(),
                record.code,
                len(issues),
            )
            raise CompilationError(issues)
        return definition

    def _require(self, code: str, state: LifecycleState, action: str) -> PipelineRecord:
        record = self.get(code)
        if record.state != state:
            raise LifecycleGuardError(
                f"Cannot {action} pipeline '{code}' in {record.state.value} "
                f"(requires {state.value})"
            )
        return record

    async def _transition(
        self,
        record: PipelineRecord,
        target: LifecycleState,
        *,
        reason: str = "",
        save: bool = True,
    ) -> None:
        previous = record.state
        await self._emit(record.code, previous, target, reason)
        record.state = target
        record.updated_at = time.time()
        if save:
            self._store.save_pipeline(record)
        logger.info("Pipeline '%s': %s -> %s", record.code, previous.value, target.value)

    async def _emit(
        self,
        code: str,
        previous: LifecycleState | None,
        target: LifecycleState,
        reason: str = "",
    ) -> None:
        await self._emitter.emit(
            EngineEvent(
                type=EventType.LIFECYCLE_TRANSITION,
                pipeline_code=code,
                data={
                    "from": previous.value if previous else None,
                    "to": target.value,
                    "reason": reason,
                },
            )
        )

    def _append(
        self, record: PipelineRecord, kind: RevisionKind, message: str = ""
    ) -> Revision:
        """Snapshot ``record.draft`` under the record's next revision number."""
        existing = self._store.list_revisions(record.code)
        highest = existing[-1].number if existing else 0
        record.last_revision = max(record.last_revision, highest) + 1
        revision = Revision(
            id=new_id("rev"),
            pipeline_code=record.code,
            number=record.last_revision,
            kind=kind,
            definition=copy.deepcopy(record.draft),
            message=message,
        )
        self._store.append_revision(revision)
        self._store.save_pipeline(record)
        return revision


def _edge_id(edge: dict[str, Any]) -> str:
    label = edge.get("label")
    base = f"{edge.get('from')}->{edge.get('to')}"
    return f"{base}[{label}]" if label else base


def _normalize(document: dict[str, Any]) -> dict[str, Any]:
    return PipelineDefinition.from_dict(document).to_dict()

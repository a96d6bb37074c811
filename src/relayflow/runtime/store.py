"""Persistent engine state.

Run records, run errors, retry audits, dead letters, lifecycle records,
revisions and checkpoints are all keyed so they can be inspected or
replayed independently. :class:`StateStore` implements the typed
operations on top of four storage primitives; subclasses provide the
primitives.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any

from relayflow.pipeline.models import (
    Checkpoint,
    DeadLetterEntry,
    DeadLetterStatus,
    PipelineRecord,
    RetryAudit,
    Revision,
    Run,
    RunError,
    RunStatus,
)

logger = logging.getLogger(__name__)

RUNS = "runs"
ERRORS = "errors"
AUDITS = "audits"
DEAD_LETTERS = "dead_letters"
PIPELINES = "pipelines"
REVISIONS = "revisions"
CHECKPOINTS = "checkpoints"


class StateStore:
    """Typed persistence operations over a key/document store."""

    # -- primitives --------------------------------------------------------

    def _put(self, collection: str, key: str, doc: dict[str, Any]) -> None:
        raise NotImplementedError

    def _get(self, collection: str, key: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def _scan(self, collection: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    def _delete(self, collection: str, key: str) -> bool:
        raise NotImplementedError

    def _put_many(self, writes: list[tuple[str, str, dict[str, Any]]]) -> None:
        """Write several documents as one unit."""
        for collection, key, doc in writes:
            self._put(collection, key, doc)

    # -- runs --------------------------------------------------------------

    def save_run(self, run: Run) -> None:
        self._put(RUNS, run.id, run.to_dict())

    def get_run(self, run_id: str) -> Run | None:
        doc = self._get(RUNS, run_id)
        return Run.from_dict(doc) if doc else None

    def list_runs(
        self, pipeline_code: str | None = None, status: RunStatus | None = None
    ) -> list[Run]:
        runs = [Run.from_dict(d) for d in self._scan(RUNS)]
        if pipeline_code is not None:
            runs = [r for r in runs if r.pipeline_code == pipeline_code]
        if status is not None:
            runs = [r for r in runs if r.status == status]
        return sorted(runs, key=lambda r: r.created_at)

    # -- run errors and retry audits ---------------------------------------

    def save_error(self, error: RunError) -> None:
        self._put(ERRORS, error.id, error.to_dict())

    def get_error(self, error_id: str) -> RunError | None:
        doc = self._get(ERRORS, error_id)
        return RunError.from_dict(doc) if doc else None

    def list_errors(
        self, run_id: str | None = None, pipeline_code: str | None = None
    ) -> list[RunError]:
        errors = [RunError.from_dict(d) for d in self._scan(ERRORS)]
        if run_id is not None:
            errors = [e for e in errors if e.run_id == run_id]
        if pipeline_code is not None:
            errors = [e for e in errors if e.pipeline_code == pipeline_code]
        return sorted(errors, key=lambda e: e.created_at)

    def append_audit(self, audit: RetryAudit) -> None:
        """Append a retry audit.

        Raises:
            ValueError: If an audit with the same id already exists;
                audits are never rewritten.
        """
        if self._get(AUDITS, audit.id) is not None:
            raise ValueError(f"Retry audit '{audit.id}' already exists")
        self._put(AUDITS, audit.id, audit.to_dict())

    def list_audits(self, error_id: str | None = None) -> list[RetryAudit]:
        audits = [RetryAudit.from_dict(d) for d in self._scan(AUDITS)]
        if error_id is not None:
            audits = [a for a in audits if a.error_id == error_id]
        return sorted(audits, key=lambda a: a.created_at)

    # -- dead letters ------------------------------------------------------

    def save_dead_letter(self, entry: DeadLetterEntry) -> None:
        self._put(DEAD_LETTERS, entry.id, entry.to_dict())

    def get_dead_letter(self, entry_id: str) -> DeadLetterEntry | None:
        doc = self._get(DEAD_LETTERS, entry_id)
        return DeadLetterEntry.from_dict(doc) if doc else None

    def find_dead_letter(self, error_id: str) -> DeadLetterEntry | None:
        for doc in self._scan(DEAD_LETTERS):
            if doc.get("error_id") == error_id:
                return DeadLetterEntry.from_dict(doc)
        return None

    def list_dead_letters(
        self,
        pipeline_code: str | None = None,
        status: DeadLetterStatus | None = None,
    ) -> list[DeadLetterEntry]:
        entries = [DeadLetterEntry.from_dict(d) for d in self._scan(DEAD_LETTERS)]
        if pipeline_code is not None:
            entries = [e for e in entries if e.pipeline_code == pipeline_code]
        if status is not None:
            entries = [e for e in entries if e.status == status]
        return sorted(entries, key=lambda e: e.created_at)

    # -- lifecycle ---------------------------------------------------------

    def save_pipeline(self, record: PipelineRecord) -> None:
        self._put(PIPELINES, record.code, record.to_dict())

    def get_pipeline(self, code: str) -> PipelineRecord | None:
        doc = self._get(PIPELINES, code)
        return PipelineRecord.from_dict(doc) if doc else None

    def list_pipelines(self) -> list[PipelineRecord]:
        return sorted(
            (PipelineRecord.from_dict(d) for d in self._scan(PIPELINES)),
            key=lambda p: p.code,
        )

    def append_revision(self, revision: Revision) -> None:
        key = f"{revision.pipeline_code}--{revision.number:06d}"
        if self._get(REVISIONS, key) is not None:
            raise ValueError(
                f"Revision {revision.number} of '{revision.pipeline_code}' already exists"
            )
        self._put(REVISIONS, key, revision.to_dict())

    def delete_revision(self, pipeline_code: str, number: int) -> bool:
        return self._delete(REVISIONS, f"{pipeline_code}--{number:06d}")

    def list_revisions(self, pipeline_code: str) -> list[Revision]:
        revisions = [
            Revision.from_dict(d)
            for d in self._scan(REVISIONS)
            if d.get("pipeline_code") == pipeline_code
        ]
        return sorted(revisions, key=lambda r: r.number)

    # -- checkpoints -------------------------------------------------------

    def get_checkpoint(self, pipeline_code: str) -> Checkpoint | None:
        doc = self._get(CHECKPOINTS, pipeline_code)
        return Checkpoint.from_dict(doc) if doc else None

    def commit_checkpoint(self, run: Run, checkpoint: Checkpoint) -> None:
        """Persist *checkpoint* together with the run's cursor as one unit."""
        run.checkpoint_cursor = copy.deepcopy(checkpoint.cursor)
        self._put_many(
            [
                (CHECKPOINTS, checkpoint.pipeline_code, checkpoint.to_dict()),
                (RUNS, run.id, run.to_dict()),
            ]
        )

    def delete_checkpoint(self, pipeline_code: str) -> bool:
        return self._delete(CHECKPOINTS, pipeline_code)


class MemoryStateStore(StateStore):
    """In-process store; documents are deep-copied on the way in and out."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, dict[str, Any]]] = {}

    def _put(self, collection: str, key: str, doc: dict[str, Any]) -> None:
        self._data.setdefault(collection, {})[key] = copy.deepcopy(doc)

    def _get(self, collection: str, key: str) -> dict[str, Any] | None:
        doc = self._data.get(collection, {}).get(key)
        return copy.deepcopy(doc) if doc is not None else None

    def _scan(self, collection: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(d) for d in self._data.get(collection, {}).values()]

    def _delete(self, collection: str, key: str) -> bool:
        return self._data.get(collection, {}).pop(key, None) is not None

    def _put_many(self, writes: list[tuple[str, str, dict[str, Any]]]) -> None:
        staged = [(c, k, copy.deepcopy(d)) for c, k, d in writes]
        for collection, key, doc in staged:
            self._data.setdefault(collection, {})[key] = doc


_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


class JsonFileStateStore(StateStore):
    """One JSON file per document under ``root/<collection>/``.

    Each write goes to a temporary file in the same directory and is
    moved into place with :func:`os.replace`, so readers never observe a
    partially written document.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, collection: str, key: str) -> Path:
        return self._root / collection / f"{_UNSAFE.sub('_', key)}.json"

    def _put(self, collection: str, key: str, doc: dict[str, Any]) -> None:
        path = self._path(collection, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(doc, fh, indent=2, default=str)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _get(self, collection: str, key: str) -> dict[str, Any] | None:
        path = self._path(collection, key)
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def _scan(self, collection: str) -> list[dict[str, Any]]:
        directory = self._root / collection
        if not directory.is_dir():
            return []
        docs = []
        for path in sorted(directory.glob("*.json")):
            if path.name.startswith(".tmp-"):
                continue
            try:
                docs.append(json.loads(path.read_text(encoding="utf-8")))
            except json.JSONDecodeError:
                logger.warning("Skipping unreadable state file %s", path)
        return docs

    def _delete(self, collection: str, key: str) -> bool:
        path = self._path(collection, key)
        if not path.exists():
            return False
        path.unlink()
        return True

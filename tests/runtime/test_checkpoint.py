"""Tests for checkpoint cursors."""

import pytest

from relayflow.pipeline.models import (
    Checkpoint,
    CheckpointPolicy,
    CheckpointStrategy,
    Run,
)
from relayflow.runtime.checkpoint import CheckpointManager
from relayflow.runtime.store import MemoryStateStore


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def store() -> MemoryStateStore:
    return MemoryStateStore()


def _run() -> Run:
    return Run(id="run-1", pipeline_code="orders")


class TestCountStrategy:
    POLICY = CheckpointPolicy(enabled=True, strategy=CheckpointStrategy.COUNT, interval=100)

    def test_commits_land_on_interval_multiples(self, store: MemoryStateStore) -> None:
        tracker = CheckpointManager(store).tracker(_run(), self.POLICY)
        committed = []
        for offset in (80, 200, 250, 300):
            checkpoint = tracker.commit("extract", offset)
            if checkpoint is not None:
                committed.append(checkpoint.cursor["extract"]["offset"])
        assert committed == [200, 300]

    def test_final_commit_is_exact(self, store: MemoryStateStore) -> None:
        tracker = CheckpointManager(store).tracker(_run(), self.POLICY)
        tracker.commit("extract", 200)
        checkpoint = tracker.commit("extract", 257, final=True)
        assert checkpoint is not None
        assert store.get_checkpoint("orders").cursor == {"extract": {"offset": 257}}

    def test_due(self, store: MemoryStateStore) -> None:
        tracker = CheckpointManager(store).tracker(_run(), self.POLICY)
        assert not tracker.due("extract", 99)
        assert tracker.due("extract", 100)
        tracker.commit("extract", 100)
        assert not tracker.due("extract", 150)

    def test_resume_skips_committed_prefix(self, store: MemoryStateStore) -> None:
        store.save_run(_run())
        store.commit_checkpoint(
            _run(), Checkpoint(pipeline_code="orders", run_id="old", cursor={"extract": {"offset": 2}})
        )
        tracker = CheckpointManager(store).tracker(_run(), self.POLICY)
        records = [{"id": i} for i in range(5)]
        assert tracker.resume_offset("extract") == 2
        assert tracker.skip("extract", records) == records[2:]

    def test_resume_disabled_starts_over(self, store: MemoryStateStore) -> None:
        store.commit_checkpoint(
            _run(), Checkpoint(pipeline_code="orders", run_id="old", cursor={"extract": {"offset": 2}})
        )
        tracker = CheckpointManager(store).tracker(_run(), self.POLICY, resume=False)
        assert tracker.resume_offset("extract") == 0


class TestIntervalStrategy:
    def test_due_after_elapsed_time(self, store: MemoryStateStore) -> None:
        clock = FakeClock()
        policy = CheckpointPolicy(enabled=True, strategy=CheckpointStrategy.INTERVAL, interval=500)
        tracker = CheckpointManager(store, clock=clock).tracker(_run(), policy)

        assert not tracker.due("extract", 10)
        clock.now = 0.6
        assert tracker.due("extract", 10)
        tracker.commit("extract", 10)
        assert not tracker.due("extract", 20)


class TestTimestampStrategy:
    POLICY = CheckpointPolicy(
        enabled=True, strategy=CheckpointStrategy.TIMESTAMP, watermark_field="updatedAt"
    )

    def test_watermark_tracks_highest_value(self, store: MemoryStateStore) -> None:
        tracker = CheckpointManager(store).tracker(_run(), self.POLICY)
        batch = [
            {"updatedAt": "2024-05-01T10:00:00Z"},
            {"updatedAt": "2024-05-03T10:00:00Z"},
            {"updatedAt": "2024-05-02T10:00:00Z"},
        ]
        checkpoint = tracker.commit("extract", 3, batch)
        assert checkpoint is not None
        assert tracker.cursor_for("extract") == {"watermark": "2024-05-03T10:00:00Z"}
        # Nothing newer: the cursor does not move.
        assert tracker.commit("extract", 4, [{"updatedAt": "2024-05-01T00:00:00Z"}]) is None

    def test_skip_at_or_below_watermark(self, store: MemoryStateStore) -> None:
        tracker = CheckpointManager(store).tracker(_run(), self.POLICY)
        tracker.commit("extract", 1, [{"updatedAt": 20}])
        records = [{"updatedAt": 10}, {"updatedAt": 20}, {"updatedAt": 30}, {"id": "no-field"}]
        assert tracker.skip("extract", records) == [{"updatedAt": 30}, {"id": "no-field"}]
        assert tracker.resume_offset("extract") == 0


class TestCheckpointManager:
    def test_disabled_policy_never_commits(self, store: MemoryStateStore) -> None:
        tracker = CheckpointManager(store).tracker(_run(), CheckpointPolicy())
        assert tracker.commit("extract", 5000, final=True) is None
        assert tracker.skip("extract", [{"id": 1}]) == [{"id": 1}]
        assert store.get_checkpoint("orders") is None

    def test_reset(self, store: MemoryStateStore) -> None:
        manager = CheckpointManager(store)
        manager.tracker(_run(), TestCountStrategy.POLICY).commit("extract", 100)
        assert manager.load("orders") is not None
        assert manager.reset("orders") is True
        assert manager.reset("orders") is False

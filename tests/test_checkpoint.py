from concurrent.futures import ThreadPoolExecutor

import pytest

from incremental.checkpoint import (
    FileCheckpointStore, InMemoryCheckpointStore, CheckpointError, CheckpointNotFoundError
)
from incremental.config import IncrementalWorkflowConfig
from incremental.discovery import RuleDiscoveryEngine
from incremental.hitl import HITLQuestionGenerator
from incremental.models import WorkflowState, WorkflowStage


@pytest.fixture
def state(messy_df):
    rules = RuleDiscoveryEngine().discover(messy_df, stage=1)
    rules[0].approve("auto-approved: automatic fix")
    questions = HITLQuestionGenerator().generate_all(rules, messy_df)
    return WorkflowState(
        session_id="abc123",
        dataset_path="/data/people.csv",
        config=IncrementalWorkflowConfig(stage1_ratio=0.002, skip_hitl=True),
        current_stage=WorkflowStage.INITIAL_EXPLORATION,
        total_records=6,
        discovered_rules=rules,
        pending_questions=questions
    )


def test_file_store_round_trip(tmp_path, state):
    store = FileCheckpointStore(tmp_path)
    location = store.save(state)

    assert location.endswith("checkpoint-abc123-1.json")
    loaded = store.load("abc123")
    assert loaded.session_id == state.session_id
    assert loaded.current_stage == WorkflowStage.INITIAL_EXPLORATION
    assert loaded.config.stage1_ratio == 0.002
    assert loaded.config.skip_hitl
    assert [r.id for r in loaded.discovered_rules] == [r.id for r in state.discovered_rules]
    assert [r.id for r in loaded.approved_rules] == [state.discovered_rules[0].id]
    assert [q.id for q in loaded.pending_questions] == [q.id for q in state.pending_questions]
    assert not list(tmp_path.glob("*.tmp"))


def test_latest_checkpoint_is_highest_stage(tmp_path, state):
    store = FileCheckpointStore(tmp_path)
    store.save(state)
    state.current_stage = WorkflowStage.PATTERN_EXPANSION
    store.save(state)

    assert store.list_stages("abc123") == [1, 2]
    assert store.load("abc123").current_stage == WorkflowStage.PATTERN_EXPANSION
    assert store.load("abc123", stage=1).current_stage == WorkflowStage.INITIAL_EXPLORATION
    assert store.load_file(store.path_for("abc123", 1)).session_id == "abc123"


def test_missing_and_corrupt_checkpoints(tmp_path):
    store = FileCheckpointStore(tmp_path)
    with pytest.raises(CheckpointNotFoundError):
        store.load("unknown")

    store.path_for("broken", 1).write_text("{not json", encoding="utf-8")
    with pytest.raises(CheckpointError):
        store.load("broken")


def test_in_memory_store(state):
    store = InMemoryCheckpointStore()
    assert store.save(state) == "memory://abc123/1"
    assert store.load("abc123").total_records == 6
    with pytest.raises(CheckpointNotFoundError):
        store.load("abc123", stage=3)


def test_snapshot_is_independent(state):
    snapshot = state.snapshot()
    state.discovered_rules[1].approve()
    assert not snapshot.discovered_rules[1].is_approved


def test_stores_on_one_directory_share_locks_and_write_safely(tmp_path, state):
    first = FileCheckpointStore(tmp_path)
    second = FileCheckpointStore(tmp_path)
    assert first._lock_for("abc123") is second._lock_for("abc123")
    assert first._lock_for("abc123") is not FileCheckpointStore(tmp_path / "other")._lock_for("abc123")

    with ThreadPoolExecutor(max_workers=4) as pool:
        locations = list(pool.map(lambda store: store.save(state), [first, second] * 10))

    assert set(locations) == {str(first.path_for("abc123", 1))}
    assert second.load("abc123").session_id == "abc123"
    assert not list(tmp_path.glob("*.tmp"))

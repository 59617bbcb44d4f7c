"""Unit tests for pipeline and task data models."""

import pytest
from pydantic import ValidationError

from rover_autopilot.state.models import (
    ActionKind,
    ActionStep,
    ActionTrace,
    AutopilotState,
    CommitMeta,
    PendingAction,
    ResolveMeta,
    StepStatus,
    WorkflowMeta,
)
from rover_autopilot.tasks.models import TaskRecord, TaskStatus


def _commit_meta(**overrides):
    values = dict(
        source_action_id="wf-1",
        task_id=1,
        branch_name="rover/task-1-abcd",
        task_status=TaskStatus.COMPLETED,
    )
    values.update(overrides)
    return CommitMeta(**values)


def test_workflow_meta_defaults():
    """Test WorkflowMeta default values."""
    meta = WorkflowMeta(title="Add login")
    assert meta.kind == "workflow"
    assert meta.workflow == "swe"
    assert meta.acceptance_criteria == []
    assert meta.context.files == []
    assert meta.depends_on_action_id is None
    assert meta.retry_task_id is None


def test_pending_action_meta_must_match_kind():
    """Test a pending action rejects meta of another kind."""
    with pytest.raises(ValidationError):
        PendingAction(
            trace_id="t",
            span_id="s",
            kind=ActionKind.RESOLVE,
            meta=_commit_meta(),
        )


def test_pending_action_round_trip_discriminates_meta():
    """Test meta is restored as the right variant from JSON."""
    action = PendingAction(trace_id="t", span_id="s", kind=ActionKind.COMMIT, meta=_commit_meta())

    restored = PendingAction(**action.model_dump(mode="json"))

    assert isinstance(restored.meta, CommitMeta)
    assert restored.meta.task_status == TaskStatus.COMPLETED
    assert restored.action_id == action.action_id


def test_pending_action_ids_unique():
    """Test every pending action gets its own id."""
    first = PendingAction(trace_id="t", span_id="s", kind=ActionKind.WORKFLOW, meta=WorkflowMeta(title="a"))
    second = PendingAction(trace_id="t", span_id="s", kind=ActionKind.WORKFLOW, meta=WorkflowMeta(title="a"))
    assert first.action_id != second.action_id


def test_resolve_meta_defaults():
    """Test ResolveMeta defaults to an uncommitted result."""
    meta = ResolveMeta(
        source_action_id="wf-1",
        task_id=1,
        branch_name="b",
        task_status=TaskStatus.FAILED,
    )
    assert meta.committed is False
    assert meta.commit_sha is None
    assert meta.commit_error is None


def test_state_loads_mixed_pending():
    """Test the state document holds every action kind."""
    state = AutopilotState(
        pending=[
            PendingAction(trace_id="t", span_id="s", kind=ActionKind.WORKFLOW, meta=WorkflowMeta(title="a")),
            PendingAction(trace_id="t", span_id="s", kind=ActionKind.COMMIT, meta=_commit_meta()),
        ]
    )

    restored = AutopilotState(**state.model_dump(mode="json"))

    assert [p.kind for p in restored.pending] == [ActionKind.WORKFLOW, ActionKind.COMMIT]


def test_trace_current_attempt():
    """Test current_attempt starts at attempt_start."""
    trace = ActionTrace(
        trace_id="t",
        steps=[
            ActionStep(action_id="a", kind=ActionKind.WORKFLOW, status=StepStatus.COMPLETED),
            ActionStep(action_id="b", kind=ActionKind.REVIEW, status=StepStatus.FAILED),
            ActionStep(action_id="c", kind=ActionKind.WORKFLOW),
        ],
        attempt_start=2,
    )
    assert [s.action_id for s in trace.current_attempt()] == ["c"]
    assert trace.find_step("b").status == StepStatus.FAILED
    assert trace.find_step("missing") is None


def test_trace_retry_count_not_negative():
    """Test retry_count cannot go below zero."""
    with pytest.raises(ValidationError):
        ActionTrace(trace_id="t", retry_count=-1)


class TestTaskRecord:
    """Tests for TaskRecord status helpers."""

    def test_defaults(self):
        """Test a new task starts NEW and inactive."""
        task = TaskRecord(id=1, title="Add login")
        assert task.status == TaskStatus.NEW
        assert task.iterations == 0
        assert not task.is_active

    def test_in_progress_is_active(self):
        """Test IN_PROGRESS and ITERATING count as active."""
        task = TaskRecord(id=1, title="t")
        task.mark_in_progress()
        assert task.is_active
        task.mark_iterating()
        assert task.is_active

    def test_mark_failed_records_error(self):
        """Test mark_failed stores the error and mark_iterating clears it."""
        task = TaskRecord(id=1, title="t")
        task.mark_failed("tests failed")
        assert task.status == TaskStatus.FAILED
        assert task.error == "tests failed"

        task.mark_iterating()
        assert task.error is None

    def test_reset_to_new_clears_container(self):
        """Test reset_to_new drops the container id."""
        task = TaskRecord(id=1, title="t", container_id="abc")
        task.mark_in_progress()
        task.reset_to_new()
        assert task.status == TaskStatus.NEW
        assert task.container_id is None

"""Unit tests for the trace ledger."""

import pytest

from rover_autopilot.state.models import ActionKind, PendingAction, StepStatus, WorkflowMeta
from rover_autopilot.state.traces import StepTransitionError, TraceBook


def test_valid_transitions():
    """Test valid step transitions."""
    assert TraceBook.can_transition(StepStatus.PENDING, StepStatus.RUNNING)
    assert TraceBook.can_transition(StepStatus.PENDING, StepStatus.COMPLETED)
    assert TraceBook.can_transition(StepStatus.RUNNING, StepStatus.FAILED)
    assert TraceBook.can_transition(StepStatus.COMPLETED, StepStatus.COMPLETED)


def test_invalid_transitions():
    """Test steps never move backwards out of terminal states."""
    assert not TraceBook.can_transition(StepStatus.COMPLETED, StepStatus.PENDING)
    assert not TraceBook.can_transition(StepStatus.FAILED, StepStatus.RUNNING)
    assert not TraceBook.can_transition(StepStatus.RUNNING, StepStatus.PENDING)
    assert not TraceBook.can_transition(StepStatus.COMPLETED, StepStatus.FAILED)


def test_add_step_idempotent(traces):
    """Test adding the same action twice keeps one step."""
    traces.add_step("t", "a", ActionKind.WORKFLOW, summary="Add login")
    traces.add_step("t", "a", ActionKind.WORKFLOW)

    trace = traces.get("t")
    assert trace.summary == "Add login"
    assert len(trace.steps) == 1
    assert trace.steps[0].status == StepStatus.PENDING


def test_set_step_status_records_reasoning(traces):
    """Test status changes carry reasoning."""
    traces.add_step("t", "a", ActionKind.REVIEW)
    traces.set_step_status("t", "a", StepStatus.RUNNING)
    step = traces.set_step_status("t", "a", StepStatus.FAILED, reasoning="tests failed")

    assert step.status == StepStatus.FAILED
    assert step.reasoning == "tests failed"


def test_set_step_status_rejects_reversal(traces):
    """Test a completed step cannot be reopened."""
    traces.add_step("t", "a", ActionKind.COMMIT)
    traces.set_step_status("t", "a", StepStatus.COMPLETED)

    with pytest.raises(StepTransitionError):
        traces.set_step_status("t", "a", StepStatus.RUNNING)


def test_set_step_status_creates_missing_step(traces):
    """Test an unknown step is created when its kind is given."""
    traces.set_step_status("t", "a", StepStatus.RUNNING, kind=ActionKind.RESOLVE)
    assert traces.get("t").find_step("a").status == StepStatus.RUNNING

    with pytest.raises(StepTransitionError):
        traces.set_step_status("t", "b", StepStatus.RUNNING)


def test_fail_pending_steps(traces):
    """Test only pending steps are failed."""
    traces.add_step("t", "a", ActionKind.WORKFLOW, status=StepStatus.COMPLETED)
    traces.add_step("t", "b", ActionKind.REVIEW)
    traces.add_step("t", "c", ActionKind.COMMIT)

    changed = traces.fail_pending_steps("t", "max retries exceeded")

    trace = traces.get("t")
    assert changed == 2
    assert trace.find_step("a").status == StepStatus.COMPLETED
    assert trace.find_step("b").status == StepStatus.FAILED
    assert trace.find_step("c").reasoning == "max retries exceeded"
    assert traces.fail_pending_steps("missing", "x") == 0


def test_increment_retry_and_start_attempt(traces):
    """Test retries bump the counter and move the attempt window."""
    traces.add_step("t", "a", ActionKind.WORKFLOW, status=StepStatus.COMPLETED)
    traces.add_step("t", "b", ActionKind.WORKFLOW)

    assert traces.increment_retry("t") == 1
    traces.start_attempt("t", "b")

    trace = traces.get("t")
    assert trace.attempt_start == 1
    assert [s.action_id for s in trace.current_attempt()] == ["b"]

    with pytest.raises(StepTransitionError):
        traces.start_attempt("t", "missing")


def test_ledger_persisted(store, traces):
    """Test a new book over the same store sees every mutation."""
    traces.add_step("t", "a", ActionKind.WORKFLOW, summary="Add login")
    traces.set_step_status("t", "a", StepStatus.COMPLETED, reasoning="done")
    traces.increment_retry("t")

    reloaded = TraceBook(store).get("t")

    assert reloaded.retry_count == 1
    assert reloaded.find_step("a").status == StepStatus.COMPLETED
    assert reloaded.find_step("a").reasoning == "done"


def test_reconcile_adds_missing_steps(store, traces):
    """Test reconcile gives every pending action a pending step."""
    traces.add_step("t", "known", ActionKind.WORKFLOW)
    known = PendingAction(
        trace_id="t", action_id="known", span_id="s", kind=ActionKind.WORKFLOW, meta=WorkflowMeta(title="a")
    )
    lost = PendingAction(
        trace_id="u", span_id="s", kind=ActionKind.WORKFLOW, summary="lost", meta=WorkflowMeta(title="b")
    )

    assert traces.reconcile([known, lost]) == 1
    assert traces.get("u").find_step(lost.action_id).status == StepStatus.PENDING
    assert traces.reconcile([known, lost]) == 0


def test_all_sorted_by_creation(traces):
    """Test all() lists traces oldest first."""
    traces.ensure("first")
    traces.ensure("second")
    assert [t.trace_id for t in traces.all()] == ["first", "second"]

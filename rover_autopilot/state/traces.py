"""Trace ledger: per-trace step bookkeeping with monotonic transitions."""

import logging
from typing import Iterable, Optional

from ..tasks.models import utc_now
from .models import ActionKind, ActionStep, ActionTrace, PendingAction, StepStatus
from .store import ActionStore

logger = logging.getLogger(__name__)


class StepTransitionError(Exception):
    """Invalid step status transition."""

    pass


class TraceBook:
    """Cache of action traces owned by one autopilot loop.

    The book is persisted to the store after every mutation and rebuilt from
    it at startup, so it is only ever a view of durable state.
    """

    # Valid step transitions (re-asserting the current status is always allowed)
    TRANSITIONS = {
        StepStatus.PENDING: [
            StepStatus.RUNNING,
            StepStatus.COMPLETED,
            StepStatus.FAILED,
        ],
        StepStatus.RUNNING: [
            StepStatus.COMPLETED,
            StepStatus.FAILED,
        ],
        StepStatus.COMPLETED: [],  # Terminal
        StepStatus.FAILED: [],  # Terminal
    }

    def __init__(self, store: ActionStore):
        """Initialize trace book.

        Args:
            store: Store the ledger is loaded from and saved to
        """
        self.store = store
        self.traces: dict[str, ActionTrace] = store.load_traces()

    def save(self) -> None:
        self.store.save_traces(self.traces)

    def get(self, trace_id: str) -> Optional[ActionTrace]:
        return self.traces.get(trace_id)

    def all(self) -> list[ActionTrace]:
        return sorted(self.traces.values(), key=lambda t: t.created_at)

    def ensure(self, trace_id: str, summary: str = "") -> ActionTrace:
        """Get a trace, creating it if needed."""
        trace = self.traces.get(trace_id)
        if trace is None:
            trace = ActionTrace(trace_id=trace_id, summary=summary)
            self.traces[trace_id] = trace
            self.save()
        return trace

    @classmethod
    def can_transition(cls, current: StepStatus, new: StepStatus) -> bool:
        """Check if a step status transition is valid.

        Args:
            current: Current status
            new: Target status

        Returns:
            True if transition is valid
        """
        return new == current or new in cls.TRANSITIONS.get(current, [])

    def add_step(
        self,
        trace_id: str,
        action_id: str,
        kind: ActionKind,
        status: StepStatus = StepStatus.PENDING,
        summary: str = "",
    ) -> ActionStep:
        """Record a step for an action (idempotent per action id).

        Args:
            trace_id: Trace the action belongs to
            action_id: Action id
            kind: Action kind
            status: Initial status
            summary: Trace summary if the trace is new

        Returns:
            The new or existing step
        """
        trace = self.ensure(trace_id, summary)
        existing = trace.find_step(action_id)
        if existing is not None:
            return existing

        step = ActionStep(action_id=action_id, kind=kind, status=status)
        trace.steps.append(step)
        self.save()
        return step

    def set_step_status(
        self,
        trace_id: str,
        action_id: str,
        status: StepStatus,
        reasoning: str | None = None,
        kind: ActionKind | None = None,
    ) -> ActionStep:
        """Transition a step's status.

        A step unknown to the ledger is created pending first, which covers
        actions enqueued before a crash lost the ledger snapshot.

        Args:
            trace_id: Trace id
            action_id: Action whose step changes
            status: Target status
            reasoning: Optional reasoning to record
            kind: Action kind, required when the step may not exist yet

        Returns:
            Updated step

        Raises:
            StepTransitionError: If the transition would reverse the step
        """
        trace = self.ensure(trace_id)
        step = trace.find_step(action_id)
        if step is None:
            if kind is None:
                raise StepTransitionError(f"Unknown step {action_id} in trace {trace_id}")
            step = ActionStep(action_id=action_id, kind=kind)
            trace.steps.append(step)

        if not self.can_transition(step.status, status):
            raise StepTransitionError(
                f"Invalid step transition for {action_id}: {step.status.value} -> {status.value}"
            )

        if step.status != status:
            logger.debug(
                "Step %s (%s): %s -> %s",
                action_id[:8],
                step.kind.value,
                step.status.value,
                status.value,
                extra={"trace_id": trace_id},
            )
            step.status = status
            step.timestamp = utc_now()
        if reasoning is not None:
            step.reasoning = reasoning

        self.save()
        return step

    def fail_pending_steps(self, trace_id: str, reasoning: str) -> int:
        """Mark every still-pending step of a trace failed.

        Returns:
            Number of steps changed
        """
        trace = self.traces.get(trace_id)
        if trace is None:
            return 0

        changed = 0
        for step in trace.steps:
            if step.status == StepStatus.PENDING:
                step.status = StepStatus.FAILED
                step.reasoning = reasoning
                step.timestamp = utc_now()
                changed += 1
        if changed:
            self.save()
        return changed

    def increment_retry(self, trace_id: str) -> int:
        """Count one more iterate decision for a trace.

        Returns:
            New retry count
        """
        trace = self.ensure(trace_id)
        trace.retry_count += 1
        self.save()
        return trace.retry_count

    def start_attempt(self, trace_id: str, action_id: str) -> None:
        """Begin a new attempt at the step for ``action_id``."""
        trace = self.ensure(trace_id)
        for index, step in enumerate(trace.steps):
            if step.action_id == action_id:
                trace.attempt_start = index
                self.save()
                return
        raise StepTransitionError(f"Unknown step {action_id} in trace {trace_id}")

    def reconcile(self, pending: Iterable[PendingAction]) -> int:
        """Make sure every pending action has a step in its trace.

        Args:
            pending: Pending actions from the store

        Returns:
            Number of steps added
        """
        added = 0
        for action in pending:
            trace = self.ensure(action.trace_id, action.summary)
            if trace.find_step(action.action_id) is None:
                trace.steps.append(ActionStep(action_id=action.action_id, kind=action.kind))
                added += 1
        if added:
            logger.info("Reconciled %s pending action(s) into the trace ledger", added)
            self.save()
        return added

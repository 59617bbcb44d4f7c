"""Pipeline data model: pending actions, traces, spans and audit entries."""

import uuid
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from ..tasks.models import TaskStatus, utc_now

RECORD_VERSION = "1.0"


def new_id() -> str:
    return str(uuid.uuid4())


class ActionKind(str, Enum):
    """Pipeline stage an action is addressed to."""

    WORKFLOW = "workflow"
    REVIEW = "review"
    COMMIT = "commit"
    RESOLVE = "resolve"
    PUSH = "push"


# Steps of these kinds close an attempt; everything else is task work.
TERMINAL_KINDS = (ActionKind.COMMIT, ActionKind.RESOLVE, ActionKind.PUSH)


class StepStatus(str, Enum):
    """Status of one processed action inside a trace."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SpanStatus(str, Enum):
    """Outcome recorded on an immutable span."""

    COMPLETED = "completed"
    FAILED = "failed"
    ERROR = "error"
    SKIPPED = "skipped"


class WorkflowContext(BaseModel):
    files: list[str] = Field(default_factory=list)
    references: list[str] = Field(default_factory=list)


class WorkflowMeta(BaseModel):
    """Intent to run a workflow as a new task (or a retry of one)."""

    kind: Literal["workflow"] = "workflow"
    workflow: str = Field(default="swe")
    title: str
    description: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)
    context: WorkflowContext = Field(default_factory=WorkflowContext)
    depends_on_action_id: Optional[str] = Field(
        default=None,
        description="Workflow action whose task must complete first",
    )
    retry_task_id: Optional[int] = Field(
        default=None,
        description="Existing task to re-run instead of creating one",
    )


class TaskRefMeta(BaseModel):
    """Fields shared by every action that follows a launched task."""

    source_action_id: str = Field(description="Workflow action that launched the task")
    task_id: int
    branch_name: str
    workflow: str = "swe"
    title: str = ""


class ReviewMeta(TaskRefMeta):
    kind: Literal["review"] = "review"


class CommitMeta(TaskRefMeta):
    kind: Literal["commit"] = "commit"
    task_status: TaskStatus


class CommitError(BaseModel):
    """A git failure captured by the committer."""

    message: str
    exit_code: Optional[int] = None
    stderr: str = ""
    command: str = ""


class ResolveMeta(TaskRefMeta):
    kind: Literal["resolve"] = "resolve"
    task_status: TaskStatus
    committed: bool = False
    commit_sha: Optional[str] = None
    commit_error: Optional[CommitError] = None


class PushMeta(TaskRefMeta):
    kind: Literal["push"] = "push"
    commit_sha: Optional[str] = None


ActionMeta = Annotated[
    Union[WorkflowMeta, ReviewMeta, CommitMeta, ResolveMeta, PushMeta],
    Field(discriminator="kind"),
]


class PendingAction(BaseModel):
    """A unit of queued work addressed to one stage."""

    trace_id: str
    action_id: str = Field(default_factory=new_id)
    span_id: str = Field(description="Span that caused this action")
    kind: ActionKind
    summary: str = ""
    created_at: str = Field(default_factory=utc_now)
    meta: ActionMeta

    @model_validator(mode="after")
    def _meta_matches_kind(self) -> "PendingAction":
        if self.meta.kind != self.kind.value:
            raise ValueError(f"meta kind {self.meta.kind!r} does not match action kind {self.kind.value!r}")
        return self


class TaskMapping(BaseModel):
    """Durable link from a workflow action to the task it launched."""

    task_id: int
    branch_name: str
    trace_id: str


class AutopilotState(BaseModel):
    """Contents of state.json."""

    version: str = RECORD_VERSION
    pending: list[PendingAction] = Field(default_factory=list)
    task_mappings: dict[str, TaskMapping] = Field(default_factory=dict)
    updated_at: str = Field(default_factory=utc_now)


class ActionStep(BaseModel):
    """One processed (or to-be-processed) action in a trace."""

    action_id: str
    kind: ActionKind
    status: StepStatus = StepStatus.PENDING
    timestamp: str = Field(default_factory=utc_now)
    reasoning: Optional[str] = None


class ActionTrace(BaseModel):
    """Mutable step ledger for one causal chain of actions.

    ``attempt_start`` indexes the first step of the current attempt; each
    iterate moves it to the retry's workflow step. Resolution only judges
    ``current_attempt()``, so a step that failed in an earlier attempt does
    not keep a later, clean attempt from being pushed. Earlier steps stay in
    ``steps`` for the record.
    """

    trace_id: str
    summary: str = ""
    steps: list[ActionStep] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_now)
    retry_count: int = Field(default=0, ge=0)
    attempt_start: int = Field(
        default=0,
        ge=0,
        description="Index of the first step of the current attempt; earlier failures are not judged",
    )

    def current_attempt(self) -> list[ActionStep]:
        """Steps since the latest iterate (the whole trace before any retry)."""
        return self.steps[self.attempt_start:]

    def find_step(self, action_id: str) -> Optional[ActionStep]:
        for step in self.steps:
            if step.action_id == action_id:
                return step
        return None


class Span(BaseModel):
    """Immutable record of something that happened."""

    id: str = Field(default_factory=new_id)
    version: str = RECORD_VERSION
    timestamp: str = Field(default_factory=utc_now)
    step: str
    parent: Optional[str] = None
    status: SpanStatus = SpanStatus.COMPLETED
    summary: str = ""
    meta: dict = Field(default_factory=dict)


class Action(BaseModel):
    """Immutable record of a decision to do something."""

    id: str = Field(default_factory=new_id)
    version: str = RECORD_VERSION
    kind: ActionKind
    timestamp: str = Field(default_factory=utc_now)
    span_id: str
    reasoning: str = ""
    meta: dict = Field(default_factory=dict)


class LogEntry(BaseModel):
    """One line of the audit log."""

    ts: str = Field(default_factory=utc_now)
    trace_id: str
    span_id: Optional[str] = None
    action_id: str
    step: str
    action: str
    summary: str = ""

"""Task and iteration records."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class TaskStatus(str, Enum):
    """Lifecycle of a Rover task."""

    NEW = "NEW"
    IN_PROGRESS = "IN_PROGRESS"
    ITERATING = "ITERATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    MERGED = "MERGED"
    PUSHED = "PUSHED"


ACTIVE_STATUSES = (TaskStatus.IN_PROGRESS, TaskStatus.ITERATING)


class TaskRecord(BaseModel):
    """A unit of agent work executed in its own worktree."""

    id: int
    title: str
    description: str = ""
    workflow: str = Field(default="swe", description="Workflow the agent runs")
    status: TaskStatus = Field(default=TaskStatus.NEW)
    source_action_id: Optional[str] = Field(
        default=None,
        description="Workflow action that created the task (idempotency key)",
    )
    source_branch: Optional[str] = Field(default=None, description="Base branch")
    branch_name: Optional[str] = Field(default=None)
    worktree_path: Optional[str] = Field(default=None)
    base_commit: Optional[str] = Field(default=None)
    container_id: Optional[str] = Field(default=None)
    agent_image: Optional[str] = Field(default=None)
    iterations: int = Field(default=0, description="Number of recorded iterations")
    error: Optional[str] = Field(default=None)
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def set_workspace(self, worktree_path: str, branch_name: str) -> None:
        self.worktree_path = worktree_path
        self.branch_name = branch_name

    def mark_in_progress(self) -> None:
        self.status = TaskStatus.IN_PROGRESS
        self.error = None

    def mark_iterating(self) -> None:
        self.status = TaskStatus.ITERATING
        self.error = None

    def mark_completed(self) -> None:
        self.status = TaskStatus.COMPLETED

    def mark_failed(self, error: str) -> None:
        self.status = TaskStatus.FAILED
        self.error = error

    def reset_to_new(self) -> None:
        """Return a task whose sandbox never started to the NEW state."""
        self.status = TaskStatus.NEW
        self.container_id = None


class IterationRecord(BaseModel):
    """One attempt at a task."""

    number: int
    task_id: int
    title: str
    description: str = ""
    previous_context: Optional[dict] = Field(
        default=None,
        description="Summary of the attempt this iteration retries",
    )
    created_at: str = Field(default_factory=utc_now)

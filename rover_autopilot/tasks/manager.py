"""Task management: records, workspaces and iterations."""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from ..state.persistence import load_json, save_json
from .models import IterationRecord, TaskRecord, utc_now

logger = logging.getLogger(__name__)


class TaskNotFoundError(Exception):
    """Referenced task does not exist."""

    pass


class TaskManager(ABC):
    """Interface the pipeline uses to create and inspect tasks."""

    @abstractmethod
    def create_task(
        self,
        title: str,
        description: str,
        workflow: str = "swe",
        source_branch: Optional[str] = None,
        source_action_id: Optional[str] = None,
    ) -> TaskRecord:
        """Create and persist a new task in the NEW state."""
        pass

    @abstractmethod
    def get_task(self, task_id: int) -> Optional[TaskRecord]:
        """Get a task with its latest status, or None."""
        pass

    @abstractmethod
    def list_tasks(self) -> list[TaskRecord]:
        pass

    @abstractmethod
    def save_task(self, task: TaskRecord) -> None:
        pass

    @abstractmethod
    def find_task_by_source_action(self, action_id: str) -> Optional[TaskRecord]:
        """Find the task created for a workflow action, if any."""
        pass

    @abstractmethod
    def workspace_path(self, task_id: int) -> Path:
        pass

    @abstractmethod
    def iterations_path(self, task_id: int) -> Path:
        pass

    @abstractmethod
    def create_iteration(
        self,
        task: TaskRecord,
        title: str,
        description: str,
        previous_context: Optional[dict] = None,
    ) -> IterationRecord:
        """Record a new iteration and bump the task's iteration count."""
        pass


class FileTaskManager(TaskManager):
    """Task manager storing JSON under ``<data_dir>/projects/<id>/tasks/<n>/``.

    Layout per task::

        description.json          task record
        workspace/                git worktree
        iterations/<k>/iteration.json
        iterations/<k>/status.json  written by the sandboxed agent
        iterations/<k>/summary.md   written by the sandboxed agent
    """

    def __init__(self, tasks_dir: Path):
        """Initialize task manager.

        Args:
            tasks_dir: Directory holding one subdirectory per task
        """
        self.tasks_dir = Path(tasks_dir)

    def _task_dir(self, task_id: int) -> Path:
        return self.tasks_dir / str(task_id)

    def _description_path(self, task_id: int) -> Path:
        return self._task_dir(task_id) / "description.json"

    def _next_id(self) -> int:
        ids = [int(p.name) for p in self.tasks_dir.glob("*") if p.is_dir() and p.name.isdigit()]
        return max(ids, default=0) + 1

    def create_task(
        self,
        title: str,
        description: str,
        workflow: str = "swe",
        source_branch: Optional[str] = None,
        source_action_id: Optional[str] = None,
    ) -> TaskRecord:
        """Create and persist a new task.

        Args:
            title: Task title
            description: Task description
            workflow: Workflow name
            source_branch: Branch the task starts from
            source_action_id: Workflow action that created the task

        Returns:
            The new task
        """
        self.tasks_dir.mkdir(parents=True, exist_ok=True)
        task = TaskRecord(
            id=self._next_id(),
            title=title,
            description=description,
            workflow=workflow,
            source_branch=source_branch,
            source_action_id=source_action_id,
        )
        self.save_task(task)
        logger.info("Created task #%s: %s", task.id, title)
        return task

    def get_task(self, task_id: int) -> Optional[TaskRecord]:
        """Load a task and fold in the sandbox's status report.

        Args:
            task_id: Task identifier

        Returns:
            TaskRecord or None if it does not exist
        """
        data = load_json(self._description_path(task_id))
        if data is None:
            return None

        task = TaskRecord(**data)
        if task.is_active and self._apply_iteration_status(task):
            self.save_task(task)
        return task

    def _apply_iteration_status(self, task: TaskRecord) -> bool:
        """Update task status from the latest iteration's status.json."""
        if task.iterations < 1:
            return False

        status_path = self.iterations_path(task.id) / str(task.iterations) / "status.json"
        report = load_json(status_path)
        if not isinstance(report, dict):
            return False

        status = str(report.get("status", "")).lower()
        if status == "completed":
            task.mark_completed()
            return True
        if status == "failed":
            task.mark_failed(report.get("error") or "Task failed")
            return True
        return False

    def list_tasks(self) -> list[TaskRecord]:
        if not self.tasks_dir.exists():
            return []

        tasks = []
        for path in sorted(self.tasks_dir.glob("*"), key=lambda p: p.name):
            if not path.name.isdigit():
                continue
            task = self.get_task(int(path.name))
            if task is not None:
                tasks.append(task)
        return sorted(tasks, key=lambda t: t.id)

    def save_task(self, task: TaskRecord) -> None:
        task.updated_at = utc_now()
        save_json(task.model_dump(mode="json"), self._description_path(task.id))

    def find_task_by_source_action(self, action_id: str) -> Optional[TaskRecord]:
        for task in self.list_tasks():
            if task.source_action_id == action_id:
                return task
        return None

    def workspace_path(self, task_id: int) -> Path:
        return self._task_dir(task_id) / "workspace"

    def iterations_path(self, task_id: int) -> Path:
        return self._task_dir(task_id) / "iterations"

    def create_iteration(
        self,
        task: TaskRecord,
        title: str,
        description: str,
        previous_context: Optional[dict] = None,
    ) -> IterationRecord:
        """Record a new iteration for a task.

        Args:
            task: Task to iterate (saved with the bumped count)
            title: Iteration title
            description: Instructions for this iteration
            previous_context: Summary of the attempt being retried

        Returns:
            The new iteration

        Raises:
            TaskNotFoundError: If the task was never persisted
        """
        if not self._description_path(task.id).exists():
            raise TaskNotFoundError(f"Task #{task.id} not found")

        task.iterations += 1
        iteration = IterationRecord(
            number=task.iterations,
            task_id=task.id,
            title=title,
            description=description,
            previous_context=previous_context,
        )
        iteration_dir = self.iterations_path(task.id) / str(iteration.number)
        save_json(iteration.model_dump(mode="json"), iteration_dir / "iteration.json")
        self.save_task(task)

        logger.info("Task #%s: iteration %s (%s)", task.id, iteration.number, title)
        return iteration


def active_task_count(manager: TaskManager) -> int:
    """Count IN_PROGRESS and ITERATING tasks.

    Args:
        manager: Task manager to query

    Returns:
        Number of active tasks
    """
    return sum(1 for task in manager.list_tasks() if task.is_active)


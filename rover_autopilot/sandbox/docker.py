"""Docker-backed task sandbox."""

import logging
import os
from pathlib import Path

from ..config.models import SandboxConfig
from ..tasks.manager import TaskManager
from ..tasks.models import TaskRecord
from ..utils.subprocess import SubprocessError, SubprocessManager
from .base import Sandbox, SandboxError

logger = logging.getLogger(__name__)


class DockerSandbox(Sandbox):
    """Runs the agent for a task iteration in a detached container.

    The worktree is mounted at ``/workspace`` and the iteration directory at
    ``/output``, where the agent reports ``status.json`` and ``summary.md``.
    """

    def __init__(
        self,
        task: TaskRecord,
        config: SandboxConfig,
        task_manager: TaskManager,
    ):
        """Initialize sandbox.

        Args:
            task: Task to execute (must have a worktree)
            config: Sandbox configuration
            task_manager: Task manager resolving iteration paths
        """
        super().__init__(task)
        self.config = config
        self.task_manager = task_manager
        self.manager = SubprocessManager(timeout_sec=config.start_timeout_sec)

    @property
    def name(self) -> str:
        return f"rover-task-{self.task.id}-{self.task.iterations}"

    def build_command(self) -> list[str]:
        """Build the ``docker run`` invocation for the current iteration."""
        if not self.task.worktree_path:
            raise SandboxError(f"Task #{self.task.id} has no worktree")

        iteration_dir = self.task_manager.iterations_path(self.task.id) / str(self.task.iterations)
        iteration_dir.mkdir(parents=True, exist_ok=True)

        command = [
            self.config.docker_cli,
            "run",
            "-d",
            "--name",
            self.name,
            "-v",
            f"{Path(self.task.worktree_path).resolve()}:/workspace:Z,rw",
            "-v",
            f"{iteration_dir.resolve()}:/output:Z,rw",
            "-w",
            "/workspace",
        ]
        if hasattr(os, "getuid"):
            command += ["--user", f"{os.getuid()}:{os.getgid()}"]

        command += [
            self.task.agent_image or self.config.image,
            "rover-agent",
            "run",
            f"/workspace/.rover/workflows/{self.task.workflow}.yml",
            "--task-id",
            str(self.task.id),
            "--status-file",
            "/output/status.json",
            "--output",
            "/output",
        ]
        return command

    async def create_and_start(self) -> str:
        """Start the container.

        Returns:
            Container id

        Raises:
            SandboxError: If docker fails or times out
        """
        command = self.build_command()
        try:
            result = await self.manager.run(command)
        except SubprocessError as e:
            raise SandboxError(str(e))

        if result["timed_out"]:
            raise SandboxError(f"Timed out starting sandbox {self.name}")
        if not result["success"]:
            stderr = result["stderr"].strip() or f"exit code {result['exit_code']}"
            raise SandboxError(f"Failed to start sandbox {self.name}: {stderr}")

        container_id = result["stdout"].strip() or self.name
        logger.info("Started sandbox %s for task #%s", container_id[:12], self.task.id)
        return container_id


class DockerSandboxFactory:
    """Callable building a DockerSandbox per task."""

    def __init__(self, config: SandboxConfig, task_manager: TaskManager):
        self.config = config
        self.task_manager = task_manager

    def __call__(self, task: TaskRecord) -> Sandbox:
        return DockerSandbox(task, self.config, self.task_manager)

"""Sandboxed task execution interface."""

from abc import ABC, abstractmethod
from typing import Callable

from ..tasks.models import TaskRecord


class SandboxError(Exception):
    """Sandbox could not be created or started."""

    pass


class Sandbox(ABC):
    """An isolated execution of one task iteration."""

    def __init__(self, task: TaskRecord):
        self.task = task

    @abstractmethod
    async def create_and_start(self) -> str:
        """Create and start the sandbox.

        Returns:
            Container (or sandbox) identifier

        Raises:
            SandboxError: If the sandbox cannot be started
        """
        pass


SandboxFactory = Callable[[TaskRecord], Sandbox]

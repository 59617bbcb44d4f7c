"""Base agent interface."""

from abc import ABC, abstractmethod
from pathlib import Path


class AgentError(Exception):
    """Agent execution error."""

    pass


class AIAgent(ABC):
    """Base agent interface."""

    def __init__(self, config: dict):
        """Initialize agent.

        Args:
            config: Agent configuration dict
        """
        self.config = config

    @abstractmethod
    async def invoke(
        self,
        prompt: str,
        json_output: bool = False,
        cwd: Path | None = None,
        system_prompt: str | None = None,
    ) -> str:
        """Send a one-shot prompt to the agent.

        Args:
            prompt: Prompt text
            json_output: Ask the agent for JSON output
            cwd: Working directory for the agent process
            system_prompt: Optional system prompt

        Returns:
            Agent response text

        Raises:
            AgentError: On execution failure
        """
        pass

    @abstractmethod
    async def generate_commit_message(
        self,
        title: str,
        description: str,
        recent_commits: list[str],
        summaries: list[str],
    ) -> str | None:
        """Suggest a one-line commit message.

        Args:
            title: Task title
            description: Task description
            recent_commits: Recent commit subjects, for style
            summaries: Iteration summaries describing the change

        Returns:
            Commit message, or None if the agent had nothing usable
        """
        pass

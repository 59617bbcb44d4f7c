"""Claude Code CLI agent wrapper."""

import json
import logging
import os
from pathlib import Path

from ..utils.subprocess import SubprocessError, SubprocessManager
from .base import AgentError, AIAgent

logger = logging.getLogger(__name__)


COMMIT_MESSAGE_PROMPT = """You are writing a git commit message for changes made by an AI agent.

Task title: {title}

Task description:
{description}

Summaries of the work done:
{summaries}

Recent commit messages in this repository (match their style):
{recent_commits}

Reply with a single line: the commit subject, at most 72 characters.
No quotes, no explanation, no trailing period."""


class ClaudeAgent(AIAgent):
    """Claude Code CLI agent implementation (``claude -p``)."""

    def __init__(self, config: dict):
        """Initialize Claude agent.

        Args:
            config: Agent config with cli_path, timeout_sec,
                commit_message_timeout_sec, permission_mode
        """
        super().__init__(config)
        self.cli_path = config.get("cli_path", "claude")
        self.timeout_sec = config.get("timeout_sec", 300)
        self.commit_message_timeout_sec = config.get("commit_message_timeout_sec", 60)
        self.permission_mode = config.get("permission_mode", "bypassPermissions")

    def _build_command(self, json_output: bool, system_prompt: str | None) -> list[str]:
        command = [self.cli_path, "--print", "--permission-mode", self.permission_mode]
        if json_output:
            command += ["--output-format", "json"]
        if system_prompt:
            command += ["--append-system-prompt", system_prompt]
        return command

    @staticmethod
    def _unwrap_json_envelope(output: str) -> str:
        """Return the ``result`` text of a ``--output-format json`` envelope."""
        try:
            envelope = json.loads(output)
        except json.JSONDecodeError:
            return output
        if isinstance(envelope, dict) and isinstance(envelope.get("result"), str):
            if envelope.get("is_error"):
                raise AgentError(f"Claude reported an error: {envelope['result'][:500]}")
            return envelope["result"]
        return output

    async def invoke(
        self,
        prompt: str,
        json_output: bool = False,
        cwd: Path | None = None,
        system_prompt: str | None = None,
        timeout_sec: int | None = None,
    ) -> str:
        """Send a prompt to Claude Code over stdin.

        Args:
            prompt: Prompt text
            json_output: Request the JSON envelope and unwrap it
            cwd: Working directory
            system_prompt: Appended system prompt
            timeout_sec: Override the configured timeout

        Returns:
            Response text

        Raises:
            AgentError: If the CLI is missing, fails or times out
        """
        manager = SubprocessManager(timeout_sec=timeout_sec or self.timeout_sec)
        env = {**os.environ, "CLAUDE_NON_INTERACTIVE": "true"}

        try:
            result = await manager.run(
                self._build_command(json_output, system_prompt),
                cwd=cwd,
                env=env,
                stdin=prompt,
            )
        except SubprocessError as e:
            raise AgentError(f"Claude invocation error: {e}")

        if result["timed_out"]:
            raise AgentError(f"Claude timed out after {manager.timeout_sec}s")
        if not result["success"]:
            detail = result["stderr"].strip() or result["stdout"].strip()
            raise AgentError(f"Claude exited with {result['exit_code']}: {detail[:500]}")

        output = result["stdout"].strip()
        if json_output:
            output = self._unwrap_json_envelope(output)
        return output

    async def generate_commit_message(
        self,
        title: str,
        description: str,
        recent_commits: list[str],
        summaries: list[str],
    ) -> str | None:
        prompt = COMMIT_MESSAGE_PROMPT.format(
            title=title,
            description=description or title,
            summaries="\n\n".join(summaries) or "(none)",
            recent_commits="\n".join(f"- {c}" for c in recent_commits) or "(none)",
        )
        try:
            response = await self.invoke(prompt, timeout_sec=self.commit_message_timeout_sec)
        except AgentError as e:
            logger.warning("Commit message generation failed: %s", e)
            return None

        lines = [line.strip().strip('"') for line in response.split("\n") if line.strip()]
        return lines[0] if lines else None

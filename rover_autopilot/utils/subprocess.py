"""Subprocess management with timeouts."""

import asyncio
import logging
import os
import shlex
import signal
from pathlib import Path

logger = logging.getLogger(__name__)


class SubprocessError(Exception):
    """Subprocess execution error."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        timed_out: bool = False,
    ):
        super().__init__(message)
        self.exit_code = exit_code
        self.timed_out = timed_out


class SubprocessManager:
    """Managed subprocess execution with timeouts."""

    @staticmethod
    async def _terminate_process(
        process: asyncio.subprocess.Process,
        timeout_sec: float = 2.0,
    ) -> None:
        """Terminate a subprocess and its children (best-effort).

        Agent CLIs spawn helpers of their own. On POSIX the process runs in a
        new session so the whole group can be signalled.
        """
        if process.returncode is not None:
            return

        # Try graceful termination first.
        try:
            if os.name != "nt":
                os.killpg(process.pid, signal.SIGTERM)
            else:
                process.terminate()
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(process.wait(), timeout=timeout_sec)
            return
        except asyncio.TimeoutError:
            pass

        # Escalate.
        try:
            if os.name != "nt":
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(process.wait(), timeout=timeout_sec)
        except asyncio.TimeoutError:
            logger.warning("Process %s did not exit after SIGKILL", process.pid)

    def __init__(self, timeout_sec: int):
        """Initialize subprocess manager.

        Args:
            timeout_sec: Hard timeout for process
        """
        self.timeout_sec = timeout_sec

    async def run(
        self,
        command: list[str],
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        stdin: str | None = None,
    ) -> dict:
        """Run command with timeout.

        Args:
            command: Command and arguments
            cwd: Working directory
            env: Environment variables
            stdin: Optional string to write to stdin

        Returns:
            Result dict with keys:
                - success: bool
                - output: str (stdout followed by stderr)
                - stdout: str
                - stderr: str
                - exit_code: int | None
                - timed_out: bool

        Raises:
            SubprocessError: If the process cannot be started
        """
        logger.debug("Running command: %s", self._format_command_for_log(command))

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                env=env,
                start_new_session=(os.name != "nt"),
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            # Either the executable or the cwd is missing; say which.
            if cwd is not None and not Path(cwd).exists():
                raise SubprocessError(
                    f"Working directory not found: {cwd} (while running: {command[0]})"
                )
            raise SubprocessError(f"Command not found: {command[0]}")
        except OSError as e:
            raise SubprocessError(f"Subprocess error: {e}")

        input_bytes = stdin.encode("utf-8") if stdin is not None else None
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(input=input_bytes),
                timeout=self.timeout_sec,
            )
        except asyncio.TimeoutError:
            await self._terminate_process(process)
            logger.warning(
                "Command timed out after %ss: %s",
                self.timeout_sec,
                self._format_command_for_log(command),
            )
            return {
                "success": False,
                "output": "",
                "stdout": "",
                "stderr": f"timed out after {self.timeout_sec}s",
                "exit_code": None,
                "timed_out": True,
            }
        except asyncio.CancelledError:
            # Do not leak the child when the surrounding poll is cancelled.
            await self._terminate_process(process)
            raise

        stdout = stdout_bytes.decode("utf-8", errors="replace") if stdout_bytes else ""
        stderr = stderr_bytes.decode("utf-8", errors="replace") if stderr_bytes else ""
        exit_code = process.returncode

        logger.debug("Command completed: exit_code=%s", exit_code)

        return {
            "success": exit_code == 0,
            "output": stdout + stderr,
            "stdout": stdout,
            "stderr": stderr,
            "exit_code": exit_code,
            "timed_out": False,
        }

    @staticmethod
    def _format_command_for_log(command: list[str]) -> str:
        """Format a command for logs without dumping huge prompts."""
        if not command:
            return ""

        parts: list[str] = []
        max_args = 12
        max_arg_len = 200
        for i, arg in enumerate(command):
            if i >= max_args:
                parts.append("...")
                break
            if len(arg) > max_arg_len:
                arg = f"<{len(arg)} chars>"
            parts.append(shlex.quote(arg))
        return " ".join(parts)

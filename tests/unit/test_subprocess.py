"""Unit tests for SubprocessManager."""

import sys

import pytest

from rover_autopilot.utils.subprocess import SubprocessError, SubprocessManager


@pytest.mark.asyncio
async def test_run_captures_output(tmp_path):
    """Test stdout, stderr and exit code are captured."""
    manager = SubprocessManager(timeout_sec=30)
    script = "import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)"

    result = await manager.run([sys.executable, "-c", script], cwd=tmp_path)

    assert result["success"] is False
    assert result["exit_code"] == 3
    assert result["stdout"].strip() == "out"
    assert result["stderr"].strip() == "err"
    assert result["timed_out"] is False


@pytest.mark.asyncio
async def test_run_passes_stdin():
    """Test stdin is written to the process."""
    manager = SubprocessManager(timeout_sec=30)
    script = "import sys; print(sys.stdin.read().upper())"

    result = await manager.run([sys.executable, "-c", script], stdin="a 'quoted' prompt")

    assert result["success"] is True
    assert result["stdout"].strip() == "A 'QUOTED' PROMPT"


@pytest.mark.asyncio
async def test_run_times_out():
    """Test a hung process is killed and reported as timed out."""
    manager = SubprocessManager(timeout_sec=0.5)

    result = await manager.run([sys.executable, "-c", "import time; time.sleep(30)"])

    assert result["timed_out"] is True
    assert result["success"] is False
    assert result["exit_code"] is None


@pytest.mark.asyncio
async def test_missing_command():
    """Test a missing executable raises SubprocessError."""
    manager = SubprocessManager(timeout_sec=5)

    with pytest.raises(SubprocessError, match="Command not found"):
        await manager.run(["rover-no-such-binary"])


@pytest.mark.asyncio
async def test_missing_cwd(tmp_path):
    """Test a missing working directory is reported as such."""
    manager = SubprocessManager(timeout_sec=5)

    with pytest.raises(SubprocessError, match="Working directory not found"):
        await manager.run([sys.executable, "-c", "pass"], cwd=tmp_path / "missing")


def test_format_command_truncates_long_args():
    """Test huge arguments are elided in log output."""
    formatted = SubprocessManager._format_command_for_log(["claude", "x" * 500])
    assert formatted == "claude '<500 chars>'"

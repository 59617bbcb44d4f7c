"""Copy untracked environment files into task worktrees."""

import logging
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


def copy_environment_files(
    source_root: Path,
    worktree: Path,
    names: list[str] | None = None,
) -> list[Path]:
    """Copy environment files that git does not carry into a worktree.

    Args:
        source_root: Repository root holding the files
        worktree: Destination worktree
        names: File names to copy (defaults to every top-level ``.env*`` file)

    Returns:
        Paths of the copied files inside the worktree
    """
    if names:
        candidates = [source_root / name for name in names]
    else:
        candidates = sorted(source_root.glob(".env*"))

    copied: list[Path] = []
    for source in candidates:
        if not source.is_file():
            continue
        target = worktree / source.name
        if target.exists():
            continue
        try:
            shutil.copy2(source, target)
        except OSError as e:
            logger.warning("Could not copy %s into %s: %s", source.name, worktree, e)
            continue
        copied.append(target)

    if copied:
        logger.debug("Copied %s environment file(s) into %s", len(copied), worktree)
    return copied

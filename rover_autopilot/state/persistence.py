"""JSON persistence with atomic writes."""

import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def save_json(data: Any, path: Path) -> None:
    """Save JSON to file with atomic write.

    Args:
        data: JSON-serializable data
        path: Destination path
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    # Atomic write: temp file -> fsync -> rename
    temp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    with open(temp_path, "w") as f:
        json.dump(data, f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    temp_path.replace(path)


def load_json(path: Path, default: Any = None) -> Any:
    """Load JSON from file.

    Args:
        path: Source path
        default: Returned when the file is missing or unreadable

    Returns:
        Parsed data or default
    """
    if not path.exists():
        return default

    try:
        with open(path, "r") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Ignoring unreadable file %s: %s", path, e)
        return default


def create_json(data: Any, path: Path) -> None:
    """Write a JSON file that must not already exist.

    Args:
        data: JSON-serializable data
        path: Destination path

    Raises:
        FileExistsError: If path already exists
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "x") as f:
        json.dump(data, f, indent=2)

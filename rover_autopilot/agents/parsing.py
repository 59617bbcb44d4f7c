"""Extract JSON objects from free-form agent output."""

import json
from typing import Iterable

from .base import AgentError


def find_json_objects(output: str) -> list[dict]:
    """Decode every top-level JSON object embedded in text.

    Args:
        output: Agent output (may mix prose, code fences and JSON)

    Returns:
        Parsed dicts in order of appearance
    """
    decoder = json.JSONDecoder()
    candidates: list[dict] = []
    idx = output.find("{")
    while idx >= 0:
        try:
            parsed, end = decoder.raw_decode(output[idx:])
            if isinstance(parsed, dict):
                candidates.append(parsed)
            idx = output.find("{", idx + end)
        except json.JSONDecodeError:
            idx = output.find("{", idx + 1)
    return candidates


def parse_json_response(output: str, required_keys: Iterable[str] = ()) -> dict:
    """Parse the agent's JSON answer.

    Prefers the most recent object carrying all ``required_keys`` and falls
    back to the last object found.

    Args:
        output: Agent output
        required_keys: Keys a well-formed answer must have

    Returns:
        Parsed dict

    Raises:
        AgentError: If the output holds no JSON object
    """
    candidates = find_json_objects(output)
    required = set(required_keys)

    for candidate in reversed(candidates):
        if required.issubset(candidate.keys()):
            return candidate

    if candidates:
        return candidates[-1]

    raise AgentError("No JSON found in agent output")

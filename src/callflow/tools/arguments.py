"""
Parsing of streamed tool-call arguments.

Providers occasionally stream the argument payload twice, producing
`{"a": 1}{"a": 1}`. When the first parse fails and more than one object
opener is present, the text up to the first closing brace is retried.
This only recovers flat duplicated objects; anything else still fails.
"""

import json
from typing import Any, Dict

import structlog

from src.callflow.errors import ToolArgumentsError

logger = structlog.get_logger(__name__)


def parse_tool_arguments(raw: str) -> Dict[str, Any]:
    """Parse the accumulated argument string into a dict, or raise ToolArgumentsError."""
    text = (raw or "").strip()
    if not text:
        # Tools without parameters may stream no arguments at all.
        return {}

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        if text.find("{") == text.rfind("{"):
            raise ToolArgumentsError(f"Invalid tool arguments: {e}", raw_arguments=raw) from e

        logger.warning("Duplicated tool arguments returned by model", arguments=text)
        try:
            parsed = json.loads(text[: text.find("}") + 1])
        except json.JSONDecodeError as retry_error:
            raise ToolArgumentsError(
                f"Invalid tool arguments after duplicate recovery: {retry_error}",
                raw_arguments=raw,
            ) from retry_error

    if not isinstance(parsed, dict):
        raise ToolArgumentsError("Tool arguments must be a JSON object", raw_arguments=raw)
    return parsed

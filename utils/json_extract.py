"""
Defensive JSON extraction from model output.

Models wrap JSON in prose and code fences often enough that every structured
call goes through here.
"""

import json
import logging
import re
from typing import Any, Dict

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_decoder = json.JSONDecoder()


def _first_balanced_object(text: str) -> Any:
    """Decode the first top-level JSON object that parses, scanning left to right."""
    start = text.find("{")
    while start != -1:
        try:
            value, _ = _decoder.raw_decode(text, start)
            return value
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
    raise ValueError("no JSON object found")


def extract_json(text: str) -> Dict[str, Any]:
    """
    Extract a JSON object from a model response.

    Order: the whole text, then fenced code blocks, then the first balanced
    object anywhere in the text.

    Raises:
        ValueError if nothing in the text decodes to a JSON object.
    """
    if text is None:
        raise ValueError("empty response")

    stripped = text.strip()
    try:
        value = json.loads(stripped)
        if isinstance(value, dict):
            return value
    except json.JSONDecodeError:
        pass

    for block in _FENCE_RE.findall(stripped):
        try:
            value = _first_balanced_object(block)
            if isinstance(value, dict):
                return value
        except ValueError:
            continue

    value = _first_balanced_object(stripped)
    if not isinstance(value, dict):
        raise ValueError("JSON value is not an object")
    logger.debug("Extracted JSON object embedded in surrounding text")
    return value

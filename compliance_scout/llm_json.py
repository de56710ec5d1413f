"""
Parsing helpers for JSON embedded in LLM responses.

LLM output is untrusted text. Every call site goes through `parse_or_fallback`:
strict parse of the full response, then the outermost bracket/brace-delimited
substring, then a deterministic fallback.
"""
import json
import re
from typing import Any, Callable, Optional, Type, TypeVar

from loguru import logger

from compliance_scout.errors import AuthenticationError

T = TypeVar("T")

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_DELIMITERS = {list: ("[", "]"), dict: ("{", "}")}


def _strip_fences(text: str) -> str:
    match = _FENCE_RE.search(text)
    return match.group(1).strip() if match else text.strip()


def extract_json(text: Optional[str], shape: Type = list) -> Optional[Any]:
    """
    Extract a JSON value of the given shape from LLM text.

    Args:
        text (str): Raw model response.
        shape (type): `list` or `dict`.

    Returns:
        The parsed value, or None if no value of that shape could be parsed.
    """
    if not text:
        return None
    candidate = _strip_fences(text)
    try:
        parsed = json.loads(candidate)
        if isinstance(parsed, shape):
            return parsed
    except json.JSONDecodeError:
        pass

    open_char, close_char = _DELIMITERS[shape]
    start = candidate.find(open_char)
    end = candidate.rfind(close_char)
    if start == -1 or end <= start:
        return None
    try:
        parsed = json.loads(candidate[start:end + 1])
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, shape) else None


def parse_or_fallback(
    text: Optional[str],
    build: Callable[[Any], T],
    fallback: Callable[[], T],
    shape: Type = list,
    context: str = "LLM response",
) -> T:
    """
    Parse `text` and convert it with `build`, or return `fallback()`.

    Args:
        text: Raw model response (None when the call produced nothing).
        build: Converts the parsed JSON value into the caller's result.
        fallback: Deterministic producer used when parsing or building fails.
        shape: Expected top-level JSON type (`list` or `dict`).
        context: Label used in log lines.

    Returns:
        build(parsed) on success, otherwise fallback().
    """
    parsed = extract_json(text, shape)
    if parsed is None:
        snippet = (text or "")[:200].replace("\n", " ")
        logger.warning(f"⚠️ Unparseable {context}, using fallback. Response was: {snippet!r}")
        return fallback()
    try:
        return build(parsed)
    except (ValueError, KeyError, TypeError, IndexError, AttributeError) as e:
        logger.warning(f"⚠️ Malformed {context} ({e}), using fallback")
        return fallback()


async def complete_or_none(client, prompt: str, context: str = "LLM call") -> Optional[str]:
    """
    Ask the LLM, turning any non-fatal failure into None so callers fall back.

    Authentication failures are fatal for the run and propagate.
    """
    try:
        return await client.complete(prompt)
    except AuthenticationError:
        raise
    except Exception as e:
        logger.warning(f"⚠️ {context} failed: {e}")
        return None

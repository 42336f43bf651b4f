"""
OpenAI LLM helpers — shared by goal planning and clarification.
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any

from openai import OpenAI, RateLimitError

import config

log = logging.getLogger(__name__)

_client: OpenAI | None = None


def get_client() -> OpenAI:
    global _client
    if _client is None:
        _client = OpenAI(api_key=config.OPENAI_API_KEY)
    return _client


MAX_RETRIES = 5
BASE_DELAY = 10  # seconds


def generate_response(
    messages: list[dict],
    model: str | None = None,
    json_mode: bool = False,
    temperature: float = 0.3,
    max_tokens: int = 4096,
) -> str:
    """Send a chat completion request and return the assistant message.

    Retries up to MAX_RETRIES times on rate limit (429) errors with
    exponential backoff.
    """
    client = get_client()
    kwargs: dict = {
        "model": model or config.OPENAI_MODEL,
        "messages": messages,
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}

    for attempt in range(MAX_RETRIES):
        try:
            resp = client.chat.completions.create(**kwargs)
            return resp.choices[0].message.content or ""
        except RateLimitError as e:
            delay = BASE_DELAY * (2 ** attempt)
            log.warning(
                "Rate limited (attempt %d/%d), retrying in %ds: %s",
                attempt + 1, MAX_RETRIES, delay, e,
            )
            if attempt == MAX_RETRIES - 1:
                raise
            time.sleep(delay)

    return ""


_FENCE_RE = re.compile(r"^\s*```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


def strip_code_fences(text: str) -> str:
    match = _FENCE_RE.match(text or "")
    return match.group(1) if match else (text or "")


def _first_balanced_object(text: str) -> str | None:
    """Return the first balanced {...} substring, ignoring braces inside strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(text)):
            ch = text[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:idx + 1]
        start = text.find("{", start + 1)
    return None


def extract_json_object(text: Any) -> dict | None:
    """Parse a JSON object out of possibly-fenced, possibly prose-wrapped text.

    Returns None instead of raising when nothing parseable is found.
    """
    if not isinstance(text, str) or not text.strip():
        return None

    cleaned = strip_code_fences(text.strip()).strip()
    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    candidate = _first_balanced_object(cleaned)
    if candidate is None:
        return None
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        log.debug("Could not recover JSON object from LLM text: %s", cleaned[:200])
        return None
    return parsed if isinstance(parsed, dict) else None

"""Best-effort extraction of one JSON value from raw model output.

Model output that is *supposed* to be JSON arrives wrapped in code fences,
surrounded by prose, sprinkled with // comments and trailing commas, and —
the one structural defect seen often enough to special-case — with a bare run
of objects or strings where an array was expected:

    "codex_update": {"id": "a"}, {"id": "b"}      →  "codex_update": [{...}, {...}]
    "inventory_add": "Rope", "Torch"               →  "inventory_add": ["Rope", "Torch"]
    "codex_update": [[{"id": "a"}]]                →  "codex_update": [{"id": "a"}]

Repairs are limited to the keys in ARRAY_KEYS. Anything still unparseable
raises StructuredOutputError carrying the repaired text; no value is guessed.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

ARRAY_KEYS: tuple[str, ...] = (
    "inventory_add",
    "inventory_remove",
    "custom_stats_update",
    "quest_update",
    "codex_update",
    "combat_data",
    "suggestions",
    "tags",
    "relations",
)

_FENCE_RE = re.compile(r"```[\w-]*[ \t]*\n?(.*?)```", re.DOTALL)
_LEADING_KEY_RE = re.compile(r'"[\w-]+"\s*:')


class StructuredOutputError(ValueError):
    """Raised when model output cannot be turned into JSON, even after repair."""

    def __init__(self, message: str, text: str) -> None:
        super().__init__(message)
        self.text = text


def extract_json(raw_text: str) -> Any:
    """Parse the JSON value embedded in raw_text, repairing known defects."""
    candidate = _isolate(_strip_fence(raw_text or ""))
    if candidate is None:
        raise StructuredOutputError("No JSON object or array found in output", raw_text or "")

    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass

    cleaned = _strip_trailing_commas(_strip_comments(candidate))
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as first_error:
        repaired = _strip_trailing_commas(_repair_arrays(cleaned))
        try:
            data = json.loads(repaired)
        except json.JSONDecodeError as e:
            raise StructuredOutputError(f"Unparseable structured output: {e}", repaired) from e
        logger.info("Repaired malformed JSON (%s)", first_error.msg)
        return data


# ---------------------------------------------------------------------------
# Isolation
# ---------------------------------------------------------------------------

def _strip_fence(text: str) -> str:
    match = _FENCE_RE.search(text)
    return match.group(1) if match else text


def _isolate(text: str) -> str | None:
    """Cut the span from the first opening bracket to the last closing one.

    A fragment that starts with a bare `"key":` (no enclosing object) is
    wrapped in braces so the key survives.
    """
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    ends = [i for i in (text.rfind("}"), text.rfind("]")) if i != -1]
    if not starts or not ends:
        return None
    start, end = min(starts), max(ends)

    key = _LEADING_KEY_RE.search(text)
    if key and key.start() < start:
        head = text[: key.start()]
        if not head.strip():
            return "{" + text[key.start(): end + 1] + "}"

    if end < start:
        return None
    return text[start: end + 1]


# ---------------------------------------------------------------------------
# Cleaning
# ---------------------------------------------------------------------------

def _strip_comments(text: str) -> str:
    """Remove // line comments that sit outside string literals."""
    out: list[str] = []
    i, n = 0, len(text)
    in_string = False
    while i < n:
        ch = text[i]
        if in_string:
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(text[i + 1])
                i += 2
                continue
            if ch == '"':
                in_string = False
            i += 1
            continue
        if ch == '"':
            in_string = True
            out.append(ch)
            i += 1
            continue
        if ch == "/" and text.startswith("//", i):
            while i < n and text[i] != "\n":
                i += 1
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def _strip_trailing_commas(text: str) -> str:
    """Drop commas directly before a closing bracket, outside string literals."""
    out: list[str] = []
    i, n = 0, len(text)
    in_string = False
    while i < n:
        ch = text[i]
        if in_string:
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(text[i + 1])
                i += 2
                continue
            if ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
            out.append(ch)
        elif ch == ",":
            j = _skip_ws(text, i + 1)
            if j >= n or text[j] not in "}]":
                out.append(ch)
        else:
            out.append(ch)
        i += 1
    return "".join(out)


# ---------------------------------------------------------------------------
# Array repairs
# ---------------------------------------------------------------------------

def _value_end(text: str, i: int) -> int:
    """Return the index just past the JSON object, array or string starting at i.

    Returns -1 if the value is unterminated.
    """
    opener = text[i]
    if opener == '"':
        j = i + 1
        while j < len(text):
            if text[j] == "\\":
                j += 2
                continue
            if text[j] == '"':
                return j + 1
            j += 1
        return -1

    depth = 0
    in_string = False
    j = i
    while j < len(text):
        ch = text[j]
        if in_string:
            if ch == "\\":
                j += 2
                continue
            if ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
            if depth == 0:
                return j + 1
        j += 1
    return -1


def _skip_ws(text: str, i: int) -> int:
    while i < len(text) and text[i].isspace():
        i += 1
    return i


def _bare_run_end(text: str, start: int) -> int | None:
    """If a run of 2+ comma-separated values starts at `start`, return its end."""
    kind = text[start]
    end = _value_end(text, start)
    if end == -1:
        return None
    count = 1
    while True:
        j = _skip_ws(text, end)
        if j >= len(text) or text[j] != ",":
            break
        k = _skip_ws(text, j + 1)
        if k >= len(text) or text[k] != kind:
            break
        nxt = _value_end(text, k)
        if nxt == -1:
            break
        # A string followed by ':' is the next key, not another element.
        if kind == '"' and text[_skip_ws(text, nxt): _skip_ws(text, nxt) + 1] == ":":
            break
        end = nxt
        count += 1
    return end if count > 1 else None


def _repair_arrays(text: str) -> str:
    keys = "|".join(re.escape(k) for k in ARRAY_KEYS)
    key_re = re.compile(rf'"(?:{keys})"\s*:\s*')

    pos = 0
    while True:
        match = key_re.search(text, pos)
        if match is None:
            return text
        start = match.end()
        if start >= len(text):
            return text
        ch = text[start]

        if ch in '{"':
            run_end = _bare_run_end(text, start)
            if run_end is not None:
                text = text[:start] + "[" + text[start:run_end] + "]" + text[run_end:]
                pos = run_end + 2
                continue

        elif ch == "[":
            inner = _skip_ws(text, start + 1)
            if inner < len(text) and text[inner] == "[":
                inner_end = _value_end(text, inner)
                outer_end = _value_end(text, start)
                if inner_end != -1 and outer_end != -1 and _skip_ws(text, inner_end) == outer_end - 1:
                    text = text[:start] + text[inner:inner_end] + text[outer_end:]

        pos = start + 1

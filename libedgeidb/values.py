"""Value codec for IndexedDB record blobs.

Chromium wraps values in the V8 structured-clone format. Implementing that
format is out of scope; instead the blob is searched for JSON:

1. The whole blob, when its text starts with ``{`` or ``[``
2. The first balanced ``{...}``/``[...]`` substring that parses as JSON
3. Otherwise the blob is kept as opaque bytes

Nothing in this module raises on bad input.
"""

from __future__ import annotations

import json
from typing import Any, Iterator, Optional, Tuple

from .models import DecodedValue, ValueKind

# Upper bound on substring candidates tried per value.
MAX_CANDIDATES = 64

_OPENERS = {"{": "}", "[": "]"}


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant: {name}")


def parse_json_strict(text: str) -> Tuple[bool, Any]:
    """Parse text as standard JSON.

    Returns:
        Tuple of (ok, value). NaN and Infinity literals are rejected.
    """
    try:
        return True, json.loads(text, parse_constant=_reject_constant)
    except (ValueError, RecursionError):
        return False, None


def _matching_close(text: str, start: int) -> Optional[int]:
    """Find the index of the bracket closing the one at ``start``.

    Brackets inside JSON string literals are ignored.
    """
    stack = [_OPENERS[text[start]]]
    in_string = False
    escaped = False

    for index in range(start + 1, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char in _OPENERS:
            stack.append(_OPENERS[char])
        elif char in ("}", "]"):
            if char != stack[-1]:
                return None
            stack.pop()
            if not stack:
                return index
    return None


def iter_json_candidates(text: str) -> Iterator[str]:
    """Yield balanced-looking bracketed substrings in order of position.

    At most MAX_CANDIDATES opening brackets are examined.
    """
    tried = 0
    for start, char in enumerate(text):
        if char not in _OPENERS:
            continue
        if tried >= MAX_CANDIDATES:
            return
        tried += 1
        end = _matching_close(text, start)
        if end is not None:
            yield text[start : end + 1]


def decode_value(raw_value: bytes) -> DecodedValue:
    """Recover a structured value from a raw blob.

    Args:
        raw_value: Value bytes exactly as stored in the source LevelDB

    Returns:
        STRUCTURED with the parsed JSON, or OPAQUE with ``raw_value``
    """
    raw_value = bytes(raw_value)
    text = raw_value.decode("utf-8", errors="replace")

    if text.startswith(("{", "[")):
        ok, data = parse_json_strict(text)
        if ok:
            return DecodedValue(kind=ValueKind.STRUCTURED, data=data, raw=raw_value)

    for candidate in iter_json_candidates(text):
        ok, data = parse_json_strict(candidate)
        if ok:
            return DecodedValue(
                kind=ValueKind.STRUCTURED,
                data=data,
                raw=raw_value,
                from_envelope=True,
            )

    return DecodedValue(kind=ValueKind.OPAQUE, raw=raw_value)


class ValueCodec:
    """Injectable wrapper around decode_value."""

    def decode(self, raw_value: bytes) -> DecodedValue:
        return decode_value(raw_value)

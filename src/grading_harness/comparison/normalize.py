"""Text normalization helpers for fuzzy comparison.

``normalize_text`` removes the differences that should never fail a grade:
byte-order marks, escaped unicode, typographic quotes and dashes, JSON
formatting and key order, line endings, exotic whitespace, indentation,
runs of spaces, and (optionally) letter case.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Optional

from ..errors import ComparisonError, ErrorCode

DIFF_CONTEXT = 24

_UNICODE_ESCAPE = re.compile(r"\\u([0-9A-Fa-f]{4})")
_SPACE_RUN = re.compile(r" {2,}")
_BLANK_LINE_RUN = re.compile(r"\n{3,}")
_ALL_WHITESPACE = re.compile(r"\s+")
_STATUS_PREFIX = re.compile(r"^(\d{3})(?!\d)")
_NON_LETTERS = re.compile(r"[^A-Z]")

_TYPOGRAPHIC = str.maketrans({
    "\u2018": "'",
    "\u2019": "'",
    "\u201c": '"',
    "\u201d": '"',
    "\u2013": "-",
    "\u2014": "-",
})

_SPACE_VARIANTS = str.maketrans({
    "\t": " ",
    "\u00a0": " ",
    "\u2002": " ",
    "\u2003": " ",
    "\u2009": " ",
    "\u200a": " ",
    "\u202f": " ",
    "\u205f": " ",
    "\u3000": " ",
})

_AGGRESSIVE_PUNCTUATION = str.maketrans("", "", ",.:;")


def parse_json(text: str) -> Any:
    """Parse JSON, tolerating a byte-order mark and surrounding whitespace."""
    try:
        return json.loads(text.lstrip("\ufeff").strip())
    except ValueError as exc:
        raise ComparisonError(f"Invalid JSON: {exc}", code=ErrorCode.JSON_INVALID) from exc


def canonical_json(value: Any, *, sort_arrays: bool = False) -> str:
    """Compact JSON with sorted keys and, optionally, sorted arrays.

    Array elements are sorted by their own canonical form so that nested
    objects compare independently of order too.
    """
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: kv[0])
        body = ",".join(
            f"{json.dumps(k, ensure_ascii=False)}:{canonical_json(v, sort_arrays=sort_arrays)}"
            for k, v in items
        )
        return "{" + body + "}"
    if isinstance(value, list):
        parts = [canonical_json(v, sort_arrays=sort_arrays) for v in value]
        if sort_arrays:
            parts.sort()
        return "[" + ",".join(parts) + "]"
    return json.dumps(value, ensure_ascii=False)


def _maybe_canonical_json(text: str) -> str:
    stripped = text.strip()
    if stripped[:1] not in ("{", "["):
        return text
    try:
        value = json.loads(stripped)
    except ValueError:
        return text
    return canonical_json(value)


def _decode_unicode_escapes(text: str) -> str:
    """Expand ``\\uXXXX`` escapes, joining surrogate pairs into one character.

    Unpaired surrogates become U+FFFD so the result always encodes as UTF-8.
    """
    decoded = _UNICODE_ESCAPE.sub(lambda m: chr(int(m.group(1), 16)), text)
    return decoded.encode("utf-16", "surrogatepass").decode("utf-16", "replace")


def normalize_text(text: Optional[str], *, case_insensitive: bool = True) -> str:
    if not text or not text.strip():
        return ""

    s = text.replace("\ufeff", "")
    s = _decode_unicode_escapes(s)
    s = s.translate(_TYPOGRAPHIC)
    s = _maybe_canonical_json(s)
    s = s.replace("\r\n", "\n").replace("\r", "\n")
    s = s.translate(_SPACE_VARIANTS)
    s = "\n".join(_SPACE_RUN.sub(" ", line.strip()) for line in s.split("\n"))
    s = _BLANK_LINE_RUN.sub("\n\n", s).strip()
    return s.lower() if case_insensitive else s


def strip_aggressive(text: str) -> str:
    """Remove all whitespace and the punctuation ``, . : ;``."""
    return _ALL_WHITESPACE.sub("", text).translate(_AGGRESSIVE_PUNCTUATION)


@dataclass(frozen=True, slots=True)
class Difference:
    index: int
    expected_excerpt: str
    actual_excerpt: str


def first_difference(expected: str, actual: str, context: int = DIFF_CONTEXT) -> Optional[Difference]:
    """Index of the first diverging character, with excerpts; None if equal.

    When one string is a prefix of the other the index is the shorter length.
    """
    if expected == actual:
        return None
    limit = min(len(expected), len(actual))
    index = next((i for i in range(limit) if expected[i] != actual[i]), limit)
    start = max(0, index - context)
    return Difference(
        index=index,
        expected_excerpt=expected[start:start + context * 2],
        actual_excerpt=actual[start:start + context * 2],
    )


def _status_table() -> dict[str, int]:
    table: dict[str, int] = {}
    for status in HTTPStatus:
        table[_NON_LETTERS.sub("", status.name)] = status.value
        table[_NON_LETTERS.sub("", status.phrase.upper())] = status.value
    return table


_STATUS_BY_NAME = _status_table()


def status_class(value: Any) -> str:
    """Equivalence class for an HTTP status in numeric or phrase form.

    ``200``, ``"200"``, ``"200 OK"``, ``"OK"`` all map to ``"200"``;
    ``"NotFound"`` and ``"Not Found"`` map to ``"404"``. Unrecognised
    values map to their upper-cased text.
    """
    text = str(value).strip()
    match = _STATUS_PREFIX.match(text)
    if match:
        return str(int(match.group(1)))
    key = _NON_LETTERS.sub("", text.upper())
    code = _STATUS_BY_NAME.get(key)
    return str(code) if code is not None else text.upper()

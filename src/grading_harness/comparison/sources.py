"""Where the actual value of an assertion comes from.

A step's actual-value reference is resolved once into one of three variants:

- ``CaptureSource``: a ``capture://scope/question/stage`` address.
- ``FileSource``: an absolute path or a string containing a backslash.
- ``LiteralSource``: anything else, used verbatim.

A reference starting with ``{`` or ``[`` is always literal JSON, even when it
contains path-like characters (URLs, dates with slashes).
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from ..capture import CAPTURE_SCHEME, CaptureKey
from ..errors import ConfigurationError, ErrorCode

_WINDOWS_DRIVE = re.compile(r"^[A-Za-z]:[\\/]")


@dataclass(frozen=True, slots=True)
class CaptureSource:
    key: CaptureKey

    def describe(self) -> str:
        return (
            f"{self.key.scope.label} for question {self.key.question_code} "
            f"stage {self.key.stage}"
        )


@dataclass(frozen=True, slots=True)
class FileSource:
    path: Path

    def describe(self) -> str:
        return f"file {self.path.name}"


@dataclass(frozen=True, slots=True)
class LiteralSource:
    text: str

    def describe(self) -> str:
        return "inline value"


ActualSource = Union[CaptureSource, FileSource, LiteralSource]


def looks_like_path(text: str) -> bool:
    stripped = text.strip()
    if stripped.startswith(("{", "[")):
        return False
    return (
        os.path.isabs(stripped)
        or "\\" in stripped
        or bool(_WINDOWS_DRIVE.match(stripped))
    )


def resolve_reference(raw: Optional[str]) -> Optional[ActualSource]:
    """Resolve an actual-value reference; None for a blank reference."""
    if raw is None or not raw.strip():
        return None
    text = raw.strip()
    if text.lower().startswith(CAPTURE_SCHEME):
        key = CaptureKey.parse(text)
        if key is None:
            raise ConfigurationError(
                f"Malformed capture reference: {text!r}",
                code=ErrorCode.STEP_PARSE_ERROR,
            )
        return CaptureSource(key)
    if looks_like_path(text):
        return FileSource(Path(text))
    return LiteralSource(raw)


def load_expected(raw: Optional[str]) -> str:
    """Expected values name a fixture file when one exists, else are literal."""
    if raw is None:
        return ""
    text = raw.strip()
    if _may_name_file(text):
        path = Path(text)
        if path.is_file():
            return path.read_text(encoding="utf-8", errors="replace")
    return raw


def _may_name_file(text: str) -> bool:
    return (
        bool(text)
        and "\n" not in text
        and len(text) < 260
        and not text.startswith(("{", "["))
    )

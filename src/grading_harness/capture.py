"""Namespaced in-memory ledger for captured console output and HTTP traffic.

Captured text lives under a ``CaptureKey`` (scope, question code, stage).
Scopes are disjoint namespaces: writing intercepted request bodies under
``servers-req`` never touches the ``servers`` console capture for the same
question and stage.

Keys are addressed as ``capture://<scope>/<question>/<stage>``. Matching is
case-insensitive; a blank question code becomes ``Unknown`` and a blank stage
becomes ``0``.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional

CAPTURE_SCHEME = "capture://"
UNKNOWN_QUESTION = "Unknown"
DEFAULT_STAGE = "0"


class Scope(str, Enum):
    CLIENTS = "clients"
    SERVERS = "servers"
    SERVERS_REQUEST = "servers-req"
    SERVERS_RESPONSE = "servers-resp"

    @property
    def is_console(self) -> bool:
        return self in (Scope.CLIENTS, Scope.SERVERS)

    @property
    def label(self) -> str:
        """Human-readable name used in step messages."""
        return _SCOPE_LABELS[self]


_SCOPE_LABELS = {
    Scope.CLIENTS: "client output",
    Scope.SERVERS: "server output",
    Scope.SERVERS_REQUEST: "intercepted request",
    Scope.SERVERS_RESPONSE: "intercepted response",
}


def _clean_question(question_code: Optional[str]) -> str:
    text = (question_code or "").strip()
    return text or UNKNOWN_QUESTION


def _clean_stage(stage: Optional[str]) -> str:
    text = str(stage if stage is not None else "").strip()
    return text or DEFAULT_STAGE


@dataclass(frozen=True, slots=True)
class CaptureKey:
    scope: Scope
    question_code: str
    stage: str

    @classmethod
    def of(cls, scope: Scope, question_code: Optional[str], stage: Optional[str]) -> CaptureKey:
        return cls(scope, _clean_question(question_code), _clean_stage(stage))

    @classmethod
    def parse(cls, address: str) -> Optional[CaptureKey]:
        """Parse ``capture://scope/question/stage``; None if not a capture key."""
        text = (address or "").strip()
        if not text.lower().startswith(CAPTURE_SCHEME):
            return None
        parts = text[len(CAPTURE_SCHEME):].split("/")
        if len(parts) != 3:
            return None
        try:
            scope = Scope(parts[0].strip().lower())
        except ValueError:
            return None
        return cls.of(scope, parts[1], parts[2])

    @property
    def address(self) -> str:
        return f"{CAPTURE_SCHEME}{self.scope.value}/{self.question_code}/{self.stage}"

    @property
    def lookup(self) -> tuple[str, str, str]:
        return (self.scope.value, self.question_code.lower(), self.stage.lower())

    def __str__(self) -> str:
        return self.address


@dataclass(frozen=True, slots=True)
class HttpMetadata:
    http_method: str
    status_code: int
    byte_size: int


class _Entry:
    __slots__ = ("key", "lock", "chunks")

    def __init__(self, key: CaptureKey) -> None:
        self.key = key
        self.lock = threading.Lock()
        self.chunks: list[str] = []


class CaptureStore:
    """Thread-safe capture ledger with per-key locking.

    Process pumps and proxy handlers write concurrently; comparisons read.
    The registry lock only guards entry creation. Reads and writes of one
    entry hold that entry's lock.
    """

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._entries: dict[tuple[str, str, str], _Entry] = {}
        self._metadata: dict[tuple[str, str], HttpMetadata] = {}

    def _entry(self, key: CaptureKey) -> _Entry:
        with self._registry_lock:
            entry = self._entries.get(key.lookup)
            if entry is None:
                entry = _Entry(key)
                self._entries[key.lookup] = entry
            return entry

    def append(self, scope: Scope, question_code: Optional[str], stage: Optional[str], text: str) -> None:
        entry = self._entry(CaptureKey.of(scope, question_code, stage))
        with entry.lock:
            entry.chunks.append(text)

    def replace(self, scope: Scope, question_code: Optional[str], stage: Optional[str], text: str) -> None:
        entry = self._entry(CaptureKey.of(scope, question_code, stage))
        with entry.lock:
            entry.chunks = [text]

    def get(self, key: CaptureKey) -> Optional[str]:
        """Return captured text, or None if nothing was ever written.

        An empty string means the key exists but holds no text.
        """
        with self._registry_lock:
            entry = self._entries.get(key.lookup)
        if entry is None:
            return None
        with entry.lock:
            return "".join(entry.chunks)

    def aggregate(self, scope: Scope, question_code: Optional[str]) -> Optional[str]:
        """Concatenate every stage of (scope, question) in first-write order."""
        question = _clean_question(question_code).lower()
        with self._registry_lock:
            entries = [
                e for k, e in self._entries.items()
                if k[0] == scope.value and k[1] == question
            ]
        if not entries:
            return None
        parts = []
        for entry in entries:
            with entry.lock:
                parts.append("".join(entry.chunks))
        return "".join(parts)

    def set_metadata(self, question_code: Optional[str], stage: Optional[str], metadata: HttpMetadata) -> None:
        key = (_clean_question(question_code).lower(), _clean_stage(stage).lower())
        with self._registry_lock:
            self._metadata[key] = metadata

    def get_metadata(self, question_code: Optional[str], stage: Optional[str]) -> Optional[HttpMetadata]:
        key = (_clean_question(question_code).lower(), _clean_stage(stage).lower())
        with self._registry_lock:
            return self._metadata.get(key)

    def keys(self) -> list[CaptureKey]:
        with self._registry_lock:
            return [e.key for e in self._entries.values()]

    def snapshot(self) -> dict[str, str]:
        """Address -> text for every capture, for reports."""
        return {key.address: self.get(key) or "" for key in self.keys()}

    def clear(self, question_code: Optional[str] = None) -> None:
        """Drop captures and metadata, optionally only for one question."""
        with self._registry_lock:
            if question_code is None:
                self._entries.clear()
                self._metadata.clear()
                return
            question = _clean_question(question_code).lower()
            for k in [k for k in self._entries if k[1] == question]:
                del self._entries[k]
            for k in [k for k in self._metadata if k[0] == question]:
                del self._metadata[k]

"""Multi-level fuzzy comparison of expected values against captured evidence.

Text comparisons walk a fixed ladder and stop at the first level that
matches:

1. normalized equality
2. containment (console output only)
3. aggressive equality (whitespace and ``, . : ;`` stripped)
4. aggressive containment

Each level exists to absorb a class of false negatives seen in real
submissions, so the order is significant.

A blank expected value always passes as "ignored". A missing actual value
with a non-blank expectation always fails.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..capture import CaptureStore
from ..errors import ComparisonError, ErrorCode
from .normalize import (
    canonical_json,
    first_difference,
    normalize_text,
    parse_json,
    status_class,
    strip_aggressive,
)
from .sources import ActualSource, CaptureSource, FileSource, LiteralSource, load_expected


class MatchLevel(str, Enum):
    NORMALIZED = "normalized"
    CONTAINS = "contains"
    AGGRESSIVE = "aggressive"
    AGGRESSIVE_CONTAINS = "aggressive_contains"


@dataclass(frozen=True, slots=True)
class Verdict:
    """Outcome of one comparison."""

    passed: bool
    message: str
    code: ErrorCode = ErrorCode.NONE
    level: Optional[MatchLevel] = None
    diff_index: Optional[int] = None
    expected_excerpt: Optional[str] = None
    actual_excerpt: Optional[str] = None

    @property
    def ignored(self) -> bool:
        return self.code in (ErrorCode.EXPECTED_MISSING, ErrorCode.SKIPPED)


def _ignored(what: str) -> Verdict:
    return Verdict(True, f"Expected {what} not specified (ignored)", ErrorCode.EXPECTED_MISSING)


def _mismatch(code: ErrorCode, label: str, expected: str, actual: str) -> Verdict:
    diff = first_difference(expected, actual)
    index = diff.index if diff else 0
    return Verdict(
        passed=False,
        message=f"{label} differs at position {index}",
        code=code,
        diff_index=index,
        expected_excerpt=diff.expected_excerpt if diff else expected[:48],
        actual_excerpt=diff.actual_excerpt if diff else actual[:48],
    )


def _describe(source: Optional[ActualSource]) -> str:
    return source.describe() if source is not None else "actual value"


def _sentence(text: str) -> str:
    return text[:1].upper() + text[1:]


class ComparisonEngine:
    """Compares expected values against capture-store, file or literal actuals.

    The engine holds no state of its own beyond configuration; repeated calls
    against the same store snapshot return the same verdict.
    """

    def __init__(
        self,
        store: CaptureStore,
        *,
        case_insensitive: bool = True,
        json_ignore_order: bool = True,
        byte_size_tolerance: int = 10,
        byte_size_tolerance_pct: float = 0.05,
    ) -> None:
        self._store = store
        self.case_insensitive = case_insensitive
        self.json_ignore_order = json_ignore_order
        self.byte_size_tolerance = byte_size_tolerance
        self.byte_size_tolerance_pct = byte_size_tolerance_pct

    # ── Actual values ──────────────────────────────────────────────

    def read_actual(self, source: Optional[ActualSource]) -> Optional[str]:
        """Text for an actual-value source, or None if it is unavailable.

        Console captures fall back to every stage of the question when the
        exact stage is missing or blank.
        """
        if source is None:
            return None
        if isinstance(source, LiteralSource):
            return source.text
        if isinstance(source, FileSource):
            if not source.path.is_file():
                return None
            return source.path.read_text(encoding="utf-8", errors="replace")
        if isinstance(source, CaptureSource):
            text = self._store.get(source.key)
            if source.key.scope.is_console and (text is None or not text.strip()):
                aggregated = self._store.aggregate(source.key.scope, source.key.question_code)
                if aggregated is not None and aggregated.strip():
                    return aggregated
            return text
        raise TypeError(f"Unsupported actual source: {source!r}")

    def _missing_actual(self, source: Optional[ActualSource]) -> Verdict:
        return Verdict(
            False,
            f"{_sentence(_describe(source))} not captured (expected value was provided)",
            ErrorCode.ACTUAL_MISSING,
        )

    # ── Text ───────────────────────────────────────────────────────

    def compare_text(
        self,
        expected: Optional[str],
        actual: Optional[ActualSource],
        *,
        case_insensitive: Optional[bool] = None,
    ) -> Verdict:
        expected_raw = load_expected(expected)
        if not expected_raw.strip():
            return _ignored("text")

        actual_raw = self.read_actual(actual)
        is_console = isinstance(actual, CaptureSource) and actual.key.scope.is_console
        if actual_raw is None or (is_console and not actual_raw.strip()):
            return self._missing_actual(actual)

        ci = self.case_insensitive if case_insensitive is None else case_insensitive
        exp = normalize_text(expected_raw, case_insensitive=ci)
        act = normalize_text(actual_raw, case_insensitive=ci)

        if exp == act:
            return Verdict(True, "Text matches", level=MatchLevel.NORMALIZED)
        if is_console and exp in act:
            return Verdict(True, "Text matches (contained in output)", level=MatchLevel.CONTAINS)

        exp_loose = strip_aggressive(exp)
        act_loose = strip_aggressive(act)
        if exp_loose == act_loose:
            return Verdict(
                True, "Text matches (ignoring whitespace and punctuation)",
                level=MatchLevel.AGGRESSIVE,
            )
        if exp_loose in act_loose:
            return Verdict(
                True, "Text matches (contained, ignoring whitespace and punctuation)",
                level=MatchLevel.AGGRESSIVE_CONTAINS,
            )

        return _mismatch(
            ErrorCode.TEXT_MISMATCH,
            f"Text mismatch: {_describe(actual)}",
            exp,
            act,
        )

    # ── JSON ───────────────────────────────────────────────────────

    def compare_json(
        self,
        expected: Optional[str],
        actual: Optional[ActualSource],
        *,
        ignore_order: Optional[bool] = None,
    ) -> Verdict:
        expected_raw = load_expected(expected)
        if not expected_raw.strip():
            return _ignored("JSON")

        actual_raw = self.read_actual(actual)
        if actual_raw is None or not actual_raw.strip():
            return self._missing_actual(actual)

        sort_arrays = self.json_ignore_order if ignore_order is None else ignore_order
        try:
            exp = canonical_json(parse_json(expected_raw), sort_arrays=sort_arrays)
        except ComparisonError as exc:
            return Verdict(False, f"Expected value is not valid JSON: {exc.message}", exc.code)
        try:
            act = canonical_json(parse_json(actual_raw), sort_arrays=sort_arrays)
        except ComparisonError as exc:
            return Verdict(
                False, f"{_sentence(_describe(actual))} is not valid JSON: {exc.message}", exc.code
            )

        if exp == act:
            return Verdict(True, "JSON matches", level=MatchLevel.NORMALIZED)
        return _mismatch(ErrorCode.JSON_MISMATCH, f"JSON mismatch: {_describe(actual)}", exp, act)

    # ── CSV ────────────────────────────────────────────────────────

    def compare_csv(
        self,
        expected: Optional[str],
        actual: Optional[ActualSource],
        *,
        ignore_order: bool = False,
    ) -> Verdict:
        expected_raw = load_expected(expected)
        if not expected_raw.strip():
            return _ignored("CSV")

        actual_raw = self.read_actual(actual)
        if actual_raw is None or not actual_raw.strip():
            return self._missing_actual(actual)

        exp = normalize_text(expected_raw, case_insensitive=self.case_insensitive)
        act = normalize_text(actual_raw, case_insensitive=self.case_insensitive)
        if ignore_order:
            exp, act = _sorted_rows(exp), _sorted_rows(act)
        if exp == act:
            return Verdict(True, "CSV matches", level=MatchLevel.NORMALIZED)
        return _mismatch(ErrorCode.CSV_MISMATCH, f"CSV mismatch: {_describe(actual)}", exp, act)

    # ── Files ──────────────────────────────────────────────────────

    def compare_file(self, expected: Optional[str], actual: Optional[ActualSource]) -> Verdict:
        """Normalized, case-sensitive equality only. Never containment."""
        expected_raw = load_expected(expected)
        if not expected_raw.strip():
            return _ignored("file")

        actual_raw = self.read_actual(actual)
        if actual_raw is None:
            return self._missing_actual(actual)

        exp = normalize_text(expected_raw, case_insensitive=False)
        act = normalize_text(actual_raw, case_insensitive=False)
        if exp == act:
            return Verdict(True, "File content matches", level=MatchLevel.NORMALIZED)
        return _mismatch(ErrorCode.FILE_MISMATCH, f"File mismatch: {_describe(actual)}", exp, act)

    # ── HTTP metadata ──────────────────────────────────────────────

    def compare_method(self, expected: Optional[str], actual: Optional[str]) -> Verdict:
        if not expected or not expected.strip():
            return _ignored("HTTP method")
        if actual is None:
            return Verdict(False, "HTTP method not captured by the proxy", ErrorCode.ACTUAL_MISSING)
        exp, act = expected.strip().upper(), actual.strip().upper()
        if exp == act:
            return Verdict(True, f"HTTP method matches: {act}")
        return Verdict(
            False, f"HTTP method mismatch: expected {exp}, got {act}", ErrorCode.METHOD_MISMATCH
        )

    def compare_status(self, expected: Optional[str], actual: Optional[int | str]) -> Verdict:
        if expected is None or not str(expected).strip():
            return _ignored("status code")
        if actual is None:
            return Verdict(False, "Status code not captured by the proxy", ErrorCode.ACTUAL_MISSING)
        exp, act = status_class(expected), status_class(actual)
        if exp == act:
            return Verdict(True, f"Status code matches: {act}")
        return Verdict(
            False, f"Status code mismatch: expected {exp}, got {act}", ErrorCode.STATUS_MISMATCH
        )

    def compare_byte_size(self, expected: Optional[int], actual: Optional[int]) -> Verdict:
        """Pass within the absolute or the relative tolerance, whichever is looser."""
        if expected is None or expected < 0:
            return _ignored("byte size")
        if actual is None:
            return Verdict(False, "Byte size not captured by the proxy", ErrorCode.ACTUAL_MISSING)
        delta = abs(actual - expected)
        within = delta <= self.byte_size_tolerance or (
            expected > 0 and delta / expected <= self.byte_size_tolerance_pct
        )
        if within:
            return Verdict(True, f"Byte size {actual} within tolerance of {expected}")
        return Verdict(
            False,
            f"Byte size mismatch: expected {expected}, got {actual} (difference {delta})",
            ErrorCode.BYTE_SIZE_MISMATCH,
        )


def _sorted_rows(text: str) -> str:
    lines = text.split("\n")
    if len(lines) <= 1:
        return text
    return "\n".join([lines[0], *sorted(lines[1:])])

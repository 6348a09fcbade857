"""Fuzzy comparison of expected fixtures against captured evidence."""

from .engine import ComparisonEngine, MatchLevel, Verdict
from .sources import (
    ActualSource,
    CaptureSource,
    FileSource,
    LiteralSource,
    load_expected,
    resolve_reference,
)

__all__ = [
    "ActualSource",
    "CaptureSource",
    "ComparisonEngine",
    "FileSource",
    "LiteralSource",
    "MatchLevel",
    "Verdict",
    "load_expected",
    "resolve_reference",
]

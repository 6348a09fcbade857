"""JSON result persistence for graded test cases.

Each case gets a sub-directory containing ``result.json`` (grade, per-step
results and the captured evidence). A top-level ``index.json`` summarises
every case written during the run.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .models import CaseResult, StepOutcome

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9._-]+')


def _safe_name(name: str) -> str:
    return _UNSAFE_CHARS.sub('_', name).strip('_') or 'case'


@dataclass(frozen=True)
class CaseRecord:
    """Summary of a persisted case result."""

    case_name: str
    all_passed: bool
    points_awarded: float
    points_possible: float
    step_count: int
    pass_count: int
    fail_count: int
    error_count: int
    duration_ms: float
    output_path: str

    def to_dict(self) -> dict[str, Any]:
        return {
            'case_name': self.case_name,
            'all_passed': self.all_passed,
            'points_awarded': self.points_awarded,
            'points_possible': self.points_possible,
            'step_count': self.step_count,
            'pass_count': self.pass_count,
            'fail_count': self.fail_count,
            'error_count': self.error_count,
            'duration_ms': round(self.duration_ms, 1),
            'output_path': self.output_path,
        }


class ReportWriter:
    """Writes case results and a cross-case index under ``output_dir``."""

    def __init__(self, output_dir: Path) -> None:
        self._output_dir = Path(output_dir)
        self._output_dir.mkdir(parents=True, exist_ok=True)
        self._records: list[CaseRecord] = []

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    def write_case(self, result: CaseResult) -> CaseRecord:
        case_dir = self._output_dir / _safe_name(result.case_name)
        case_dir.mkdir(parents=True, exist_ok=True)

        output = result.to_dict()
        output['captures'] = dict(result.captures)

        result_path = case_dir / 'result.json'
        result_path.write_text(
            json.dumps(output, indent=2, ensure_ascii=False), encoding='utf-8',
        )

        outcomes = [r.outcome for r in result.step_results]
        record = CaseRecord(
            case_name=result.case_name,
            all_passed=result.all_passed,
            points_awarded=result.points_awarded,
            points_possible=result.points_possible,
            step_count=len(outcomes),
            pass_count=sum(1 for o in outcomes if o in (StepOutcome.PASS, StepOutcome.SKIP)),
            fail_count=sum(1 for o in outcomes if o is StepOutcome.FAIL),
            error_count=sum(1 for o in outcomes if o in (StepOutcome.ERROR, StepOutcome.TIMEOUT)),
            duration_ms=result.duration_ms,
            output_path=str(result_path.relative_to(self._output_dir)),
        )
        self._records.append(record)
        return record

    def build_index(self) -> dict[str, Any]:
        """Build and write ``index.json``; returns the index dict."""
        index = {
            'generated_at': _now_iso(),
            'case_count': len(self._records),
            'overall_passed': all(r.all_passed for r in self._records),
            'points_awarded': sum(r.points_awarded for r in self._records),
            'points_possible': sum(r.points_possible for r in self._records),
            'cases': [r.to_dict() for r in self._records],
        }

        index_path = self._output_dir / 'index.json'
        index_path.write_text(
            json.dumps(index, indent=2), encoding='utf-8',
        )
        return index


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

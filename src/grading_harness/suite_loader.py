"""Loads a JSON suite definition into immutable steps and test cases.

Suite file layout::

    {
      "name": "Library API",
      "protocol": "HTTP",
      "cases": [
        {
          "name": "TC01",
          "mark": 2,
          "steps": [
            {"id": "S-START-1", "stage": "1", "action": "SERVERSTART"},
            {"id": "OC-OUT-1", "stage": "1", "action": "COMPARE_TEXT",
             "target": "expected/tc01_client.txt"}
          ]
        }
      ]
    }

Relative ``target``/``value`` paths that name an existing file next to the
suite are made absolute so comparisons read them as fixtures.
"""

from __future__ import annotations

import json
from pathlib import Path
from types import MappingProxyType
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .capture import CAPTURE_SCHEME
from .errors import ConfigurationError, ErrorCode, SuiteLoadError
from .models import Action, Protocol, Step, SuiteDefinition, TestCaseDefinition
from .observability.logging import get_logger

logger = get_logger(__name__)


# ── File schema ───────────────────────────────────────────────────


class StepModel(BaseModel):
    id: str = Field(..., min_length=1)
    stage: str = "0"
    action: str
    question_code: Optional[str] = None
    target: Optional[str] = None
    value: Optional[str] = None
    http_method: Optional[str] = None
    status_code: Optional[str] = None
    byte_size: Optional[int] = None
    data_type: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("stage", "status_code", mode="before")
    @classmethod
    def coerce_text(cls, v: Any) -> Any:
        return str(v) if isinstance(v, (int, float)) else v


class CaseModel(BaseModel):
    name: str = Field(..., min_length=1)
    mark: float = Field(default=0, ge=0)
    question_code: Optional[str] = None
    steps: list[StepModel] = Field(default_factory=list)


class SuiteModel(BaseModel):
    name: str = "suite"
    protocol: str = Protocol.HTTP.value
    cases: list[CaseModel] = Field(default_factory=list)


# ── Conversion ────────────────────────────────────────────────────


def _anchor(raw: Optional[str], base_dir: Path) -> Optional[str]:
    if raw is None:
        return None
    text = raw.strip()
    if (
        not text
        or "\n" in text
        or text.startswith(("{", "["))
        or text.lower().startswith(CAPTURE_SCHEME)
        or Path(text).is_absolute()
    ):
        return raw
    candidate = base_dir / text
    return str(candidate.resolve()) if candidate.is_file() else raw


def _to_step(model: StepModel, question_code: str, base_dir: Path) -> Step:
    return Step(
        id=model.id,
        question_code=model.question_code or question_code,
        stage=model.stage,
        action=Action.parse(model.action),
        target=_anchor(model.target, base_dir),
        value=_anchor(model.value, base_dir),
        http_method=model.http_method,
        status_code=model.status_code,
        byte_size=model.byte_size,
        data_type=model.data_type,
        metadata=MappingProxyType(dict(model.metadata)),
    )


def build_suite(data: dict, base_dir: Path) -> SuiteDefinition:
    """Validate parsed suite data and convert it to core models."""
    try:
        model = SuiteModel.model_validate(data)
    except ValidationError as exc:
        raise SuiteLoadError(f"Malformed suite: {exc}") from exc

    if not model.cases:
        raise SuiteLoadError("Suite contains no test cases", code=ErrorCode.NO_TEST_CASES)

    try:
        protocol = Protocol.parse(model.protocol, default=Protocol.HTTP)
        cases = []
        for case in model.cases:
            if not case.steps:
                raise SuiteLoadError(
                    f"Test case {case.name} has no steps", code=ErrorCode.STEP_PARSE_ERROR
                )
            question = case.question_code or case.name
            steps = tuple(_to_step(s, question, base_dir) for s in case.steps)
            cases.append(
                TestCaseDefinition(
                    name=case.name,
                    mark=case.mark,
                    steps=steps,
                    question_code=case.question_code,
                )
            )
    except ConfigurationError as exc:
        raise SuiteLoadError(exc.message, code=exc.code) from exc

    return SuiteDefinition(name=model.name, protocol=protocol, cases=tuple(cases))


def load_suite(path: Path) -> SuiteDefinition:
    """Read and validate a suite file. Raises SuiteLoadError."""
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8-sig"))
    except FileNotFoundError as exc:
        raise SuiteLoadError(f"Suite file not found: {path}", code=ErrorCode.FILE_NOT_FOUND) from exc
    except (OSError, ValueError) as exc:
        raise SuiteLoadError(f"Could not read suite {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise SuiteLoadError(f"Suite {path} must be a JSON object")

    suite = build_suite(data, path.parent)
    logger.info(
        "suite_loaded",
        suite=suite.name,
        cases=len(suite.cases),
        steps=sum(len(c.steps) for c in suite.cases),
    )
    return suite

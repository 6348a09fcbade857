"""Step, result and suite models shared by every harness component."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from .errors import ConfigurationError, ErrorCode


class Protocol(str, Enum):
    """Proxy mode for a suite."""

    HTTP = "HTTP"
    TCP = "TCP"

    @classmethod
    def parse(cls, raw: str | None, default: "Protocol | None" = None) -> "Protocol":
        text = (raw or "").strip().upper()
        if not text:
            if default is None:
                raise ConfigurationError("Protocol not specified")
            return default
        try:
            return cls(text)
        except ValueError:
            raise ConfigurationError(f"Unsupported protocol: {raw!r}") from None


class ActionKind(str, Enum):
    LIFECYCLE = "lifecycle"
    INTERACTION = "interaction"
    NETWORK = "network"
    ASSERTION = "assertion"


class Action(str, Enum):
    """Closed set of step actions."""

    SERVER_START = "SERVERSTART"
    CLIENT_START = "CLIENTSTART"
    SERVER_CLOSE = "SERVERCLOSE"
    CLIENT_CLOSE = "CLIENTCLOSE"
    KILL_ALL = "KILL_ALL"
    CLIENT_INPUT = "CLIENT_INPUT"
    WAIT = "WAIT"
    WAIT_FOR_OUTPUT = "WAIT_FOR_OUTPUT"
    HTTP_REQUEST = "HTTP_REQUEST"
    TCP_RELAY = "TCP_RELAY"
    COMPARE_TEXT = "COMPARE_TEXT"
    COMPARE_JSON = "COMPARE_JSON"
    COMPARE_CSV = "COMPARE_CSV"
    COMPARE_FILE = "COMPARE_FILE"

    @property
    def kind(self) -> ActionKind:
        return _ACTION_KINDS[self]

    @property
    def is_assertion(self) -> bool:
        return self.kind is ActionKind.ASSERTION

    @classmethod
    def parse(cls, raw: str) -> "Action":
        """Parse an action tag, accepting the historical spellings."""
        key = (raw or "").strip().upper().replace("-", "_").replace(" ", "_")
        key = _ACTION_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ConfigurationError(
                f"Unsupported action: {raw!r}",
                code=ErrorCode.STEP_PARSE_ERROR,
            ) from None


_ACTION_KINDS: dict[Action, ActionKind] = {
    Action.SERVER_START: ActionKind.LIFECYCLE,
    Action.CLIENT_START: ActionKind.LIFECYCLE,
    Action.SERVER_CLOSE: ActionKind.LIFECYCLE,
    Action.CLIENT_CLOSE: ActionKind.LIFECYCLE,
    Action.KILL_ALL: ActionKind.LIFECYCLE,
    Action.CLIENT_INPUT: ActionKind.INTERACTION,
    Action.WAIT: ActionKind.INTERACTION,
    Action.WAIT_FOR_OUTPUT: ActionKind.INTERACTION,
    Action.HTTP_REQUEST: ActionKind.NETWORK,
    Action.TCP_RELAY: ActionKind.NETWORK,
    Action.COMPARE_TEXT: ActionKind.ASSERTION,
    Action.COMPARE_JSON: ActionKind.ASSERTION,
    Action.COMPARE_CSV: ActionKind.ASSERTION,
    Action.COMPARE_FILE: ActionKind.ASSERTION,
}

_ACTION_ALIASES = {
    "SERVER_START": "SERVERSTART",
    "CLIENT_START": "CLIENTSTART",
    "SERVER_CLOSE": "SERVERCLOSE",
    "CLIENT_CLOSE": "CLIENTCLOSE",
    "KILLALL": "KILL_ALL",
    "CLIENTINPUT": "CLIENT_INPUT",
    "HTTPREQUEST": "HTTP_REQUEST",
    "ENABLE_PROXY": "TCP_RELAY",
    "ENABLEPROXY": "TCP_RELAY",
    "TCPRELAY": "TCP_RELAY",
    "ASSERT_TEXT": "COMPARE_TEXT",
}


class Validation(str, Enum):
    """What an assertion step checks."""

    CLIENT_OUTPUT = "client_output"
    SERVER_OUTPUT = "server_output"
    DATA_RESPONSE = "data_response"
    DATA_REQUEST = "data_request"
    HTTP_METHOD = "http_method"
    STATUS_CODE = "status_code"
    BYTE_SIZE = "byte_size"


class StepOrigin(str, Enum):
    """Which side of the exchange a step was authored for (id prefix)."""

    CLIENT = "client"
    SERVER = "server"


# Order matters: "-REQ-" must be tested before generic data ids.
_VALIDATION_INFIXES: tuple[tuple[str, Validation], ...] = (
    ("-METHOD-", Validation.HTTP_METHOD),
    ("-STATUS-", Validation.STATUS_CODE),
    ("-SIZE-", Validation.BYTE_SIZE),
    ("-REQ-", Validation.DATA_REQUEST),
    ("-DATA-", Validation.DATA_RESPONSE),
)


def _frozen_metadata() -> Mapping[str, Any]:
    return MappingProxyType({})


@dataclass(frozen=True, slots=True)
class Step:
    """One immutable instruction of a test case.

    Attributes:
        id: Step identifier, e.g. ``OC-OUT-1``.
        question_code: Question the step belongs to.
        stage: Logical phase identifier shared by related steps.
        action: What to do.
        target: Expected-value reference (literal or file path).
        value: Literal payload, path, or actual-value reference.
        http_method / status_code / byte_size / data_type: Optional
            expectations for HTTP assertions.
        metadata: Free-form extras (``validation``, ``body``, ...).
    """

    id: str
    question_code: str
    stage: str
    action: Action
    target: Optional[str] = None
    value: Optional[str] = None
    http_method: Optional[str] = None
    status_code: Optional[str] = None
    byte_size: Optional[int] = None
    data_type: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=_frozen_metadata)

    @property
    def origin(self) -> Optional[StepOrigin]:
        upper = self.id.upper()
        if upper.startswith("OC-"):
            return StepOrigin.CLIENT
        if upper.startswith("OS-"):
            return StepOrigin.SERVER
        return None

    @property
    def validation(self) -> Optional[Validation]:
        """Validation type from metadata, else inferred from the step id."""
        raw = self.metadata.get("validation")
        if raw:
            try:
                return Validation(str(raw).strip().lower())
            except ValueError:
                raise ConfigurationError(
                    f"Step {self.id}: unknown validation {raw!r}"
                ) from None

        upper = self.id.upper()
        for infix, validation in _VALIDATION_INFIXES:
            if infix in upper:
                return validation
        if "-OUT-" in upper or self.action.is_assertion:
            if self.origin is StepOrigin.SERVER:
                return Validation.SERVER_OUTPUT
            if self.origin is StepOrigin.CLIENT:
                return Validation.CLIENT_OUTPUT
        return None


class StepOutcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"
    TIMEOUT = "timeout"
    SKIP = "skip"


@dataclass(frozen=True, slots=True)
class StepResult:
    """Result of executing one step. Immutable once created."""

    step: Step
    passed: bool
    message: str
    duration_ms: float
    outcome: StepOutcome
    error_code: ErrorCode = ErrorCode.NONE
    diff_index: Optional[int] = None
    expected_excerpt: Optional[str] = None
    actual_excerpt: Optional[str] = None

    def to_dict(self) -> dict:
        result = {
            "step_id": self.step.id,
            "question_code": self.step.question_code,
            "stage": self.step.stage,
            "action": self.step.action.value,
            "passed": self.passed,
            "outcome": self.outcome.value,
            "message": self.message,
            "duration_ms": round(self.duration_ms, 1),
            "error_code": self.error_code.value,
            "error_category": self.error_code.category.value,
        }
        if self.diff_index is not None:
            result["diff_index"] = self.diff_index
            result["expected_excerpt"] = self.expected_excerpt
            result["actual_excerpt"] = self.actual_excerpt
        return result


@dataclass(frozen=True, slots=True)
class TestCaseDefinition:
    """A named, marked, ordered list of steps."""

    __test__ = False  # not a pytest class

    name: str
    mark: float
    steps: tuple[Step, ...]
    question_code: Optional[str] = None


@dataclass(frozen=True, slots=True)
class SuiteDefinition:
    name: str
    protocol: Protocol
    cases: tuple[TestCaseDefinition, ...]


@dataclass
class CaseResult:
    """Aggregated result of one test case with all-or-nothing grading."""

    case_name: str
    points_possible: float
    step_results: list[StepResult] = field(default_factory=list)
    setup_error: Optional[str] = None
    started_at: str = ""
    finished_at: str = ""
    duration_ms: float = 0.0
    captures: dict[str, str] = field(default_factory=dict)

    @property
    def assertion_results(self) -> list[StepResult]:
        return [r for r in self.step_results if r.step.action.is_assertion]

    @property
    def all_passed(self) -> bool:
        """True when setup succeeded and every assertion step passed.

        Non-assertion steps are recorded but never carry points.
        """
        assertions = self.assertion_results
        return (
            self.setup_error is None
            and bool(assertions)
            and all(r.passed for r in assertions)
        )

    @property
    def points_awarded(self) -> float:
        return self.points_possible if self.all_passed else 0.0

    @property
    def failed_steps(self) -> list[StepResult]:
        return [r for r in self.step_results if not r.passed]

    def summary(self) -> str:
        passed = sum(1 for r in self.step_results if r.passed)
        status = "PASS" if self.all_passed else "FAIL"
        return (
            f"[{status}] {self.case_name}: {passed}/{len(self.step_results)} steps, "
            f"{self.points_awarded:g}/{self.points_possible:g} points "
            f"({self.duration_ms:.0f}ms)"
        )

    def to_dict(self) -> dict:
        return {
            "case_name": self.case_name,
            "all_passed": self.all_passed,
            "points_awarded": self.points_awarded,
            "points_possible": self.points_possible,
            "setup_error": self.setup_error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": round(self.duration_ms, 1),
            "steps": [r.to_dict() for r in self.step_results],
        }


@dataclass
class SuiteResult:
    suite_name: str
    case_results: list[CaseResult] = field(default_factory=list)

    @property
    def all_passed(self) -> bool:
        return all(c.all_passed for c in self.case_results)

    @property
    def points_awarded(self) -> float:
        return sum(c.points_awarded for c in self.case_results)

    @property
    def points_possible(self) -> float:
        return sum(c.points_possible for c in self.case_results)

    def to_dict(self) -> dict:
        return {
            "suite_name": self.suite_name,
            "all_passed": self.all_passed,
            "points_awarded": self.points_awarded,
            "points_possible": self.points_possible,
            "cases": [c.to_dict() for c in self.case_results],
        }

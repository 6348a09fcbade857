"""Tests for step models, action parsing and error classification."""

from __future__ import annotations

import pytest

from grading_harness.errors import (
    ComparisonError,
    ConfigurationError,
    ErrorCategory,
    ErrorCode,
    NetworkError,
    ProcessError,
    StepTimeoutError,
    SuiteLoadError,
)
from grading_harness.errors import _CATEGORIES
from grading_harness.models import (
    Action,
    ActionKind,
    CaseResult,
    Protocol,
    Step,
    StepOrigin,
    StepOutcome,
    StepResult,
    Validation,
)


# =====================================================================
# Actions and protocols
# =====================================================================


class TestAction:

    @pytest.mark.parametrize('raw,expected', [
        ('SERVERSTART', Action.SERVER_START),
        ('server_start', Action.SERVER_START),
        ('Client-Start', Action.CLIENT_START),
        ('ENABLE_PROXY', Action.TCP_RELAY),
        ('tcp relay', Action.TCP_RELAY),
        ('ASSERT_TEXT', Action.COMPARE_TEXT),
        ('  compare_json ', Action.COMPARE_JSON),
        ('killall', Action.KILL_ALL),
    ])
    def test_parse(self, raw, expected):
        assert Action.parse(raw) is expected

    @pytest.mark.parametrize('raw', ['', 'DEPLOY', None])
    def test_parse_unknown(self, raw):
        with pytest.raises(ConfigurationError) as exc_info:
            Action.parse(raw)
        assert exc_info.value.code is ErrorCode.STEP_PARSE_ERROR

    def test_kinds(self):
        assert Action.CLIENT_INPUT.kind is ActionKind.INTERACTION
        assert Action.WAIT_FOR_OUTPUT.kind is ActionKind.INTERACTION
        assert Action.HTTP_REQUEST.kind is ActionKind.NETWORK
        assert Action.COMPARE_FILE.is_assertion
        assert not Action.KILL_ALL.is_assertion


class TestProtocol:

    def test_parse_case_insensitive(self):
        assert Protocol.parse(' tcp ') is Protocol.TCP

    def test_blank_uses_default(self):
        assert Protocol.parse('', default=Protocol.HTTP) is Protocol.HTTP

    def test_blank_without_default(self):
        with pytest.raises(ConfigurationError):
            Protocol.parse(None)


# =====================================================================
# Step inference
# =====================================================================


def _step(step_id: str, action: Action = Action.COMPARE_TEXT, **fields) -> Step:
    return Step(id=step_id, question_code='Q1', stage='1', action=action, **fields)


def _result(step: Step, *, passed: bool) -> StepResult:
    return StepResult(
        step=step,
        passed=passed,
        message='ok' if passed else 'failed',
        duration_ms=1.0,
        outcome=StepOutcome.PASS if passed else StepOutcome.FAIL,
    )


class TestStepValidation:

    @pytest.mark.parametrize('step_id,expected', [
        ('OC-OUT-1', Validation.CLIENT_OUTPUT),
        ('OS-OUT-1', Validation.SERVER_OUTPUT),
        ('OS-DATA-1', Validation.DATA_RESPONSE),
        ('OS-REQ-DATA-1', Validation.DATA_REQUEST),
        ('OS-METHOD-1', Validation.HTTP_METHOD),
        ('OS-STATUS-1', Validation.STATUS_CODE),
        ('OS-SIZE-1', Validation.BYTE_SIZE),
        ('oc-check-1', Validation.CLIENT_OUTPUT),
    ])
    def test_inferred_from_id(self, step_id, expected):
        assert _step(step_id).validation is expected

    def test_metadata_overrides_id(self):
        step = _step('OC-OUT-1', metadata={'validation': 'DATA_RESPONSE'})
        assert step.validation is Validation.DATA_RESPONSE

    def test_unknown_metadata_validation(self):
        with pytest.raises(ConfigurationError):
            _ = _step('OC-OUT-1', metadata={'validation': 'vibes'}).validation

    def test_non_assertion_without_tag(self):
        assert _step('S-START-1', Action.SERVER_START).validation is None

    def test_origin(self):
        assert _step('OC-OUT-1').origin is StepOrigin.CLIENT
        assert _step('os-out-1').origin is StepOrigin.SERVER
        assert _step('WAIT-1', Action.WAIT).origin is None

    def test_step_is_immutable(self):
        step = _step('OC-OUT-1')
        with pytest.raises(AttributeError):
            step.target = 'changed'


class TestCaseResult:

    def test_no_steps_is_not_a_pass(self):
        result = CaseResult(case_name='empty', points_possible=4.0)
        assert not result.all_passed
        assert result.points_awarded == 0.0

    def test_only_assertions_are_graded(self):
        result = CaseResult(case_name='quit', points_possible=10.0)
        result.step_results.extend([
            _result(_step('C-IN-1', Action.CLIENT_INPUT), passed=False),
            _result(_step('OC-OUT-1'), passed=True),
        ])
        assert result.assertion_results == result.step_results[1:]
        assert result.all_passed
        assert result.points_awarded == 10.0
        assert [r.step.id for r in result.failed_steps] == ['C-IN-1']

    def test_failed_assertion_forfeits(self):
        result = CaseResult(case_name='menu', points_possible=10.0)
        result.step_results.extend([
            _result(_step('OC-OUT-1'), passed=True),
            _result(_step('OS-OUT-1'), passed=False),
        ])
        assert result.points_awarded == 0.0


# =====================================================================
# Errors
# =====================================================================


class TestErrors:

    def test_every_code_has_a_category(self):
        assert set(_CATEGORIES) == set(ErrorCode)

    @pytest.mark.parametrize('exc_type,code', [
        (ConfigurationError, ErrorCode.STEP_PARSE_ERROR),
        (ProcessError, ErrorCode.PROCESS_CRASHED),
        (NetworkError, ErrorCode.HTTP_TRANSPORT_ERROR),
        (ComparisonError, ErrorCode.JSON_INVALID),
        (StepTimeoutError, ErrorCode.STEP_TIMEOUT),
        (SuiteLoadError, ErrorCode.SUITE_LOAD_FAILED),
    ])
    def test_default_codes(self, exc_type, code):
        assert exc_type('boom').code is code

    def test_explicit_code_wins(self):
        exc = ProcessError('gone', code=ErrorCode.KILL_FAILED, details={'pid': 42})
        assert exc.to_dict() == {
            'error_code': 'kill_failed',
            'category': 'process',
            'message': 'gone',
            'details': {'pid': 42},
        }

    def test_categories(self):
        assert ErrorCode.CLIENT_EXE_MISSING.category is ErrorCategory.ENV
        assert ErrorCode.ACTUAL_MISSING.category is ErrorCategory.IO
        assert ErrorCode.STEP_TIMEOUT.category is ErrorCategory.TIMEOUT

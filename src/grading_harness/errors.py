"""Structured error codes and exception taxonomy for the grading harness.

Every failure a step can produce maps onto one stable, machine-readable
``ErrorCode``. Exceptions raised inside the core carry a code so that the
step executor can turn them into a classified ``StepResult`` without
inspecting message text.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorCategory(str, Enum):
    """Coarse grouping of error codes for reporting."""

    NONE = "none"
    SUITE = "suite"
    PARSE = "parse"
    ENV = "env"
    PROCESS = "process"
    NETWORK = "network"
    IO = "io"
    COMPARE = "compare"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ErrorCode(str, Enum):
    """Step and suite error codes."""

    NONE = "none"
    SKIPPED = "skipped"
    EXPECTED_MISSING = "expected_missing"

    # Suite loading
    SUITE_LOAD_FAILED = "suite_load_failed"
    NO_TEST_CASES = "no_test_cases"
    STEP_PARSE_ERROR = "step_parse_error"

    # Processes
    CLIENT_EXE_MISSING = "client_exe_missing"
    SERVER_EXE_MISSING = "server_exe_missing"
    PROCESS_SPAWN_FAILED = "process_spawn_failed"
    PROCESS_CRASHED = "process_crashed"
    PROCESS_NOT_RUNNING = "process_not_running"
    KILL_FAILED = "kill_failed"
    SERVER_START_TIMEOUT = "server_start_timeout"

    # Network
    PROXY_START_FAILED = "proxy_start_failed"
    HTTP_REQUEST_INVALID = "http_request_invalid"
    HTTP_NON_SUCCESS = "http_non_success"
    HTTP_TRANSPORT_ERROR = "http_transport_error"
    TCP_RELAY_ERROR = "tcp_relay_error"

    # IO
    FILE_NOT_FOUND = "file_not_found"
    ACTUAL_MISSING = "actual_missing"

    # Comparison
    TEXT_MISMATCH = "text_mismatch"
    JSON_MISMATCH = "json_mismatch"
    JSON_INVALID = "json_invalid"
    CSV_MISMATCH = "csv_mismatch"
    FILE_MISMATCH = "file_mismatch"
    METHOD_MISMATCH = "method_mismatch"
    STATUS_MISMATCH = "status_mismatch"
    BYTE_SIZE_MISMATCH = "byte_size_mismatch"

    # Timeouts / fallback
    STEP_TIMEOUT = "step_timeout"
    UNKNOWN = "unknown"

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORIES.get(self, ErrorCategory.UNKNOWN)


_CATEGORIES: dict[ErrorCode, ErrorCategory] = {
    ErrorCode.NONE: ErrorCategory.NONE,
    ErrorCode.SKIPPED: ErrorCategory.NONE,
    ErrorCode.EXPECTED_MISSING: ErrorCategory.NONE,
    ErrorCode.SUITE_LOAD_FAILED: ErrorCategory.SUITE,
    ErrorCode.NO_TEST_CASES: ErrorCategory.SUITE,
    ErrorCode.STEP_PARSE_ERROR: ErrorCategory.PARSE,
    ErrorCode.CLIENT_EXE_MISSING: ErrorCategory.ENV,
    ErrorCode.SERVER_EXE_MISSING: ErrorCategory.ENV,
    ErrorCode.PROCESS_SPAWN_FAILED: ErrorCategory.PROCESS,
    ErrorCode.PROCESS_CRASHED: ErrorCategory.PROCESS,
    ErrorCode.PROCESS_NOT_RUNNING: ErrorCategory.PROCESS,
    ErrorCode.KILL_FAILED: ErrorCategory.PROCESS,
    ErrorCode.SERVER_START_TIMEOUT: ErrorCategory.PROCESS,
    ErrorCode.PROXY_START_FAILED: ErrorCategory.NETWORK,
    ErrorCode.HTTP_REQUEST_INVALID: ErrorCategory.PARSE,
    ErrorCode.HTTP_NON_SUCCESS: ErrorCategory.NETWORK,
    ErrorCode.HTTP_TRANSPORT_ERROR: ErrorCategory.NETWORK,
    ErrorCode.TCP_RELAY_ERROR: ErrorCategory.NETWORK,
    ErrorCode.FILE_NOT_FOUND: ErrorCategory.IO,
    ErrorCode.ACTUAL_MISSING: ErrorCategory.IO,
    ErrorCode.TEXT_MISMATCH: ErrorCategory.COMPARE,
    ErrorCode.JSON_MISMATCH: ErrorCategory.COMPARE,
    ErrorCode.JSON_INVALID: ErrorCategory.COMPARE,
    ErrorCode.CSV_MISMATCH: ErrorCategory.COMPARE,
    ErrorCode.FILE_MISMATCH: ErrorCategory.COMPARE,
    ErrorCode.METHOD_MISMATCH: ErrorCategory.COMPARE,
    ErrorCode.STATUS_MISMATCH: ErrorCategory.COMPARE,
    ErrorCode.BYTE_SIZE_MISMATCH: ErrorCategory.COMPARE,
    ErrorCode.STEP_TIMEOUT: ErrorCategory.TIMEOUT,
    ErrorCode.UNKNOWN: ErrorCategory.UNKNOWN,
}


class HarnessError(Exception):
    """Base class for every error raised inside the harness core.

    Attributes:
        message: Human-readable description.
        code: Classified error code.
        details: Optional extra context for reports.
    """

    default_code = ErrorCode.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        code: Optional[ErrorCode] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error_code": self.code.value,
            "category": self.code.category.value,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(HarnessError):
    """Malformed step or invalid harness configuration."""

    default_code = ErrorCode.STEP_PARSE_ERROR


class ProcessError(HarnessError):
    """Spawn failure, crash, missing executable, or kill failure."""

    default_code = ErrorCode.PROCESS_CRASHED


class NetworkError(HarnessError):
    """Listener bind failure, relay error, or required HTTP call failed."""

    default_code = ErrorCode.HTTP_TRANSPORT_ERROR


class ComparisonError(HarnessError):
    """Comparison could not be carried out (e.g. unparseable JSON)."""

    default_code = ErrorCode.JSON_INVALID


class StepTimeoutError(HarnessError):
    """A step exceeded its deadline."""

    default_code = ErrorCode.STEP_TIMEOUT


class SuiteLoadError(HarnessError):
    """Suite definition could not be loaded; aborts the run."""

    default_code = ErrorCode.SUITE_LOAD_FAILED

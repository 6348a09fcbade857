"""structlog setup for grading runs.

Every record carries the id of the test case and step being executed, so a
log of a whole suite can be filtered down to one failing assertion::

    configure_logging(level="DEBUG")
    log = get_logger(__name__)
    log.info("step_finished", outcome="pass")

Records go to stderr; stdout is reserved for the grading result.
"""

from __future__ import annotations

import logging
import os
import sys
from contextvars import ContextVar
from typing import Any

import structlog

LEVEL_ENV = "GRADER_LOG_LEVEL"
FORMAT_ENV = "GRADER_LOG_FORMAT"

case_ctx: ContextVar[str | None] = ContextVar("case", default=None)
step_ctx: ContextVar[str | None] = ContextVar("step", default=None)

_NOISY_LOGGERS = ("uvicorn.access", "uvicorn.error", "httpx", "httpcore")

_configured = False


def _add_case_and_step(_logger: Any, _method: str, event_dict: dict) -> dict:
    for key, var in (("case", case_ctx), ("step", step_ctx)):
        value = var.get()
        if value is not None:
            event_dict.setdefault(key, value)
    return event_dict


def _renderer(json_output: bool) -> Any:
    if json_output:
        return structlog.processors.JSONRenderer(sort_keys=True)
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def configure_logging(*, level: str | None = None, json_output: bool | None = None) -> None:
    """Install the stderr handler once per process.

    ``level`` and ``json_output`` fall back to ``GRADER_LOG_LEVEL`` (default
    INFO) and ``GRADER_LOG_FORMAT=json``. Later calls are no-ops.
    """
    global _configured
    if _configured:
        return
    _configured = True

    level_name = (level or os.environ.get(LEVEL_ENV) or "INFO").upper()
    if json_output is None:
        json_output = os.environ.get(FORMAT_ENV, "").lower() == "json"

    pre_chain: list = [
        structlog.contextvars.merge_contextvars,
        _add_case_and_step,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=pre_chain + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(json_output),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [stderr_handler]
    root.setLevel(getattr(logging, level_name, logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)

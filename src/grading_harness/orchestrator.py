"""Drives the steps of a test case and grades it all-or-nothing.

Per case the orchestrator moves through four states:

- INIT: clear the capture store, prepare the environment, reset the
  supervisor with the configured executables.
- RUNNING: execute steps strictly one after another, each under its own
  deadline, with settle delays between stages and before the first
  assertion that follows an interaction step.
- FINALIZING: stop all processes and the proxy, whatever happened.
- DONE.

A failing or erroring step never aborts the case. The case earns its mark
only if every assertion step passed; other steps and cleanup failures are
recorded but carry no points.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol as TypingProtocol

from .comparison import ComparisonEngine
from .context import RunContext
from .errors import ConfigurationError, ErrorCode, HarnessError
from .executor import StepExecutor
from .models import (
    Action,
    ActionKind,
    CaseResult,
    Step,
    StepOutcome,
    StepResult,
    SuiteDefinition,
    SuiteResult,
    TestCaseDefinition,
)
from .observability.logging import case_ctx, get_logger
from .proxy import ProxyInterceptor
from .settings import HarnessSettings
from .supervisor import ProcessSupervisor

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class CaseState(str, Enum):
    INIT = "init"
    RUNNING = "running"
    FINALIZING = "finalizing"
    DONE = "done"


class EnvironmentPreparer(TypingProtocol):
    async def prepare(self, case: TestCaseDefinition) -> None: ...


class SuiteOrchestrator:
    """Runs test cases against one client/server pair."""

    def __init__(
        self,
        settings: HarnessSettings,
        *,
        context: Optional[RunContext] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        proxy: Optional[ProxyInterceptor] = None,
        engine: Optional[ComparisonEngine] = None,
        executor: Optional[StepExecutor] = None,
        environment: Optional[EnvironmentPreparer] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._context = context or RunContext()
        self._supervisor = supervisor or ProcessSupervisor(
            self._context,
            idle_flush_seconds=settings.idle_flush_seconds,
            kill_grace_seconds=settings.kill_grace_seconds,
        )
        self._proxy = proxy or ProxyInterceptor(
            self._context,
            host=settings.proxy_host,
            public_port=settings.public_port,
            real_port=settings.real_port,
            forward_timeout=settings.forward_timeout_seconds,
            stop_grace=settings.proxy_stop_grace_seconds,
        )
        self._engine = engine or ComparisonEngine(
            self._context.store,
            case_insensitive=settings.case_insensitive,
            json_ignore_order=settings.json_ignore_order,
            byte_size_tolerance=settings.byte_size_tolerance,
            byte_size_tolerance_pct=settings.byte_size_tolerance_pct,
        )
        self._executor = executor or StepExecutor(
            self._context, self._supervisor, self._proxy, self._engine, settings
        )
        self._environment = environment
        self._sleep = sleep
        self.state = CaseState.DONE

    @property
    def context(self) -> RunContext:
        return self._context

    async def aclose(self) -> None:
        await self._executor.aclose()

    async def run_suite(self, suite: SuiteDefinition) -> SuiteResult:
        result = SuiteResult(suite_name=suite.name)
        for case in suite.cases:
            result.case_results.append(await self.run_case(case))
        logger.info(
            "suite_finished",
            suite=suite.name,
            points_awarded=result.points_awarded,
            points_possible=result.points_possible,
        )
        return result

    async def run_case(self, case: TestCaseDefinition) -> CaseResult:
        token = case_ctx.set(case.name)
        result = CaseResult(
            case_name=case.name,
            points_possible=case.mark,
            started_at=_now_iso(),
        )
        started = time.monotonic()
        try:
            self.state = CaseState.INIT
            if await self._init_case(case, result):
                self.state = CaseState.RUNNING
                await self._run_steps(case.steps, result)
        finally:
            self.state = CaseState.FINALIZING
            await self._finalize(result)
            result.captures = self._context.store.snapshot()
            result.finished_at = _now_iso()
            result.duration_ms = (time.monotonic() - started) * 1000
            self.state = CaseState.DONE
            logger.info(
                "case_graded",
                all_passed=result.all_passed,
                points_awarded=result.points_awarded,
                points_possible=result.points_possible,
            )
            case_ctx.reset(token)
        return result

    async def _init_case(self, case: TestCaseDefinition, result: CaseResult) -> bool:
        self._context.reset()
        first = case.steps[0] if case.steps else None
        self._context.move_to(
            case.question_code or (first.question_code if first else case.name),
            first.stage if first else None,
        )
        try:
            if not case.steps:
                raise ConfigurationError(
                    f"Test case {case.name} has no steps", code=ErrorCode.STEP_PARSE_ERROR
                )
            if self._environment is not None:
                await self._environment.prepare(case)
            await self._supervisor.init(self._settings.client_path, self._settings.server_path)
        except (HarnessError, OSError) as exc:
            result.setup_error = str(exc)
            logger.error("case_setup_failed", error=str(exc))
            return False
        return True

    async def _run_steps(self, steps: tuple[Step, ...], result: CaseResult) -> None:
        timeout = self._settings.effective_step_timeout
        previous_stage: Optional[str] = None
        interacted = False
        assertion_settled = False

        for step in steps:
            if previous_stage is not None and step.stage != previous_stage:
                await self._sleep(self._settings.stage_settle_seconds)
            if step.action.is_assertion and interacted and not assertion_settled:
                await self._sleep(self._settings.assertion_settle_seconds)
                assertion_settled = True
            if step.action.kind is ActionKind.INTERACTION:
                interacted = True

            self._context.move_to(step.question_code, step.stage)
            step_result = await self._executor.execute(step, timeout=timeout)
            result.step_results.append(step_result)
            previous_stage = step.stage

    async def _finalize(self, result: CaseResult) -> None:
        try:
            await self._supervisor.stop_all()
        except HarnessError as exc:
            logger.error("cleanup_failed", component="supervisor", error=exc.message)
            result.step_results.append(_cleanup_failure(exc))
        try:
            await self._proxy.stop()
        except OSError as exc:
            logger.error("cleanup_failed", component="proxy", error=str(exc))


def _cleanup_failure(exc: HarnessError) -> StepResult:
    step = Step(
        id="CLEANUP",
        question_code="",
        stage="",
        action=Action.KILL_ALL,
    )
    return StepResult(
        step=step,
        passed=False,
        message=exc.message,
        duration_ms=0.0,
        outcome=StepOutcome.ERROR,
        error_code=exc.code,
    )


def _now_iso() -> str:
    """Return current UTC timestamp in ISO-8601."""
    return datetime.now(timezone.utc).isoformat()

"""Executes one step by routing its action to the supervisor, proxy or engine.

Every action runs under its own deadline. Expiry abandons the in-flight await
and reports a TIMEOUT outcome without killing any process. All harness
errors are caught here and turned into a classified ``StepResult``; nothing
propagates to the orchestrator.
"""

from __future__ import annotations

import asyncio
import time
from typing import Optional

import httpx

from .capture import CaptureKey, Scope
from .comparison import CaptureSource, ComparisonEngine, Verdict, resolve_reference
from .comparison.sources import ActualSource
from .context import RunContext
from .errors import (
    ConfigurationError,
    ErrorCode,
    HarnessError,
    NetworkError,
    ProcessError,
    StepTimeoutError,
)
from .models import Action, Protocol, Step, StepOutcome, StepResult, Validation
from .observability.logging import get_logger, step_ctx
from .proxy import ProxyInterceptor
from .settings import HarnessSettings
from .supervisor import OutputWait, ProcessRole, ProcessSupervisor

logger = get_logger(__name__)

DEFAULT_WAIT_MS = 1000
_PREVIEW_CHARS = 200
_PROBE_TIMEOUT = 0.5
_CONNECT_TIMEOUT = 0.2

_DISPATCH: dict[Action, str] = {
    Action.SERVER_START: "_server_start",
    Action.CLIENT_START: "_client_start",
    Action.SERVER_CLOSE: "_server_close",
    Action.CLIENT_CLOSE: "_client_close",
    Action.KILL_ALL: "_kill_all",
    Action.CLIENT_INPUT: "_client_input",
    Action.WAIT: "_wait",
    Action.WAIT_FOR_OUTPUT: "_wait_for_output",
    Action.HTTP_REQUEST: "_http_request",
    Action.TCP_RELAY: "_enable_proxy",
    Action.COMPARE_TEXT: "_assert",
    Action.COMPARE_JSON: "_assert",
    Action.COMPARE_CSV: "_assert",
    Action.COMPARE_FILE: "_assert",
}

if set(_DISPATCH) != set(Action):
    raise RuntimeError(f"Unhandled actions: {set(Action) - set(_DISPATCH)}")

_DEFAULT_SCOPES: dict[Validation, Scope] = {
    Validation.CLIENT_OUTPUT: Scope.CLIENTS,
    Validation.SERVER_OUTPUT: Scope.SERVERS,
    Validation.DATA_RESPONSE: Scope.SERVERS_RESPONSE,
    Validation.DATA_REQUEST: Scope.SERVERS_REQUEST,
}


def _flag(value) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if not text:
        return None
    return text in ("1", "true", "yes", "on")


def _parse_millis(step: Step, default_ms: float) -> float:
    raw = (step.value or "").strip()
    if not raw:
        return default_ms
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(
            f"Step {step.id}: wait duration must be milliseconds, got {raw!r}"
        ) from None


def parse_http_request(value: Optional[str]) -> tuple[str, str, Optional[str], Optional[str]]:
    """Split ``METHOD|URL|[status]|[bodyContains]``."""
    parts = [p.strip() for p in (value or "").split("|", 3)]
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise ConfigurationError(
            f"HTTP_REQUEST value must be METHOD|URL|[status]|[bodyContains], got {value!r}",
            code=ErrorCode.HTTP_REQUEST_INVALID,
        )
    status = parts[2] if len(parts) > 2 and parts[2] else None
    contains = parts[3] if len(parts) > 3 and parts[3] else None
    return parts[0].upper(), parts[1], status, contains


class StepExecutor:
    """Runs single steps against the shared run context."""

    def __init__(
        self,
        context: RunContext,
        supervisor: ProcessSupervisor,
        proxy: ProxyInterceptor,
        engine: ComparisonEngine,
        settings: HarnessSettings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._context = context
        self._supervisor = supervisor
        self._proxy = proxy
        self._engine = engine
        self._settings = settings
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=settings.forward_timeout_seconds, trust_env=False
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def execute(self, step: Step, *, timeout: Optional[float] = None) -> StepResult:
        """Execute ``step`` under ``timeout`` seconds and classify the outcome."""
        deadline = self._settings.effective_step_timeout if timeout is None else timeout
        handler = getattr(self, _DISPATCH[step.action])
        token = step_ctx.set(step.id)
        started = time.monotonic()
        try:
            verdict = await asyncio.wait_for(handler(step), deadline)
            if verdict.code is ErrorCode.SKIPPED:
                outcome = StepOutcome.SKIP
            else:
                outcome = StepOutcome.PASS if verdict.passed else StepOutcome.FAIL
        except asyncio.TimeoutError:
            verdict = Verdict(False, f"Step timed out after {deadline:g}s", ErrorCode.STEP_TIMEOUT)
            outcome = StepOutcome.TIMEOUT
        except StepTimeoutError as exc:
            verdict = Verdict(False, exc.message, exc.code)
            outcome = StepOutcome.TIMEOUT
        except HarnessError as exc:
            verdict = Verdict(False, exc.message, exc.code)
            outcome = StepOutcome.ERROR
        except httpx.HTTPError as exc:
            verdict = Verdict(False, f"HTTP request failed: {exc}", ErrorCode.HTTP_TRANSPORT_ERROR)
            outcome = StepOutcome.ERROR
        except FileNotFoundError as exc:
            verdict = Verdict(False, f"File not found: {exc.filename}", ErrorCode.FILE_NOT_FOUND)
            outcome = StepOutcome.ERROR
        except OSError as exc:
            logger.warning("step_os_error", step_id=step.id, error=str(exc))
            verdict = Verdict(False, f"OS error: {exc}", ErrorCode.UNKNOWN)
            outcome = StepOutcome.ERROR
        except Exception as exc:
            logger.exception("step_crashed", step_id=step.id, action=step.action.value)
            verdict = Verdict(False, f"Unexpected error: {exc}", ErrorCode.UNKNOWN)
            outcome = StepOutcome.ERROR
        finally:
            step_ctx.reset(token)

        result = StepResult(
            step=step,
            passed=verdict.passed,
            message=verdict.message,
            duration_ms=(time.monotonic() - started) * 1000,
            outcome=outcome,
            error_code=verdict.code,
            diff_index=verdict.diff_index,
            expected_excerpt=verdict.expected_excerpt,
            actual_excerpt=verdict.actual_excerpt,
        )
        log = logger.info if result.passed else logger.warning
        log(
            "step_finished",
            step_id=step.id,
            action=step.action.value,
            outcome=outcome.value,
            error_code=verdict.code.value,
            duration_ms=round(result.duration_ms, 1),
        )
        return result

    # ── Lifecycle ──────────────────────────────────────────────────

    def _preview(self, role: ProcessRole) -> str:
        output = self._supervisor.get_output(role).strip()
        return output[:_PREVIEW_CHARS] or "<no output>"

    async def _server_start(self, step: Step) -> Verdict:
        await self._supervisor.start_server()
        ready = await self._wait_server_ready()
        if not self._supervisor.is_server_running:
            raise ProcessError(
                "Server process exited during startup. "
                f"Output: {self._preview(ProcessRole.SERVER)}",
                code=ErrorCode.PROCESS_CRASHED,
            )
        await asyncio.sleep(self._settings.startup_delay_seconds)
        if not self._supervisor.is_server_running:
            raise ProcessError(
                f"Server process exited after startup. Output: {self._preview(ProcessRole.SERVER)}",
                code=ErrorCode.PROCESS_CRASHED,
            )
        if ready:
            return Verdict(True, f"Server started and listening on port {self._settings.real_port}")
        logger.warning(
            "server_not_ready",
            error_code=ErrorCode.SERVER_START_TIMEOUT.value,
            port=self._settings.real_port,
            waited_seconds=self._settings.server_ready_timeout_seconds,
        )
        return Verdict(True, "Server started (readiness probe unanswered; process is running)")

    async def _wait_server_ready(self) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.server_ready_timeout_seconds
        while loop.time() < deadline:
            if not self._supervisor.is_server_running:
                return False
            if await self._probe_server():
                return True
            await asyncio.sleep(self._settings.ready_poll_seconds)
        return False

    async def _probe_server(self) -> bool:
        if self._settings.protocol is Protocol.HTTP:
            url = f"{self._settings.upstream_base_url}{self._settings.health_path}"
            try:
                await self._http.get(url, timeout=_PROBE_TIMEOUT)
            except httpx.HTTPError:
                return False
            return True
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self._settings.proxy_host, self._settings.real_port),
                _CONNECT_TIMEOUT,
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        return True

    async def _client_start(self, step: Step) -> Verdict:
        await self._supervisor.start_client()
        await asyncio.sleep(self._settings.startup_delay_seconds)
        if not self._supervisor.is_client_running:
            code = self._supervisor.exit_code(ProcessRole.CLIENT)
            if code:
                raise ProcessError(
                    f"Client exited with code {code} during startup. "
                    f"Output: {self._preview(ProcessRole.CLIENT)}",
                    code=ErrorCode.PROCESS_CRASHED,
                )
            return Verdict(True, "Client started and finished")
        return Verdict(True, "Client started")

    async def _server_close(self, step: Step) -> Verdict:
        await self._supervisor.stop_server()
        return Verdict(True, "Server stopped")

    async def _client_close(self, step: Step) -> Verdict:
        await self._supervisor.stop_client()
        return Verdict(True, "Client stopped")

    async def _kill_all(self, step: Step) -> Verdict:
        await self._supervisor.stop_all()
        return Verdict(True, "All processes stopped")

    # ── Interaction ────────────────────────────────────────────────

    async def _client_input(self, step: Step) -> Verdict:
        text = step.value or ""
        baseline = self._supervisor.output_length(ProcessRole.CLIENT)
        if not await self._supervisor.send_input(text):
            return Verdict(True, f"Client is not running; input {text!r} was dropped")
        outcome = await self._supervisor.wait_for_output(
            ProcessRole.CLIENT, self._settings.output_wait_seconds, baseline=baseline
        )
        if outcome is OutputWait.EXITED:
            return Verdict(True, f"Sent input {text!r}; client exited")
        if outcome is OutputWait.PRODUCED:
            return Verdict(True, f"Sent input {text!r}; client responded")
        return Verdict(
            True,
            f"Sent input {text!r}; no new output within {self._settings.output_wait_seconds:g}s",
        )

    async def _wait(self, step: Step) -> Verdict:
        millis = _parse_millis(step, DEFAULT_WAIT_MS)
        await asyncio.sleep(millis / 1000)
        return Verdict(True, f"Waited {millis:g}ms")

    async def _wait_for_output(self, step: Step) -> Verdict:
        target = (step.target or ProcessRole.CLIENT.value).strip().lower()
        try:
            role = ProcessRole(target)
        except ValueError:
            raise ConfigurationError(f"Step {step.id}: unknown process {step.target!r}") from None
        millis = _parse_millis(step, self._settings.output_wait_seconds * 1000)
        outcome = await self._supervisor.wait_for_output(role, millis / 1000)
        if outcome is OutputWait.PRODUCED:
            return Verdict(True, f"{role.value.capitalize()} produced output")
        if outcome is OutputWait.EXITED:
            raise ProcessError(
                f"{role.value.capitalize()} exited without producing output",
                code=ErrorCode.PROCESS_CRASHED,
            )
        raise StepTimeoutError(f"{role.value.capitalize()} produced no output within {millis:g}ms")

    # ── Network ────────────────────────────────────────────────────

    async def _http_request(self, step: Step) -> Verdict:
        method, url, expected_status, contains = parse_http_request(step.value)
        if url.startswith("/"):
            url = f"http://{self._settings.proxy_host}:{self._proxy.bound_port or self._settings.public_port}{url}"

        body = step.metadata.get("body")
        content = str(body).encode("utf-8") if body else None
        headers = {"Content-Type": step.data_type or "application/json"} if content else {}
        response = await self._http.request(
            method,
            url,
            content=content,
            headers=headers,
            timeout=self._settings.forward_timeout_seconds,
        )
        self._proxy.record_exchange(method, content or b"", response.status_code, response.content)

        if expected_status:
            verdict = self._engine.compare_status(expected_status, response.status_code)
            if not verdict.passed:
                return verdict
        elif not response.is_success:
            raise NetworkError(
                f"{method} {url} returned {response.status_code}",
                code=ErrorCode.HTTP_NON_SUCCESS,
            )

        if contains and contains.lower() not in response.text.lower():
            return Verdict(
                False,
                f"Response body of {method} {url} does not contain {contains!r}",
                ErrorCode.TEXT_MISMATCH,
            )
        return Verdict(True, f"{method} {url} returned {response.status_code}")

    async def _enable_proxy(self, step: Step) -> Verdict:
        mode = Protocol.parse(step.value, default=self._settings.protocol)
        await self._proxy.start(mode)
        return Verdict(True, f"Proxy enabled in {mode.value} mode on port {self._proxy.bound_port}")

    # ── Assertions ─────────────────────────────────────────────────

    def _actual_source(self, step: Step, validation: Optional[Validation]) -> Optional[ActualSource]:
        if step.value and step.value.strip():
            return resolve_reference(step.value)
        scope = _DEFAULT_SCOPES.get(validation) if validation else None
        if scope is None:
            return None
        return CaptureSource(CaptureKey.of(scope, step.question_code, step.stage))

    async def _assert(self, step: Step) -> Verdict:
        profile = self._settings.grading_profile
        if not profile.allows(step):
            return Verdict(True, f"Skipped by grading profile {profile.value!r}", ErrorCode.SKIPPED)

        validation = step.validation
        store = self._context.store
        if validation in (Validation.HTTP_METHOD, Validation.STATUS_CODE, Validation.BYTE_SIZE):
            meta = store.get_metadata(step.question_code, step.stage)
            if validation is Validation.HTTP_METHOD:
                return self._engine.compare_method(
                    step.http_method or step.target,
                    meta.http_method if meta else None,
                )
            if validation is Validation.STATUS_CODE:
                return self._engine.compare_status(
                    step.status_code or step.target,
                    meta.status_code if meta else None,
                )
            if not self._settings.check_byte_size:
                return Verdict(True, "Byte-size checks are disabled", ErrorCode.SKIPPED)
            return self._engine.compare_byte_size(
                self._expected_size(step), meta.byte_size if meta else None
            )

        source = self._actual_source(step, validation)
        if step.action is Action.COMPARE_JSON:
            return self._engine.compare_json(
                step.target, source, ignore_order=_flag(step.metadata.get("ignore_order"))
            )
        if step.action is Action.COMPARE_CSV:
            return self._engine.compare_csv(
                step.target, source, ignore_order=bool(_flag(step.metadata.get("ignore_order")))
            )
        if step.action is Action.COMPARE_FILE:
            return self._engine.compare_file(step.target, source)
        return self._engine.compare_text(
            step.target, source, case_insensitive=_flag(step.metadata.get("case_insensitive"))
        )

    @staticmethod
    def _expected_size(step: Step) -> Optional[int]:
        if step.byte_size is not None:
            return step.byte_size
        raw = (step.target or "").strip()
        if not raw:
            return None
        try:
            return int(raw)
        except ValueError:
            raise ConfigurationError(f"Step {step.id}: byte size must be an integer, got {raw!r}") from None

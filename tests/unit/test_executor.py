"""Tests for the step executor.

Tests cover:
  - Per-step deadlines and outcome classification
  - Server start: missing executable, crash, readiness probe, alive fallback
  - Client start and input delivery
  - HTTP_REQUEST parsing, status checks and transport failures
  - Assertions against HTTP metadata (status, method, byte size)
  - Default actual-value scopes and explicit capture references
  - Grading-profile skips and blank expectations
  - Proxy enablement and exhaustive action dispatch
"""

from __future__ import annotations

import asyncio

import httpx
import pytest

from grading_harness.capture import HttpMetadata, Scope
from grading_harness.comparison import ComparisonEngine
from grading_harness.context import RunContext
from grading_harness.errors import ConfigurationError, ErrorCode
from grading_harness.executor import _DISPATCH, StepExecutor, parse_http_request
from grading_harness.models import Action, Protocol, Step, StepOutcome
from grading_harness.proxy import ProxyInterceptor
from grading_harness.settings import GradingProfile, HarnessSettings
from grading_harness.supervisor import ProcessRole, ProcessSupervisor


PROMPT_CLIENT = """
    name = input('Enter name: ')
    print(f'Hello {name}')
"""

SLEEPER = """
    import time
    time.sleep(30)
"""

QUITTING_CLIENT = """
    print('Menu', flush=True)
    input()
"""

LISTENING_SERVER = """
    import socket
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind(('127.0.0.1', {port}))
    sock.listen(5)
    print('listening', flush=True)
    while True:
        conn, _ = sock.accept()
        conn.close()
"""


# ── Helpers ───────────────────────────────────────────────────────


def _settings(**overrides) -> HarnessSettings:
    values = dict(
        startup_delay_seconds=0.05,
        server_ready_timeout_seconds=0.5,
        ready_poll_seconds=0.05,
        idle_flush_seconds=0.05,
        output_wait_seconds=2.0,
        kill_grace_seconds=0.5,
        proxy_stop_grace_seconds=0.5,
    )
    values.update(overrides)
    return HarnessSettings(**values)


class Harness:
    """Executor wired to real components, with an optional mock HTTP handler."""

    def __init__(self, settings: HarnessSettings, handler=None) -> None:
        self.settings = settings
        self.context = RunContext()
        self.supervisor = ProcessSupervisor(
            self.context,
            idle_flush_seconds=settings.idle_flush_seconds,
            kill_grace_seconds=settings.kill_grace_seconds,
        )
        self.proxy = ProxyInterceptor(
            self.context,
            public_port=settings.public_port,
            real_port=settings.real_port,
            stop_grace=settings.proxy_stop_grace_seconds,
        )
        self.engine = ComparisonEngine(self.context.store)
        client = None
        if handler is not None:
            client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        self.http_client = client
        self.executor = StepExecutor(
            self.context, self.supervisor, self.proxy, self.engine, settings,
            http_client=client,
        )

    async def run(self, step: Step, **kwargs):
        self.context.move_to(step.question_code, step.stage)
        return await self.executor.execute(step, **kwargs)

    async def close(self) -> None:
        await self.supervisor.stop_all()
        await self.proxy.stop()
        await self.executor.aclose()
        if self.http_client is not None:
            await self.http_client.aclose()


def _step(step_id: str, action: Action, stage: str = '1', **fields) -> Step:
    return Step(id=step_id, question_code='Q1', stage=stage, action=action, **fields)


# =====================================================================
# Deadlines and WAIT
# =====================================================================


class TestWait:

    @pytest.mark.asyncio
    async def test_wait_passes(self):
        harness = Harness(_settings())
        try:
            result = await harness.run(_step('W-1', Action.WAIT, value='20'))
        finally:
            await harness.close()
        assert result.passed
        assert result.outcome is StepOutcome.PASS

    @pytest.mark.asyncio
    async def test_deadline_reports_timeout(self):
        harness = Harness(_settings())
        try:
            result = await harness.run(_step('W-1', Action.WAIT, value='5000'), timeout=0.1)
        finally:
            await harness.close()
        assert not result.passed
        assert result.outcome is StepOutcome.TIMEOUT

    @pytest.mark.asyncio
    async def test_deadline_leaves_client_running(self, make_script):
        script = make_script('client.py', SLEEPER)
        harness = Harness(_settings())
        await harness.supervisor.init(script, None)
        try:
            await harness.supervisor.start_client()
            result = await harness.run(_step('W-1', Action.WAIT, value='5000'), timeout=0.1)
            still_running = harness.supervisor.is_client_running
        finally:
            await harness.close()
        assert result.outcome is StepOutcome.TIMEOUT
        assert still_running
        assert result.error_code is ErrorCode.STEP_TIMEOUT
        assert result.duration_ms < 2000

    @pytest.mark.asyncio
    async def test_invalid_duration_is_error(self):
        harness = Harness(_settings())
        try:
            result = await harness.run(_step('W-1', Action.WAIT, value='soon'))
        finally:
            await harness.close()
        assert result.outcome is StepOutcome.ERROR
        assert result.error_code is ErrorCode.STEP_PARSE_ERROR


# =====================================================================
# Process lifecycle
# =====================================================================


class TestServerStart:

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path):
        harness = Harness(_settings())
        await harness.supervisor.init(None, tmp_path / 'missing.py')
        try:
            result = await harness.run(_step('S-1', Action.SERVER_START))
        finally:
            await harness.close()
        assert result.outcome is StepOutcome.ERROR
        assert result.error_code is ErrorCode.SERVER_EXE_MISSING

    @pytest.mark.asyncio
    async def test_crash_during_startup(self, make_script, free_port):
        script = make_script('server.py', """
            import sys
            print('fatal: cannot bind')
            sys.exit(1)
        """)
        harness = Harness(_settings(protocol=Protocol.TCP, real_port=free_port(),
                                    server_ready_timeout_seconds=3.0))
        await harness.supervisor.init(None, script)
        try:
            result = await harness.run(_step('S-1', Action.SERVER_START))
        finally:
            await harness.close()
        assert not result.passed
        assert result.error_code is ErrorCode.PROCESS_CRASHED
        assert 'exited' in result.message

    @pytest.mark.asyncio
    async def test_alive_fallback_when_probe_unanswered(self, make_script, free_port):
        script = make_script('server.py', SLEEPER)
        harness = Harness(_settings(protocol=Protocol.TCP, real_port=free_port(),
                                    server_ready_timeout_seconds=0.3))
        await harness.supervisor.init(None, script)
        try:
            result = await harness.run(_step('S-1', Action.SERVER_START))
            assert harness.supervisor.is_server_running
        finally:
            await harness.close()
        assert result.passed
        assert 'readiness probe unanswered' in result.message

    @pytest.mark.asyncio
    async def test_ready_when_port_accepts(self, make_script, free_port):
        port = free_port()
        script = make_script('server.py', LISTENING_SERVER.format(port=port))
        harness = Harness(_settings(protocol=Protocol.TCP, real_port=port,
                                    server_ready_timeout_seconds=5.0))
        await harness.supervisor.init(None, script)
        try:
            result = await harness.run(_step('S-1', Action.SERVER_START))
        finally:
            await harness.close()
        assert result.passed
        assert f'listening on port {port}' in result.message


class TestClient:

    @pytest.mark.asyncio
    async def test_start_input_and_assert(self, make_script):
        script = make_script('client.py', PROMPT_CLIENT)
        harness = Harness(_settings())
        await harness.supervisor.init(script, None)
        try:
            started = await harness.run(_step('C-1', Action.CLIENT_START))
            sent = await harness.run(_step('C-2', Action.CLIENT_INPUT, stage='2', value='Bob'))
            while harness.supervisor.is_client_running:
                await asyncio.sleep(0.05)
            await harness.supervisor.stop_client()
            checked = await harness.run(
                _step('OC-OUT-1', Action.COMPARE_TEXT, stage='2', target='Hello Bob')
            )
        finally:
            await harness.close()
        assert started.passed
        assert sent.passed
        assert checked.passed, checked.message

    @pytest.mark.asyncio
    async def test_input_without_client(self):
        harness = Harness(_settings())
        await harness.supervisor.init(None, None)
        try:
            result = await harness.run(_step('C-2', Action.CLIENT_INPUT, value='1'))
        finally:
            await harness.close()
        assert result.passed
        assert 'dropped' in result.message

    @pytest.mark.asyncio
    async def test_input_that_ends_client_passes(self, make_script):
        script = make_script('client.py', QUITTING_CLIENT)
        harness = Harness(_settings())
        await harness.supervisor.init(script, None)
        try:
            await harness.run(_step('C-1', Action.CLIENT_START))
            result = await harness.run(_step('C-2', Action.CLIENT_INPUT, value='quit'))
        finally:
            await harness.close()
        assert result.passed, result.message
        assert result.error_code is ErrorCode.NONE

    @pytest.mark.asyncio
    async def test_client_crash_on_start(self, make_script):
        script = make_script('client.py', """
            import sys
            sys.exit(2)
        """)
        harness = Harness(_settings(startup_delay_seconds=1.0))
        await harness.supervisor.init(script, None)
        try:
            result = await harness.run(_step('C-1', Action.CLIENT_START))
        finally:
            await harness.close()
        assert result.error_code is ErrorCode.PROCESS_CRASHED
        assert 'code 2' in result.message

    @pytest.mark.asyncio
    async def test_wait_for_output_unknown_target(self):
        harness = Harness(_settings())
        try:
            result = await harness.run(_step('W-2', Action.WAIT_FOR_OUTPUT, target='database'))
        finally:
            await harness.close()
        assert result.error_code is ErrorCode.STEP_PARSE_ERROR

    @pytest.mark.asyncio
    async def test_wait_for_output_times_out(self, make_script):
        script = make_script('client.py', SLEEPER)
        harness = Harness(_settings())
        await harness.supervisor.init(script, None)
        try:
            await harness.supervisor.start_client()
            result = await harness.run(
                _step('W-2', Action.WAIT_FOR_OUTPUT, target='client', value='200')
            )
        finally:
            await harness.close()
        assert result.outcome is StepOutcome.TIMEOUT
        assert result.error_code is ErrorCode.STEP_TIMEOUT


# =====================================================================
# HTTP requests
# =====================================================================


def _books(request: httpx.Request) -> httpx.Response:
    if request.url.path == '/books/1':
        return httpx.Response(200, content=b'{"id": 1, "title": "Dune"}')
    return httpx.Response(404, content=b'not found')


class TestHttpRequest:

    def test_parse_full(self):
        assert parse_http_request('get|/books/1|200|Dune') == ('GET', '/books/1', '200', 'Dune')

    def test_parse_minimal(self):
        assert parse_http_request('DELETE|/books/1') == ('DELETE', '/books/1', None, None)

    @pytest.mark.parametrize('value', [None, '', 'GET', '|/books'])
    def test_parse_invalid(self, value):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_http_request(value)
        assert exc_info.value.code is ErrorCode.HTTP_REQUEST_INVALID

    @pytest.mark.asyncio
    async def test_request_passes_and_records(self):
        harness = Harness(_settings(), handler=_books)
        try:
            result = await harness.run(
                _step('H-1', Action.HTTP_REQUEST, value='GET|/books/1|200|dune')
            )
        finally:
            await harness.close()
        assert result.passed, result.message
        metadata = harness.context.store.get_metadata('Q1', '1')
        assert metadata.http_method == 'GET'
        assert metadata.status_code == 200

    @pytest.mark.asyncio
    async def test_relative_url_targets_public_port(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200)

        harness = Harness(_settings(public_port=5123), handler=handler)
        try:
            await harness.run(_step('H-1', Action.HTTP_REQUEST, value='GET|/books?page=2'))
        finally:
            await harness.close()
        assert seen == ['http://127.0.0.1:5123/books?page=2']

    @pytest.mark.asyncio
    async def test_post_body_from_metadata(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen['content_type'] = request.headers.get('content-type')
            seen['body'] = request.content
            return httpx.Response(201, content=b'{"id": 7}')

        harness = Harness(_settings(), handler=handler)
        try:
            result = await harness.run(_step(
                'H-1', Action.HTTP_REQUEST,
                value='POST|/books|201',
                metadata={'body': '{"title": "Emma"}'},
            ))
        finally:
            await harness.close()
        assert result.passed
        assert seen == {'content_type': 'application/json', 'body': b'{"title": "Emma"}'}
        assert harness.context.store.get_metadata('Q1', '1').http_method == 'POST'

    @pytest.mark.asyncio
    async def test_status_mismatch_fails(self):
        harness = Harness(_settings(), handler=_books)
        try:
            result = await harness.run(_step('H-1', Action.HTTP_REQUEST, value='GET|/books/1|201'))
        finally:
            await harness.close()
        assert result.outcome is StepOutcome.FAIL
        assert result.error_code is ErrorCode.STATUS_MISMATCH

    @pytest.mark.asyncio
    async def test_non_success_without_expected_status(self):
        harness = Harness(_settings(), handler=_books)
        try:
            result = await harness.run(_step('H-1', Action.HTTP_REQUEST, value='GET|/missing'))
        finally:
            await harness.close()
        assert result.outcome is StepOutcome.ERROR
        assert result.error_code is ErrorCode.HTTP_NON_SUCCESS

    @pytest.mark.asyncio
    async def test_expected_404_passes(self):
        harness = Harness(_settings(), handler=_books)
        try:
            result = await harness.run(
                _step('H-1', Action.HTTP_REQUEST, value='GET|/missing|NotFound')
            )
        finally:
            await harness.close()
        assert result.passed

    @pytest.mark.asyncio
    async def test_body_contains_miss(self):
        harness = Harness(_settings(), handler=_books)
        try:
            result = await harness.run(
                _step('H-1', Action.HTTP_REQUEST, value='GET|/books/1|200|Emma')
            )
        finally:
            await harness.close()
        assert result.outcome is StepOutcome.FAIL
        assert result.error_code is ErrorCode.TEXT_MISMATCH

    @pytest.mark.asyncio
    async def test_invalid_value(self):
        harness = Harness(_settings(), handler=_books)
        try:
            result = await harness.run(_step('H-1', Action.HTTP_REQUEST, value='GET'))
        finally:
            await harness.close()
        assert result.error_code is ErrorCode.HTTP_REQUEST_INVALID

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError('refused', request=request)

        harness = Harness(_settings(), handler=handler)
        try:
            result = await harness.run(_step('H-1', Action.HTTP_REQUEST, value='GET|/books/1'))
        finally:
            await harness.close()
        assert result.outcome is StepOutcome.ERROR
        assert result.error_code is ErrorCode.HTTP_TRANSPORT_ERROR


# =====================================================================
# Assertions
# =====================================================================


class TestAssertions:

    @pytest.fixture
    def harness(self):
        return Harness(_settings())

    @pytest.mark.asyncio
    async def test_status_numeric_vs_text(self, harness):
        harness.context.store.set_metadata('Q1', '1', HttpMetadata('GET', 200, 26))
        ok = await harness.run(_step('OS-STATUS-1', Action.COMPARE_TEXT, status_code='200'))
        bad = await harness.run(_step('OS-STATUS-2', Action.COMPARE_TEXT, status_code='201'))
        await harness.close()
        assert ok.passed
        assert not bad.passed
        assert bad.error_code is ErrorCode.STATUS_MISMATCH

    @pytest.mark.asyncio
    async def test_method(self, harness):
        harness.context.store.set_metadata('Q1', '1', HttpMetadata('GET', 200, 26))
        ok = await harness.run(_step('OS-METHOD-1', Action.COMPARE_TEXT, http_method='get'))
        bad = await harness.run(_step('OS-METHOD-2', Action.COMPARE_TEXT, http_method='POST'))
        await harness.close()
        assert ok.passed
        assert bad.error_code is ErrorCode.METHOD_MISMATCH

    @pytest.mark.asyncio
    async def test_status_without_exchange(self, harness):
        result = await harness.run(_step('OS-STATUS-1', Action.COMPARE_TEXT, status_code='200'))
        await harness.close()
        assert result.error_code is ErrorCode.ACTUAL_MISSING

    @pytest.mark.asyncio
    async def test_byte_size_disabled_by_default(self, harness):
        harness.context.store.set_metadata('Q1', '1', HttpMetadata('GET', 200, 500))
        result = await harness.run(_step('OS-SIZE-1', Action.COMPARE_TEXT, byte_size=100))
        await harness.close()
        assert result.passed
        assert result.outcome is StepOutcome.SKIP

    @pytest.mark.asyncio
    async def test_byte_size_enabled(self):
        harness = Harness(_settings(check_byte_size=True))
        harness.context.store.set_metadata('Q1', '1', HttpMetadata('GET', 200, 500))
        bad = await harness.run(_step('OS-SIZE-1', Action.COMPARE_TEXT, byte_size=100))
        ok = await harness.run(_step('OS-SIZE-2', Action.COMPARE_TEXT, target='505'))
        await harness.close()
        assert bad.error_code is ErrorCode.BYTE_SIZE_MISMATCH
        assert ok.passed

    @pytest.mark.asyncio
    async def test_default_response_scope(self, harness):
        harness.context.store.replace(Scope.SERVERS_RESPONSE, 'Q1', '1', '{"title": "Dune", "id": 1}')
        result = await harness.run(_step('OS-DATA-1', Action.COMPARE_JSON, target='{"id":1,"title":"Dune"}'))
        await harness.close()
        assert result.passed, result.message

    @pytest.mark.asyncio
    async def test_default_request_scope(self, harness):
        harness.context.store.replace(Scope.SERVERS_REQUEST, 'Q1', '1', '{"title": "Emma"}')
        result = await harness.run(_step('OS-REQ-1', Action.COMPARE_JSON, target='{"title": "Emma"}'))
        await harness.close()
        assert result.passed

    @pytest.mark.asyncio
    async def test_explicit_capture_reference(self, harness):
        harness.context.store.append(Scope.SERVERS, 'Q1', '4', 'GET /books/1\n')
        result = await harness.run(_step(
            'OC-OUT-1', Action.COMPARE_TEXT,
            target='GET /books/1', value='capture://servers/Q1/4',
        ))
        await harness.close()
        assert result.passed

    @pytest.mark.asyncio
    async def test_server_output_not_captured(self, harness):
        result = await harness.run(_step('OS-OUT-1', Action.COMPARE_TEXT, target='GET /books/1'))
        await harness.close()
        assert result.outcome is StepOutcome.FAIL
        assert result.error_code is ErrorCode.ACTUAL_MISSING

    @pytest.mark.asyncio
    async def test_blank_expected_passes(self, harness):
        result = await harness.run(_step('OS-OUT-1', Action.COMPARE_TEXT, target=''))
        await harness.close()
        assert result.passed
        assert result.error_code is ErrorCode.EXPECTED_MISSING

    @pytest.mark.asyncio
    async def test_profile_skips_other_side(self):
        harness = Harness(_settings(grading_profile=GradingProfile.CLIENT))
        result = await harness.run(_step('OS-OUT-1', Action.COMPARE_TEXT, target='anything'))
        await harness.close()
        assert result.passed
        assert result.outcome is StepOutcome.SKIP
        assert result.error_code is ErrorCode.SKIPPED

    @pytest.mark.asyncio
    async def test_mismatch_carries_diff(self, harness):
        harness.context.store.append(Scope.CLIENTS, 'Q1', '1', 'Total: 12\n')
        result = await harness.run(_step('OC-OUT-1', Action.COMPARE_TEXT, target='Total: 10'))
        await harness.close()
        assert result.outcome is StepOutcome.FAIL
        assert result.diff_index == 8
        assert result.to_dict()['error_category'] == 'compare'


# =====================================================================
# Proxy and dispatch
# =====================================================================


class TestProxyStep:

    @pytest.mark.asyncio
    async def test_enable_tcp_relay(self, free_port):
        harness = Harness(_settings(public_port=0, real_port=free_port()))
        try:
            result = await harness.run(_step('P-1', Action.TCP_RELAY, value='TCP'))
            assert harness.proxy.mode is Protocol.TCP
        finally:
            await harness.close()
        assert result.passed
        assert not harness.proxy.running

    @pytest.mark.asyncio
    async def test_default_mode_from_settings(self, free_port):
        harness = Harness(_settings(public_port=0, real_port=free_port()))
        try:
            result = await harness.run(_step('P-1', Action.TCP_RELAY))
            assert harness.proxy.mode is Protocol.HTTP
        finally:
            await harness.close()
        assert result.passed


class TestDispatch:

    def test_every_action_has_a_handler(self):
        assert set(_DISPATCH) == set(Action)
        for name in _DISPATCH.values():
            assert callable(getattr(StepExecutor, name))

    def test_roles_cover_supervisor(self):
        assert {r.value for r in ProcessRole} == {'client', 'server'}

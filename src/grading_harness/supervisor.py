"""Lifecycle management for the client and server processes under test.

The supervisor owns exactly one client and one server process per test case.
Each process gets one pump task per output stream. A pump flushes text into
the capture store whenever it sees a line terminator, or when a partial line
has been pending for ``idle_flush_seconds``. The second rule is how
interactive prompts such as ``"Enter name: "`` get captured before the
process blocks on stdin.

Stopping is cooperative first (terminate the whole process tree via psutil),
then forceful after a grace period (``taskkill /T /F`` on Windows, SIGKILL to
the process group elsewhere).
"""

from __future__ import annotations

import asyncio
import codecs
import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence

import psutil

from .capture import Scope
from .context import RunContext
from .errors import ErrorCode, ProcessError
from .observability.logging import get_logger

logger = get_logger(__name__)

_READ_CHUNK = 4096
_DRAIN_TIMEOUT = 0.5


class ProcessRole(str, Enum):
    CLIENT = "client"
    SERVER = "server"

    @property
    def scope(self) -> Scope:
        return Scope.CLIENTS if self is ProcessRole.CLIENT else Scope.SERVERS

    @property
    def missing_code(self) -> ErrorCode:
        if self is ProcessRole.CLIENT:
            return ErrorCode.CLIENT_EXE_MISSING
        return ErrorCode.SERVER_EXE_MISSING


class OutputWait(str, Enum):
    """Outcome of waiting for a process to produce output."""

    PRODUCED = "produced"
    EXITED = "exited"
    TIMED_OUT = "timed_out"


@dataclass
class ManagedProcess:
    """A running process and its captured output."""

    role: ProcessRole
    process: asyncio.subprocess.Process
    pumps: list[asyncio.Task] = field(default_factory=list)
    chunks: list[str] = field(default_factory=list)
    output_length: int = 0

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    @property
    def output(self) -> str:
        return "".join(self.chunks)


def build_command(path: Path, args: Sequence[str] = ()) -> list[str]:
    """Command line for an executable, picking a launcher by extension."""
    suffix = path.suffix.lower()
    if suffix == ".py":
        return [sys.executable, "-u", str(path), *args]
    if suffix == ".dll":
        return ["dotnet", str(path), *args]
    if suffix == ".jar":
        return ["java", "-jar", str(path), *args]
    return [str(path), *args]


class ProcessSupervisor:
    """Spawns, monitors and kills the client and server processes."""

    def __init__(
        self,
        context: RunContext,
        *,
        idle_flush_seconds: float = 0.1,
        kill_grace_seconds: float = 1.0,
    ) -> None:
        self._context = context
        self._idle_flush = idle_flush_seconds
        self._kill_grace = kill_grace_seconds
        self._paths: dict[ProcessRole, Optional[Path]] = {
            ProcessRole.CLIENT: None,
            ProcessRole.SERVER: None,
        }
        self._args: dict[ProcessRole, tuple[str, ...]] = {}
        self._processes: dict[ProcessRole, ManagedProcess] = {}

    async def init(
        self,
        client_path: Optional[Path],
        server_path: Optional[Path],
        *,
        client_args: Sequence[str] = (),
        server_args: Sequence[str] = (),
    ) -> None:
        """Reset owned handles and buffers for a new test case."""
        if self._processes:
            logger.warning(
                "supervisor_reset_with_live_processes",
                roles=[r.value for r in self._processes],
            )
            await self.stop_all()
        self._paths[ProcessRole.CLIENT] = Path(client_path) if client_path else None
        self._paths[ProcessRole.SERVER] = Path(server_path) if server_path else None
        self._args = {
            ProcessRole.CLIENT: tuple(client_args),
            ProcessRole.SERVER: tuple(server_args),
        }

    # ── Start ──────────────────────────────────────────────────────

    async def start_server(self) -> ManagedProcess:
        return await self._start(ProcessRole.SERVER)

    async def start_client(self) -> ManagedProcess:
        return await self._start(ProcessRole.CLIENT)

    async def _start(self, role: ProcessRole) -> ManagedProcess:
        existing = self._processes.get(role)
        if existing is not None and existing.running:
            logger.info("process_already_running", role=role.value, pid=existing.pid)
            return existing

        path = self._paths.get(role)
        if path is None or not path.is_file():
            raise ProcessError(
                f"{role.value.capitalize()} executable not found: {path}",
                code=role.missing_code,
            )

        command = build_command(path, self._args.get(role, ()))
        kwargs: dict = {}
        if os.name == "nt":
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(path.parent),
                **kwargs,
            )
        except OSError as exc:
            raise ProcessError(
                f"Failed to start {role.value}: {exc}",
                code=ErrorCode.PROCESS_SPAWN_FAILED,
            ) from exc

        managed = ManagedProcess(role=role, process=process)
        managed.pumps = [
            asyncio.create_task(self._pump(managed, process.stdout)),
            asyncio.create_task(self._pump(managed, process.stderr)),
        ]
        self._processes[role] = managed
        logger.info("process_started", role=role.value, pid=process.pid, command=command)
        return managed

    # ── Output capture ─────────────────────────────────────────────

    async def _pump(self, managed: ManagedProcess, stream: asyncio.StreamReader) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        pending_since = 0.0
        while True:
            timeout = None
            if pending:
                timeout = max(0.0, pending_since + self._idle_flush - time.monotonic())
            try:
                chunk = await asyncio.wait_for(stream.read(_READ_CHUNK), timeout)
            except asyncio.TimeoutError:
                self._publish(managed, pending)
                pending = ""
                continue

            if not chunk:
                pending += decoder.decode(b"", final=True)
                if pending:
                    self._publish(managed, pending)
                return

            if not pending:
                pending_since = time.monotonic()
            pending += decoder.decode(chunk)
            newline = pending.rfind("\n")
            if newline >= 0:
                self._publish(managed, pending[: newline + 1])
                pending = pending[newline + 1 :]
                pending_since = time.monotonic()

    def _publish(self, managed: ManagedProcess, text: str) -> None:
        managed.chunks.append(text)
        managed.output_length += len(text)
        self._context.store.append(
            managed.role.scope,
            self._context.question_code,
            self._context.stage,
            text,
        )

    def get_output(self, role: ProcessRole) -> str:
        managed = self._processes.get(role)
        return managed.output if managed else ""

    def output_length(self, role: ProcessRole) -> int:
        managed = self._processes.get(role)
        return managed.output_length if managed else 0

    def exit_code(self, role: ProcessRole) -> Optional[int]:
        managed = self._processes.get(role)
        return managed.process.returncode if managed else None

    def is_running(self, role: ProcessRole) -> bool:
        managed = self._processes.get(role)
        return managed is not None and managed.running

    @property
    def is_client_running(self) -> bool:
        return self.is_running(ProcessRole.CLIENT)

    @property
    def is_server_running(self) -> bool:
        return self.is_running(ProcessRole.SERVER)

    # ── Interaction ────────────────────────────────────────────────

    async def send_input(self, text: str, role: ProcessRole = ProcessRole.CLIENT) -> bool:
        """Write one line to the process's stdin. Returns False if it exited."""
        managed = self._processes.get(role)
        if managed is None or not managed.running or managed.process.stdin is None:
            logger.warning("input_dropped", role=role.value, reason="process not running")
            return False
        try:
            managed.process.stdin.write((text + "\n").encode("utf-8"))
            await managed.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning("input_dropped", role=role.value, reason=str(exc))
            return False
        logger.debug("input_sent", role=role.value, length=len(text))
        return True

    async def wait_for_output(
        self,
        role: ProcessRole,
        timeout: float,
        *,
        baseline: Optional[int] = None,
        poll_seconds: float = 0.05,
    ) -> OutputWait:
        """Wait until the output grows past ``baseline``, the process exits, or timeout."""
        managed = self._processes.get(role)
        if managed is None:
            return OutputWait.EXITED
        start = managed.output_length if baseline is None else baseline
        deadline = time.monotonic() + timeout

        while True:
            if managed.output_length > start:
                return OutputWait.PRODUCED
            if not managed.running:
                # Let the pumps drain whatever the process wrote before exiting.
                await asyncio.wait(managed.pumps, timeout=_DRAIN_TIMEOUT)
                if managed.output_length > start:
                    return OutputWait.PRODUCED
                return OutputWait.EXITED
            if time.monotonic() >= deadline:
                return OutputWait.TIMED_OUT
            await asyncio.sleep(poll_seconds)

    # ── Stop ───────────────────────────────────────────────────────

    async def stop_client(self) -> None:
        await self._stop(ProcessRole.CLIENT)

    async def stop_server(self) -> None:
        await self._stop(ProcessRole.SERVER)

    async def stop_all(self) -> None:
        """Stop both processes. Raises the first kill failure after trying both."""
        failure: Optional[ProcessError] = None
        for role in (ProcessRole.CLIENT, ProcessRole.SERVER):
            try:
                await self._stop(role)
            except ProcessError as exc:
                failure = failure or exc
        if failure is not None:
            raise failure

    async def _stop(self, role: ProcessRole) -> None:
        managed = self._processes.pop(role, None)
        if managed is None:
            return
        try:
            if managed.running:
                _terminate_tree(managed.pid)
                try:
                    await asyncio.wait_for(managed.process.wait(), self._kill_grace)
                except asyncio.TimeoutError:
                    logger.warning("kill_escalated", role=role.value, pid=managed.pid)
                    await _force_kill(managed.pid)
                    try:
                        await asyncio.wait_for(managed.process.wait(), self._kill_grace)
                    except asyncio.TimeoutError:
                        raise ProcessError(
                            f"Failed to kill {role.value} process {managed.pid}",
                            code=ErrorCode.KILL_FAILED,
                        ) from None
            logger.info(
                "process_stopped",
                role=role.value,
                pid=managed.pid,
                returncode=managed.process.returncode,
            )
        finally:
            await self._dispose(managed)

    async def _dispose(self, managed: ManagedProcess) -> None:
        stdin = managed.process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()
        _, pending = await asyncio.wait(managed.pumps, timeout=_DRAIN_TIMEOUT)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


def _terminate_tree(pid: int) -> None:
    """Ask a process and all of its descendants to terminate."""
    try:
        parent = psutil.Process(pid)
        procs = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        return
    for proc in procs:
        try:
            proc.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue


async def _force_kill(pid: int) -> None:
    """Platform-specific forceful kill of a whole process tree."""
    if os.name == "nt":
        killer = await asyncio.create_subprocess_exec(
            "taskkill", "/PID", str(pid), "/T", "/F",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await killer.wait()
        return

    try:
        children = psutil.Process(pid).children(recursive=True)
    except psutil.NoSuchProcess:
        children = []
    try:
        os.killpg(os.getpgid(pid), signal.SIGKILL)
    except ProcessLookupError:
        pass
    for child in children:
        try:
            child.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue

"""Harness configuration settings.

HarnessSettings is the single configuration object accepted by the
orchestrator, executor, supervisor and proxy. It is a plain frozen dataclass
so tests can construct it directly; ``from_env`` is the production factory.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from .models import Protocol, Step, StepOrigin, Validation

MIN_STEP_TIMEOUT_SECONDS = 1.0


class GradingProfile(str, Enum):
    """Which steps are graded. Excluded steps pass as skipped."""

    DEFAULT = "default"
    CLIENT = "client"
    SERVER = "server"
    CONSOLE = "console"
    HTTP = "http"

    def allows(self, step: Step) -> bool:
        if self is GradingProfile.DEFAULT:
            return True
        if self is GradingProfile.CLIENT:
            return step.origin is not StepOrigin.SERVER
        if self is GradingProfile.SERVER:
            return step.origin is not StepOrigin.CLIENT
        validation = step.validation
        if validation is None:
            return True
        if self is GradingProfile.CONSOLE:
            return validation in _CONSOLE_VALIDATIONS
        return validation not in _CONSOLE_VALIDATIONS


_CONSOLE_VALIDATIONS = frozenset({Validation.CLIENT_OUTPUT, Validation.SERVER_OUTPUT})


def _env_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(env: dict[str, str], key: str, default: float) -> float:
    raw = env.get(key, "").strip()
    return float(raw) if raw else default


def _env_int(env: dict[str, str], key: str, default: int) -> int:
    raw = env.get(key, "").strip()
    return int(raw) if raw else default


def _env_path(raw: Optional[str]) -> Optional[Path]:
    return Path(raw) if raw and raw.strip() else None


@dataclass(frozen=True, slots=True)
class HarnessSettings:
    """Configuration for one grading run.

    All timing fields are in seconds.
    """

    # ── Processes under test ───────────────────────────────────────
    client_path: Optional[Path] = None
    """Client executable (``.py``, ``.dll``, ``.jar`` or native)."""

    server_path: Optional[Path] = None
    """Server executable."""

    config_file_name: str = "appsettings.json"
    """Name under which config templates are installed beside executables."""

    # ── Network ────────────────────────────────────────────────────
    protocol: Protocol = Protocol.HTTP
    """Proxy mode used when a step enables the proxy without naming one."""

    proxy_host: str = "127.0.0.1"
    """Interface the proxy listens on and the real server is reached at."""

    public_port: int = 5000
    """Well-known port the client talks to."""

    real_port: int = 5001
    """Port the real server listens on."""

    health_path: str = "/healthz"
    """Readiness probe path on the real server (HTTP protocol only)."""

    forward_timeout_seconds: float = 30.0
    """Upper bound for one forwarded HTTP exchange."""

    proxy_stop_grace_seconds: float = 2.0
    """How long stopping the proxy waits for in-flight handlers."""

    # ── Timing ─────────────────────────────────────────────────────
    step_timeout_seconds: float = 10.0
    """Per-step deadline. Values below one second are raised to one."""

    stage_settle_seconds: float = 0.5
    """Pause inserted when consecutive steps change stage."""

    assertion_settle_seconds: float = 1.0
    """Pause inserted before the first assertion after an interaction."""

    idle_flush_seconds: float = 0.1
    """Idle interval after which an unterminated output line is flushed."""

    output_wait_seconds: float = 3.0
    """How long client input waits for the client to respond."""

    startup_delay_seconds: float = 0.5
    """Pause after a process starts before checking it is still alive."""

    server_ready_timeout_seconds: float = 5.0
    """How long the readiness probe is polled after starting the server."""

    ready_poll_seconds: float = 0.1
    """Interval between readiness probes."""

    kill_grace_seconds: float = 1.0
    """Grace period between cooperative and forceful kill."""

    # ── Comparison ─────────────────────────────────────────────────
    case_insensitive: bool = True
    """Fold case before comparing text."""

    json_ignore_order: bool = True
    """Sort JSON arrays before comparing."""

    byte_size_tolerance: int = 10
    """Absolute byte-size tolerance."""

    byte_size_tolerance_pct: float = 0.05
    """Relative byte-size tolerance."""

    check_byte_size: bool = False
    """Enforce byte-size assertions. Off by default."""

    grading_profile: GradingProfile = GradingProfile.DEFAULT
    """Which steps are graded."""

    @property
    def effective_step_timeout(self) -> float:
        return max(self.step_timeout_seconds, MIN_STEP_TIMEOUT_SECONDS)

    @property
    def upstream_base_url(self) -> str:
        return f"http://{self.proxy_host}:{self.real_port}"

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        for name in ("public_port", "real_port"):
            port = getattr(self, name)
            if not 0 <= port <= 65535:
                errors.append(f"{name} must be between 0 and 65535, got {port}")
        if self.public_port and self.public_port == self.real_port:
            errors.append("public_port and real_port must differ")
        for name in (
            "stage_settle_seconds",
            "assertion_settle_seconds",
            "idle_flush_seconds",
            "output_wait_seconds",
            "kill_grace_seconds",
        ):
            if getattr(self, name) < 0:
                errors.append(f"{name} must not be negative")
        if self.byte_size_tolerance < 0 or self.byte_size_tolerance_pct < 0:
            errors.append("byte size tolerances must not be negative")
        for name in ("client_path", "server_path"):
            path = getattr(self, name)
            if path is not None and not path.is_file():
                errors.append(f"{name} does not exist: {path}")
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> HarnessSettings:
        """Build settings from ``GRADER_*`` environment variables."""
        if env is None:
            env = dict(os.environ)
        defaults = cls()

        return cls(
            client_path=_env_path(env.get("GRADER_CLIENT_PATH")),
            server_path=_env_path(env.get("GRADER_SERVER_PATH")),
            config_file_name=env.get("GRADER_CONFIG_FILE_NAME", defaults.config_file_name),
            protocol=Protocol.parse(env.get("GRADER_PROTOCOL"), default=defaults.protocol),
            proxy_host=env.get("GRADER_PROXY_HOST", defaults.proxy_host),
            public_port=_env_int(env, "GRADER_PUBLIC_PORT", defaults.public_port),
            real_port=_env_int(env, "GRADER_REAL_PORT", defaults.real_port),
            health_path=env.get("GRADER_HEALTH_PATH", defaults.health_path),
            forward_timeout_seconds=_env_float(
                env, "GRADER_FORWARD_TIMEOUT", defaults.forward_timeout_seconds
            ),
            step_timeout_seconds=_env_float(
                env, "GRADER_STEP_TIMEOUT", defaults.step_timeout_seconds
            ),
            stage_settle_seconds=_env_float(
                env, "GRADER_STAGE_SETTLE", defaults.stage_settle_seconds
            ),
            assertion_settle_seconds=_env_float(
                env, "GRADER_ASSERTION_SETTLE", defaults.assertion_settle_seconds
            ),
            idle_flush_seconds=_env_float(
                env, "GRADER_IDLE_FLUSH", defaults.idle_flush_seconds
            ),
            output_wait_seconds=_env_float(
                env, "GRADER_OUTPUT_WAIT", defaults.output_wait_seconds
            ),
            startup_delay_seconds=_env_float(
                env, "GRADER_STARTUP_DELAY", defaults.startup_delay_seconds
            ),
            server_ready_timeout_seconds=_env_float(
                env, "GRADER_READY_TIMEOUT", defaults.server_ready_timeout_seconds
            ),
            kill_grace_seconds=_env_float(
                env, "GRADER_KILL_GRACE", defaults.kill_grace_seconds
            ),
            case_insensitive=_env_bool(
                env.get("GRADER_CASE_INSENSITIVE"), defaults.case_insensitive
            ),
            json_ignore_order=_env_bool(
                env.get("GRADER_JSON_IGNORE_ORDER"), defaults.json_ignore_order
            ),
            check_byte_size=_env_bool(
                env.get("GRADER_CHECK_BYTE_SIZE"), defaults.check_byte_size
            ),
            grading_profile=GradingProfile(
                env.get("GRADER_PROFILE", defaults.grading_profile.value).strip().lower()
            ),
        )

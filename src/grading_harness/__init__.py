"""Black-box grading harness for client/server program pairs.

Launches a client and a server as separate processes, intercepts the traffic
between them, captures their console output, and grades the evidence against
expected fixtures with fuzzy matching.

Example:
    from pathlib import Path
    from grading_harness import HarnessSettings, SuiteOrchestrator, load_suite

    suite = load_suite(Path('suite.json'))
    settings = HarnessSettings(
        client_path=Path('build/client.py'),
        server_path=Path('build/server.py'),
        protocol=suite.protocol,
    )
    orchestrator = SuiteOrchestrator(settings)
    result = await orchestrator.run_suite(suite)
"""

# Capture
from .capture import CaptureKey, CaptureStore, HttpMetadata, Scope
from .context import RunContext

# Core components
from .comparison import ComparisonEngine, Verdict
from .executor import StepExecutor
from .orchestrator import CaseState, SuiteOrchestrator
from .proxy import ProxyInterceptor
from .supervisor import OutputWait, ProcessRole, ProcessSupervisor

# Models and configuration
from .errors import ErrorCode, HarnessError
from .models import (
    Action,
    CaseResult,
    Protocol,
    Step,
    StepOutcome,
    StepResult,
    SuiteDefinition,
    SuiteResult,
    TestCaseDefinition,
)
from .settings import GradingProfile, HarnessSettings
from .suite_loader import load_suite

__all__ = [
    'Action',
    'CaptureKey',
    'CaptureStore',
    'CaseResult',
    'CaseState',
    'ComparisonEngine',
    'ErrorCode',
    'GradingProfile',
    'HarnessError',
    'HarnessSettings',
    'HttpMetadata',
    'OutputWait',
    'ProcessRole',
    'ProcessSupervisor',
    'Protocol',
    'ProxyInterceptor',
    'RunContext',
    'Scope',
    'Step',
    'StepExecutor',
    'StepOutcome',
    'StepResult',
    'SuiteDefinition',
    'SuiteOrchestrator',
    'SuiteResult',
    'TestCaseDefinition',
    'Verdict',
    'load_suite',
]

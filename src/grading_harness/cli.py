"""Command-line entry point.

Usage::

    # Grade a submission against a suite:
    grading-harness run suite.json --client build/client.py --server build/server.py

    # Write per-case JSON results and an index:
    grading-harness run suite.json --output results/

    # Print JSON instead of text:
    grading-harness run suite.json --format json

Exit codes: 0 when every case passed, 1 when any case failed, 2 when the
suite or configuration could not be loaded.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import sys
from pathlib import Path
from typing import Optional, Sequence

from .environment import ConfigTemplateInstaller
from .errors import ConfigurationError, SuiteLoadError
from .models import Protocol, StepOutcome, SuiteResult
from .observability.logging import configure_logging, get_logger
from .orchestrator import SuiteOrchestrator
from .report import ReportWriter
from .settings import GradingProfile, HarnessSettings
from .suite_loader import load_suite

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_LOAD_ERROR = 2


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='grading-harness',
        description='Grade a client/server submission against a test suite.',
    )
    sub = parser.add_subparsers(dest='command', required=True)

    run = sub.add_parser('run', help='Run a suite')
    run.add_argument('suite', type=Path, help='Path to the JSON suite file')
    run.add_argument('--client', type=Path, help='Client executable')
    run.add_argument('--server', type=Path, help='Server executable')
    run.add_argument('--output', type=Path, help='Directory for JSON results')
    run.add_argument('--templates', type=Path, help='Directory of per-case config templates')
    run.add_argument(
        '--protocol',
        choices=[p.value for p in Protocol],
        help='Proxy mode (defaults to the suite protocol)',
    )
    run.add_argument('--timeout', type=float, help='Per-step timeout in seconds')
    run.add_argument(
        '--profile',
        choices=[p.value for p in GradingProfile],
        help='Restrict which steps are graded',
    )
    run.add_argument('--case', action='append', default=[], help='Only run the named case (repeatable)')
    run.add_argument(
        '--format',
        dest='output_format',
        choices=['text', 'json'],
        default='text',
        help='Result output format',
    )
    run.add_argument('--log-level', help='DEBUG, INFO, WARNING or ERROR')
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace, suite_protocol: Protocol) -> HarnessSettings:
    """Environment settings overridden by command-line arguments."""
    settings = HarnessSettings.from_env()
    overrides: dict = {'protocol': Protocol(args.protocol) if args.protocol else suite_protocol}
    if args.client is not None:
        overrides['client_path'] = args.client
    if args.server is not None:
        overrides['server_path'] = args.server
    if args.timeout is not None:
        overrides['step_timeout_seconds'] = args.timeout
    if args.profile is not None:
        overrides['grading_profile'] = GradingProfile(args.profile)
    settings = dataclasses.replace(settings, **overrides)

    errors = settings.validate()
    if errors:
        raise ConfigurationError('; '.join(errors))
    return settings


def print_text_results(result: SuiteResult) -> None:
    """Print human-readable results."""
    for case in result.case_results:
        icon = '\u2714' if case.all_passed else '\u2718'
        print(f'\n{icon} {case.summary()}')
        if case.setup_error:
            print(f'      setup: {case.setup_error}')
        for step in case.step_results:
            if step.outcome is StepOutcome.PASS:
                marker = '  \u2714'
            elif step.outcome is StepOutcome.SKIP:
                marker = '  \u23E9'
            else:
                marker = '  \u2718'
            print(f'{marker} {step.step.id} [{step.step.action.value}] {step.message}')
            if step.diff_index is not None:
                print(f'      expected: {step.expected_excerpt!r}')
                print(f'      actual:   {step.actual_excerpt!r}')

    print(f'\n{"=" * 60}')
    summary_icon = '\u2714' if result.all_passed else '\u2718'
    print(f'{summary_icon} {result.suite_name}: '
          f'{result.points_awarded:g}/{result.points_possible:g} points '
          f'across {len(result.case_results)} cases')


def print_json_results(result: SuiteResult) -> None:
    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))


async def run(args: argparse.Namespace) -> int:
    try:
        suite = load_suite(args.suite)
        settings = build_settings(args, suite.protocol)
    except (SuiteLoadError, ConfigurationError) as exc:
        print(f'ERROR: {exc.message}', file=sys.stderr)
        return EXIT_LOAD_ERROR

    if args.case:
        wanted = set(args.case)
        cases = tuple(c for c in suite.cases if c.name in wanted)
        if not cases:
            print(f'ERROR: No cases named {sorted(wanted)} in {suite.name}', file=sys.stderr)
            return EXIT_LOAD_ERROR
        suite = dataclasses.replace(suite, cases=cases)

    environment = None
    if args.templates is not None:
        environment = ConfigTemplateInstaller(
            templates_root=args.templates,
            client_path=settings.client_path,
            server_path=settings.server_path,
            config_file_name=settings.config_file_name,
        )

    orchestrator = SuiteOrchestrator(settings, environment=environment)
    try:
        result = await orchestrator.run_suite(suite)
    finally:
        await orchestrator.aclose()

    if args.output is not None:
        writer = ReportWriter(args.output)
        for case in result.case_results:
            writer.write_case(case)
        writer.build_index()

    if args.output_format == 'json':
        print_json_results(result)
    else:
        print_text_results(result)

    return EXIT_OK if result.all_passed else EXIT_FAILED


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(level=args.log_level)
    return asyncio.run(run(args))


if __name__ == '__main__':
    sys.exit(main())

"""Command-line entry points.

Usage::

    # Run the onboarding scenarios against the reference system:
    python -m ephemeral_harness selfcheck

    # On a free port, writing a JSON report:
    python -m ephemeral_harness selfcheck --port 0 --report artifacts/selfcheck.json

    # Serve the reference system behind the harness routes (foreground):
    python -m ephemeral_harness serve --port 8765

Exit status of ``selfcheck``: 0 all cases passed, 1 some case failed,
2 the suite aborted or could not start.
"""

from __future__ import annotations

import argparse
import dataclasses
import sys
from pathlib import Path

import uvicorn

from .errors import HarnessError, SuiteAborted
from .isolation import DataIsolationManager
from .namespace import TestNamespace
from .observability import configure_logging
from .probe import create_harness_app
from .reference import harness_target
from .reference.scenarios import SCENARIOS
from .report import SuiteReport
from .sequencer import SuiteSequencer
from .settings import HarnessSettings

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ABORTED = 2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='ephemeral_harness',
        description='Ephemeral integration-test harness.',
    )
    parser.add_argument('--port', type=int, help='Listener port (0 = any free port)')
    parser.add_argument('--host', help='Listener host')
    parser.add_argument('--namespace', help='Namespace prefix for test-owned records')
    parser.add_argument('--store-url', help='memory:// or sqlite:///path')
    parser.add_argument(
        '--log-format', choices=('json', 'console'), help='Log rendering',
    )
    sub = parser.add_subparsers(dest='command', required=True)

    check = sub.add_parser('selfcheck', help='Run onboarding scenarios against the reference system')
    check.add_argument(
        '--scenario',
        action='append',
        default=[],
        help='Run only this scenario (repeatable)',
    )
    check.add_argument('--report', type=Path, help='Write a JSON report here')
    check.add_argument(
        '--json',
        action='store_true',
        dest='json_output',
        help='Print the report as JSON',
    )

    serve = sub.add_parser('serve', help='Serve the reference system in the foreground')
    serve.add_argument(
        '--delay',
        type=float,
        default=0.0,
        help='Per-message processing delay in seconds',
    )
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> HarnessSettings:
    """Environment settings with command-line overrides applied."""
    overrides = {
        'port': args.port,
        'host': args.host,
        'namespace_prefix': args.namespace,
        'store_url': args.store_url,
        'log_format': args.log_format,
    }
    return dataclasses.replace(
        HarnessSettings.from_env(),
        **{k: v for k, v in overrides.items() if v is not None},
    )


def print_text_report(report: SuiteReport) -> None:
    for case in report.cases:
        icon = '✔' if case.passed else '✘'
        print(f'{icon} {case.name} [{case.outcome.value}] ({case.duration_ms:.0f}ms)')
        if case.error_detail:
            print(f'      {case.error_detail}')
    print(f'\n{"=" * 60}')
    failed = report.failed_cases()
    if report.aborted:
        print(f'✘ Suite aborted: {report.aborted}')
    print(f'{len(report.cases) - len(failed)} passed, {len(failed)} not passed '
          f'across {len(report.cases)} cases')


def run_selfcheck(
    settings: HarnessSettings,
    scenario_names: list[str] | None = None,
) -> SuiteReport:
    """Run reference scenarios in one suite and report on them."""
    names = scenario_names or list(SCENARIOS)
    unknown = [n for n in names if n not in SCENARIOS]
    if unknown:
        raise ValueError(
            f'unknown scenario(s) {unknown}; available: {", ".join(SCENARIOS)}'
        )

    target = harness_target(settings)
    sequencer = SuiteSequencer(target, settings=settings)
    aborted: str | None = None
    try:
        with sequencer.suite() as session:
            for name in names:
                try:
                    with session.test_case(name) as h:
                        SCENARIOS[name](h)
                except SuiteAborted:
                    raise
                except Exception:
                    # Recorded as the case outcome; keep running the suite.
                    continue
    except SuiteAborted as exc:
        aborted = str(exc)
    finally:
        target.close()

    return SuiteReport.from_results(
        sequencer.results,
        aborted=aborted,
        metadata={
            'namespace': settings.namespace_prefix,
            'store_url': settings.store_url,
        },
    )


def selfcheck(args: argparse.Namespace, settings: HarnessSettings) -> int:
    try:
        report = run_selfcheck(settings, args.scenario)
    except (HarnessError, ValueError) as exc:
        print(f'ERROR: {exc}', file=sys.stderr)
        return EXIT_ABORTED

    if args.report:
        report.write(args.report)
    if args.json_output:
        print(report.to_json())
    else:
        print_text_report(report)

    if report.aborted:
        return EXIT_ABORTED
    return EXIT_OK if report.overall_passed else EXIT_FAILED


def serve(args: argparse.Namespace, settings: HarnessSettings) -> int:
    target = harness_target(settings, processing_delay=args.delay)
    isolation = DataIsolationManager(
        target.store, target.schema, TestNamespace(settings.namespace_prefix),
    )
    app = create_harness_app(target.system, isolation)
    try:
        uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
    finally:
        target.close()
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = settings_from_args(args)
    errors = settings.validate()
    if errors:
        for error in errors:
            print(f'ERROR: {error}', file=sys.stderr)
        return EXIT_ABORTED

    configure_logging(
        level=settings.log_level, json_output=settings.log_format == 'json',
    )
    if args.command == 'selfcheck':
        return selfcheck(args, settings)
    return serve(args, settings)

"""Machine-readable suite report.

Aggregates per-case results into one report with metadata and a summary
verdict, for CI artifacts and the ``selfcheck`` command.

Usage::

    report = SuiteReport.from_results(sequencer.results, run_id='run-abc')
    output = report.to_dict()
    report.write(Path('artifacts/harness-run.json'))
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from .sequencer import CaseOutcome, CaseResult


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _generate_run_id() -> str:
    return f'run-{uuid.uuid4().hex[:12]}'


@dataclass(frozen=True, slots=True)
class SuiteReport:
    """Report of one suite run.

    Attributes:
        run_id: Unique identifier for this run.
        created_at: ISO-8601 timestamp of report creation.
        cases: Per-case results, in execution order.
        aborted: Reason the suite aborted, if it did.
        metadata: Optional key-value metadata (namespace, base_url, etc.).
    """

    run_id: str
    created_at: str
    cases: tuple[CaseResult, ...]
    aborted: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_results(
        results: Iterable[CaseResult],
        *,
        run_id: str = '',
        aborted: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SuiteReport:
        return SuiteReport(
            run_id=run_id or _generate_run_id(),
            created_at=_now_iso(),
            cases=tuple(results),
            aborted=aborted,
            metadata=metadata or {},
        )

    def count(self, outcome: CaseOutcome) -> int:
        return sum(1 for case in self.cases if case.outcome == outcome)

    @property
    def overall_passed(self) -> bool:
        """True if the suite completed and every case passed."""
        return self.aborted is None and all(case.passed for case in self.cases)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return {
            'run_id': self.run_id,
            'created_at': self.created_at,
            'overall_passed': self.overall_passed,
            'aborted': self.aborted,
            'summary': {
                'cases': len(self.cases),
                **{outcome.value: self.count(outcome) for outcome in CaseOutcome},
            },
            'metadata': self.metadata,
            'cases': [case.to_dict() for case in self.cases],
        }

    def to_json(self, *, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def write(self, path: Path) -> None:
        """Write the report to a JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_json(), encoding='utf-8')

    def failed_cases(self) -> list[CaseResult]:
        """Every case that did not pass."""
        return [case for case in self.cases if not case.passed]


__all__ = ['SuiteReport']

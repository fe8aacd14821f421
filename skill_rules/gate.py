"""Release gate aggregation."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from skill_rules.checks.base import Finding, Severity


@dataclass(slots=True)
class GateResult:
    """Pass/fail decision over the full finding set."""

    passed: bool
    blocking_findings: list[Finding] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def to_dict(self) -> dict[str, object]:
        return {
            "passed": self.passed,
            "blocking": len(self.blocking_findings),
            "counts": dict(self.counts),
        }


def evaluate(findings_by_source: Mapping[str, Sequence[Finding]]) -> GateResult:
    """Pass only when no source reported a P0 or P1 finding."""
    counts = {severity.value: 0 for severity in Severity}
    blocking: list[Finding] = []
    for findings in findings_by_source.values():
        for finding in findings:
            counts[finding.severity.value] += 1
            if finding.severity.blocking:
                blocking.append(finding)
    return GateResult(passed=not blocking, blocking_findings=blocking, counts=counts)

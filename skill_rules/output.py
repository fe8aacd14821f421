"""Output rendering."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

import click

from skill_rules import __version__
from skill_rules.checks.base import Finding, Severity
from skill_rules.pipeline import ValidationReport

SEVERITY_COLORS = {
    Severity.P0: ("red", True),
    Severity.P1: ("red", False),
    Severity.P2: ("yellow", False),
    Severity.P3: ("cyan", False),
}


def render_human(report: ValidationReport, *, notes: list[str] | None = None) -> str:
    """Render findings grouped by severity, then skill, followed by the gate line."""
    lines: list[str] = []
    skills = ", ".join(report.skills) if report.skills else "(none)"
    lines.append(click.style(f"Skills checked: {skills}", bold=True))

    findings = report.findings
    if not findings:
        lines.append("No findings.")

    for severity in Severity:
        grouped = [finding for finding in findings if finding.severity is severity]
        if not grouped:
            continue
        color, bold = SEVERITY_COLORS[severity]
        lines.append(click.style(f"{severity.value} ({len(grouped)}):", fg=color, bold=bold))
        for skill_name in sorted({finding.skill_name for finding in grouped}):
            lines.append(f"  {skill_name}")
            for finding in grouped:
                if finding.skill_name != skill_name:
                    continue
                lines.append(f"    - {_describe(finding)}")
                for item in finding.evidence:
                    lines.append(f"        {item}")

    for note in notes or []:
        lines.append(note)

    gate = report.gate
    counts = " ".join(f"{name}={count}" for name, count in gate.counts.items())
    if gate.passed:
        lines.append(click.style(f"Gate: PASS ({counts})", fg="green", bold=True))
    else:
        lines.append(
            click.style(
                f"Gate: FAIL, {len(gate.blocking_findings)} blocking ({counts})",
                fg="red",
                bold=True,
            )
        )
    return "\n".join(lines)


def render_json(
    report: ValidationReport,
    *,
    command: str,
    extra: dict[str, Any] | None = None,
) -> str:
    """Render stable JSON output for CI and automation."""
    return json.dumps(build_json_payload(report, command=command, extra=extra), sort_keys=True)


def build_json_payload(
    report: ValidationReport,
    *,
    command: str,
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    meta: dict[str, Any] = {
        "command": command,
        "generated_at": datetime.now(tz=UTC)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z"),
        "skills": list(report.skills),
        "version": __version__,
    }
    payload: dict[str, Any] = {
        "gate": report.gate.to_dict(),
        "findings": [finding.to_dict() for finding in report.findings],
        "sources": {
            source: len(findings) for source, findings in report.findings_by_source.items()
        },
        "meta": meta,
    }
    if extra:
        payload.update(extra)
    return payload


def _describe(finding: Finding) -> str:
    subject = f"{finding.rule_id}: " if finding.rule_id else ""
    return f"[{finding.checker_name}] {subject}{finding.message}"

"""Validation and build orchestration."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from skill_rules import __version__
from skill_rules.checks.base import Checker, Finding
from skill_rules.compiler import (
    COMPILER_NAME,
    ArtifactFilenames,
    CompiledArtifact,
    compile_skill,
    detect_drift,
    write_artifacts,
)
from skill_rules.gate import GateResult, evaluate
from skill_rules.rule_parser import RuleParser
from skill_rules.skill_loader import Skill


class BuildMode(StrEnum):
    """Whether compilation waits for a passing gate."""

    GATED = "gated"
    FORCE = "force"


@dataclass(slots=True)
class ValidationReport:
    """Findings of one run, keyed by checker name in execution order."""

    skills: list[str]
    findings_by_source: dict[str, list[Finding]]
    gate: GateResult

    @property
    def findings(self) -> list[Finding]:
        return [finding for findings in self.findings_by_source.values() for finding in findings]


@dataclass(slots=True)
class BuildResult:
    """Report plus whatever the build produced."""

    report: ValidationReport
    mode: BuildMode
    artifacts: list[CompiledArtifact] = field(default_factory=list)
    written: list[Path] = field(default_factory=list)

    @property
    def compiled(self) -> bool:
        return bool(self.artifacts)

    @property
    def warnings(self) -> list[str]:
        return [warning for artifact in self.artifacts for warning in artifact.warnings]


def run_checks(
    skills: Sequence[Skill],
    checkers: Iterable[Checker],
    *,
    extra_findings: Mapping[str, list[Finding]] | None = None,
) -> ValidationReport:
    """Run every checker over every skill and evaluate the gate.

    Checkers exposing ``check_skills`` (the link checker) run once across the
    whole corpus so shared URLs are requested a single time.
    """
    findings_by_source: dict[str, list[Finding]] = {}
    for checker in checkers:
        collected = findings_by_source.setdefault(checker.checker_name, [])
        batch = getattr(checker, "check_skills", None)
        if callable(batch):
            collected.extend(batch(skills))
            continue
        for skill in skills:
            collected.extend(checker.check(skill))

    for source, findings in (extra_findings or {}).items():
        findings_by_source.setdefault(source, []).extend(findings)

    return ValidationReport(
        skills=[skill.name for skill in skills],
        findings_by_source=findings_by_source,
        gate=evaluate(findings_by_source),
    )


def build(
    skills: Sequence[Skill],
    checkers: Iterable[Checker],
    *,
    mode: BuildMode | str = BuildMode.GATED,
    write: bool = True,
    check_drift: bool = False,
    filenames: ArtifactFilenames | None = None,
    compiler_version: str = __version__,
    parser: RuleParser | None = None,
) -> BuildResult:
    """Validate, then compile.

    ``gated`` compiles only when the gate passes; ``force`` always compiles.
    With ``check_drift`` nothing is written: fresh output is compared with the
    committed artifacts and any difference becomes a blocking finding.
    """
    build_mode = BuildMode(mode)
    report = run_checks(skills, checkers)

    if check_drift:
        artifacts = [
            compile_skill(skill, compiler_version=compiler_version, parser=parser)
            for skill in skills
        ]
        drift: list[Finding] = []
        for skill, artifact in zip(skills, artifacts):
            drift.extend(detect_drift(skill, artifact, filenames))
        report.findings_by_source[COMPILER_NAME] = drift
        report.gate = evaluate(report.findings_by_source)
        return BuildResult(report=report, mode=build_mode, artifacts=artifacts)

    if build_mode is BuildMode.GATED and not report.gate.passed:
        return BuildResult(report=report, mode=build_mode)

    result = BuildResult(report=report, mode=build_mode)
    for skill in skills:
        artifact = compile_skill(skill, compiler_version=compiler_version, parser=parser)
        result.artifacts.append(artifact)
        if write:
            result.written.extend(write_artifacts(skill, artifact, filenames))
    return result

"""Deterministic compilation of a skill into its guide and test-case artifacts."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from re import compile

from skill_rules import __version__
from skill_rules.checks.base import Finding, Severity
from skill_rules.rule_parser import ATX_HEADING_RE, FENCE_RE, Rule, RuleParser, heading_text
from skill_rules.skill_loader import Skill

INCORRECT_SECTION = "Incorrect"
CORRECT_SECTION = "Correct"
RULE_MARKER = "<!-- rule: {rule_id} -->"
HEADING_DEMOTION = 2
COMPILER_NAME = "Compiler"

RULE_MARKER_RE = compile(r"<!-- rule: (?P<rule_id>\S+) -->")
SLUG_STRIP_RE = compile(r"[^\w\s-]")


class CompileError(RuntimeError):
    """Raised when a compiled guide does not account for every rule exactly once."""


@dataclass(frozen=True, slots=True)
class ArtifactFilenames:
    """Per-skill output filenames."""

    guide: str = "AGENTS.md"
    test_cases: str = "test-cases.json"


@dataclass(frozen=True, slots=True)
class TestCase:
    """A bad/good example pair derived from one rule."""

    __test__ = False

    rule_id: str
    bad_example: str
    good_example: str

    def to_dict(self) -> dict[str, str]:
        return {
            "ruleId": self.rule_id,
            "badExample": self.bad_example,
            "goodExample": self.good_example,
        }


@dataclass(slots=True)
class CompiledArtifact:
    """Compiled outputs for one skill."""

    skill_name: str
    guide: str
    test_cases: list[TestCase] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def test_cases_json(self) -> str:
        payload = [case.to_dict() for case in self.test_cases]
        return json.dumps(payload, indent=2, ensure_ascii=False) + "\n"


def compile_skill(
    skill: Skill,
    *,
    compiler_version: str = __version__,
    parser: RuleParser | None = None,
) -> CompiledArtifact:
    """Compile ``skill`` into a guide and a test-case list.

    Output depends only on the skill snapshot, ``compiler_version`` and the
    section vocabulary of ``parser``: no timestamps, no filesystem ordering,
    no environment lookups.
    """
    guide = _render_guide(skill, compiler_version, parser or RuleParser())
    _verify_rule_markers(skill, guide)

    test_cases: list[TestCase] = []
    warnings: list[str] = []
    for rule in skill.rules:
        bad = rule.section(INCORRECT_SECTION)
        good = rule.section(CORRECT_SECTION)
        if bad is None or good is None:
            missing = [
                name
                for name, text in ((INCORRECT_SECTION, bad), (CORRECT_SECTION, good))
                if text is None
            ]
            warnings.append(
                f"{rule.path}: no test case for {rule.rule_id!r} "
                f"(missing {' and '.join(missing)} section)"
            )
            continue
        test_cases.append(
            TestCase(
                rule_id=rule.rule_id,
                bad_example=extract_example(bad),
                good_example=extract_example(good),
            )
        )

    return CompiledArtifact(
        skill_name=skill.name, guide=guide, test_cases=test_cases, warnings=warnings
    )


def extract_example(section_text: str) -> str:
    """Return the first fenced code block's contents, else the trimmed section text."""
    lines = section_text.splitlines()
    for start, line in enumerate(lines):
        fence = FENCE_RE.match(line)
        if fence is None:
            continue
        marker = fence.group("marker")
        block: list[str] = []
        for inner in lines[start + 1 :]:
            if inner.strip().startswith(marker):
                return "\n".join(block)
            block.append(inner)
        return "\n".join(block)
    return section_text.strip()


def write_artifacts(
    skill: Skill,
    artifact: CompiledArtifact,
    filenames: ArtifactFilenames | None = None,
) -> list[Path]:
    names = filenames or ArtifactFilenames()
    written: list[Path] = []
    for filename, content in _artifact_files(artifact, names):
        path = skill.directory / filename
        path.write_text(content, encoding="utf-8")
        written.append(path)
    return written


def detect_drift(
    skill: Skill,
    artifact: CompiledArtifact,
    filenames: ArtifactFilenames | None = None,
) -> list[Finding]:
    """Report committed artifacts that are missing or differ from a fresh compile."""
    names = filenames or ArtifactFilenames()
    findings: list[Finding] = []
    for filename, expected in _artifact_files(artifact, names):
        path = skill.directory / filename
        if not path.is_file():
            message = f"Compiled artifact {filename} is missing; run the build"
        elif path.read_text(encoding="utf-8") != expected:
            message = f"Compiled artifact {filename} is stale; rebuild and commit it"
        else:
            continue
        findings.append(
            Finding(
                severity=Severity.P1,
                rule_id=None,
                skill_name=skill.name,
                checker_name=COMPILER_NAME,
                message=message,
                evidence=(f"{skill.name}/{filename}",),
            )
        )
    return findings


def _artifact_files(
    artifact: CompiledArtifact, names: ArtifactFilenames
) -> list[tuple[str, str]]:
    return [
        (names.guide, artifact.guide),
        (names.test_cases, artifact.test_cases_json()),
    ]


def _render_guide(skill: Skill, compiler_version: str, parser: RuleParser) -> str:
    title = skill.title or skill.name
    lines: list[str] = [
        f"# {title}",
        "",
        f"<!-- generated by skill-rules {compiler_version}; do not edit by hand -->",
        "",
        f"**Skill:** `{skill.name}`  ",
        f"**Version:** {skill.version}  ",
        f"**Rules:** {len(skill.rules)}",
        "",
    ]
    if skill.abstract:
        lines.extend(["## Abstract", "", skill.abstract, ""])

    numbered: list[tuple[str, list[tuple[str, Rule]]]] = []
    for entry in skill.taxonomy:
        section_heading = f"{entry.number}. {entry.title}"
        rules = [
            (f"{entry.number}.{index} {_rule_title(rule)}", rule)
            for index, rule in enumerate(skill.rules_in(entry), start=1)
        ]
        numbered.append((section_heading, rules))

    lines.extend(["## Table of Contents", ""])
    for (section_heading, rules), entry in zip(numbered, skill.taxonomy):
        lines.append(f"- [{section_heading}](#{_slug(section_heading)}) ({entry.impact})")
        for rule_heading, _ in rules:
            lines.append(f"  - [{rule_heading}](#{_slug(rule_heading)})")
    lines.extend(["", "---", ""])

    for (section_heading, rules), entry in zip(numbered, skill.taxonomy):
        lines.extend([f"## {section_heading}", "", f"**Impact: {entry.impact}**", ""])
        if entry.description:
            lines.extend([entry.description, ""])
        for rule_heading, rule in rules:
            lines.append(RULE_MARKER.format(rule_id=rule.rule_id))
            lines.extend([f"### {rule_heading}", ""])
            if rule.impact:
                lines.extend([f"**Impact: {rule.impact}**", ""])
            body = _demote_headings(_drop_title_heading(rule.body, parser))
            if body:
                lines.extend([body, ""])
        lines.extend(["---", ""])

    return "\n".join(lines).rstrip("\n") + "\n"


def _verify_rule_markers(skill: Skill, guide: str) -> None:
    counts: dict[str, int] = {}
    for match in RULE_MARKER_RE.finditer(guide):
        rule_id = match.group("rule_id")
        counts[rule_id] = counts.get(rule_id, 0) + 1

    problems: list[str] = []
    for rule in skill.rules:
        seen = counts.get(rule.rule_id, 0)
        if seen != 1:
            problems.append(f"{rule.rule_id} appears {seen} times")
    if problems:
        raise CompileError(f"{skill.name}: compiled guide is inconsistent: {'; '.join(problems)}")


def _rule_title(rule: Rule) -> str:
    if rule.title:
        return rule.title
    if rule.headings:
        return rule.headings[0]
    return rule.rule_id


def _drop_title_heading(body: str, parser: RuleParser) -> str:
    lines = body.strip("\n").splitlines()
    if lines:
        match = ATX_HEADING_RE.match(lines[0])
        text = heading_text(lines[0])
        # A leading section heading ("## Incorrect") is content, not a title.
        if (
            match is not None
            and len(match.group("hashes")) <= 2
            and text is not None
            and parser.match_section(text) is None
        ):
            lines = lines[1:]
    return "\n".join(lines).strip("\n")


def _demote_headings(body: str) -> str:
    output: list[str] = []
    fence_marker: str | None = None
    for line in body.splitlines():
        fence = FENCE_RE.match(line)
        if fence is not None:
            if fence_marker is None:
                fence_marker = fence.group("marker")
            elif line.strip().startswith(fence_marker):
                fence_marker = None
        elif fence_marker is None and ATX_HEADING_RE.match(line) is not None:
            hashes = len(line) - len(line.lstrip("#"))
            line = "#" * min(6, hashes + HEADING_DEMOTION) + line[hashes:]
        output.append(line)
    return "\n".join(output)


def _slug(text: str) -> str:
    cleaned = SLUG_STRIP_RE.sub("", text.strip().lower())
    return "-".join(cleaned.split())

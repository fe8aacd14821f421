"""Structural completeness checks for rule files."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from skill_rules.checks.base import Finding, Severity
from skill_rules.skill_loader import IMPACT_LEVELS, Skill

DEFAULT_REQUIRED_SECTIONS = ("Incorrect", "Correct")
REQUIRED_FRONTMATTER = ("title", "impact", "tags")


class StructuralValidator:
    """Reports missing frontmatter fields and required sections."""

    checker_name = "StructuralValidator"

    def __init__(
        self,
        required_sections: Iterable[str] = DEFAULT_REQUIRED_SECTIONS,
        *,
        required_by_skill: Mapping[str, Iterable[str]] | None = None,
        allowed_impacts: Iterable[str] = IMPACT_LEVELS,
    ) -> None:
        self.required_sections = tuple(dict.fromkeys(required_sections))
        self.required_by_skill = {
            name: tuple(dict.fromkeys(sections))
            for name, sections in (required_by_skill or {}).items()
        }
        self.allowed_impacts = tuple(allowed_impacts)

    def sections_for(self, skill_name: str) -> tuple[str, ...]:
        return self.required_by_skill.get(skill_name, self.required_sections)

    def check(self, skill: Skill) -> list[Finding]:
        findings: list[Finding] = []

        for issue in skill.load_errors:
            findings.append(
                self._finding(
                    skill,
                    rule_id=None,
                    message=f"Rule file failed to parse: {issue.message}",
                    evidence=(issue.path,),
                )
            )

        required = self.sections_for(skill.name)
        for rule in skill.rules:
            present = {
                "title": rule.title,
                "impact": rule.impact,
                "tags": ",".join(sorted(rule.tags)),
            }
            for field_name in REQUIRED_FRONTMATTER:
                if not present[field_name]:
                    findings.append(
                        self._finding(
                            skill,
                            rule_id=rule.rule_id,
                            message=f"Missing or empty frontmatter field '{field_name}'",
                            evidence=(rule.path,),
                        )
                    )

            if rule.impact and rule.impact not in self.allowed_impacts:
                findings.append(
                    self._finding(
                        skill,
                        rule_id=rule.rule_id,
                        message=(
                            f"Invalid impact level {rule.impact!r}; must be one of: "
                            f"{', '.join(self.allowed_impacts)}"
                        ),
                        evidence=(rule.path,),
                    )
                )

            for section in required:
                if section not in rule.sections:
                    findings.append(
                        self._finding(
                            skill,
                            rule_id=rule.rule_id,
                            message=f"Missing required section '{section}'",
                            evidence=(rule.path,),
                        )
                    )
        return findings

    def _finding(
        self,
        skill: Skill,
        *,
        rule_id: str | None,
        message: str,
        evidence: tuple[str, ...],
    ) -> Finding:
        return Finding(
            severity=Severity.P1,
            rule_id=rule_id,
            skill_name=skill.name,
            checker_name=self.checker_name,
            message=message,
            evidence=evidence,
        )

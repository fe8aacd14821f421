"""Base checker protocol and finding model."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol

from skill_rules.skill_loader import Skill

# Skill name for findings that belong to the corpus rather than one skill.
CORPUS_SCOPE = "corpus"


class Severity(StrEnum):
    """Finding severity; P0 and P1 block a release."""

    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"

    @property
    def blocking(self) -> bool:
        return self in (Severity.P0, Severity.P1)

    @classmethod
    def parse(cls, value: str) -> Severity:
        try:
            return cls(value.strip().upper())
        except ValueError:
            choices = ", ".join(item.value for item in cls)
            raise ValueError(f"Unknown severity {value!r}; expected one of: {choices}") from None


@dataclass(frozen=True, slots=True)
class Finding:
    """A single validation failure emitted by a checker."""

    severity: Severity
    rule_id: str | None
    skill_name: str
    checker_name: str
    message: str
    evidence: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "rule_id": self.rule_id,
            "skill_name": self.skill_name,
            "checker_name": self.checker_name,
            "message": self.message,
            "evidence": list(self.evidence),
        }


class Checker(Protocol):
    """Protocol for read-only checks over a loaded skill."""

    checker_name: str

    def check(self, skill: Skill) -> list[Finding]:
        """Inspect a skill and return findings."""

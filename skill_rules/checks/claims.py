"""Registry-driven claim checks."""

from __future__ import annotations

from collections.abc import Iterable

from skill_rules.checks.base import CORPUS_SCOPE, Finding
from skill_rules.checks.registry import (
    ClaimKind,
    ClaimRegistry,
    ClaimRegistryEntry,
    RegistryLoadError,
)
from skill_rules.rule_parser import Rule
from skill_rules.skill_loader import Skill


class _RegistryChecker:
    """Apply every applicable registry entry to the rules it scopes."""

    checker_name = ""
    allows_section_scope = False

    def __init__(self, registry: ClaimRegistry) -> None:
        if not self.allows_section_scope:
            scoped = [entry.entry_id for entry in registry.entries if entry.section_scoped]
            if scoped:
                raise RegistryLoadError(
                    f"{self.checker_name} does not support section-scoped entries: "
                    f"{', '.join(scoped)}"
                )
        self.registry = registry

    def check(self, skill: Skill) -> list[Finding]:
        return self.check_skills([skill])

    def check_skills(self, skills: Iterable[Skill]) -> list[Finding]:
        """Apply the registry across ``skills``.

        A non-glob entry whose target matches no rule is always reported.
        Entries pinned to named skills, or to a path inside one skill, must
        hit in each of those skills; ``"all"`` entries must hit somewhere in
        the corpus.
        """
        corpus = list(skills)
        findings: list[Finding] = []
        for skill in corpus:
            findings.extend(self._check_rules(skill))
        for entry in self.registry.entries:
            findings.extend(self._missing_targets(entry, corpus))
        return findings

    def _check_rules(self, skill: Skill) -> list[Finding]:
        findings: list[Finding] = []
        for entry in self.registry.for_skill(skill.name):
            for rule in skill.rules:
                if not entry.matches(rule):
                    continue
                evidence = self._evaluate(entry, rule)
                if evidence is None:
                    continue
                findings.append(
                    Finding(
                        severity=entry.severity,
                        rule_id=rule.rule_id,
                        skill_name=skill.name,
                        checker_name=self.checker_name,
                        message=entry.message,
                        evidence=(rule.path, f"registry entry: {entry.entry_id}", *evidence),
                    )
                )
        return findings

    def _missing_targets(
        self, entry: ClaimRegistryEntry, skills: list[Skill]
    ) -> list[Finding]:
        if entry.is_glob:
            return []
        owner = _scope_owner(entry)
        candidates = [
            skill
            for skill in skills
            if entry.applies_to(skill.name) and (owner is None or skill.name == owner)
        ]
        if not candidates:
            return []
        if owner is None and entry.applies_to_skills is None:
            if any(_has_target(entry, skill) for skill in candidates):
                return []
            return [self._missing_target(entry, candidates)]
        return [
            self._missing_target(entry, [skill])
            for skill in candidates
            if not _has_target(entry, skill)
        ]

    def _missing_target(self, entry: ClaimRegistryEntry, skills: list[Skill]) -> Finding:
        failed = [
            issue.path
            for skill in skills
            for issue in skill.load_errors
            if _scope_hits_path(entry, issue.path)
        ]
        reason = "Registry target failed to parse" if failed else "Registry target not found"
        evidence = [f"registry entry: {entry.entry_id}", *failed]
        if len(skills) > 1:
            evidence.append(f"skills searched: {', '.join(skill.name for skill in skills)}")
        return Finding(
            severity=entry.severity,
            rule_id=None,
            skill_name=skills[0].name if len(skills) == 1 else CORPUS_SCOPE,
            checker_name=self.checker_name,
            message=f"{reason}: {entry.scope}",
            evidence=tuple(evidence),
        )

    def _evaluate(self, entry: ClaimRegistryEntry, rule: Rule) -> tuple[str, ...] | None:
        """Return evidence when the entry fails for ``rule``, else ``None``."""
        pattern = entry.pattern
        if pattern is None and entry.kind is not ClaimKind.REQUIRED_SECTION_TOKENS:
            raise RegistryLoadError(f"{entry.entry_id}: entry has no pattern")

        if entry.kind is ClaimKind.REQUIRED_HEADING:
            candidates = [*rule.sections, *rule.headings]
            if any(pattern.search(heading) for heading in candidates):
                return None
            return (f"missing heading: /{pattern.pattern}/",)

        if entry.kind is ClaimKind.REQUIRED_FILE_LEVEL_ASSERTION:
            if entry.when is not None and entry.when.search(rule.text) is None:
                return None
            if pattern.search(rule.text) is not None:
                return None
            trigger = (f"triggered by: /{entry.when.pattern}/",) if entry.when is not None else ()
            return (*trigger, f"missing assertion: /{pattern.pattern}/")

        text = self._target_text(entry, rule)
        if text is None:
            if entry.kind.prohibits:
                return None
            return (f"missing section: {entry.section}",)

        if entry.kind is ClaimKind.REQUIRED_SECTION_TOKENS:
            missing = [token for token in entry.tokens if token not in text]
            if pattern is not None and pattern.search(text) is None:
                missing.append(f"/{pattern.pattern}/")
            if not missing:
                return None
            return (f"section: {entry.section}", f"missing tokens: {', '.join(missing)}")

        match = pattern.search(text)
        location = (f"section: {entry.section}",) if entry.section else ()
        if entry.kind.prohibits:
            if match is None:
                return None
            return (*location, f"matched: {match.group(0)!r}")
        if match is None:
            return (*location, f"missing phrase: /{pattern.pattern}/")
        return None

    def _target_text(self, entry: ClaimRegistryEntry, rule: Rule) -> str | None:
        if entry.section is None:
            return rule.body
        return rule.sections.get(entry.section)


class VersionClaimChecker(_RegistryChecker):
    """Guards version-sensitive claims with whole-file phrase and heading checks."""

    checker_name = "VersionClaimChecker"


class SemanticInvariantChecker(_RegistryChecker):
    """Guards high-risk rules, including token checks inside a named section."""

    checker_name = "SemanticInvariantChecker"
    allows_section_scope = True


def _scope_hits_path(entry: ClaimRegistryEntry, path: str) -> bool:
    if "/" in entry.scope:
        return path == entry.scope
    return path.rsplit("/", 1)[-1] == entry.scope


def _scope_owner(entry: ClaimRegistryEntry) -> str | None:
    """Return the skill a path scope (``skill/rules/x.md``) names, if any."""
    if "/" not in entry.scope:
        return None
    return entry.scope.split("/", 1)[0]


def _has_target(entry: ClaimRegistryEntry, skill: Skill) -> bool:
    return any(entry.matches(rule) for rule in skill.rules)

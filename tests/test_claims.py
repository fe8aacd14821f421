"""Tests for registry-driven claim checkers."""

from __future__ import annotations

from pathlib import Path

import pytest

from skill_rules.checks.base import Severity
from skill_rules.checks.claims import SemanticInvariantChecker, VersionClaimChecker
from skill_rules.checks.registry import RegistryLoadError, load_registry
from skill_rules.skill_loader import Skill, load_skill
from tests.helpers_corpus import rule_text, write_skill

TAXONOMY = "## 1. Fundamentals (fundamental)\n**Impact:** CRITICAL\n"


def _skill(tmp_path: Path, rules: dict[str, str]) -> Skill:
    return load_skill(write_skill(tmp_path, "mongodb-schema-design", rules, taxonomy=TAXONOMY))


def _body_rule(body: str) -> str:
    return rule_text(body=body)


def test_prohibited_phrase_yields_one_p0_finding(tmp_path: Path) -> None:
    skill = _skill(
        tmp_path,
        {
            "fundamental-document-model.md": _body_rule(
                "Multi-document writes are atomic across collections by default."
            ),
            "fundamental-embed.md": _body_rule("Embedding is atomic per document."),
        },
    )
    registry = load_registry(
        {
            "version": 1,
            "entries": [
                {
                    "id": "no-cross-collection-atomicity",
                    "scope": "fundamental-document-model.md",
                    "kind": "prohibited-phrase",
                    "pattern": "atomic across collections",
                    "severity": "P0",
                    "appliesToSkills": "all",
                }
            ],
        }
    )

    findings = VersionClaimChecker(registry).check(skill)

    assert len(findings) == 1
    finding = findings[0]
    assert finding.severity is Severity.P0
    assert finding.rule_id == "fundamental-document-model"
    assert finding.checker_name == "VersionClaimChecker"
    assert finding.evidence[0] == "mongodb-schema-design/rules/fundamental-document-model.md"
    assert "matched: 'atomic across collections'" in finding.evidence

    (skill.directory / "rules" / "fundamental-document-model.md").write_text(
        _body_rule("Multi-document transactions span collections when you opt in."),
        encoding="utf-8",
    )
    fixed = load_skill(skill.directory)
    assert VersionClaimChecker(registry).check(fixed) == []


def test_required_phrase_and_heading(tmp_path: Path) -> None:
    skill = _skill(
        tmp_path,
        {
            "fundamental-limits.md": _body_rule("## Limits\n\nDocuments are capped at 16MB.\n"),
            "fundamental-other.md": _body_rule("Nothing relevant.\n"),
        },
    )
    registry = load_registry(
        {
            "entries": [
                {
                    "id": "size-cap",
                    "scope": "fundamental-*.md",
                    "kind": "required-phrase",
                    "pattern": r"16\s?MB",
                    "severity": "P1",
                },
                {
                    "id": "limits-heading",
                    "scope": "fundamental-*.md",
                    "kind": "required-heading",
                    "pattern": "^Limits$",
                    "severity": "P2",
                },
            ]
        }
    )

    findings = VersionClaimChecker(registry).check(skill)

    assert [(item.rule_id, item.severity) for item in findings] == [
        ("fundamental-other", Severity.P1),
        ("fundamental-other", Severity.P2),
    ]


def test_file_level_assertion_only_runs_when_triggered(tmp_path: Path) -> None:
    skill = _skill(
        tmp_path,
        {
            "fundamental-txn.md": _body_rule("Use transactions in MongoDB 4.0 replica sets.\n"),
            "fundamental-plain.md": _body_rule("Unrelated.\n"),
        },
    )
    registry = load_registry(
        {
            "entries": [
                {
                    "id": "sharded-txn-version",
                    "scope": "*.md",
                    "kind": "required-file-level-assertion",
                    "when": "transactions",
                    "pattern": r"4\.2.*sharded",
                    "flags": "is",
                }
            ]
        }
    )

    findings = VersionClaimChecker(registry).check(skill)

    assert len(findings) == 1
    assert findings[0].rule_id == "fundamental-txn"
    assert "triggered by: /transactions/" in findings[0].evidence


def test_missing_target_is_reported_for_pinned_and_all_skill_entries(tmp_path: Path) -> None:
    skill = _skill(tmp_path, {"fundamental-a.md": rule_text()})
    registry = load_registry(
        {
            "entries": [
                {
                    "id": "pinned",
                    "scope": "fundamental-renamed.md",
                    "kind": "required-phrase",
                    "pattern": "x",
                    "appliesToSkills": ["mongodb-schema-design"],
                },
                {
                    "id": "unpinned",
                    "scope": "fundamental-renamed.md",
                    "kind": "prohibited-phrase",
                    "pattern": "x",
                },
            ]
        }
    )

    findings = VersionClaimChecker(registry).check(skill)

    assert [finding.evidence[0] for finding in findings] == [
        "registry entry: pinned",
        "registry entry: unpinned",
    ]
    for finding in findings:
        assert finding.message == "Registry target not found: fundamental-renamed.md"
        assert finding.severity is Severity.P0
        assert finding.skill_name == "mongodb-schema-design"


def test_all_skill_entry_only_needs_its_target_somewhere_in_the_corpus(tmp_path: Path) -> None:
    schema = load_skill(
        write_skill(tmp_path, "mongodb-schema-design", {"query-other.md": rule_text()})
    )
    query = load_skill(
        write_skill(
            tmp_path, "mongodb-query", {"query-bulkwrite-command.md": _body_rule("Use bulkWrite.")}
        )
    )
    registry = load_registry(
        {
            "entries": [
                {
                    "id": "bulkwrite",
                    "scope": "query-bulkwrite-command.md",
                    "kind": "prohibited-phrase",
                    "pattern": "insertMany",
                }
            ]
        }
    )
    checker = VersionClaimChecker(registry)

    assert checker.check_skills([schema, query]) == []

    findings = checker.check_skills([schema])
    assert len(findings) == 1
    assert findings[0].message == "Registry target not found: query-bulkwrite-command.md"
    assert findings[0].skill_name == "mongodb-schema-design"


def test_target_missing_across_several_skills_is_one_corpus_finding(tmp_path: Path) -> None:
    skills = [
        load_skill(write_skill(tmp_path, name, {"query-other.md": rule_text()}))
        for name in ("alpha", "beta")
    ]
    registry = load_registry(
        {
            "entries": [
                {
                    "id": "bulkwrite",
                    "scope": "query-bulkwrite-command.md",
                    "kind": "prohibited-phrase",
                    "pattern": "insertMany",
                }
            ]
        }
    )

    findings = VersionClaimChecker(registry).check_skills(skills)

    assert len(findings) == 1
    assert findings[0].skill_name == "corpus"
    assert "skills searched: alpha, beta" in findings[0].evidence


def test_path_scope_is_reported_against_the_skill_it_names(tmp_path: Path) -> None:
    owner = load_skill(
        write_skill(tmp_path, "mongodb-query-and-index-optimize", {"query-other.md": rule_text()})
    )
    other = load_skill(
        write_skill(tmp_path, "mongodb-ai", {"query-bulkwrite-command.md": rule_text()})
    )
    registry = load_registry(
        {
            "entries": [
                {
                    "id": "bulkwrite-tokens",
                    "scope": "mongodb-query-and-index-optimize/rules/query-bulkwrite-command.md",
                    "kind": "required-section-tokens",
                    "section": "Correct",
                    "tokens": ["bulkWrite"],
                }
            ]
        }
    )
    checker = SemanticInvariantChecker(registry)

    findings = checker.check_skills([owner, other])

    assert len(findings) == 1
    assert findings[0].skill_name == "mongodb-query-and-index-optimize"
    assert findings[0].message.startswith("Registry target not found")
    assert checker.check_skills([other]) == []


def test_pinned_scope_that_failed_to_parse_is_reported_as_such(tmp_path: Path) -> None:
    skill = _skill(tmp_path, {"fundamental-a.md": rule_text(), "fundamental-b.md": "broken\n"})
    registry = load_registry(
        {
            "entries": [
                {
                    "scope": "fundamental-b.md",
                    "kind": "required-phrase",
                    "pattern": "x",
                    "appliesToSkills": ["mongodb-schema-design"],
                }
            ]
        }
    )

    findings = VersionClaimChecker(registry).check(skill)

    assert findings[0].message.startswith("Registry target failed to parse")
    assert "mongodb-schema-design/rules/fundamental-b.md" in findings[0].evidence


def test_entries_for_other_skills_are_skipped(tmp_path: Path) -> None:
    skill = _skill(tmp_path, {"fundamental-a.md": _body_rule("atomic across collections")})
    registry = load_registry(
        {
            "entries": [
                {
                    "scope": "*.md",
                    "kind": "prohibited-phrase",
                    "pattern": "atomic across collections",
                    "appliesToSkills": ["mongodb-ai"],
                }
            ]
        }
    )
    assert VersionClaimChecker(registry).check(skill) == []


def test_version_checker_rejects_section_scoped_registry() -> None:
    registry = load_registry(
        {
            "entries": [
                {
                    "scope": "*.md",
                    "kind": "required-section-tokens",
                    "section": "Correct",
                    "tokens": ["$in"],
                }
            ]
        }
    )
    with pytest.raises(RegistryLoadError, match="section-scoped"):
        VersionClaimChecker(registry)


def test_section_tokens_are_checked_inside_the_named_section(tmp_path: Path) -> None:
    body = "\n".join(
        [
            "Mentions $in up here but not in the example.",
            "",
            "**Incorrect:**",
            "",
            "```javascript",
            "db.c.find({ $or: [{ a: 1 }, { a: 2 }] })",
            "```",
            "",
            "**Correct:**",
            "",
            "```javascript",
            "db.c.find({ a: 1 })",
            "```",
        ]
    )
    skill = _skill(
        tmp_path,
        {
            "fundamental-in.md": _body_rule(body),
            "fundamental-ok.md": _body_rule(body.replace("{ a: 1 })", "{ a: { $in: [1, 2] } })")),
        },
    )
    registry = load_registry(
        {
            "entries": [
                {
                    "id": "in-operator",
                    "scope": "fundamental-*.md",
                    "kind": "required-section-tokens",
                    "section": "Correct",
                    "tokens": ["$in"],
                    "severity": "P1",
                }
            ]
        }
    )

    findings = SemanticInvariantChecker(registry).check(skill)

    assert len(findings) == 1
    assert findings[0].rule_id == "fundamental-in"
    assert findings[0].checker_name == "SemanticInvariantChecker"
    assert "missing tokens: $in" in findings[0].evidence


def test_section_scoped_phrases_handle_missing_sections(tmp_path: Path) -> None:
    skill = _skill(tmp_path, {"fundamental-a.md": _body_rule("No sections at all.\n")})
    registry = load_registry(
        {
            "entries": [
                {
                    "id": "required",
                    "scope": "*.md",
                    "kind": "required-phrase",
                    "section": "Verify with",
                    "pattern": "explain",
                },
                {
                    "id": "prohibited",
                    "scope": "*.md",
                    "kind": "prohibited-phrase",
                    "section": "Verify with",
                    "pattern": "explain",
                },
            ]
        }
    )

    findings = SemanticInvariantChecker(registry).check(skill)

    assert len(findings) == 1
    assert "registry entry: required" in findings[0].evidence
    assert "missing section: Verify with" in findings[0].evidence

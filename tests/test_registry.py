"""Tests for claim registry loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from skill_rules.checks.base import Severity
from skill_rules.checks.registry import (
    ClaimKind,
    ClaimRegistryEntry,
    RegistryLoadError,
    load_registry,
)
from skill_rules.rule_parser import parse_rule
from tests.helpers_corpus import rule_text, write_registry


def _entry(**overrides: object) -> dict[str, object]:
    entry: dict[str, object] = {
        "id": "no-atomic-collections",
        "scope": "fundamental-document-model.md",
        "kind": "prohibited-phrase",
        "pattern": "atomic across collections",
        "flags": "i",
    }
    entry.update(overrides)
    return entry


def test_load_registry_from_file(tmp_path: Path) -> None:
    path = write_registry(
        tmp_path / "config" / "registry.json",
        [
            _entry(),
            _entry(
                id="stats-heading",
                scope="perf-*.md",
                kind="required-heading",
                pattern="^Verify with$",
                severity="p1",
                appliesToSkills=["demo"],
            ),
        ],
    )

    registry = load_registry(path)

    assert len(registry) == 2
    assert registry.source == str(path)
    first, second = registry.entries
    assert first.kind is ClaimKind.PROHIBITED_PHRASE
    assert first.severity is Severity.P0
    assert first.applies_to_skills is None
    assert first.pattern.search("ATOMIC ACROSS COLLECTIONS")
    assert second.severity is Severity.P1
    assert second.is_glob
    assert second.applies_to_skills == frozenset({"demo"})
    assert [entry.entry_id for entry in registry.for_skill("other")] == ["no-atomic-collections"]


@pytest.mark.parametrize(
    ("entry", "message"),
    [
        (_entry(pattern="(unclosed"), "invalid regex"),
        (_entry(kind="maybe-phrase"), "unknown kind"),
        (_entry(severity="P9"), "Unknown severity"),
        (_entry(severity=1), "'severity' must be a string"),
        (_entry(flags="q"), "unsupported regex flag"),
        (_entry(appliesToSkills=[]), "appliesToSkills"),
        (_entry(extra=True), "unknown keys: extra"),
        (_entry(tokens=["$in"]), "'tokens' is only valid"),
        (_entry(when="x"), "'when' is only valid"),
        (_entry(kind="required-section-tokens", tokens=["$in"]), "'section' is required"),
        (
            _entry(kind="required-section-tokens", section="Correct", tokens=[]),
            "'tokens' must be a non-empty list",
        ),
        (_entry(scope=""), "'scope' must be a non-empty string"),
    ],
)
def test_one_bad_entry_rejects_the_whole_registry(
    entry: dict[str, object], message: str
) -> None:
    with pytest.raises(RegistryLoadError, match=message):
        load_registry({"version": 1, "entries": [_entry(id="good"), entry]})


def test_duplicate_ids_are_rejected() -> None:
    with pytest.raises(RegistryLoadError, match="duplicate entry id"):
        load_registry({"version": 1, "entries": [_entry(), _entry()]})


def test_unsupported_version_and_shape_errors(tmp_path: Path) -> None:
    with pytest.raises(RegistryLoadError, match="unsupported registry version"):
        load_registry({"version": 2, "entries": []})
    with pytest.raises(RegistryLoadError, match="unsupported registry version"):
        load_registry({"version": [1], "entries": []})
    with pytest.raises(RegistryLoadError, match="'entries' must be a list"):
        load_registry({"version": 1})

    broken = tmp_path / "broken.json"
    broken.write_text("{", encoding="utf-8")
    with pytest.raises(RegistryLoadError, match="Invalid JSON"):
        load_registry(broken)
    with pytest.raises(RegistryLoadError, match="does not exist"):
        load_registry(tmp_path / "missing.json")


def test_section_scope_can_be_disallowed() -> None:
    raw = {"version": 1, "entries": [_entry(section="Correct")]}
    assert load_registry(raw).entries[0].section_scoped
    with pytest.raises(RegistryLoadError, match="section-scoped"):
        load_registry(raw, allow_section_scope=False)


def test_scope_matching_by_filename_path_and_glob() -> None:
    rule = parse_rule(
        rule_text(), rule_id="perf-query-stats", path="demo/rules/perf-query-stats.md"
    )
    by_name = _scoped("perf-query-stats.md")
    by_path = _scoped("demo/rules/perf-query-stats.md")
    by_glob = _scoped("demo/rules/perf-*.md")
    other = _scoped("other/rules/perf-query-stats.md")

    assert by_name.matches(rule)
    assert by_path.matches(rule)
    assert by_glob.matches(rule)
    assert not other.matches(rule)


def test_default_messages_describe_the_assertion() -> None:
    registry = load_registry(
        {
            "entries": [
                _entry(id="a"),
                {
                    "id": "b",
                    "scope": "*.md",
                    "kind": "required-section-tokens",
                    "section": "Correct",
                    "tokens": ["$in"],
                },
            ]
        }
    )
    assert registry.entries[0].message == "Contains prohibited phrase /atomic across collections/"
    assert registry.entries[1].message == "Missing required tokens in section 'Correct'"


def _scoped(scope: str) -> ClaimRegistryEntry:
    return load_registry({"entries": [_entry(scope=scope)]}).entries[0]

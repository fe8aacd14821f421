"""CLI tests driven through typer's runner."""

from __future__ import annotations

import json
from pathlib import Path

from typer.testing import CliRunner

from skill_rules import __version__
from skill_rules.cli import app
from tests.helpers_corpus import rule_text, write_registry, write_skill

runner = CliRunner()

BROKEN_BODY = "## Prose only\n\nNo examples here.\n"


def _repo(tmp_path: Path, *, broken: bool = False) -> Path:
    repo = tmp_path / "repo"
    rules = {"query-projection.md": rule_text(), "perf-explain.md": rule_text(title="Explain")}
    if broken:
        rules["query-broken.md"] = rule_text(title="Broken", body=BROKEN_BODY)
    write_skill(repo / "skills", "demo", rules, metadata={"version": "2.0.0"})
    return repo


def test_version_flag() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert result.stdout.strip() == __version__


def test_validate_clean_corpus_passes(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    result = runner.invoke(app, ["validate", "--repo", str(repo)])
    assert result.exit_code == 0, result.output
    assert "Skills checked: demo" in result.stdout
    assert "Gate: PASS" in result.stdout


def test_validate_blocking_findings_exit_one_with_json_payload(tmp_path: Path) -> None:
    repo = _repo(tmp_path, broken=True)

    result = runner.invoke(app, ["validate", "--repo", str(repo), "--format", "json"])

    assert result.exit_code == 1
    payload = json.loads(result.stdout)
    assert payload["gate"]["passed"] is False
    assert payload["meta"]["command"] == "validate"
    assert {finding["rule_id"] for finding in payload["findings"]} == {"query-broken"}
    assert payload["sources"] == {"StructuralValidator": 2}


def test_missing_skills_root_is_a_fatal_error(tmp_path: Path) -> None:
    result = runner.invoke(app, ["validate", "--repo", str(tmp_path)])
    assert result.exit_code == 2
    assert "error: Skills root does not exist" in result.output


def test_unknown_skill_name_is_a_fatal_error(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    result = runner.invoke(app, ["validate", "--repo", str(repo), "--skill", "nope"])
    assert result.exit_code == 2
    assert "Unknown skills" in result.output


def test_build_writes_artifacts_then_check_detects_drift(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    skill_dir = repo / "skills" / "demo"

    built = runner.invoke(app, ["build", "--repo", str(repo)])
    assert built.exit_code == 0, built.output
    assert "Wrote skills/demo/AGENTS.md" in built.stdout
    guide = (skill_dir / "AGENTS.md").read_text(encoding="utf-8")
    assert "**Rules:** 2" in guide
    cases = json.loads((skill_dir / "test-cases.json").read_text(encoding="utf-8"))
    assert [case["ruleId"] for case in cases] == ["query-projection", "perf-explain"]

    clean = runner.invoke(app, ["build", "--repo", str(repo), "--check"])
    assert clean.exit_code == 0, clean.output

    (skill_dir / "test-cases.json").write_text("[]\n", encoding="utf-8")
    drifted = runner.invoke(app, ["build", "--repo", str(repo), "--check", "--format", "json"])
    assert drifted.exit_code == 1
    payload = json.loads(drifted.stdout)
    assert payload["build"]["check"] is True
    assert payload["build"]["written"] == []
    assert payload["findings"][0]["checker_name"] == "Compiler"
    assert (skill_dir / "test-cases.json").read_text(encoding="utf-8") == "[]\n"


def test_gated_build_skips_compilation_but_force_compiles(tmp_path: Path) -> None:
    repo = _repo(tmp_path, broken=True)
    skill_dir = repo / "skills" / "demo"

    gated = runner.invoke(app, ["build", "--repo", str(repo)])
    assert gated.exit_code == 1
    assert "Build skipped: gate failed" in gated.stdout
    assert not (skill_dir / "AGENTS.md").exists()

    forced = runner.invoke(app, ["build", "--repo", str(repo), "--force"])
    assert forced.exit_code == 1
    assert (skill_dir / "AGENTS.md").exists()
    assert "warning:" in forced.stdout


def test_build_rejects_force_with_check(tmp_path: Path) -> None:
    result = runner.invoke(app, ["build", "--repo", str(_repo(tmp_path)), "--force", "--check"])
    assert result.exit_code == 2


def test_configured_registry_feeds_validate(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    write_registry(
        repo / "config" / "version.json",
        [
            {
                "id": "no-select-star",
                "scope": "*.md",
                "kind": "prohibited-phrase",
                "pattern": "fetches everything",
                "severity": "P0",
            }
        ],
    )
    (repo / ".skill-rules.toml").write_text(
        'version_registry = "config/version.json"\n', encoding="utf-8"
    )

    result = runner.invoke(app, ["validate", "--repo", str(repo), "--format", "json"])

    assert result.exit_code == 1
    payload = json.loads(result.stdout)
    assert payload["gate"]["counts"]["P0"] == 2
    assert payload["sources"]["VersionClaimChecker"] == 2


def test_check_version_claims_requires_a_registry(tmp_path: Path) -> None:
    result = runner.invoke(app, ["check-version-claims", "--repo", str(_repo(tmp_path))])
    assert result.exit_code == 2
    assert "No registry configured" in result.output


def test_check_semantic_invariants_with_registry_override(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    registry = write_registry(
        tmp_path / "semantic.json",
        [
            {
                "id": "projection-in-correct",
                "scope": "query-*.md",
                "kind": "required-section-tokens",
                "section": "Correct",
                "tokens": ["_id: 0"],
                "severity": "P1",
            }
        ],
    )

    result = runner.invoke(
        app,
        ["check-semantic-invariants", "--repo", str(repo), "--registry", str(registry)],
    )

    assert result.exit_code == 0, result.output
    assert "Gate: PASS" in result.stdout


def test_malformed_registry_is_a_fatal_error(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    registry = tmp_path / "bad.json"
    registry.write_text('{"version": 1, "entries": [{"kind": "nope"}]}', encoding="utf-8")

    result = runner.invoke(
        app, ["check-version-claims", "--repo", str(repo), "--registry", str(registry)]
    )

    assert result.exit_code == 2
    assert "error:" in result.output


def test_checks_command_lists_catalogue_as_json(tmp_path: Path) -> None:
    result = runner.invoke(app, ["checks", "--repo", str(tmp_path), "--format", "json"])
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert [item["check_id"] for item in payload["checks"]] == [
        "structure",
        "links",
        "version-claims",
        "semantic-invariants",
    ]
    assert payload["meta"]["config_source"] is None


def test_config_command_and_invalid_config(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    (repo / ".skill-rules.toml").write_text('skills_root = "skills"\n', encoding="utf-8")

    shown = runner.invoke(app, ["config", "--repo", str(repo), "--format", "json"])
    assert shown.exit_code == 0
    assert json.loads(shown.stdout)["source"] == str((repo / ".skill-rules.toml").resolve())

    (repo / ".skill-rules.toml").write_text('format = "xml"\n', encoding="utf-8")
    broken = runner.invoke(app, ["config", "--repo", str(repo)])
    assert broken.exit_code == 2
    assert "format must be one of" in broken.output


def test_config_init_refuses_to_overwrite(tmp_path: Path) -> None:
    target = tmp_path / ".skill-rules.toml"

    created = runner.invoke(app, ["config-init", "--out", str(target)])
    assert created.exit_code == 0
    assert "[links]" in target.read_text(encoding="utf-8")

    refused = runner.invoke(app, ["config-init", "--out", str(target)])
    assert refused.exit_code == 2

    forced = runner.invoke(app, ["config-init", "--out", str(target), "--force"])
    assert forced.exit_code == 0

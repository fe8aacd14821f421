"""CLI entrypoint for skill-rules."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Annotated

import typer

from skill_rules import __version__
from skill_rules.checks import CheckerSettings, build_checkers, list_checker_info
from skill_rules.checks.base import Checker
from skill_rules.checks.claims import SemanticInvariantChecker, VersionClaimChecker
from skill_rules.checks.links import ReferenceLinkChecker
from skill_rules.checks.registry import ClaimRegistry, RegistryLoadError, load_registry
from skill_rules.checks.release_watch import ReleaseWatchChecker, load_release_watches
from skill_rules.compiler import CompileError
from skill_rules.config import AppConfig, default_config_template, load_app_config
from skill_rules.output import render_human, render_json
from skill_rules.pipeline import BuildMode, ValidationReport, build, run_checks
from skill_rules.rule_parser import RuleParser
from skill_rules.skill_loader import LoadError, Skill, load_corpus

app = typer.Typer(
    name="skill-rules",
    no_args_is_help=True,
    help="Validate rule corpora and compile them into deterministic skill artifacts.",
)

RepoOption = Annotated[Path, typer.Option(help="Repository path.")]
RootOption = Annotated[
    Path | None,
    typer.Option("--root", help="Skills root directory (overrides config skills_root)."),
]
SkillOption = Annotated[
    list[str] | None,
    typer.Option("--skill", help="Limit to this skill; repeatable."),
]
ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", help="Path to config TOML file."),
]
FormatOption = Annotated[
    str | None, typer.Option(help="Output format: human|json.", show_default="human")
]


def version_callback(value: bool) -> None:
    """Print version and exit when --version is provided."""
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option("--version", help="Show version and exit.", callback=version_callback),
    ] = False,
) -> None:
    """Root command callback."""
    _ = version


@app.command("validate")
def validate_command(
    repo: RepoOption = Path("."),
    root: RootOption = None,
    skill: SkillOption = None,
    config_file: ConfigOption = None,
    format: FormatOption = None,
    links: Annotated[
        bool, typer.Option("--links/--no-links", help="Also check reference URLs.")
    ] = False,
) -> None:
    """Run structural, claim, and (optionally) link checks."""
    app_config = _load_config_or_raise(repo, config_file)
    output_format = _resolve_format(format, app_config)
    with _fatal_errors():
        skills = _load_skills(repo, root, skill, app_config)
        checkers = _configured_checkers(repo, app_config, links=links)
        report = run_checks(skills, checkers)
    _emit(report, command="validate", output_format=output_format)


@app.command("build")
def build_command(
    repo: RepoOption = Path("."),
    root: RootOption = None,
    skill: SkillOption = None,
    config_file: ConfigOption = None,
    format: FormatOption = None,
    force: Annotated[
        bool, typer.Option("--force", help="Compile even when the gate fails.")
    ] = False,
    check: Annotated[
        bool,
        typer.Option("--check", help="Fail if committed artifacts differ; write nothing."),
    ] = False,
    links: Annotated[
        bool, typer.Option("--links/--no-links", help="Also check reference URLs.")
    ] = False,
) -> None:
    """Validate and compile each skill into its guide and test cases."""
    if force and check:
        raise typer.BadParameter("Use either --force or --check, not both.")

    app_config = _load_config_or_raise(repo, config_file)
    output_format = _resolve_format(format, app_config)
    with _fatal_errors():
        skills = _load_skills(repo, root, skill, app_config)
        checkers = _configured_checkers(repo, app_config, links=links)
        result = build(
            skills,
            checkers,
            mode=BuildMode.FORCE if force else BuildMode.GATED,
            write=not check,
            check_drift=check,
            filenames=app_config.build.filenames(),
            parser=_rule_parser(app_config),
        )

    extra = {
        "build": {
            "mode": result.mode.value,
            "check": check,
            "compiled": [
                {
                    "skill": artifact.skill_name,
                    "test_cases": len(artifact.test_cases),
                    "warnings": list(artifact.warnings),
                }
                for artifact in result.artifacts
            ],
            "written": [_display_path(path, repo) for path in result.written],
        }
    }
    notes: list[str] = []
    if not check:
        if result.compiled:
            for artifact in result.artifacts:
                notes.append(
                    f"Compiled {artifact.skill_name}: {len(artifact.test_cases)} test cases"
                )
            notes.extend(f"warning: {warning}" for warning in result.warnings)
            notes.extend(f"Wrote {_display_path(path, repo)}" for path in result.written)
        else:
            notes.append("Build skipped: gate failed (use --force to compile anyway).")
    _emit(
        result.report, command="build", output_format=output_format, extra=extra, notes=notes
    )


@app.command("check-links")
def check_links_command(
    repo: RepoOption = Path("."),
    root: RootOption = None,
    skill: SkillOption = None,
    config_file: ConfigOption = None,
    format: FormatOption = None,
    concurrency: Annotated[
        int | None, typer.Option(help="Maximum concurrent URL checks.", min=1)
    ] = None,
    budget_seconds: Annotated[
        int | None, typer.Option(help="Overall link-check time budget.", min=1)
    ] = None,
) -> None:
    """Check every reference URL once and report broken links."""
    app_config = _load_config_or_raise(repo, config_file)
    output_format = _resolve_format(format, app_config)
    options = app_config.links.to_options()
    if concurrency is not None:
        options = replace(options, concurrency=concurrency)
    if budget_seconds is not None:
        options = replace(options, budget_seconds=float(budget_seconds))

    with _fatal_errors():
        skills = _load_skills(repo, root, skill, app_config)
        checker = ReferenceLinkChecker(options)
        link_report = checker.run(skills)
        report = run_checks(
            skills, [], extra_findings={checker.checker_name: link_report.findings}
        )

    extra = {
        "links": {
            "checked": len(link_report.results),
            "healthy": len(link_report.healthy),
            "failed": [result.to_dict() for result in link_report.failed],
            "unchecked": list(link_report.unchecked),
        }
    }
    notes = [
        f"URLs checked: {len(link_report.results)}, healthy: {len(link_report.healthy)}, "
        f"failed: {len(link_report.failed)}, unchecked: {len(link_report.unchecked)}"
    ]
    _emit(report, command="check-links", output_format=output_format, extra=extra, notes=notes)


@app.command("check-version-claims")
def check_version_claims_command(
    repo: RepoOption = Path("."),
    root: RootOption = None,
    skill: SkillOption = None,
    config_file: ConfigOption = None,
    format: FormatOption = None,
    registry: Annotated[
        Path | None, typer.Option(help="Version-claim registry JSON (overrides config).")
    ] = None,
) -> None:
    """Apply the version-claim registry."""
    app_config = _load_config_or_raise(repo, config_file)
    output_format = _resolve_format(format, app_config)
    registry_path = _registry_path(repo, registry, app_config.version_registry, "--registry")
    with _fatal_errors():
        checker = VersionClaimChecker(
            load_registry(registry_path, allow_section_scope=False)
        )
        skills = _load_skills(repo, root, skill, app_config)
        report = run_checks(skills, [checker])
    _emit(report, command="check-version-claims", output_format=output_format)


@app.command("check-semantic-invariants")
def check_semantic_invariants_command(
    repo: RepoOption = Path("."),
    root: RootOption = None,
    skill: SkillOption = None,
    config_file: ConfigOption = None,
    format: FormatOption = None,
    registry: Annotated[
        Path | None, typer.Option(help="Semantic-invariant registry JSON (overrides config).")
    ] = None,
) -> None:
    """Apply the semantic-invariant registry."""
    app_config = _load_config_or_raise(repo, config_file)
    output_format = _resolve_format(format, app_config)
    registry_path = _registry_path(repo, registry, app_config.semantic_registry, "--registry")
    with _fatal_errors():
        checker = SemanticInvariantChecker(load_registry(registry_path))
        skills = _load_skills(repo, root, skill, app_config)
        report = run_checks(skills, [checker])
    _emit(report, command="check-semantic-invariants", output_format=output_format)


@app.command("check-release-watch")
def check_release_watch_command(
    repo: RepoOption = Path("."),
    config_file: ConfigOption = None,
    format: FormatOption = None,
    registry: Annotated[
        Path | None, typer.Option(help="Release-watch registry JSON (overrides config).")
    ] = None,
) -> None:
    """Compare pinned release lines with the versions published upstream."""
    app_config = _load_config_or_raise(repo, config_file)
    output_format = _resolve_format(format, app_config)
    registry_path = _registry_path(
        repo, registry, app_config.release_watch_registry, "--registry"
    )
    links = app_config.links
    with _fatal_errors():
        checker = ReleaseWatchChecker(
            load_release_watches(registry_path),
            timeout_ms=links.timeout_ms,
            retries=links.retries,
            backoff_ms=links.backoff_ms,
        )
        report = run_checks([], [], extra_findings={checker.checker_name: checker.run()})
    notes = [f"Release lines checked: {len(checker.watches)}"]
    _emit(report, command="check-release-watch", output_format=output_format, notes=notes)


@app.command("checks")
def checks_command(
    repo: RepoOption = Path("."),
    config_file: ConfigOption = None,
    format: FormatOption = None,
) -> None:
    """List available checkers."""
    app_config = _load_config_or_raise(repo, config_file)
    output_format = _resolve_format(format, app_config)
    info = list_checker_info()

    if output_format == "json":
        payload = {
            "checks": [
                {
                    "check_id": item.check_id,
                    "name": item.name,
                    "description": item.description,
                    "network": item.network,
                    "default_enabled": item.default_enabled,
                }
                for item in info
            ],
            "meta": {"config_source": app_config.source},
        }
        typer.echo(json.dumps(payload, sort_keys=True))
        return

    lines = ["Available checks:"]
    for item in info:
        status = "default" if item.default_enabled else "opt-in"
        lines.append(f"- {item.check_id} [{status}] - {item.description}")
    typer.echo("\n".join(lines))


@app.command("config")
def config_command(
    repo: RepoOption = Path("."),
    config_file: ConfigOption = None,
    format: FormatOption = None,
) -> None:
    """Show resolved configuration."""
    app_config = _load_config_or_raise(repo, config_file)
    output_format = _resolve_format(format, app_config)
    payload = app_config.to_dict()

    if output_format == "json":
        typer.echo(json.dumps(payload, sort_keys=True))
        return

    lines = [
        "Resolved configuration:",
        f"- source: {payload['source'] or 'defaults'}",
        f"- skills_root: {payload['skills_root']}",
        f"- skills: {payload['skills'] or 'all'}",
        f"- format: {payload['format']}",
        f"- version_registry: {payload['version_registry']}",
        f"- semantic_registry: {payload['semantic_registry']}",
        f"- release_watch_registry: {payload['release_watch_registry']}",
        f"- sections.required: {payload['sections']['required']}",
        f"- sections.required_by_skill: {payload['sections']['required_by_skill']}",
        f"- links: {payload['links']}",
        f"- build: {payload['build']}",
    ]
    typer.echo("\n".join(lines))


@app.command("config-init")
def config_init_command(
    out: Annotated[Path, typer.Option(help="Output path for starter config TOML.")] = Path(
        ".skill-rules.toml"
    ),
    force: Annotated[
        bool,
        typer.Option("--force", help="Overwrite if file already exists."),
    ] = False,
) -> None:
    """Create a starter repository config file."""
    out_path = out.resolve()
    if out_path.exists() and not force:
        raise typer.BadParameter(
            f"Refusing to overwrite existing file: {out_path}. Use --force to overwrite."
        )
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(default_config_template(), encoding="utf-8")
    typer.echo(f"Wrote starter config: {out_path}")


def main() -> None:
    """Console script entrypoint."""
    app()


@contextmanager
def _fatal_errors() -> Iterator[None]:
    """Report pipeline input errors as ``error: ...`` on stderr and exit 2."""
    try:
        yield
    except (LoadError, RegistryLoadError, CompileError, ValueError, OSError) as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2) from exc


def _load_config_or_raise(repo: Path, config_file: Path | None = None) -> AppConfig:
    try:
        return load_app_config(repo, config_path=config_file)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="config") from exc


def _resolve_format(value: str | None, app_config: AppConfig) -> str:
    output_format = (value or app_config.format).lower()
    if output_format not in {"human", "json"}:
        raise typer.BadParameter("format must be one of: human, json", param_hint="--format")
    return output_format


def _load_skills(
    repo: Path, root: Path | None, names: list[str] | None, app_config: AppConfig
) -> list[Skill]:
    skills_root = root if root is not None else Path(app_config.skills_root)
    if not skills_root.is_absolute():
        skills_root = repo / skills_root
    return load_corpus(
        skills_root,
        names=names or app_config.skills or None,
        parser=_rule_parser(app_config),
        excluded_files=app_config.build.excluded_files,
    )


def _rule_parser(app_config: AppConfig) -> RuleParser:
    return RuleParser(app_config.sections.vocabulary)


def _configured_checkers(repo: Path, app_config: AppConfig, *, links: bool) -> list[Checker]:
    version_registry = _optional_registry(repo, app_config.version_registry, section_scope=False)
    semantic_registry = _optional_registry(repo, app_config.semantic_registry, section_scope=True)
    sections = app_config.sections
    settings = CheckerSettings(
        required_sections=tuple(sections.required),
        required_by_skill={
            name: tuple(items) for name, items in sections.required_by_skill.items()
        },
        version_registry=version_registry,
        semantic_registry=semantic_registry,
        link_options=app_config.links.to_options(),
    )
    check_ids = ["structure", "version-claims", "semantic-invariants"]
    if links:
        check_ids.append("links")
    return build_checkers(settings, check_ids=check_ids)


def _optional_registry(
    repo: Path, configured: str | None, *, section_scope: bool
) -> ClaimRegistry | None:
    if configured is None:
        return None
    return load_registry(_under_repo(repo, Path(configured)), allow_section_scope=section_scope)


def _registry_path(
    repo: Path, override: Path | None, configured: str | None, param_hint: str
) -> Path:
    if override is not None:
        return _under_repo(repo, override)
    if configured is None:
        raise typer.BadParameter(
            "No registry configured; pass --registry or set it in the config file.",
            param_hint=param_hint,
        )
    return _under_repo(repo, Path(configured))


def _under_repo(repo: Path, path: Path) -> Path:
    return path if path.is_absolute() else repo / path


def _display_path(path: Path, repo: Path) -> str:
    try:
        return path.resolve().relative_to(repo.resolve()).as_posix()
    except ValueError:
        return str(path)


def _emit(
    report: ValidationReport,
    *,
    command: str,
    output_format: str,
    extra: dict[str, object] | None = None,
    notes: list[str] | None = None,
) -> None:
    if output_format == "json":
        typer.echo(render_json(report, command=command, extra=extra))
    else:
        typer.echo(render_human(report, notes=notes))
    if not report.gate.passed:
        raise typer.Exit(code=1)

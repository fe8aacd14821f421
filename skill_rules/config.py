"""Configuration loading for skill-rules."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from skill_rules.checks.links import LinkCheckOptions
from skill_rules.checks.structure import DEFAULT_REQUIRED_SECTIONS
from skill_rules.compiler import ArtifactFilenames
from skill_rules.rule_parser import DEFAULT_SECTION_NAMES
from skill_rules.skill_loader import DEFAULT_EXCLUDED_FILES

CONFIG_FILENAMES = (".skill-rules.toml", "skill-rules.toml")
PYPROJECT_FILENAME = "pyproject.toml"
PYPROJECT_TOOL_KEYS = ("skill_rules", "skill-rules")
OUTPUT_FORMATS = {"human", "json"}


@dataclass(slots=True)
class SectionsConfig:
    """Section vocabulary and per-skill requirements."""

    vocabulary: list[str] = field(default_factory=lambda: list(DEFAULT_SECTION_NAMES))
    required: list[str] = field(default_factory=lambda: list(DEFAULT_REQUIRED_SECTIONS))
    required_by_skill: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "vocabulary": list(self.vocabulary),
            "required": list(self.required),
            "required_by_skill": {
                name: list(sections) for name, sections in sorted(self.required_by_skill.items())
            },
        }


@dataclass(slots=True)
class LinksConfig:
    """Reference link probing controls."""

    concurrency: int = 10
    timeout_ms: int = 15000
    retries: int = 2
    backoff_ms: int = 300
    budget_seconds: int = 600

    def to_options(self) -> LinkCheckOptions:
        return LinkCheckOptions(
            concurrency=self.concurrency,
            timeout_ms=self.timeout_ms,
            retries=self.retries,
            backoff_ms=self.backoff_ms,
            budget_seconds=float(self.budget_seconds),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "concurrency": self.concurrency,
            "timeout_ms": self.timeout_ms,
            "retries": self.retries,
            "backoff_ms": self.backoff_ms,
            "budget_seconds": self.budget_seconds,
        }


@dataclass(slots=True)
class BuildConfig:
    """Compiled artifact names and rule-file exclusions."""

    guide_filename: str = "AGENTS.md"
    test_cases_filename: str = "test-cases.json"
    excluded_files: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDED_FILES))

    def filenames(self) -> ArtifactFilenames:
        return ArtifactFilenames(guide=self.guide_filename, test_cases=self.test_cases_filename)

    def to_dict(self) -> dict[str, Any]:
        return {
            "guide_filename": self.guide_filename,
            "test_cases_filename": self.test_cases_filename,
            "excluded_files": list(self.excluded_files),
        }


@dataclass(slots=True)
class AppConfig:
    """Runtime configuration values resolved from project files."""

    skills_root: str = "skills"
    skills: list[str] = field(default_factory=list)
    format: str = "human"
    version_registry: str | None = None
    semantic_registry: str | None = None
    release_watch_registry: str | None = None
    sections: SectionsConfig = field(default_factory=SectionsConfig)
    links: LinksConfig = field(default_factory=LinksConfig)
    build: BuildConfig = field(default_factory=BuildConfig)
    source: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "skills_root": self.skills_root,
            "skills": list(self.skills),
            "format": self.format,
            "version_registry": self.version_registry,
            "semantic_registry": self.semantic_registry,
            "release_watch_registry": self.release_watch_registry,
            "sections": self.sections.to_dict(),
            "links": self.links.to_dict(),
            "build": self.build.to_dict(),
            "source": self.source,
        }


def load_app_config(repo: Path, config_path: Path | None = None) -> AppConfig:
    """Load config from explicit path or repository-local files with precedence."""
    repo = repo.resolve()
    if config_path is not None:
        resolved = config_path if config_path.is_absolute() else (repo / config_path)
        if not resolved.exists():
            raise ValueError(f"Config file does not exist: {resolved}")
        mapping = _extract_config_mapping(_load_toml(resolved), source_path=resolved)
        return _from_mapping(mapping, source=str(resolved))

    for filename in CONFIG_FILENAMES:
        resolved = repo / filename
        if resolved.exists():
            mapping = _extract_config_mapping(_load_toml(resolved), source_path=resolved)
            return _from_mapping(mapping, source=str(resolved))

    pyproject_path = repo / PYPROJECT_FILENAME
    if pyproject_path.exists():
        mapping = _extract_config_mapping(_load_toml(pyproject_path), source_path=pyproject_path)
        if mapping:
            return _from_mapping(mapping, source=str(pyproject_path))

    return AppConfig()


def default_config_template() -> str:
    """Return a starter config template."""
    return "\n".join(
        [
            'skills_root = "skills"',
            "skills = []",
            'format = "human"',
            'version_registry = "config/version-claim-registry.json"',
            'semantic_registry = "config/semantic-invariant-registry.json"',
            'release_watch_registry = "config/release-watch-registry.json"',
            "",
            "[sections]",
            'vocabulary = ["Incorrect", "Correct", "When NOT to use", "Verify with"]',
            'required = ["Incorrect", "Correct"]',
            "",
            "[sections.required_by_skill]",
            '# "my-skill" = ["Incorrect", "Correct", "Verify with"]',
            "",
            "[links]",
            "concurrency = 10",
            "timeout_ms = 15000",
            "retries = 2",
            "backoff_ms = 300",
            "budget_seconds = 600",
            "",
            "[build]",
            'guide_filename = "AGENTS.md"',
            'test_cases_filename = "test-cases.json"',
            'excluded_files = ["README.md", "SKILL.md", "AGENTS.md"]',
            "",
        ]
    )


def _load_toml(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as file_obj:
            loaded = tomllib.load(file_obj)
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"Invalid TOML in {path}: {exc}") from exc
    if not isinstance(loaded, dict):
        return {}
    return loaded


def _extract_config_mapping(loaded: dict[str, Any], *, source_path: Path) -> dict[str, Any]:
    if source_path.name == PYPROJECT_FILENAME:
        section = _find_pyproject_tool_section(loaded)
        return section if section is not None else {}

    tool_section = _find_pyproject_tool_section(loaded)
    if tool_section is not None:
        return tool_section
    return loaded


def _find_pyproject_tool_section(loaded: dict[str, Any]) -> dict[str, Any] | None:
    tool = loaded.get("tool")
    if not isinstance(tool, dict):
        return None
    for key in PYPROJECT_TOOL_KEYS:
        section = tool.get(key)
        if isinstance(section, dict):
            return section
    return None


def _from_mapping(mapping: dict[str, Any], *, source: str) -> AppConfig:
    sections_mapping = _as_table(mapping.get("sections"), "sections")
    links_mapping = _as_table(mapping.get("links"), "links")
    build_mapping = _as_table(mapping.get("build"), "build")

    return AppConfig(
        skills_root=_as_str(mapping.get("skills_root", "skills"), "skills_root"),
        skills=_as_str_list(mapping.get("skills"), "skills"),
        format=_as_choice(mapping.get("format", "human"), OUTPUT_FORMATS, "format"),
        version_registry=_as_optional_str(mapping.get("version_registry"), "version_registry"),
        semantic_registry=_as_optional_str(
            mapping.get("semantic_registry"), "semantic_registry"
        ),
        release_watch_registry=_as_optional_str(
            mapping.get("release_watch_registry"), "release_watch_registry"
        ),
        sections=_parse_sections_config(sections_mapping),
        links=_parse_links_config(links_mapping),
        build=_parse_build_config(build_mapping),
        source=source,
    )


def _parse_sections_config(value: dict[str, Any]) -> SectionsConfig:
    by_skill = _as_table(value.get("required_by_skill"), "sections.required_by_skill")
    vocabulary = _as_str_list(value.get("vocabulary"), "sections.vocabulary") or list(
        DEFAULT_SECTION_NAMES
    )
    required = (
        _as_str_list(value.get("required"), "sections.required")
        if "required" in value
        else list(DEFAULT_REQUIRED_SECTIONS)
    )
    required_by_skill = {
        name: _as_str_list(sections, f"sections.required_by_skill.{name}")
        for name, sections in by_skill.items()
    }

    known = set(vocabulary)
    for field_name, sections in [
        ("sections.required", required),
        *(
            (f"sections.required_by_skill.{name}", items)
            for name, items in required_by_skill.items()
        ),
    ]:
        unknown = [item for item in sections if item not in known]
        if unknown:
            raise ValueError(
                f"{field_name} names sections outside the vocabulary: {', '.join(unknown)}"
            )

    return SectionsConfig(
        vocabulary=vocabulary,
        required=required,
        required_by_skill=required_by_skill,
    )


def _parse_links_config(value: dict[str, Any]) -> LinksConfig:
    config = LinksConfig(
        concurrency=_as_int(value.get("concurrency", 10), "links.concurrency"),
        timeout_ms=_as_int(value.get("timeout_ms", 15000), "links.timeout_ms"),
        retries=_as_int(value.get("retries", 2), "links.retries"),
        backoff_ms=_as_int(value.get("backoff_ms", 300), "links.backoff_ms"),
        budget_seconds=_as_int(value.get("budget_seconds", 600), "links.budget_seconds"),
    )
    config.to_options()
    return config


def _parse_build_config(value: dict[str, Any]) -> BuildConfig:
    excluded = (
        _as_str_list(value.get("excluded_files"), "build.excluded_files")
        if "excluded_files" in value
        else list(DEFAULT_EXCLUDED_FILES)
    )
    return BuildConfig(
        guide_filename=_as_str(value.get("guide_filename", "AGENTS.md"), "build.guide_filename"),
        test_cases_filename=_as_str(
            value.get("test_cases_filename", "test-cases.json"), "build.test_cases_filename"
        ),
        excluded_files=excluded,
    )


def _as_table(value: Any, field_name: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{field_name} must be a table/object")
    return value


def _as_str_list(value: Any, field_name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{field_name} must be a list of strings")
    items: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError(f"{field_name} must be a list of strings")
        items.append(item)
    return items


def _as_str(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field_name} must be a non-empty string")
    return value


def _as_optional_str(value: Any, field_name: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, field_name)


def _as_choice(raw: Any, allowed: set[str], field_name: str) -> str:
    value = str(raw).lower()
    if value not in allowed:
        choices = ", ".join(sorted(allowed))
        raise ValueError(f"{field_name} must be one of: {choices}")
    return value


def _as_int(raw: Any, field_name: str) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ValueError(f"{field_name} must be an integer")
    return raw

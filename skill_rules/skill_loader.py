"""Skill directory loading and taxonomy parsing."""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from re import IGNORECASE, compile

from skill_rules.rule_parser import ParseError, Rule, RuleParser

TAXONOMY_FILENAME = "_sections.md"
METADATA_FILENAME = "metadata.json"
RULES_DIRNAME = "rules"
SKILL_MARKERS = (RULES_DIRNAME, TAXONOMY_FILENAME, "SKILL.md")
DEFAULT_EXCLUDED_FILES = ("README.md", "SKILL.md", "AGENTS.md")
IMPACT_LEVELS = ("CRITICAL", "HIGH", "MEDIUM-HIGH", "MEDIUM", "LOW-MEDIUM", "LOW")
UNVERSIONED = "unversioned"

TAXONOMY_HEADING_RE = compile(
    r"^##\s+(?:(?P<number>\d+)\.\s+)?(?P<title>.+?)\s*\((?P<prefix>[A-Za-z0-9][\w-]*)\)\s*$"
)
TAXONOMY_FIELD_RE = compile(
    r"^\*\*(?P<key>Impact|Description):?\*\*:?\s*(?P<value>.*)$", IGNORECASE
)


class LoadError(ValueError):
    """Raised when a skill cannot be loaded as a consistent unit."""


@dataclass(frozen=True, slots=True)
class TaxonomyEntry:
    """One rule-id prefix grouping declared in ``_sections.md``."""

    prefix: str
    title: str
    impact: str
    description: str
    number: int


@dataclass(frozen=True, slots=True)
class RuleLoadIssue:
    """A rule file that could not be parsed."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class Skill:
    """A named, taxonomy-ordered collection of rules."""

    name: str
    directory: Path
    taxonomy: tuple[TaxonomyEntry, ...]
    rules: tuple[Rule, ...]
    load_errors: tuple[RuleLoadIssue, ...] = ()
    version: str = UNVERSIONED
    title: str | None = None
    abstract: str | None = None

    @property
    def rule_count(self) -> int:
        return len(self.rules)

    def entry_for(self, rule: Rule) -> TaxonomyEntry:
        entry = match_taxonomy_entry(rule.rule_id, self.taxonomy)
        if entry is None:
            raise LoadError(f"{rule.path}: rule id {rule.rule_id!r} has no taxonomy entry")
        return entry

    def rules_in(self, entry: TaxonomyEntry) -> list[Rule]:
        return [rule for rule in self.rules if self.entry_for(rule) is entry]


def parse_taxonomy(text: str, *, source: str = TAXONOMY_FILENAME) -> tuple[TaxonomyEntry, ...]:
    """Parse section headings of the form ``## 1. Title (prefix)``."""
    drafts: list[dict[str, str]] = []

    for lineno, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if line.startswith("## "):
            match = TAXONOMY_HEADING_RE.match(line)
            if match is None:
                raise LoadError(f"{source}:{lineno}: section heading lacks a '(prefix)': {line!r}")
            drafts.append(
                {
                    "prefix": match.group("prefix"),
                    "title": match.group("title").strip(),
                    "number": match.group("number") or "",
                    "line": str(lineno),
                }
            )
            continue

        field_match = TAXONOMY_FIELD_RE.match(line)
        if field_match is not None and drafts:
            drafts[-1][field_match.group("key").lower()] = field_match.group("value").strip()

    if not drafts:
        raise LoadError(f"{source}: no taxonomy sections declared")

    entries: list[TaxonomyEntry] = []
    seen: set[str] = set()
    for position, draft in enumerate(drafts, start=1):
        where = f"{source}:{draft['line']}"
        prefix = draft["prefix"]
        if prefix in seen:
            raise LoadError(f"{where}: duplicate taxonomy prefix {prefix!r}")
        seen.add(prefix)

        impact = draft.get("impact", "").strip("* ").upper()
        if not impact:
            raise LoadError(f"{where}: section {prefix!r} is missing an **Impact:** line")
        if impact not in IMPACT_LEVELS:
            raise LoadError(f"{where}: section {prefix!r} has unknown impact {impact!r}")

        entries.append(
            TaxonomyEntry(
                prefix=prefix,
                title=draft["title"],
                impact=impact,
                description=draft.get("description", ""),
                number=int(draft["number"]) if draft["number"] else position,
            )
        )
    return tuple(entries)


def match_taxonomy_entry(
    rule_id: str, taxonomy: Iterable[TaxonomyEntry]
) -> TaxonomyEntry | None:
    """Return the entry with the longest prefix matching ``rule_id``."""
    best: TaxonomyEntry | None = None
    for entry in taxonomy:
        if rule_id == entry.prefix or rule_id.startswith(entry.prefix + "-"):
            if best is None or len(entry.prefix) > len(best.prefix):
                best = entry
    return best


def load_skill(
    directory: Path,
    *,
    parser: RuleParser | None = None,
    excluded_files: Iterable[str] = DEFAULT_EXCLUDED_FILES,
) -> Skill:
    """Load one skill directory.

    The taxonomy is strict: a missing or malformed ``_sections.md``, a rule
    that no taxonomy prefix classifies, or a duplicate rule id raises
    :class:`LoadError`. Individual rule parse failures are collected in
    ``Skill.load_errors`` so the rest of the skill can still be validated.
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise LoadError(f"Skill directory does not exist: {directory}")

    name = directory.name
    rules_dir = directory / RULES_DIRNAME
    if not rules_dir.is_dir():
        rules_dir = directory

    taxonomy_path = rules_dir / TAXONOMY_FILENAME
    if not taxonomy_path.is_file():
        missing = _relative(taxonomy_path, directory, name)
        raise LoadError(f"{name}: missing taxonomy file {missing}")
    taxonomy = parse_taxonomy(
        _read_text(taxonomy_path, name), source=_relative(taxonomy_path, directory, name)
    )

    active_parser = parser or RuleParser()
    excluded = set(excluded_files)
    rules: list[Rule] = []
    issues: list[RuleLoadIssue] = []
    for path in sorted(rules_dir.glob("*.md")):
        if not path.is_file() or path.name.startswith("_") or path.name in excluded:
            continue
        rel_path = _relative(path, directory, name)
        try:
            text = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            issues.append(RuleLoadIssue(path=rel_path, message=f"not valid UTF-8: {exc}"))
            continue
        try:
            rules.append(active_parser.parse(text, rule_id=path.stem, path=rel_path))
        except ParseError as exc:
            issues.append(RuleLoadIssue(path=rel_path, message=str(exc)))

    _reject_duplicate_ids(rules)

    order = {entry.prefix: index for index, entry in enumerate(taxonomy)}
    keyed: list[tuple[int, str, Rule]] = []
    for rule in rules:
        entry = match_taxonomy_entry(rule.rule_id, taxonomy)
        if entry is None:
            known = ", ".join(item.prefix for item in taxonomy)
            raise LoadError(
                f"{rule.path}: rule id {rule.rule_id!r} matches no taxonomy prefix "
                f"(known: {known})"
            )
        keyed.append((order[entry.prefix], rule.filename, rule))
    keyed.sort(key=lambda item: (item[0], item[1]))

    metadata = _load_metadata(directory, name)
    return Skill(
        name=name,
        directory=directory,
        taxonomy=taxonomy,
        rules=tuple(item[2] for item in keyed),
        load_errors=tuple(issues),
        version=str(metadata.get("version") or UNVERSIONED),
        title=_optional_str(metadata.get("title")),
        abstract=_optional_str(metadata.get("abstract")),
    )


def discover_skills(root: Path, names: Iterable[str] | None = None) -> list[Path]:
    """Return skill directories under ``root`` sorted by name."""
    root = Path(root)
    if not root.is_dir():
        raise LoadError(f"Skills root does not exist: {root}")

    requested = list(dict.fromkeys(names or []))
    if requested:
        missing = [name for name in requested if not (root / name).is_dir()]
        if missing:
            raise LoadError(f"Unknown skills under {root}: {', '.join(sorted(missing))}")
        return [root / name for name in sorted(requested)]

    return sorted(
        (
            child
            for child in root.iterdir()
            if child.is_dir()
            and not child.name.startswith((".", "_"))
            and any((child / marker).exists() for marker in SKILL_MARKERS)
        ),
        key=lambda child: child.name,
    )


def load_corpus(
    root: Path,
    *,
    names: Iterable[str] | None = None,
    parser: RuleParser | None = None,
    excluded_files: Iterable[str] = DEFAULT_EXCLUDED_FILES,
) -> list[Skill]:
    """Load every skill under ``root`` (or just ``names``)."""
    active_parser = parser or RuleParser()
    excluded = tuple(excluded_files)
    return [
        load_skill(directory, parser=active_parser, excluded_files=excluded)
        for directory in discover_skills(root, names)
    ]


def _reject_duplicate_ids(rules: list[Rule]) -> None:
    owners: dict[str, str] = {}
    for rule in rules:
        previous = owners.get(rule.rule_id)
        if previous is not None:
            raise LoadError(
                f"Duplicate rule id {rule.rule_id!r} declared by {previous} and {rule.path}"
            )
        owners[rule.rule_id] = rule.path


def _load_metadata(directory: Path, name: str) -> dict[str, object]:
    path = directory / METADATA_FILENAME
    if not path.is_file():
        return {}
    try:
        loaded = json.loads(_read_text(path, name))
    except json.JSONDecodeError as exc:
        raise LoadError(f"{name}/{METADATA_FILENAME}: invalid JSON: {exc}") from exc
    if not isinstance(loaded, dict):
        raise LoadError(f"{name}/{METADATA_FILENAME}: expected a JSON object")
    return loaded


def _read_text(path: Path, name: str) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise LoadError(f"{name}: {path.name} is not valid UTF-8: {exc}") from exc


def _relative(path: Path, directory: Path, name: str) -> str:
    return f"{name}/{path.relative_to(directory).as_posix()}"


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None

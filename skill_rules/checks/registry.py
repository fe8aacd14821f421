"""Claim registry loading.

A claim registry is a versioned JSON document of required and prohibited
content assertions. Loading is all-or-nothing: one malformed entry (unknown
kind, invalid regex, unknown severity, ...) rejects the whole registry, so a
broken registry can never degrade into "no checks".
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Any

from skill_rules.checks.base import Severity
from skill_rules.rule_parser import Rule

SUPPORTED_REGISTRY_VERSIONS = {1}
DEFAULT_SEVERITY = Severity.P0
ALL_SKILLS = "all"
GLOB_CHARS = "*?["
REGEX_FLAGS = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "x": re.VERBOSE,
}
ENTRY_KEYS = {
    "id",
    "scope",
    "kind",
    "pattern",
    "flags",
    "severity",
    "appliesToSkills",
    "message",
    "section",
    "tokens",
    "when",
    "description",
}


class RegistryLoadError(ValueError):
    """Raised when a claim registry is malformed."""


class ClaimKind(StrEnum):
    """Supported assertion kinds."""

    REQUIRED_HEADING = "required-heading"
    REQUIRED_PHRASE = "required-phrase"
    PROHIBITED_PHRASE = "prohibited-phrase"
    REQUIRED_FILE_LEVEL_ASSERTION = "required-file-level-assertion"
    REQUIRED_SECTION_TOKENS = "required-section-tokens"

    @property
    def prohibits(self) -> bool:
        return self is ClaimKind.PROHIBITED_PHRASE


@dataclass(frozen=True, slots=True)
class ClaimRegistryEntry:
    """One declarative assertion."""

    entry_id: str
    scope: str
    kind: ClaimKind
    pattern: re.Pattern[str] | None
    severity: Severity
    applies_to_skills: frozenset[str] | None
    message: str
    section: str | None = None
    tokens: tuple[str, ...] = ()
    when: re.Pattern[str] | None = None

    @property
    def is_glob(self) -> bool:
        return any(char in self.scope for char in GLOB_CHARS)

    @property
    def section_scoped(self) -> bool:
        return self.section is not None or self.kind is ClaimKind.REQUIRED_SECTION_TOKENS

    def applies_to(self, skill_name: str) -> bool:
        return self.applies_to_skills is None or skill_name in self.applies_to_skills

    def matches(self, rule: Rule) -> bool:
        """Return whether the rule's path or filename is in this entry's scope."""
        if self.is_glob:
            return fnmatchcase(rule.path, self.scope) or fnmatchcase(rule.filename, self.scope)
        if "/" in self.scope:
            return rule.path == self.scope
        return rule.filename == self.scope


@dataclass(frozen=True, slots=True)
class ClaimRegistry:
    """Immutable registry for one pipeline run."""

    version: int
    source: str
    entries: tuple[ClaimRegistryEntry, ...]

    def __len__(self) -> int:
        return len(self.entries)

    def for_skill(self, skill_name: str) -> list[ClaimRegistryEntry]:
        return [entry for entry in self.entries if entry.applies_to(skill_name)]


def load_registry(
    source: Path | str | Mapping[str, Any],
    *,
    allow_section_scope: bool = True,
) -> ClaimRegistry:
    """Load and fully validate a claim registry from a JSON file or mapping."""
    if isinstance(source, Mapping):
        loaded: Any = source
        source_name = "<mapping>"
    else:
        path = Path(source)
        source_name = str(path)
        try:
            loaded = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise RegistryLoadError(f"Registry file does not exist: {path}") from None
        except json.JSONDecodeError as exc:
            raise RegistryLoadError(f"Invalid JSON in {path}: {exc}") from exc

    if not isinstance(loaded, Mapping):
        raise RegistryLoadError(f"{source_name}: registry must be a JSON object")

    version = loaded.get("version", 1)
    if (
        isinstance(version, bool)
        or not isinstance(version, int)
        or version not in SUPPORTED_REGISTRY_VERSIONS
    ):
        supported = ", ".join(str(item) for item in sorted(SUPPORTED_REGISTRY_VERSIONS))
        raise RegistryLoadError(
            f"{source_name}: unsupported registry version {version!r} (supported: {supported})"
        )

    raw_entries = loaded.get("entries")
    if not isinstance(raw_entries, list):
        raise RegistryLoadError(f"{source_name}: 'entries' must be a list")

    entries: list[ClaimRegistryEntry] = []
    seen_ids: set[str] = set()
    for index, raw in enumerate(raw_entries):
        where = f"{source_name}: entries[{index}]"
        entry = _parse_entry(raw, index=index, where=where)
        if entry.section_scoped and not allow_section_scope:
            raise RegistryLoadError(
                f"{where}: section-scoped assertions are not supported by this registry"
            )
        if entry.entry_id in seen_ids:
            raise RegistryLoadError(f"{where}: duplicate entry id {entry.entry_id!r}")
        seen_ids.add(entry.entry_id)
        entries.append(entry)

    return ClaimRegistry(version=int(version), source=source_name, entries=tuple(entries))


def _parse_entry(raw: Any, *, index: int, where: str) -> ClaimRegistryEntry:
    if not isinstance(raw, Mapping):
        raise RegistryLoadError(f"{where}: entry must be an object")

    unknown = sorted(set(raw) - ENTRY_KEYS)
    if unknown:
        raise RegistryLoadError(f"{where}: unknown keys: {', '.join(unknown)}")

    raw_kind = _require_str(raw, "kind", where)
    try:
        kind = ClaimKind(raw_kind)
    except ValueError:
        choices = ", ".join(item.value for item in ClaimKind)
        raise RegistryLoadError(
            f"{where}: unknown kind {raw_kind!r}; expected one of: {choices}"
        ) from None

    scope = _require_str(raw, "scope", where)
    flags = _parse_flags(raw.get("flags", ""), where)
    section = _optional_str(raw, "section", where)

    if kind is ClaimKind.REQUIRED_SECTION_TOKENS:
        tokens = _parse_tokens(raw.get("tokens"), where)
        if section is None:
            raise RegistryLoadError(f"{where}: 'section' is required for {kind.value}")
        pattern = _compile(raw["pattern"], flags, f"{where}.pattern") if "pattern" in raw else None
    else:
        if "tokens" in raw:
            raise RegistryLoadError(
                f"{where}: 'tokens' is only valid for {ClaimKind.REQUIRED_SECTION_TOKENS.value}"
            )
        tokens = ()
        pattern = _compile(_require_str(raw, "pattern", where), flags, f"{where}.pattern")

    when = None
    if "when" in raw:
        if kind is not ClaimKind.REQUIRED_FILE_LEVEL_ASSERTION:
            raise RegistryLoadError(
                f"{where}: 'when' is only valid for {ClaimKind.REQUIRED_FILE_LEVEL_ASSERTION.value}"
            )
        when = _compile(_require_str(raw, "when", where), flags, f"{where}.when")

    raw_severity = raw.get("severity")
    if raw_severity is None:
        severity = DEFAULT_SEVERITY
    elif isinstance(raw_severity, str):
        try:
            severity = Severity.parse(raw_severity)
        except ValueError as exc:
            raise RegistryLoadError(f"{where}: {exc}") from None
    else:
        raise RegistryLoadError(f"{where}: 'severity' must be a string")

    entry_id = _optional_str(raw, "id", where) or f"entries[{index}]"
    message = _optional_str(raw, "message", where) or _default_message(kind, raw, section)
    return ClaimRegistryEntry(
        entry_id=entry_id,
        scope=scope,
        kind=kind,
        pattern=pattern,
        severity=severity,
        applies_to_skills=_parse_applies_to(raw.get("appliesToSkills", ALL_SKILLS), where),
        message=message,
        section=section,
        tokens=tokens,
        when=when,
    )


def _compile(pattern: Any, flags: int, where: str) -> re.Pattern[str]:
    if not isinstance(pattern, str) or not pattern:
        raise RegistryLoadError(f"{where}: must be a non-empty string")
    try:
        return re.compile(pattern, flags)
    except re.error as exc:
        raise RegistryLoadError(f"{where}: invalid regex /{pattern}/ ({exc})") from exc


def _parse_flags(raw: Any, where: str) -> int:
    if not isinstance(raw, str):
        raise RegistryLoadError(f"{where}: 'flags' must be a string")
    flags = 0
    for char in raw:
        flag = REGEX_FLAGS.get(char)
        if flag is None:
            raise RegistryLoadError(f"{where}: unsupported regex flag {char!r}")
        flags |= flag
    return flags


def _parse_tokens(raw: Any, where: str) -> tuple[str, ...]:
    if not isinstance(raw, list) or not raw:
        raise RegistryLoadError(f"{where}: 'tokens' must be a non-empty list of strings")
    tokens: list[str] = []
    for item in raw:
        if not isinstance(item, str) or not item:
            raise RegistryLoadError(f"{where}: 'tokens' must be a non-empty list of strings")
        tokens.append(item)
    return tuple(tokens)


def _parse_applies_to(raw: Any, where: str) -> frozenset[str] | None:
    if raw == ALL_SKILLS:
        return None
    if isinstance(raw, list) and raw and all(isinstance(item, str) and item for item in raw):
        if ALL_SKILLS in raw:
            return None
        return frozenset(raw)
    raise RegistryLoadError(
        f"{where}: 'appliesToSkills' must be \"{ALL_SKILLS}\" or a non-empty list of skill names"
    )


def _require_str(raw: Mapping[str, Any], key: str, where: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise RegistryLoadError(f"{where}: '{key}' must be a non-empty string")
    return value.strip() if key != "pattern" else value


def _optional_str(raw: Mapping[str, Any], key: str, where: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise RegistryLoadError(f"{where}: '{key}' must be a string")
    return value.strip() or None


def _default_message(kind: ClaimKind, raw: Mapping[str, Any], section: str | None) -> str:
    location = f" in section '{section}'" if section else ""
    if kind is ClaimKind.REQUIRED_SECTION_TOKENS:
        return f"Missing required tokens{location}"
    pattern = raw.get("pattern")
    if kind is ClaimKind.PROHIBITED_PHRASE:
        return f"Contains prohibited phrase /{pattern}/{location}"
    if kind is ClaimKind.REQUIRED_HEADING:
        return f"Missing required heading /{pattern}/"
    if kind is ClaimKind.REQUIRED_FILE_LEVEL_ASSERTION:
        return f"Missing required file-level assertion /{pattern}/"
    return f"Missing required phrase /{pattern}/{location}"

"""Release-line drift detection against official release pages."""

from __future__ import annotations

import json
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from http.client import HTTPException
from pathlib import Path
from typing import Any
from urllib.request import Request, urlopen

from skill_rules.checks.base import CORPUS_SCOPE, Finding, Severity
from skill_rules.checks.links import USER_AGENT
from skill_rules.checks.registry import RegistryLoadError

SEMVER_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")
WATCH_KEYS = {"id", "url", "versionPattern", "expectedLatest", "description"}

Version = tuple[int, int, int]
FetchText = Callable[[str, float], str]


@dataclass(frozen=True, slots=True)
class ReleaseWatch:
    """One release line whose latest published version is pinned."""

    watch_id: str
    url: str
    version_pattern: re.Pattern[str]
    expected_latest: Version
    description: str = ""


def parse_version(value: str) -> Version | None:
    match = SEMVER_RE.match(value.strip())
    if match is None:
        return None
    return (int(match.group(1)), int(match.group(2)), int(match.group(3)))


def format_version(version: Version) -> str:
    return ".".join(str(part) for part in version)


def load_release_watches(source: Path | str | Mapping[str, Any]) -> tuple[ReleaseWatch, ...]:
    """Load a release-watch registry; any malformed check rejects the whole file."""
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

    if not isinstance(loaded, Mapping) or not isinstance(loaded.get("checks", []), list):
        raise RegistryLoadError(f"{source_name}: expected an object with a 'checks' list")

    watches: list[ReleaseWatch] = []
    for index, raw in enumerate(loaded.get("checks", [])):
        where = f"{source_name}: checks[{index}]"
        if not isinstance(raw, Mapping):
            raise RegistryLoadError(f"{where}: check must be an object")
        unknown = sorted(set(raw) - WATCH_KEYS)
        if unknown:
            raise RegistryLoadError(f"{where}: unknown keys: {', '.join(unknown)}")
        for key in ("id", "url", "versionPattern", "expectedLatest"):
            if not isinstance(raw.get(key), str) or not raw[key].strip():
                raise RegistryLoadError(f"{where}: '{key}' must be a non-empty string")

        expected = parse_version(raw["expectedLatest"])
        if expected is None:
            raise RegistryLoadError(
                f"{where}: invalid expectedLatest semver {raw['expectedLatest']!r}"
            )
        try:
            pattern = re.compile(raw["versionPattern"])
        except re.error as exc:
            raise RegistryLoadError(
                f"{where}: invalid regex /{raw['versionPattern']}/ ({exc})"
            ) from exc

        watches.append(
            ReleaseWatch(
                watch_id=raw["id"].strip(),
                url=raw["url"].strip(),
                version_pattern=pattern,
                expected_latest=expected,
                description=str(raw.get("description") or ""),
            )
        )
    return tuple(watches)


def urllib_fetch_text(url: str, timeout: float) -> str:
    request = Request(url, method="GET", headers={"User-Agent": USER_AGENT})
    with urlopen(request, timeout=timeout) as response:
        charset = response.headers.get_content_charset() or "utf-8"
        return response.read().decode(charset, errors="replace")


class ReleaseWatchChecker:
    """Flags release lines whose observed latest version differs from the pinned one."""

    checker_name = "ReleaseWatchChecker"

    def __init__(
        self,
        watches: tuple[ReleaseWatch, ...],
        *,
        fetch: FetchText = urllib_fetch_text,
        timeout_ms: int = 15000,
        retries: int = 2,
        backoff_ms: int = 300,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.watches = watches
        self._fetch = fetch
        self._timeout = timeout_ms / 1000
        self._retries = retries
        self._backoff_ms = backoff_ms
        self._sleep = sleep

    def run(self) -> list[Finding]:
        findings: list[Finding] = []
        for watch in self.watches:
            finding = self._check_watch(watch)
            if finding is not None:
                findings.append(finding)
        return findings

    def _check_watch(self, watch: ReleaseWatch) -> Finding | None:
        try:
            page = self._fetch_with_retries(watch.url)
        except (OSError, HTTPException, ValueError) as exc:
            return self._finding(
                Severity.P2, watch, f"[{watch.watch_id}] Could not fetch release page: {exc}"
            )

        observed = sorted(
            {
                version
                for version in (
                    parse_version(match.group(0))
                    for match in watch.version_pattern.finditer(page)
                )
                if version is not None
            }
        )
        expected_text = format_version(watch.expected_latest)
        if not observed:
            return self._finding(
                Severity.P1,
                watch,
                f"[{watch.watch_id}] No versions matched /{watch.version_pattern.pattern}/",
            )

        latest = observed[-1]
        latest_text = format_version(latest)
        if latest > watch.expected_latest:
            return self._finding(
                Severity.P1,
                watch,
                f"[{watch.watch_id}] Newer release detected ({latest_text} > {expected_text}); "
                "update skills and audit baselines",
            )
        if latest < watch.expected_latest:
            return self._finding(
                Severity.P1,
                watch,
                f"[{watch.watch_id}] Expected release {expected_text} not observed as latest; "
                f"observed {latest_text}",
            )
        return None

    def _fetch_with_retries(self, url: str) -> str:
        for attempt in range(self._retries + 1):
            try:
                return self._fetch(url, self._timeout)
            except (OSError, HTTPException, ValueError):
                if attempt >= self._retries:
                    raise
            self._sleep(self._backoff_ms * (attempt + 1) / 1000)
        raise AssertionError("unreachable")

    def _finding(self, severity: Severity, watch: ReleaseWatch, message: str) -> Finding:
        evidence = [watch.url]
        if watch.description:
            evidence.append(watch.description)
        return Finding(
            severity=severity,
            rule_id=None,
            skill_name=CORPUS_SCOPE,
            checker_name=self.checker_name,
            message=message,
            evidence=tuple(evidence),
        )

"""Reference link health checks."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from http.client import HTTPException
from urllib.error import HTTPError
from urllib.request import Request, urlopen

from skill_rules import __version__
from skill_rules.checks.base import CORPUS_SCOPE, Finding, Severity
from skill_rules.skill_loader import Skill

USER_AGENT = f"skill-rules/{__version__} (+reference-link-check)"
FALLBACK_TO_GET_STATUSES = {405, 501}
RATE_LIMITED_STATUS = 429

# (method, url, timeout_seconds) -> HTTP status; raises OSError on network failure.
FetchStatus = Callable[[str, str, float], int]


@dataclass(frozen=True, slots=True)
class LinkCheckOptions:
    """Worker-pool and retry settings for link probing."""

    concurrency: int = 10
    timeout_ms: int = 15000
    retries: int = 2
    backoff_ms: int = 300
    budget_seconds: float | None = 600.0

    def __post_init__(self) -> None:
        if self.concurrency <= 0:
            raise ValueError("links.concurrency must be > 0")
        if self.timeout_ms <= 0:
            raise ValueError("links.timeout_ms must be > 0")
        if self.retries < 0:
            raise ValueError("links.retries must be >= 0")
        if self.backoff_ms < 0:
            raise ValueError("links.backoff_ms must be >= 0")
        if self.budget_seconds is not None and self.budget_seconds <= 0:
            raise ValueError("links.budget_seconds must be > 0")


@dataclass(frozen=True, slots=True)
class ReferenceSite:
    """A rule that cites a URL."""

    skill_name: str
    rule_id: str
    path: str


@dataclass(slots=True)
class UrlCheckResult:
    """Outcome of probing one URL."""

    url: str
    ok: bool
    status: int | None = None
    note: str = ""
    attempts: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "url": self.url,
            "ok": self.ok,
            "status": self.status,
            "note": self.note,
            "attempts": self.attempts,
        }


@dataclass(slots=True)
class LinkCheckReport:
    """All URL check results plus the findings derived from them."""

    results: list[UrlCheckResult] = field(default_factory=list)
    findings: list[Finding] = field(default_factory=list)
    unchecked: list[str] = field(default_factory=list)
    references: dict[str, list[ReferenceSite]] = field(default_factory=dict)

    @property
    def healthy(self) -> list[UrlCheckResult]:
        return [result for result in self.results if result.ok]

    @property
    def failed(self) -> list[UrlCheckResult]:
        return [result for result in self.results if not result.ok]


def urllib_fetch_status(method: str, url: str, timeout: float) -> int:
    """Issue one request and return its HTTP status (redirects are followed)."""
    request = Request(url, method=method, headers={"User-Agent": USER_AGENT})
    try:
        with urlopen(request, timeout=timeout) as response:
            return int(response.status)
    except HTTPError as exc:
        return int(exc.code)


def collect_references(skills: Iterable[Skill]) -> dict[str, list[ReferenceSite]]:
    """Map each unique URL (exact string match) to every rule citing it."""
    references: dict[str, list[ReferenceSite]] = {}
    for skill in skills:
        for rule in skill.rules:
            for url in dict.fromkeys(rule.reference_urls):
                references.setdefault(url, []).append(
                    ReferenceSite(skill_name=skill.name, rule_id=rule.rule_id, path=rule.path)
                )
    return references


class ReferenceLinkChecker:
    """Checks reference URLs with a bounded worker pool."""

    checker_name = "ReferenceLinkChecker"

    def __init__(
        self,
        options: LinkCheckOptions | None = None,
        *,
        fetch: FetchStatus = urllib_fetch_status,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.options = options or LinkCheckOptions()
        self._fetch = fetch
        self._sleep = sleep
        self._clock = clock

    def check(self, skill: Skill) -> list[Finding]:
        return self.run([skill]).findings

    def check_skills(self, skills: Iterable[Skill]) -> list[Finding]:
        return self.run(skills).findings

    def run(self, skills: Iterable[Skill]) -> LinkCheckReport:
        """Request every unique URL across ``skills``.

        Each URL check times out independently. When ``budget_seconds`` elapses,
        checks that have not started are cancelled; completed results are
        kept and the remaining URLs are reported as unchecked.
        """
        references = collect_references(skills)
        urls = sorted(references)
        report = LinkCheckReport(references=references)
        if not urls:
            return report

        results: dict[str, UrlCheckResult] = {}
        budget = self.options.budget_seconds
        deadline = None if budget is None else self._clock() + budget
        executor = ThreadPoolExecutor(
            max_workers=min(self.options.concurrency, len(urls)),
            thread_name_prefix="link-check",
        )
        futures: dict[Future[UrlCheckResult], str] = {
            executor.submit(self.check_url, url): url for url in urls
        }
        pending: set[Future[UrlCheckResult]] = set(futures)
        try:
            while pending:
                remaining = None if deadline is None else deadline - self._clock()
                if remaining is not None and remaining <= 0:
                    break
                done, pending = wait(pending, timeout=remaining, return_when=FIRST_COMPLETED)
                for future in done:
                    results[futures[future]] = future.result()
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        for future in [item for item in pending if item.done() and not item.cancelled()]:
            results[futures[future]] = future.result()
            pending.discard(future)

        report.results = [results[url] for url in urls if url in results]
        report.unchecked = sorted(futures[future] for future in pending)
        report.findings = self._findings(report)
        return report

    def check_url(self, url: str) -> UrlCheckResult:
        """Check one URL: HEAD (GET fallback), retrying transient failures only."""
        timeout = self.options.timeout_ms / 1000
        last_error = "unknown error"
        last_status: int | None = None
        attempts = 0

        for attempt in range(self.options.retries + 1):
            attempts = attempt + 1
            try:
                status = self._fetch("HEAD", url, timeout)
                if status in FALLBACK_TO_GET_STATUSES:
                    status = self._fetch("GET", url, timeout)
            except (OSError, HTTPException, ValueError) as exc:
                last_status = None
                last_error = _describe_error(exc)
            else:
                last_status = status
                if status == RATE_LIMITED_STATUS:
                    return UrlCheckResult(
                        url=url,
                        ok=True,
                        status=status,
                        note="rate-limited (treated as reachable)",
                        attempts=attempts,
                    )
                if 200 <= status < 400:
                    return UrlCheckResult(url=url, ok=True, status=status, attempts=attempts)
                if 400 <= status < 500:
                    return UrlCheckResult(
                        url=url, ok=False, status=status, note=f"HTTP {status}", attempts=attempts
                    )
                last_error = f"HTTP {status}"

            if attempt < self.options.retries:
                self._sleep(self.options.backoff_ms * (attempt + 1) / 1000)

        return UrlCheckResult(
            url=url, ok=False, status=last_status, note=last_error, attempts=attempts
        )

    def _findings(self, report: LinkCheckReport) -> list[Finding]:
        findings: list[Finding] = []
        for result in report.failed:
            findings.append(
                self._finding(
                    Severity.P2,
                    report.references[result.url],
                    f"Broken or unreachable reference: {result.url} ({result.note})",
                )
            )
        for url in report.unchecked:
            findings.append(
                self._finding(
                    Severity.P3,
                    report.references[url],
                    f"Reference not checked before the link-check budget expired: {url}",
                )
            )
        return findings

    def _finding(self, severity: Severity, sites: list[ReferenceSite], message: str) -> Finding:
        ordered = sorted(sites, key=lambda site: (site.skill_name, site.path))
        skill_names = sorted({site.skill_name for site in ordered})
        return Finding(
            severity=severity,
            rule_id=ordered[0].rule_id if len(ordered) == 1 else None,
            skill_name=skill_names[0] if len(skill_names) == 1 else CORPUS_SCOPE,
            checker_name=self.checker_name,
            message=message,
            evidence=tuple(site.path for site in ordered),
        )


def _describe_error(exc: Exception) -> str:
    detail = str(exc)
    if not detail:
        return exc.__class__.__name__
    return f"{exc.__class__.__name__}: {detail}"

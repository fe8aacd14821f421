"""Rule file parser primitives."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from re import IGNORECASE, Pattern, compile, escape

DEFAULT_SECTION_NAMES = ("Incorrect", "Correct", "When NOT to use", "Verify with")

FRONTMATTER_DELIMITER = "---"
FRONTMATTER_LINE_RE = compile(r"^(?P<key>[A-Za-z_][\w-]*)\s*:(?P<value>.*)$")
FENCE_RE = compile(r"^\s*(?P<marker>```|~~~)")
ATX_HEADING_RE = compile(r"^(?P<hashes>#{1,6})\s+(?P<text>.+?)\s*#*\s*$")
BOLD_LABEL_RE = compile(r"^\*\*(?P<text>[^*]+?)(?::\*\*|\*\*:)\s*$")
PARENTHETICAL_RE = compile(r"\s*\([^)]*\)")
URL_RE = compile(
    r"\[[^\]]*\]\((?P<link>https?://(?:[^\s()]|\([^\s()]*\))+)(?:\s+\"[^\"]*\")?\)"
    r"|(?P<bare>https?://(?:[^\s<>()\[\]\"'`*]|\([^\s<>()\[\]\"'`*]*\))+)"
)
TRAILING_URL_PUNCTUATION = ".,;:!?"


class ParseError(ValueError):
    """Raised when a rule file has absent or malformed frontmatter."""


@dataclass(frozen=True, slots=True)
class Rule:
    """One parsed rule file."""

    rule_id: str
    title: str | None
    impact: str | None
    tags: frozenset[str]
    body: str
    sections: dict[str, str]
    reference_urls: tuple[str, ...]
    frontmatter: dict[str, str] = field(default_factory=dict)
    headings: tuple[str, ...] = ()
    path: str = ""
    filename: str = ""
    text: str = ""

    def section(self, name: str) -> str | None:
        """Return a recognised section's text, if present."""
        return self.sections.get(name)

    def has_sections(self, *names: str) -> bool:
        return all(name in self.sections for name in names)


class RuleParser:
    """Parse rule files against a fixed vocabulary of section names."""

    def __init__(self, section_names: Iterable[str] = DEFAULT_SECTION_NAMES) -> None:
        names = tuple(dict.fromkeys(name.strip() for name in section_names if name.strip()))
        if not names:
            raise ValueError("section vocabulary must not be empty")
        self.section_names = names
        # Longest names first so "Verify with" wins over a shorter "Verify".
        self._matchers: list[tuple[str, Pattern[str]]] = [
            (name, compile(rf"^{escape(name)}\b", IGNORECASE))
            for name in sorted(names, key=len, reverse=True)
        ]

    def parse(self, text: str, *, rule_id: str, path: str = "") -> Rule:
        """Parse raw rule text into a :class:`Rule`.

        ``rule_id`` is the fallback identifier (normally the filename stem);
        a frontmatter ``id`` key takes precedence. Missing sections are not
        an error here, only absent or malformed frontmatter is.
        """
        try:
            frontmatter, body = _split_frontmatter(text)
        except ParseError as exc:
            raise ParseError(f"{path or rule_id}: {exc}") from None

        sections, headings = self._collect_sections(body)
        return Rule(
            rule_id=frontmatter.get("id") or rule_id,
            title=frontmatter.get("title") or None,
            impact=frontmatter.get("impact") or None,
            tags=frozenset(split_tags(frontmatter.get("tags", ""))),
            body=body.strip("\n"),
            sections=sections,
            reference_urls=tuple(extract_reference_urls(body)),
            frontmatter=frontmatter,
            headings=tuple(headings),
            path=path,
            filename=path.rsplit("/", 1)[-1] if path else "",
            text=text,
        )

    def match_section(self, heading: str) -> str | None:
        """Map a heading to its vocabulary name, or ``None`` if unrecognised."""
        label = PARENTHETICAL_RE.sub("", heading).strip()
        for name, matcher in self._matchers:
            if matcher.match(label):
                return name
        return None

    def _collect_sections(self, body: str) -> tuple[dict[str, str], list[str]]:
        chunks: dict[str, list[str]] = {}
        headings: list[str] = []
        current: str | None = None
        buffer: list[str] = []
        fence_marker: str | None = None

        def flush() -> None:
            nonlocal buffer
            if current is not None:
                chunks.setdefault(current, []).append("\n".join(buffer).strip())
            buffer = []

        for line in body.splitlines():
            fence = FENCE_RE.match(line)
            if fence is not None:
                if fence_marker is None:
                    fence_marker = fence.group("marker")
                elif line.strip().startswith(fence_marker):
                    fence_marker = None
            elif fence_marker is None:
                heading = heading_text(line)
                if heading is not None:
                    flush()
                    headings.append(heading)
                    current = self.match_section(heading)
                    continue
            if current is not None:
                buffer.append(line)
        flush()

        sections = {
            name: "\n\n".join(part for part in parts if part) for name, parts in chunks.items()
        }
        return sections, headings


def parse_rule(
    text: str,
    *,
    rule_id: str,
    path: str = "",
    section_names: Iterable[str] = DEFAULT_SECTION_NAMES,
) -> Rule:
    """Parse rule text with a one-off parser."""
    return RuleParser(section_names).parse(text, rule_id=rule_id, path=path)


def heading_text(line: str) -> str | None:
    """Return normalised heading text for ATX headings and bold label lines."""
    match = ATX_HEADING_RE.match(line)
    if match is not None:
        return _clean_heading(match.group("text"))
    match = BOLD_LABEL_RE.match(line.strip())
    if match is not None:
        return _clean_heading(match.group("text"))
    return None


def split_tags(value: str) -> list[str]:
    raw = value.strip()
    if raw.startswith("[") and raw.endswith("]"):
        raw = raw[1:-1]
    tags: list[str] = []
    for item in raw.split(","):
        tag = item.strip().strip("'\"").strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def extract_reference_urls(text: str) -> list[str]:
    """Return markdown-link and bare URLs in order of appearance."""
    urls: list[str] = []
    for match in URL_RE.finditer(text):
        link = match.group("link")
        if link is not None:
            urls.append(link)
            continue
        bare = match.group("bare").rstrip(TRAILING_URL_PUNCTUATION)
        if bare:
            urls.append(bare)
    return urls


def _split_frontmatter(text: str) -> tuple[dict[str, str], str]:
    lines = text.lstrip("\ufeff").splitlines()
    start = 0
    while start < len(lines) and not lines[start].strip():
        start += 1
    if start >= len(lines) or lines[start].strip() != FRONTMATTER_DELIMITER:
        raise ParseError("missing frontmatter block")

    frontmatter: dict[str, str] = {}
    for index in range(start + 1, len(lines)):
        stripped = lines[index].strip()
        if stripped == FRONTMATTER_DELIMITER:
            return frontmatter, "\n".join(lines[index + 1 :])
        if not stripped:
            continue
        match = FRONTMATTER_LINE_RE.match(stripped)
        if match is None:
            raise ParseError(f"line {index + 1}: expected 'key: value', got {stripped!r}")
        key = match.group("key")
        if key in frontmatter:
            raise ParseError(f"line {index + 1}: duplicate frontmatter key {key!r}")
        frontmatter[key] = match.group("value").strip()
    raise ParseError("unterminated frontmatter block")


def _clean_heading(text: str) -> str:
    cleaned = text.strip().strip("*").strip()
    return cleaned.rstrip(":").strip()

"""Checks package."""

from collections.abc import Callable
from dataclasses import dataclass

from skill_rules.checks.base import Checker, Finding, Severity
from skill_rules.checks.claims import SemanticInvariantChecker, VersionClaimChecker
from skill_rules.checks.links import LinkCheckOptions, ReferenceLinkChecker
from skill_rules.checks.registry import ClaimRegistry
from skill_rules.checks.structure import DEFAULT_REQUIRED_SECTIONS, StructuralValidator

__all__ = [
    "Checker",
    "CheckerInfo",
    "CheckerSettings",
    "Finding",
    "Severity",
    "build_checkers",
    "list_checker_info",
]

OFFLINE_CHECKS = ("structure", "version-claims", "semantic-invariants")
NETWORK_CHECKS = ("links",)


@dataclass(frozen=True, slots=True)
class CheckerInfo:
    """Checker metadata for listing and selection."""

    check_id: str
    name: str
    description: str
    network: bool
    default_enabled: bool


@dataclass(frozen=True, slots=True)
class CheckerSettings:
    """Inputs a checker factory may draw on."""

    required_sections: tuple[str, ...] = DEFAULT_REQUIRED_SECTIONS
    required_by_skill: dict[str, tuple[str, ...]] | None = None
    version_registry: ClaimRegistry | None = None
    semantic_registry: ClaimRegistry | None = None
    link_options: LinkCheckOptions | None = None


@dataclass(frozen=True, slots=True)
class _CheckerSpec:
    check_id: str
    checker_cls: type
    factory: Callable[[CheckerSettings], Checker | None]
    network: bool = False


def build_checkers(
    settings: CheckerSettings,
    *,
    check_ids: list[str] | None = None,
) -> list[Checker]:
    """Build checkers in catalogue order.

    ``check_ids=None`` selects the offline checks. A registry-driven checker
    whose registry was not supplied is skipped.
    """
    specs = _ordered_checker_specs()
    registry = {spec.check_id: spec for spec in specs}
    requested = list(OFFLINE_CHECKS) if check_ids is None else _dedupe(check_ids)

    unknown = [check_id for check_id in requested if check_id not in registry]
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ValueError(f"Unknown check ids: {joined}")

    selected = set(requested)
    built: list[Checker] = []
    for spec in specs:
        if spec.check_id not in selected:
            continue
        checker = spec.factory(settings)
        if checker is not None:
            built.append(checker)
    return built


def list_checker_info() -> list[CheckerInfo]:
    """Return metadata for all known checkers."""
    return [
        CheckerInfo(
            check_id=spec.check_id,
            name=spec.checker_cls.__name__,
            description=(spec.checker_cls.__doc__ or "").strip(),
            network=spec.network,
            default_enabled=spec.check_id in OFFLINE_CHECKS,
        )
        for spec in _ordered_checker_specs()
    ]


def _ordered_checker_specs() -> list[_CheckerSpec]:
    return [
        _CheckerSpec(
            check_id="structure",
            checker_cls=StructuralValidator,
            factory=lambda settings: StructuralValidator(
                settings.required_sections,
                required_by_skill=settings.required_by_skill,
            ),
        ),
        _CheckerSpec(
            check_id="links",
            checker_cls=ReferenceLinkChecker,
            factory=lambda settings: ReferenceLinkChecker(settings.link_options),
            network=True,
        ),
        _CheckerSpec(
            check_id="version-claims",
            checker_cls=VersionClaimChecker,
            factory=lambda settings: (
                VersionClaimChecker(settings.version_registry)
                if settings.version_registry is not None
                else None
            ),
        ),
        _CheckerSpec(
            check_id="semantic-invariants",
            checker_cls=SemanticInvariantChecker,
            factory=lambda settings: (
                SemanticInvariantChecker(settings.semantic_registry)
                if settings.semantic_registry is not None
                else None
            ),
        ),
    ]


def _dedupe(items: list[str]) -> list[str]:
    seen: set[str] = set()
    output: list[str] = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        output.append(item)
    return output

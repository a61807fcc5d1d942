"""
promptforge/features/entitlements/plans.py

Plan tiers and export-format entitlements.

The policy table is fixed at import time and read-only. Every export
request is filtered through it before any artifact is rendered, so the
formats produced are always a subset of the caller's plan.
"""

from enum import Enum
from types import MappingProxyType
from typing import FrozenSet, Iterable, List, Mapping, Optional, Union

from promptforge.core.errors import EntitlementError


class PlanTier(str, Enum):
    FREE = "free"
    CREATOR = "creator"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class ExportFormat(str, Enum):
    TXT = "txt"
    MD = "md"
    JSON = "json"
    PDF = "pdf"
    BUNDLE = "bundle"


# Tiers in ascending order of entitlement
PLAN_ORDER = (PlanTier.FREE, PlanTier.CREATOR, PlanTier.PRO, PlanTier.ENTERPRISE)

PLAN_EXPORT_FORMATS: Mapping[PlanTier, FrozenSet[ExportFormat]] = MappingProxyType({
    PlanTier.FREE: frozenset({ExportFormat.TXT}),
    PlanTier.CREATOR: frozenset({ExportFormat.TXT, ExportFormat.MD}),
    PlanTier.PRO: frozenset({ExportFormat.TXT, ExportFormat.MD, ExportFormat.JSON, ExportFormat.PDF}),
    PlanTier.ENTERPRISE: frozenset({
        ExportFormat.TXT,
        ExportFormat.MD,
        ExportFormat.JSON,
        ExportFormat.PDF,
        ExportFormat.BUNDLE,
    }),
})


class NoEntitledFormatsError(EntitlementError):
    """None of the requested formats are available on the caller's plan."""
    code = "no_entitled_formats"


def parse_plan(plan: Union[PlanTier, str, None]) -> PlanTier:
    """Resolve a plan identifier; anything unrecognised fails closed to free."""
    if isinstance(plan, PlanTier):
        return plan
    try:
        return PlanTier(str(plan).strip().lower())
    except ValueError:
        return PlanTier.FREE


def parse_format(value: Union[ExportFormat, str, None]) -> Optional[ExportFormat]:
    if isinstance(value, ExportFormat):
        return value
    try:
        return ExportFormat(str(value).strip().lower())
    except ValueError:
        return None


def allowed_formats(plan: Union[PlanTier, str, None]) -> FrozenSet[ExportFormat]:
    return PLAN_EXPORT_FORMATS[parse_plan(plan)]


def min_plan_for_format(fmt: Union[ExportFormat, str]) -> Optional[PlanTier]:
    """Lowest tier that includes ``fmt``, or None for an unknown format."""
    parsed = parse_format(fmt)
    if parsed is None:
        return None
    for tier in PLAN_ORDER:
        if parsed in PLAN_EXPORT_FORMATS[tier]:
            return tier
    return None


def filter_requested_formats(
    plan: Union[PlanTier, str, None],
    requested: Iterable[Union[ExportFormat, str]],
) -> List[ExportFormat]:
    """Intersect ``requested`` with the plan's formats, keeping request order.

    Duplicates collapse to their first occurrence and unknown format strings
    are dropped.

    Raises:
        NoEntitledFormatsError: the intersection is empty.
    """
    tier = parse_plan(plan)
    entitled = PLAN_EXPORT_FORMATS[tier]
    requested = list(requested or [])

    result: List[ExportFormat] = []
    for raw in requested:
        fmt = parse_format(raw)
        if fmt is not None and fmt in entitled and fmt not in result:
            result.append(fmt)

    if result:
        return result

    requested_names = [getattr(r, "value", str(r)) for r in requested]
    upgrade_to = None
    for raw in requested:
        upgrade_to = min_plan_for_format(raw)
        if upgrade_to is not None:
            break
    raise NoEntitledFormatsError(
        f"No requested export formats are available on the {tier.value} plan",
        extra={
            "plan": tier.value,
            "requested_formats": requested_names,
            "allowed_formats": sorted(f.value for f in entitled),
            "upgrade_required": upgrade_to.value if upgrade_to else None,
        },
    )


def plan_restrictions() -> dict:
    """The whole policy table in a JSON-friendly shape."""
    return {
        tier.value: [f.value for f in ExportFormat if f in PLAN_EXPORT_FORMATS[tier]]
        for tier in PLAN_ORDER
    }

"""
promptforge/features/site_access/gate.py

Coming-soon access gate.

While the site is in coming-soon mode every page is redirected to the
holding page, except for a small allow-list of path prefixes (public API
routes, the holding page itself and static assets).
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple


HOLDING_PAGE_PATH = "/coming-soon"

DEFAULT_ALLOWED_PREFIXES: Tuple[str, ...] = (
    "/api/waitlist",
    "/api/toggle-coming-soon",
    "/api/stripe",
    "/api/notifications",
    "/api/export",
    HOLDING_PAGE_PATH,
    "/static",
    "/_next",
    "/favicon.ico",
    # Operational endpoints stay reachable for probes and scrapers
    "/healthz",
    "/api/health",
    "/metrics",
)


@dataclass(frozen=True)
class AccessDecision:
    allow: bool
    redirect_target: Optional[str] = None


ALLOW = AccessDecision(allow=True)


def is_allowed_path(path: str, allowed_prefixes: Iterable[str] = DEFAULT_ALLOWED_PREFIXES) -> bool:
    """Prefix match, so /api/stripe/webhook passes via /api/stripe."""
    return any(path.startswith(prefix) for prefix in allowed_prefixes)


def decide_access(
    enabled: bool,
    path: str,
    allowed_prefixes: Iterable[str] = DEFAULT_ALLOWED_PREFIXES,
    holding_page: str = HOLDING_PAGE_PATH,
) -> AccessDecision:
    """Decide whether a request path may proceed.

    Total and side-effect free: with the gate off every path is allowed;
    with it on, paths outside the allow-list redirect to ``holding_page``.
    """
    if not enabled:
        return ALLOW
    if is_allowed_path(path or "", allowed_prefixes):
        return ALLOW
    return AccessDecision(allow=False, redirect_target=holding_page)

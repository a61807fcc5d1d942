import logging
from typing import Iterable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import RedirectResponse

from promptforge.core.metrics import site_access_redirect_total
from promptforge.features.site_access.gate import (
    DEFAULT_ALLOWED_PREFIXES,
    HOLDING_PAGE_PATH,
    decide_access,
)

logger = logging.getLogger("promptforge")


class SiteAccessMiddleware(BaseHTTPMiddleware):
    """Redirect every non-allow-listed path to the holding page while coming-soon mode is on.

    The flag is fixed at construction time; the toggle API only persists a
    new value to site settings.
    """

    def __init__(
        self,
        app,
        *,
        enabled: bool = False,
        allowed_prefixes: Iterable[str] = DEFAULT_ALLOWED_PREFIXES,
        holding_page: str = HOLDING_PAGE_PATH,
    ):
        super().__init__(app)
        self.enabled = bool(enabled)
        self.allowed_prefixes = tuple(allowed_prefixes)
        self.holding_page = holding_page

    async def dispatch(self, request, call_next):
        decision = decide_access(
            self.enabled,
            request.url.path,
            allowed_prefixes=self.allowed_prefixes,
            holding_page=self.holding_page,
        )
        if decision.allow:
            return await call_next(request)

        site_access_redirect_total.inc()
        logger.info(
            "site_access.redirect",
            extra={"path": request.url.path, "event_type": "site_access.redirect"},
        )
        return RedirectResponse(url=decision.redirect_target, status_code=307)

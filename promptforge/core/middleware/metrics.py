from typing import List, Pattern, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.routing import compile_path

from promptforge.core.metrics import http_requests_total

UNMATCHED_ROUTE = "unmatched"


def _route_patterns(app) -> List[Tuple[Pattern, str]]:
    """Compiled path templates from the app's OpenAPI paths, built once per app."""
    patterns = getattr(app.state, "route_patterns", None)
    if patterns is None:
        paths = app.openapi().get("paths", {}) if hasattr(app, "openapi") else {}
        patterns = [(compile_path(template)[0], template) for template in paths]
        app.state.route_patterns = patterns
    return patterns


def route_label(request: Request) -> str:
    """Route template the request resolves to (e.g. /api/export/download), or 'unmatched'.

    After routing the router has recorded the matched route on the scope.
    Before routing (or when nothing matched) the path is checked against the
    app's documented templates.
    """
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    if isinstance(path, str) and path:
        return path
    app = request.scope.get("app")
    if app is None:
        return UNMATCHED_ROUTE
    for pattern, template in _route_patterns(app):
        if pattern.match(request.url.path):
            return template
    return UNMATCHED_ROUTE


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count requests per route template and status."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        http_requests_total.inc(labels={
            "method": request.method.upper(),
            "route": route_label(request),
            "status": str(response.status_code),
        })
        return response

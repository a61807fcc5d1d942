"""
Site access API: the coming-soon holding page and the admin toggle.

- GET  /coming-soon: holding page (always reachable through the gate)
- GET  /api/toggle-coming-soon: flag value of the running process
- POST /api/toggle-coming-soon: persist a new value (admin only)
"""
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse
from pydantic import BaseModel

from promptforge.core.admin_auth import AdminActor, require_admin
from promptforge.core.errors import ValidationError
from promptforge.core.logging import get_request_id, log_event
from promptforge.core.supabase import SupabaseRest, ensure_backend, get_backend
from promptforge.features.site_settings.service import COMING_SOON_KEY, SiteSettingsService

router = APIRouter(tags=["site"])

HOLDING_PAGE_HTML = """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>PROMPTFORGE™ is coming soon</title>
</head>
<body>
  <main>
    <h1>PROMPTFORGE™ v3</h1>
    <p>We are putting the finishing touches on the platform. Join the waitlist to get early access.</p>
  </main>
</body>
</html>
"""


class ToggleRequest(BaseModel):
    enabled: Any = None
    org_id: Optional[str] = None


@router.get("/coming-soon", response_class=HTMLResponse)
def coming_soon_page():
    return HTMLResponse(content=HOLDING_PAGE_HTML)


@router.get("/api/toggle-coming-soon")
def get_coming_soon_status(request: Request):
    return {
        "coming_soon_enabled": bool(getattr(request.app.state, "coming_soon_enabled", False)),
        "message": "Status coming soon",
        "version": "3.0",
    }


@router.post("/api/toggle-coming-soon")
def toggle_coming_soon(
    body: ToggleRequest,
    actor: AdminActor = Depends(require_admin),
    backend: Optional[SupabaseRest] = Depends(get_backend),
):
    """Persist the coming-soon flag.

    The running gate keeps the COMING_SOON value it was started with.
    """
    if not isinstance(body.enabled, bool):
        raise ValidationError('Parameter "enabled" must be a boolean', code="invalid_enabled")

    row = SiteSettingsService(ensure_backend(backend)).set_coming_soon(body.enabled, org_id=body.org_id, actor_id=actor.actor_id)
    log_event(
        "info",
        "site.coming_soon_toggled",
        request_id=get_request_id(),
        user_id=actor.actor_id,
        event_type="site.coming_soon_toggled",
        extra={"enabled": body.enabled, "org_id": body.org_id},
    )
    return {
        "success": True,
        "message": f"Coming soon {'enabled' if body.enabled else 'disabled'}; the running gate keeps its startup value",
        "data": {
            "org_id": row.get("org_id", body.org_id),
            "key": row.get("key", COMING_SOON_KEY),
            "value": row.get("value", body.enabled),
            "updated_at": row.get("updated_at"),
        },
    }

"""
Health endpoints.

Report which integrations are configured without exposing any secret.
"""
from fastapi import APIRouter, Depends, Request

from promptforge.core.config import Settings, get_settings

router = APIRouter(prefix="/api/health", tags=["health"])
root_router = APIRouter(tags=["health"])


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("")
def health(request: Request, settings: Settings = Depends(get_settings)):
    return {
        "ok": True,
        "env": settings.ENV,
        "coming_soon_enabled": bool(getattr(request.app.state, "coming_soon_enabled", False)),
        "integrations": {
            "backend": bool(settings.SUPABASE_URL and settings.SUPABASE_SERVICE_ROLE_KEY),
            "auth_jwt": bool(settings.SUPABASE_JWT_SECRET),
            "stripe": bool(settings.STRIPE_SECRET_KEY),
            "stripe_webhooks": bool(settings.STRIPE_WEBHOOK_SECRET),
            "slack": bool(settings.SLACK_WEBHOOK_URL),
            "telegram": bool(settings.TELEGRAM_ENABLED and settings.TELEGRAM_BOT_TOKEN),
            "github": bool(settings.GITHUB_TOKEN),
            "admin_key": bool(settings.ADMIN_KEY),
        },
    }

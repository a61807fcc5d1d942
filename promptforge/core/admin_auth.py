"""
Admin authentication for site operations (coming-soon toggle).

A single shared secret, sent as X-Admin-Key and compared in constant time
against ADMIN_KEY. An unconfigured key disables admin routes.
"""
import hashlib
import hmac
from dataclasses import dataclass

from fastapi import Depends, Request

from promptforge.core.config import Settings, get_settings
from promptforge.core.errors import PermissionError, ServiceUnavailableError


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "admin_key:<hash prefix>"
    auth_mechanism: str = "x_admin_key"


def require_admin(request: Request, cfg: Settings = Depends(get_settings)) -> AdminActor:
    """
    FastAPI dependency: require a valid X-Admin-Key header.

    Raises:
        ServiceUnavailableError (503) when ADMIN_KEY is not configured
        PermissionError (403) when the header is missing or wrong
    """
    expected_key = cfg.ADMIN_KEY
    if not expected_key:
        raise ServiceUnavailableError(
            "Admin authentication not configured",
            code="admin_auth_unconfigured",
        )

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key.encode(), expected_key.encode()):
        raise PermissionError("Invalid or missing admin credentials", code="admin_unauthorized")

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"admin_key:{key_hash}")

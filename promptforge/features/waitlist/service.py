"""
promptforge/features/waitlist/service.py

Pre-launch waitlist signups, stored in the backend's waitlist_signups table.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from promptforge.core.errors import ConflictError, ValidationError
from promptforge.core.supabase import SupabaseRest

logger = logging.getLogger(__name__)

TABLE = "waitlist_signups"

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def validate_signup(email: Any, name: Any) -> tuple:
    """Return normalized (email, name) or raise ValidationError."""
    email = email.strip() if isinstance(email, str) else ""
    name = name.strip() if isinstance(name, str) else ""
    if not email or not name:
        raise ValidationError("Email and name are required", code="missing_required_fields")
    if not EMAIL_RE.match(email):
        raise ValidationError("Invalid email format", code="invalid_email")
    return email.lower(), name


class WaitlistService:
    def __init__(self, backend: SupabaseRest):
        self.backend = backend

    def signup(self, email: Any, name: Any, *, org_id: Optional[str] = None) -> Dict[str, Any]:
        email, name = validate_signup(email, name)

        existing = self.backend.select(TABLE, {"email": email}, columns="id", limit=1)
        if existing:
            raise ConflictError("This email is already on the waitlist", code="already_registered")

        row = self.backend.insert(TABLE, {
            "email": email,
            "name": name,
            "org_id": org_id,
            "created_at": datetime.now(timezone.utc).isoformat(),
        })
        logger.info("waitlist.signup", extra={"event_type": "waitlist.signup", "signup_id": row.get("id")})
        return row

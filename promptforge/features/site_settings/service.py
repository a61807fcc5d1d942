"""
promptforge/features/site_settings/service.py

Persisted site settings (currently only the coming-soon flag).

Writes go to the backend's site_settings table. The running process keeps
the COMING_SOON value it was started with.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from promptforge.core.supabase import SupabaseRest

TABLE = "site_settings"
COMING_SOON_KEY = "coming_soon_enabled"


class SiteSettingsService:
    def __init__(self, backend: SupabaseRest):
        self.backend = backend

    def set_coming_soon(self, enabled: bool, *, org_id: Optional[str] = None, actor_id: Optional[str] = None) -> Dict[str, Any]:
        return self.backend.upsert(
            TABLE,
            {
                "org_id": org_id,
                "key": COMING_SOON_KEY,
                "value": enabled,
                "updated_by": actor_id,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            },
            on_conflict="org_id,key",
        )


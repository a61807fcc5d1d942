"""
Entitlements API.

- GET /api/entitlements: the caller's plan and what it unlocks

The plan always comes from the caller's billing records, never from the request.
"""
from typing import Optional

from fastapi import APIRouter, Depends

from promptforge.core.auth import get_current_user_id
from promptforge.core.supabase import SupabaseRest, get_backend
from promptforge.features.billing.service import PLAN_CATALOG, resolve_plan
from promptforge.features.entitlements.plans import ExportFormat, PlanTier, allowed_formats

router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


def get_caller_plan(
    user_id: str = Depends(get_current_user_id),
    backend: Optional[SupabaseRest] = Depends(get_backend),
) -> PlanTier:
    """Plan of the authenticated caller; free when nothing entitles them to more."""
    return resolve_plan(backend, user_id)


@router.get("")
def get_entitlements(
    user_id: str = Depends(get_current_user_id),
    tier: PlanTier = Depends(get_caller_plan),
):
    entitled = allowed_formats(tier)
    return {
        "success": True,
        "data": {
            "user_id": user_id,
            "plan": tier.value,
            "export_formats": [f.value for f in ExportFormat if f in entitled],
            "bundle_available": ExportFormat.BUNDLE in entitled,
            "features": list(PLAN_CATALOG[tier].features),
        },
    }

"""
Waitlist API.

- POST /api/waitlist: join the pre-launch waitlist
- GET  /api/waitlist: endpoint status
"""
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from promptforge.core.supabase import SupabaseRest, ensure_backend, get_backend
from promptforge.features.waitlist.service import WaitlistService, validate_signup

router = APIRouter(prefix="/api/waitlist", tags=["waitlist"])


class WaitlistSignupRequest(BaseModel):
    email: Any = None
    name: Any = None


@router.post("")
def join_waitlist(body: WaitlistSignupRequest, backend: Optional[SupabaseRest] = Depends(get_backend)):
    # Input errors are reported even when the backend is down
    validate_signup(body.email, body.name)
    row = WaitlistService(ensure_backend(backend)).signup(body.email, body.name)
    return {"success": True, "message": "Successfully joined the waitlist", "data": row}


@router.get("")
def waitlist_status():
    return {"message": "Waitlist API endpoint", "status": "active", "version": "3.0"}

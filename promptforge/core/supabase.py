"""
Thin client for the managed backend's REST interface (Supabase PostgREST).

Only the handful of table operations the route handlers need: insert,
select with equality filters, upsert and update. Requests are made with the
service-role key; row-level security is the backend's concern.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx
from fastapi import Depends

from promptforge.core.config import Settings, get_settings
from promptforge.core.errors import ServiceUnavailableError, UpstreamError

logger = logging.getLogger(__name__)


class SupabaseRest:
    def __init__(
        self,
        base_url: str,
        service_key: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/") + "/rest/v1"
        self.timeout = timeout
        self.transport = transport
        self._headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Content-Type": "application/json",
        }

    def _request(
        self,
        method: str,
        table: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        headers = dict(self._headers)
        if prefer:
            headers["Prefer"] = prefer
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.request(
                    method,
                    f"{self.base_url}/{table}",
                    params=params,
                    json=json,
                    headers=headers,
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "backend.request_failed",
                extra={"table": table, "method": method, "status": e.response.status_code},
            )
            raise UpstreamError("Backend request failed", code="backend_error") from e
        except httpx.HTTPError as e:
            logger.warning("backend.unreachable", extra={"table": table, "method": method})
            raise UpstreamError("Backend unreachable", code="backend_error") from e

        if not response.content:
            return []
        data = response.json()
        return data if isinstance(data, list) else [data]

    @staticmethod
    def _eq_filters(filters: Optional[Dict[str, Any]]) -> Dict[str, str]:
        return {key: f"eq.{value}" for key, value in (filters or {}).items()}

    def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        *,
        columns: str = "*",
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params = {"select": columns, **self._eq_filters(filters)}
        if limit is not None:
            params["limit"] = str(limit)
        return self._request("GET", table, params=params)

    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        rows = self._request("POST", table, json=row, prefer="return=representation")
        return rows[0] if rows else dict(row)

    def upsert(self, table: str, row: Dict[str, Any], *, on_conflict: str) -> Dict[str, Any]:
        rows = self._request(
            "POST",
            table,
            params={"on_conflict": on_conflict},
            json=row,
            prefer="resolution=merge-duplicates,return=representation",
        )
        return rows[0] if rows else dict(row)

    def update(self, table: str, values: Dict[str, Any], filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return self._request(
            "PATCH",
            table,
            params=self._eq_filters(filters),
            json=values,
            prefer="return=representation",
        )


def get_backend(cfg: Settings = Depends(get_settings)) -> Optional[SupabaseRest]:
    """Backend client from the app's settings, or None when it is not configured."""
    if not (cfg.SUPABASE_URL and cfg.SUPABASE_SERVICE_ROLE_KEY):
        return None
    return SupabaseRest(
        cfg.SUPABASE_URL,
        cfg.SUPABASE_SERVICE_ROLE_KEY,
        timeout=cfg.SUPABASE_TIMEOUT_SECONDS,
    )


def ensure_backend(backend: Optional[SupabaseRest]) -> SupabaseRest:
    if backend is None:
        raise ServiceUnavailableError("Backend not configured", code="backend_unconfigured")
    return backend
# /crm_dialer/services/crm_service.py

import httpx
import logging
import tenacity
from typing import Any, Dict, List, Optional

from crm_dialer.errors import DispatchError
from crm_dialer.utils.circuit_breaker import CircuitBreaker
from crm_dialer.utils.metrics import external_requests_counter

logger = logging.getLogger(__name__)

# amoCRM rejects batch calls with more than this many entities.
CRM_MAX_BATCH = 200


class CrmService:
    """Thin amoCRM API v4 client used by the dispatch queue workers."""

    def __init__(self, base_url: Optional[str], access_token: Optional[str], timeout: float = 15.0):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.access_token = access_token
        self.http_client = httpx.AsyncClient(timeout=timeout)
        self.circuit_breaker = CircuitBreaker("crm", trip_on=(httpx.TransportError,))

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.access_token)

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.ConnectError, httpx.ConnectTimeout)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    async def update_leads(self, leads: List[Dict[str, Any]]) -> int:
        """PATCHes lead entities in chunks of at most 200; returns how many the CRM confirmed."""
        updated = 0
        for start in range(0, len(leads), CRM_MAX_BATCH):
            chunk = leads[start:start + CRM_MAX_BATCH]
            body = await self._request("PATCH", "/api/v4/leads", "update_leads", chunk)
            count = len((body.get("_embedded") or {}).get("leads") or [])
            logger.info(f"Updated leads {start}-{start + len(chunk)}: {count} confirmed.")
            updated += count
        return updated

    async def add_notes(self, notes: List[Dict[str, Any]], entity_type: str = "leads") -> int:
        """Creates notes (`{entity_id, note_type, params: {text}}`); returns how many were created."""
        created = 0
        for start in range(0, len(notes), CRM_MAX_BATCH):
            chunk = notes[start:start + CRM_MAX_BATCH]
            body = await self._request("POST", f"/api/v4/{entity_type}/notes", "add_notes", chunk)
            created += len((body.get("_embedded") or {}).get("notes") or [])
        return created

    async def _request(self, method: str, path: str, operation: str, payload: Any) -> Dict[str, Any]:
        if not self.configured:
            raise DispatchError("CRM client is not configured (CRM_DOMAIN / CRM_ACCESS_TOKEN)", action_type=operation)

        headers = {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}
        try:
            response = await self.resilient_api_call(
                self.http_client.request, method, f"{self.base_url}{path}", json=payload, headers=headers
            )
        except httpx.HTTPError as e:
            external_requests_counter.labels(platform="crm", operation=operation, status="error").inc()
            raise DispatchError(f"CRM {operation} request failed: {e}", action_type=operation) from e

        if response.status_code not in (200, 201):
            external_requests_counter.labels(platform="crm", operation=operation, status="rejected").inc()
            logger.error(f"crm_{operation}_failed: {response.status_code} - {response.text[:500]}")
            raise DispatchError(f"CRM {operation} returned HTTP {response.status_code}", action_type=operation)

        external_requests_counter.labels(platform="crm", operation=operation, status="success").inc()
        try:
            return response.json()
        except ValueError:
            return {}

    async def close(self):
        await self.http_client.aclose()

# /crm_dialer/services/dialer_service.py

import httpx
import logging
import tenacity
from typing import Any, Dict, List, Optional

from crm_dialer.errors import DispatchError
from crm_dialer.utils.circuit_breaker import CircuitBreaker
from crm_dialer.utils.metrics import external_requests_counter

logger = logging.getLogger(__name__)


class DialerService:
    def __init__(self, api_url: Optional[str], api_key: Optional[str], timeout: float = 15.0):
        self.api_url = api_url.rstrip("/") if api_url else None
        self.api_key = api_key
        self.http_client = httpx.AsyncClient(timeout=timeout)
        self.circuit_breaker = CircuitBreaker("dialer", trip_on=(httpx.TransportError,))

    @property
    def configured(self) -> bool:
        return bool(self.api_url and self.api_key)

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.ConnectError, httpx.ConnectTimeout)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    async def push_contact(self, scheduler_id: str, campaign_id: str, bucket_id: str, contact: Dict[str, Any]) -> None:
        """Adds one contact to a campaign bucket."""
        if not self.configured:
            raise DispatchError("Dialer client is not configured (DIALER_API_URL / DIALER_API_KEY)", action_type="push_contact")
        if not campaign_id or not bucket_id:
            raise DispatchError(
                f"Contact push needs campaign_id and bucket_id (got campaign={campaign_id!r}, bucket={bucket_id!r})",
                action_type="push_contact",
            )

        url = f"{self.api_url}/api/v1/campaigns/{campaign_id}/buckets/{bucket_id}/contacts"
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        payload = {"scheduler_id": scheduler_id, "contact": contact}
        try:
            response = await self.resilient_api_call(self.http_client.post, url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            external_requests_counter.labels(platform="dialer", operation="push_contact", status="error").inc()
            raise DispatchError(f"Dialer push_contact request failed: {e}", action_type="push_contact") from e

        if response.status_code not in (200, 201):
            external_requests_counter.labels(platform="dialer", operation="push_contact", status="rejected").inc()
            logger.error(f"dialer_push_failed: {response.status_code} - {response.text[:500]}")
            raise DispatchError(f"Dialer push_contact returned HTTP {response.status_code}", action_type="push_contact")

        external_requests_counter.labels(platform="dialer", operation="push_contact", status="success").inc()
        logger.info(f"Contact {contact.get('phone')} pushed to campaign {campaign_id}, bucket {bucket_id}")

    async def push_contacts(self, requests: List[Dict[str, Any]]) -> int:
        """Queue handler: each entity is one `{scheduler_id, campaign_id, bucket_id, contact}` request."""
        for request in requests:
            await self.push_contact(
                str(request.get("scheduler_id") or ""),
                str(request.get("campaign_id") or ""),
                str(request.get("bucket_id") or ""),
                request.get("contact") or {},
            )
        return len(requests)

    async def close(self):
        await self.http_client.aclose()

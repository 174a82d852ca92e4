import json
import logging
import time
from typing import Any, Dict, Optional

import httpx

from shared.utils import ProviderException

logger = logging.getLogger(__name__)


def read_field(response: Dict[str, Any], name: str) -> Any:
    """Provider responses nest fields under `data` on some endpoints and not others."""
    data = response.get("data")
    if isinstance(data, dict) and data.get(name) is not None:
        return data[name]
    return response.get(name)


class OnmetaClient:
    """Thin async client for the Onmeta off-ramp HTTP API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        forwarded_for: str = "127.0.0.1",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.forwarded_for = forwarded_for
        self.transport = transport

    def _headers(self, request_id: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            "x-api-key": self.api_key,
        }
        if request_id:
            headers["X-Request-ID"] = request_id
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[dict] = None,
        headers: Optional[dict] = None,
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        all_headers = self._headers(request_id)
        all_headers.update(headers or {})

        start_time = time.time()
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.request(method, url, json=payload, headers=all_headers)
            except httpx.RequestError as e:
                logger.error("Provider unreachable", extra={"target": url, "request_id": request_id})
                raise ProviderException(body=f"Provider request failed: {e!r}")

        duration = (time.time() - start_time) * 1000
        logger.info("Provider Call Completed", extra={
            "target": url,
            "provider_status": response.status_code,
            "duration_ms": round(duration, 2),
            "request_id": request_id,
        })

        if not response.is_success:
            logger.error("Provider returned an error", extra={
                "target": url,
                "provider_status": response.status_code,
            })
            raise ProviderException(provider_status=response.status_code, body=response.text)

        try:
            body = response.json()
        except json.JSONDecodeError:
            raise ProviderException(body="Invalid response from Onmeta API")
        if not isinstance(body, dict):
            raise ProviderException(body="Invalid response from Onmeta API")
        return body

    async def create_offramp_order(self, order: dict, request_id: Optional[str] = None) -> Dict[str, Any]:
        # X-Forwarded-For is required by the provider for instant payout eligibility
        return await self._request(
            "POST",
            "/offramp/orders/create",
            payload=order,
            headers={"X-Forwarded-For": self.forwarded_for},
            request_id=request_id,
        )

    async def get_order_status(self, order_id: str, request_id: Optional[str] = None) -> Dict[str, Any]:
        return await self._request("GET", f"/transactions/{order_id}", request_id=request_id)

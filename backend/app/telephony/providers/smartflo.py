"""
DialBridge - Tata Smartflo Carrier

Click-to-call integration with the Tata Smartflo REST API.

    POST {base}/click_to_call_support  {"async": 1, "customer_number", "api_key"}

The API answers 200 with ``success: true`` or a message containing
"queued" when it accepts the call; anything else is a refusal.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from app.core.exceptions import CarrierUnavailableError
from ..privacy import mask_phone_number
from .base import CarrierProvider, DialResult

logger = logging.getLogger(__name__)


class SmartfloProvider(CarrierProvider):
    """Tata Smartflo click-to-call carrier."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    @property
    def name(self) -> str:
        return "smartflo"

    async def _post(self, path: str, payload: dict) -> dict:
        url = f"{self._base_url}{path}"
        try:
            response = await self._client.post(
                url,
                json=payload,
                headers={"Content-Type": "application/json", "Authorization": self._api_key},
            )
        except httpx.HTTPError as e:
            raise CarrierUnavailableError(
                f"Carrier request failed: {e}", details={"path": path}
            ) from e

        try:
            data = response.json()
        except ValueError as e:
            raise CarrierUnavailableError(
                "Carrier returned a non-JSON response",
                details={"path": path, "status_code": response.status_code},
            ) from e

        if not isinstance(data, dict):
            raise CarrierUnavailableError(
                "Carrier returned an unexpected response",
                details={"path": path, "status_code": response.status_code},
            )
        return data

    async def dial(self, phone_number: str, call_id: str, answer_url: Optional[str] = None) -> DialResult:
        payload = {
            "async": 1,
            "customer_number": phone_number,
            "api_key": self._api_key,
        }
        logger.info(
            "Carrier dial request: call=%s, to=%s",
            call_id, mask_phone_number(phone_number),
            extra={"log_type": "API_REQ"},
        )

        data = await self._post("/click_to_call_support", payload)
        message = str(data.get("message") or "")

        if data.get("success") is True or "queued" in message.lower():
            reference = data.get("uuid") or data.get("request_id")
            logger.info(
                "Carrier accepted call: call=%s, reference=%s",
                call_id, reference,
                extra={"log_type": "SUCCESS"},
            )
            return DialResult(accepted=True, reference=str(reference) if reference else None, message=message)

        logger.warning(
            "Carrier rejected call: call=%s, message=%s",
            call_id, message or "no message",
            extra={"log_type": "API_RES"},
        )
        return DialResult(accepted=False, message=message or "Carrier rejected the call")

    async def hangup(self, reference: str) -> None:
        data = await self._post("/call/hangup", {"call_id": reference})
        logger.info(
            "Carrier hangup requested: reference=%s, response=%s",
            reference, data.get("message") or data.get("success"),
            extra={"log_type": "API_RES"},
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

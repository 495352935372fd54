from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from harmony_core.logging import get_logger
from harmony_core.service.errors import UnavailableError, ValidationError

logger = get_logger(__name__)

_DESCRIPTION_MAX = 128


@dataclass
class GatewayPayment:
    id: str
    status: str
    confirmation_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class YooKassaClient:
    """Minimal YooKassa v3 client: create a payment and read its status."""

    def __init__(
        self,
        shop_id: str,
        secret_key: str,
        *,
        base_url: str = "https://api.yookassa.ru/v3",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.shop_id = shop_id
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 5.0)),
            auth=httpx.BasicAuth(self.shop_id, self.secret_key),
            follow_redirects=False,
            transport=self._transport,
        )

    async def create_payment(
        self,
        *,
        amount: str,
        currency: str,
        description: str,
        return_url: str,
        metadata: Dict[str, Any],
        idempotence_key: Optional[str] = None,
    ) -> GatewayPayment:
        key = idempotence_key or str(uuid.uuid4())
        body = {
            "amount": {"value": amount, "currency": currency},
            "capture": True,
            "confirmation": {"type": "redirect", "return_url": return_url, "enforce": False},
            "description": description[:_DESCRIPTION_MAX],
            "metadata": metadata,
        }
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.base_url}/payments",
                    json=body,
                    headers={"Idempotence-Key": key},
                )
        except httpx.TimeoutException as exc:
            logger.error("gateway_create_timeout", error=str(exc))
            raise UnavailableError("payment gateway timed out") from exc
        except httpx.HTTPError as exc:
            logger.error("gateway_create_connect_error", error=str(exc))
            raise UnavailableError("payment gateway unreachable") from exc

        if response.status_code >= 500:
            logger.error("gateway_create_server_error", status_code=response.status_code)
            raise UnavailableError("payment gateway error")
        if response.status_code >= 400:
            logger.warning(
                "gateway_create_rejected",
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise ValidationError("payment gateway rejected the request")

        data = self._json(response)
        payment_id = data.get("id")
        confirmation_url = (data.get("confirmation") or {}).get("confirmation_url")
        if not payment_id or not confirmation_url:
            logger.error("gateway_create_incomplete_response")
            raise UnavailableError("payment gateway returned an incomplete response")
        logger.info("gateway_payment_created", payment_id=payment_id)
        return GatewayPayment(
            id=str(payment_id),
            status=str(data.get("status") or "pending"),
            confirmation_url=confirmation_url,
            metadata=data.get("metadata") or {},
        )

    async def get_payment(self, payment_id: str) -> GatewayPayment:
        """Fetch current payment state; any failure surfaces as UnavailableError."""
        try:
            async with self._client() as client:
                response = await client.get(f"{self.base_url}/payments/{payment_id}")
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "gateway_get_http_error",
                payment_id=payment_id,
                status_code=exc.response.status_code,
            )
            raise UnavailableError("payment status unavailable") from exc
        except httpx.HTTPError as exc:
            logger.warning("gateway_get_failed", payment_id=payment_id, error=str(exc))
            raise UnavailableError("payment gateway unreachable") from exc

        data = self._json(response)
        return GatewayPayment(
            id=str(data.get("id") or payment_id),
            status=str(data.get("status") or "unknown"),
            confirmation_url=(data.get("confirmation") or {}).get("confirmation_url"),
            metadata=data.get("metadata") or {},
        )

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            logger.error("gateway_response_parse_error", error=str(exc))
            raise UnavailableError("payment gateway returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise UnavailableError("payment gateway returned invalid JSON")
        return data


__all__ = ["GatewayPayment", "YooKassaClient"]

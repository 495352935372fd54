"""Mobile store receipt verification (Apple verifyReceipt, Google Play)."""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import httpx
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from harmony_core.logging import get_logger
from harmony_core.service.errors import (
    AuthenticationError,
    UnavailableError,
    ValidationError,
)
from harmony_core.service.tokens import encode_segment

logger = get_logger(__name__)

APPLE_STATUS_OK = 0
APPLE_STATUS_SANDBOX_RECEIPT = 21007

GOOGLE_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
GOOGLE_PUBLISHER_API = "https://androidpublisher.googleapis.com/androidpublisher/v3"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"


@dataclass
class ReceiptVerification:
    expires_at: datetime
    product_id: Optional[str] = None


def _from_millis(value: Any) -> Optional[datetime]:
    try:
        ms = int(str(value))
    except (TypeError, ValueError):
        return None
    if ms <= 0:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


class AppleReceiptVerifier:
    def __init__(
        self,
        shared_secret: Optional[str],
        *,
        production_url: str = "https://buy.itunes.apple.com/verifyReceipt",
        sandbox_url: str = "https://sandbox.itunes.apple.com/verifyReceipt",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.shared_secret = shared_secret
        self.production_url = production_url
        self.sandbox_url = sandbox_url
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.shared_secret)

    async def verify(self, receipt: str) -> ReceiptVerification:
        """Return the furthest expiry across all receipt entries.

        Tries production first and retries against sandbox only when Apple
        reports a sandbox receipt (status 21007).
        """
        if not self.is_configured:
            logger.warning("apple_iap_not_configured")
            raise UnavailableError("Apple IAP not configured")
        body = {"receipt-data": receipt, "password": self.shared_secret}
        last_status: Optional[int] = None
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for url in (self.production_url, self.sandbox_url):
                try:
                    response = await client.post(url, json=body)
                    response.raise_for_status()
                    data = response.json()
                except httpx.HTTPError as exc:
                    logger.error("apple_iap_request_failed", url=url, error=str(exc))
                    raise UnavailableError("Apple receipt verification unavailable") from exc
                except ValueError as exc:
                    logger.error("apple_iap_parse_error", url=url, error=str(exc))
                    raise UnavailableError("Apple receipt verification unavailable") from exc
                last_status = data.get("status") if isinstance(data, dict) else None
                if last_status == APPLE_STATUS_OK:
                    return self._furthest_expiry(data)
                if last_status != APPLE_STATUS_SANDBOX_RECEIPT:
                    break
        logger.warning("apple_iap_verify_failed", status=last_status)
        raise AuthenticationError("Invalid or expired receipt")

    @staticmethod
    def _furthest_expiry(data: Dict[str, Any]) -> ReceiptVerification:
        entries = data.get("latest_receipt_info") or (data.get("receipt") or {}).get("in_app") or []
        best: Optional[datetime] = None
        product_id: Optional[str] = None
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            expires = _from_millis(entry.get("expires_date_ms"))
            if expires and (best is None or expires > best):
                best = expires
                product_id = entry.get("product_id")
        if best is None:
            raise AuthenticationError("Invalid or expired receipt")
        return ReceiptVerification(expires_at=best, product_id=product_id)


class GooglePlayVerifier:
    """Looks up a subscription purchase with a service-account OAuth token."""

    def __init__(
        self,
        credentials: Optional[Dict[str, Any]],
        package_name: Optional[str],
        *,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.credentials = credentials
        self.package_name = package_name
        self.timeout = timeout
        self._transport = transport
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    @classmethod
    def from_file(cls, path: Optional[str], package_name: Optional[str], **kwargs) -> "GooglePlayVerifier":
        credentials = None
        if path:
            try:
                credentials = json.loads(Path(path).read_text())
            except (OSError, ValueError) as exc:
                logger.error("google_credentials_load_failed", path=path, error=str(exc))
        return cls(credentials, package_name, **kwargs)

    @property
    def is_configured(self) -> bool:
        return bool(
            self.package_name
            and self.credentials
            and self.credentials.get("client_email")
            and self.credentials.get("private_key")
        )

    def _assertion(self) -> str:
        now = int(self._clock())
        claims = {
            "iss": self.credentials["client_email"],
            "scope": GOOGLE_PUBLISHER_SCOPE,
            "aud": self.credentials.get("token_uri") or GOOGLE_TOKEN_URI,
            "iat": now,
            "exp": now + 3600,
        }
        header = {"alg": "RS256", "typ": "JWT"}
        if self.credentials.get("private_key_id"):
            header["kid"] = self.credentials["private_key_id"]
        signing_input = ".".join(
            encode_segment(json.dumps(part, separators=(",", ":")).encode())
            for part in (header, claims)
        )
        key = serialization.load_pem_private_key(
            self.credentials["private_key"].encode(), password=None
        )
        signature = key.sign(signing_input.encode(), padding.PKCS1v15(), hashes.SHA256())
        return f"{signing_input}.{encode_segment(signature)}"

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        with self._token_lock:
            if self._token and self._clock() < self._token_expires_at - 60:
                return self._token
        response = await client.post(
            self.credentials.get("token_uri") or GOOGLE_TOKEN_URI,
            data={
                "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                "assertion": self._assertion(),
            },
        )
        response.raise_for_status()
        data = response.json()
        token = data.get("access_token")
        if not token:
            raise UnavailableError("Google token exchange returned no token")
        with self._token_lock:
            self._token = token
            self._token_expires_at = self._clock() + float(data.get("expires_in") or 3600)
        return token

    async def verify(self, purchase_token: str, product_id: str) -> ReceiptVerification:
        if not self.is_configured:
            logger.warning("google_iap_not_configured")
            raise UnavailableError("Google IAP not configured")
        url = (
            f"{GOOGLE_PUBLISHER_API}/applications/{self.package_name}"
            f"/purchases/subscriptions/{product_id}/tokens/{purchase_token}"
        )
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                token = await self._access_token(client)
                response = await client.get(url, headers={"Authorization": f"Bearer {token}"})
                if response.status_code in (400, 404, 410):
                    logger.warning("google_iap_purchase_rejected", status_code=response.status_code)
                    raise AuthenticationError("Invalid purchase token")
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            logger.error("google_iap_request_failed", error=str(exc))
            raise UnavailableError("Google receipt verification unavailable") from exc
        except ValueError as exc:
            logger.error("google_iap_parse_error", error=str(exc))
            raise UnavailableError("Google receipt verification unavailable") from exc

        expires = _from_millis(data.get("expiryTimeMillis") if isinstance(data, dict) else None)
        if expires is None:
            raise ValidationError("Subscription expired")
        return ReceiptVerification(expires_at=expires, product_id=product_id)


__all__ = [
    "AppleReceiptVerifier",
    "GooglePlayVerifier",
    "ReceiptVerification",
]

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicNumbers

from harmony_core.logging import get_logger
from harmony_core.service.errors import AuthenticationError
from harmony_core.service.tokens import decode_segment

logger = get_logger(__name__)

GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
APPLE_KEYS_URL = "https://appleid.apple.com/auth/keys"
APPLE_ISSUER = "https://appleid.apple.com"


@dataclass
class FederatedIdentity:
    email: str
    name: Optional[str] = None
    subject: Optional[str] = None


class GoogleIdentityVerifier:
    """Validates Google ID tokens with the tokeninfo endpoint."""

    def __init__(
        self,
        *,
        client_id: Optional[str] = None,
        tokeninfo_url: str = GOOGLE_TOKENINFO_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.tokeninfo_url = tokeninfo_url
        self.timeout = timeout
        self._transport = transport

    async def verify(self, id_token: str) -> FederatedIdentity:
        if not id_token:
            raise AuthenticationError("invalid Google token")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(self.tokeninfo_url, params={"id_token": id_token})
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("google_token_verify_failed", error=str(exc))
            raise AuthenticationError("invalid Google token") from exc

        if not isinstance(payload, dict):
            raise AuthenticationError("invalid Google token")
        if self.client_id and payload.get("aud") != self.client_id:
            logger.warning("google_token_audience_mismatch")
            raise AuthenticationError("invalid Google token")
        email = payload.get("email")
        if not email:
            raise AuthenticationError("Google token has no email")
        name = (payload.get("name") or "").strip() or " ".join(
            part for part in (payload.get("given_name"), payload.get("family_name")) if part
        ).strip()
        return FederatedIdentity(email=email, name=name or None, subject=payload.get("sub"))


class AppleIdentityVerifier:
    """Verifies Sign in with Apple identity tokens against Apple's JWKS."""

    def __init__(
        self,
        *,
        client_id: Optional[str] = None,
        keys_url: str = APPLE_KEYS_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client_id = client_id
        self.keys_url = keys_url
        self.timeout = timeout
        self._transport = transport
        self._clock = clock

    async def _fetch_key(self, kid: str) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(self.keys_url)
                response.raise_for_status()
                body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("apple_keys_fetch_failed", error=str(exc))
            raise AuthenticationError("unable to verify Apple token") from exc
        keys = body.get("keys") if isinstance(body, dict) else None
        for jwk in keys if isinstance(keys, list) else []:
            if isinstance(jwk, dict) and jwk.get("kid") == kid and jwk.get("n") and jwk.get("e"):
                return jwk
        raise AuthenticationError("Apple signing key not found")

    async def verify(self, identity_token: str) -> FederatedIdentity:
        try:
            header_b64, payload_b64, sig_b64 = (identity_token or "").split(".")
            header = json.loads(decode_segment(header_b64))
            payload = json.loads(decode_segment(payload_b64))
            signature = decode_segment(sig_b64)
        except ValueError as exc:
            raise AuthenticationError("invalid Apple token") from exc
        if not isinstance(header, dict) or not isinstance(payload, dict):
            raise AuthenticationError("invalid Apple token")
        if header.get("alg") != "RS256" or not header.get("kid"):
            raise AuthenticationError("invalid Apple token")

        jwk = await self._fetch_key(header["kid"])
        try:
            public_key = RSAPublicNumbers(
                int.from_bytes(decode_segment(jwk["e"]), "big"),
                int.from_bytes(decode_segment(jwk["n"]), "big"),
            ).public_key()
        except (TypeError, ValueError) as exc:
            logger.warning("apple_key_malformed", kid=header["kid"])
            raise AuthenticationError("unable to verify Apple token") from exc
        try:
            public_key.verify(
                signature,
                f"{header_b64}.{payload_b64}".encode(),
                padding.PKCS1v15(),
                hashes.SHA256(),
            )
        except InvalidSignature as exc:
            logger.warning("apple_token_bad_signature")
            raise AuthenticationError("invalid or expired Apple token") from exc

        if payload.get("iss") != APPLE_ISSUER:
            raise AuthenticationError("invalid Apple token issuer")
        try:
            expired = float(payload.get("exp")) <= self._clock()
        except (TypeError, ValueError):
            expired = True
        if expired:
            raise AuthenticationError("invalid or expired Apple token")
        if self.client_id:
            aud = payload.get("aud")
            audiences = aud if isinstance(aud, list) else [aud]
            if self.client_id not in audiences:
                raise AuthenticationError("invalid Apple token audience")
        email = payload.get("email")
        if not email:
            raise AuthenticationError("Apple token has no email")
        return FederatedIdentity(email=email, subject=payload.get("sub"))


__all__ = ["AppleIdentityVerifier", "FederatedIdentity", "GoogleIdentityVerifier"]

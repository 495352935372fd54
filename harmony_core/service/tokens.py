from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from harmony_core.config import Settings
from harmony_core.logging import get_logger
from harmony_core.storage.models import utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


def encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def decode_segment(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


@dataclass
class AccessClaims:
    user_id: str
    email: Optional[str]
    expires_at: datetime


@dataclass
class RefreshClaims:
    user_id: str
    session_id: str
    expires_at: datetime


class TokenSigner:
    """HS256 JWTs with separate secrets for access and refresh tokens."""

    def __init__(self, settings: Settings, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.settings = settings
        self.clock = clock

    def _secret(self, typ: str) -> bytes:
        if typ == ACCESS:
            return self.settings.jwt_access_secret.encode()
        return self.settings.jwt_refresh_secret.encode()

    def encode(self, payload: dict[str, Any], typ: str, ttl_seconds: int) -> str:
        now = int(self.clock().timestamp())
        claims = {
            **payload,
            "typ": typ,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": now,
            "exp": now + int(ttl_seconds),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = encode_segment(json.dumps(claims, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(self._secret(typ), signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{encode_segment(signature)}"

    def decode(self, token: str, typ: str) -> Optional[dict[str, Any]]:
        """Return verified claims, or None for any malformed/forged/expired token."""
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = encode_segment(
            hmac.new(self._secret(typ), signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("typ") != typ:
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self.clock().timestamp():
            return None
        if not payload.get("sub"):
            return None
        return payload

    def issue_access(self, user_id: str, email: Optional[str]) -> str:
        return self.encode(
            {"sub": user_id, "email": email}, ACCESS, self.settings.access_token_ttl_seconds
        )

    def issue_refresh(self, user_id: str, session_id: str) -> str:
        return self.encode(
            {"sub": user_id, "jti": session_id}, REFRESH, self.settings.refresh_token_ttl_seconds
        )

    def verify_access(self, token: str) -> Optional[AccessClaims]:
        payload = self.decode(token, ACCESS)
        if payload is None:
            return None
        return AccessClaims(
            user_id=str(payload["sub"]),
            email=payload.get("email"),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=self.clock().tzinfo),
        )

    def verify_refresh(self, token: str) -> Optional[RefreshClaims]:
        payload = self.decode(token, REFRESH)
        if payload is None or not payload.get("jti"):
            return None
        return RefreshClaims(
            user_id=str(payload["sub"]),
            session_id=str(payload["jti"]),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=self.clock().tzinfo),
        )


__all__ = ["AccessClaims", "RefreshClaims", "TokenSigner", "encode_segment", "decode_segment"]

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from harmony_core.config import Settings
from harmony_core.logging import get_logger
from harmony_core.service.errors import AuthenticationError
from harmony_core.service.tokens import AccessClaims, RefreshClaims, TokenSigner
from harmony_core.storage.errors import ConstraintViolation
from harmony_core.storage.models import RefreshSession, RotationOutcome, User, utcnow

logger = get_logger(__name__)

_USER_AGENT_MAX = 512


@dataclass
class SessionMeta:
    ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    session_id: str
    access_expires_in: int
    refresh_expires_at: datetime
    token_type: str = "Bearer"


class SessionManager:
    """Issues, rotates and revokes refresh-token session families."""

    def __init__(
        self,
        store,
        signer: TokenSigner,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.signer = signer
        self.settings = settings
        self.clock = clock

    def _new_session(self, user_id: str, meta: Optional[SessionMeta]) -> RefreshSession:
        meta = meta or SessionMeta()
        return RefreshSession.new(
            user_id,
            self.settings.refresh_token_ttl_seconds,
            now=self.clock(),
            ip=(meta.ip or None) and meta.ip[:64],
            user_agent=(meta.user_agent or None) and meta.user_agent[:_USER_AGENT_MAX],
        )

    def _pair_for(self, user_id: str, email: Optional[str], session: RefreshSession) -> TokenPair:
        return TokenPair(
            access_token=self.signer.issue_access(user_id, email),
            refresh_token=self.signer.issue_refresh(user_id, session.id),
            session_id=session.id,
            access_expires_in=self.settings.access_token_ttl_seconds,
            refresh_expires_at=session.expires_at,
        )

    def issue_session(self, user: User, meta: Optional[SessionMeta] = None) -> TokenPair:
        session = self._new_session(user.id, meta)
        try:
            self.store.create_refresh_session(session)
        except ConstraintViolation as exc:
            raise AuthenticationError("unable to create session", detail=exc.detail) from exc
        logger.info("session_issued", user_id=user.id, session_id=session.id)
        return self._pair_for(user.id, user.email, session)

    def refresh(
        self, user_id: str, session_id: str, meta: Optional[SessionMeta] = None
    ) -> TokenPair:
        now = self.clock()
        current = self.store.get_refresh_session(session_id)
        if current is None or current.user_id != user_id:
            raise AuthenticationError("invalid refresh token")
        if current.revoked_at is not None or current.replaced_by_id is not None:
            self._revoke_family(user_id, session_id, now)
        if current.expires_at <= now:
            raise AuthenticationError("refresh token expired")

        user = self.store.get_user(user_id)
        if user is None or user.is_deleted:
            raise AuthenticationError("invalid refresh token")

        new_session = self._new_session(user_id, meta)
        outcome = self.store.rotate_refresh_session(session_id, new_session, now)
        if outcome is RotationOutcome.ALREADY_REVOKED:
            # Lost a concurrent race for the same token
            self._revoke_family(user_id, session_id, now)
        if outcome is RotationOutcome.MISSING:
            raise AuthenticationError("invalid refresh token")
        logger.info(
            "session_rotated", user_id=user_id, old_session_id=session_id, session_id=new_session.id
        )
        return self._pair_for(user_id, user.email, new_session)

    def _revoke_family(self, user_id: str, session_id: str, now: datetime) -> None:
        revoked = self.store.revoke_user_sessions(user_id, now)
        logger.warning(
            "refresh_reuse_detected", user_id=user_id, session_id=session_id, revoked=revoked
        )
        raise AuthenticationError("suspicious activity detected, sign in again")

    def revoke(self, user_id: str, session_id: str) -> None:
        """Revoke one session; unknown or already revoked sessions are ignored."""
        try:
            self.store.revoke_refresh_session(session_id, user_id, self.clock())
        except Exception as exc:
            logger.warning("session_revoke_failed", session_id=session_id, error=str(exc))

    def revoke_all(self, user_id: str) -> int:
        return self.store.revoke_user_sessions(user_id, self.clock())

    def verify_access_token(self, token: str) -> AccessClaims:
        claims = self.signer.verify_access(token)
        if claims is None:
            raise AuthenticationError("invalid access token")
        return claims

    def decode_refresh_token(self, token: str) -> RefreshClaims:
        claims = self.signer.verify_refresh(token)
        if claims is None:
            raise AuthenticationError("invalid refresh token")
        return claims

    def list_sessions(self, user_id: str) -> List[RefreshSession]:
        return self.store.list_user_sessions(user_id)


__all__ = ["SessionManager", "SessionMeta", "TokenPair"]

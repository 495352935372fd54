from __future__ import annotations

import asyncio
import hmac
import math
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from harmony_core.config import Settings
from harmony_core.logging import get_logger
from harmony_core.service.entitlements import EntitlementLedger
from harmony_core.service.errors import (
    AuthenticationError,
    ConflictError,
    ServiceError,
    ValidationError,
)
from harmony_core.service.federated import (
    AppleIdentityVerifier,
    FederatedIdentity,
    GoogleIdentityVerifier,
)
from harmony_core.service.lockout import LockoutGuard
from harmony_core.service.mail import MailService
from harmony_core.service.sessions import SessionManager, SessionMeta, TokenPair
from harmony_core.service.tokens import AccessClaims
from harmony_core.storage.errors import ConstraintViolation
from harmony_core.storage.models import PendingRegistration, User, utcnow

logger = get_logger(__name__)

SUBSCRIPTION_NAME_PREMIUM = "PREMIUM"

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")
_WHITESPACE_RE = re.compile(r"\s+")
_EMAIL_MAX = 254
_NAME_MAX = 50
_FEDERATED_NAME_MAX = 80
_PASSWORD_MIN = 8
_PASSWORD_MAX = 128


def normalize_email(email: Optional[str]) -> str:
    value = str(email or "").strip().lower()[:_EMAIL_MAX]
    if not value or not _EMAIL_RE.match(value):
        raise ValidationError("invalid email format", detail={"field": "email"})
    if _CONTROL_RE.search(value):
        raise ValidationError("invalid characters in email", detail={"field": "email"})
    return value


def sanitize_name(value: Optional[str], field_name: str) -> str:
    cleaned = _WHITESPACE_RE.sub(" ", str(value or "").strip())[:_NAME_MAX]
    if not cleaned:
        raise ValidationError(f"{field_name} is required", detail={"field": field_name})
    if _CONTROL_RE.search(cleaned):
        raise ValidationError(f"invalid characters in {field_name}", detail={"field": field_name})
    return cleaned


def validate_password(password: Optional[str]) -> None:
    value = str(password or "")
    if len(value) < _PASSWORD_MIN:
        raise ValidationError(
            f"password must be at least {_PASSWORD_MIN} characters", detail={"field": "password"}
        )
    if len(value) > _PASSWORD_MAX:
        raise ValidationError(
            f"password must be at most {_PASSWORD_MAX} characters", detail={"field": "password"}
        )


@dataclass
class AuthResult:
    user: Dict[str, Any]
    tokens: TokenPair
    message: str = "ok"


@dataclass
class RegistrationResult:
    message: str = "code sent"
    sent: bool = True


class AuthOrchestrator:
    """Registration, login, token refresh and account lifecycle use cases."""

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        lockout: LockoutGuard,
        sessions: SessionManager,
        ledger: EntitlementLedger,
        mail: Optional[MailService] = None,
        google: Optional[GoogleIdentityVerifier] = None,
        apple: Optional[AppleIdentityVerifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.lockout = lockout
        self.sessions = sessions
        self.ledger = ledger
        self.mail = mail
        self.google = google or GoogleIdentityVerifier()
        self.apple = apple or AppleIdentityVerifier(client_id=settings.apple_client_id)
        self.clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    # password helpers
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, stored_hash: Optional[str], password: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def _generate_code(self) -> str:
        return f"{secrets.randbelow(1_000_000):06d}"

    def user_snapshot(self, user: User) -> Dict[str, Any]:
        status = self.ledger.get_status(user.id)
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "surname": user.surname,
            "created_at": user.created_at,
            "premium_until": status.current_period_end,
            "subscription": SUBSCRIPTION_NAME_PREMIUM if status.is_premium else None,
            "subscription_product_id": status.product_id,
            "subscription_store": status.store.value if status.store else None,
            "subscription_period_end": status.current_period_end,
        }

    def _send_code_quietly(self, email: str, code: str) -> None:
        if self.mail is None:
            logger.warning("verification_mail_not_configured")
            return
        try:
            sent = self.mail.send_verification_code(email, code)
        except Exception as exc:
            logger.error("verification_mail_failed", error=str(exc))
            return
        if not sent:
            logger.warning("verification_mail_not_sent")

    async def register(
        self,
        *,
        name: Optional[str],
        surname: Optional[str],
        email: Optional[str],
        password: Optional[str],
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RegistrationResult:
        self.lockout.assert_not_blocked(ip=ip, email=email)
        self.lockout.check_registration_limit(ip)
        try:
            normalized = normalize_email(email)
            clean_name = sanitize_name(name, "name")
            clean_surname = sanitize_name(surname, "surname")
            validate_password(password)
        except ValidationError:
            self.lockout.record_failed_auth(ip=ip, email=email)
            raise

        if self.store.get_active_user_by_email(normalized):
            self.lockout.record_failed_auth(ip=ip, email=normalized)
            raise ConflictError("email already registered")

        now = self.clock()
        code = self._generate_code()
        self.store.upsert_pending_registration(
            PendingRegistration(
                email=normalized,
                code=code,
                code_expires_at=now + timedelta(minutes=self.settings.verification_code_ttl_minutes),
                name=clean_name,
                surname=clean_surname,
                password_hash=self.hash_password(password),
                created_at=now,
            )
        )
        # Delivery runs off the request path; its outcome never changes the response
        asyncio.get_running_loop().run_in_executor(
            None, self._send_code_quietly, normalized, code
        )
        self.lockout.clear_auth_attempts(ip=ip, email=normalized)
        logger.info("registration_code_issued")
        return RegistrationResult()

    async def verify_email(
        self,
        *,
        email: Optional[str],
        code: Optional[str],
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        self.lockout.assert_not_blocked(ip=ip, email=email)
        try:
            normalized = normalize_email(email)
        except ValidationError:
            self.lockout.record_failed_auth(ip=ip, email=email)
            raise
        submitted = str(code or "").strip()
        pending = self.store.get_pending_registration(normalized)
        if pending is None:
            self.lockout.record_failed_auth(ip=ip, email=normalized)
            raise ValidationError("code not found or expired, request a new one")
        if not submitted or not hmac.compare_digest(pending.code, submitted):
            self.lockout.record_failed_auth(ip=ip, email=normalized)
            raise ValidationError("invalid verification code")
        if self.clock() > pending.code_expires_at:
            self.store.delete_pending_registration(normalized)
            raise ValidationError("code expired, request a new one")

        try:
            user = self.store.create_user(
                pending.email,
                name=pending.name,
                surname=pending.surname,
                password_hash=pending.password_hash,
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered") from exc
        self.store.delete_pending_registration(normalized)
        tokens = self.sessions.issue_session(user, SessionMeta(ip=ip, user_agent=user_agent))
        logger.info("user_registered", user_id=user.id)
        return AuthResult(user=self.user_snapshot(user), tokens=tokens)

    async def login(
        self,
        *,
        email: Optional[str],
        password: Optional[str],
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        self.lockout.assert_not_blocked(ip=ip, email=email)
        try:
            normalized = normalize_email(email)
        except ValidationError:
            self.lockout.record_failed_auth(ip=ip, email=email)
            raise

        user = self.store.get_active_user_by_email(normalized)
        if user is None or not self.verify_password(user.password_hash, str(password or "")):
            self.lockout.record_failed_auth(ip=ip, email=normalized)
            logger.info("login_failed", user_found=user is not None)
            raise AuthenticationError("invalid email or password")

        self.lockout.clear_auth_attempts(ip=ip, email=normalized)
        tokens = self.sessions.issue_session(user, SessionMeta(ip=ip, user_agent=user_agent))
        return AuthResult(user=self.user_snapshot(user), tokens=tokens)

    async def login_with_google(
        self, *, id_token: str, ip: Optional[str] = None, user_agent: Optional[str] = None
    ) -> AuthResult:
        identity = await self.google.verify(id_token)
        return self._federated_login(identity, ip=ip, user_agent=user_agent)

    async def login_with_apple(
        self, *, identity_token: str, ip: Optional[str] = None, user_agent: Optional[str] = None
    ) -> AuthResult:
        identity = await self.apple.verify(identity_token)
        return self._federated_login(identity, ip=ip, user_agent=user_agent)

    def _federated_login(
        self, identity: FederatedIdentity, *, ip: Optional[str], user_agent: Optional[str]
    ) -> AuthResult:
        try:
            email = normalize_email(identity.email)
        except ValidationError as exc:
            raise AuthenticationError("provider token has no valid email") from exc
        user = self.store.get_active_user_by_email(email)
        if user is None:
            display = (identity.name or email.split("@")[0] or email)[:_FEDERATED_NAME_MAX]
            try:
                user = self.store.create_user(email, name=display, surname="", password_hash=None)
            except ConstraintViolation:
                # Created concurrently by another login
                user = self.store.get_active_user_by_email(email)
                if user is None:
                    raise AuthenticationError("unable to sign in")
            self.store.delete_pending_registration(email)
            logger.info("federated_user_created", user_id=user.id)
        tokens = self.sessions.issue_session(user, SessionMeta(ip=ip, user_agent=user_agent))
        return AuthResult(user=self.user_snapshot(user), tokens=tokens)

    async def refresh(
        self,
        *,
        refresh_token: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        claims = self.sessions.decode_refresh_token(refresh_token)
        return self.sessions.refresh(
            claims.user_id, claims.session_id, SessionMeta(ip=ip, user_agent=user_agent)
        )

    async def logout(self, *, refresh_token: str) -> None:
        """Revoke the presented session; never fails."""
        try:
            claims = self.sessions.decode_refresh_token(refresh_token)
        except ServiceError:
            return
        self.sessions.revoke(claims.user_id, claims.session_id)

    def authenticate(self, access_token: str) -> AccessClaims:
        claims = self.sessions.verify_access_token(access_token)
        user = self.store.get_user(claims.user_id)
        if user is None or user.is_deleted:
            raise AuthenticationError("user not found")
        return claims

    def _active_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None or user.is_deleted:
            raise AuthenticationError("user not found")
        return user

    def me(self, user_id: str) -> Dict[str, Any]:
        return self.user_snapshot(self._active_user(user_id))

    def update_profile(
        self, user_id: str, *, name: Optional[str] = None, surname: Optional[str] = None
    ) -> Dict[str, Any]:
        has_name = bool(name and name.strip())
        has_surname = bool(surname and surname.strip())
        if not has_name and not has_surname:
            return self.me(user_id)

        user = self._active_user(user_id)
        now = self.clock()
        interval = timedelta(days=self.settings.name_change_interval_days)
        if user.name_change_count > 0 and user.name_updated_at is not None:
            elapsed = now - user.name_updated_at
            if elapsed < interval:
                remaining_days = math.ceil((interval - elapsed).total_seconds() / 86400)
                raise ValidationError(
                    f"name can be changed once every {self.settings.name_change_interval_days} days",
                    detail={"retry_after_days": int(remaining_days)},
                )

        updated = self.store.update_user_name(
            user_id,
            name=sanitize_name(name, "name") if has_name else None,
            surname=sanitize_name(surname, "surname") if has_surname else None,
            now=now,
        )
        if updated is None:
            raise AuthenticationError("user not found")
        logger.info("profile_updated", user_id=user_id)
        return self.user_snapshot(updated)

    def delete_account(self, user_id: str) -> None:
        self._active_user(user_id)
        if not self.store.soft_delete_user(user_id, self.clock()):
            raise AuthenticationError("user not found")
        logger.info("account_deleted", user_id=user_id)

    def cleanup_expired_registrations(self) -> int:
        removed = self.store.purge_expired_pending_registrations(self.clock())
        if removed:
            logger.info("pending_registrations_purged", count=removed)
        return removed


__all__ = [
    "AuthOrchestrator",
    "AuthResult",
    "RegistrationResult",
    "SUBSCRIPTION_NAME_PREMIUM",
    "normalize_email",
    "sanitize_name",
    "validate_password",
]

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionStore(str, Enum):
    """Where a subscription originated."""

    INTERNAL = "INTERNAL"
    APPLE = "APPLE"
    GOOGLE = "GOOGLE"


class SessionState(str, Enum):
    ACTIVE = "active"
    ROTATED = "rotated"
    REVOKED = "revoked"
    EXPIRED = "expired"


class RotationOutcome(str, Enum):
    """Result of an atomic refresh-session rotation attempt."""

    ROTATED = "rotated"
    ALREADY_REVOKED = "already_revoked"
    MISSING = "missing"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    WAITING_FOR_CAPTURE = "WAITING_FOR_CAPTURE"
    SUCCEEDED = "SUCCEEDED"
    CANCELED = "CANCELED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_gateway(cls, raw: Optional[str]) -> "PaymentStatus":
        normalized = (raw or "UNKNOWN").strip().upper().replace("-", "_")
        try:
            return cls(normalized)
        except ValueError:
            return cls.UNKNOWN


@dataclass
class User:
    id: str
    email: str
    name: str = ""
    surname: str = ""
    password_hash: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None
    premium_until: Optional[datetime] = None
    name_updated_at: Optional[datetime] = None
    name_change_count: int = 0

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @classmethod
    def new(
        cls,
        email: str,
        *,
        name: str = "",
        surname: str = "",
        password_hash: Optional[str] = None,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            surname=surname,
            password_hash=password_hash,
        )


@dataclass
class PendingRegistration:
    email: str
    code: str
    code_expires_at: datetime
    name: str
    surname: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshSession:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    replaced_by_id: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_seconds: int,
        *,
        now: Optional[datetime] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "RefreshSession":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=created,
            expires_at=created + timedelta(seconds=ttl_seconds),
            ip=ip,
            user_agent=user_agent,
        )

    def state(self, now: datetime) -> SessionState:
        if self.revoked_at is not None:
            return SessionState.ROTATED if self.replaced_by_id else SessionState.REVOKED
        if self.expires_at <= now:
            return SessionState.EXPIRED
        return SessionState.ACTIVE


@dataclass
class AuthLockoutRecord:
    key: str
    attempts: int = 0
    locked_until: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class Subscription:
    user_id: str
    product_id: Optional[str]
    store: Optional[SubscriptionStore]
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class PaymentRecord:
    id: str
    plan_id: str
    email_or_id: str
    status: PaymentStatus = PaymentStatus.PENDING
    user_id: Optional[str] = None
    granted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

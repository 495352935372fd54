from __future__ import annotations

import contextlib
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional

from harmony_core.logging import get_logger
from harmony_core.storage.common import EntitlementUnit, normalize_email_key
from harmony_core.storage.errors import ConstraintViolation
from harmony_core.storage.models import (
    AuthLockoutRecord,
    PaymentRecord,
    PaymentStatus,
    PendingRegistration,
    RefreshSession,
    RotationOutcome,
    Subscription,
    User,
    utcnow,
)


class _MemoryEntitlementUnit:
    """Stages entitlement writes and applies them when the unit commits."""

    def __init__(
        self,
        user: Optional[User],
        subscription: Optional[Subscription],
        payment: Optional[PaymentRecord],
    ) -> None:
        self.user = user
        self.subscription = subscription
        self.payment = payment
        self._premium_until: tuple[bool, Optional[datetime]] = (False, None)
        self._subscription_write: Optional[Subscription] = None
        self._payment_write: Optional[dict] = None

    def set_premium_until(self, until: Optional[datetime]) -> None:
        if self.user is None:
            raise ConstraintViolation("user missing", {"field": "user_id"})
        self._premium_until = (True, until)
        self.user = replace(self.user, premium_until=until)

    def save_subscription(self, subscription: Subscription) -> None:
        self._subscription_write = replace(subscription)
        self.subscription = replace(subscription)

    def update_payment(
        self,
        status: PaymentStatus,
        *,
        user_id: Optional[str] = None,
        granted_at: Optional[datetime] = None,
    ) -> None:
        if self.payment is None:
            raise ConstraintViolation("payment missing", {"field": "payment_id"})
        self._payment_write = {"status": status, "user_id": user_id, "granted_at": granted_at}
        self.payment = replace(
            self.payment,
            status=status,
            user_id=user_id or self.payment.user_id,
            granted_at=granted_at or self.payment.granted_at,
        )


class MemoryStore:
    """In-memory credential store for tests and local development.

    All multi-record mutations run under a single re-entrant lock so they are
    atomic with respect to concurrent callers in the same process.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.pending_registrations: Dict[str, PendingRegistration] = {}
        self.sessions: Dict[str, RefreshSession] = {}
        self.lockouts: Dict[str, AuthLockoutRecord] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self.payments: Dict[str, PaymentRecord] = {}
        # RLock so entitlement units can call back into store readers
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self,
        email: str,
        *,
        name: str = "",
        surname: str = "",
        password_hash: Optional[str] = None,
    ) -> User:
        normalized = normalize_email_key(email)
        with self._data_lock:
            if self._find_active_user(normalized):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(
                normalized, name=name, surname=surname, password_hash=password_hash
            )
            self.users[user.id] = user
            return replace(user)

    def _find_active_user(self, email: str) -> Optional[User]:
        for user in self.users.values():
            if user.email == email and user.deleted_at is None:
                return user
        return None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_active_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_active_user(normalize_email_key(email))
            return replace(user) if user else None

    def update_user_name(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        surname: Optional[str] = None,
        now: datetime,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.deleted_at is not None:
                return None
            if name is not None:
                user.name = name
            if surname is not None:
                user.surname = surname
            user.name_updated_at = now
            user.name_change_count += 1
            return replace(user)

    def soft_delete_user(self, user_id: str, now: datetime) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.deleted_at is not None:
                return False
            user.deleted_at = now
            self._revoke_user_sessions_locked(user_id, now)
            return True

    # pending registrations
    def upsert_pending_registration(self, record: PendingRegistration) -> PendingRegistration:
        key = normalize_email_key(record.email)
        with self._data_lock:
            stored = replace(record, email=key)
            self.pending_registrations[key] = stored
            return replace(stored)

    def get_pending_registration(self, email: str) -> Optional[PendingRegistration]:
        with self._data_lock:
            record = self.pending_registrations.get(normalize_email_key(email))
            return replace(record) if record else None

    def delete_pending_registration(self, email: str) -> bool:
        with self._data_lock:
            return self.pending_registrations.pop(normalize_email_key(email), None) is not None

    def purge_expired_pending_registrations(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                email
                for email, record in self.pending_registrations.items()
                if record.code_expires_at <= now
            ]
            for email in expired:
                self.pending_registrations.pop(email, None)
            return len(expired)

    # refresh sessions
    def create_refresh_session(self, session: RefreshSession) -> RefreshSession:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("session user missing", {"user_id": session.user_id})
            if session.id in self.sessions:
                raise ConstraintViolation("session id exists", {"session_id": session.id})
            self.sessions[session.id] = replace(session)
            return replace(session)

    def get_refresh_session(self, session_id: str) -> Optional[RefreshSession]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def list_user_sessions(self, user_id: str) -> List[RefreshSession]:
        with self._data_lock:
            return sorted(
                (replace(s) for s in self.sessions.values() if s.user_id == user_id),
                key=lambda s: s.created_at,
            )

    def rotate_refresh_session(
        self, old_session_id: str, new_session: RefreshSession, now: datetime
    ) -> RotationOutcome:
        with self._data_lock:
            old = self.sessions.get(old_session_id)
            if old is None:
                return RotationOutcome.MISSING
            if old.revoked_at is not None:
                return RotationOutcome.ALREADY_REVOKED
            self.sessions[new_session.id] = replace(new_session)
            old.revoked_at = now
            old.replaced_by_id = new_session.id
            return RotationOutcome.ROTATED

    def revoke_refresh_session(self, session_id: str, user_id: str, now: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.user_id != user_id or sess.revoked_at is not None:
                return False
            sess.revoked_at = now
            return True

    def revoke_user_sessions(self, user_id: str, now: datetime) -> int:
        with self._data_lock:
            return self._revoke_user_sessions_locked(user_id, now)

    def _revoke_user_sessions_locked(self, user_id: str, now: datetime) -> int:
        count = 0
        for sess in self.sessions.values():
            if sess.user_id == user_id and sess.revoked_at is None:
                sess.revoked_at = now
                count += 1
        return count

    # lockouts
    def get_lockout(self, key: str) -> Optional[AuthLockoutRecord]:
        with self._data_lock:
            record = self.lockouts.get(key)
            return replace(record) if record else None

    def save_lockout(self, record: AuthLockoutRecord) -> AuthLockoutRecord:
        with self._data_lock:
            existing = self.lockouts.get(record.key)
            locked_until = record.locked_until
            if existing and existing.locked_until is not None:
                if locked_until is None or existing.locked_until > locked_until:
                    locked_until = existing.locked_until
            stored = replace(record, locked_until=locked_until)
            self.lockouts[record.key] = stored
            return replace(stored)

    def delete_lockouts(self, keys: Iterable[str]) -> int:
        with self._data_lock:
            removed = 0
            for key in keys:
                if self.lockouts.pop(key, None) is not None:
                    removed += 1
            return removed

    # subscriptions and payments
    def get_subscription(self, user_id: str) -> Optional[Subscription]:
        with self._data_lock:
            sub = self.subscriptions.get(user_id)
            return replace(sub) if sub else None

    def create_payment(self, record: PaymentRecord) -> PaymentRecord:
        with self._data_lock:
            if record.id in self.payments:
                raise ConstraintViolation("payment exists", {"payment_id": record.id})
            self.payments[record.id] = replace(record)
            return replace(record)

    def get_payment(self, payment_id: str) -> Optional[PaymentRecord]:
        with self._data_lock:
            record = self.payments.get(payment_id)
            return replace(record) if record else None

    def update_payment_status(self, payment_id: str, status: PaymentStatus) -> bool:
        """Update status unless the payment is already fenced by ``granted_at``."""
        with self._data_lock:
            record = self.payments.get(payment_id)
            if not record or record.granted_at is not None:
                return False
            record.status = status
            record.updated_at = utcnow()
            return True

    @contextlib.contextmanager
    def entitlement_unit(
        self, user_id: str, *, payment_id: Optional[str] = None
    ) -> Iterator[EntitlementUnit]:
        with self._data_lock:
            user = self.users.get(user_id)
            sub = self.subscriptions.get(user_id)
            payment = self.payments.get(payment_id) if payment_id else None
            unit = _MemoryEntitlementUnit(
                replace(user) if user else None,
                replace(sub) if sub else None,
                replace(payment) if payment else None,
            )
            yield unit
            self._commit_unit(user_id, payment_id, unit)

    def _commit_unit(
        self, user_id: str, payment_id: Optional[str], unit: _MemoryEntitlementUnit
    ) -> None:
        touched, until = unit._premium_until
        if touched and user_id in self.users:
            self.users[user_id].premium_until = until
        if unit._subscription_write is not None:
            self.subscriptions[user_id] = unit._subscription_write
        if unit._payment_write is not None and payment_id in self.payments:
            record = self.payments[payment_id]
            record.status = unit._payment_write["status"]
            if unit._payment_write["user_id"]:
                record.user_id = unit._payment_write["user_id"]
            if unit._payment_write["granted_at"]:
                record.granted_at = unit._payment_write["granted_at"]
            record.updated_at = utcnow()

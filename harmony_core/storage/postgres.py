from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Any, Iterable, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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
    SubscriptionStore,
    User,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        surname TEXT NOT NULL DEFAULT '',
        password_hash TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ,
        premium_until TIMESTAMPTZ,
        name_updated_at TIMESTAMPTZ,
        name_change_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS app_user_active_email
        ON app_user (email) WHERE deleted_at IS NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_registration (
        email TEXT PRIMARY KEY,
        code TEXT NOT NULL,
        code_expires_at TIMESTAMPTZ NOT NULL,
        name TEXT NOT NULL,
        surname TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id),
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        replaced_by_id TEXT,
        ip TEXT,
        user_agent TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_session_user ON refresh_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS auth_lockout (
        key TEXT PRIMARY KEY,
        attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subscription (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id),
        product_id TEXT,
        store TEXT,
        current_period_start TIMESTAMPTZ,
        current_period_end TIMESTAMPTZ,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS yookassa_payment (
        id TEXT PRIMARY KEY,
        plan_id TEXT NOT NULL,
        email_or_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'PENDING',
        user_id TEXT,
        granted_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


def _user_from_row(row: dict) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        name=row.get("name") or "",
        surname=row.get("surname") or "",
        password_hash=row.get("password_hash"),
        created_at=row["created_at"],
        deleted_at=row.get("deleted_at"),
        premium_until=row.get("premium_until"),
        name_updated_at=row.get("name_updated_at"),
        name_change_count=row.get("name_change_count") or 0,
    )


def _session_from_row(row: dict) -> RefreshSession:
    return RefreshSession(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        revoked_at=row.get("revoked_at"),
        replaced_by_id=row.get("replaced_by_id"),
        ip=row.get("ip"),
        user_agent=row.get("user_agent"),
    )


def _subscription_from_row(row: dict) -> Subscription:
    raw_store = row.get("store")
    return Subscription(
        user_id=str(row["user_id"]),
        product_id=row.get("product_id"),
        store=SubscriptionStore(raw_store) if raw_store else None,
        current_period_start=row.get("current_period_start"),
        current_period_end=row.get("current_period_end"),
        updated_at=row["updated_at"],
    )


def _payment_from_row(row: dict) -> PaymentRecord:
    return PaymentRecord(
        id=str(row["id"]),
        plan_id=row["plan_id"],
        email_or_id=row["email_or_id"],
        status=PaymentStatus.from_gateway(row.get("status")),
        user_id=row.get("user_id"),
        granted_at=row.get("granted_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class _PostgresEntitlementUnit:
    """Entitlement writes executed inside an open transaction holding row locks."""

    def __init__(
        self,
        conn: Any,
        user: Optional[User],
        subscription: Optional[Subscription],
        payment: Optional[PaymentRecord],
    ) -> None:
        self._conn = conn
        self.user = user
        self.subscription = subscription
        self.payment = payment

    def set_premium_until(self, until: Optional[datetime]) -> None:
        if self.user is None:
            raise ConstraintViolation("user missing", {"field": "user_id"})
        self._conn.execute(
            "UPDATE app_user SET premium_until = %s WHERE id = %s",
            (until, self.user.id),
        )
        self.user.premium_until = until

    def save_subscription(self, subscription: Subscription) -> None:
        self._conn.execute(
            """
            INSERT INTO subscription (user_id, product_id, store, current_period_start, current_period_end, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id) DO UPDATE
            SET product_id = EXCLUDED.product_id,
                store = EXCLUDED.store,
                current_period_start = EXCLUDED.current_period_start,
                current_period_end = EXCLUDED.current_period_end,
                updated_at = EXCLUDED.updated_at
            """,
            (
                subscription.user_id,
                subscription.product_id,
                subscription.store.value if subscription.store else None,
                subscription.current_period_start,
                subscription.current_period_end,
                subscription.updated_at,
            ),
        )
        self.subscription = subscription

    def update_payment(
        self,
        status: PaymentStatus,
        *,
        user_id: Optional[str] = None,
        granted_at: Optional[datetime] = None,
    ) -> None:
        if self.payment is None:
            raise ConstraintViolation("payment missing", {"field": "payment_id"})
        self._conn.execute(
            """
            UPDATE yookassa_payment
            SET status = %s,
                user_id = COALESCE(%s, user_id),
                granted_at = COALESCE(%s, granted_at),
                updated_at = now()
            WHERE id = %s
            """,
            (status.value, user_id, granted_at, self.payment.id),
        )
        self.payment.status = status
        self.payment.user_id = user_id or self.payment.user_id
        self.payment.granted_at = granted_at or self.payment.granted_at


class PostgresStore:
    """Postgres-backed credential store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the core tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(
        self,
        email: str,
        *,
        name: str = "",
        surname: str = "",
        password_hash: Optional[str] = None,
    ) -> User:
        user = User.new(
            normalize_email_key(email), name=name, surname=surname, password_hash=password_hash
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, surname, password_hash, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (user.id, user.email, name, surname, password_hash, user.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_active_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s AND deleted_at IS NULL",
                (normalize_email_key(email),),
            ).fetchone()
        return _user_from_row(row) if row else None

    def update_user_name(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        surname: Optional[str] = None,
        now: datetime,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET name = COALESCE(%s, name),
                    surname = COALESCE(%s, surname),
                    name_updated_at = %s,
                    name_change_count = name_change_count + 1
                WHERE id = %s AND deleted_at IS NULL
                RETURNING *
                """,
                (name, surname, now, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def soft_delete_user(self, user_id: str, now: datetime) -> bool:
        with self._connect() as conn, conn.transaction():
            result = conn.execute(
                "UPDATE app_user SET deleted_at = %s WHERE id = %s AND deleted_at IS NULL",
                (now, user_id),
            )
            if result.rowcount == 0:
                return False
            conn.execute(
                "UPDATE refresh_session SET revoked_at = %s WHERE user_id = %s AND revoked_at IS NULL",
                (now, user_id),
            )
        return True

    # pending registrations
    def upsert_pending_registration(self, record: PendingRegistration) -> PendingRegistration:
        email = normalize_email_key(record.email)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO pending_registration (email, code, code_expires_at, name, surname, password_hash, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (email) DO UPDATE
                SET code = EXCLUDED.code,
                    code_expires_at = EXCLUDED.code_expires_at,
                    name = EXCLUDED.name,
                    surname = EXCLUDED.surname,
                    password_hash = EXCLUDED.password_hash
                """,
                (
                    email,
                    record.code,
                    record.code_expires_at,
                    record.name,
                    record.surname,
                    record.password_hash,
                    record.created_at,
                ),
            )
        record.email = email
        return record

    def get_pending_registration(self, email: str) -> Optional[PendingRegistration]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pending_registration WHERE email = %s",
                (normalize_email_key(email),),
            ).fetchone()
        if not row:
            return None
        return PendingRegistration(
            email=row["email"],
            code=row["code"],
            code_expires_at=row["code_expires_at"],
            name=row["name"],
            surname=row["surname"],
            password_hash=row["password_hash"],
            created_at=row["created_at"],
        )

    def delete_pending_registration(self, email: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM pending_registration WHERE email = %s",
                (normalize_email_key(email),),
            )
            return result.rowcount > 0

    def purge_expired_pending_registrations(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM pending_registration WHERE code_expires_at <= %s", (now,)
            )
            return result.rowcount

    # refresh sessions
    def create_refresh_session(self, session: RefreshSession) -> RefreshSession:
        try:
            with self._connect() as conn:
                self._insert_session(conn, session)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session id exists", {"session_id": session.id})
        return session

    @staticmethod
    def _insert_session(conn: Any, session: RefreshSession) -> None:
        conn.execute(
            """
            INSERT INTO refresh_session (id, user_id, created_at, expires_at, ip, user_agent)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                session.id,
                session.user_id,
                session.created_at,
                session.expires_at,
                session.ip,
                session.user_agent,
            ),
        )

    def get_refresh_session(self, session_id: str) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_session WHERE id = %s", (session_id,)
            ).fetchone()
        return _session_from_row(row) if row else None

    def list_user_sessions(self, user_id: str) -> List[RefreshSession]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_session WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [_session_from_row(row) for row in rows]

    def rotate_refresh_session(
        self, old_session_id: str, new_session: RefreshSession, now: datetime
    ) -> RotationOutcome:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "SELECT revoked_at FROM refresh_session WHERE id = %s FOR UPDATE",
                (old_session_id,),
            ).fetchone()
            if not row:
                return RotationOutcome.MISSING
            if row["revoked_at"] is not None:
                return RotationOutcome.ALREADY_REVOKED
            self._insert_session(conn, new_session)
            conn.execute(
                "UPDATE refresh_session SET revoked_at = %s, replaced_by_id = %s WHERE id = %s",
                (now, new_session.id, old_session_id),
            )
        return RotationOutcome.ROTATED

    def revoke_refresh_session(self, session_id: str, user_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_session SET revoked_at = %s
                WHERE id = %s AND user_id = %s AND revoked_at IS NULL
                """,
                (now, session_id, user_id),
            )
            return result.rowcount > 0

    def revoke_user_sessions(self, user_id: str, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE refresh_session SET revoked_at = %s WHERE user_id = %s AND revoked_at IS NULL",
                (now, user_id),
            )
            return result.rowcount

    # lockouts
    def get_lockout(self, key: str) -> Optional[AuthLockoutRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_lockout WHERE key = %s", (key,)
            ).fetchone()
        if not row:
            return None
        return AuthLockoutRecord(
            key=row["key"],
            attempts=row["attempts"],
            locked_until=row.get("locked_until"),
            updated_at=row["updated_at"],
        )

    def save_lockout(self, record: AuthLockoutRecord) -> AuthLockoutRecord:
        # GREATEST ignores NULLs, so an existing lock is never moved backward
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO auth_lockout (key, attempts, locked_until, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (key) DO UPDATE
                SET attempts = EXCLUDED.attempts,
                    locked_until = GREATEST(auth_lockout.locked_until, EXCLUDED.locked_until),
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                (record.key, record.attempts, record.locked_until, record.updated_at),
            ).fetchone()
        return AuthLockoutRecord(
            key=row["key"],
            attempts=row["attempts"],
            locked_until=row.get("locked_until"),
            updated_at=row["updated_at"],
        )

    def delete_lockouts(self, keys: Iterable[str]) -> int:
        key_list = list(keys)
        if not key_list:
            return 0
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_lockout WHERE key = ANY(%s)", (key_list,)
            )
            return result.rowcount

    # subscriptions and payments
    def get_subscription(self, user_id: str) -> Optional[Subscription]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM subscription WHERE user_id = %s", (user_id,)
            ).fetchone()
        return _subscription_from_row(row) if row else None

    def create_payment(self, record: PaymentRecord) -> PaymentRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO yookassa_payment (id, plan_id, email_or_id, status, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.plan_id,
                        record.email_or_id,
                        record.status.value,
                        record.created_at,
                        record.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("payment exists", {"payment_id": record.id})
        return record

    def get_payment(self, payment_id: str) -> Optional[PaymentRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM yookassa_payment WHERE id = %s", (payment_id,)
            ).fetchone()
        return _payment_from_row(row) if row else None

    def update_payment_status(self, payment_id: str, status: PaymentStatus) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE yookassa_payment SET status = %s, updated_at = now()
                WHERE id = %s AND granted_at IS NULL
                """,
                (status.value, payment_id),
            )
            return result.rowcount > 0

    @contextlib.contextmanager
    def entitlement_unit(
        self, user_id: str, *, payment_id: Optional[str] = None
    ) -> Iterator[EntitlementUnit]:
        with self._connect() as conn, conn.transaction():
            payment = None
            # Lock order: payment, then user, then subscription
            if payment_id:
                row = conn.execute(
                    "SELECT * FROM yookassa_payment WHERE id = %s FOR UPDATE",
                    (payment_id,),
                ).fetchone()
                payment = _payment_from_row(row) if row else None
            user_row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            sub_row = conn.execute(
                "SELECT * FROM subscription WHERE user_id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            yield _PostgresEntitlementUnit(
                conn,
                _user_from_row(user_row) if user_row else None,
                _subscription_from_row(sub_row) if sub_row else None,
                payment,
            )

"""Common storage contracts shared between memory and postgres implementations."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from harmony_core.storage.models import (
    PaymentRecord,
    PaymentStatus,
    Subscription,
    User,
)


def normalize_email_key(email: str) -> str:
    """Canonical form used for e-mail lookups in every backend."""
    return (email or "").strip().lower()


class EntitlementUnit(Protocol):
    """A single atomic unit of work over one user's entitlement records.

    Obtained from ``store.entitlement_unit(user_id, payment_id=...)``. The
    user row (and the payment row, when requested) stays locked until the
    context exits; writes become visible together or not at all.
    """

    user: Optional[User]
    subscription: Optional[Subscription]
    payment: Optional[PaymentRecord]

    def set_premium_until(self, until: Optional[datetime]) -> None: ...

    def save_subscription(self, subscription: Subscription) -> None: ...

    def update_payment(
        self,
        status: PaymentStatus,
        *,
        user_id: Optional[str] = None,
        granted_at: Optional[datetime] = None,
    ) -> None: ...


__all__ = ["EntitlementUnit", "normalize_email_key"]

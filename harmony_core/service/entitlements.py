from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Optional

from harmony_core.logging import get_logger
from harmony_core.service.errors import NotFoundError, ValidationError
from harmony_core.storage.models import Subscription, SubscriptionStore, utcnow

logger = get_logger(__name__)


@dataclass
class EntitlementStatus:
    product_id: Optional[str]
    store: Optional[SubscriptionStore]
    current_period_end: Optional[datetime]
    is_premium: bool = False


def _latest(*values: Optional[datetime]) -> Optional[datetime]:
    present = [v for v in values if v is not None]
    return max(present) if present else None


class EntitlementLedger:
    """Reads and extends a user's premium period."""

    def __init__(self, store, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock

    def get_status(self, user_id: str) -> EntitlementStatus:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        sub = self.store.get_subscription(user_id)
        # The subscription row, once written, is authoritative over premium_until
        end = sub.current_period_end if sub else user.premium_until
        return EntitlementStatus(
            product_id=sub.product_id if sub else None,
            store=sub.store if sub else None,
            current_period_end=end,
            is_premium=end is not None and end > self.clock(),
        )

    def is_premium(self, user_id: str) -> bool:
        return self.get_status(user_id).is_premium

    def grant(
        self,
        user_id: str,
        days: int,
        *,
        store: Optional[SubscriptionStore] = None,
        product_id: Optional[str] = None,
    ) -> datetime:
        """Extend premium by ``days`` from the later of now and the current end."""
        if days <= 0:
            raise ValidationError("days must be positive", detail={"days": days})
        now = self.clock()
        with self.store.entitlement_unit(user_id) as unit:
            if unit.user is None:
                raise NotFoundError("user not found")
            sub = unit.subscription
            base = _latest(now, unit.user.premium_until, sub.current_period_end if sub else None)
            until = base + timedelta(days=days)
            unit.set_premium_until(until)
            if product_id is not None or sub is not None:
                if store is None:
                    store = sub.store if sub and sub.store else SubscriptionStore.INTERNAL
                unit.save_subscription(
                    Subscription(
                        user_id=user_id,
                        product_id=product_id if product_id is not None else sub.product_id,
                        store=store,
                        current_period_start=(
                            sub.current_period_start if sub and sub.current_period_start else now
                        ),
                        current_period_end=until,
                        updated_at=now,
                    )
                )
        logger.info("entitlement_granted", user_id=user_id, days=days, until=until.isoformat())
        return until

    def set_period(self, user_id: str, until: Optional[datetime]) -> None:
        """Overwrite the period end without merging."""
        with self.store.entitlement_unit(user_id) as unit:
            if unit.user is None:
                raise NotFoundError("user not found")
            unit.set_premium_until(until)
            if unit.subscription is not None:
                unit.save_subscription(
                    replace(unit.subscription, current_period_end=until, updated_at=self.clock())
                )
        logger.info(
            "entitlement_period_set",
            user_id=user_id,
            until=until.isoformat() if until else None,
        )


__all__ = ["EntitlementLedger", "EntitlementStatus"]

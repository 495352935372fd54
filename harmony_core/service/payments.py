from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from harmony_core.config import Settings
from harmony_core.logging import get_logger
from harmony_core.service.entitlements import EntitlementLedger
from harmony_core.service.errors import (
    ConflictError,
    ForbiddenError,
    UnavailableError,
    ValidationError,
)
from harmony_core.service.gateway import YooKassaClient
from harmony_core.service.receipts import AppleReceiptVerifier, GooglePlayVerifier
from harmony_core.storage.errors import ConstraintViolation
from harmony_core.storage.models import (
    PaymentRecord,
    PaymentStatus,
    Subscription,
    SubscriptionStore,
    User,
    utcnow,
)

logger = get_logger(__name__)

PLAN_1_MONTH = "1month"
PLAN_6_MONTHS = "6months"
CURRENCY = "RUB"


@dataclass(frozen=True)
class PaymentPlan:
    id: str
    duration_days: int
    price: str
    description: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "duration_days": self.duration_days,
            "price": self.price,
            "currency": CURRENCY,
            "description": self.description,
        }


PLANS: Dict[str, PaymentPlan] = {
    PLAN_1_MONTH: PaymentPlan(PLAN_1_MONTH, 30, "299.00", "Harmony Premium на 1 месяц"),
    PLAN_6_MONTHS: PaymentPlan(PLAN_6_MONTHS, 180, "1490.00", "Harmony Premium на 6 месяцев"),
}


@dataclass
class PurchaseEligibility:
    allowed: bool
    message: Optional[str] = None
    warning: Optional[str] = None


@dataclass
class PaymentIntent:
    payment_id: str
    confirmation_url: str
    subscription_warning: Optional[str] = None


@dataclass
class ReconcileResult:
    granted: bool


def _is_active(sub: Optional[Subscription], now: datetime) -> bool:
    return bool(sub and sub.current_period_end is not None and sub.current_period_end > now)


def eligibility_for(
    sub: Optional[Subscription], plan_id: str, now: datetime
) -> PurchaseEligibility:
    """Upgrade/downgrade matrix evaluated against the current subscription."""
    if not _is_active(sub, now):
        return PurchaseEligibility(allowed=True)
    current = sub.product_id or ""
    if current == plan_id:
        return PurchaseEligibility(
            allowed=False,
            message="This plan is already active. Wait for it to end or switch to the 6 months plan.",
        )
    if current == PLAN_1_MONTH and plan_id == PLAN_6_MONTHS:
        return PurchaseEligibility(
            allowed=True,
            warning="Remaining days of the monthly plan will be added to the new 6 months period.",
        )
    if current == PLAN_6_MONTHS and plan_id == PLAN_1_MONTH:
        return PurchaseEligibility(
            allowed=False,
            message="The 6 months plan is active. Switching to monthly is possible after it ends.",
        )
    return PurchaseEligibility(allowed=True)


class PaymentReconciler:
    """Creates gateway payments and turns confirmed ones into entitlement grants.

    The payment row's ``granted_at`` is the idempotency fence: it is
    re-checked under the entitlement unit's row locks before any write, so
    concurrent webhook and return-page confirmations grant at most once.
    """

    def __init__(
        self,
        store,
        ledger: EntitlementLedger,
        settings: Settings,
        *,
        gateway: Optional[YooKassaClient] = None,
        apple: Optional[AppleReceiptVerifier] = None,
        google: Optional[GooglePlayVerifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.settings = settings
        self.gateway = gateway
        self.apple = apple
        self.google = google
        self.clock = clock

    def list_plans(self) -> List[PaymentPlan]:
        return list(PLANS.values())

    def _plan(self, plan_id: Optional[str]) -> PaymentPlan:
        plan = PLANS.get((plan_id or "").strip())
        if plan is None:
            raise ValidationError(
                "unknown plan, use 1month or 6months", detail={"plan_id": plan_id}
            )
        return plan

    def find_user(self, buyer_ref: Optional[str]) -> Optional[User]:
        """Resolve an account id or e-mail to an active user."""
        ref = (buyer_ref or "").strip().lower()
        if not ref:
            return None
        user = self.store.get_user(ref)
        if user and not user.is_deleted:
            return user
        return self.store.get_active_user_by_email(ref)

    def check_before_purchase(self, user_id: str, plan_id: str) -> PurchaseEligibility:
        return eligibility_for(self.store.get_subscription(user_id), plan_id, self.clock())

    async def create_intent(
        self,
        plan_id: str,
        buyer_ref: str,
        return_url: str,
        cancel_url: Optional[str] = None,
    ) -> PaymentIntent:
        if self.gateway is None:
            logger.warning("gateway_not_configured")
            raise UnavailableError("payment gateway not configured")
        plan = self._plan(plan_id)
        ref = (buyer_ref or "").strip()
        if not ref:
            raise ValidationError("email or account id is required")
        if not return_url:
            raise ValidationError("return_url is required")
        user = self.find_user(ref)
        if user is None:
            logger.warning("payment_buyer_not_found", plan_id=plan.id)
            raise ValidationError("account not found, check the email or account id")

        eligibility = self.check_before_purchase(user.id, plan.id)
        if not eligibility.allowed:
            logger.warning("payment_rejected_ineligible", user_id=user.id, plan_id=plan.id)
            raise ConflictError(eligibility.message or "purchase not allowed")

        created = await self.gateway.create_payment(
            amount=plan.price,
            currency=CURRENCY,
            description=plan.description,
            return_url=return_url,
            metadata={"planId": plan.id, "emailOrId": ref},
            idempotence_key=f"harmony-{plan.id}-{uuid.uuid4()}",
        )
        now = self.clock()
        try:
            self.store.create_payment(
                PaymentRecord(
                    id=created.id,
                    plan_id=plan.id,
                    email_or_id=ref,
                    status=PaymentStatus.PENDING,
                    created_at=now,
                    updated_at=now,
                )
            )
        except ConstraintViolation:
            # Gateway returned an id we already track; keep the existing row
            logger.warning("payment_record_exists", payment_id=created.id)
        logger.info("payment_created", payment_id=created.id, plan_id=plan.id, user_id=user.id)
        return PaymentIntent(
            payment_id=created.id,
            confirmation_url=created.confirmation_url,
            subscription_warning=eligibility.warning,
        )

    async def reconcile(self, payment_id: str) -> ReconcileResult:
        existing = self.store.get_payment(payment_id)
        if existing is None:
            logger.warning("payment_unknown", payment_id=payment_id)
            return ReconcileResult(granted=False)
        if existing.granted_at is not None:
            logger.info("payment_already_granted", payment_id=payment_id)
            return ReconcileResult(granted=True)
        if self.gateway is None:
            return ReconcileResult(granted=False)

        try:
            remote = await self.gateway.get_payment(payment_id)
        except UnavailableError:
            return ReconcileResult(granted=False)

        status = PaymentStatus.from_gateway(remote.status)
        if status is not PaymentStatus.SUCCEEDED:
            logger.info("payment_not_succeeded", payment_id=payment_id, status=status.value)
            self.store.update_payment_status(payment_id, status)
            return ReconcileResult(granted=False)

        metadata = remote.metadata or {}
        if not metadata.get("planId") or not metadata.get("emailOrId"):
            logger.warning("payment_metadata_fallback", payment_id=payment_id)
        plan = PLANS.get(metadata.get("planId") or existing.plan_id)
        user = self.find_user(metadata.get("emailOrId") or existing.email_or_id)
        if plan is None or user is None:
            logger.error(
                "payment_resolution_failed",
                payment_id=payment_id,
                plan_found=plan is not None,
                user_found=user is not None,
            )
            self.store.update_payment_status(payment_id, PaymentStatus.SUCCEEDED)
            return ReconcileResult(granted=False)

        now = self.clock()
        with self.store.entitlement_unit(user.id, payment_id=payment_id) as unit:
            if unit.payment is None:
                return ReconcileResult(granted=False)
            if unit.payment.granted_at is not None:
                return ReconcileResult(granted=True)
            sub = unit.subscription
            active = _is_active(sub, now)
            if active and sub.product_id == plan.id:
                logger.warning("payment_duplicate_plan", payment_id=payment_id, user_id=user.id)
                unit.update_payment(PaymentStatus.SUCCEEDED, user_id=user.id, granted_at=now)
                return ReconcileResult(granted=True)

            if plan.id == PLAN_6_MONTHS and active and sub.product_id == PLAN_1_MONTH:
                period_end = sub.current_period_end + timedelta(days=plan.duration_days)
                logger.info("payment_upgrade", user_id=user.id, period_end=period_end.isoformat())
            else:
                period_end = now + timedelta(days=plan.duration_days)

            unit.set_premium_until(period_end)
            unit.save_subscription(
                Subscription(
                    user_id=user.id,
                    product_id=plan.id,
                    store=SubscriptionStore.INTERNAL,
                    current_period_start=now,
                    current_period_end=period_end,
                    updated_at=now,
                )
            )
            unit.update_payment(PaymentStatus.SUCCEEDED, user_id=user.id, granted_at=now)
        logger.info("payment_granted", payment_id=payment_id, user_id=user.id, plan_id=plan.id)
        return ReconcileResult(granted=True)

    async def handle_webhook(self, body: Any) -> Optional[ReconcileResult]:
        """Reconcile on ``payment.succeeded`` notifications; ignore everything else."""
        if not isinstance(body, dict):
            return None
        obj = body.get("object") if isinstance(body.get("object"), dict) else {}
        payment_id = obj.get("id")
        if body.get("type") != "notification" or body.get("event") != "payment.succeeded":
            return None
        if not payment_id:
            return None
        return await self.reconcile(str(payment_id))

    async def confirm_return(self, payment_id: Optional[str]) -> ReconcileResult:
        trimmed = (payment_id or "").strip()
        if not trimmed:
            raise ValidationError("payment id is required")
        return await self.reconcile(trimmed)

    def grant_demo(self, buyer_ref: str, plan_id: str) -> Dict[str, Any]:
        if not self.settings.demo_payments_enabled:
            raise ForbiddenError("demo payments are disabled")
        plan = self._plan(plan_id)
        user = self.find_user(buyer_ref)
        if user is None:
            raise ValidationError("account not found, check the email or account id")
        until = self.ledger.grant(user.id, plan.duration_days)
        logger.info("payment_demo_granted", user_id=user.id, plan_id=plan.id)
        return {
            "success": True,
            "user_id": user.id,
            "plan_id": plan.id,
            "days": plan.duration_days,
            "premium_until": until,
        }

    async def verify_and_activate(
        self,
        user_id: str,
        receipt: str,
        store: SubscriptionStore,
        product_id: Optional[str] = None,
    ) -> datetime:
        if not receipt or not receipt.strip():
            raise ValidationError("receipt is required")
        if store is SubscriptionStore.APPLE:
            if self.apple is None:
                raise UnavailableError("Apple IAP not configured")
            verification = await self.apple.verify(receipt.strip())
        elif store is SubscriptionStore.GOOGLE:
            if self.google is None:
                raise UnavailableError("Google IAP not configured")
            if not product_id:
                raise ValidationError("product_id is required for Google purchases")
            verification = await self.google.verify(receipt.strip(), product_id)
        elif store is SubscriptionStore.INTERNAL:
            raise ValidationError("internal subscriptions have no store receipt")
        else:
            raise ValidationError(f"unsupported store {store!r}")

        now = self.clock()
        if verification.expires_at <= now:
            raise ValidationError("Subscription expired")
        days = math.ceil((verification.expires_at - now).total_seconds() / 86400)
        until = self.ledger.grant(
            user_id,
            days,
            store=store,
            product_id=product_id or verification.product_id,
        )
        logger.info(
            "receipt_activated", user_id=user_id, store=store.value, days=days
        )
        return until


__all__ = [
    "PLANS",
    "PaymentIntent",
    "PaymentPlan",
    "PaymentReconciler",
    "PurchaseEligibility",
    "ReconcileResult",
    "eligibility_for",
]

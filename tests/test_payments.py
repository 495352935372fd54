"""Payment reconciliation against a faked YooKassa API and store receipts."""

import asyncio
import json
import threading
from contextlib import contextmanager
from datetime import timedelta
from unittest.mock import patch

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from harmony_core.service.entitlements import EntitlementLedger
from harmony_core.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    UnavailableError,
    ValidationError,
)
from harmony_core.service.gateway import YooKassaClient
from harmony_core.service.payments import PaymentReconciler, eligibility_for
from harmony_core.service.receipts import AppleReceiptVerifier, GooglePlayVerifier
from harmony_core.storage.models import PaymentStatus, Subscription, SubscriptionStore


class FakeYooKassa:
    """Records requests and serves canned payment states."""

    def __init__(self):
        self.requests = []
        self.payments = {}
        self.counter = 0
        self.fail_get = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST" and request.url.path.endswith("/payments"):
            body = json.loads(request.content)
            self.counter += 1
            payment_id = f"pay-{self.counter}"
            self.payments[payment_id] = {
                "id": payment_id,
                "status": "pending",
                "metadata": body["metadata"],
            }
            return httpx.Response(
                200,
                json={
                    "id": payment_id,
                    "status": "pending",
                    "confirmation": {"confirmation_url": f"https://pay.example/{payment_id}"},
                },
            )
        if request.method == "GET":
            if self.fail_get:
                return httpx.Response(502, json={"type": "error"})
            payment_id = request.url.path.rsplit("/", 1)[-1]
            if payment_id not in self.payments:
                return httpx.Response(404, json={"type": "error"})
            return httpx.Response(200, json=self.payments[payment_id])
        return httpx.Response(405)

    def gets(self):
        return [r for r in self.requests if r.method == "GET"]


@pytest.fixture
def fake_gateway():
    return FakeYooKassa()


@pytest.fixture
def ledger(memory_store, clock):
    return EntitlementLedger(memory_store, clock=clock)


@pytest.fixture
def reconciler(memory_store, ledger, settings, clock, fake_gateway):
    gateway = YooKassaClient(
        settings.yookassa_shop_id,
        settings.yookassa_secret_key,
        transport=httpx.MockTransport(fake_gateway.handler),
    )
    return PaymentReconciler(memory_store, ledger, settings, gateway=gateway, clock=clock)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("buyer@example.com", name="Buyer")


def _set_subscription(store, user_id, product_id, end):
    store.subscriptions[user_id] = Subscription(
        user_id=user_id,
        product_id=product_id,
        store=SubscriptionStore.INTERNAL,
        current_period_start=end - timedelta(days=30),
        current_period_end=end,
    )


class TestEligibility:
    def test_matrix(self, clock, user):
        now = clock.now
        active_1m = Subscription(user.id, "1month", SubscriptionStore.INTERNAL, now, now + timedelta(days=3))
        active_6m = Subscription(user.id, "6months", SubscriptionStore.INTERNAL, now, now + timedelta(days=3))
        expired = Subscription(user.id, "6months", SubscriptionStore.INTERNAL, now, now - timedelta(days=1))

        assert eligibility_for(None, "1month", now).allowed
        assert eligibility_for(expired, "1month", now).allowed
        assert not eligibility_for(active_1m, "1month", now).allowed
        upgrade = eligibility_for(active_1m, "6months", now)
        assert upgrade.allowed and upgrade.warning
        downgrade = eligibility_for(active_6m, "1month", now)
        assert not downgrade.allowed and downgrade.message


class TestCreateIntent:
    async def test_creates_payment_and_record(self, reconciler, memory_store, fake_gateway, user):
        intent = await reconciler.create_intent(
            "1month", "  Buyer@Example.com ", "https://site/return", "https://site/cancel"
        )
        assert intent.confirmation_url == "https://pay.example/pay-1"
        record = memory_store.get_payment(intent.payment_id)
        assert record.status is PaymentStatus.PENDING
        assert record.plan_id == "1month"

        sent = fake_gateway.requests[0]
        body = json.loads(sent.content)
        assert body["amount"] == {"value": "299.00", "currency": "RUB"}
        assert body["capture"] is True
        assert body["confirmation"]["return_url"] == "https://site/return"
        assert body["metadata"] == {"planId": "1month", "emailOrId": "Buyer@Example.com"}
        assert sent.headers["Idempotence-Key"]
        assert sent.headers["Authorization"].startswith("Basic ")

    async def test_fresh_idempotence_key_per_call(self, reconciler, fake_gateway, user):
        await reconciler.create_intent("1month", user.id, "https://r")
        await reconciler.create_intent("1month", user.id, "https://r")
        keys = {r.headers["Idempotence-Key"] for r in fake_gateway.requests}
        assert len(keys) == 2

    async def test_rejects_unknown_plan_and_buyer(self, reconciler, user):
        with pytest.raises(ValidationError):
            await reconciler.create_intent("1year", user.id, "https://r")
        with pytest.raises(ValidationError):
            await reconciler.create_intent("1month", "nobody@example.com", "https://r")

    async def test_rejects_ineligible_purchase(self, reconciler, memory_store, user, clock):
        _set_subscription(memory_store, user.id, "6months", clock.now + timedelta(days=90))
        with pytest.raises(ConflictError):
            await reconciler.create_intent("1month", user.id, "https://r")

    async def test_upgrade_returns_warning(self, reconciler, memory_store, user, clock):
        _set_subscription(memory_store, user.id, "1month", clock.now + timedelta(days=10))
        intent = await reconciler.create_intent("6months", user.id, "https://r")
        assert intent.subscription_warning

    async def test_unavailable_without_gateway(self, memory_store, ledger, settings, user):
        reconciler = PaymentReconciler(memory_store, ledger, settings, gateway=None)
        with pytest.raises(UnavailableError):
            await reconciler.create_intent("1month", user.id, "https://r")

    async def test_gateway_unreachable(self, memory_store, ledger, settings, user):
        def boom(request):
            raise httpx.ConnectError("refused", request=request)

        gateway = YooKassaClient("1", "k", transport=httpx.MockTransport(boom))
        reconciler = PaymentReconciler(memory_store, ledger, settings, gateway=gateway)
        with pytest.raises(UnavailableError):
            await reconciler.create_intent("1month", user.id, "https://r")


class TestReconcile:
    async def test_grants_once(self, reconciler, memory_store, fake_gateway, user, clock):
        intent = await reconciler.create_intent("1month", user.id, "https://r")
        fake_gateway.payments[intent.payment_id]["status"] = "succeeded"

        first = await reconciler.reconcile(intent.payment_id)
        granted_at = memory_store.get_payment(intent.payment_id).granted_at
        clock.advance(minutes=1)
        second = await reconciler.reconcile(intent.payment_id)

        assert first.granted and second.granted
        record = memory_store.get_payment(intent.payment_id)
        assert record.granted_at == granted_at
        assert record.user_id == user.id
        assert record.status is PaymentStatus.SUCCEEDED
        sub = memory_store.get_subscription(user.id)
        assert sub.current_period_end == granted_at + timedelta(days=30)
        assert memory_store.get_user(user.id).premium_until == sub.current_period_end
        # Second call is answered from the fence, without asking the gateway
        assert len(fake_gateway.gets()) == 1

    def test_concurrent_deliveries_grant_once(self, reconciler, memory_store, fake_gateway, user, clock):
        intent = asyncio.run(reconciler.create_intent("1month", user.id, "https://r"))
        fake_gateway.payments[intent.payment_id]["status"] = "succeeded"
        results = []
        errors = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            try:
                results.append(asyncio.run(reconciler.reconcile(intent.payment_id)))
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert [r.granted for r in results] == [True] * 8
        record = memory_store.get_payment(intent.payment_id)
        assert record.granted_at == clock.now
        sub = memory_store.get_subscription(user.id)
        assert sub.current_period_end == clock.now + timedelta(days=30)
        assert memory_store.get_user(user.id).premium_until == sub.current_period_end

    async def test_pending_status_is_persisted(self, reconciler, memory_store, fake_gateway, user):
        intent = await reconciler.create_intent("1month", user.id, "https://r")
        fake_gateway.payments[intent.payment_id]["status"] = "waiting_for_capture"

        result = await reconciler.reconcile(intent.payment_id)
        assert result.granted is False
        record = memory_store.get_payment(intent.payment_id)
        assert record.status is PaymentStatus.WAITING_FOR_CAPTURE
        assert memory_store.get_subscription(user.id) is None

    async def test_gateway_failure_is_not_granted(self, reconciler, fake_gateway, user):
        intent = await reconciler.create_intent("1month", user.id, "https://r")
        fake_gateway.fail_get = True
        result = await reconciler.reconcile(intent.payment_id)
        assert result.granted is False

    async def test_unknown_payment(self, reconciler):
        result = await reconciler.reconcile("no-such-payment")
        assert result.granted is False

    async def test_upgrade_extends_from_current_end(self, reconciler, memory_store, fake_gateway, user, clock):
        prior_end = clock.now + timedelta(days=12)
        _set_subscription(memory_store, user.id, "1month", prior_end)
        intent = await reconciler.create_intent("6months", user.id, "https://r")
        fake_gateway.payments[intent.payment_id]["status"] = "succeeded"

        assert (await reconciler.reconcile(intent.payment_id)).granted
        sub = memory_store.get_subscription(user.id)
        assert sub.product_id == "6months"
        assert sub.current_period_end == prior_end + timedelta(days=180)

    async def test_duplicate_plan_short_circuits(self, reconciler, memory_store, fake_gateway, user, clock):
        intent = await reconciler.create_intent("1month", user.id, "https://r")
        end = clock.now + timedelta(days=20)
        _set_subscription(memory_store, user.id, "1month", end)
        fake_gateway.payments[intent.payment_id]["status"] = "succeeded"

        assert (await reconciler.reconcile(intent.payment_id)).granted
        assert memory_store.get_subscription(user.id).current_period_end == end
        assert memory_store.get_payment(intent.payment_id).granted_at == clock.now

    async def test_metadata_fallback_uses_stored_values(self, reconciler, memory_store, fake_gateway, user):
        intent = await reconciler.create_intent("1month", user.id, "https://r")
        fake_gateway.payments[intent.payment_id].update(status="succeeded", metadata={})
        with patch_logger() as logs:
            assert (await reconciler.reconcile(intent.payment_id)).granted
        assert "payment_metadata_fallback" in logs

    async def test_unresolvable_buyer_marks_succeeded_without_grant(self, reconciler, memory_store, fake_gateway, user, clock):
        intent = await reconciler.create_intent("1month", user.id, "https://r")
        memory_store.soft_delete_user(user.id, clock.now)
        fake_gateway.payments[intent.payment_id]["status"] = "succeeded"

        result = await reconciler.reconcile(intent.payment_id)
        assert result.granted is False
        record = memory_store.get_payment(intent.payment_id)
        assert record.status is PaymentStatus.SUCCEEDED
        assert record.granted_at is None


class TestWebhookAndReturn:
    async def test_webhook_only_reacts_to_succeeded(self, reconciler, fake_gateway, user):
        intent = await reconciler.create_intent("1month", user.id, "https://r")
        fake_gateway.payments[intent.payment_id]["status"] = "succeeded"

        ignored = await reconciler.handle_webhook(
            {"type": "notification", "event": "payment.canceled", "object": {"id": intent.payment_id}}
        )
        assert ignored is None
        assert await reconciler.handle_webhook({"type": "notification"}) is None
        assert await reconciler.handle_webhook("garbage") is None

        result = await reconciler.handle_webhook(
            {"type": "notification", "event": "payment.succeeded", "object": {"id": intent.payment_id}}
        )
        assert result.granted

    async def test_confirm_return_trims_and_validates(self, reconciler, fake_gateway, user):
        intent = await reconciler.create_intent("1month", user.id, "https://r")
        fake_gateway.payments[intent.payment_id]["status"] = "succeeded"
        with pytest.raises(ValidationError):
            await reconciler.confirm_return("   ")
        result = await reconciler.confirm_return(f"  {intent.payment_id}  ")
        assert result.granted


class TestDemoGrant:
    def test_disabled_by_default(self, reconciler, user):
        with pytest.raises(ForbiddenError):
            reconciler.grant_demo(user.id, "1month")

    def test_enabled_switch_merges(self, memory_store, ledger, settings, user, clock):
        enabled = settings.model_copy(update={"demo_payments_enabled": True})
        reconciler = PaymentReconciler(memory_store, ledger, enabled, clock=clock)
        reconciler.grant_demo("buyer@example.com", "1month")
        result = reconciler.grant_demo(user.id, "1month")
        assert result["premium_until"] == clock.now + timedelta(days=60)


def _apple_response(status, expires=None):
    body = {"status": status}
    if expires is not None:
        body["latest_receipt_info"] = [
            {"product_id": "premium.old", "expires_date_ms": str(int((expires - timedelta(days=40)).timestamp() * 1000))},
            {"product_id": "premium.month", "expires_date_ms": str(int(expires.timestamp() * 1000))},
        ]
    return body


class TestReceipts:
    async def test_apple_sandbox_retry_and_grant(self, memory_store, ledger, settings, user, clock):
        now = clock.now
        expires = now + timedelta(days=10, hours=1)
        calls = []

        def handler(request):
            calls.append(request.url.host)
            payload = json.loads(request.content)
            assert payload["password"] == "shared"
            if request.url.host == "buy.itunes.apple.com":
                return httpx.Response(200, json=_apple_response(21007))
            return httpx.Response(200, json=_apple_response(0, expires))

        apple = AppleReceiptVerifier("shared", transport=httpx.MockTransport(handler))
        reconciler = PaymentReconciler(memory_store, ledger, settings, apple=apple, clock=clock)
        until = await reconciler.verify_and_activate(user.id, "receipt-b64", SubscriptionStore.APPLE)

        assert calls == ["buy.itunes.apple.com", "sandbox.itunes.apple.com"]
        # 10 days and 1 hour round up to 11 whole days
        assert until == now + timedelta(days=11)
        sub = memory_store.get_subscription(user.id)
        assert sub.store is SubscriptionStore.APPLE
        assert sub.product_id == "premium.month"

    async def test_apple_invalid_receipt(self, memory_store, ledger, settings, user):
        apple = AppleReceiptVerifier(
            "shared", transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"status": 21003}))
        )
        reconciler = PaymentReconciler(memory_store, ledger, settings, apple=apple)
        with pytest.raises(AuthenticationError):
            await reconciler.verify_and_activate(user.id, "bad", SubscriptionStore.APPLE)

    async def test_apple_expired_receipt(self, memory_store, ledger, settings, user, clock):
        past = clock.now - timedelta(days=1)
        apple = AppleReceiptVerifier(
            "shared", transport=httpx.MockTransport(lambda r: httpx.Response(200, json=_apple_response(0, past)))
        )
        reconciler = PaymentReconciler(memory_store, ledger, settings, apple=apple, clock=clock)
        with pytest.raises(ValidationError):
            await reconciler.verify_and_activate(user.id, "old", SubscriptionStore.APPLE)

    async def test_internal_store_has_no_receipt(self, reconciler, user):
        with pytest.raises(ValidationError):
            await reconciler.verify_and_activate(user.id, "x", SubscriptionStore.INTERNAL)

    async def test_google_purchase_lookup(self, memory_store, ledger, settings, user, clock):
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode()
        credentials = {
            "client_email": "svc@project.iam.gserviceaccount.com",
            "private_key": pem,
            "token_uri": "https://oauth2.example/token",
        }
        expiry = clock.now + timedelta(days=29, hours=2)
        seen = []

        def handler(request):
            seen.append(request)
            if request.url.host == "oauth2.example":
                return httpx.Response(200, json={"access_token": "ya29.token", "expires_in": 3600})
            assert request.headers["Authorization"] == "Bearer ya29.token"
            assert "/applications/app.harmony/purchases/subscriptions/premium.monthly/tokens/tok-1" in request.url.path
            return httpx.Response(200, json={"expiryTimeMillis": str(int(expiry.timestamp() * 1000))})

        google = GooglePlayVerifier(credentials, "app.harmony", transport=httpx.MockTransport(handler))
        reconciler = PaymentReconciler(memory_store, ledger, settings, google=google, clock=clock)
        await reconciler.verify_and_activate(user.id, "tok-1", SubscriptionStore.GOOGLE, "premium.monthly")

        sub = memory_store.get_subscription(user.id)
        assert sub.store is SubscriptionStore.GOOGLE
        assert sub.product_id == "premium.monthly"
        assert sub.current_period_end == clock.now + timedelta(days=30)
        assert b"assertion=" in seen[0].content

    async def test_google_not_configured(self, memory_store, ledger, settings, user):
        google = GooglePlayVerifier(None, None)
        reconciler = PaymentReconciler(memory_store, ledger, settings, google=google)
        with pytest.raises(UnavailableError):
            await reconciler.verify_and_activate(user.id, "tok", SubscriptionStore.GOOGLE, "p")


@contextmanager
def patch_logger():
    """Collect event names logged by the payments module."""
    events = []
    with patch("harmony_core.service.payments.logger") as mock_logger:
        for level in ("info", "warning", "error"):
            getattr(mock_logger, level).side_effect = (
                lambda event, *args, **kwargs: events.append(event)
            )
        yield events

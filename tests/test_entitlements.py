from datetime import timedelta

import pytest

from harmony_core.service.entitlements import EntitlementLedger
from harmony_core.service.errors import NotFoundError, ValidationError
from harmony_core.storage.models import Subscription, SubscriptionStore


@pytest.fixture
def ledger(memory_store, clock):
    return EntitlementLedger(memory_store, clock=clock)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("listener@example.com", name="Listener")


class TestGrant:
    def test_two_grants_merge(self, ledger, user, clock):
        ledger.grant(user.id, 30)
        until = ledger.grant(user.id, 30)
        assert until == clock.now + timedelta(days=60)
        assert ledger.is_premium(user.id)

    def test_grant_after_expiry_starts_from_now(self, ledger, user, clock):
        ledger.grant(user.id, 1)
        clock.advance(days=5)
        until = ledger.grant(user.id, 10)
        assert until == clock.now + timedelta(days=10)

    def test_grant_extends_from_subscription_end(self, ledger, memory_store, user, clock):
        end = clock.now + timedelta(days=20)
        memory_store.subscriptions[user.id] = Subscription(
            user_id=user.id,
            product_id="6months",
            store=SubscriptionStore.INTERNAL,
            current_period_start=clock.now,
            current_period_end=end,
        )
        until = ledger.grant(user.id, 10, store=SubscriptionStore.APPLE)
        assert until == end + timedelta(days=10)
        sub = memory_store.get_subscription(user.id)
        assert sub.current_period_end == until
        assert sub.store is SubscriptionStore.APPLE
        assert sub.product_id == "6months"

    def test_grant_without_product_leaves_subscription_absent(self, ledger, memory_store, user):
        ledger.grant(user.id, 30)
        assert memory_store.get_subscription(user.id) is None

    def test_grant_with_product_creates_subscription(self, ledger, memory_store, user, clock):
        ledger.grant(user.id, 30, store=SubscriptionStore.GOOGLE, product_id="premium.monthly")
        sub = memory_store.get_subscription(user.id)
        assert sub.product_id == "premium.monthly"
        assert sub.current_period_start == clock.now

    def test_grant_rejects_unknown_user_and_bad_days(self, ledger, user):
        with pytest.raises(NotFoundError):
            ledger.grant("missing", 30)
        with pytest.raises(ValidationError):
            ledger.grant(user.id, 0)


class TestStatus:
    def test_status_without_entitlement(self, ledger, user):
        status = ledger.get_status(user.id)
        assert status.current_period_end is None
        assert status.is_premium is False

    def test_set_period_overwrites(self, ledger, user, clock):
        ledger.grant(user.id, 30)
        ledger.set_period(user.id, clock.now + timedelta(days=2))
        assert ledger.get_status(user.id).current_period_end == clock.now + timedelta(days=2)

    def test_expired_period_is_not_premium(self, ledger, user, clock):
        ledger.set_period(user.id, clock.now - timedelta(seconds=1))
        assert ledger.is_premium(user.id) is False

    def test_subscription_row_overrides_legacy_field(self, ledger, memory_store, user, clock):
        ledger.set_period(user.id, clock.now + timedelta(days=90))
        memory_store.subscriptions[user.id] = Subscription(
            user_id=user.id,
            product_id="1month",
            store=SubscriptionStore.INTERNAL,
            current_period_start=clock.now,
            current_period_end=clock.now + timedelta(days=5),
        )
        status = ledger.get_status(user.id)
        assert status.product_id == "1month"
        assert status.store is SubscriptionStore.INTERNAL
        assert status.current_period_end == clock.now + timedelta(days=5)

    def test_set_period_updates_existing_subscription(self, ledger, memory_store, user, clock):
        ledger.grant(user.id, 30, product_id="1month")
        ledger.set_period(user.id, clock.now + timedelta(days=7))
        assert memory_store.get_subscription(user.id).current_period_end == clock.now + timedelta(days=7)
        assert memory_store.get_user(user.id).premium_until == clock.now + timedelta(days=7)

    def test_grant_without_store_keeps_existing_store(self, ledger, memory_store, user, clock):
        ledger.grant(user.id, 30, store=SubscriptionStore.APPLE, product_id="premium.month")
        ledger.grant(user.id, 30)
        sub = memory_store.get_subscription(user.id)
        assert sub.store is SubscriptionStore.APPLE
        assert sub.product_id == "premium.month"
        assert sub.current_period_end == clock.now + timedelta(days=60)

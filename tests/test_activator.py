"""Tests for subscription activation."""

import asyncio
import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

from sqlalchemy import update

from subscription_payments.database import TransactionRepository, UserRepository
from subscription_payments.database.models import User, utcnow
from subscription_payments.money import AmountUnit
from subscription_payments.subscriptions.activator import (
    ActivationConflictError,
    SubscriptionActivator,
    compute_window,
)


async def make_transaction(db_session, user_id, plan_id, status="PAID", external_id="ext-1"):
    transaction = await TransactionRepository(db_session).create(
        provider="payme",
        user_id=user_id,
        plan_id=plan_id,
        amount=7777,
        amount_unit=AmountUnit.MINOR,
        external_id=external_id,
        status=status,
    )
    await db_session.commit()
    return transaction


@pytest.fixture
def activator(db_session, notifier, channel):
    return SubscriptionActivator(db_session, notifier=notifier, channel=channel, notification_timeout=0.2)


class TestComputeWindow:
    """Tests for the window arithmetic."""

    NOW = datetime(2026, 10, 18, 12, 0, 0)
    DURATION = timedelta(days=30)

    def test_first_subscription_starts_now(self):
        assert compute_window(None, None, self.DURATION, self.NOW) == (self.NOW, self.NOW + self.DURATION)

    def test_lapsed_window_restarts(self):
        start, end = compute_window(
            self.NOW - timedelta(days=40), self.NOW - timedelta(days=10), self.DURATION, self.NOW
        )
        assert (start, end) == (self.NOW, self.NOW + self.DURATION)

    def test_window_ending_exactly_now_restarts(self):
        assert compute_window(None, self.NOW, self.DURATION, self.NOW) == (self.NOW, self.NOW + self.DURATION)

    def test_running_window_is_extended(self):
        """Test that 10 remaining days are kept when renewing early."""
        current_start = self.NOW - timedelta(days=20)
        current_end = self.NOW + timedelta(days=10)

        start, end = compute_window(current_start, current_end, self.DURATION, self.NOW)

        assert start == current_start
        assert end == self.NOW + timedelta(days=40)

    def test_running_window_without_start(self):
        start, _ = compute_window(None, self.NOW + timedelta(days=1), self.DURATION, self.NOW)
        assert start == self.NOW


class TestActivate:
    """Tests for SubscriptionActivator.activate."""

    async def test_applies_once(self, activator, db_session, plan, user):
        transaction = await make_transaction(db_session, user.id, plan.id)
        transaction_id = transaction.id
        now = datetime(2026, 10, 18, 12, 0, 0)

        first = await activator.activate(transaction, now=now)
        again = await activator.activate(await TransactionRepository(db_session).get_by_id(transaction_id), now=now)

        assert first.applied is True
        assert first.subscription_end == now + timedelta(days=30)
        assert again.applied is False
        assert again.subscription_end == first.subscription_end

        grant = await UserRepository(db_session).get_grant_by_transaction(transaction_id)
        assert grant.period_start == now
        assert grant.period_end == now + timedelta(days=30)

    async def test_two_transactions_stack(self, activator, db_session, plan, premium_plan, user):
        """Test that two paid plans extend the window back to back."""
        now = datetime(2026, 10, 18, 12, 0, 0)
        first = await make_transaction(db_session, user.id, plan.id, external_id="ext-1")
        await activator.activate(first, now=now)
        second = await make_transaction(db_session, user.id, premium_plan.id, external_id="ext-2")

        result = await activator.activate(second, now=now)

        assert result.subscription_end == now + timedelta(days=390)
        assert await UserRepository(db_session).granted_plan_ids(user.id) == [plan.id, premium_plan.id]

    async def test_rejects_unpaid_transaction(self, activator, db_session, plan, user):
        transaction = await make_transaction(db_session, user.id, plan.id, status="PENDING")
        with pytest.raises(ValueError):
            await activator.activate(transaction)

    async def test_retries_when_user_changes(self, activator, db_session, plan, user, monkeypatch):
        """Test that a lost guarded update is retried against the fresh user row."""
        transaction = await make_transaction(db_session, user.id, plan.id)
        transaction_id = transaction.id
        real_update = activator.users.update_subscription_window
        calls = []

        async def flaky_update(**kwargs):
            calls.append(kwargs)
            if len(calls) == 1:
                return False
            return await real_update(**kwargs)

        monkeypatch.setattr(activator.users, "update_subscription_window", flaky_update)

        result = await activator.activate(transaction)

        assert result.applied is True
        assert len(calls) == 2
        assert await UserRepository(db_session).get_grant_by_transaction(transaction_id) is not None

    async def test_gives_up_after_max_attempts(self, activator, db_session, plan, user, monkeypatch):
        transaction = await make_transaction(db_session, user.id, plan.id)
        transaction_id = transaction.id
        monkeypatch.setattr(activator.users, "update_subscription_window", AsyncMock(return_value=False))

        with pytest.raises(ActivationConflictError):
            await activator.activate(transaction)

        assert await UserRepository(db_session).get_grant_by_transaction(transaction_id) is None
        refreshed = await UserRepository(db_session).get_by_id(user.id)
        assert refreshed.subscription_end is None


class TestFulfill:
    """Tests for SubscriptionActivator.fulfill side effects."""

    async def test_notifies_once(self, activator, db_session, plan, user, notifier, channel):
        transaction = await make_transaction(db_session, user.id, plan.id)
        transaction_id = transaction.id

        result = await activator.fulfill(transaction)
        await activator.fulfill(await TransactionRepository(db_session).get_by_id(transaction_id))

        assert result.applied is True
        assert notifier.payments == [
            {"user_id": user.id, "plan_id": plan.id, "subscription_end": result.subscription_end}
        ]
        assert channel.readmitted == []

    async def test_readmits_kicked_out_user(self, activator, db_session, plan, user, channel):
        await db_session.execute(
            update(User)
            .where(User.id == user.id)
            .values(subscription_end=utcnow() - timedelta(days=1), is_kicked_out=True)
        )
        await db_session.commit()
        transaction = await make_transaction(db_session, user.id, plan.id)

        result = await activator.fulfill(transaction)

        assert result.was_kicked_out is True
        assert channel.readmitted == [user.id]
        assert (await UserRepository(db_session).get_by_id(user.id)).is_kicked_out is False

    async def test_failing_notifier_does_not_undo_activation(self, db_session, plan, user, notifier):
        notifier.fail = True
        activator = SubscriptionActivator(db_session, notifier=notifier)
        transaction = await make_transaction(db_session, user.id, plan.id)

        result = await activator.fulfill(transaction)

        assert result.applied is True
        assert (await UserRepository(db_session).get_by_id(user.id)).is_active is True

    async def test_slow_notifier_times_out(self, db_session, plan, user):
        """Test that a hanging notifier is abandoned after the timeout."""

        class SlowNotifier:
            async def notify_payment_success(self, user, plan, subscription_end):
                await asyncio.sleep(5)

        activator = SubscriptionActivator(db_session, notifier=SlowNotifier(), notification_timeout=0.05)
        transaction = await make_transaction(db_session, user.id, plan.id)

        result = await asyncio.wait_for(activator.fulfill(transaction), timeout=2)

        assert result.applied is True

    async def test_activation_error_is_swallowed(self, activator, db_session, plan, user, notifier):
        transaction = await make_transaction(db_session, user.id, plan.id, status="PENDING")

        assert await activator.fulfill(transaction) is None
        assert notifier.payments == []

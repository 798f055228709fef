"""Tests for the subscription expiry sweep."""

from datetime import datetime, timedelta

from sqlalchemy import update

from subscription_payments.database import UserRepository
from subscription_payments.database.models import User
from subscription_payments.subscriptions.sweeper import SubscriptionSweeper

NOW = datetime(2026, 10, 18, 12, 0, 0)


async def make_user(db_session, telegram_id, end, is_active=True):
    user = await UserRepository(db_session).create(
        telegram_id=telegram_id,
        subscription_start=end - timedelta(days=30),
        subscription_end=end,
        is_active=is_active,
    )
    await db_session.commit()
    return user.id


async def renew(db_session, user_id):
    """Extend the user's window the way a concurrent payment would."""
    await db_session.execute(
        update(User)
        .where(User.id == user_id)
        .values(subscription_end=NOW + timedelta(days=30), is_active=True, is_kicked_out=False)
        .execution_options(synchronize_session=False)
    )
    await db_session.commit()


class RenewingChannel:
    """Channel double whose removal races with a renewal of the same user."""

    def __init__(self, session):
        self.session = session
        self.removed = []
        self.readmitted = []

    async def remove(self, user):
        await renew(self.session, user.id)
        self.removed.append(user.id)

    async def readmit(self, user):
        self.readmitted.append(user.id)


class TestSweep:
    """Tests for SubscriptionSweeper.sweep."""

    async def test_deactivates_and_removes_lapsed_users(self, db_session, channel, notifier):
        lapsed_id = await make_user(db_session, 1, NOW - timedelta(days=1))
        active_id = await make_user(db_session, 2, NOW + timedelta(days=10))
        sweeper = SubscriptionSweeper(db_session, channel=channel, notifier=notifier)

        report = await sweeper.sweep(now=NOW)

        assert report.to_dict() == {"deactivated": 1, "kicked_out": 1, "skipped": 0, "failed_removals": []}
        assert channel.removed == [lapsed_id]
        assert notifier.expired == [lapsed_id]

        users = UserRepository(db_session)
        lapsed = await users.get_by_id(lapsed_id)
        assert lapsed.is_active is False
        assert lapsed.is_kicked_out is True
        active = await users.get_by_id(active_id)
        assert active.is_active is True
        assert active.is_kicked_out is False

    async def test_removed_users_are_not_swept_again(self, db_session, channel):
        await make_user(db_session, 1, NOW - timedelta(days=1))
        sweeper = SubscriptionSweeper(db_session, channel=channel)
        await sweeper.sweep(now=NOW)

        report = await sweeper.sweep(now=NOW)

        assert report.deactivated == 0
        assert len(channel.removed) == 1

    async def test_failed_removal_is_retried_next_run(self, db_session, channel):
        """Test that a user whose removal failed stays eligible for the next sweep."""
        lapsed_id = await make_user(db_session, 1, NOW - timedelta(days=1))
        channel.fail_remove = True
        sweeper = SubscriptionSweeper(db_session, channel=channel)

        report = await sweeper.sweep(now=NOW)

        assert report.failed_removals == [lapsed_id]
        assert report.deactivated == 1
        assert report.kicked_out == 0
        lapsed = await UserRepository(db_session).get_by_id(lapsed_id)
        assert lapsed.is_active is False
        assert lapsed.is_kicked_out is False

        channel.fail_remove = False
        retry = await sweeper.sweep(now=NOW)

        assert retry.kicked_out == 1
        assert channel.removed == [lapsed_id]

    async def test_renewal_before_deactivation_is_left_alone(self, db_session, channel, notifier, monkeypatch):
        """Test that a user renewed after the sweep read them is neither deactivated nor removed."""
        lapsed_id = await make_user(db_session, 1, NOW - timedelta(days=1))
        sweeper = SubscriptionSweeper(db_session, channel=channel, notifier=notifier)
        list_lapsed = sweeper.users.list_lapsed

        async def list_then_renew(now):
            users = await list_lapsed(now)
            await renew(db_session, lapsed_id)
            return users

        monkeypatch.setattr(sweeper.users, "list_lapsed", list_then_renew)

        report = await sweeper.sweep(now=NOW)

        assert report.skipped == 1
        assert report.deactivated == 0
        assert channel.removed == []
        assert notifier.expired == []
        user = await UserRepository(db_session).get_by_id(lapsed_id)
        assert user.is_active is True
        assert user.is_kicked_out is False
        assert user.subscription_end == NOW + timedelta(days=30)

    async def test_renewal_during_removal_readmits(self, db_session, notifier):
        """Test that a user who paid while being removed is put back in the channel."""
        lapsed_id = await make_user(db_session, 1, NOW - timedelta(days=1))
        channel = RenewingChannel(db_session)
        sweeper = SubscriptionSweeper(db_session, channel=channel, notifier=notifier)

        report = await sweeper.sweep(now=NOW)

        assert report.skipped == 1
        assert report.deactivated == 0
        assert report.kicked_out == 0
        assert channel.removed == [lapsed_id]
        assert channel.readmitted == [lapsed_id]
        assert notifier.expired == []
        user = await UserRepository(db_session).get_by_id(lapsed_id)
        assert user.is_active is True
        assert user.is_kicked_out is False

    async def test_without_channel(self, db_session):
        lapsed_id = await make_user(db_session, 1, NOW - timedelta(days=1))

        report = await SubscriptionSweeper(db_session).sweep(now=NOW)

        assert report.kicked_out == 1
        assert (await UserRepository(db_session).get_by_id(lapsed_id)).is_kicked_out is True


class TestWarnExpiring:
    """Tests for SubscriptionSweeper.warn_expiring."""

    async def test_warns_users_ending_soon(self, db_session, notifier):
        soon_id = await make_user(db_session, 1, NOW + timedelta(days=2, hours=1))
        await make_user(db_session, 2, NOW + timedelta(days=5))
        await make_user(db_session, 3, NOW + timedelta(days=1), is_active=False)
        sweeper = SubscriptionSweeper(db_session, notifier=notifier)

        notified = await sweeper.warn_expiring(within_days=3, now=NOW)

        assert notified == 1
        assert notifier.expiring == [{"user_id": soon_id, "days_left": 2}]

    async def test_without_notifier(self, db_session):
        await make_user(db_session, 1, NOW + timedelta(days=1))
        assert await SubscriptionSweeper(db_session).warn_expiring(now=NOW) == 0


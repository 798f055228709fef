"""Concurrent gateway callbacks against a file-backed database.

Each call gets its own session and therefore its own connection and transaction,
as it does behind the web server.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from subscription_payments.database import (
    Base,
    PlanRepository,
    SubscriptionGrant,
    Transaction,
    UserRepository,
    create_async_engine,
    get_async_session_factory,
)
from subscription_payments.gateways.click import ClickService
from subscription_payments.gateways.payme import PaymeService
from subscription_payments.subscriptions.activator import SubscriptionActivator

PAYME_ID = "63f1a2b3c4d5e6f708091a2b"


@pytest.fixture
async def file_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def account(file_engine):
    """(plan_id, user_id) for a 7777-tiyin, 30-day plan and a fresh user."""
    async with get_async_session_factory(file_engine)() as session:
        plan = await PlanRepository(session).create(name="Basic", price=7777, duration_days=30)
        user = await UserRepository(session).create(telegram_id=100200300)
        await session.commit()
        return plan.id, user.id


async def payme_call(engine, settings, notifier, method, params):
    async with get_async_session_factory(engine)() as session:
        activator = SubscriptionActivator(session, notifier=notifier, notification_timeout=0.5)
        service = PaymeService(session, settings, activator=activator)
        return await service.handle({"method": method, "params": params, "id": 1})


async def click_call(engine, settings, notifier, payload):
    async with get_async_session_factory(engine)() as session:
        activator = SubscriptionActivator(session, notifier=notifier, notification_timeout=0.5)
        return await ClickService(session, settings, activator=activator).handle(payload)


async def count(engine, model):
    async with get_async_session_factory(engine)() as session:
        result = await session.execute(select(func.count()).select_from(model))
        return result.scalar_one()


async def load_user(engine, user_id):
    async with get_async_session_factory(engine)() as session:
        return await UserRepository(session).get_by_id(user_id)


def create_params(plan_id, user_id, payme_id=PAYME_ID):
    return {
        "id": payme_id,
        "time": 1760000000000,
        "amount": 7777,
        "account": {"plan_id": plan_id, "user_id": user_id},
    }


class TestPaymeRaces:
    """Tests for Payme callbacks that arrive at the same time."""

    async def test_concurrent_perform_extends_once(self, file_engine, account, payme_settings, notifier):
        """Test that simultaneous Performs for one id grant a single period and notify once."""
        plan_id, user_id = account
        created = await payme_call(
            file_engine, payme_settings, notifier, "CreateTransaction", create_params(plan_id, user_id)
        )
        assert "result" in created, created

        responses = await asyncio.gather(
            *[
                payme_call(file_engine, payme_settings, notifier, "PerformTransaction", {"id": PAYME_ID})
                for _ in range(4)
            ]
        )

        assert all("result" in response for response in responses), responses
        assert len({response["result"]["perform_time"] for response in responses}) == 1
        assert {response["result"]["state"] for response in responses} == {2}
        assert await count(file_engine, SubscriptionGrant) == 1
        assert len(notifier.payments) == 1

        user = await load_user(file_engine, user_id)
        assert user.subscription_end - user.subscription_start == timedelta(days=30)
        end = user.subscription_end

        replay = await payme_call(file_engine, payme_settings, notifier, "PerformTransaction", {"id": PAYME_ID})

        assert replay["result"]["perform_time"] == responses[0]["result"]["perform_time"]
        assert (await load_user(file_engine, user_id)).subscription_end == end
        assert await count(file_engine, SubscriptionGrant) == 1
        assert len(notifier.payments) == 1

    async def test_concurrent_create_for_same_pair(self, file_engine, account, payme_settings, notifier):
        """Test that two Payme ids racing for one (user, plan) leave a single pending transaction."""
        plan_id, user_id = account

        responses = await asyncio.gather(
            payme_call(
                file_engine, payme_settings, notifier, "CreateTransaction",
                create_params(plan_id, user_id, payme_id="payme-a"),
            ),
            payme_call(
                file_engine, payme_settings, notifier, "CreateTransaction",
                create_params(plan_id, user_id, payme_id="payme-b"),
            ),
        )

        created = [response for response in responses if "result" in response]
        rejected = [response for response in responses if "error" in response]
        assert len(created) == 1
        assert len(rejected) == 1
        assert rejected[0]["error"]["code"] == -31099
        assert await count(file_engine, Transaction) == 1

    async def test_perform_racing_cancel(self, file_engine, account, payme_settings, notifier):
        """Test that Perform and Cancel racing on one id settle on a single consistent outcome."""
        plan_id, user_id = account
        await payme_call(file_engine, payme_settings, notifier, "CreateTransaction", create_params(plan_id, user_id))

        performed, canceled = await asyncio.gather(
            payme_call(file_engine, payme_settings, notifier, "PerformTransaction", {"id": PAYME_ID}),
            payme_call(file_engine, payme_settings, notifier, "CancelTransaction", {"id": PAYME_ID, "reason": 5}),
        )

        assert "result" in canceled, canceled
        checked = await payme_call(file_engine, payme_settings, notifier, "CheckTransaction", {"id": PAYME_ID})
        state = checked["result"]["state"]
        grants = await count(file_engine, SubscriptionGrant)

        assert canceled["result"]["state"] == state
        if state == -1:
            # Cancel won while the transaction was still pending
            assert performed["error"]["code"] == -31008
            assert grants == 0
        else:
            assert state == -2
            assert "result" in performed, performed
            assert grants <= 1
        assert len(notifier.payments) == grants


class TestClickRaces:
    """Tests for Click callbacks that arrive at the same time."""

    async def test_concurrent_complete_confirms_once(
        self, file_engine, account, click_settings, click_payload, notifier
    ):
        """Test that simultaneous Completes for one prepare id pay and notify once."""
        plan_id, user_id = account
        prepared = await click_call(file_engine, click_settings, notifier, click_payload(plan_id, user_id, "77.77"))
        assert prepared["error"] == 0, prepared
        payload = click_payload(
            plan_id, user_id, "77.77", action=1, merchant_prepare_id=prepared["merchant_prepare_id"]
        )

        responses = await asyncio.gather(
            *[click_call(file_engine, click_settings, notifier, dict(payload)) for _ in range(3)]
        )

        errors = sorted(response["error"] for response in responses)
        assert errors == [-4, -4, 0]
        assert await count(file_engine, SubscriptionGrant) == 1
        assert len(notifier.payments) == 1
        user = await load_user(file_engine, user_id)
        assert user.subscription_end - user.subscription_start == timedelta(days=30)

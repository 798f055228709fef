"""Shared test fixtures and configuration."""

import os
import pytest
from typing import Dict, Any, List, Optional

# Set up test environment variables before importing modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from subscription_payments.auth import click_sign_string
from subscription_payments.config import ClickSettings, PaymeSettings, Settings
from subscription_payments.database import (
    Base,
    PlanRepository,
    UserRepository,
    create_async_engine,
    get_async_session_factory,
)

PAYME_PASSWORD = "payme_test_key_12345"
PAYME_TEST_PASSWORD = "payme_sandbox_key_67890"
CLICK_SECRET = "click_test_secret"
CLICK_SERVICE_ID = 4242


class RecordingNotifier:
    """Notifier double that records every call."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.payments: List[Dict[str, Any]] = []
        self.expiring: List[Dict[str, Any]] = []
        self.expired: List[str] = []

    async def notify_payment_success(self, user, plan, subscription_end):
        if self.fail:
            raise RuntimeError("bot is down")
        self.payments.append({"user_id": user.id, "plan_id": plan.id, "subscription_end": subscription_end})

    async def notify_subscription_expiring(self, user, days_left):
        self.expiring.append({"user_id": user.id, "days_left": days_left})

    async def notify_subscription_expired(self, user):
        self.expired.append(user.id)


class RecordingChannel:
    """Channel membership double that records every call."""

    def __init__(self, fail_remove: bool = False):
        self.fail_remove = fail_remove
        self.readmitted: List[str] = []
        self.removed: List[str] = []

    async def readmit(self, user):
        self.readmitted.append(user.id)

    async def remove(self, user):
        if self.fail_remove:
            raise RuntimeError("channel API unavailable")
        self.removed.append(user.id)


@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine):
    """Create a database session for testing."""
    session_factory = get_async_session_factory(db_engine)
    async with session_factory() as session:
        yield session


@pytest.fixture
def payme_settings() -> PaymeSettings:
    return PaymeSettings(
        merchant_id="5f0c1e2d3a4b5c6d7e8f9a0b",
        password=PAYME_PASSWORD,
        test_password=PAYME_TEST_PASSWORD,
    )


@pytest.fixture
def click_settings() -> ClickSettings:
    return ClickSettings(
        service_id=CLICK_SERVICE_ID,
        merchant_id="11111",
        merchant_user_id="22222",
        secret_key=CLICK_SECRET,
    )


@pytest.fixture
def settings(payme_settings, click_settings) -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        notification_timeout_seconds=0.5,
        payme=payme_settings,
        click=click_settings,
    )


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
async def plan(db_session):
    """The 7777-tiyin, 30-day plan, detached so session rollbacks never expire it."""
    plan = await PlanRepository(db_session).create(name="Basic", price=7777, duration_days=30)
    await db_session.commit()
    db_session.expunge(plan)
    return plan


@pytest.fixture
async def premium_plan(db_session):
    plan = await PlanRepository(db_session).create(name="Premium", price=15000, duration_days=360)
    await db_session.commit()
    db_session.expunge(plan)
    return plan


@pytest.fixture
async def user(db_session):
    user = await UserRepository(db_session).create(telegram_id=100200300, username="subscriber")
    await db_session.commit()
    db_session.expunge(user)
    return user


@pytest.fixture
def click_payload(click_settings):
    """Factory for signed Click callback bodies, with every value as form text."""

    def build(
        plan_id: str,
        user_id: str,
        amount: str,
        action: int = 0,
        click_trans_id: int = 5001,
        merchant_prepare_id: Optional[int] = None,
        error: int = 0,
        sign_time: str = "2026-10-18 12:00:00",
        secret_key: Optional[str] = None,
    ) -> Dict[str, str]:
        payload = {
            "click_trans_id": str(click_trans_id),
            "service_id": str(click_settings.service_id),
            "click_paydoc_id": "777001",
            "merchant_trans_id": plan_id,
            "param2": user_id,
            "amount": amount,
            "action": str(action),
            "error": str(error),
            "error_note": "Success" if error == 0 else "Payment failed",
            "sign_time": sign_time,
        }
        if merchant_prepare_id is not None:
            payload["merchant_prepare_id"] = str(merchant_prepare_id)
        payload["sign_string"] = click_sign_string(
            click_trans_id=payload["click_trans_id"],
            service_id=payload["service_id"],
            secret_key=secret_key if secret_key is not None else click_settings.secret_key,
            merchant_trans_id=plan_id,
            amount=amount,
            action=payload["action"],
            sign_time=sign_time,
            merchant_prepare_id=payload.get("merchant_prepare_id") if action == 1 else None,
        )
        return payload

    return build

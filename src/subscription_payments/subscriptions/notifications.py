"""Outbound side-effect interfaces.

The ledger never talks to the chat bot directly. Callers inject objects that satisfy
these protocols. The default implementations only log, which is what a deployment
without a bot gets.
"""

import logging
from datetime import datetime
from typing import Protocol, runtime_checkable

from ..database.models import Plan, User

logger = logging.getLogger(__name__)


@runtime_checkable
class PaymentNotifier(Protocol):
    """Tells a user that their payment went through."""

    async def notify_payment_success(self, user: User, plan: Plan, subscription_end: datetime) -> None:
        ...


@runtime_checkable
class ExpiryNotifier(Protocol):
    """Tells a user that their subscription is about to end, or has ended."""

    async def notify_subscription_expiring(self, user: User, days_left: int) -> None:
        ...

    async def notify_subscription_expired(self, user: User) -> None:
        ...


@runtime_checkable
class ChannelMembership(Protocol):
    """Controls a user's membership of the paid distribution channel."""

    async def readmit(self, user: User) -> None:
        ...

    async def remove(self, user: User) -> None:
        ...


class LoggingNotifier:
    """Notifier that records notifications in the application log."""

    async def notify_payment_success(self, user: User, plan: Plan, subscription_end: datetime) -> None:
        logger.info(
            f"Payment success for user {user.id} (telegram_id={user.telegram_id}): "
            f"plan {plan.name}, subscription active until {subscription_end.isoformat()}"
        )

    async def notify_subscription_expiring(self, user: User, days_left: int) -> None:
        logger.info(f"Subscription of user {user.id} expires in {days_left} day(s)")

    async def notify_subscription_expired(self, user: User) -> None:
        logger.info(f"Subscription of user {user.id} expired")


class LoggingChannelMembership:
    """Channel membership stand-in that only logs the requested change."""

    async def readmit(self, user: User) -> None:
        logger.info(f"Re-admitting user {user.id} to the channel")

    async def remove(self, user: User) -> None:
        logger.info(f"Removing user {user.id} from the channel")

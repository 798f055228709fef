"""Subscription activation for paid transactions.

A paid transaction extends the user's subscription window exactly once. The
``subscription_grants`` row keyed by transaction id is the idempotency record. It is
written in the same database transaction as the user update, so a retried
Perform/Complete, or one replayed after a crash, can never extend twice.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import Plan, Transaction, TransactionStatus, User, utcnow
from ..database.repository import PlanRepository, UserRepository
from .notifications import ChannelMembership, PaymentNotifier

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


class ActivationConflictError(RuntimeError):
    """The user row kept changing underneath the activation."""


@dataclass
class ActivationResult:
    """Outcome of applying a paid transaction to a subscription."""
    applied: bool
    user: User
    plan: Plan
    subscription_end: Optional[datetime]
    was_kicked_out: bool = False


def compute_window(
    current_start: Optional[datetime],
    current_end: Optional[datetime],
    duration: timedelta,
    now: datetime,
) -> Tuple[datetime, datetime]:
    """Return the (start, end) of the subscription window after adding ``duration``.

    A lapsed or missing window restarts at ``now``. A window that is still running
    is extended from its current end, so early renewal never shortens access.
    """
    if current_end is None or current_end <= now:
        return now, now + duration
    return current_start or now, current_end + duration


class SubscriptionActivator:
    """Applies paid transactions to subscriptions and dispatches the follow-up side effects."""

    def __init__(
        self,
        session: AsyncSession,
        notifier: Optional[PaymentNotifier] = None,
        channel: Optional[ChannelMembership] = None,
        notification_timeout: float = 5.0,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        """Initialize the activator.

        Args:
            session: Async database session, shared with the calling gateway service.
            notifier: Optional payment notifier.
            channel: Optional channel membership controller used to re-admit removed users.
            notification_timeout: Upper bound in seconds for each side-effect call.
            max_attempts: Retries when the user row changes concurrently.
        """
        self.session = session
        self.notifier = notifier
        self.channel = channel
        self.notification_timeout = notification_timeout
        self.max_attempts = max_attempts
        self.users = UserRepository(session)
        self.plans = PlanRepository(session)

    async def activate(
        self,
        transaction: Transaction,
        now: Optional[datetime] = None,
    ) -> ActivationResult:
        """Extend the subscription for a paid transaction, once.

        The caller must have committed the Paid transition before calling, because
        this method commits or rolls back the session.

        Args:
            transaction: Transaction in PAID status.
            now: Override for the current time.

        Returns:
            ActivationResult; ``applied`` is False if this transaction was already granted.

        Raises:
            ValueError: If the transaction is not paid or its user/plan is missing.
            ActivationConflictError: If the user row changed on every attempt.
        """
        transaction_id = transaction.id
        user_id = transaction.user_id
        plan_id = transaction.plan_id
        if transaction.status != TransactionStatus.PAID.value:
            raise ValueError(f"Transaction {transaction_id} is {transaction.status}, not PAID")

        for attempt in range(1, self.max_attempts + 1):
            user = await self.users.get_by_id(user_id)
            plan = await self.plans.get_by_id(plan_id)
            if user is None or plan is None:
                raise ValueError(f"User {user_id} or plan {plan_id} not found for transaction {transaction_id}")

            if await self.users.get_grant_by_transaction(transaction_id) is not None:
                logger.info(f"Transaction {transaction_id} already applied to user {user_id}")
                return ActivationResult(
                    applied=False,
                    user=user,
                    plan=plan,
                    subscription_end=user.subscription_end,
                )

            current = now or utcnow()
            observed_end = user.subscription_end
            was_kicked_out = user.is_kicked_out
            start, end = compute_window(user.subscription_start, observed_end, plan.duration, current)

            try:
                await self.users.add_grant(
                    user_id=user_id,
                    plan_id=plan_id,
                    transaction_id=transaction_id,
                    period_start=end - plan.duration,
                    period_end=end,
                )
            except IntegrityError:
                await self.session.rollback()
                logger.info(f"Transaction {transaction_id} was applied concurrently")
                user = await self.users.get_by_id(user_id)
                plan = await self.plans.get_by_id(plan_id)
                return ActivationResult(
                    applied=False,
                    user=user,
                    plan=plan,
                    subscription_end=user.subscription_end if user else None,
                )

            updated = await self.users.update_subscription_window(
                user_id=user_id,
                expected_end=observed_end,
                expected_kicked_out=was_kicked_out,
                start=start,
                end=end,
            )
            if not updated:
                await self.session.rollback()
                logger.warning(
                    f"User {user_id} changed during activation of {transaction_id} "
                    f"(attempt {attempt}/{self.max_attempts})"
                )
                continue

            await self.session.commit()
            user = await self.users.get_by_id(user_id)
            logger.info(
                f"Subscription of user {user_id} extended to {end.isoformat()} "
                f"by transaction {transaction_id}"
            )
            return ActivationResult(
                applied=True,
                user=user,
                plan=plan,
                subscription_end=end,
                was_kicked_out=was_kicked_out,
            )

        raise ActivationConflictError(
            f"Could not activate transaction {transaction_id} after {self.max_attempts} attempts"
        )

    async def fulfill(self, transaction: Transaction) -> Optional[ActivationResult]:
        """Activate the subscription and notify the user, best-effort.

        Failures are logged and swallowed. The paid transaction is already durable,
        and a later replay of the gateway call retries the activation.
        """
        transaction_id = transaction.id
        try:
            result = await self.activate(transaction)
        except Exception:
            logger.exception(f"Subscription activation failed for transaction {transaction_id}")
            await self.session.rollback()
            return None

        if result.applied:
            await self._dispatch(result)
        return result

    async def _dispatch(self, result: ActivationResult) -> None:
        user_id = result.user.id
        if result.was_kicked_out and self.channel is not None:
            await self._run_side_effect(
                self.channel.readmit(result.user),
                f"Channel re-admission of user {user_id}",
            )
        if self.notifier is not None:
            await self._run_side_effect(
                self.notifier.notify_payment_success(result.user, result.plan, result.subscription_end),
                f"Payment notification for user {user_id}",
            )

    async def _run_side_effect(self, call: Awaitable[None], description: str) -> None:
        try:
            await asyncio.wait_for(call, timeout=self.notification_timeout)
        except Exception:
            logger.exception(f"{description} failed")

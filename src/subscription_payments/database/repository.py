"""Repository layer for ledger persistence operations.

All state changes on existing rows are conditional ``UPDATE ... WHERE`` statements.
A caller learns whether its transition won from the boolean return value, and it
re-reads the row when it lost. Reads always use ``populate_existing`` so a
re-read reflects the committed row rather than the identity map.
"""

import logging
from datetime import datetime
from typing import Optional, Any, List, Sequence, Tuple

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from ..money import AmountUnit
from .models import (
    Plan,
    User,
    SubscriptionGrant,
    Transaction,
    TransactionStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


def _fresh(statement):
    return statement.execution_options(populate_existing=True)


class PlanRepository:
    """Repository for Plan CRUD operations."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(self, name: str, price: int, duration_days: int) -> Plan:
        """Create a new plan.

        Args:
            name: Display name, unique.
            price: Price in minor units.
            duration_days: Length of the subscription window the plan grants.

        Returns:
            Created Plan instance.
        """
        if price <= 0:
            raise ValueError(f"Plan price must be positive, got {price}")
        if duration_days <= 0:
            raise ValueError(f"Plan duration must be positive, got {duration_days}")

        plan = Plan(name=name, price=price, duration_days=duration_days)
        self.session.add(plan)
        await self.session.flush()

        logger.info(f"Created plan {plan.id} ({name}, price={price}, days={duration_days})")
        return plan

    async def get_by_id(self, plan_id: str) -> Optional[Plan]:
        result = await self.session.execute(
            _fresh(select(Plan).where(Plan.id == plan_id))
        )
        return result.scalar_one_or_none()

    async def get_by_name(self, name: str) -> Optional[Plan]:
        result = await self.session.execute(
            _fresh(select(Plan).where(Plan.name == name))
        )
        return result.scalar_one_or_none()

    async def ensure(self, name: str, price: int, duration_days: int) -> Tuple[Plan, bool]:
        """Return the plan with this name, creating it if missing.

        Returns:
            Tuple of (plan, created).
        """
        existing = await self.get_by_name(name)
        if existing is not None:
            return existing, False
        return await self.create(name=name, price=price, duration_days=duration_days), True

    async def list_all(self) -> List[Plan]:
        result = await self.session.execute(select(Plan).order_by(Plan.price))
        return list(result.scalars().all())


class UserRepository:
    """Repository for User and SubscriptionGrant operations."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        telegram_id: Optional[int] = None,
        username: Optional[str] = None,
        subscription_start: Optional[datetime] = None,
        subscription_end: Optional[datetime] = None,
        is_active: bool = False,
    ) -> User:
        """Create a new user record."""
        user = User(
            telegram_id=telegram_id,
            username=username,
            subscription_start=subscription_start,
            subscription_end=subscription_end,
            is_active=is_active,
            is_kicked_out=False,
        )
        self.session.add(user)
        await self.session.flush()

        logger.info(f"Created user {user.id}")
        return user

    async def get_by_id(self, user_id: str) -> Optional[User]:
        result = await self.session.execute(
            _fresh(select(User).where(User.id == user_id))
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _end_matches(expected_end: Optional[datetime]):
        if expected_end is None:
            return User.subscription_end.is_(None)
        return User.subscription_end == expected_end

    async def update_subscription_window(
        self,
        user_id: str,
        expected_end: Optional[datetime],
        expected_kicked_out: bool,
        start: datetime,
        end: datetime,
    ) -> bool:
        """Set a new subscription window if the user still has the observed one.

        Args:
            user_id: User to update.
            expected_end: subscription_end the caller computed the new window from.
            expected_kicked_out: is_kicked_out value the caller observed.
            start: New subscription start.
            end: New subscription end.

        Returns:
            True if the row was updated, False if it changed concurrently.
        """
        result = await self.session.execute(
            update(User)
            .where(
                and_(
                    User.id == user_id,
                    self._end_matches(expected_end),
                    User.is_kicked_out == expected_kicked_out,
                )
            )
            .values(
                subscription_start=start,
                subscription_end=end,
                is_active=True,
                is_kicked_out=False,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def deactivate(self, user_id: str, expected_end: Optional[datetime]) -> bool:
        """Deactivate a lapsed user unless the subscription was extended meanwhile."""
        result = await self.session.execute(
            update(User)
            .where(and_(User.id == user_id, self._end_matches(expected_end)))
            .values(is_active=False, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_kicked_out(self, user_id: str, expected_end: Optional[datetime]) -> bool:
        """Record a channel removal, unless the user renewed after being deactivated."""
        result = await self.session.execute(
            update(User)
            .where(
                and_(
                    User.id == user_id,
                    self._end_matches(expected_end),
                    User.is_active.is_(False),
                    User.is_kicked_out.is_(False),
                )
            )
            .values(is_kicked_out=True, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_lapsed(self, now: datetime, limit: int = 500) -> List[User]:
        """Users whose window has ended and who have not been removed yet."""
        result = await self.session.execute(
            _fresh(
                select(User)
                .where(
                    and_(
                        User.subscription_end.is_not(None),
                        User.subscription_end < now,
                        User.is_kicked_out.is_(False),
                    )
                )
                .order_by(User.subscription_end)
                .limit(limit)
            )
        )
        return list(result.scalars().all())

    async def list_expiring(self, now: datetime, until: datetime) -> List[User]:
        """Active users whose window ends between ``now`` and ``until``."""
        result = await self.session.execute(
            _fresh(
                select(User)
                .where(
                    and_(
                        User.is_active.is_(True),
                        User.subscription_end >= now,
                        User.subscription_end <= until,
                    )
                )
                .order_by(User.subscription_end)
            )
        )
        return list(result.scalars().all())

    async def add_grant(
        self,
        user_id: str,
        plan_id: str,
        transaction_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> SubscriptionGrant:
        """Append a plan to the user's history.

        Raises:
            sqlalchemy.exc.IntegrityError: If the transaction was already granted.
        """
        grant = SubscriptionGrant(
            user_id=user_id,
            plan_id=plan_id,
            transaction_id=transaction_id,
            period_start=period_start,
            period_end=period_end,
        )
        self.session.add(grant)
        await self.session.flush()
        return grant

    async def get_grant_by_transaction(self, transaction_id: str) -> Optional[SubscriptionGrant]:
        result = await self.session.execute(
            _fresh(select(SubscriptionGrant).where(SubscriptionGrant.transaction_id == transaction_id))
        )
        return result.scalar_one_or_none()

    async def granted_plan_ids(self, user_id: str) -> List[str]:
        """Plans ever granted to the user, oldest first."""
        result = await self.session.execute(
            select(SubscriptionGrant.plan_id)
            .where(SubscriptionGrant.user_id == user_id)
            .order_by(SubscriptionGrant.granted_at)
        )
        return list(result.scalars().all())


class TransactionRepository:
    """Repository for Transaction operations."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        provider: str,
        user_id: str,
        plan_id: str,
        amount: int,
        amount_unit: AmountUnit,
        external_id: Optional[str] = None,
        state: Optional[int] = None,
        prepare_id: Optional[int] = None,
        provider_time: Optional[int] = None,
        sign_time: Optional[str] = None,
        status: str = TransactionStatus.PENDING.value,
    ) -> Transaction:
        """Insert a new transaction.

        Raises:
            sqlalchemy.exc.IntegrityError: If a unique ledger invariant would be violated.
        """
        transaction = Transaction(
            provider=provider,
            external_id=external_id,
            user_id=user_id,
            plan_id=plan_id,
            amount=amount,
            amount_unit=AmountUnit(amount_unit).value,
            status=status,
            state=state,
            prepare_id=prepare_id,
            provider_time=provider_time,
            sign_time=sign_time,
        )
        self.session.add(transaction)
        await self.session.flush()

        logger.info(
            f"Created {provider} transaction {transaction.id} "
            f"(external_id={external_id}, user={user_id}, plan={plan_id})"
        )
        return transaction

    async def get_by_id(self, transaction_id: str) -> Optional[Transaction]:
        result = await self.session.execute(
            _fresh(select(Transaction).where(Transaction.id == transaction_id))
        )
        return result.scalar_one_or_none()

    async def get_by_external_id(self, provider: str, external_id: str) -> Optional[Transaction]:
        result = await self.session.execute(
            _fresh(
                select(Transaction).where(
                    and_(
                        Transaction.provider == provider,
                        Transaction.external_id == external_id,
                    )
                )
            )
        )
        return result.scalar_one_or_none()

    async def get_by_prepare_id(
        self,
        provider: str,
        prepare_id: int,
        user_id: str,
        plan_id: str,
    ) -> Optional[Transaction]:
        result = await self.session.execute(
            _fresh(
                select(Transaction).where(
                    and_(
                        Transaction.provider == provider,
                        Transaction.prepare_id == prepare_id,
                        Transaction.user_id == user_id,
                        Transaction.plan_id == plan_id,
                    )
                )
            )
        )
        return result.scalar_one_or_none()

    async def find_by_pair(
        self,
        user_id: str,
        plan_id: str,
        statuses: Sequence[str],
        provider: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> Optional[Transaction]:
        """Find the oldest transaction for a (user, plan) pair in one of ``statuses``."""
        conditions = [
            Transaction.user_id == user_id,
            Transaction.plan_id == plan_id,
            Transaction.status.in_(list(statuses)),
        ]
        if provider is not None:
            conditions.append(Transaction.provider == provider)
        if exclude_id is not None:
            conditions.append(Transaction.id != exclude_id)

        result = await self.session.execute(
            _fresh(
                select(Transaction)
                .where(and_(*conditions))
                .order_by(Transaction.created_at)
                .limit(1)
            )
        )
        return result.scalar_one_or_none()

    async def transition(
        self,
        transaction_id: str,
        expected_status: str,
        new_status: str,
        **values: Any,
    ) -> bool:
        """Move a transaction to ``new_status`` if it is still in ``expected_status``.

        Args:
            transaction_id: Transaction to update.
            expected_status: Status the caller observed.
            new_status: Target status.
            **values: Additional columns to set (state, perform_time, ...).

        Returns:
            True if this call performed the transition.

        Raises:
            sqlalchemy.exc.IntegrityError: If the transition violates a unique ledger invariant.
        """
        result = await self.session.execute(
            update(Transaction)
            .where(
                and_(
                    Transaction.id == transaction_id,
                    Transaction.status == expected_status,
                )
            )
            .values(status=new_status, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        applied = result.rowcount == 1
        if applied:
            logger.info(f"Transaction {transaction_id}: {expected_status} -> {new_status}")
        else:
            logger.info(
                f"Transaction {transaction_id} no longer {expected_status}, "
                f"transition to {new_status} skipped"
            )
        return applied

    async def list_by_provider_time(
        self,
        provider: str,
        start_ms: int,
        end_ms: int,
    ) -> List[Transaction]:
        """Transactions whose gateway-side creation time lies in [start_ms, end_ms]."""
        result = await self.session.execute(
            _fresh(
                select(Transaction)
                .where(
                    and_(
                        Transaction.provider == provider,
                        Transaction.provider_time >= start_ms,
                        Transaction.provider_time <= end_ms,
                    )
                )
                .order_by(Transaction.provider_time)
            )
        )
        return list(result.scalars().all())

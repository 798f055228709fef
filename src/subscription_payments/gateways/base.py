import calendar
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Dict, Any, Union
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import PaymentProvider, Transaction
from ..database.repository import PlanRepository, TransactionRepository, UserRepository
from ..money import AmountError, AmountUnit, Money
from ..subscriptions.activator import SubscriptionActivator

logger = logging.getLogger(__name__)

# Conditional transitions lost to a concurrent writer are re-evaluated this many times
MAX_TRANSITION_ATTEMPTS = 3


def is_valid_identifier(value: Any) -> bool:
    """True if ``value`` is a well-formed record id (UUID string)."""
    if not isinstance(value, str) or not value:
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def to_epoch_ms(value: Optional[datetime]) -> Optional[int]:
    """Convert a naive UTC datetime from the ledger to epoch milliseconds."""
    if value is None:
        return None
    return calendar.timegm(value.utctimetuple()) * 1000 + value.microsecond // 1000


def amount_matches(value: Union[int, str, Decimal], unit: AmountUnit, expected: Money) -> bool:
    """True if a gateway-native amount equals ``expected``."""
    try:
        return Money.from_native(value, unit) == expected
    except AmountError:
        return False


class GatewayService(ABC):
    """
    Shared base for the gateway state machines. A service is created per
    request around one database session and never holds state between calls.
    """

    provider: PaymentProvider

    def __init__(
        self,
        session: AsyncSession,
        activator: Optional[SubscriptionActivator] = None,
    ):
        self.session = session
        self.activator = activator
        self.users = UserRepository(session)
        self.plans = PlanRepository(session)
        self.transactions = TransactionRepository(session)

    @abstractmethod
    async def handle(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Process one webhook payload and return the gateway's response body.
        Domain failures are reported in the body, never raised.
        """
        raise NotImplementedError

    async def fulfill(self, transaction: Transaction) -> None:
        """Hand a paid transaction to the activator. Must be called after commit."""
        if self.activator is None:
            logger.warning(
                f"No activator configured, {self.provider.value} transaction "
                f"{transaction.id} paid without extending the subscription"
            )
            return
        await self.activator.fulfill(transaction)

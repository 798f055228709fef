"""Database module for the subscription ledger."""

from .models import (
    Base,
    Plan,
    User,
    SubscriptionGrant,
    Transaction,
    PaymentProvider,
    TransactionStatus,
    utcnow,
)
from .session import (
    get_db,
    init_db,
    close_db,
    create_async_engine,
    get_async_session_factory,
    get_db_context,
)
from .repository import (
    PlanRepository,
    UserRepository,
    TransactionRepository,
)

__all__ = [
    # Models
    "Base",
    "Plan",
    "User",
    "SubscriptionGrant",
    "Transaction",
    "PaymentProvider",
    "TransactionStatus",
    "utcnow",
    # Session management
    "get_db",
    "init_db",
    "close_db",
    "create_async_engine",
    "get_async_session_factory",
    "get_db_context",
    # Repositories
    "PlanRepository",
    "UserRepository",
    "TransactionRepository",
]

# subscription_payments package
__version__ = "0.1.0"

from .config import Settings, PaymeSettings, ClickSettings
from .money import Money, AmountUnit, AmountError
from .database import (
    Plan,
    User,
    SubscriptionGrant,
    Transaction,
    PaymentProvider,
    TransactionStatus,
    init_db,
    close_db,
    get_db,
)

# Gateway state machines
from .gateways import PaymeService, ClickService

# Subscription management
from .subscriptions import (
    SubscriptionActivator,
    SubscriptionSweeper,
    PaymentNotifier,
    ExpiryNotifier,
    ChannelMembership,
)

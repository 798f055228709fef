"""Subscription window management: activation, notifications, and the expiry sweep."""

from .activator import (
    ActivationConflictError,
    ActivationResult,
    SubscriptionActivator,
    compute_window,
)
from .notifications import (
    ChannelMembership,
    ExpiryNotifier,
    LoggingChannelMembership,
    LoggingNotifier,
    PaymentNotifier,
)
from .sweeper import SubscriptionSweeper, SweepReport

__all__ = [
    "ActivationConflictError",
    "ActivationResult",
    "SubscriptionActivator",
    "compute_window",
    "ChannelMembership",
    "ExpiryNotifier",
    "LoggingChannelMembership",
    "LoggingNotifier",
    "PaymentNotifier",
    "SubscriptionSweeper",
    "SweepReport",
]

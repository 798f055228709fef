"""FastAPI dependencies shared by the webhook routers."""

from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from .config import Settings
from .database import get_db
from .subscriptions.activator import SubscriptionActivator
from .subscriptions.notifications import ChannelMembership, PaymentNotifier


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_notifier(request: Request) -> Optional[PaymentNotifier]:
    return getattr(request.app.state, "notifier", None)


def get_channel(request: Request) -> Optional[ChannelMembership]:
    return getattr(request.app.state, "channel", None)


def get_activator(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    notifier: Optional[PaymentNotifier] = Depends(get_notifier),
    channel: Optional[ChannelMembership] = Depends(get_channel),
) -> SubscriptionActivator:
    """Activator bound to the request's database session."""
    return SubscriptionActivator(
        db,
        notifier=notifier,
        channel=channel,
        notification_timeout=settings.notification_timeout_seconds,
    )

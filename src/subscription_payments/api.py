"""FastAPI application serving the Payme and Click webhooks."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from . import __version__
from .auth import limiter
from .config import Settings
from .database import close_db, init_db
from .gateways.click.api import router as click_router
from .gateways.payme.api import router as payme_router
from .subscriptions.notifications import (
    ChannelMembership,
    LoggingChannelMembership,
    LoggingNotifier,
    PaymentNotifier,
)

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    notifier: Optional[PaymentNotifier] = None,
    channel: Optional[ChannelMembership] = None,
    create_tables: bool = True,
) -> FastAPI:
    """Build the webhook application.

    Args:
        settings: Application settings; read from the environment when omitted.
        notifier: Payment notifier; defaults to one that only logs.
        channel: Channel membership controller; defaults to one that only logs.
        create_tables: Create missing tables on start-up.

    Returns:
        Configured FastAPI application.
    """
    settings = settings or Settings.from_env()
    logging.getLogger("subscription_payments").setLevel(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db(settings.database_url, create_tables=create_tables)
        yield
        await close_db()

    app = FastAPI(title="Subscription Payments", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.notifier = notifier if notifier is not None else LoggingNotifier()
    app.state.channel = channel if channel is not None else LoggingChannelMembership()

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.include_router(payme_router)
    app.include_router(click_router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()

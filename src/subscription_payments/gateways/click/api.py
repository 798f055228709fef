"""Click webhook endpoint."""

import logging
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import MultiPartException

from ...auth import WEBHOOK_RATE_LIMIT, limiter
from ...config import Settings
from ...database import get_db
from ...dependencies import get_activator, get_settings
from ...subscriptions.activator import SubscriptionActivator
from .models import ClickError, ClickProtocolError
from .service import ClickService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["click"])


async def read_click_payload(request: Request) -> Optional[Dict[str, Any]]:
    """Click posts form fields; a JSON object body is accepted too. None if undecodable."""
    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith("application/json"):
            payload = await request.json()
            return payload if isinstance(payload, dict) else None
        form_data = await request.form()
        return {key: value for key, value in form_data.items() if isinstance(value, str)}
    except (ValueError, MultiPartException, StarletteHTTPException):
        return None


@router.post("/click")
@limiter.limit(WEBHOOK_RATE_LIMIT)
async def click_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    activator: SubscriptionActivator = Depends(get_activator),
):
    """
    Click SHOP API, both Prepare and Complete.

    Always answers HTTP 200 with a flat body carrying ``error`` and ``error_note``.
    """
    payload = await read_click_payload(request)
    if payload is None:
        logger.warning("Click request body could not be decoded")
        return ClickProtocolError(ClickError.BAD_REQUEST, "Bad request").to_dict()

    service = ClickService(db, settings.click, activator=activator)
    return await service.handle(payload)

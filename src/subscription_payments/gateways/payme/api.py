"""Payme webhook endpoint."""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.security import HTTPBasicCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from ...auth import WEBHOOK_RATE_LIMIT, basic_security, limiter, verify_payme_credentials
from ...config import Settings
from ...database import get_db
from ...dependencies import get_activator, get_settings
from ...subscriptions.activator import SubscriptionActivator
from .models import PaymeError
from .service import PaymeService, error_response

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payme"])


@router.post("/payme")
@limiter.limit(WEBHOOK_RATE_LIMIT)
async def payme_webhook(
    request: Request,
    credentials: Optional[HTTPBasicCredentials] = Depends(basic_security),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    activator: SubscriptionActivator = Depends(get_activator),
):
    """
    Payme merchant API.

    Always answers HTTP 200; failures, including authentication, are JSON-RPC errors.
    """
    body = await request.body()
    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning("Payme request body is not valid JSON")
        return error_response(PaymeError.PARSE_ERROR)

    rpc_id = payload.get("id") if isinstance(payload, dict) else None
    if not verify_payme_credentials(credentials, settings.payme):
        return error_response(PaymeError.INVALID_AUTHORIZATION, rpc_id)

    service = PaymeService(db, settings.payme, activator=activator)
    return await service.handle(payload)

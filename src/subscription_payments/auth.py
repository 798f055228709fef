"""Webhook authentication and rate limiting helpers.

Payme authenticates with HTTP Basic credentials. Click signs each callback with an
MD5 digest over a fixed field order that includes the shared secret.
"""

import hashlib
import logging
import secrets
from typing import Optional, Union

from fastapi.security import HTTPBasic, HTTPBasicCredentials
from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import PaymeSettings

logger = logging.getLogger(__name__)

# Payme must receive a JSON-RPC error, not a 401, so missing credentials are not auto-rejected
basic_security = HTTPBasic(auto_error=False)

# Rate limiter
limiter = Limiter(key_func=get_remote_address)

WEBHOOK_RATE_LIMIT = "300/minute"


def _equals(supplied: str, expected: str) -> bool:
    return secrets.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


def verify_payme_credentials(
    credentials: Optional[HTTPBasicCredentials],
    settings: PaymeSettings,
) -> bool:
    """Check Payme Basic credentials against the configured merchant key.

    Args:
        credentials: Parsed Basic credentials, or None if the header was missing.
        settings: Payme settings holding the login and key(s).

    Returns:
        True if the login matches and the password equals the key or the test key.
    """
    try:
        settings.require_credentials()
    except ValueError as e:
        logger.error(str(e))
        return False

    if credentials is None:
        logger.warning("Payme request without Authorization header")
        return False

    login_ok = _equals(credentials.username, settings.login)
    password_ok = _equals(credentials.password, settings.password)
    if settings.test_password:
        password_ok = password_ok | _equals(credentials.password, settings.test_password)

    if not (login_ok and password_ok):
        logger.warning("Payme request with invalid credentials")
        return False
    return True


def click_sign_string(
    click_trans_id: Union[int, str],
    service_id: Union[int, str],
    secret_key: str,
    merchant_trans_id: str,
    amount: str,
    action: Union[int, str],
    sign_time: str,
    merchant_prepare_id: Optional[Union[int, str]] = None,
) -> str:
    """Compute the Click ``sign_string``.

    Fields are concatenated in this order: click_trans_id, service_id, secret_key,
    merchant_trans_id, merchant_prepare_id (empty on Prepare), amount, action, sign_time.
    """
    prepare_part = "" if merchant_prepare_id is None else str(merchant_prepare_id)
    content = (
        f"{click_trans_id}{service_id}{secret_key}{merchant_trans_id}"
        f"{prepare_part}{amount}{action}{sign_time}"
    )
    return hashlib.md5(content.encode("utf-8")).hexdigest()


def verify_signature(supplied: Optional[str], expected: str) -> bool:
    """Constant-time comparison of a supplied signature with the expected one."""
    if not supplied:
        return False
    return _equals(supplied.strip().lower(), expected)

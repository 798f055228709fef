"""Hosted checkout links for both gateways.

The encodings must stay byte-compatible with what each hosted checkout page parses.
"""

import base64
from typing import Optional
from urllib.parse import urlencode

from .config import ClickSettings, PaymeSettings
from .money import AmountError, AmountUnit, Money


def generate_payme_link(settings: PaymeSettings, plan_id: str, user_id: str, amount: Money) -> str:
    """Payme checkout URL: base64 of ``m=..;ac.plan_id=..;ac.user_id=..;a=..``.

    Args:
        settings: Payme settings providing the merchant id and amount unit.
        plan_id: Plan being purchased.
        user_id: Paying user.
        amount: Plan price.

    Returns:
        Checkout URL.
    """
    params = (
        f"m={settings.merchant_id};ac.plan_id={plan_id};ac.user_id={user_id};"
        f"a={amount.to_native(settings.amount_unit)}"
    )
    encoded = base64.b64encode(params.encode("utf-8")).decode("ascii")
    return f"{settings.checkout_url.rstrip('/')}/{encoded}"


def _click_amount(amount: Money, unit: AmountUnit) -> str:
    try:
        return str(amount.to_native(unit))
    except AmountError:
        # Click takes decimal major amounts
        return str(amount)


def generate_click_link(
    settings: ClickSettings,
    plan_id: str,
    user_id: str,
    amount: Money,
    return_url: Optional[str] = None,
) -> str:
    """Click checkout URL. The plan travels as ``transaction_param``, the user as ``additional_param3``."""
    query = {
        "service_id": settings.service_id,
        "merchant_id": settings.merchant_id,
        "amount": _click_amount(amount, settings.amount_unit),
        "transaction_param": plan_id,
        "additional_param3": user_id,
    }
    if return_url:
        query["return_url"] = return_url
    return f"{settings.checkout_url.rstrip('/')}/services/pay?{urlencode(query)}"

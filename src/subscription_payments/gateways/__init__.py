"""Payment gateway state machines."""

from .base import GatewayService, amount_matches, is_valid_identifier, to_epoch_ms
from .click import ClickService
from .payme import PaymeService

__all__ = [
    "GatewayService",
    "amount_matches",
    "is_valid_identifier",
    "to_epoch_ms",
    "ClickService",
    "PaymeService",
]

"""Click (SHOP API) gateway."""

from .models import ClickAction, ClickError, ClickProtocolError, ClickRequest
from .service import ClickService, PrepareIdSequence

__all__ = [
    "ClickAction",
    "ClickError",
    "ClickProtocolError",
    "ClickRequest",
    "ClickService",
    "PrepareIdSequence",
]

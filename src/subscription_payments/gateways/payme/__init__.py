"""Payme (JSON-RPC merchant API) gateway."""

from .models import (
    CancelReason,
    PaymeError,
    PaymeMethod,
    PaymeRPCError,
    TransactionState,
)
from .service import PaymeService

__all__ = [
    "CancelReason",
    "PaymeError",
    "PaymeMethod",
    "PaymeRPCError",
    "TransactionState",
    "PaymeService",
]

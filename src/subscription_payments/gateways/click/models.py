"""Protocol models for the Click SHOP API (Prepare/Complete)."""

import enum
from typing import Optional, Dict, Any

from pydantic import BaseModel, Field, field_validator


class ClickAction(int, enum.Enum):
    """Click callback phases."""
    PREPARE = 0
    COMPLETE = 1


class ClickError(int, enum.Enum):
    """Click response codes."""
    SUCCESS = 0
    SIGN_FAILED = -1
    INVALID_AMOUNT = -2
    ACTION_NOT_FOUND = -3
    ALREADY_PAID = -4
    USER_OR_PRODUCT_NOT_FOUND = -5
    TRANSACTION_NOT_FOUND = -6
    BAD_REQUEST = -8
    TRANSACTION_CANCELED = -9


class ClickProtocolError(Exception):
    """A Click error response raised from inside a handler.

    ``code`` is usually a ``ClickError``, but a failed Complete echoes the code Click sent.
    """

    def __init__(self, code: int, note: str):
        super().__init__(note)
        self.code = int(code)
        self.note = note

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "error_note": self.note}


class ClickRequest(BaseModel):
    """Fields of a Prepare or Complete callback.

    ``amount`` and ``sign_time`` are kept as received because the signature is computed
    over their exact text.
    """
    click_trans_id: int = Field(..., description="Click transaction id")
    service_id: int
    click_paydoc_id: Optional[int] = None
    merchant_trans_id: str = Field(..., description="Plan id")
    merchant_prepare_id: Optional[int] = None
    param2: Optional[str] = Field(None, description="User id")
    amount: str
    action: int
    error: int = 0
    error_note: Optional[str] = None
    sign_time: str
    sign_string: str

    @field_validator("amount", "sign_time", mode="before")
    @classmethod
    def keep_as_text(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("merchant_prepare_id", "click_paydoc_id", "param2", mode="before")
    @classmethod
    def empty_as_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

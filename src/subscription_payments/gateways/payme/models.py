"""Protocol models for the Payme merchant API (JSON-RPC)."""

import enum
from decimal import Decimal
from typing import Optional, Dict, Any

from pydantic import BaseModel, Field


class PaymeMethod(str, enum.Enum):
    """JSON-RPC methods Payme calls on the merchant."""
    CHECK_PERFORM_TRANSACTION = "CheckPerformTransaction"
    CREATE_TRANSACTION = "CreateTransaction"
    PERFORM_TRANSACTION = "PerformTransaction"
    CANCEL_TRANSACTION = "CancelTransaction"
    CHECK_TRANSACTION = "CheckTransaction"
    GET_STATEMENT = "GetStatement"


class TransactionState(int, enum.Enum):
    """Payme transaction state codes."""
    PENDING = 1
    PAID = 2
    PENDING_CANCELED = -1
    PAID_CANCELED = -2


class CancelReason(int, enum.Enum):
    """Payme cancellation reason codes."""
    RECEIVER_NOT_FOUND = 1
    DEBIT_OPERATION_ERROR = 2
    TRANSACTION_ERROR = 3
    TIMEOUT = 4
    REFUND = 5
    UNKNOWN = 10


class PaymeError(enum.Enum):
    """Payme error codes with their localized messages (code, ru, uz, en)."""
    INVALID_AMOUNT = (-31001, "Неверная сумма", "Noto'g'ri summa", "Invalid amount")
    TRANSACTION_NOT_FOUND = (-31003, "Транзакция не найдена", "Tranzaksiya topilmadi", "Transaction not found")
    CANT_DO_OPERATION = (
        -31008,
        "Невозможно выполнить операцию",
        "Operatsiyani bajarib bo'lmaydi",
        "Unable to perform operation",
    )
    PRODUCT_OR_USER_NOT_FOUND = (
        -31050,
        "Товар/пользователь не найден",
        "Sizda mahsulot/foydalanuvchi topilmadi",
        "Product/user not found",
    )
    USER_NOT_FOUND = (-31050, "Пользователь не найден", "Foydalanuvchi topilmadi", "User not found")
    PRODUCT_NOT_FOUND = (-31050, "Товар не найден", "Mahsulot topilmadi", "Product not found")
    ALREADY_PAID = (-31060, "Заказ уже оплачен", "Buyurtma allaqachon to'langan", "Order already paid")
    TRANSACTION_IN_PROCESS = (
        -31099,
        "Ожидание оплаты по другой транзакции",
        "Boshqa tranzaksiya bo'yicha to'lov kutilmoqda",
        "Another transaction is pending",
    )
    INVALID_AUTHORIZATION = (
        -32504,
        "Недостаточно привилегий для выполнения метода",
        "Metodni bajarish uchun huquqlar yetarli emas",
        "Insufficient privileges to perform the method",
    )
    INVALID_REQUEST = (-32600, "Неверный запрос", "Noto'g'ri so'rov", "Invalid request")
    METHOD_NOT_FOUND = (-32601, "Метод не найден", "Metod topilmadi", "Method not found")
    PARSE_ERROR = (-32700, "Ошибка разбора JSON", "JSON tahlilida xatolik", "Parse error")
    INTERNAL_ERROR = (-32400, "Системная ошибка", "Tizim xatosi", "Internal error")

    # Protocol aliases
    OPERATION_NOT_ALLOWED = CANT_DO_OPERATION

    @property
    def code(self) -> int:
        return self.value[0]

    @property
    def message(self) -> Dict[str, str]:
        return {"ru": self.value[1], "uz": self.value[2], "en": self.value[3]}


class PaymeRPCError(Exception):
    """A Payme error response raised from inside a handler.

    Extra keyword arguments (``state``, ``reason``) are merged into the error object,
    which is how Payme receives the compound timeout error.
    """

    def __init__(self, error: PaymeError, data: Any = None, **extra: Any):
        super().__init__(error.value[3])
        self.error = error
        self.data = data
        self.extra = extra

    @property
    def code(self) -> int:
        return self.error.code

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "code": self.error.code,
            "message": self.error.message,
            "data": self.data,
        }
        body.update(self.extra)
        return body


class Account(BaseModel):
    """Merchant account fields configured in the Payme cabinet."""
    plan_id: Optional[str] = Field(None, description="Plan being purchased")
    user_id: Optional[str] = Field(None, description="Subscriber paying for the plan")


class CheckPerformTransactionParams(BaseModel):
    amount: Decimal = Field(..., description="Amount in the configured Payme unit")
    account: Account


class CreateTransactionParams(BaseModel):
    id: str = Field(..., min_length=1, description="Payme transaction id")
    time: int = Field(..., description="Payme-side creation time, epoch ms")
    amount: Decimal
    account: Account


class TransactionIdParams(BaseModel):
    """Params of PerformTransaction and CheckTransaction."""
    id: str = Field(..., min_length=1)


class CancelTransactionParams(BaseModel):
    id: str = Field(..., min_length=1)
    reason: int = Field(default=CancelReason.UNKNOWN.value)


class GetStatementParams(BaseModel):
    from_: int = Field(..., alias="from", description="Range start, epoch ms")
    to: int = Field(..., description="Range end, epoch ms")


class PaymeRequest(BaseModel):
    """JSON-RPC envelope of an incoming Payme call."""
    method: str
    params: Dict[str, Any] = Field(default_factory=dict)
    id: Optional[Any] = None

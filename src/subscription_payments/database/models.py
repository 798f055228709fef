"""SQLAlchemy models for the subscription ledger."""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
import enum

from ..money import AmountUnit, Money


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the representation stored in the ledger."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class PaymentProvider(str, enum.Enum):
    """Payment gateways that can drive a transaction."""
    PAYME = "payme"
    CLICK = "click"


class TransactionStatus(str, enum.Enum):
    """Coarse transaction lifecycle."""
    PENDING = "PENDING"
    CREATED = "CREATED"
    PAID = "PAID"
    CANCELED = "CANCELED"


class Plan(Base):
    """Subscription plan a user can pay for."""
    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    # Minor units
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    duration_days: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def price_money(self) -> Money:
        return Money(minor=self.price)

    @property
    def duration(self) -> timedelta:
        return timedelta(days=self.duration_days)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "price": self.price,
            "duration_days": self.duration_days,
        }


class User(Base):
    """Subscriber and their current subscription window."""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    telegram_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True, unique=True)
    username: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    subscription_start: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    subscription_end: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_kicked_out: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_users_subscription_end", "subscription_end"),
        Index("ix_users_is_active", "is_active"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "telegram_id": self.telegram_id,
            "username": self.username,
            "subscription_start": self.subscription_start.isoformat() if self.subscription_start else None,
            "subscription_end": self.subscription_end.isoformat() if self.subscription_end else None,
            "is_active": self.is_active,
            "is_kicked_out": self.is_kicked_out,
        }


class SubscriptionGrant(Base):
    """One plan granted to a user by one paid transaction.

    The unique transaction id makes subscription extension idempotent.
    """
    __tablename__ = "subscription_grants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    plan_id: Mapped[str] = mapped_column(String(36), ForeignKey("plans.id"), nullable=False)
    transaction_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("transactions.id"), nullable=False, unique=True
    )
    period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    granted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class Transaction(Base):
    """One attempt by one gateway to collect a plan price from one user."""
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    external_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(36), ForeignKey("plans.id"), nullable=False)

    # Minor units; amount_unit is the unit the gateway quotes in
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount_unit: Mapped[str] = mapped_column(String(10), nullable=False, default=AmountUnit.MINOR.value)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=TransactionStatus.PENDING.value)
    # Payme protocol state code
    state: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reason: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    prepare_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True, unique=True)
    # Gateway-side creation time, epoch ms
    provider_time: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    sign_time: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    perform_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancel_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_transactions_provider_external_id"),
        Index("ix_transactions_user_plan", "user_id", "plan_id"),
        Index("ix_transactions_status", "status"),
        Index("ix_transactions_created_at", "created_at"),
        Index(
            "uq_transactions_paid_pair",
            "user_id",
            "plan_id",
            unique=True,
            sqlite_where=text("status = 'PAID'"),
            postgresql_where=text("status = 'PAID'"),
        ),
        Index(
            "uq_transactions_payme_pending_pair",
            "user_id",
            "plan_id",
            unique=True,
            sqlite_where=text("status = 'PENDING' AND provider = 'payme'"),
            postgresql_where=text("status = 'PENDING' AND provider = 'payme'"),
        ),
    )

    @property
    def amount_money(self) -> Money:
        return Money(minor=self.amount)

    def is_expired(self, timeout: timedelta, now: Optional[datetime] = None) -> bool:
        """True when the transaction was created longer ago than ``timeout``."""
        now = now or utcnow()
        return self.created_at < now - timeout

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "provider": self.provider,
            "external_id": self.external_id,
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "amount": self.amount,
            "amount_unit": self.amount_unit,
            "status": self.status,
            "state": self.state,
            "reason": self.reason,
            "prepare_id": self.prepare_id,
            "perform_time": self.perform_time.isoformat() if self.perform_time else None,
            "cancel_time": self.cancel_time.isoformat() if self.cancel_time else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

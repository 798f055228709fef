"""Runtime configuration for the gateway webhooks.

Settings are read from the environment once, at start-up, and passed explicitly to the
services that need them. Business code never looks at ``os.environ`` directly.
"""

import os
from typing import Optional

from pydantic import BaseModel, Field

from .money import AmountUnit

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./subscriptions.db"


def normalize_database_url(db_url: Optional[str]) -> str:
    """Convert sync PostgreSQL URLs to the asyncpg driver and apply the SQLite default."""
    if not db_url or not db_url.strip():
        return DEFAULT_DATABASE_URL
    db_url = db_url.strip()
    if db_url.startswith("postgresql://"):
        return db_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if db_url.startswith("postgres://"):
        return db_url.replace("postgres://", "postgresql+asyncpg://", 1)
    return db_url


class PaymeSettings(BaseModel):
    """Payme merchant API settings."""
    merchant_id: str = ""
    login: str = "Paycom"
    password: str = ""
    test_password: Optional[str] = None
    amount_unit: AmountUnit = AmountUnit.MINOR
    transaction_timeout_minutes: int = Field(default=720, gt=0)
    checkout_url: str = "https://checkout.paycom.uz"

    def require_credentials(self) -> None:
        """Raise ValueError when the merchant key is not configured."""
        if not self.password:
            raise ValueError("PAYME_PASSWORD is not configured")


class ClickSettings(BaseModel):
    """Click SHOP API settings."""
    service_id: int = 0
    merchant_id: str = ""
    merchant_user_id: Optional[str] = None
    secret_key: str = ""
    amount_unit: AmountUnit = AmountUnit.MAJOR
    checkout_url: str = "https://my.click.uz"

    def require_secret(self) -> None:
        """Raise ValueError when the signing secret is not configured."""
        if not self.secret_key:
            raise ValueError("CLICK_SECRET_KEY is not configured")


class Settings(BaseModel):
    """Top-level application settings."""
    database_url: str = DEFAULT_DATABASE_URL
    log_level: str = "INFO"
    notification_timeout_seconds: float = Field(default=5.0, gt=0)
    payme: PaymeSettings = Field(default_factory=PaymeSettings)
    click: ClickSettings = Field(default_factory=ClickSettings)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        payme = PaymeSettings(
            merchant_id=os.getenv("PAYME_MERCHANT_ID", ""),
            login=os.getenv("PAYME_LOGIN", "Paycom"),
            password=os.getenv("PAYME_PASSWORD", ""),
            test_password=os.getenv("PAYME_PASSWORD_TEST") or None,
            amount_unit=AmountUnit(os.getenv("PAYME_AMOUNT_UNIT", AmountUnit.MINOR.value)),
            transaction_timeout_minutes=int(os.getenv("PAYME_TRANSACTION_TIMEOUT_MINUTES", "720")),
        )
        click = ClickSettings(
            service_id=int(os.getenv("CLICK_SERVICE_ID", "0")),
            merchant_id=os.getenv("CLICK_MERCHANT_ID", ""),
            merchant_user_id=os.getenv("CLICK_MERCHANT_USER_ID") or None,
            secret_key=os.getenv("CLICK_SECRET_KEY") or os.getenv("CLICK_SECRET", ""),
            amount_unit=AmountUnit(os.getenv("CLICK_AMOUNT_UNIT", AmountUnit.MAJOR.value)),
        )
        return cls(
            database_url=normalize_database_url(os.getenv("DATABASE_URL")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            notification_timeout_seconds=float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "5")),
            payme=payme,
            click=click,
        )

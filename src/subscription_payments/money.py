"""Typed money amounts shared by the ledger and the gateway handlers.

Plan prices are stored in minor units (tiyin). Each gateway reports amounts in its
own native unit, so every comparison goes through ``Money`` instead of ad hoc
multiplication or division.
"""

import enum
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Union

MINOR_UNITS_PER_MAJOR = 100


class AmountUnit(str, enum.Enum):
    """Unit an amount is expressed in."""
    MINOR = "minor"
    MAJOR = "major"


class AmountError(ValueError):
    """Raised when an amount cannot be represented exactly in minor units."""


@dataclass(frozen=True)
class Money:
    """An amount in minor units."""
    minor: int

    @classmethod
    def from_native(cls, value: Union[int, str, Decimal], unit: AmountUnit) -> "Money":
        """Build a Money from a gateway-native amount.

        Args:
            value: Amount as received from the gateway.
            unit: Unit the gateway uses for this amount.

        Returns:
            Money instance.

        Raises:
            AmountError: If the value is not a number or is not a whole number of minor units.
        """
        if isinstance(value, bool):
            raise AmountError(f"Invalid amount: {value!r}")
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as e:
            raise AmountError(f"Invalid amount: {value!r}") from e
        if not amount.is_finite():
            raise AmountError(f"Invalid amount: {value!r}")

        if AmountUnit(unit) == AmountUnit.MAJOR:
            amount = amount * MINOR_UNITS_PER_MAJOR

        if amount != amount.to_integral_value():
            raise AmountError(f"Amount {value!r} has fractional minor units")
        return cls(minor=int(amount))

    def to_native(self, unit: AmountUnit) -> int:
        """Express this amount as an integer in the given unit.

        Raises:
            AmountError: If the amount is not a whole number of major units.
        """
        if AmountUnit(unit) == AmountUnit.MINOR:
            return self.minor
        major, remainder = divmod(self.minor, MINOR_UNITS_PER_MAJOR)
        if remainder:
            raise AmountError(f"{self.minor} minor units is not a whole major amount")
        return major

    def __str__(self) -> str:
        major, remainder = divmod(abs(self.minor), MINOR_UNITS_PER_MAJOR)
        sign = "-" if self.minor < 0 else ""
        return f"{sign}{major}.{remainder:02d}"

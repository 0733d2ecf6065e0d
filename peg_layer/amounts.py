"""
Fixed-Point Token Amounts

Every on-chain quantity moves through the bot as an integer count of the
token's smallest unit, tagged with its decimal precision and symbol:

- 1.5 BNB  -> Amount(raw=1_500_000_000_000_000_000, decimals=18, symbol="BNB")
- Arithmetic only between amounts of the same symbol and precision
- Scaling by a Decimal factor always rounds DOWN (never overspend)
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, localcontext
from typing import Union

Number = Union[int, str, Decimal]

_PRECISION = 78  # enough for uint256 values


class AmountMismatchError(ValueError):
    """Raised when combining amounts of different assets or precisions."""
    pass


@dataclass(frozen=True)
class Amount:
    """Integer token amount with an explicit decimal-precision tag."""
    raw: int
    decimals: int
    symbol: str

    def __post_init__(self):
        if not isinstance(self.raw, int) or isinstance(self.raw, bool):
            raise TypeError(f"Amount.raw must be int, got {type(self.raw).__name__}")
        if self.decimals < 0:
            raise ValueError(f"Invalid decimals: {self.decimals}")

    @classmethod
    def from_decimal(cls, value: Number, decimals: int, symbol: str) -> "Amount":
        """Build an amount from a human-readable value (e.g. "1.5")."""
        with localcontext() as ctx:
            ctx.prec = _PRECISION
            scaled = Decimal(str(value)) * (Decimal(10) ** decimals)
            raw = int(scaled.to_integral_value(rounding=ROUND_DOWN))
        return cls(raw=raw, decimals=decimals, symbol=symbol)

    @classmethod
    def zero(cls, decimals: int, symbol: str) -> "Amount":
        return cls(raw=0, decimals=decimals, symbol=symbol)

    def to_decimal(self) -> Decimal:
        with localcontext() as ctx:
            ctx.prec = _PRECISION
            return Decimal(self.raw) / (Decimal(10) ** self.decimals)

    def is_zero(self) -> bool:
        return self.raw == 0

    def scale(self, factor: Number) -> "Amount":
        """Multiply by a factor, rounding down to the smallest unit."""
        with localcontext() as ctx:
            ctx.prec = _PRECISION
            scaled = Decimal(self.raw) * Decimal(str(factor))
            raw = int(scaled.to_integral_value(rounding=ROUND_DOWN))
        return Amount(raw=max(raw, 0), decimals=self.decimals, symbol=self.symbol)

    def clamp_non_negative(self) -> "Amount":
        if self.raw >= 0:
            return self
        return Amount.zero(self.decimals, self.symbol)

    def _check_compatible(self, other: "Amount") -> None:
        if not isinstance(other, Amount):
            raise TypeError(f"Cannot combine Amount with {type(other).__name__}")
        if other.symbol != self.symbol or other.decimals != self.decimals:
            raise AmountMismatchError(
                f"Amount mismatch: {self.symbol}/{self.decimals} vs "
                f"{other.symbol}/{other.decimals}"
            )

    def __add__(self, other: "Amount") -> "Amount":
        self._check_compatible(other)
        return Amount(self.raw + other.raw, self.decimals, self.symbol)

    def __sub__(self, other: "Amount") -> "Amount":
        self._check_compatible(other)
        return Amount(self.raw - other.raw, self.decimals, self.symbol)

    def __lt__(self, other: "Amount") -> bool:
        self._check_compatible(other)
        return self.raw < other.raw

    def __le__(self, other: "Amount") -> bool:
        self._check_compatible(other)
        return self.raw <= other.raw

    def __gt__(self, other: "Amount") -> bool:
        self._check_compatible(other)
        return self.raw > other.raw

    def __ge__(self, other: "Amount") -> bool:
        self._check_compatible(other)
        return self.raw >= other.raw

    def to_dict(self) -> dict:
        return {
            "raw": str(self.raw),
            "decimals": self.decimals,
            "symbol": self.symbol,
            "value": format(self.to_decimal().normalize(), "f"),
        }

    def __str__(self) -> str:
        return f"{format(self.to_decimal().normalize(), 'f')} {self.symbol}"

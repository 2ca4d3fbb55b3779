"""
Shared market and position types.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class Side(Enum):
    """Order / position side."""
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY


class PositionState(Enum):
    """Aggregate position direction."""
    FLAT = "FLAT"
    LONG = "LONG"
    SHORT = "SHORT"


@dataclass(frozen=True)
class Bar:
    """
    Immutable closed bar, identified by its close timestamp.

    buy_volume / sell_volume are optional; without them the bar
    carries no volume delta.
    """
    time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    buy_volume: Optional[float] = None
    sell_volume: Optional[float] = None

    @property
    def delta(self) -> Optional[float]:
        """Buy-initiated minus sell-initiated volume."""
        if self.buy_volume is None or self.sell_volume is None:
            return None
        return self.buy_volume - self.sell_volume

    @property
    def has_delta(self) -> bool:
        return self.delta is not None

    @property
    def price_move(self) -> float:
        return abs(self.open - self.close)

    @property
    def is_valid(self) -> bool:
        return self.high > 0 and self.low > 0

    def to_dict(self) -> dict:
        return {
            "time": self.time.isoformat(),
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
            "delta": self.delta,
        }


@dataclass
class BrokerPosition:
    """Open position as reported by the broker."""
    id: str
    side: Side
    quantity: float
    open_price: float
    current_price: float = 0.0
    open_time: Optional[datetime] = None
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0

    @property
    def is_long(self) -> bool:
        return self.side is Side.BUY

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "side": self.side.value,
            "quantity": self.quantity,
            "open_price": self.open_price,
            "current_price": self.current_price,
            "open_time": self.open_time.isoformat() if self.open_time else None,
            "unrealized_pnl": self.unrealized_pnl,
            "realized_pnl": self.realized_pnl,
        }


@dataclass(frozen=True)
class IndicatorValues:
    """Indicator readings for one closed bar. None = not enough data."""
    atr: Optional[float] = None
    smoothed: Optional[float] = None

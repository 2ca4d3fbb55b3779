"""
Stop Engine - ATR Stops With Monotonic Trail

STOP FORMULA:
- Long:  previous bar low  - ATR x multiplier
- Short: previous bar high + ATR x multiplier
- Distance from entry clamped to [min, max] ticks
- Without ATR or a previous bar: min-distance stop

TRAIL:
- Recomputed once per closed bar
- Committed only when strictly more favorable than the stored stop
- A stop is never loosened

Order transport is external. This engine decides target prices and
whether a resend is warranted (changes under one tick are skipped).
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

import numpy as np

from .config import StopConfig
from .models import Bar, Side


class ExitTrigger(Enum):
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"


@dataclass
class StopRecord:
    """Stop state of one open position. Owned by StopEngine."""
    position_id: str
    side: Side
    entry_price: float
    initial_stop: float
    current_stop: float
    take_profit: float
    update_count: int = 0
    is_trailing: bool = False
    order_price: Optional[float] = None     # Last stop price sent to the transport

    @property
    def is_long(self) -> bool:
        return self.side is Side.BUY

    def distance_ticks(self, tick_size: float) -> float:
        return abs(self.entry_price - self.current_stop) / tick_size

    def to_dict(self) -> dict:
        return {
            "position_id": self.position_id,
            "side": self.side.value,
            "entry_price": self.entry_price,
            "initial_stop": self.initial_stop,
            "current_stop": self.current_stop,
            "take_profit": self.take_profit,
            "update_count": self.update_count,
            "is_trailing": self.is_trailing,
        }


class StopEngine:
    """Computes, trails and hit-tests per-position stops."""

    def __init__(
        self,
        config: StopConfig,
        tick_size: float,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.tick_size = tick_size
        self.logger = logger or logging.getLogger(__name__)

        self._records: Dict[str, StopRecord] = {}
        self._atr: Optional[float] = None
        self._previous_bar: Optional[Bar] = None
        self._total_updates = 0

    @property
    def records(self) -> List[StopRecord]:
        return list(self._records.values())

    def update_market(self, atr: Optional[float], previous_bar: Optional[Bar]) -> None:
        """Refresh ATR and the last closed bar before trailing."""
        self._atr = atr
        self._previous_bar = previous_bar

    def calculate_stop(self, side: Side, entry_price: float) -> float:
        """Stop price for `side` at `entry_price` under current market inputs."""
        min_ticks = self.config.min_stop_distance_ticks
        max_ticks = self.config.max_stop_distance_ticks
        direction = 1 if side is Side.BUY else -1

        if self._atr is None or self._previous_bar is None:
            self.logger.debug("No ATR or previous bar, using minimum stop distance")
            return entry_price - direction * min_ticks * self.tick_size

        offset = self._atr * self.config.atr_multiplier
        if side is Side.BUY:
            raw_stop = self._previous_bar.low - offset
        else:
            raw_stop = self._previous_bar.high + offset

        distance_ticks = round(direction * (entry_price - raw_stop) / self.tick_size)
        distance_ticks = int(np.clip(distance_ticks, min_ticks, max_ticks))

        return entry_price - direction * distance_ticks * self.tick_size

    def register(
        self,
        position_id: str,
        side: Side,
        entry_price: float,
        take_profit: float,
    ) -> StopRecord:
        """Create the stop record for a newly opened position."""
        stop = self.calculate_stop(side, entry_price)
        record = StopRecord(
            position_id=position_id,
            side=side,
            entry_price=entry_price,
            initial_stop=stop,
            current_stop=stop,
            take_profit=take_profit,
        )
        self._records[position_id] = record

        self.logger.info(
            f"Stop registered {position_id} {side.value} @ {entry_price:.2f}: "
            f"SL={stop:.2f} ({record.distance_ticks(self.tick_size):.0f} ticks) TP={take_profit:.2f}"
        )
        return record

    def update(
        self,
        position_id: str,
        current_price: float,
        side: Side,
        entry_price: float,
    ) -> bool:
        """Trail one stop. Returns True when a tighter stop was committed."""
        record = self._records.get(position_id)
        if record is None:
            return False

        candidate = self.calculate_stop(side, entry_price)

        if side is Side.BUY:
            improves = candidate > record.current_stop and candidate < current_price
        else:
            improves = candidate < record.current_stop and candidate > current_price

        if not improves:
            return False

        self.logger.debug(
            f"Trailing {position_id}: {record.current_stop:.2f} -> {candidate:.2f}"
        )
        record.current_stop = candidate
        record.update_count += 1
        record.is_trailing = True
        self._total_updates += 1
        return True

    def get_current_stop(self, position_id: str) -> Optional[float]:
        record = self._records.get(position_id)
        return record.current_stop if record else None

    def get_take_profit(self, position_id: str) -> Optional[float]:
        record = self._records.get(position_id)
        return record.take_profit if record else None

    def is_stop_hit(self, position_id: str, price: float, side: Side) -> bool:
        record = self._records.get(position_id)
        if record is None:
            return False
        if side is Side.BUY:
            return price <= record.current_stop
        return price >= record.current_stop

    def is_take_profit_hit(self, position_id: str, price: float, side: Side) -> bool:
        record = self._records.get(position_id)
        if record is None:
            return False
        if side is Side.BUY:
            return price >= record.take_profit
        return price <= record.take_profit

    def check_hit(self, position_id: str, price: float, side: Side) -> Optional[ExitTrigger]:
        """Stop loss takes precedence over take profit."""
        if self.is_stop_hit(position_id, price, side):
            return ExitTrigger.STOP_LOSS
        if self.is_take_profit_hit(position_id, price, side):
            return ExitTrigger.TAKE_PROFIT
        return None

    def order_update_due(self, position_id: str) -> Optional[float]:
        """Stop price to resend, or None when the change is under one tick."""
        record = self._records.get(position_id)
        if record is None:
            return None
        if record.order_price is None:
            return record.current_stop
        if abs(record.current_stop - record.order_price) < self.tick_size - 1e-9:
            return None
        return record.current_stop

    def mark_order_sent(self, position_id: str, price: float) -> None:
        record = self._records.get(position_id)
        if record is not None:
            record.order_price = price

    def remove(self, position_id: str) -> Optional[StopRecord]:
        return self._records.pop(position_id, None)

    def clear_all(self) -> None:
        self._records.clear()

    def get_statistics(self) -> Dict:
        distances = [r.distance_ticks(self.tick_size) for r in self._records.values()]
        return {
            "active_stops": len(self._records),
            "trailing_stops": sum(1 for r in self._records.values() if r.is_trailing),
            "total_updates": self._total_updates,
            "avg_distance_ticks": float(np.mean(distances)) if distances else 0.0,
        }

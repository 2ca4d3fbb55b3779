"""
Position Controller - Entry / Exit / Reversal State Machine

STATES: FLAT, LONG(n), SHORT(n) with n <= max stack count.

PRIORITY (evaluated once per closed bar):
1. Exit:     LONG + exit-long (or SHORT + exit-short) -> close side, stop
2. Reversal: LONG + entry-short (or mirror), reversals allowed
             -> close side, then open exactly one opposite unit
             (the open is skipped if the risk halt trips on the close)
3. Entry:    FLAT or same side with n < max -> open one unit
             n == max -> suppressed

Position counts are never incremented here. They are derived from the
broker position list handed to sync() after every add/remove
notification. Closing removes a position from the local list first and
puts it back when the transport rejects the close.

SLIPPAGE:
- ATR x multiplier x (1 +/- 20%), rounded to the tick
- Buys pay more, sells receive less
"""

import logging
import random
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from .config import PositionConfig
from .execution_engine import OrderTransport
from .models import BrokerPosition, PositionState, Side


class TradeAction(Enum):
    ENTRY = "ENTRY"
    STACK = "STACK"
    EXIT = "EXIT"
    REVERSAL = "REVERSAL"
    SUPPRESSED = "SUPPRESSED"


class SlippageModel:
    """Simulated execution slippage. Pass a seeded rng for reproducible runs."""

    def __init__(
        self,
        multiplier: float,
        tick_size: float,
        rng: Optional[random.Random] = None,
        variation: float = 0.2,
    ):
        self.multiplier = multiplier
        self.tick_size = tick_size
        self.rng = rng or random.Random()
        self.variation = variation

    @classmethod
    def from_config(
        cls,
        config: PositionConfig,
        tick_size: float,
        rng: Optional[random.Random] = None,
    ) -> "SlippageModel":
        if rng is None:
            rng = random.Random(config.slippage_seed)
        return cls(config.slippage_atr_multiplier, tick_size, rng, config.slippage_variation)

    def calculate(self, atr: Optional[float]) -> float:
        if atr is None or atr <= 0 or self.multiplier <= 0:
            return 0.0
        base = atr * self.multiplier
        slippage = base * (1 + self.rng.uniform(-self.variation, self.variation))
        return round(slippage / self.tick_size) * self.tick_size

    @staticmethod
    def apply(price: float, side: Side, slippage: float) -> float:
        if side is Side.BUY:
            return price + slippage
        return price - slippage


class PositionController:
    """Translates cached signals into trade actions."""

    def __init__(
        self,
        config: PositionConfig,
        transport: OrderTransport,
        slippage: SlippageModel,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.transport = transport
        self.slippage = slippage
        self.logger = logger or logging.getLogger(__name__)

        self._positions: List[BrokerPosition] = []
        self._close_reasons: Dict[str, str] = {}

        # Statistics
        self._stats = {action: 0 for action in TradeAction}
        self._failed_orders = 0
        self._failed_closes = 0

    # =========================================================================
    # STATE (derived from the broker list)
    # =========================================================================

    def sync(self, positions: Iterable[BrokerPosition]) -> None:
        """Replace the local cache with the authoritative broker list."""
        self._positions = list(positions)
        longs = self.count(Side.BUY)
        shorts = self.count(Side.SELL)
        if longs and shorts:
            self.logger.warning(f"Broker reports both sides open: {longs} long, {shorts} short")

    @property
    def positions(self) -> List[BrokerPosition]:
        return list(self._positions)

    def count(self, side: Side) -> int:
        return sum(1 for p in self._positions if p.side is side)

    @property
    def state(self) -> PositionState:
        longs = self.count(Side.BUY)
        shorts = self.count(Side.SELL)
        if longs == 0 and shorts == 0:
            return PositionState.FLAT
        return PositionState.LONG if longs >= shorts else PositionState.SHORT

    @property
    def stack_count(self) -> int:
        state = self.state
        if state is PositionState.LONG:
            return self.count(Side.BUY)
        if state is PositionState.SHORT:
            return self.count(Side.SELL)
        return 0

    # =========================================================================
    # DECISION
    # =========================================================================

    def process_signals(
        self,
        entry_long: bool,
        entry_short: bool,
        exit_long: bool,
        exit_short: bool,
        price: float,
        atr: Optional[float],
        time: Optional[datetime] = None,
        can_open: Optional[Callable[[], bool]] = None,
    ) -> List[TradeAction]:
        """
        Run one bar-close decision. Returns the actions taken.

        `can_open` is consulted between the close and the open of a
        reversal; when it returns False the reversal stops at the close.
        """
        state = self.state

        # 1. Exit
        if state is PositionState.LONG and exit_long:
            self.close_side(Side.BUY, price, atr, "Exit signal", time)
            return self._record([TradeAction.EXIT])
        if state is PositionState.SHORT and exit_short:
            self.close_side(Side.SELL, price, atr, "Exit signal", time)
            return self._record([TradeAction.EXIT])

        if entry_long and entry_short:
            self.logger.debug("Contradicting entry signals, no action")
            return []

        # 2. Reversal
        if self.config.allow_reversal and state is not PositionState.FLAT:
            if state is PositionState.LONG and entry_short:
                return self._record(self._reverse(Side.SELL, price, atr, time, can_open))
            if state is PositionState.SHORT and entry_long:
                return self._record(self._reverse(Side.BUY, price, atr, time, can_open))

        # 3. Entry / stack
        if entry_long:
            return self._record(self._enter(Side.BUY, price, atr, time))
        if entry_short:
            return self._record(self._enter(Side.SELL, price, atr, time))

        return []

    def _record(self, actions: List[TradeAction]) -> List[TradeAction]:
        for action in actions:
            self._stats[action] += 1
        return actions

    def _enter(
        self, side: Side, price: float, atr: Optional[float], time: Optional[datetime]
    ) -> List[TradeAction]:
        state = self.state
        opposite = (
            (state is PositionState.LONG and side is Side.SELL)
            or (state is PositionState.SHORT and side is Side.BUY)
        )
        if opposite:
            self.logger.debug(f"{side.value} entry ignored while {state.value}, reversals disabled")
            return [TradeAction.SUPPRESSED]

        if self.stack_count >= self.config.max_stack_count:
            self.logger.info(
                f"{side.value} entry suppressed: stack {self.stack_count}/{self.config.max_stack_count}"
            )
            return [TradeAction.SUPPRESSED]

        action = TradeAction.ENTRY if state is PositionState.FLAT else TradeAction.STACK
        if not self._open(side, price, atr, time, action.value):
            return []
        return [action]

    def _reverse(
        self,
        new_side: Side,
        price: float,
        atr: Optional[float],
        time: Optional[datetime],
        can_open: Optional[Callable[[], bool]] = None,
    ) -> List[TradeAction]:
        self.logger.info(f"Reversing to {new_side.value} @ {price:.2f}")
        if not self.close_side(new_side.opposite, price, atr, "Reversal", time):
            self.logger.warning("Reversal aborted: not all positions closed")
            return []
        if can_open is not None and not can_open():
            self.logger.warning(f"Reversal stopped after close: {new_side.value} open blocked")
            return [TradeAction.EXIT]
        if not self._open(new_side, price, atr, time, TradeAction.REVERSAL.value):
            return []
        return [TradeAction.REVERSAL]

    def _open(
        self,
        side: Side,
        price: float,
        atr: Optional[float],
        time: Optional[datetime],
        tag: str,
    ) -> bool:
        slippage = self.slippage.calculate(atr)
        fill_price = self.slippage.apply(price, side, slippage)

        result = self.transport.place_market_order(
            side, self.config.contract_size, fill_price, time, tag
        )
        if not result.is_success:
            self._failed_orders += 1
            self.logger.warning(f"{side.value} market order failed: {result.error_message}")
            return False

        self.logger.info(
            f"{tag}: {side.value} {self.config.contract_size} @ {fill_price:.2f} "
            f"(slippage {slippage:.2f})"
        )
        return True

    # =========================================================================
    # CLOSING
    # =========================================================================

    def close_position(
        self,
        position: BrokerPosition,
        price: float,
        atr: Optional[float],
        reason: str,
        time: Optional[datetime] = None,
    ) -> bool:
        """Close one position. On failure it is re-added for a later retry."""
        self._positions = [p for p in self._positions if p.id != position.id]
        self._close_reasons[position.id] = reason

        slippage = self.slippage.calculate(atr)
        exit_price = self.slippage.apply(price, position.side.opposite, slippage)

        result = self.transport.close_position(position.id, exit_price, time)
        if not result.is_success:
            self._close_reasons.pop(position.id, None)
            if all(p.id != position.id for p in self._positions):
                self._positions.append(position)
            self._failed_closes += 1
            self.logger.warning(
                f"Close {position.id} ({reason}) failed: {result.error_message}"
            )
            return False

        self.logger.info(f"Closed {position.id} ({reason}) @ {exit_price:.2f}")
        return True

    def pop_close_reason(self, position_id: str) -> Optional[str]:
        """Reason given when this controller closed the position, if it did."""
        return self._close_reasons.pop(position_id, None)

    def close_side(
        self,
        side: Side,
        price: float,
        atr: Optional[float],
        reason: str,
        time: Optional[datetime] = None,
    ) -> bool:
        """Close every position on `side`. True when all closes succeeded."""
        targets = [p for p in self._positions if p.side is side]
        results = [self.close_position(p, price, atr, reason, time) for p in targets]
        return all(results)

    def close_all(
        self,
        reason: str,
        price: float,
        atr: Optional[float],
        time: Optional[datetime] = None,
    ) -> int:
        """Close everything. Returns the number closed."""
        targets = list(self._positions)
        if targets:
            self.logger.info(f"Closing all {len(targets)} positions: {reason}")
        return sum(1 for p in targets if self.close_position(p, price, atr, reason, time))

    # =========================================================================
    # STATUS
    # =========================================================================

    def get_position_status(self) -> str:
        state = self.state
        if state is PositionState.FLAT:
            return "FLAT"
        side = Side.BUY if state is PositionState.LONG else Side.SELL
        held = [p for p in self._positions if p.side is side]
        quantity = sum(p.quantity for p in held)
        avg_price = sum(p.open_price * p.quantity for p in held) / quantity if quantity else 0.0
        pnl = sum(p.unrealized_pnl for p in held)
        return (
            f"{state.value} {len(held)}/{self.config.max_stack_count} "
            f"@ {avg_price:.2f} (uPnL ${pnl:,.2f})"
        )

    def get_statistics(self) -> Dict:
        return {
            "state": self.state.value,
            "stack_count": self.stack_count,
            "entries": self._stats[TradeAction.ENTRY],
            "stacks": self._stats[TradeAction.STACK],
            "exits": self._stats[TradeAction.EXIT],
            "reversals": self._stats[TradeAction.REVERSAL],
            "suppressed": self._stats[TradeAction.SUPPRESSED],
            "failed_orders": self._failed_orders,
            "failed_closes": self._failed_closes,
        }

"""
Execution Engine - Order Transport and Protective Orders

Handles order placement, modification and position notifications.

RULES:
- Transport failures come back as OrderExecution results, never exceptions
- The broker position list is the only source of truth
- Every open position gets a protective stop and a take-profit limit

PaperBroker is the in-memory dry-run transport used by the CLI replay
and the tests. Live connectivity implements OrderTransport.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from .config import InstrumentConfig
from .models import BrokerPosition, Side
from .session_engine import SessionTracker
from .stop_engine import StopEngine, StopRecord


class OrderResult(Enum):
    """Order execution result."""
    SUCCESS = "SUCCESS"
    FAILED_NO_CONNECTION = "FAILED_NO_CONNECTION"
    FAILED_INVALID_PARAMS = "FAILED_INVALID_PARAMS"
    FAILED_REJECTED = "FAILED_REJECTED"
    FAILED_NOT_FOUND = "FAILED_NOT_FOUND"


class OrderType(Enum):
    MARKET = "MARKET"
    STOP = "STOP"
    LIMIT = "LIMIT"
    CLOSE = "CLOSE"


@dataclass
class OrderExecution:
    """Order execution result details."""
    result: OrderResult
    order_type: OrderType = OrderType.MARKET
    order_id: Optional[str] = None
    position_id: Optional[str] = None
    side: Optional[Side] = None
    quantity: float = 0.0
    price: float = 0.0
    pnl: float = 0.0
    timestamp: datetime = None
    error_message: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc)

    @property
    def is_success(self) -> bool:
        return self.result == OrderResult.SUCCESS

    def to_dict(self) -> dict:
        return {
            "result": self.result.value,
            "order_type": self.order_type.value,
            "order_id": self.order_id,
            "position_id": self.position_id,
            "side": self.side.value if self.side else None,
            "quantity": self.quantity,
            "price": self.price,
            "pnl": self.pnl,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "error": self.error_message,
        }


class PositionListener(ABC):
    """Receives broker position notifications."""

    @abstractmethod
    def on_position_added(self, position: BrokerPosition) -> None:
        ...

    @abstractmethod
    def on_position_removed(self, position: BrokerPosition, pnl: float) -> None:
        ...


class Subscription:
    """Scoped listener registration. Release with close() or a with-block."""

    def __init__(self, release: Callable[[], None]):
        self._release = release
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def close(self) -> None:
        if self._active:
            self._active = False
            self._release()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class OrderTransport(ABC):
    """Order placement and position state of a broker connection."""

    def __init__(self):
        self._listeners: List[PositionListener] = []

    def subscribe(self, listener: PositionListener) -> Subscription:
        self._listeners.append(listener)
        return Subscription(lambda: self._unsubscribe(listener))

    def _unsubscribe(self, listener: PositionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify_added(self, position: BrokerPosition) -> None:
        for listener in list(self._listeners):
            listener.on_position_added(position)

    def _notify_removed(self, position: BrokerPosition, pnl: float) -> None:
        for listener in list(self._listeners):
            listener.on_position_removed(position, pnl)

    @abstractmethod
    def place_market_order(
        self,
        side: Side,
        quantity: float,
        price: float,
        time: Optional[datetime] = None,
        tag: str = "",
    ) -> OrderExecution:
        ...

    @abstractmethod
    def close_position(
        self,
        position_id: str,
        price: float,
        time: Optional[datetime] = None,
    ) -> OrderExecution:
        ...

    @abstractmethod
    def place_stop_order(
        self, position_id: str, side: Side, quantity: float, stop_price: float
    ) -> OrderExecution:
        ...

    @abstractmethod
    def place_limit_order(
        self, position_id: str, side: Side, quantity: float, limit_price: float
    ) -> OrderExecution:
        ...

    @abstractmethod
    def modify_order(self, order_id: str, price: float) -> OrderExecution:
        ...

    @abstractmethod
    def cancel_order(self, order_id: str) -> OrderExecution:
        ...

    @abstractmethod
    def get_open_positions(self) -> List[BrokerPosition]:
        ...


@dataclass
class WorkingOrder:
    """Resting stop or limit order held by the paper broker."""
    order_id: str
    position_id: str
    order_type: OrderType
    side: Side
    quantity: float
    price: float


class PaperBroker(OrderTransport):
    """
    In-memory dry-run transport.

    Market orders fill at the requested price. Resting stop/limit orders
    are recorded but never triggered here; the engine's tick path closes
    positions itself.
    """

    def __init__(
        self,
        instrument: Optional[InstrumentConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__()
        self.instrument = instrument or InstrumentConfig()
        self.logger = logger or logging.getLogger(__name__)

        self._positions: Dict[str, BrokerPosition] = {}
        self._orders: Dict[str, WorkingOrder] = {}
        self._position_counter = 0
        self._order_counter = 0
        self._rejections: Dict[OrderType, int] = {}
        self._cancel_rejections = 0

        self.realized_pnl = 0.0
        self.closed_trades: List[OrderExecution] = []

    @property
    def working_orders(self) -> List[WorkingOrder]:
        return list(self._orders.values())

    def reject_next(self, order_type: OrderType, count: int = 1) -> None:
        """Reject the next `count` requests of `order_type`."""
        self._rejections[order_type] = self._rejections.get(order_type, 0) + count

    def _rejected(self, order_type: OrderType) -> bool:
        pending = self._rejections.get(order_type, 0)
        if pending > 0:
            self._rejections[order_type] = pending - 1
            return True
        return False

    def _next_order_id(self) -> str:
        self._order_counter += 1
        return f"O{self._order_counter}"

    def _pnl(self, position: BrokerPosition, price: float) -> float:
        sign = 1 if position.side is Side.BUY else -1
        return (price - position.open_price) * position.quantity * self.instrument.point_value * sign

    def place_market_order(self, side, quantity, price, time=None, tag=""):
        if quantity <= 0 or price <= 0:
            return OrderExecution(
                result=OrderResult.FAILED_INVALID_PARAMS,
                side=side,
                quantity=quantity,
                price=price,
                error_message="Quantity and price must be positive",
            )

        if self._rejected(OrderType.MARKET):
            self.logger.info(f"PAPER: market {side.value} {quantity} @ {price:.2f} rejected")
            return OrderExecution(
                result=OrderResult.FAILED_REJECTED,
                side=side,
                quantity=quantity,
                price=price,
                error_message="Rejected by paper broker",
            )

        self._position_counter += 1
        position = BrokerPosition(
            id=f"P{self._position_counter}",
            side=side,
            quantity=quantity,
            open_price=price,
            current_price=price,
            open_time=time,
        )
        self._positions[position.id] = position
        self.logger.info(f"PAPER: {side.value} {quantity} @ {price:.2f} -> {position.id} {tag}".rstrip())

        self._notify_added(position)

        return OrderExecution(
            result=OrderResult.SUCCESS,
            order_id=self._next_order_id(),
            position_id=position.id,
            side=side,
            quantity=quantity,
            price=price,
            timestamp=time,
        )

    def close_position(self, position_id, price, time=None):
        position = self._positions.get(position_id)
        if position is None:
            return OrderExecution(
                result=OrderResult.FAILED_NOT_FOUND,
                order_type=OrderType.CLOSE,
                position_id=position_id,
                error_message=f"Position {position_id} not found",
            )

        if self._rejected(OrderType.CLOSE):
            self.logger.info(f"PAPER: close {position_id} rejected")
            return OrderExecution(
                result=OrderResult.FAILED_REJECTED,
                order_type=OrderType.CLOSE,
                position_id=position_id,
                error_message="Rejected by paper broker",
            )

        pnl = self._pnl(position, price)
        del self._positions[position_id]
        position.current_price = price
        position.unrealized_pnl = 0.0
        position.realized_pnl = pnl
        self.realized_pnl += pnl

        execution = OrderExecution(
            result=OrderResult.SUCCESS,
            order_type=OrderType.CLOSE,
            order_id=self._next_order_id(),
            position_id=position_id,
            side=position.side.opposite,
            quantity=position.quantity,
            price=price,
            pnl=pnl,
            timestamp=time,
        )
        self.closed_trades.append(execution)
        self.logger.info(f"PAPER: closed {position_id} @ {price:.2f} PnL=${pnl:,.2f}")

        self._notify_removed(position, pnl)
        return execution

    def _place_resting(self, order_type, position_id, side, quantity, price):
        if position_id not in self._positions:
            return OrderExecution(
                result=OrderResult.FAILED_NOT_FOUND,
                order_type=order_type,
                position_id=position_id,
                error_message=f"Position {position_id} not found",
            )
        if self._rejected(order_type):
            return OrderExecution(
                result=OrderResult.FAILED_REJECTED,
                order_type=order_type,
                position_id=position_id,
                error_message="Rejected by paper broker",
            )

        order = WorkingOrder(self._next_order_id(), position_id, order_type, side, quantity, price)
        self._orders[order.order_id] = order
        return OrderExecution(
            result=OrderResult.SUCCESS,
            order_type=order_type,
            order_id=order.order_id,
            position_id=position_id,
            side=side,
            quantity=quantity,
            price=price,
        )

    def place_stop_order(self, position_id, side, quantity, stop_price):
        return self._place_resting(OrderType.STOP, position_id, side, quantity, stop_price)

    def place_limit_order(self, position_id, side, quantity, limit_price):
        return self._place_resting(OrderType.LIMIT, position_id, side, quantity, limit_price)

    def modify_order(self, order_id, price):
        order = self._orders.get(order_id)
        if order is None:
            return OrderExecution(
                result=OrderResult.FAILED_NOT_FOUND,
                order_id=order_id,
                error_message=f"Order {order_id} not found",
            )
        if self._rejected(order.order_type):
            return OrderExecution(
                result=OrderResult.FAILED_REJECTED,
                order_type=order.order_type,
                order_id=order_id,
                error_message="Rejected by paper broker",
            )
        order.price = price
        return OrderExecution(
            result=OrderResult.SUCCESS,
            order_type=order.order_type,
            order_id=order_id,
            position_id=order.position_id,
            price=price,
        )

    def cancel_order(self, order_id):
        order = self._orders.pop(order_id, None)
        if order is None:
            return OrderExecution(
                result=OrderResult.FAILED_NOT_FOUND,
                order_id=order_id,
                error_message=f"Order {order_id} not found",
            )
        return OrderExecution(
            result=OrderResult.SUCCESS,
            order_type=order.order_type,
            order_id=order_id,
            position_id=order.position_id,
        )

    def get_open_positions(self) -> List[BrokerPosition]:
        return list(self._positions.values())

    def mark_price(self, price: float) -> None:
        """Revalue open positions at `price`."""
        for position in self._positions.values():
            position.current_price = price
            position.unrealized_pnl = self._pnl(position, price)


class ProtectiveOrderManager:
    """
    Places and maintains the stop/limit pair of every open position.

    Take profit comes from SessionTracker, stop from StopEngine.
    """

    def __init__(
        self,
        transport: OrderTransport,
        stop_engine: StopEngine,
        session_tracker: SessionTracker,
        logger: Optional[logging.Logger] = None,
    ):
        self.transport = transport
        self.stop_engine = stop_engine
        self.session_tracker = session_tracker
        self.logger = logger or logging.getLogger(__name__)

        # position_id -> {OrderType: order_id}
        self._orders: Dict[str, Dict[OrderType, str]] = {}
        self._failed_requests = 0

    @property
    def active_order_count(self) -> int:
        return sum(len(orders) for orders in self._orders.values())

    def place_protective_orders(self, position: BrokerPosition) -> StopRecord:
        """Register the stop and send the stop/limit pair."""
        take_profit = self.session_tracker.select_take_profit(position.open_price, position.side)
        record = self.stop_engine.register(
            position.id, position.side, position.open_price, take_profit
        )

        exit_side = position.side.opposite
        orders = self._orders.setdefault(position.id, {})

        stop_result = self.transport.place_stop_order(
            position.id, exit_side, position.quantity, record.current_stop
        )
        if stop_result.is_success:
            orders[OrderType.STOP] = stop_result.order_id
            self.stop_engine.mark_order_sent(position.id, record.current_stop)
        else:
            self._failed_requests += 1
            self.logger.warning(
                f"Stop order for {position.id} failed: {stop_result.error_message}"
            )

        limit_result = self.transport.place_limit_order(
            position.id, exit_side, position.quantity, take_profit
        )
        if limit_result.is_success:
            orders[OrderType.LIMIT] = limit_result.order_id
        else:
            self._failed_requests += 1
            self.logger.warning(
                f"Take-profit order for {position.id} failed: {limit_result.error_message}"
            )

        return record

    def sync_stop_order(self, position_id: str) -> bool:
        """Resend the stop when it moved at least one tick. True if sent."""
        price = self.stop_engine.order_update_due(position_id)
        if price is None:
            return False

        orders = self._orders.setdefault(position_id, {})
        order_id = orders.get(OrderType.STOP)

        if order_id is not None:
            result = self.transport.modify_order(order_id, price)
        else:
            record = next(
                (r for r in self.stop_engine.records if r.position_id == position_id), None
            )
            if record is None:
                return False
            result = self.transport.place_stop_order(
                position_id, record.side.opposite, self._quantity_for(position_id), price
            )
            if result.is_success:
                orders[OrderType.STOP] = result.order_id

        if not result.is_success:
            self._failed_requests += 1
            self.logger.warning(f"Stop update for {position_id} failed: {result.error_message}")
            return False

        self.stop_engine.mark_order_sent(position_id, price)
        self.logger.debug(f"Stop order for {position_id} moved to {price:.2f}")
        return True

    def _quantity_for(self, position_id: str) -> float:
        for position in self.transport.get_open_positions():
            if position.id == position_id:
                return position.quantity
        return 0.0

    def cancel_orders_for_position(self, position_id: str) -> int:
        """Cancel the stop/limit pair of one position. Returns count cancelled."""
        orders = self._orders.pop(position_id, {})
        cancelled = 0
        for order_type, order_id in orders.items():
            result = self.transport.cancel_order(order_id)
            if result.is_success:
                cancelled += 1
            else:
                self._failed_requests += 1
                self.logger.warning(
                    f"Cancel {order_type.value} {order_id} for {position_id} failed: "
                    f"{result.error_message}"
                )
        return cancelled

    def cancel_all(self) -> int:
        cancelled = 0
        for position_id in list(self._orders):
            cancelled += self.cancel_orders_for_position(position_id)
        return cancelled

    def get_statistics(self) -> Dict:
        return {
            "tracked_positions": len(self._orders),
            "active_orders": self.active_order_count,
            "failed_requests": self._failed_requests,
        }

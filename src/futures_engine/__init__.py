"""
Futures Decision Engine

Streaming bar-close / tick decision engine for a single futures contract:
signal voting, session take-profit levels, ATR trailing stops, stacking
and reversals, daily loss governor and trading-window filter.
"""

from .config import EngineConfig, DEFAULT_CONFIG
from .models import Bar, BrokerPosition, IndicatorValues, PositionState, Side
from .indicators import IndicatorProvider
from .signal_engine import CalculatorKind, SignalAggregator, SignalSnapshot
from .session_engine import SessionTracker, SessionType
from .stop_engine import ExitTrigger, StopEngine
from .time_filter import TimeFilter, TradingPeriod
from .execution_engine import OrderResult, OrderTransport, PaperBroker, PositionListener
from .position_controller import PositionController, SlippageModel, TradeAction
from .risk_engine import HaltReason, RiskGate
from .warmup import WarmupGate
from .orchestrator import StrategyEngine

__all__ = [
    "EngineConfig",
    "DEFAULT_CONFIG",
    "Bar",
    "BrokerPosition",
    "IndicatorValues",
    "PositionState",
    "Side",
    "IndicatorProvider",
    "CalculatorKind",
    "SignalAggregator",
    "SignalSnapshot",
    "SessionTracker",
    "SessionType",
    "ExitTrigger",
    "StopEngine",
    "TimeFilter",
    "TradingPeriod",
    "OrderResult",
    "OrderTransport",
    "PaperBroker",
    "PositionListener",
    "PositionController",
    "SlippageModel",
    "TradeAction",
    "HaltReason",
    "RiskGate",
    "WarmupGate",
    "StrategyEngine",
]

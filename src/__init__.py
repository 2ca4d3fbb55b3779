"""
Futures Decision Engine.

A streaming decision engine for a single futures contract with:
- Six-calculator signal voting
- Session high/low take-profit targets
- ATR trailing stops, stacking and reversals
- Daily loss governor and trading-window filter
"""

__version__ = "1.0.0"
__author__ = "Futures Decision Engine"

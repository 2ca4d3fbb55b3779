"""
Decision Engine Configuration

Single source of truth for all engine parameters.
Defaults are the HRVD futures strategy settings.

Sections:
- Instrument: tick size, tick value, exchange timezone
- Signals: calculator windows, thresholds, voting
- Sessions: session windows and take-profit selection
- Stops: ATR stop distance clamps
- Time filter: three trading windows
- Positions: stacking, reversal, slippage
- Risk: daily loss limit
- Warmup: history required before decisions
"""

from dataclasses import dataclass, field, asdict, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml


# Calculator names accepted in entry/exit signal lists
KNOWN_SIGNALS: Tuple[str, ...] = (
    "rvol",
    "vd_strength",
    "vd_price_ratio",
    "custom_hma",
    "vd_volume_ratio",
    "vd_divergence",
)


@dataclass(frozen=True)
class InstrumentConfig:
    """Traded contract."""
    symbol: str = "ES"
    tick_size: float = 0.25
    tick_value: float = 12.5                  # Dollars per tick per contract
    timezone: str = "America/New_York"        # Session-local wall clock

    @property
    def point_value(self) -> float:
        return self.tick_value / self.tick_size


@dataclass(frozen=True)
class SignalConfig:
    """Signal calculator parameters."""
    # RVOL
    rvol_short_window: int = 10
    rvol_long_window: int = 20
    rvol_threshold: float = 1.0

    # Indicator provider
    atr_period: int = 14
    smoothed_period: int = 14
    smoothed_on_price: bool = True            # False = smooth volume instead of close

    # Volume delta
    vd_lookback_window: int = 20
    vd_strength_threshold: float = 1.2
    vd_price_ratio_threshold: float = 1.5
    vd_volume_ratio_threshold: float = 1.3
    use_median: bool = False                  # Median instead of mean for window averages

    # Adaptive Hull MA
    custom_hma_base_period: int = 20

    # Voting
    entry_signals: Tuple[str, ...] = ("rvol", "vd_strength", "vd_price_ratio", "custom_hma")
    exit_signals: Tuple[str, ...] = ("rvol", "vd_strength", "custom_hma")
    entry_signals_required: int = 2
    exit_signals_required: int = 2


@dataclass(frozen=True)
class SessionConfig:
    """Session windows (HHMM session-local, end exclusive) and TP selection."""
    prior_session_start: int = 930
    prior_session_end: int = 1700
    overnight_start: int = 1800
    overnight_end: int = 400
    pre_open_start: int = 400
    pre_open_end: int = 930

    history_size: int = 30                    # Archived sessions kept
    fallback_sessions: int = 9                # Archived sessions scanned for levels
    min_levels: int = 3                       # Highs/lows wanted before fallback stops

    min_tp_distance_ticks: int = 8
    alt_take_profit_ticks: int = 12


@dataclass(frozen=True)
class StopConfig:
    """ATR stop parameters."""
    atr_multiplier: float = 1.0
    min_stop_distance_ticks: int = 4
    max_stop_distance_ticks: int = 20


@dataclass(frozen=True)
class TimeFilterConfig:
    """Trading windows in HHMM session-local time. start > end wraps midnight."""
    period1_enabled: bool = False
    period1_start: int = 930
    period1_end: int = 1130

    period2_enabled: bool = True
    period2_start: int = 1300
    period2_end: int = 1500

    period3_enabled: bool = True
    period3_start: int = 400
    period3_end: int = 929

    approaching_end_minutes: int = 5          # No new entries this close to period end

    def period_specs(self) -> List[Tuple[str, bool, int, int]]:
        return [
            ("Period 1", self.period1_enabled, self.period1_start, self.period1_end),
            ("Period 2", self.period2_enabled, self.period2_start, self.period2_end),
            ("Period 3", self.period3_enabled, self.period3_start, self.period3_end),
        ]


@dataclass(frozen=True)
class PositionConfig:
    """Position control. max_stack_count = 1 disables stacking."""
    contract_size: float = 1.0
    max_stack_count: int = 3
    allow_reversal: bool = True

    slippage_atr_multiplier: float = 0.1
    slippage_variation: float = 0.2           # +/- fraction applied to base slippage
    slippage_seed: Optional[int] = None       # None = unseeded

    @property
    def max_position_size(self) -> float:
        return self.contract_size * self.max_stack_count


@dataclass(frozen=True)
class RiskConfig:
    """Daily loss governor."""
    enable_daily_loss_limit: bool = False
    max_daily_loss: float = 1000.0
    exposure_multiple: float = 3.0            # Aggregate exposure cap = max size x this


@dataclass(frozen=True)
class WarmupConfig:
    """History required before any decision is taken."""
    target_hours: float = 72.0
    span_tolerance: float = 0.9
    min_hours_with_data: float = 24.0
    min_bars: int = 100
    progress_log_interval: int = 10


@dataclass(frozen=True)
class PathConfig:
    """File paths for logging."""
    base_dir: Path = Path("engine_data")

    @property
    def logs_dir(self) -> Path:
        return self.base_dir / "logs"

    @property
    def trade_log(self) -> Path:
        return self.logs_dir / "trades.csv"

    @property
    def parameter_log(self) -> Path:
        return self.logs_dir / "parameters.csv"

    @property
    def risk_log(self) -> Path:
        return self.logs_dir / "risk_events.csv"

    @property
    def system_log(self) -> Path:
        return self.logs_dir / "system.log"


_SECTIONS = {
    "instrument": InstrumentConfig,
    "signals": SignalConfig,
    "sessions": SessionConfig,
    "stops": StopConfig,
    "time_filter": TimeFilterConfig,
    "positions": PositionConfig,
    "risk": RiskConfig,
    "warmup": WarmupConfig,
}


def _valid_hhmm(value: int) -> bool:
    return 0 <= value <= 2359 and value % 100 < 60


@dataclass
class EngineConfig:
    """Master configuration - aggregates all configs."""
    instrument: InstrumentConfig = field(default_factory=InstrumentConfig)
    signals: SignalConfig = field(default_factory=SignalConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    stops: StopConfig = field(default_factory=StopConfig)
    time_filter: TimeFilterConfig = field(default_factory=TimeFilterConfig)
    positions: PositionConfig = field(default_factory=PositionConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    warmup: WarmupConfig = field(default_factory=WarmupConfig)
    paths: PathConfig = field(default_factory=PathConfig)

    # Engine behavior
    parameter_log_interval: int = 3           # Bars between parameter snapshots
    write_audit_logs: bool = True             # CSV trade/parameter/risk logs
    verbose: bool = True

    def ensure_directories(self) -> None:
        """Create required directories."""
        self.paths.logs_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """Build a config from a plain dict (as loaded from YAML)."""
        data = data or {}
        kwargs: Dict[str, Any] = {}

        for name, section_cls in _SECTIONS.items():
            section = dict(data.get(name) or {})
            known = {f.name for f in fields(section_cls)}
            unknown = set(section) - known
            if unknown:
                raise ValueError(f"Unknown keys in '{name}': {sorted(unknown)}")
            for key in ("entry_signals", "exit_signals"):
                if key in section:
                    section[key] = tuple(section[key])
            kwargs[name] = section_cls(**section)

        paths = data.get("paths") or {}
        if "base_dir" in paths:
            kwargs["paths"] = PathConfig(base_dir=Path(paths["base_dir"]))

        for key in ("parameter_log_interval", "write_audit_logs", "verbose"):
            if key in data:
                kwargs[key] = data[key]

        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Plain, YAML-safe dict."""
        result: Dict[str, Any] = {}
        for name in _SECTIONS:
            section = asdict(getattr(self, name))
            for key in ("entry_signals", "exit_signals"):
                if key in section:
                    section[key] = list(section[key])
            result[name] = section
        result["paths"] = {"base_dir": str(self.paths.base_dir)}
        result["parameter_log_interval"] = self.parameter_log_interval
        result["write_audit_logs"] = self.write_audit_logs
        result["verbose"] = self.verbose
        return result

    @classmethod
    def from_yaml(cls, path: str) -> "EngineConfig":
        """Load settings from YAML file."""
        with open(path, "r") as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data or {})

    def to_yaml(self, path: str) -> None:
        """Save settings to YAML file."""
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    def validate(self) -> Tuple[bool, List[str]]:
        """Validate configuration."""
        errors = []
        sig = self.signals

        if self.instrument.tick_size <= 0:
            errors.append("tick_size must be positive")

        try:
            ZoneInfo(self.instrument.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            errors.append(f"unknown timezone: {self.instrument.timezone}")

        # Signals
        for name in ("rvol_short_window", "rvol_long_window", "vd_lookback_window",
                     "atr_period", "smoothed_period", "custom_hma_base_period"):
            if getattr(sig, name) < 1:
                errors.append(f"{name} must be at least 1")

        for label, names, required in (
            ("entry", sig.entry_signals, sig.entry_signals_required),
            ("exit", sig.exit_signals, sig.exit_signals_required),
        ):
            unknown = [n for n in names if n not in KNOWN_SIGNALS]
            if unknown:
                errors.append(f"unknown {label} signals: {unknown}")
            if required < 0 or required > len(names):
                errors.append(f"{label}_signals_required must be between 0 and {len(names)}")

        # Sessions
        for name in ("prior_session_start", "prior_session_end", "overnight_start",
                     "overnight_end", "pre_open_start", "pre_open_end"):
            if not _valid_hhmm(getattr(self.sessions, name)):
                errors.append(f"{name} is not a valid HHMM time")

        # Stops
        if self.stops.min_stop_distance_ticks < 0:
            errors.append("min_stop_distance_ticks must be >= 0")
        if self.stops.min_stop_distance_ticks > self.stops.max_stop_distance_ticks:
            errors.append("min_stop_distance_ticks must be <= max_stop_distance_ticks")

        # Time filter
        specs = self.time_filter.period_specs()
        for name, enabled, start, end in specs:
            if not (_valid_hhmm(start) and _valid_hhmm(end)):
                errors.append(f"{name} has invalid HHMM bounds")
        if not any(enabled for _, enabled, _, _ in specs):
            errors.append("no trading periods enabled - engine will not trade")

        # Positions
        if self.positions.contract_size <= 0:
            errors.append("contract_size must be positive")
        if self.positions.max_stack_count < 1:
            errors.append("max_stack_count must be at least 1")
        if self.positions.slippage_atr_multiplier < 0:
            errors.append("slippage_atr_multiplier must be >= 0")

        # Risk
        if self.risk.max_daily_loss < 0:
            errors.append("max_daily_loss must be >= 0")

        if self.parameter_log_interval < 1:
            errors.append("parameter_log_interval must be at least 1")

        return len(errors) == 0, errors

    def get_summary(self) -> str:
        """Get settings summary string."""
        tf = self.time_filter
        periods = ", ".join(
            f"{name} {start:04d}-{end:04d}"
            for name, enabled, start, end in tf.period_specs() if enabled
        ) or "none"
        return f"""
Decision Engine Settings Summary
================================
Instrument: {self.instrument.symbol} (tick {self.instrument.tick_size}, ${self.instrument.tick_value}/tick)
Timezone: {self.instrument.timezone}

Signals:
  Entry: {', '.join(self.signals.entry_signals)} (need {self.signals.entry_signals_required})
  Exit: {', '.join(self.signals.exit_signals)} (need {self.signals.exit_signals_required})
  Averaging: {'median' if self.signals.use_median else 'mean'}

Stops:
  ATR x{self.stops.atr_multiplier}, {self.stops.min_stop_distance_ticks}-{self.stops.max_stop_distance_ticks} ticks
  TP min {self.sessions.min_tp_distance_ticks} ticks, alternate {self.sessions.alt_take_profit_ticks} ticks

Positions:
  Contract size: {self.positions.contract_size}
  Max stack: {self.positions.max_stack_count}
  Reversals: {'enabled' if self.positions.allow_reversal else 'disabled'}
  Slippage: {self.positions.slippage_atr_multiplier} x ATR

Risk:
  Daily loss limit: {'$' + format(self.risk.max_daily_loss, ',.2f') if self.risk.enable_daily_loss_limit else 'disabled'}

Trading periods: {periods}
"""


# Default configuration instance
DEFAULT_CONFIG = EngineConfig()


# Default configuration template
DEFAULT_CONFIG_YAML = """
# Futures Decision Engine Configuration

instrument:
  symbol: ES
  tick_size: 0.25
  tick_value: 12.5
  timezone: America/New_York

signals:
  rvol_short_window: 10
  rvol_long_window: 20
  rvol_threshold: 1.0
  atr_period: 14
  smoothed_period: 14
  smoothed_on_price: true
  vd_lookback_window: 20
  vd_strength_threshold: 1.2
  vd_price_ratio_threshold: 1.5
  vd_volume_ratio_threshold: 1.3
  use_median: false
  custom_hma_base_period: 20
  entry_signals: [rvol, vd_strength, vd_price_ratio, custom_hma]
  exit_signals: [rvol, vd_strength, custom_hma]
  entry_signals_required: 2
  exit_signals_required: 2

stops:
  atr_multiplier: 1.0
  min_stop_distance_ticks: 4
  max_stop_distance_ticks: 20

sessions:
  min_tp_distance_ticks: 8
  alt_take_profit_ticks: 12

time_filter:
  period1_enabled: false
  period1_start: 930
  period1_end: 1130
  period2_enabled: true
  period2_start: 1300
  period2_end: 1500
  period3_enabled: true
  period3_start: 400
  period3_end: 929

positions:
  contract_size: 1.0
  max_stack_count: 3
  allow_reversal: true
  slippage_atr_multiplier: 0.1

risk:
  enable_daily_loss_limit: false
  max_daily_loss: 1000.0

paths:
  base_dir: engine_data
"""

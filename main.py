"""
Futures Decision Engine - Main Entry Point

Drives the engine from a CSV of closed bars on the paper broker.

Usage:
    python main.py replay --bars data/es_1m.csv --config engine.yaml --seed 7
    python main.py init-config --output engine.yaml
    python main.py validate-config --config engine.yaml

Bar CSV columns: time, open, high, low, close, volume
(optional: buy_volume, sell_volume). Times without an offset are UTC.
"""

import argparse
import logging
import random
import sys
from pathlib import Path
from typing import Iterator, List, Optional

import pandas as pd

from src.futures_engine.config import DEFAULT_CONFIG_YAML, EngineConfig
from src.futures_engine.execution_engine import PaperBroker
from src.futures_engine.models import Bar
from src.futures_engine.orchestrator import StrategyEngine

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ["time", "open", "high", "low", "close", "volume"]


def load_bars(path: Path) -> List[Bar]:
    """Load closed bars from CSV, sorted by time."""
    df = pd.read_csv(path)
    df.columns = [c.strip().lower() for c in df.columns]

    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"{path}: missing columns {missing}")

    df["time"] = pd.to_datetime(df["time"], utc=True)
    df = df.sort_values("time").reset_index(drop=True)
    has_delta = "buy_volume" in df.columns and "sell_volume" in df.columns

    bars = []
    for row in df.itertuples(index=False):
        buy = sell = None
        if has_delta and pd.notna(row.buy_volume) and pd.notna(row.sell_volume):
            buy, sell = float(row.buy_volume), float(row.sell_volume)
        bars.append(Bar(
            time=row.time.to_pydatetime(),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
            buy_volume=buy,
            sell_volume=sell,
        ))
    return bars


def intrabar_ticks(bar: Bar) -> Iterator[float]:
    """Open, then the nearer extreme, the far extreme, close."""
    yield bar.open
    if bar.close >= bar.open:
        yield bar.low
        yield bar.high
    else:
        yield bar.high
        yield bar.low
    yield bar.close


def load_config(path: Optional[str]) -> EngineConfig:
    if path is None:
        return EngineConfig()
    return EngineConfig.from_yaml(path)


def run_replay(config: EngineConfig, bars_path: Path, seed: Optional[int]) -> StrategyEngine:
    """Feed every bar (with synthetic ticks) through the engine."""
    bars = load_bars(bars_path)
    logger.info(f"Loaded {len(bars)} bars from {bars_path}")

    broker = PaperBroker(config.instrument)
    rng = random.Random(seed) if seed is not None else None
    engine = StrategyEngine(config, transport=broker, rng=rng)
    broker.logger = engine.logger

    try:
        for bar in bars:
            for price in intrabar_ticks(bar):
                broker.mark_price(price)
                engine.process_tick(price, time=bar.time)
            engine.process_bar_close(bar)
    finally:
        engine.shutdown()

    return engine


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='Futures Decision Engine',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # Replay command
    replay_parser = subparsers.add_parser('replay', help='Replay bars on the paper broker')
    replay_parser.add_argument('--bars', type=str, required=True, help='Bar CSV file')
    replay_parser.add_argument('--config', type=str, default=None, help='YAML config')
    replay_parser.add_argument('--seed', type=int, default=None, help='Slippage random seed')

    # Init config command
    init_parser = subparsers.add_parser('init-config', help='Write a default config file')
    init_parser.add_argument('--output', type=str, default='engine.yaml', help='Output path')

    # Validate config command
    validate_parser = subparsers.add_parser('validate-config', help='Validate a config file')
    validate_parser.add_argument('--config', type=str, required=True, help='YAML config')

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s | %(levelname)-8s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )

    try:
        if args.command == 'init-config':
            output = Path(args.output)
            if output.exists():
                print(f"{output} already exists")
                return 1
            output.write_text(DEFAULT_CONFIG_YAML.lstrip())
            print(f"Default config written to {output}")
            return 0

        config = load_config(args.config)
        valid, errors = config.validate()

        if args.command == 'validate-config':
            if valid:
                print("Configuration OK")
                print(config.get_summary())
                return 0
            print("Configuration errors:")
            for error in errors:
                print(f"  - {error}")
            return 1

        if args.command == 'replay':
            if not valid:
                for error in errors:
                    logger.error(f"Config: {error}")
                return 1
            engine = run_replay(config, Path(args.bars), args.seed)
            print(engine.summary_report())
            return 0

    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130
    except (OSError, ValueError) as e:
        logger.error(f"Error: {e}")
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())

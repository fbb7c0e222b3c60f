"""
harness.py

Broker interface conformance run against IBKR paper trading.

Cycles the test assets through alternating open/close phases, one per
bar, with limit prices far enough off-market that nothing should fill.
Missed orders are repriced or given up by the adaptive order controller.

Run from project root:

    python harness.py --settings settings.json
    python harness.py --assets SIRI,NOK,F --order-mode adaptive --trade

Without --trade the run stops at the confirmation gate and asks on the
console before any order is sent.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

# --- Python 3.11+ event loop fix for ib_insync / eventkit ---
# ib_insync expects an event loop to exist when it is imported.
if sys.version_info >= (3, 11):
    try:
        asyncio.get_event_loop()
    except RuntimeError:
        asyncio.set_event_loop(asyncio.new_event_loop())

from ib_insync import IB

from bar_clock import TICK_SECONDS, TICKS_PER_BAR, BarClock
from broker import HarnessError, IbBroker
from market_hours import now_pt
from order_controller import (
    GTC_DURATION_TICKS,
    IOC_RETRY_DELAY_TICKS,
    AdaptiveOrderController,
    OrderMode,
)
from orders import Direction
from roster import SETTINGS_PATH, AssetRoster, SettingsRosterSource, StaticRosterSource
from scheduler import DEFAULT_LOTS, MAX_LIMIT, TOTAL_RUNS, RunScheduler, SchedulerConfig


# === IB CONNECTION CONFIG ===
IB_HOST = "127.0.0.1"
IB_PORT = 7497        # paper TWS; 4002 for paper Gateway
IB_CLIENT_ID = 7

LOG_DIR = Path("logs")

ORDER_MODES = {
    "fixed": OrderMode.FIXED,
    "adaptive": OrderMode.ADAPTIVE_NEAR_TOUCH,
    "gtc": OrderMode.GTC_EXTENDED,
}


@dataclass
class HarnessConfig:
    host: str = IB_HOST
    port: int = IB_PORT
    client_id: int = IB_CLIENT_ID
    settings: Path = SETTINGS_PATH
    assets: Optional[List[str]] = None
    total_runs: int = TOTAL_RUNS
    order_mode: OrderMode = OrderMode.FIXED
    initial_direction: Direction = Direction.LONG
    lots: int = DEFAULT_LOTS
    max_limit: float = MAX_LIMIT
    tick_seconds: float = TICK_SECONDS
    ticks_per_bar: int = TICKS_PER_BAR
    retry_delay_ticks: int = IOC_RETRY_DELAY_TICKS
    gtc_duration_ticks: int = GTC_DURATION_TICKS
    require_market_hours: bool = False
    auto_confirm: bool = False
    verbose: bool = False


def parse_args(argv: Optional[List[str]] = None) -> HarnessConfig:
    parser = argparse.ArgumentParser(description="IBKR broker interface conformance harness")
    parser.add_argument("--host", default=IB_HOST)
    parser.add_argument("--port", type=int, default=IB_PORT)
    parser.add_argument("--client-id", type=int, default=IB_CLIENT_ID)
    parser.add_argument("--settings", type=Path, default=SETTINGS_PATH,
                        help="Settings file with a comma-separated testAssets entry")
    parser.add_argument("--assets", type=str, default=None,
                        help="Comma-separated test assets (overrides --settings)")
    parser.add_argument("--total-runs", type=int, default=TOTAL_RUNS)
    parser.add_argument("--order-mode", choices=sorted(ORDER_MODES), default="fixed")
    parser.add_argument("--initial-direction", choices=["long", "short"], default="long")
    parser.add_argument("--lots", type=int, default=DEFAULT_LOTS)
    parser.add_argument("--max-limit", type=float, default=MAX_LIMIT,
                        help="Spread multiples between close and the opening limit")
    parser.add_argument("--tick-seconds", type=float, default=TICK_SECONDS)
    parser.add_argument("--ticks-per-bar", type=int, default=TICKS_PER_BAR)
    parser.add_argument("--retry-delay-ticks", type=int, default=IOC_RETRY_DELAY_TICKS)
    parser.add_argument("--gtc-duration-ticks", type=int, default=GTC_DURATION_TICKS)
    parser.add_argument("--market-hours", action="store_true",
                        help="Only deliver ticks while the NYSE session is open")
    parser.add_argument("--trade", action="store_true",
                        help="Skip the confirmation gate")
    parser.add_argument("--verbose", "-v", action="store_true")

    args = parser.parse_args(argv)

    if args.total_runs < 1:
        parser.error("--total-runs must be at least 1")
    if args.lots < 1:
        parser.error("--lots must be at least 1")

    assets = None
    if args.assets:
        assets = [a.strip().upper() for a in args.assets.split(",") if a.strip()]

    return HarnessConfig(
        host=args.host,
        port=args.port,
        client_id=args.client_id,
        settings=args.settings,
        assets=assets,
        total_runs=args.total_runs,
        order_mode=ORDER_MODES[args.order_mode],
        initial_direction=Direction[args.initial_direction.upper()],
        lots=args.lots,
        max_limit=args.max_limit,
        tick_seconds=args.tick_seconds,
        ticks_per_bar=args.ticks_per_bar,
        retry_delay_ticks=args.retry_delay_ticks,
        gtc_duration_ticks=args.gtc_duration_ticks,
        require_market_hours=args.market_hours,
        auto_confirm=args.trade,
        verbose=args.verbose,
    )


def setup_logging(verbose: bool = False) -> logging.Logger:
    LOG_DIR.mkdir(exist_ok=True)

    today_str = now_pt().strftime("%Y%m%d")
    log_file = LOG_DIR / f"harness_{today_str}.log"

    level = logging.DEBUG if verbose else logging.INFO
    logger = logging.getLogger("broker_harness")
    logger.setLevel(level)
    logger.handlers.clear()

    formatter = logging.Formatter(
        "%(asctime)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(level)
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    logger.info("[STATUS] Logging initialized. Log file: %s", log_file)
    return logger


def build_harness(ib: IB, logger: logging.Logger, config: HarnessConfig):
    """Wire broker, roster, controller, clock and scheduler together."""
    broker = IbBroker(ib, logger)

    if config.assets:
        source = StaticRosterSource(config.assets)
    else:
        source = SettingsRosterSource(config.settings)
    roster = AssetRoster(source, broker, logger)

    controller = AdaptiveOrderController(
        broker,
        logger,
        retry_delay_ticks=config.retry_delay_ticks,
        gtc_duration_ticks=config.gtc_duration_ticks,
    )

    clock = BarClock(
        ib,
        logger,
        tick_seconds=config.tick_seconds,
        ticks_per_bar=config.ticks_per_bar,
        require_market_hours=config.require_market_hours,
        auto_confirm=config.auto_confirm,
    )

    scheduler = RunScheduler(
        clock,
        broker,
        roster,
        controller,
        logger,
        SchedulerConfig(
            total_runs=config.total_runs,
            initial_direction=config.initial_direction,
            order_mode=config.order_mode,
            max_limit=config.max_limit,
            lots=config.lots,
        ),
    )
    return clock, scheduler, controller


def main(argv: Optional[List[str]] = None) -> int:
    config = parse_args(argv)
    logger = setup_logging(config.verbose)

    ib = IB()

    def on_disconnected():
        logger.warning("[WARN] Disconnected from IBKR.")

    ib.disconnectedEvent += on_disconnected

    logger.info(
        "[STATUS] Connecting to IBKR at %s:%s with clientId=%s ...",
        config.host, config.port, config.client_id,
    )

    exit_code = 0
    try:
        ib.connect(config.host, config.port, clientId=config.client_id)
        if not ib.isConnected():
            logger.warning("[WARN] ib.isConnected() returned False; exiting.")
            return 1

        logger.info("[SYNC] Connected to IBKR (clientId=%s).", config.client_id)

        clock, scheduler, controller = build_harness(ib, logger, config)
        clock.run(controller.on_tick, scheduler.on_bar)

        if not scheduler.state.finished or scheduler.state.run_num < config.total_runs:
            logger.warning("[STATUS] Run stopped before completion (run #%d).", scheduler.state.run_num)
            exit_code = 1

    except HarnessError as exc:
        logger.exception("[WARN] Harness cannot proceed: %s", exc)
        exit_code = 2
    except KeyboardInterrupt:
        logger.info("[STATUS] KeyboardInterrupt received; shutting down.")
        exit_code = 1
    except Exception as exc:
        logger.exception("[WARN] Unhandled exception in main(): %s", exc)
        exit_code = 1
    finally:
        if ib.isConnected():
            ib.disconnect()
            logger.info("[SYNC] Disconnected from IBKR.")
        logger.info("[STATUS] Harness terminated.")

    return exit_code


if __name__ == "__main__":
    sys.exit(main())

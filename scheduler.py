"""
scheduler.py

RunScheduler: the bar-driven state machine of a harness run.

    Initialize -> Gate* -> (Opening <-> Closing)* -> Terminate

- Initialize (first bar only): placeholder instrument, broker test mode,
  roster load.
- Gate: while the host waits for the operator to confirm, nothing is
  traded and the phase counter does not move.
- Phase 0 logs the initialization run. Odd phases open every roster
  instrument in trade_type's direction and then flip trade_type; even
  phases close the side opened in the previous odd phase.
- The counter advances by one per bar; when it reaches total_runs the
  run report is logged and the host is asked to stop.

All run-level mutable state lives in SchedulerState and is only changed
here. The controller reads none of it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Tuple

from order_controller import OrderIntent, OrderMode
from orders import Direction
from roster import MAX_TEST_SLOTS, PLACEHOLDER_INSTRUMENT

if TYPE_CHECKING:
    from broker import IbBroker
    from order_controller import AdaptiveOrderController
    from roster import AssetRoster


TOTAL_RUNS = 9
MAX_LIMIT = 10      # spread multiples between close and the opening limit
MAX_LOTS = 50
DEFAULT_LOTS = MAX_LOTS // 4


class PhaseKind(Enum):
    INITIALIZE = "INITIALIZE"
    OPEN = "OPEN"
    CLOSE = "CLOSE"


@dataclass(frozen=True)
class PhaseRecord:
    run_num: int
    kind: PhaseKind
    direction: Optional[Direction]
    instruments: Tuple[str, ...]


@dataclass
class SchedulerState:
    """Everything the scheduler carries from one bar to the next."""
    initial_direction: Direction = Direction.LONG
    run_num: int = 0
    trade_type: Direction = Direction.LONG
    closing_type: Direction = Direction.LONG
    initialized: bool = False
    finished: bool = False
    phase_log: List[PhaseRecord] = field(default_factory=list)

    def reset(self) -> None:
        self.run_num = 0
        self.trade_type = self.initial_direction
        self.closing_type = self.initial_direction
        self.initialized = False
        self.finished = False
        self.phase_log = []


@dataclass
class SchedulerConfig:
    total_runs: int = TOTAL_RUNS
    initial_direction: Direction = Direction.LONG
    order_mode: OrderMode = OrderMode.FIXED
    max_limit: float = MAX_LIMIT
    lots: int = DEFAULT_LOTS
    max_slots: int = MAX_TEST_SLOTS


class RunScheduler:
    """
    Drives one conformance run, one phase per bar.

    The host must provide is_first_tick(), is_awaiting_user_confirmation(),
    pause(message), request_stop() and stop_requested.
    """

    def __init__(
        self,
        host,
        broker: "IbBroker",
        roster: "AssetRoster",
        controller: "AdaptiveOrderController",
        logger: logging.Logger,
        config: Optional[SchedulerConfig] = None,
    ) -> None:
        self.host = host
        self.broker = broker
        self.roster = roster
        self.controller = controller
        self.logger = logger
        self.config = config or SchedulerConfig()

        self.state = SchedulerState(initial_direction=self.config.initial_direction)
        self.state.reset()

    # ---------- per-bar entry point ---------- #

    def on_bar(self, bar: int) -> None:
        state = self.state
        if state.finished:
            return

        if self.host.stop_requested:
            self._abort()
            return

        if self.host.is_first_tick() and not state.initialized:
            self._initialize()

        if self.host.is_awaiting_user_confirmation():
            self.host.pause("Test run ready. Confirm to start trading.")
            return

        if state.run_num == 0:
            self.logger.info("[RUN] INITIALIZATION RUN...")
            state.phase_log.append(PhaseRecord(0, PhaseKind.INITIALIZE, None, ()))
        else:
            self.logger.info("[RUN] Entered TESTING RUN #%d...", state.run_num)
            if state.run_num % 2 == 0:
                self._closing()
            else:
                self._opening()

        state.run_num += 1
        if state.run_num >= self.config.total_runs:
            self._terminate()

    # ---------- phases ---------- #

    def _initialize(self) -> None:
        self.logger.info("[RUN] Initializing test run.")
        self.roster.register_placeholder()
        self.broker.test_mode = True

        self.logger.info("[RUN] " + "*" * 58)
        self.logger.info("[RUN] Broker interface conformance test")
        self.logger.info("[RUN] " + "*" * 58)

        self.roster.load(self.config.max_slots)
        self.roster.select(PLACEHOLDER_INSTRUMENT)
        self.state.initialized = True

        self.logger.info(
            "[RUN] %d test assets, %d runs, mode=%s, first direction=%s",
            self.roster.count,
            self.config.total_runs,
            self.config.order_mode.name,
            self.state.trade_type.value,
        )

    def _opening(self) -> None:
        state = self.state
        direction = state.trade_type
        factor = -self.config.max_limit if direction.is_long else self.config.max_limit

        self.logger.info("[RUN] Going %s for...", direction.value)
        touched = []
        for symbol in self.roster.instruments:
            self.roster.select(symbol)
            self.logger.info("[RUN]   Asset = %s", symbol)
            intent = OrderIntent(
                instrument=symbol,
                direction=direction,
                mode=self.config.order_mode,
                price_offset_factor=factor,
            )
            self.controller.submit(intent, self.config.lots)
            touched.append(symbol)

        state.phase_log.append(PhaseRecord(state.run_num, PhaseKind.OPEN, direction, tuple(touched)))
        state.closing_type = direction
        state.trade_type = direction.flipped()

    def _closing(self) -> None:
        state = self.state
        direction = state.closing_type

        self.logger.info("[RUN] Closing %s trades for...", direction.value)
        touched = []
        for symbol in self.roster.instruments:
            self.roster.select(symbol)
            self.logger.info("[RUN]   Asset = %s", symbol)
            self.controller.close_position(symbol, direction, self.config.order_mode)
            touched.append(symbol)

        state.phase_log.append(PhaseRecord(state.run_num, PhaseKind.CLOSE, direction, tuple(touched)))

    def _terminate(self) -> None:
        self.logger.info("[RUN] " + "*" * 58)
        self.logger.info("[RUN] Broker interface conformance test end")
        self.logger.info("[RUN] " + "*" * 58)
        for line in self.controller.report.summary_lines():
            self.logger.info("[RUN]   %s", line)

        self.controller.halt()
        self.state.finished = True
        self.host.request_stop()

    def _abort(self) -> None:
        self.logger.warning(
            "[RUN] Stop requested during run #%d; no further orders.", self.state.run_num
        )
        self.controller.halt()
        self.state.finished = True

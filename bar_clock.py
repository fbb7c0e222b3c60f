"""
bar_clock.py

BarClock: the host runtime that feeds the harness its time base.

ib.sleep() keeps the ib_insync event loop running between ticks, so
order status events arrive while the clock waits. Every tick goes to
the controller; every ticks_per_bar ticks a bar goes to the scheduler.

The clock also owns the three host-side signals the scheduler reads:
- is_first_tick(): true while the first bar is being delivered
- is_awaiting_user_confirmation(): operator has not confirmed trading
- stop_requested: set by the scheduler, Ctrl+C, or a lost connection
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Optional

import market_hours

if TYPE_CHECKING:
    from ib_insync import IB


TICK_SECONDS = 10.0
TICKS_PER_BAR = 6
CONFIRM_WORD = "TRADE"


def console_confirm(message: str) -> bool:
    """Ask the operator on the console; only the confirm word releases the gate."""
    answer = input(f"{message} Type {CONFIRM_WORD} to continue: ")
    return answer.strip().upper() == CONFIRM_WORD


class BarClock:
    def __init__(
        self,
        ib: "IB",
        logger: logging.Logger,
        tick_seconds: float = TICK_SECONDS,
        ticks_per_bar: int = TICKS_PER_BAR,
        require_market_hours: bool = False,
        confirm: Optional[Callable[[str], bool]] = None,
        auto_confirm: bool = False,
    ) -> None:
        self.ib = ib
        self.logger = logger
        self.tick_seconds = tick_seconds
        self.ticks_per_bar = max(1, ticks_per_bar)
        self.require_market_hours = require_market_hours
        self.confirm = confirm or console_confirm

        self.tick = 0
        self.bar = 0
        self.stop_requested = False
        self._awaiting_confirmation = not auto_confirm
        self._market_closed_logged = False

    # ---------- host signals ---------- #

    def is_first_tick(self) -> bool:
        return self.bar == 1

    def is_awaiting_user_confirmation(self) -> bool:
        return self._awaiting_confirmation

    def pause(self, message: str) -> None:
        """
        Hold the run at the gate. The operator is asked once per bar; a
        refusal leaves the gate closed for the next bar.
        """
        self.logger.info("[CLOCK] %s", message)
        if self.confirm(message):
            self._awaiting_confirmation = False
            self.logger.info("[CLOCK] Operator confirmed; trading enabled.")
        else:
            self.logger.info("[CLOCK] Not confirmed; holding at the gate.")

    def request_stop(self) -> None:
        if not self.stop_requested:
            self.logger.info("[CLOCK] Stop requested.")
        self.stop_requested = True

    # ---------- loop ---------- #

    def _market_ok(self) -> bool:
        if not self.require_market_hours:
            return True
        if market_hours.is_market_open():
            if self._market_closed_logged:
                self.logger.info("[CLOCK] Market open; resuming ticks.")
            self._market_closed_logged = False
            return True
        if not self._market_closed_logged:
            self.logger.info("[CLOCK] Market closed; holding ticks until the session opens.")
            self._market_closed_logged = True
        return False

    def step(self, on_tick: Callable[[int], None], on_bar: Callable[[int], None]) -> None:
        """Deliver one tick (and a bar when one is due)."""
        self.tick += 1
        on_tick(self.tick)
        if self.tick % self.ticks_per_bar == 1 or self.ticks_per_bar == 1:
            self.bar += 1
            on_bar(self.bar)

    def run(self, on_tick: Callable[[int], None], on_bar: Callable[[int], None]) -> None:
        """
        Tick until a stop is requested or the IB connection drops.

        A bar is delivered on the first tick and every ticks_per_bar ticks
        after it.
        """
        self.logger.info(
            "[CLOCK] Running: tick=%.1fs, %d ticks per bar.",
            self.tick_seconds, self.ticks_per_bar,
        )
        try:
            while not self.stop_requested:
                if not self.ib.isConnected():
                    self.logger.warning("[CLOCK] IBKR connection lost; stopping.")
                    self.request_stop()
                    on_bar(self.bar)
                    break

                if self._market_ok():
                    self.step(on_tick, on_bar)

                if not self.stop_requested:
                    self.ib.sleep(self.tick_seconds)
        except KeyboardInterrupt:
            self.logger.info("[CLOCK] KeyboardInterrupt received; stopping.")
            self.request_stop()
            on_bar(self.bar)

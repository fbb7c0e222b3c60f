"""
order_controller.py

Adaptive order controller: prices the harness's deliberately unfillable
limit orders and adapts them while they keep missing.

Two layers:

1. Pure functions, testable without a broker or a clock:
   - compute_initial_limit(): mode-specific limit + lifetime policy
   - compute_step(): per-order reprice step
   - on_missed_fill(): Retry(new_limit, delay) or Cancel for one order

2. AdaptiveOrderController, which owns one PendingOrderState per order in
   flight. Broker status callbacks only mark orders (filled, partially
   filled, missed); every decision is taken in on_tick(), so a miss is
   handled on the tick after it is reported. An order that ends with a
   partial fill is treated as a miss for the shares still open.

Decision rules for a missed order:
- LONG entry: give up once the limit is above the open-attempt price,
  otherwise raise it by one step.
- SHORT entry: give up once the limit is below open-attempt price minus
  spread, otherwise lower it by one step.
- Exits: never give up; a LONG exit steps down, a SHORT exit steps up.

Only ADAPTIVE_NEAR_TOUCH and GTC_EXTENDED orders are adapted. A missed
FIXED order is released and logged as missed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple, Union

from orders import (
    IMMEDIATE,
    Direction,
    LifetimePolicy,
    gtc_policy,
    limit_on_grid,
)

if TYPE_CHECKING:
    from broker import IbBroker, OrderOutcome


# Missed immediate orders wait this many ticks before going out again
# (30 s at the default 10 s tick).
IOC_RETRY_DELAY_TICKS = 3

# How long a GTC_EXTENDED entry may rest before it is cancelled.
GTC_DURATION_TICKS = 30


class OrderMode(Enum):
    FIXED = 1
    ADAPTIVE_NEAR_TOUCH = 2
    GTC_EXTENDED = 3

    @property
    def adapts(self) -> bool:
        return self is not OrderMode.FIXED


@dataclass(frozen=True)
class OrderIntent:
    instrument: str
    direction: Direction
    mode: OrderMode
    price_offset_factor: float = 0.0
    is_exit: bool = False


@dataclass
class PendingOrderState:
    """One order's retry sequence. Owned by the controller only."""
    instrument: str
    direction: Direction
    is_exit: bool
    current_limit: float
    open_attempt_price: float
    spread: float
    step: float
    min_increment: float = 0.01
    mode: OrderMode = OrderMode.ADAPTIVE_NEAR_TOUCH
    policy: LifetimePolicy = IMMEDIATE
    quantity: int = 1
    order_id: Optional[int] = None
    submitted_tick: int = 0
    retry_at_tick: Optional[int] = None  # set while waiting to re-send
    missed: bool = False
    filled: float = 0.0                  # cumulative fill on the current order id

    @property
    def submit_price(self) -> float:
        """Limit as sent to the broker, on the order's own tick grid."""
        return limit_on_grid(self.current_limit, self.min_increment)

    @property
    def tag(self) -> str:
        kind = "EXIT" if self.is_exit else "ENTRY"
        return f"{kind}_{self.direction.value}_{self.instrument}"


@dataclass(frozen=True)
class Retry:
    new_limit: float
    delay_ticks: int = 0


@dataclass(frozen=True)
class Cancel:
    reason: str


Decision = Union[Retry, Cancel]


class DecisionKind(Enum):
    SUBMIT = "SUBMIT"
    RETRY = "RETRY"
    CANCEL = "CANCEL"
    MISSED = "MISSED"
    FILLED = "FILLED"
    EXPIRED = "EXPIRED"
    REJECTED = "REJECTED"
    PARTIAL = "PARTIAL"


@dataclass(frozen=True)
class DecisionRecord:
    tick: int
    instrument: str
    kind: DecisionKind
    limit: Optional[float]
    detail: str = ""


@dataclass
class RunReport:
    """Verification output of a harness run."""
    entries_submitted: int = 0
    exits_requested: int = 0
    exits_submitted: int = 0
    retries: int = 0
    cancels: int = 0
    misses: int = 0
    fills: int = 0
    expiries: int = 0
    rejects: int = 0
    partial_fills: int = 0
    decisions: List[DecisionRecord] = field(default_factory=list)

    def record(self, tick: int, instrument: str, kind: DecisionKind,
               limit: Optional[float], detail: str = "") -> None:
        self.decisions.append(DecisionRecord(tick, instrument, kind, limit, detail))

    def summary_lines(self) -> List[str]:
        return [
            f"entries submitted: {self.entries_submitted}",
            f"exits requested:   {self.exits_requested} (submitted {self.exits_submitted})",
            f"retries:           {self.retries}",
            f"cancels:           {self.cancels}",
            f"missed:            {self.misses}",
            f"expired:           {self.expiries}",
            f"rejected:          {self.rejects}",
            f"partial fills:     {self.partial_fills}",
            f"filled:            {self.fills}",
        ]


# ---------------------------------------------------------------------- #
# Pure pricing / decision functions
# ---------------------------------------------------------------------- #


def compute_initial_limit(
    mode: OrderMode,
    direction: Direction,
    reference_price: float,
    spread: float,
    offset_factor: float,
    min_increment: float,
    gtc_duration_ticks: int = GTC_DURATION_TICKS,
) -> Tuple[float, LifetimePolicy]:
    """
    First limit price and lifetime for a new order.

    FIXED:               reference + factor * spread, immediate
    ADAPTIVE_NEAR_TOUCH: reference - spread if factor < 0 else reference,
                         immediate
    GTC_EXTENDED:        as FIXED, good-till-cancelled for
                         gtc_duration_ticks

    The result is rounded to min_increment and never below one
    increment.

    direction does not enter the formulas (the sign of offset_factor
    carries it); it is accepted so callers pass a complete intent.
    """
    if mode is OrderMode.FIXED:
        limit = reference_price + offset_factor * spread
        policy = IMMEDIATE
    elif mode is OrderMode.ADAPTIVE_NEAR_TOUCH:
        limit = reference_price - spread if offset_factor < 0 else reference_price
        policy = IMMEDIATE
    elif mode is OrderMode.GTC_EXTENDED:
        limit = reference_price + offset_factor * spread
        policy = gtc_policy(gtc_duration_ticks)
    else:
        raise ValueError(f"Unknown order mode: {mode!r}")

    return limit_on_grid(limit, min_increment), policy


def compute_step(spread: float, min_increment: float) -> float:
    """Reprice step, fixed for the whole life of one order."""
    return max(spread / 3.0, min_increment / 3.0)


def on_missed_fill(
    order: PendingOrderState,
    step: float,
    retry_delay_ticks: int = IOC_RETRY_DELAY_TICKS,
) -> Decision:
    """
    Decide what to do with an order that was reported unfilled.

    Pure: the caller applies the decision to the order state.
    """
    delay = retry_delay_ticks if order.policy.is_immediate else 0

    if order.is_exit:
        if order.direction.is_long:
            return Retry(order.current_limit - step, delay)
        return Retry(order.current_limit + step, delay)

    if order.direction.is_long:
        if order.current_limit > order.open_attempt_price:
            return Cancel("limit above open-attempt price")
        return Retry(order.current_limit + step, delay)

    if order.current_limit < order.open_attempt_price - order.spread:
        return Cancel("limit below open-attempt price minus spread")
    return Retry(order.current_limit - step, delay)


# ---------------------------------------------------------------------- #
# Controller
# ---------------------------------------------------------------------- #


class AdaptiveOrderController:
    """
    Submits harness orders and walks each one through its retry sequence.

    Responsibilities:
    - Price new entries/exits from a broker market snapshot
    - Track one PendingOrderState per order in flight
    - Record broker outcomes as they arrive, decide on the next tick
    - Log every decision and keep the RunReport
    """

    def __init__(
        self,
        broker: "IbBroker",
        logger: logging.Logger,
        retry_delay_ticks: int = IOC_RETRY_DELAY_TICKS,
        gtc_duration_ticks: int = GTC_DURATION_TICKS,
    ) -> None:
        self.broker = broker
        self.logger = logger
        self.retry_delay_ticks = retry_delay_ticks
        self.gtc_duration_ticks = gtc_duration_ticks

        self.report = RunReport()
        self.halted = False
        self.current_tick = 0

        # Pending states in submission order; key is a local sequence number
        # since an order id changes every time an immediate order is re-sent.
        self._pending: Dict[int, PendingOrderState] = {}
        self._by_order_id: Dict[int, int] = {}
        self._next_key = 0

    # ---------- queries ---------- #

    def pending_orders(self) -> List[PendingOrderState]:
        return list(self._pending.values())

    def has_pending(self) -> bool:
        return bool(self._pending)

    # ---------- submission ---------- #

    def submit(self, intent: OrderIntent, quantity: int, tick: Optional[int] = None) -> Optional[PendingOrderState]:
        """
        Price and send a new order for the intent.

        Returns the pending state, or None if nothing was sent.
        """
        tick = self.current_tick if tick is None else tick
        if self.halted:
            self.logger.warning(
                "[ORDER] Controller halted; not submitting %s %s.",
                intent.direction.value, intent.instrument,
            )
            return None

        market = self.broker.query_market(intent.instrument)
        if market is None:
            self.logger.warning(
                "[ORDER][%s] No market data; skipping %s.",
                intent.instrument, "exit" if intent.is_exit else "entry",
            )
            self.report.rejects += 1
            self.report.record(tick, intent.instrument, DecisionKind.REJECTED, None, "no market data")
            return None

        limit, policy = compute_initial_limit(
            intent.mode,
            intent.direction,
            market.close_price,
            market.spread,
            intent.price_offset_factor,
            market.min_increment,
            self.gtc_duration_ticks,
        )

        state = PendingOrderState(
            instrument=intent.instrument,
            direction=intent.direction,
            is_exit=intent.is_exit,
            current_limit=limit,
            open_attempt_price=market.close_price,
            spread=market.spread,
            step=compute_step(market.spread, market.min_increment),
            min_increment=market.min_increment,
            mode=intent.mode,
            policy=policy,
            quantity=quantity,
            submitted_tick=tick,
        )

        self.logger.info(
            "[ORDER][%s] %s mode=%s close=%.4f spread=%.4f limit=%s tif=%s step=%.5f",
            state.tag,
            "Exit" if intent.is_exit else "Entry",
            intent.mode.name,
            market.close_price,
            market.spread,
            state.submit_price,
            policy.tif,
            state.step,
        )

        key = self._next_key
        self._next_key += 1
        if not self._send(key, state, tick):
            return None

        if intent.is_exit:
            self.report.exits_submitted += 1
        else:
            self.report.entries_submitted += 1
        self.report.record(tick, state.instrument, DecisionKind.SUBMIT, state.submit_price, state.tag)

        self._pending[key] = state
        return state

    def close_position(
        self,
        instrument: str,
        direction: Direction,
        mode: OrderMode,
        tick: Optional[int] = None,
    ) -> Optional[PendingOrderState]:
        """
        Exit all outstanding size on instrument in direction.

        Still-pending entries for the same side are cancelled first, so an
        entry that has not filled yet cannot open a position after the exit.
        """
        tick = self.current_tick if tick is None else tick
        self.report.exits_requested += 1

        for key, state in list(self._pending.items()):
            if state.instrument == instrument and state.direction is direction and not state.is_exit:
                self._cancel(key, state, tick, "closing phase")

        position = self.broker.query_position(instrument)
        if direction.is_long:
            size = position if position > 0 else 0
        else:
            size = -position if position < 0 else 0

        if size == 0:
            self.logger.info(
                "[ORDER][EXIT_%s_%s] No open %s position; nothing to close.",
                direction.value, instrument, direction.value,
            )
            return None

        intent = OrderIntent(
            instrument=instrument,
            direction=direction,
            mode=mode,
            price_offset_factor=0.0,
            is_exit=True,
        )
        return self.submit(intent, size, tick)

    # ---------- broker feedback ---------- #

    def on_order_status(self, outcome: "OrderOutcome") -> None:
        """
        Broker callback. Records the outcome only; decisions wait for
        the next tick.
        """
        key = self._by_order_id.get(outcome.order_id)
        if key is None:
            return
        state = self._pending.get(key)
        if state is None:
            return

        if outcome.is_filled:
            self._filled(key, state, outcome.order_id)
            return

        if outcome.filled > state.filled:
            state.filled = outcome.filled
            self.logger.info(
                "[ADAPT][PARTIAL][%s] orderId=%s filled=%s of %s",
                state.tag, outcome.order_id, outcome.filled, state.quantity,
            )
            self.report.partial_fills += 1
            self.report.record(
                self.current_tick, state.instrument, DecisionKind.PARTIAL, state.submit_price,
                f"{outcome.filled:g} of {state.quantity}",
            )

        if not outcome.is_terminal:
            return

        # Order is gone at IB; whatever did not fill is retried as a miss.
        self._by_order_id.pop(outcome.order_id, None)
        self.broker.forget_order(outcome.order_id)
        remaining = state.quantity - int(state.filled)
        if remaining <= 0:
            self._filled(key, state, outcome.order_id)
            return
        state.quantity = remaining
        state.filled = 0.0
        state.missed = True

    def _filled(self, key: int, state: PendingOrderState, order_id: int) -> None:
        self.logger.info(
            "[ADAPT][FILLED][%s] orderId=%s quantity=%s",
            state.tag, order_id, state.quantity,
        )
        self.report.fills += 1
        self.report.record(self.current_tick, state.instrument, DecisionKind.FILLED, state.submit_price)
        self._release(key)

    # ---------- per-tick adaptation ---------- #

    def on_tick(self, tick: int) -> None:
        """Advance every pending order by one tick."""
        self.current_tick = tick
        if self.halted:
            return

        for key, state in list(self._pending.items()):
            if state.retry_at_tick is not None:
                if tick >= state.retry_at_tick:
                    state.retry_at_tick = None
                    if not self._send(key, state, tick):
                        self._release(key)
                continue

            if state.missed:
                self._handle_missed(key, state, tick)
            elif not state.policy.is_immediate:
                self._handle_resting(key, state, tick)

    def _handle_missed(self, key: int, state: PendingOrderState, tick: int) -> None:
        self.report.misses += 1

        if not state.mode.adapts:
            self.logger.info(
                "[ADAPT][MISSED][%s] limit=%s not filled; %s orders are not adapted.",
                state.tag, state.submit_price, state.mode.name,
            )
            self.report.record(tick, state.instrument, DecisionKind.MISSED, state.submit_price)
            self._release(key)
            return

        decision = on_missed_fill(state, state.step, self.retry_delay_ticks)
        if isinstance(decision, Cancel):
            self._cancel(key, state, tick, decision.reason)
            return

        state.current_limit = decision.new_limit
        state.missed = False
        self.logger.info(
            "[ADAPT][RETRY][%s] new limit=%s delay=%d",
            state.tag, state.submit_price, decision.delay_ticks,
        )
        self.report.retries += 1
        self.report.record(tick, state.instrument, DecisionKind.RETRY, state.submit_price)

        if decision.delay_ticks > 0:
            state.retry_at_tick = tick + decision.delay_ticks
        elif not self._send(key, state, tick):
            self._release(key)

    def _handle_resting(self, key: int, state: PendingOrderState, tick: int) -> None:
        """A GTC order still working at this tick counts as a miss."""
        if (
            not state.is_exit
            and state.policy.duration_ticks > 0
            and tick - state.submitted_tick >= state.policy.duration_ticks
        ):
            self.logger.info(
                "[ADAPT][EXPIRED][%s] resting %d ticks; cancelling.",
                state.tag, tick - state.submitted_tick,
            )
            self.report.expiries += 1
            self.report.record(tick, state.instrument, DecisionKind.EXPIRED, state.submit_price)
            self._cancel(key, state, tick, None)
            return

        decision = on_missed_fill(state, state.step, self.retry_delay_ticks)
        if isinstance(decision, Cancel):
            self._cancel(key, state, tick, decision.reason)
            return

        state.current_limit = decision.new_limit
        self.logger.info(
            "[ADAPT][RETRY][%s] new limit=%s delay=0",
            state.tag, state.submit_price,
        )
        self.report.retries += 1
        self.report.record(tick, state.instrument, DecisionKind.RETRY, state.submit_price)
        self.broker.modify_order(state.order_id, state.submit_price)

    # ---------- shutdown ---------- #

    def halt(self) -> None:
        """Cancel everything still working and refuse further orders."""
        if self.halted:
            return
        self.halted = True
        for key, state in list(self._pending.items()):
            if state.order_id is not None and not state.missed and state.retry_at_tick is None:
                self.broker.cancel_order(state.order_id)
            self._release(key)
        self.logger.info("[ORDER] Controller halted; no further orders will be sent.")

    # ---------- internals ---------- #

    def _send(self, key: int, state: PendingOrderState, tick: int) -> bool:
        order_id = self.broker.submit_order(
            state.instrument,
            state.direction,
            state.is_exit,
            state.quantity,
            state.submit_price,
            state.policy,
            self.on_order_status,
        )
        if order_id is None:
            self.logger.warning(
                "[ORDER][%s] Broker refused order at limit=%s.",
                state.tag, state.submit_price,
            )
            self.report.rejects += 1
            self.report.record(tick, state.instrument, DecisionKind.REJECTED, state.submit_price)
            return False

        self._by_order_id[order_id] = key
        state.order_id = order_id
        state.missed = False
        return True

    def _cancel(self, key: int, state: PendingOrderState, tick: int, reason: Optional[str]) -> None:
        if state.order_id is not None and not state.missed and state.retry_at_tick is None:
            self.broker.cancel_order(state.order_id)
        if reason is not None:
            self.logger.info(
                "[ADAPT][CANCEL][%s] limit=%s: %s",
                state.tag, state.submit_price, reason,
            )
            self.report.cancels += 1
            self.report.record(tick, state.instrument, DecisionKind.CANCEL, state.submit_price, reason)
        self._release(key)

    def _release(self, key: int) -> None:
        state = self._pending.pop(key, None)
        if state is not None and state.order_id is not None:
            self._by_order_id.pop(state.order_id, None)

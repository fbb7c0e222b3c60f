"""
broker.py

IbBroker: the broker interface the harness exercises, implemented over
ib_insync.

Responsibilities:
- Register (qualify + subscribe) test instruments
- Report a market snapshot: close price, spread, minimum tick
- Place, modify and cancel single LMT orders
- Report signed position size per symbol
- Route order status updates to the callback registered per order

The broker never decides prices or retries; that is the controller's
job. Placement failures are logged here and surface as None so a
single bad order never aborts the run.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Optional, Tuple

from ib_insync import Contract, Order, Trade

import market_hours
from orders import Direction, LifetimePolicy, build_limit_order, make_stock_contract

if TYPE_CHECKING:
    from ib_insync import IB, Ticker


# Fallback when contract details carry no minTick
DEFAULT_MIN_TICK = 0.01

# IB statuses that end an order without (further) fills
TERMINAL_STATUSES = {"Cancelled", "ApiCancelled", "Inactive"}


class HarnessError(Exception):
    """Base class for errors that stop the harness."""


class BrokerError(HarnessError):
    """Instrument could not be registered with the broker."""


@dataclass(frozen=True)
class MarketSnapshot:
    close_price: float
    spread: float
    min_increment: float


@dataclass(frozen=True)
class OrderOutcome:
    """Status update for a harness order, as delivered by IBKR."""
    order_id: int
    status: str
    filled: float = 0.0
    remaining: float = 0.0

    @property
    def is_filled(self) -> bool:
        """Completely filled. A partial fill is not done yet."""
        return self.status == "Filled"

    @property
    def is_terminal(self) -> bool:
        """Order is no longer working at IB (filled or not)."""
        return self.status in TERMINAL_STATUSES

    @property
    def is_missed(self) -> bool:
        """Order ended without any fill (IOC/FOK miss, reject, cancel)."""
        return self.is_terminal and self.filled == 0


def _usable_price(value: Optional[float]) -> bool:
    """IB reports missing ticks as NaN or -1."""
    return value is not None and not math.isnan(value) and value > 0


@dataclass
class _Instrument:
    contract: Contract
    ticker: "Ticker"
    min_tick: float


class IbBroker:
    """
    Broker interface over an ib_insync IB connection.

    test_mode works like the plug-in's SET_TESTMODE command: when
    on, orders are sent even while the exchange is closed.
    """

    def __init__(self, ib: "IB", logger: logging.Logger) -> None:
        self.ib = ib
        self.logger = logger
        self.test_mode = False

        self._instruments: Dict[str, _Instrument] = {}
        self._orders: Dict[int, Tuple[str, Order]] = {}
        self._callbacks: Dict[int, Callable[[OrderOutcome], None]] = {}

        self._error_lock = threading.Lock()
        self._last_error_code: Optional[int] = None
        self._last_error_message: Optional[str] = None

        self.ib.errorEvent += self._on_error
        self.ib.orderStatusEvent += self._on_order_status

    # ---------- IB events ---------- #

    def _on_error(self, reqId: int, errorCode: int, errorString: str, contract) -> None:
        with self._error_lock:
            self._last_error_code = errorCode
            self._last_error_message = errorString

        self.logger.warning(
            "[BROKER] IBKR error: reqId=%s code=%s msg=%s",
            reqId, errorCode, errorString,
        )

    def _get_last_error(self) -> Tuple[Optional[int], Optional[str]]:
        """Get and clear the last error."""
        with self._error_lock:
            code = self._last_error_code
            msg = self._last_error_message
            self._last_error_code = None
            self._last_error_message = None
            return code, msg

    def _on_order_status(self, trade: Trade) -> None:
        order_id = trade.order.orderId
        callback = self._callbacks.get(order_id)
        if callback is None:
            return

        outcome = OrderOutcome(
            order_id=order_id,
            status=trade.orderStatus.status,
            filled=float(trade.orderStatus.filled or 0),
            remaining=float(trade.orderStatus.remaining or 0),
        )
        if outcome.is_filled or outcome.is_terminal:
            self._callbacks.pop(order_id, None)
        callback(outcome)

    # ---------- instruments ---------- #

    def register_instrument(self, symbol: str) -> None:
        """
        Qualify the contract, look up its minimum tick and start market data.

        Calling it again for a registered symbol is a no-op.
        """
        if symbol in self._instruments:
            return

        base = make_stock_contract(symbol)
        try:
            qualified = self.ib.qualifyContracts(base)
        except Exception as exc:
            raise BrokerError(f"qualifyContracts() failed for {symbol}: {exc}") from exc

        if not qualified:
            raise BrokerError(f"Unknown symbol or no security definition: {symbol}")
        contract = qualified[0]

        min_tick = DEFAULT_MIN_TICK
        try:
            details = self.ib.reqContractDetails(contract)
            if details and details[0].minTick:
                min_tick = float(details[0].minTick)
        except Exception as exc:
            self.logger.warning(
                "[BROKER] %s: reqContractDetails() failed (%s); using minTick=%s",
                symbol, exc, DEFAULT_MIN_TICK,
            )

        ticker = self.ib.reqMktData(contract, "", False, False)
        self._instruments[symbol] = _Instrument(contract=contract, ticker=ticker, min_tick=min_tick)
        self.logger.info("[BROKER] Registered %s (minTick=%s).", symbol, min_tick)

    def is_registered(self, symbol: str) -> bool:
        return symbol in self._instruments

    def query_market(self, symbol: str) -> Optional[MarketSnapshot]:
        """
        Snapshot of the current quote, or None while no usable price exists.

        Harness limits are placed spread multiples away from the price, so
        a missing, sentinel (-1) or locked/crossed quote gives no snapshot
        rather than a zero spread.
        """
        inst = self._instruments.get(symbol)
        if inst is None:
            return None

        ticker = inst.ticker
        price = ticker.marketPrice()
        if not _usable_price(price):
            price = ticker.close
        if not _usable_price(price):
            return None

        bid, ask = ticker.bid, ticker.ask
        if not (_usable_price(bid) and _usable_price(ask)) or ask <= bid:
            self.logger.warning(
                "[BROKER] %s: no usable bid/ask (bid=%s ask=%s); no market snapshot.",
                symbol, bid, ask,
            )
            return None

        return MarketSnapshot(close_price=price, spread=ask - bid, min_increment=inst.min_tick)

    def query_position(self, symbol: str) -> int:
        """Signed position size: positive LONG, negative SHORT, 0 if flat."""
        total = 0
        for pos in self.ib.positions():
            if pos.contract.symbol == symbol:
                total += int(pos.position)
        return total

    # ---------- orders ---------- #

    def submit_order(
        self,
        symbol: str,
        direction: Direction,
        is_exit: bool,
        quantity: int,
        limit_price: float,
        policy: LifetimePolicy,
        callback: Callable[[OrderOutcome], None],
    ) -> Optional[int]:
        """
        Place a single LMT order. Returns the IB order id, or None if the
        order was refused or placement failed.
        """
        inst = self._instruments.get(symbol)
        if inst is None:
            self.logger.error("[BROKER][REJECT] %s is not registered.", symbol)
            return None

        if not self.test_mode and not market_hours.is_market_open():
            self.logger.warning(
                "[BROKER][REJECT] %s: market closed and test mode is off.", symbol
            )
            return None

        order = build_limit_order(
            direction=direction,
            is_exit=is_exit,
            quantity=quantity,
            limit_price=limit_price,
            policy=policy,
        )

        self._get_last_error()
        try:
            order.orderId = self.ib.client.getReqId()
            self._callbacks[order.orderId] = callback
            trade = self.ib.placeOrder(inst.contract, order)
        except Exception as exc:
            self._callbacks.pop(order.orderId, None)
            self.logger.error("[BROKER][REJECT] %s: placeOrder failed: %s", symbol, exc)
            return None

        if trade is None:
            self._callbacks.pop(order.orderId, None)
            code, msg = self._get_last_error()
            self.logger.error(
                "[BROKER][REJECT] %s: placement returned nothing. code=%s msg=%s",
                symbol, code, msg,
            )
            return None

        self._orders[order.orderId] = (symbol, order)
        self.logger.info(
            "[BROKER] Placed orderId=%s %s %s %d @ %s tif=%s",
            order.orderId, order.action, symbol, quantity, limit_price, order.tif,
        )
        return order.orderId

    def modify_order(self, order_id: int, limit_price: float) -> bool:
        """Re-send a working order with a new limit price."""
        entry = self._orders.get(order_id)
        if entry is None:
            return False

        symbol, order = entry
        order.lmtPrice = limit_price
        try:
            self.ib.placeOrder(self._instruments[symbol].contract, order)
        except Exception as exc:
            self.logger.error(
                "[BROKER] Failed to modify orderId=%s: %s", order_id, exc
            )
            return False
        return True

    def cancel_order(self, order_id: int) -> bool:
        """
        Cancel a working order. Returns False if the order is unknown or the
        cancel request could not be sent.
        """
        entry = self._orders.pop(order_id, None)
        self._callbacks.pop(order_id, None)
        if entry is None:
            return False

        _, order = entry
        try:
            self.ib.cancelOrder(order)
        except Exception as exc:
            self.logger.error(
                "[BROKER] Error cancelling orderId=%s: %s", order_id, exc
            )
            return False

        self.logger.info("[BROKER] Cancel sent for orderId=%s", order_id)
        return True

    def forget_order(self, order_id: int) -> None:
        """Drop bookkeeping for an order that reached a terminal state."""
        self._orders.pop(order_id, None)
        self._callbacks.pop(order_id, None)

"""
Shared test doubles.

FakeBroker stands in for IbBroker at the controller/scheduler level,
FakeHost for BarClock. MockIB (test_broker.py, test_bar_clock.py)
covers the ib_insync surface itself.
"""

import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import pytest

# ib_insync expects an event loop to exist when it is imported.
if sys.version_info >= (3, 11):
    try:
        asyncio.get_event_loop()
    except RuntimeError:
        asyncio.set_event_loop(asyncio.new_event_loop())

from broker import BrokerError, MarketSnapshot, OrderOutcome
from orders import Direction, LifetimePolicy


@dataclass
class SubmittedOrder:
    order_id: int
    symbol: str
    direction: Direction
    is_exit: bool
    quantity: int
    limit_price: float
    policy: LifetimePolicy


class FakeBroker:
    """Records every broker call; outcomes are delivered by the test."""

    def __init__(self) -> None:
        self.test_mode = False
        self.markets: Dict[str, MarketSnapshot] = {}
        self.positions: Dict[str, int] = {}
        self.unknown_symbols = set()
        self.refuse = False

        self.registered: List[str] = []
        self.submitted: List[SubmittedOrder] = []
        self.modified: List[Tuple[int, float]] = []
        self.cancelled: List[int] = []
        self.forgotten: List[int] = []

        self._next_id = 100
        self._callbacks: Dict[int, Callable[[OrderOutcome], None]] = {}

    # --- IbBroker surface ---

    def register_instrument(self, symbol: str) -> None:
        if symbol in self.unknown_symbols:
            raise BrokerError(f"Unknown symbol {symbol}")
        if symbol not in self.registered:
            self.registered.append(symbol)
        self.markets.setdefault(symbol, MarketSnapshot(100.0, 0.75, 0.25))

    def query_market(self, symbol: str) -> Optional[MarketSnapshot]:
        return self.markets.get(symbol)

    def query_position(self, symbol: str) -> int:
        return self.positions.get(symbol, 0)

    def submit_order(self, symbol, direction, is_exit, quantity, limit_price, policy, callback):
        if self.refuse:
            return None
        self._next_id += 1
        self.submitted.append(
            SubmittedOrder(self._next_id, symbol, direction, is_exit, quantity, limit_price, policy)
        )
        self._callbacks[self._next_id] = callback
        return self._next_id

    def modify_order(self, order_id: int, limit_price: float) -> bool:
        self.modified.append((order_id, limit_price))
        return True

    def cancel_order(self, order_id: int) -> bool:
        self._callbacks.pop(order_id, None)
        self.cancelled.append(order_id)
        return True

    def forget_order(self, order_id: int) -> None:
        self.forgotten.append(order_id)

    # --- test helpers ---

    @property
    def outstanding(self) -> List[int]:
        return list(self._callbacks)

    def report(self, order_id: int, status: str, filled: float = 0.0, remaining: float = 0.0) -> None:
        outcome = OrderOutcome(order_id=order_id, status=status, filled=filled, remaining=remaining)
        callback = self._callbacks[order_id]
        if outcome.is_filled or outcome.is_terminal:
            del self._callbacks[order_id]
        callback(outcome)

    def miss_outstanding(self) -> None:
        for order_id in self.outstanding:
            self.report(order_id, "Cancelled")


class FakeHost:
    """Host runtime double: the test moves `bar` forward itself."""

    def __init__(self, awaiting_confirmation: bool = False) -> None:
        self.bar = 0
        self.awaiting = awaiting_confirmation
        self.stop_requested = False
        self.pauses: List[str] = []

    def is_first_tick(self) -> bool:
        return self.bar == 1

    def is_awaiting_user_confirmation(self) -> bool:
        return self.awaiting

    def pause(self, message: str) -> None:
        self.pauses.append(message)

    def request_stop(self) -> None:
        self.stop_requested = True


@pytest.fixture
def logger() -> logging.Logger:
    log = logging.getLogger("test_harness")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def fake_broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def fake_host() -> FakeHost:
    return FakeHost()

"""
orders.py

Pure order-factory functions for the harness.

This module knows nothing about IB connections or fills; it only
builds ib_insync Contracts + Orders from the values the controller
has already decided on (direction, size, limit, lifetime).

Lifetime policies:
  - IMMEDIATE: IOC limit. An order that cannot fill at once comes back
    as cancelled with nothing filled, which the controller reads as a
    missed fill.
  - GTC: resting limit, kept alive for a number of ticks by the
    controller and then cancelled.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum

from ib_insync import Order, Stock


class Direction(Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def is_long(self) -> bool:
        return self is Direction.LONG

    def flipped(self) -> "Direction":
        return Direction.SHORT if self is Direction.LONG else Direction.LONG


@dataclass(frozen=True)
class LifetimePolicy:
    tif: str                      # "IOC" or "GTC"
    duration_ticks: int = 0       # 0 = no controller-side expiry
    good_till_cancel: bool = False

    @property
    def is_immediate(self) -> bool:
        return not self.good_till_cancel


IMMEDIATE = LifetimePolicy(tif="IOC")


def gtc_policy(duration_ticks: int) -> LifetimePolicy:
    return LifetimePolicy(tif="GTC", duration_ticks=duration_ticks, good_till_cancel=True)


# ---------------------------------------------------------------------- #
# Contract helpers
# ---------------------------------------------------------------------- #


def make_stock_contract(symbol: str) -> Stock:
    """
    US stock via SMART routing. ib_insync qualifies it later.
    """
    return Stock(symbol, "SMART", "USD")


# ---------------------------------------------------------------------- #
# Price helpers
# ---------------------------------------------------------------------- #


def round_to_increment(price: float, increment: float) -> float:
    """
    Round price to the nearest multiple of increment, ties away from zero.

    Decimal arithmetic keeps 0.01-style increments exact, so rounding an
    already-rounded price returns it unchanged.
    """
    if increment <= 0:
        return price

    inc = Decimal(str(increment))
    steps = (Decimal(str(price)) / inc).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return float(steps * inc)


def limit_on_grid(price: float, increment: float) -> float:
    """Round to the increment; the lowest valid limit is one increment."""
    rounded = round_to_increment(price, increment)
    if increment > 0 and rounded < increment:
        return float(increment)
    return rounded


# ---------------------------------------------------------------------- #
# Order builders
# ---------------------------------------------------------------------- #


def order_action(direction: Direction, is_exit: bool) -> str:
    """
    LONG entry / SHORT exit -> BUY
    SHORT entry / LONG exit -> SELL
    """
    if direction.is_long != is_exit:
        return "BUY"
    return "SELL"


def build_limit_order(
    *,
    direction: Direction,
    is_exit: bool,
    quantity: int,
    limit_price: float,
    policy: LifetimePolicy,
) -> Order:
    """
    Build a single LMT order with the tif taken from the lifetime policy.

    Orders are always transmitted immediately; the harness never stages
    parent/child groups.
    """
    order = Order()
    order.action = order_action(direction, is_exit)
    order.totalQuantity = quantity
    order.orderType = "LMT"
    order.lmtPrice = limit_price
    order.tif = policy.tif
    order.transmit = True
    return order

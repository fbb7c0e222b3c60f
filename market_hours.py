"""
market_hours.py

NYSE session awareness for the harness.

Uses pandas_market_calendars for holiday and early close detection.
The broker layer asks is_market_open() before sending an order; the
plug-in style "test mode" bypasses that check so the harness can be
run at any hour against a paper account.

All wall-clock values are expressed in Pacific Time (PT).
"""

from __future__ import annotations

from datetime import date, datetime, time
from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo

import pandas_market_calendars as mcal

PT = ZoneInfo("America/Los_Angeles")
ET = ZoneInfo("America/New_York")

SESSION_OPEN_PT = time(6, 30)
NORMAL_CLOSE_PT = time(13, 0)
EARLY_CLOSE_PT = time(10, 0)

_nyse_calendar = None


def _get_nyse_calendar():
    global _nyse_calendar
    if _nyse_calendar is None:
        _nyse_calendar = mcal.get_calendar("NYSE")
    return _nyse_calendar


def now_pt() -> datetime:
    """Timezone-aware current time in PT."""
    return datetime.now(PT)


@lru_cache(maxsize=128)
def is_trading_day(d: date) -> bool:
    """True for NYSE sessions; False on weekends and exchange holidays."""
    schedule = _get_nyse_calendar().schedule(start_date=d, end_date=d)
    return len(schedule) > 0


@lru_cache(maxsize=128)
def market_close_time_pt(d: date) -> Optional[time]:
    """
    Close of the NYSE session on d, in PT.

    Returns None when d is not a trading day. Early close days
    (1:00 PM ET) map to 10:00 PT.
    """
    schedule = _get_nyse_calendar().schedule(start_date=d, end_date=d)
    if len(schedule) == 0:
        return None

    close_et = schedule.iloc[0]["market_close"].tz_convert(ET)
    if close_et.hour < 16:
        return EARLY_CLOSE_PT
    return NORMAL_CLOSE_PT


def is_market_open(dt: datetime | None = None) -> bool:
    """
    True if dt (default: now) falls inside the regular session.

    Naive datetimes are taken to be PT.
    """
    if dt is None:
        dt = now_pt()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=PT)
    else:
        dt = dt.astimezone(PT)

    if dt.weekday() >= 5:
        return False

    close = market_close_time_pt(dt.date())
    if close is None:
        return False

    t = dt.time()
    return SESSION_OPEN_PT <= t <= close

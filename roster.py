"""
roster.py

Test-asset roster: which instruments a harness run cycles through.

The roster source hands over a packed buffer of fixed-width records
(MAX_TEST_SLOTS x RECORD_WIDTH bytes, each a NUL-terminated symbol);
an empty record ends the list. AssetRoster decodes it, registers every
symbol with the broker and keeps the ordered result for the rest of
the run.

Settings file layout (plug-in style, JSON with // comment lines):

    {
      // symbols used by the conformance run
      "testAssets": "SIRI, NOK, F"
    }
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, List, Optional, Set, Tuple

from broker import HarnessError

if TYPE_CHECKING:
    from broker import IbBroker


MAX_TEST_SLOTS = 10
RECORD_WIDTH = 8

# Selected before any real instrument exists so host-side calls stay valid
PLACEHOLDER_INSTRUMENT = ""

SETTINGS_PATH = Path("settings.json")


class RosterError(HarnessError):
    """Roster could not be built; the run cannot proceed."""


# ---------------------------------------------------------------------- #
# Packed-buffer codec
# ---------------------------------------------------------------------- #


def pack_test_assets(
    symbols: Iterable[str],
    max_slots: int = MAX_TEST_SLOTS,
    record_width: int = RECORD_WIDTH,
) -> bytes:
    """
    Pack symbols into max_slots fixed-width, NUL-padded records.

    Each symbol needs room for its terminator, so at most
    record_width - 1 bytes. Symbols past max_slots are dropped.
    """
    buf = bytearray(max_slots * record_width)
    for i, symbol in enumerate(symbols):
        if i >= max_slots:
            break
        try:
            raw = symbol.strip().encode("ascii")
        except UnicodeEncodeError as exc:
            raise RosterError(f"Symbol {symbol!r} is not ASCII") from exc
        if len(raw) >= record_width:
            raise RosterError(
                f"Symbol {symbol!r} does not fit a {record_width}-byte record"
            )
        start = i * record_width
        buf[start:start + len(raw)] = raw
    return bytes(buf)


def decode_roster_buffer(
    buffer: bytes,
    max_slots: int = MAX_TEST_SLOTS,
    record_width: int = RECORD_WIDTH,
    logger: Optional[logging.Logger] = None,
) -> List[str]:
    """
    Decode up to max_slots records, stopping at the first empty one.

    A buffer that ends mid-record ends the list as well. A record with no
    NUL inside its width, or with non-ASCII bytes, is malformed and raises
    RosterError. Repeated symbols are skipped.
    """
    symbols: List[str] = []
    seen: Set[str] = set()

    for i in range(max_slots):
        start = i * record_width
        record = buffer[start:start + record_width]
        if len(record) < record_width:
            break

        nul = record.find(b"\0")
        if nul < 0:
            raise RosterError(f"Record {i} is not NUL-terminated: {record!r}")
        if nul == 0:
            break

        try:
            symbol = record[:nul].decode("ascii").strip()
        except UnicodeDecodeError as exc:
            raise RosterError(f"Record {i} is not ASCII: {record!r}") from exc
        if not symbol:
            break
        if symbol in seen:
            if logger is not None:
                logger.warning("[ROSTER] Duplicate symbol %s in record %d; skipping.", symbol, i)
            continue

        seen.add(symbol)
        symbols.append(symbol)

    return symbols


# ---------------------------------------------------------------------- #
# Roster sources
# ---------------------------------------------------------------------- #


class StaticRosterSource:
    """Roster source over an explicit symbol list (CLI --assets, tests)."""

    def __init__(self, symbols: Iterable[str]) -> None:
        self.symbols = [s.strip().upper() for s in symbols if s.strip()]

    def fetch_test_instruments(self) -> bytes:
        return pack_test_assets(self.symbols)


class SettingsRosterSource:
    """
    Roster source reading the comma-separated testAssets entry of a
    plug-in style settings file.
    """

    def __init__(self, path: Path = SETTINGS_PATH) -> None:
        self.path = Path(path)

    def _read_settings(self) -> dict:
        if not self.path.exists():
            raise RosterError(f"Settings file not found: {self.path}")

        # Comment and blank lines are dropped before parsing.
        lines = []
        with self.path.open(encoding="utf-8-sig") as f:
            for line in f:
                if "//" in line or not line.strip():
                    continue
                lines.append(line)

        try:
            return json.loads("".join(lines))
        except json.JSONDecodeError as exc:
            raise RosterError(f"Settings file {self.path} is not valid JSON: {exc}") from exc

    def fetch_test_instruments(self) -> bytes:
        settings = self._read_settings()
        raw = settings.get("testAssets") or ""
        symbols = [s.strip().upper() for s in raw.split(",") if s.strip()]
        return pack_test_assets(symbols)


# ---------------------------------------------------------------------- #
# Roster
# ---------------------------------------------------------------------- #


class AssetRoster:
    """
    Ordered, load-once universe of test instruments.

    instruments is a tuple so the universe cannot change after load().
    """

    def __init__(self, source, broker: "IbBroker", logger: logging.Logger) -> None:
        self.source = source
        self.broker = broker
        self.logger = logger

        self.instruments: Tuple[str, ...] = ()
        self.registered: Set[str] = set()
        self.selected: Optional[str] = None
        self._loaded = False

    @property
    def count(self) -> int:
        return len(self.instruments)

    def register_placeholder(self) -> None:
        """Register and select the null instrument."""
        self.registered.add(PLACEHOLDER_INSTRUMENT)
        self.select(PLACEHOLDER_INSTRUMENT)

    def select(self, symbol: str) -> None:
        if symbol not in self.registered:
            raise RosterError(f"Cannot select unregistered instrument {symbol!r}")
        self.selected = symbol

    def load(self, max_slots: int = MAX_TEST_SLOTS) -> Tuple[str, ...]:
        """
        Fetch, decode and register the test instruments.

        Returns the roster. A second call returns the same roster without
        touching the source or the broker again.
        """
        if self._loaded:
            return self.instruments

        if max_slots > MAX_TEST_SLOTS:
            raise RosterError(f"max_slots={max_slots} exceeds {MAX_TEST_SLOTS} slots")

        buffer = self.source.fetch_test_instruments()
        symbols = decode_roster_buffer(buffer, max_slots=max_slots, logger=self.logger)

        loaded: List[str] = []
        for symbol in symbols:
            self.broker.register_instrument(symbol)
            self.registered.add(symbol)
            self.select(symbol)
            loaded.append(symbol)
            self.logger.info("[ROSTER] Added test asset %s", symbol)

        self.instruments = tuple(loaded)
        self._loaded = True

        if len(loaded) < max_slots:
            self.logger.info(
                "[ROSTER] Loaded %d of %d test slots.", len(loaded), max_slots
            )
        else:
            self.logger.info("[ROSTER] Loaded %d test assets.", len(loaded))
        return self.instruments

"""
test_roster.py

Test-asset roster: packed buffer decoding, settings source, load-once
registration with the broker.
"""

import pytest

from broker import BrokerError
from roster import (
    MAX_TEST_SLOTS,
    PLACEHOLDER_INSTRUMENT,
    AssetRoster,
    RosterError,
    SettingsRosterSource,
    StaticRosterSource,
    decode_roster_buffer,
    pack_test_assets,
)


def _record(symbol: str) -> bytes:
    return symbol.encode("ascii").ljust(8, b"\0")


class BufferSource:
    def __init__(self, buffer: bytes) -> None:
        self.buffer = buffer
        self.calls = 0

    def fetch_test_instruments(self) -> bytes:
        self.calls += 1
        return self.buffer


# ---------------------------------------------------------------------- #
# Buffer codec
# ---------------------------------------------------------------------- #


def test_four_records_then_a_zero_byte():
    buffer = b"".join(_record(s) for s in ["SIRI", "NOK", "F", "GE"]) + b"\0"
    assert decode_roster_buffer(buffer) == ["SIRI", "NOK", "F", "GE"]


def test_empty_record_ends_the_list():
    buffer = _record("SIRI") + b"\0" * 8 + _record("NOK")
    assert decode_roster_buffer(buffer) == ["SIRI"]


def test_record_without_terminator_is_malformed():
    buffer = _record("SIRI") + b"ABCDEFGH"
    with pytest.raises(RosterError):
        decode_roster_buffer(buffer)


def test_non_ascii_record_is_malformed():
    buffer = _record("SIRI") + b"\xe9T\0\0\0\0\0\0"
    with pytest.raises(RosterError):
        decode_roster_buffer(buffer)


def test_pack_rejects_non_ascii_symbols():
    with pytest.raises(RosterError):
        pack_test_assets(["ÉT"])


def test_duplicates_are_skipped_keeping_first_position():
    buffer = pack_test_assets(["AAA", "BBB", "AAA", "CCC"])
    assert decode_roster_buffer(buffer) == ["AAA", "BBB", "CCC"]


def test_decode_honours_max_slots():
    buffer = pack_test_assets([f"S{i}" for i in range(10)])
    assert decode_roster_buffer(buffer, max_slots=3) == ["S0", "S1", "S2"]


def test_all_zero_buffer_is_an_empty_roster():
    assert decode_roster_buffer(bytes(MAX_TEST_SLOTS * 8)) == []


def test_pack_rejects_symbols_without_room_for_terminator():
    with pytest.raises(RosterError):
        pack_test_assets(["ABCDEFGH"])


def test_pack_drops_symbols_past_the_slot_count():
    buffer = pack_test_assets([f"S{i}" for i in range(12)])
    assert len(buffer) == MAX_TEST_SLOTS * 8
    assert decode_roster_buffer(buffer) == [f"S{i}" for i in range(10)]


# ---------------------------------------------------------------------- #
# Settings source
# ---------------------------------------------------------------------- #


def test_settings_source_reads_test_assets(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(
        "{\n"
        "  // plug-in settings\n"
        '  "testAssets": "siri, NOK ,F",\n'
        '  "account": "DU123456"\n'
        "}\n",
        encoding="utf-8",
    )
    buffer = SettingsRosterSource(path).fetch_test_instruments()
    assert decode_roster_buffer(buffer) == ["SIRI", "NOK", "F"]


def test_settings_source_without_test_assets_is_empty(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text('{"account": "DU123456"}', encoding="utf-8")
    assert decode_roster_buffer(SettingsRosterSource(path).fetch_test_instruments()) == []


def test_missing_settings_file_raises(tmp_path):
    with pytest.raises(RosterError):
        SettingsRosterSource(tmp_path / "nope.json").fetch_test_instruments()


def test_invalid_settings_file_raises(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text('{"testAssets": ', encoding="utf-8")
    with pytest.raises(RosterError):
        SettingsRosterSource(path).fetch_test_instruments()


# ---------------------------------------------------------------------- #
# AssetRoster
# ---------------------------------------------------------------------- #


def test_load_registers_each_symbol_in_order(fake_broker, logger):
    roster = AssetRoster(StaticRosterSource(["SIRI", "NOK", "F"]), fake_broker, logger)

    assert roster.load() == ("SIRI", "NOK", "F")
    assert roster.count == 3
    assert fake_broker.registered == ["SIRI", "NOK", "F"]
    assert roster.selected == "F"


def test_load_is_idempotent(fake_broker, logger):
    source = BufferSource(pack_test_assets(["SIRI", "NOK"]))
    roster = AssetRoster(source, fake_broker, logger)

    first = roster.load()
    second = roster.load()

    assert first == second == ("SIRI", "NOK")
    assert source.calls == 1
    assert fake_broker.registered == ["SIRI", "NOK"]


def test_load_rejects_more_slots_than_the_buffer_holds(fake_broker, logger):
    roster = AssetRoster(StaticRosterSource(["SIRI"]), fake_broker, logger)
    with pytest.raises(RosterError):
        roster.load(max_slots=MAX_TEST_SLOTS + 1)


def test_registration_failure_propagates(fake_broker, logger):
    fake_broker.unknown_symbols.add("NOPE")
    roster = AssetRoster(StaticRosterSource(["SIRI", "NOPE"]), fake_broker, logger)
    with pytest.raises(BrokerError):
        roster.load()


def test_placeholder_is_selectable_before_load(fake_broker, logger):
    roster = AssetRoster(StaticRosterSource([]), fake_broker, logger)
    roster.register_placeholder()

    assert roster.selected == PLACEHOLDER_INSTRUMENT
    assert fake_broker.registered == []
    with pytest.raises(RosterError):
        roster.select("SIRI")

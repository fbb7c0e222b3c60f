"""
test_scheduler.py

Run scheduler state machine, driven bar by bar through a FakeHost.
"""

import pytest

from conftest import FakeHost
from order_controller import AdaptiveOrderController, OrderMode
from orders import Direction
from roster import PLACEHOLDER_INSTRUMENT, AssetRoster, StaticRosterSource
from scheduler import PhaseKind, RunScheduler, SchedulerConfig


ASSETS = ["SIRI", "NOK", "F"]


def _build(broker, logger, assets=ASSETS, host=None, **config):
    host = host or FakeHost()
    roster = AssetRoster(StaticRosterSource(assets), broker, logger)
    controller = AdaptiveOrderController(broker, logger)
    scheduler = RunScheduler(host, broker, roster, controller, logger, SchedulerConfig(**config))
    return host, roster, controller, scheduler


def _bars(host, scheduler, count):
    for _ in range(count):
        host.bar += 1
        scheduler.on_bar(host.bar)


def test_full_run_alternates_open_and_close(fake_broker, logger):
    host, roster, controller, scheduler = _build(fake_broker, logger, total_runs=9)

    _bars(host, scheduler, 9)

    log = scheduler.state.phase_log
    assert [(r.run_num, r.kind, r.direction) for r in log] == [
        (0, PhaseKind.INITIALIZE, None),
        (1, PhaseKind.OPEN, Direction.LONG),
        (2, PhaseKind.CLOSE, Direction.LONG),
        (3, PhaseKind.OPEN, Direction.SHORT),
        (4, PhaseKind.CLOSE, Direction.SHORT),
        (5, PhaseKind.OPEN, Direction.LONG),
        (6, PhaseKind.CLOSE, Direction.LONG),
        (7, PhaseKind.OPEN, Direction.SHORT),
        (8, PhaseKind.CLOSE, Direction.SHORT),
    ]
    assert all(r.instruments == tuple(ASSETS) for r in log[1:])

    assert scheduler.state.run_num == 9
    assert scheduler.state.finished
    assert host.stop_requested
    assert controller.halted
    assert controller.report.entries_submitted == 12
    assert controller.report.exits_requested == 12


def test_close_phases_only_send_exits(fake_broker, logger):
    host, _, _, scheduler = _build(fake_broker, logger, total_runs=9)
    per_phase = {}

    for _ in range(9):
        run_num = scheduler.state.run_num
        if run_num > 0 and run_num % 2 == 0:
            size = 12 if scheduler.state.closing_type.is_long else -12
            fake_broker.positions = {s: size for s in ASSETS}
        before = len(fake_broker.submitted)
        host.bar += 1
        scheduler.on_bar(host.bar)
        per_phase[run_num] = fake_broker.submitted[before:]

    for run_num, orders in per_phase.items():
        if run_num == 0:
            assert orders == []
        elif run_num % 2 == 0:
            assert len(orders) == 3
            assert all(o.is_exit for o in orders)
        else:
            assert len(orders) == 3
            assert not any(o.is_exit for o in orders)

    assert [o.direction for o in per_phase[2]] == [Direction.LONG] * 3
    assert [o.direction for o in per_phase[4]] == [Direction.SHORT] * 3


def test_no_orders_after_termination(fake_broker, logger):
    host, _, _, scheduler = _build(fake_broker, logger, total_runs=9)
    _bars(host, scheduler, 9)
    submitted = len(fake_broker.submitted)

    _bars(host, scheduler, 5)

    assert len(fake_broker.submitted) == submitted
    assert scheduler.state.run_num == 9


def test_initialization_sets_up_roster_and_test_mode(fake_broker, logger):
    host, roster, _, scheduler = _build(fake_broker, logger)

    _bars(host, scheduler, 1)

    assert fake_broker.test_mode
    assert scheduler.state.initialized
    assert roster.instruments == tuple(ASSETS)
    assert fake_broker.registered == ASSETS
    assert roster.selected == PLACEHOLDER_INSTRUMENT
    assert fake_broker.submitted == []


def test_open_phase_prices_far_from_market(fake_broker, logger):
    host, _, _, scheduler = _build(fake_broker, logger, lots=7, max_limit=10)

    _bars(host, scheduler, 2)

    assert [o.symbol for o in fake_broker.submitted] == ASSETS
    for order in fake_broker.submitted:
        assert order.direction is Direction.LONG
        assert not order.is_exit
        assert order.quantity == 7
        assert order.limit_price == 92.5


def test_close_phase_exits_open_positions(fake_broker, logger):
    host, _, controller, scheduler = _build(fake_broker, logger)
    _bars(host, scheduler, 2)
    fake_broker.miss_outstanding()
    controller.on_tick(1)
    fake_broker.positions = {"SIRI": 12, "NOK": 0, "F": 3}

    _bars(host, scheduler, 1)

    exits = [o for o in fake_broker.submitted if o.is_exit]
    assert [(o.symbol, o.quantity) for o in exits] == [("SIRI", 12), ("F", 3)]
    assert all(o.direction is Direction.LONG for o in exits)
    assert controller.report.exits_requested == 3
    assert controller.report.exits_submitted == 2


def test_gate_holds_the_phase_counter(fake_broker, logger):
    host = FakeHost(awaiting_confirmation=True)
    host, _, _, scheduler = _build(fake_broker, logger, host=host)

    _bars(host, scheduler, 3)

    assert scheduler.state.initialized
    assert scheduler.state.run_num == 0
    assert len(host.pauses) == 3
    assert fake_broker.submitted == []

    host.awaiting = False
    _bars(host, scheduler, 2)

    assert scheduler.state.run_num == 2
    assert len(fake_broker.submitted) == len(ASSETS)


def test_stop_mid_run_halts_the_controller(fake_broker, logger):
    host, _, controller, scheduler = _build(fake_broker, logger)
    _bars(host, scheduler, 2)
    entry_ids = [o.order_id for o in fake_broker.submitted]

    host.stop_requested = True
    _bars(host, scheduler, 2)

    assert scheduler.state.finished
    assert scheduler.state.run_num == 2
    assert controller.halted
    assert sorted(fake_broker.cancelled) == sorted(entry_ids)
    assert len(fake_broker.submitted) == len(ASSETS)


def test_empty_roster_still_terminates(fake_broker, logger):
    host, roster, _, scheduler = _build(fake_broker, logger, assets=[], total_runs=9)

    _bars(host, scheduler, 9)

    assert roster.count == 0
    assert scheduler.state.finished
    assert host.stop_requested
    assert fake_broker.submitted == []


@pytest.mark.parametrize("initial", [Direction.LONG, Direction.SHORT])
def test_trade_type_flips_once_per_open_phase(fake_broker, logger, initial):
    host, _, _, scheduler = _build(
        fake_broker, logger, total_runs=13, initial_direction=initial
    )

    _bars(host, scheduler, 13)

    opens = [r for r in scheduler.state.phase_log if r.kind is PhaseKind.OPEN]
    closes = [r for r in scheduler.state.phase_log if r.kind is PhaseKind.CLOSE]
    for k, record in enumerate(opens):
        expected = initial if k % 2 == 0 else initial.flipped()
        assert record.direction is expected
    for opened, closed in zip(opens, closes):
        assert closed.direction is opened.direction


def test_single_run_is_initialization_only(fake_broker, logger):
    host, _, _, scheduler = _build(fake_broker, logger, total_runs=1)

    _bars(host, scheduler, 3)

    assert [r.kind for r in scheduler.state.phase_log] == [PhaseKind.INITIALIZE]
    assert scheduler.state.finished
    assert fake_broker.submitted == []


def test_adaptive_mode_passes_through_to_orders(fake_broker, logger):
    host, _, _, scheduler = _build(fake_broker, logger, order_mode=OrderMode.ADAPTIVE_NEAR_TOUCH)

    _bars(host, scheduler, 2)

    assert all(o.limit_price == 99.25 for o in fake_broker.submitted)

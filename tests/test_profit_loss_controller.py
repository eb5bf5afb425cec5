"""
Tests for ProfitLossController: trailing stop and two-stage take-profit.
"""

from unittest.mock import Mock

import pytest

from core.models import PositionKey, PositionSide
from core.position_manager import ProfitLossController, partial_targets
from core.position_state import PositionStateStore
from tests.helpers import make_position

BTC_LONG = PositionKey("BTCUSDT", PositionSide.LONG)
ETH_SHORT = PositionKey("ETHUSDT", PositionSide.SHORT)

TRAILING = {"trailing_stop": {"enabled": True, "activation_pct": 5.0, "distance_pct": 3.0}}
PARTIAL = {"partial_take_profit": {"enabled": True}}


@pytest.fixture
def exchange():
    venue = Mock()
    venue.close_position.return_value = {"order_id": "fill-1"}
    return venue


@pytest.fixture
def store():
    return PositionStateStore()


def _live(key, **kwargs):
    return {key: make_position(key.symbol, key.side, **kwargs)}


class TestTrailingStop:
    def test_arms_then_closes_on_giveback(self, exchange, store):
        store.seed_opened(BTC_LONG, 100.0, 95.0, 130.0, "lose 95")
        controller = ProfitLossController(TRAILING, exchange, store)

        for pnl in (4.0, 6.0, 15.0):
            assert controller.run(_live(BTC_LONG, quantity=2.0, pnl_pct=pnl)) == []

        state = store.get(BTC_LONG)
        assert state.trailing_stop_activated
        assert state.max_profit_pct == 15.0

        events = controller.run(_live(BTC_LONG, quantity=2.0, pnl_pct=3.0))

        assert len(events) == 1
        assert events[0].kind == "trailing_stop"
        assert events[0].success
        assert events[0].quantity == 2.0
        exchange.close_position.assert_called_once_with(PositionSide.LONG, "BTCUSDT", 0.0)

    def test_not_armed_below_activation(self, exchange, store):
        store.seed_opened(BTC_LONG, 100.0, 95.0, 130.0, "lose 95")
        controller = ProfitLossController(TRAILING, exchange, store)

        for pnl in (4.9, 0.5, -2.0):
            controller.run(_live(BTC_LONG, pnl_pct=pnl))

        assert not store.get(BTC_LONG).trailing_stop_activated
        exchange.close_position.assert_not_called()

    def test_small_giveback_keeps_position(self, exchange, store):
        store.seed_opened(BTC_LONG, 100.0, 95.0, 130.0, "lose 95")
        controller = ProfitLossController(TRAILING, exchange, store)

        for pnl in (8.0, 10.0, 7.5):
            assert controller.run(_live(BTC_LONG, pnl_pct=pnl)) == []

    def test_trailing_close_skips_partial_tp(self, exchange, store):
        store.seed_opened(BTC_LONG, 100.0, 95.0, 104.0, "lose 95")
        controller = ProfitLossController({**TRAILING, **PARTIAL}, exchange, store)
        store.get(BTC_LONG).observe_pnl(20.0)
        store.get(BTC_LONG).trailing_stop_activated = True

        events = controller.run(_live(BTC_LONG, mark_price=105.0, pnl_pct=5.0))

        assert [e.kind for e in events] == ["trailing_stop"]

    def test_failed_close_retried_next_cycle(self, exchange, store):
        store.seed_opened(BTC_LONG, 100.0, 95.0, 130.0, "lose 95")
        controller = ProfitLossController(TRAILING, exchange, store)
        controller.run(_live(BTC_LONG, pnl_pct=10.0))

        exchange.close_position.side_effect = RuntimeError("venue busy")
        events = controller.run(_live(BTC_LONG, pnl_pct=6.0))
        assert not events[0].success
        assert "venue busy" in events[0].error

        exchange.close_position.side_effect = None
        events = controller.run(_live(BTC_LONG, pnl_pct=6.0))
        assert events[0].success


class TestPartialTakeProfit:
    def test_targets_long(self):
        assert partial_targets(PositionSide.LONG, 50_000.0, 55_000.0) == (52_500.0, 55_000.0)

    def test_targets_short(self):
        assert partial_targets(PositionSide.SHORT, 3000.0, 2700.0) == (2850.0, 2700.0)

    def test_half_at_midpoint(self, exchange, store):
        store.seed_opened(BTC_LONG, 50_000.0, 48_000.0, 55_000.0, "lose 48k")
        controller = ProfitLossController(PARTIAL, exchange, store)

        assert controller.run(_live(BTC_LONG, quantity=0.2, entry_price=50_000.0,
                                    mark_price=52_400.0)) == []

        events = controller.run(_live(BTC_LONG, quantity=0.2, entry_price=50_000.0,
                                      mark_price=52_600.0))

        assert [e.kind for e in events] == ["partial_tp_50"]
        exchange.close_position.assert_called_once_with(PositionSide.LONG, "BTCUSDT",
                                                        pytest.approx(0.1))
        state = store.get(BTC_LONG)
        assert state.partial_tp50_executed
        assert not state.partial_tp100_executed

    def test_overshoot_fires_each_stage_once(self, exchange, store):
        store.seed_opened(BTC_LONG, 50_000.0, 48_000.0, 55_000.0, "lose 48k")
        controller = ProfitLossController(PARTIAL, exchange, store)
        live = _live(BTC_LONG, quantity=0.2, entry_price=50_000.0, mark_price=56_000.0)

        events = controller.run(live)
        assert [e.kind for e in events] == ["partial_tp_50", "partial_tp_100"]

        assert controller.run(live) == []
        assert exchange.close_position.call_count == 2

    def test_short_midpoint(self, exchange, store):
        store.seed_opened(ETH_SHORT, 3000.0, 3100.0, 2700.0, "reclaim 3100")
        controller = ProfitLossController(PARTIAL, exchange, store)

        events = controller.run(_live(ETH_SHORT, quantity=4.0, entry_price=3000.0,
                                      mark_price=2850.0))

        assert [e.kind for e in events] == ["partial_tp_50"]
        assert events[0].quantity == pytest.approx(2.0)

    def test_failed_close_leaves_flag_unset(self, exchange, store):
        store.seed_opened(BTC_LONG, 100.0, 95.0, 110.0, "lose 95")
        exchange.close_position.side_effect = RuntimeError("rejected")
        controller = ProfitLossController(PARTIAL, exchange, store)

        events = controller.run(_live(BTC_LONG, mark_price=106.0))

        assert len(events) == 1
        assert not events[0].success
        assert not store.get(BTC_LONG).partial_tp50_executed

    def test_no_target_no_partial(self, exchange, store):
        store.seed_opened(BTC_LONG, 100.0, 95.0, 0.0, "lose 95")
        controller = ProfitLossController(PARTIAL, exchange, store)
        assert controller.run(_live(BTC_LONG, mark_price=150.0)) == []


def test_disabled_controller_does_nothing(exchange, store):
    store.seed_opened(BTC_LONG, 100.0, 95.0, 110.0, "lose 95")
    controller = ProfitLossController({}, exchange, store)

    assert controller.run(_live(BTC_LONG, mark_price=200.0, pnl_pct=100.0)) == []
    exchange.close_position.assert_not_called()


def test_untracked_live_position_ignored(exchange, store):
    controller = ProfitLossController({**TRAILING, **PARTIAL}, exchange, store)
    assert controller.run(_live(BTC_LONG, mark_price=200.0, pnl_pct=100.0)) == []

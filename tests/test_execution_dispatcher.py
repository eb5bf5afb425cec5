"""
Tests for ExecutionDispatcher against the paper venue.

Covers anti-stacking, price drift guard, protection placement, stage
bookkeeping on decreases and stop/target updates.
"""

import pytest

from core.execution import ExecutionDispatcher
from core.models import PositionKey, PositionSide
from core.position_state import PositionStateStore
from tests.helpers import make_intent

BTC_LONG = PositionKey("BTCUSDT", PositionSide.LONG)
BTC_SHORT = PositionKey("BTCUSDT", PositionSide.SHORT)


@pytest.fixture
def store(venue):
    return PositionStateStore(venue)


@pytest.fixture
def dispatcher(venue, store):
    return ExecutionDispatcher(venue, store, price_drift_tolerance_pct=3.0)


def _open_long(dispatcher, venue, usd=1000.0):
    outcome = dispatcher.dispatch(make_intent("open_long", position_size_usd=usd))
    assert outcome.success, outcome.error
    venue.calls.clear()
    return outcome


class TestOpen:
    def test_open_places_position_and_protection(self, dispatcher, venue, store):
        outcome = dispatcher.dispatch(make_intent("open_long", stop_loss=98, take_profit=104))

        assert outcome.success
        assert outcome.quantity == pytest.approx(10.0)
        assert outcome.price == 100.0
        assert outcome.order_id
        assert venue.find_position("BTCUSDT", PositionSide.LONG).quantity == pytest.approx(10.0)
        assert venue.calls_named("set_stop_loss")[0][-1] == 98
        assert venue.calls_named("set_take_profit")[0][-1] == 104

        state = store.get(BTC_LONG)
        assert state.stop_loss_price == 98
        assert state.take_profit_price == 104
        assert state.invalidation_condition == "1h close beyond stop"

    def test_anti_stacking_refuses_without_venue_call(self, dispatcher, venue):
        _open_long(dispatcher, venue)

        outcome = dispatcher.dispatch(make_intent("open_long"))

        assert not outcome.success
        assert "refusing to stack" in outcome.error
        assert venue.order_calls() == []

    def test_opposite_side_is_not_stacking(self, dispatcher, venue, store):
        _open_long(dispatcher, venue)
        outcome = dispatcher.dispatch(make_intent("open_short"))
        assert outcome.success
        assert BTC_SHORT in store

    def test_failed_position_read_refuses_open(self, dispatcher, venue):
        venue.fail_on["get_positions"] = ConnectionError("venue down")

        outcome = dispatcher.dispatch(make_intent("open_long"))

        assert not outcome.success
        assert "could not read live positions" in outcome.error
        assert venue.order_calls() == []

    @pytest.mark.parametrize("market, ok", [(102.0, True), (97.5, True), (104.0, False), (96.0, False)])
    def test_price_drift_guard(self, dispatcher, venue, market, ok):
        venue.set_price("BTCUSDT", market)
        outcome = dispatcher.dispatch(make_intent("open_long", entry_price=100.0))
        assert outcome.success is ok
        if not ok:
            assert "price drift" in outcome.error
            assert venue.order_calls() == []

    def test_protection_failure_only_noted(self, dispatcher, venue, store):
        venue.fail_on["set_stop_loss"] = RuntimeError("rejected by venue")

        outcome = dispatcher.dispatch(make_intent("open_long"))

        assert outcome.success
        assert any("stop-loss placement failed" in note for note in outcome.notes)
        assert venue.calls_named("set_take_profit")
        assert BTC_LONG in store

    def test_venue_open_failure_leaves_state_untouched(self, dispatcher, venue, store):
        venue.fail_on["open_long"] = RuntimeError("Insufficient margin")

        outcome = dispatcher.dispatch(make_intent("open_long"))

        assert not outcome.success
        assert "Insufficient margin" in outcome.error
        assert BTC_LONG not in store


class TestIncrease:
    def test_increase_replaces_protection_for_total_size(self, dispatcher, venue, store):
        _open_long(dispatcher, venue)

        outcome = dispatcher.dispatch(make_intent(
            "increase_long", position_size_usd=500, stop_loss=97, take_profit=110,
            invalidation_condition="lose 96",
        ))

        assert outcome.success
        assert outcome.quantity == pytest.approx(5.0)
        assert venue.calls_named("cancel_all_orders")
        stop_call = venue.calls_named("set_stop_loss")[-1]
        assert stop_call[3] == pytest.approx(15.0)
        assert stop_call[4] == 97
        assert len(venue.get_open_orders("BTCUSDT")) == 2

        state = store.get(BTC_LONG)
        assert (state.stop_loss_price, state.take_profit_price) == (97, 110)
        assert state.invalidation_condition == "lose 96"

    def test_increase_tracks_averaged_entry(self, dispatcher, venue, store):
        _open_long(dispatcher, venue)
        venue.set_price("BTCUSDT", 102.0)

        outcome = dispatcher.dispatch(make_intent(
            "increase_long", position_size_usd=510, entry_price=102, stop_loss=99, take_profit=110,
        ))

        assert outcome.success
        state = store.get(BTC_LONG)
        assert state.entry_price == pytest.approx(1510.0 / 15.0)
        assert state.entry_price == pytest.approx(venue.find_position("BTCUSDT", PositionSide.LONG).entry_price)

    def test_increase_without_position(self, dispatcher, venue):
        outcome = dispatcher.dispatch(make_intent("increase_long"))
        assert not outcome.success
        assert "no open long position" in outcome.error
        assert venue.order_calls() == []


class TestDecrease:
    def test_half_decrease_advances_stage(self, dispatcher, venue, store):
        _open_long(dispatcher, venue)

        outcome = dispatcher.dispatch(make_intent("decrease_long", position_size_usd=500))

        assert outcome.success
        assert outcome.quantity == pytest.approx(5.0)
        state = store.get(BTC_LONG)
        assert state.remaining_quantity_fraction == pytest.approx(0.5)
        assert state.stage == 2
        assert any("stage 2" in note for note in outcome.notes)

    def test_fraction_is_cumulative(self, dispatcher, venue, store):
        _open_long(dispatcher, venue)

        dispatcher.dispatch(make_intent("decrease_long", position_size_usd=300))
        state = store.get(BTC_LONG)
        assert state.remaining_quantity_fraction == pytest.approx(0.7)
        assert state.stage == 1

        dispatcher.dispatch(make_intent("decrease_long", position_size_usd=350))
        assert state.remaining_quantity_fraction == pytest.approx(0.35)
        assert state.stage == 1

    def test_decrease_not_smaller_than_position(self, dispatcher, venue):
        _open_long(dispatcher, venue)

        outcome = dispatcher.dispatch(make_intent("decrease_long", position_size_usd=1000))

        assert not outcome.success
        assert "use close_long" in outcome.error
        assert venue.order_calls() == []


class TestClose:
    def test_close_whole_position(self, dispatcher, venue):
        _open_long(dispatcher, venue)

        outcome = dispatcher.dispatch(make_intent("close_long"))

        assert outcome.success
        assert outcome.quantity == pytest.approx(10.0)
        assert venue.get_positions() == []

    def test_close_missing_position_fails(self, dispatcher):
        outcome = dispatcher.dispatch(make_intent("close_short"))
        assert not outcome.success
        assert "venue error" in outcome.error


class TestUpdateLossProfit:
    def test_replaces_orders_and_tracked_levels(self, dispatcher, venue, store):
        _open_long(dispatcher, venue)

        outcome = dispatcher.dispatch(make_intent("update_loss_profit", stop_loss=99, take_profit=112))

        assert outcome.success
        assert [c[0] for c in venue.order_calls()] == [
            "cancel_all_orders", "set_stop_loss", "set_take_profit",
        ]
        state = store.get(BTC_LONG)
        assert (state.stop_loss_price, state.take_profit_price) == (99, 112)
        assert sorted(o.trigger_price for o in venue.get_open_orders("BTCUSDT")) == [99, 112]

    def test_stop_on_wrong_side_of_price_rejected(self, dispatcher, venue):
        _open_long(dispatcher, venue)

        outcome = dispatcher.dispatch(make_intent("update_loss_profit", stop_loss=101, take_profit=112))

        assert not outcome.success
        assert "must be below current price" in outcome.error
        assert venue.order_calls() == []

    def test_hedged_symbol_uses_bracket_shape(self, dispatcher, venue):
        _open_long(dispatcher, venue)
        assert dispatcher.dispatch(make_intent("open_short")).success
        venue.calls.clear()

        outcome = dispatcher.dispatch(make_intent("update_loss_profit", stop_loss=105, take_profit=90))

        assert outcome.success
        assert venue.calls_named("set_stop_loss")[0][2] is PositionSide.SHORT

    def test_cancel_failure_is_an_error(self, dispatcher, venue):
        _open_long(dispatcher, venue)
        venue.fail_on["cancel_all_orders"] = RuntimeError("timeout")

        outcome = dispatcher.dispatch(make_intent("update_loss_profit", stop_loss=99, take_profit=112))

        assert not outcome.success
        assert "cancel existing stop/target failed" in outcome.error
        assert venue.calls_named("set_stop_loss") == []


def test_hold_is_a_no_op(dispatcher, venue):
    outcome = dispatcher.dispatch(make_intent("hold"))
    assert outcome.success
    assert venue.calls == []


def test_unknown_action_fails(dispatcher, venue):
    outcome = dispatcher.dispatch(make_intent("moon"))
    assert not outcome.success
    assert "unknown action" in outcome.error


def test_one_failure_does_not_stop_batch(dispatcher, venue):
    outcomes = dispatcher.dispatch_all([
        make_intent("close_long", symbol="ETHUSDT"),
        make_intent("open_long", symbol="SOLUSDT"),
    ])
    assert [o.success for o in outcomes] == [False, True]

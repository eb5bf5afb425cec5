"""
Tests for DecisionValidator hard rules.

Covers:
- Risk:reward gate (2:1 default)
- Leverage ceilings and notional caps per asset class
- Stop/target direction
- Manage-only mode
- Determinism of verdicts
"""

import pytest

from core.decision_validator import DecisionValidator, RiskLimits, risk_reward
from core.exceptions import ValidationError
from core.models import DecisionAction, PositionSide
from tests.helpers import make_intent

EQUITY = 1000.0


@pytest.fixture
def validator():
    return DecisionValidator(RiskLimits())


class TestRiskReward:
    def test_ratio_below_minimum_rejected(self, validator):
        intent = make_intent("open_long", entry_price=100, stop_loss=98, take_profit=103)
        result = validator.validate(intent, EQUITY)

        assert not result.approved
        assert "1.50:1" in result.reason
        assert "2.0:1" in result.reason

    def test_ratio_at_minimum_accepted(self, validator):
        intent = make_intent("open_long", entry_price=100, stop_loss=98, take_profit=104)
        result = validator.validate(intent, EQUITY)

        assert result.approved
        assert result.action is DecisionAction.OPEN_LONG

    def test_short_bracket_ratio(self, validator):
        intent = make_intent("open_short", entry_price=100, stop_loss=101, take_profit=97)
        assert validator.validate(intent, EQUITY).approved

        weak = make_intent("open_short", entry_price=100, stop_loss=102, take_profit=98)
        assert not validator.validate(weak, EQUITY).approved

    def test_risk_reward_helper(self):
        risk, reward, ratio = risk_reward(PositionSide.LONG, 100, 98, 103)
        assert risk == pytest.approx(2.0)
        assert reward == pytest.approx(3.0)
        assert ratio == pytest.approx(1.5)

    def test_custom_minimum(self):
        validator = DecisionValidator(RiskLimits(min_risk_reward_ratio=1.5))
        intent = make_intent("open_long", entry_price=100, stop_loss=98, take_profit=103)
        assert validator.validate(intent, EQUITY).approved


class TestExposure:
    def test_leverage_above_ceiling_rejected(self, validator):
        result = validator.validate(make_intent("open_long", leverage=6), EQUITY)
        assert not result.approved
        assert "6x" in result.reason

    def test_altcoin_ceiling_applies(self):
        limits = RiskLimits(leverage_ceilings={"btc_eth": 20, "altcoin": 3})
        validator = DecisionValidator(limits)

        assert validator.validate(make_intent("open_long", symbol="BTCUSDT", leverage=10), EQUITY).approved
        result = validator.validate(make_intent("open_long", symbol="SOLUSDT", leverage=5), EQUITY)
        assert not result.approved
        assert "altcoin" in result.reason

    def test_zero_leverage_rejected(self, validator):
        assert not validator.validate(make_intent("open_long", leverage=0), EQUITY).approved

    def test_notional_cap_with_tolerance(self, validator):
        # BTC cap is 10x equity; 1% slack on top
        assert validator.validate(make_intent("open_long", position_size_usd=10_050), EQUITY).approved

        result = validator.validate(make_intent("open_long", position_size_usd=10_200), EQUITY)
        assert not result.approved
        assert "equity cap" in result.reason

    def test_altcoin_notional_cap(self, validator):
        result = validator.validate(
            make_intent("open_long", symbol="SOLUSDT", position_size_usd=6000), EQUITY
        )
        assert not result.approved

    def test_missing_prices_rejected(self, validator):
        result = validator.validate(make_intent("open_long", stop_loss=0), EQUITY)
        assert not result.approved
        assert "must all be > 0" in result.reason

    def test_invalidation_required(self, validator):
        result = validator.validate(make_intent("open_long", invalidation_condition="  "), EQUITY)
        assert not result.approved
        assert "invalidation_condition" in result.reason

    def test_increase_uses_same_rules(self, validator):
        assert validator.validate(make_intent("increase_long"), EQUITY).approved
        assert not validator.validate(make_intent("increase_long", leverage=50), EQUITY).approved


class TestDirection:
    def test_long_stop_above_entry_rejected(self, validator):
        result = validator.validate(
            make_intent("open_long", entry_price=100, stop_loss=101, take_profit=110), EQUITY
        )
        assert not result.approved
        assert "below entry_price" in result.reason

    def test_short_target_above_entry_rejected(self, validator):
        result = validator.validate(
            make_intent("open_short", entry_price=100, stop_loss=102, take_profit=105), EQUITY
        )
        assert not result.approved
        assert "below entry_price" in result.reason


class TestOtherActions:
    def test_unknown_action_rejected(self, validator):
        result = validator.validate(make_intent("buy_the_dip"), EQUITY)
        assert not result.approved
        assert "unknown action" in result.reason

    def test_hold_and_wait_accepted(self, validator):
        assert validator.validate(make_intent("hold"), EQUITY).approved
        assert validator.validate(make_intent("wait", symbol=""), EQUITY).approved

    def test_close_accepted_without_prices(self, validator):
        intent = make_intent("close_short", entry_price=0, stop_loss=0, take_profit=0)
        assert validator.validate(intent, EQUITY).approved

    def test_decrease_needs_size_and_reason(self, validator):
        assert validator.validate(make_intent("decrease_long", position_size_usd=200), EQUITY).approved
        assert not validator.validate(make_intent("decrease_long", position_size_usd=0), EQUITY).approved
        assert not validator.validate(
            make_intent("decrease_long", position_size_usd=200, reasoning=""), EQUITY
        ).approved

    def test_update_needs_both_prices(self, validator):
        assert validator.validate(
            make_intent("update_loss_profit", stop_loss=99, take_profit=110), EQUITY
        ).approved
        result = validator.validate(make_intent("update_loss_profit", take_profit=0), EQUITY)
        assert not result.approved

    def test_manage_only_rejects_opens(self):
        validator = DecisionValidator(RiskLimits.from_config({"mode": "position_manager"}))

        result = validator.validate(make_intent("open_long"), EQUITY)
        assert not result.approved
        assert "only manages existing positions" in result.reason
        assert validator.validate(make_intent("close_long"), EQUITY).approved
        assert validator.validate(make_intent("increase_long"), EQUITY).approved


class TestDeterminism:
    @pytest.mark.parametrize("intent", [
        make_intent("open_long"),
        make_intent("open_long", take_profit=103),
        make_intent("open_short", leverage=9),
        make_intent("mystery"),
    ])
    def test_same_input_same_verdict(self, validator, intent):
        first = validator.validate(intent, EQUITY)
        for _ in range(5):
            assert validator.validate(intent, EQUITY) == first

    def test_check_raises_validation_error(self, validator):
        with pytest.raises(ValidationError) as exc_info:
            validator.check(make_intent("open_long", take_profit=103), EQUITY)
        assert "risk:reward" in exc_info.value.reason
        assert exc_info.value.symbol == "BTCUSDT"

        assert validator.check(make_intent("open_long"), EQUITY) is DecisionAction.OPEN_LONG


def test_limits_from_config():
    limits = RiskLimits.from_config({
        "leverage": {"btc_eth": 20, "altcoin": 8},
        "notional_multiple": {"btc_eth": 3, "altcoin": 2},
        "min_risk_reward_ratio": 3.0,
    })
    assert limits.leverage_ceilings == {"btc_eth": 20, "altcoin": 8}
    assert limits.notional_multiples == {"btc_eth": 3.0, "altcoin": 2.0}
    assert limits.min_risk_reward_ratio == 3.0
    assert limits.allow_open

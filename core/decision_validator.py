"""
AutoPerp Core: Decision Validator

Hard rules every proposed intent must pass before it may reach the venue.
Pattern: one stateless check per intent, rejection reasons carried as data.

Nothing here reads the clock, the venue or any mutable state, so the same
intent, equity and limits always produce the same verdict.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from core.exceptions import ValidationError
from core.models import DecisionAction, DecisionIntent, PositionSide
from infra.symbols import ASSET_CLASS_ALTCOIN, ASSET_CLASS_MAJOR, asset_class

logger = logging.getLogger(__name__)

# Rounding slack on the notional cap (1% of the cap).
NOTIONAL_TOLERANCE = 0.01
DEFAULT_MIN_RISK_REWARD = 2.0


@dataclass
class ValidationResult:
    """Result of validating one intent"""
    approved: bool
    reason: Optional[str] = None
    action: Optional[DecisionAction] = None

    @classmethod
    def accept(cls, action: DecisionAction) -> "ValidationResult":
        return cls(approved=True, action=action)

    @classmethod
    def reject(cls, reason: str, action: Optional[DecisionAction] = None) -> "ValidationResult":
        return cls(approved=False, reason=reason, action=action)


@dataclass
class RiskLimits:
    leverage_ceilings: Dict[str, int] = field(
        default_factory=lambda: {ASSET_CLASS_MAJOR: 5, ASSET_CLASS_ALTCOIN: 5}
    )
    notional_multiples: Dict[str, float] = field(
        default_factory=lambda: {ASSET_CLASS_MAJOR: 10.0, ASSET_CLASS_ALTCOIN: 5.0}
    )
    min_risk_reward_ratio: float = DEFAULT_MIN_RISK_REWARD
    allow_open: bool = True

    @classmethod
    def from_config(cls, config: dict) -> "RiskLimits":
        leverage = config.get("leverage", {})
        multiples = config.get("notional_multiple", {})
        return cls(
            leverage_ceilings={
                ASSET_CLASS_MAJOR: int(leverage.get(ASSET_CLASS_MAJOR, 5)),
                ASSET_CLASS_ALTCOIN: int(leverage.get(ASSET_CLASS_ALTCOIN, 5)),
            },
            notional_multiples={
                ASSET_CLASS_MAJOR: float(multiples.get(ASSET_CLASS_MAJOR, 10.0)),
                ASSET_CLASS_ALTCOIN: float(multiples.get(ASSET_CLASS_ALTCOIN, 5.0)),
            },
            min_risk_reward_ratio=float(config.get("min_risk_reward_ratio", DEFAULT_MIN_RISK_REWARD)),
            allow_open=config.get("mode", "auto") != "position_manager",
        )


def risk_reward(side: PositionSide, entry: float, stop: float, target: float):
    """Return (risk_pct, reward_pct, ratio) for a bracket. Ratio is 0 when risk is 0."""
    if side is PositionSide.LONG:
        risk_pct = (entry - stop) / entry * 100.0
        reward_pct = (target - entry) / entry * 100.0
        ratio = (target - entry) / (entry - stop) if entry != stop else 0.0
    else:
        risk_pct = (stop - entry) / entry * 100.0
        reward_pct = (entry - target) / entry * 100.0
        ratio = (entry - target) / (stop - entry) if entry != stop else 0.0
    return risk_pct, reward_pct, ratio


class DecisionValidator:
    """
    Validates one DecisionIntent against account equity and risk limits.

    Checks, in order:
    1. Known action
    2. Leverage / size / notional cap / prices / invalidation for open & increase
    3. Stop and target on the correct side of entry
    4. Risk:reward at or above the minimum
    5. Decrease needs a size and a reason
    6. Stop/target update needs both prices and a reason
    """

    def __init__(self, limits: Optional[RiskLimits] = None):
        self.limits = limits or RiskLimits()

    def validate(self, intent: DecisionIntent, equity: float) -> ValidationResult:
        action = intent.parsed_action
        if action is None:
            return ValidationResult.reject(f"unknown action '{intent.action}'")

        if action in (DecisionAction.HOLD, DecisionAction.WAIT):
            return ValidationResult.accept(action)

        if not intent.symbol:
            return ValidationResult.reject(f"{action.value}: symbol is required", action)

        if action.is_open and not self.limits.allow_open:
            return ValidationResult.reject(
                f"{action.value} not allowed: instance only manages existing positions", action
            )

        if action.adds_exposure:
            reason = self._check_exposure(intent, action, equity)
            if reason:
                return ValidationResult.reject(reason, action)
            reason = self._check_direction(intent, action.side)
            if reason:
                return ValidationResult.reject(reason, action)
            reason = self._check_risk_reward(intent, action.side)
            if reason:
                return ValidationResult.reject(reason, action)
            return ValidationResult.accept(action)

        if action.is_decrease:
            if intent.position_size_usd <= 0:
                return ValidationResult.reject(
                    f"{action.value}: position_size_usd must be > 0 (got {intent.position_size_usd})",
                    action,
                )
            if not intent.reasoning.strip():
                return ValidationResult.reject(f"{action.value}: reasoning is required", action)
            return ValidationResult.accept(action)

        if action is DecisionAction.UPDATE_LOSS_PROFIT:
            if intent.stop_loss <= 0 or intent.take_profit <= 0:
                return ValidationResult.reject(
                    f"update_loss_profit: stop_loss and take_profit must be > 0 "
                    f"(stop={intent.stop_loss}, take_profit={intent.take_profit})",
                    action,
                )
            if not intent.reasoning.strip():
                return ValidationResult.reject("update_loss_profit: reasoning is required", action)
            return ValidationResult.accept(action)

        # close_*
        return ValidationResult.accept(action)

    def check(self, intent: DecisionIntent, equity: float) -> DecisionAction:
        """Raise ValidationError on rejection; return the parsed action otherwise."""
        result = self.validate(intent, equity)
        if not result.approved:
            logger.warning(f"Rejected {intent.symbol or '?'} {intent.action}: {result.reason}")
            raise ValidationError(result.reason, intent.symbol, intent.action)
        return result.action

    def _check_exposure(self, intent: DecisionIntent, action: DecisionAction,
                        equity: float) -> Optional[str]:
        cls = asset_class(intent.symbol)
        ceiling = self.limits.leverage_ceilings.get(cls, 1)
        if intent.leverage < 1 or intent.leverage > ceiling:
            return (
                f"{action.value} {intent.symbol}: leverage {intent.leverage}x outside 1-{ceiling}x "
                f"({cls} ceiling)"
            )
        if intent.position_size_usd <= 0:
            return f"{action.value} {intent.symbol}: position_size_usd must be > 0"

        multiple = self.limits.notional_multiples.get(cls, 1.0)
        max_notional = equity * multiple
        if intent.position_size_usd > max_notional * (1 + NOTIONAL_TOLERANCE):
            return (
                f"{action.value} {intent.symbol}: position ${intent.position_size_usd:.2f} exceeds "
                f"{multiple:g}x equity cap ${max_notional:.2f} (equity ${equity:.2f})"
            )
        if intent.entry_price <= 0 or intent.stop_loss <= 0 or intent.take_profit <= 0:
            return (
                f"{action.value} {intent.symbol}: entry_price, stop_loss and take_profit must all be > 0 "
                f"(entry={intent.entry_price}, stop={intent.stop_loss}, take_profit={intent.take_profit})"
            )
        if not intent.invalidation_condition.strip():
            return f"{action.value} {intent.symbol}: invalidation_condition is required"
        return None

    @staticmethod
    def _check_direction(intent: DecisionIntent, side: PositionSide) -> Optional[str]:
        entry, stop, target = intent.entry_price, intent.stop_loss, intent.take_profit
        if side is PositionSide.LONG:
            if not stop < entry:
                return f"long {intent.symbol}: stop_loss {stop} must be below entry_price {entry}"
            if not entry < target:
                return f"long {intent.symbol}: take_profit {target} must be above entry_price {entry}"
        else:
            if not stop > entry:
                return f"short {intent.symbol}: stop_loss {stop} must be above entry_price {entry}"
            if not entry > target:
                return f"short {intent.symbol}: take_profit {target} must be below entry_price {entry}"
        return None

    def _check_risk_reward(self, intent: DecisionIntent, side: PositionSide) -> Optional[str]:
        risk_pct, reward_pct, ratio = risk_reward(
            side, intent.entry_price, intent.stop_loss, intent.take_profit
        )
        minimum = self.limits.min_risk_reward_ratio
        if ratio + 1e-9 < minimum:
            return (
                f"{intent.symbol}: risk:reward {ratio:.2f}:1 below minimum {minimum:.1f}:1 "
                f"[entry={intent.entry_price:.4f} stop={intent.stop_loss:.4f} "
                f"take_profit={intent.take_profit:.4f} risk={risk_pct:.2f}% reward={reward_pct:.2f}%]"
            )
        return None

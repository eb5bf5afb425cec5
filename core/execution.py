"""
AutoPerp Core: Execution Dispatcher

Turns validated, sequenced intents into venue calls.

Safety:
- Anti-stacking: an open is refused if the venue already holds that (symbol, side)
- Price drift guard: open/increase abort if the market moved too far from the proposal
- Failure isolation: one failed intent never stops the rest of the batch
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from core.exceptions import ExecutionError
from core.exchange import ExchangeTrader
from core.models import (
    DecisionAction,
    DecisionIntent,
    PositionKey,
    PositionSide,
    PositionSnapshot,
    utc_now,
)
from core.position_state import PositionStateStore

logger = logging.getLogger(__name__)

DEFAULT_PRICE_DRIFT_TOLERANCE_PCT = 3.0
STAGE_ADVANCE_BAND = (0.4, 0.6)


@dataclass
class DispatchOutcome:
    """Result of executing one intent"""
    action: str
    symbol: str
    success: bool = False
    quantity: float = 0.0
    leverage: int = 0
    price: float = 0.0
    order_id: Optional[str] = None
    error: Optional[str] = None
    notes: List[str] = field(default_factory=list)
    timestamp: datetime = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "symbol": self.symbol,
            "success": self.success,
            "quantity": self.quantity,
            "leverage": self.leverage,
            "price": self.price,
            "order_id": self.order_id,
            "error": self.error,
            "notes": list(self.notes),
            "timestamp": self.timestamp.isoformat(),
        }


class ExecutionDispatcher:
    """
    Executes one intent at a time against an ExchangeTrader and keeps the
    PositionStateStore in step with what was actually done.
    """

    def __init__(self, exchange: ExchangeTrader, positions: PositionStateStore,
                 price_drift_tolerance_pct: float = DEFAULT_PRICE_DRIFT_TOLERANCE_PCT):
        self.exchange = exchange
        self.positions = positions
        self.price_drift_tolerance_pct = price_drift_tolerance_pct

        self._handlers: Dict[DecisionAction, Callable[[DecisionIntent, DispatchOutcome], None]] = {
            DecisionAction.OPEN_LONG: self._open,
            DecisionAction.OPEN_SHORT: self._open,
            DecisionAction.INCREASE_LONG: self._increase,
            DecisionAction.INCREASE_SHORT: self._increase,
            DecisionAction.DECREASE_LONG: self._decrease,
            DecisionAction.DECREASE_SHORT: self._decrease,
            DecisionAction.CLOSE_LONG: self._close,
            DecisionAction.CLOSE_SHORT: self._close,
            DecisionAction.UPDATE_LOSS_PROFIT: self._update_loss_profit,
            DecisionAction.HOLD: self._no_op,
            DecisionAction.WAIT: self._no_op,
        }

    def dispatch_all(self, intents: List[DecisionIntent]) -> List[DispatchOutcome]:
        return [self.dispatch(intent) for intent in intents]

    def dispatch(self, intent: DecisionIntent) -> DispatchOutcome:
        outcome = DispatchOutcome(action=intent.action, symbol=intent.symbol,
                                  leverage=intent.leverage)
        action = intent.parsed_action
        if action is None:
            outcome.error = f"unknown action '{intent.action}'"
            return outcome

        try:
            self._handlers[action](intent, outcome)
            outcome.success = True
        except ExecutionError as exc:
            outcome.error = exc.reason
            logger.warning(f"✗ {intent.symbol} {action.value} refused: {exc.reason}")
        except Exception as exc:
            outcome.error = f"venue error: {exc}"
            logger.error(f"✗ {intent.symbol} {action.value} failed: {exc}")
        else:
            if action not in (DecisionAction.HOLD, DecisionAction.WAIT):
                logger.info(
                    f"✓ {intent.symbol} {action.value} qty={outcome.quantity:.6f} "
                    f"price={outcome.price:.4f} order={outcome.order_id}"
                )
        return outcome

    # ─── Handlers ──────────────────────────────────────────────────────────

    def _open(self, intent: DecisionIntent, outcome: DispatchOutcome) -> None:
        side = intent.parsed_action.side
        key = PositionKey(intent.symbol, side)

        if self._find_live(key) is not None:
            raise ExecutionError(
                f"{key.symbol} already has an open {side.value} position; refusing to stack "
                f"(use increase_{side.value} to add)",
                intent.symbol, intent.action,
            )

        price = self._market_price(intent)
        self._check_drift(intent, price)
        quantity = intent.position_size_usd / price

        order = self.exchange.open_position(side, intent.symbol, quantity, intent.leverage)
        fill_price = float(order.get("price") or price)
        self._record_order(outcome, order, quantity, fill_price)

        self.positions.seed_opened(
            key,
            entry_price=fill_price,
            stop_loss=intent.stop_loss,
            take_profit=intent.take_profit,
            invalidation_condition=intent.invalidation_condition,
            reasoning=intent.reasoning,
        )
        self._place_protection(intent.symbol, side, quantity, intent.stop_loss,
                               intent.take_profit, outcome)

    def _increase(self, intent: DecisionIntent, outcome: DispatchOutcome) -> None:
        side = intent.parsed_action.side
        key = PositionKey(intent.symbol, side)

        existing = self._find_live(key)
        if existing is None:
            raise ExecutionError(
                f"no open {side.value} position on {key.symbol} to increase",
                intent.symbol, intent.action,
            )

        price = self._market_price(intent)
        self._check_drift(intent, price)
        quantity = intent.position_size_usd / price

        order = self.exchange.open_position(side, intent.symbol, quantity, intent.leverage)
        self._record_order(outcome, order, quantity, float(order.get("price") or price))

        try:
            self.exchange.cancel_all_orders(intent.symbol)
        except Exception as exc:
            outcome.notes.append(f"cancel old stop/target failed: {exc}")
            logger.warning(f"{intent.symbol}: could not cancel old stop/target: {exc}")

        total_quantity = existing.quantity + quantity
        entry_price = existing.entry_price
        try:
            refreshed = self.exchange.find_position(intent.symbol, side)
            if refreshed is not None:
                total_quantity = refreshed.quantity
                entry_price = refreshed.entry_price
        except Exception as exc:
            outcome.notes.append(f"post-increase position read failed, using estimate: {exc}")

        self._place_protection(intent.symbol, side, total_quantity, intent.stop_loss,
                               intent.take_profit, outcome)

        state = self.positions.get(key)
        if state is None:
            self.positions.seed_opened(key, entry_price, intent.stop_loss,
                                       intent.take_profit, intent.invalidation_condition,
                                       intent.reasoning)
        else:
            # Partial take-profit targets are measured from the averaged entry.
            state.entry_price = entry_price
            state.replace_protection(intent.stop_loss, intent.take_profit,
                                     intent.invalidation_condition)

    def _decrease(self, intent: DecisionIntent, outcome: DispatchOutcome) -> None:
        side = intent.parsed_action.side
        key = PositionKey(intent.symbol, side)

        existing = self._find_live(key)
        if existing is None:
            raise ExecutionError(
                f"no open {side.value} position on {key.symbol} to decrease",
                intent.symbol, intent.action,
            )

        price = self._market_price(intent)
        quantity = intent.position_size_usd / price
        if quantity >= existing.quantity:
            raise ExecutionError(
                f"decrease of {quantity:.6f} ({intent.position_size_usd:.2f} USD) is not less than "
                f"position size {existing.quantity:.6f}; use close_{side.value} instead",
                intent.symbol, intent.action,
            )

        order = self.exchange.close_position(side, intent.symbol, quantity)
        self._record_order(outcome, order, quantity, float(order.get("price") or price))

        state = self.positions.get(key)
        if state is not None:
            remaining = (existing.quantity - quantity) / existing.quantity
            state.remaining_quantity_fraction *= remaining
            low, high = STAGE_ADVANCE_BAND
            if low <= state.remaining_quantity_fraction <= high and state.advance_stage():
                outcome.notes.append(f"{key} advanced to stage {state.stage}")
                logger.info(
                    f"{key} advanced to stage {state.stage} "
                    f"(remaining {state.remaining_quantity_fraction:.0%})"
                )

    def _close(self, intent: DecisionIntent, outcome: DispatchOutcome) -> None:
        side = intent.parsed_action.side
        order = self.exchange.close_position(side, intent.symbol, 0)
        self._record_order(outcome, order, float(order.get("quantity") or 0.0),
                           float(order.get("price") or 0.0))

    def _update_loss_profit(self, intent: DecisionIntent, outcome: DispatchOutcome) -> None:
        position = self._pick_position_for_update(intent)
        side = position.side
        price = position.mark_price or self._market_price(intent)
        stop, target = intent.stop_loss, intent.take_profit

        if side is PositionSide.LONG:
            if not target > stop:
                raise ExecutionError(
                    f"long {intent.symbol}: take_profit {target} must be above stop_loss {stop}",
                    intent.symbol, intent.action,
                )
            if not stop < price:
                raise ExecutionError(
                    f"long {intent.symbol}: stop_loss {stop} must be below current price {price}",
                    intent.symbol, intent.action,
                )
        else:
            if not stop > target:
                raise ExecutionError(
                    f"short {intent.symbol}: stop_loss {stop} must be above take_profit {target}",
                    intent.symbol, intent.action,
                )
            if not stop > price:
                raise ExecutionError(
                    f"short {intent.symbol}: stop_loss {stop} must be above current price {price}",
                    intent.symbol, intent.action,
                )

        try:
            self.exchange.cancel_all_orders(intent.symbol)
        except Exception as exc:
            raise ExecutionError(f"cancel existing stop/target failed: {exc}",
                                 intent.symbol, intent.action, exc) from exc

        try:
            self.exchange.set_stop_loss(intent.symbol, side, position.quantity, stop)
            self.exchange.set_take_profit(intent.symbol, side, position.quantity, target)
        except Exception as exc:
            raise ExecutionError(f"placing new stop/target failed: {exc}",
                                 intent.symbol, intent.action, exc) from exc

        outcome.quantity = position.quantity
        outcome.price = price

        state = self.positions.get(position.key)
        if state is not None:
            state.replace_protection(stop, target,
                                     intent.invalidation_condition or state.invalidation_condition)

    def _no_op(self, intent: DecisionIntent, outcome: DispatchOutcome) -> None:
        return None

    # ─── Helpers ───────────────────────────────────────────────────────────

    def _live_positions(self, intent_symbol: str) -> List[PositionSnapshot]:
        try:
            return self.exchange.get_positions()
        except Exception as exc:
            raise ExecutionError(f"could not read live positions: {exc}",
                                 intent_symbol, original=exc) from exc

    def _find_live(self, key: PositionKey) -> Optional[PositionSnapshot]:
        for pos in self._live_positions(key.symbol):
            if pos.key == key and pos.quantity > 0:
                return pos
        return None

    def _pick_position_for_update(self, intent: DecisionIntent) -> PositionSnapshot:
        matches = [p for p in self._live_positions(intent.symbol)
                   if p.symbol == intent.symbol and p.quantity > 0]
        if not matches:
            raise ExecutionError(f"no open position on {intent.symbol} to update",
                                 intent.symbol, intent.action)
        if len(matches) == 1:
            return matches[0]
        # Hedged: the bracket shape says which side the new prices belong to.
        wanted = PositionSide.LONG if intent.stop_loss < intent.take_profit else PositionSide.SHORT
        for pos in matches:
            if pos.side is wanted:
                return pos
        return matches[0]

    def _market_price(self, intent: DecisionIntent) -> float:
        try:
            price = float(self.exchange.get_market_price(intent.symbol))
        except Exception as exc:
            raise ExecutionError(f"could not read market price: {exc}",
                                 intent.symbol, intent.action, exc) from exc
        if price <= 0:
            raise ExecutionError(f"invalid market price {price}", intent.symbol, intent.action)
        return price

    def _check_drift(self, intent: DecisionIntent, price: float) -> None:
        if intent.entry_price <= 0:
            return
        drift_pct = abs(price - intent.entry_price) / intent.entry_price * 100.0
        if drift_pct > self.price_drift_tolerance_pct:
            raise ExecutionError(
                f"price drift {drift_pct:.2f}% exceeds {self.price_drift_tolerance_pct:g}% "
                f"(proposal entry {intent.entry_price}, market {price})",
                intent.symbol, intent.action,
            )

    def _place_protection(self, symbol: str, side: PositionSide, quantity: float,
                          stop: float, target: float, outcome: DispatchOutcome) -> None:
        """Stop/target failures are noted; the position itself already exists."""
        try:
            self.exchange.set_stop_loss(symbol, side, quantity, stop)
        except Exception as exc:
            outcome.notes.append(f"stop-loss placement failed: {exc}")
            logger.error(f"{symbol} {side.value}: stop-loss placement failed: {exc}")
        try:
            self.exchange.set_take_profit(symbol, side, quantity, target)
        except Exception as exc:
            outcome.notes.append(f"take-profit placement failed: {exc}")
            logger.error(f"{symbol} {side.value}: take-profit placement failed: {exc}")

    @staticmethod
    def _record_order(outcome: DispatchOutcome, order: Dict[str, Any], quantity: float,
                      price: float) -> None:
        outcome.order_id = str(order.get("order_id")) if order.get("order_id") else None
        outcome.quantity = quantity
        outcome.price = price

"""
Position Management: Automatic Profit/Loss Controller

Runs every cycle over tracked positions, before any new proposal is asked for,
and closes positions on its own authority:
- Trailing stop: arms once PnL% reaches the activation level, then closes
  everything when PnL% gives back the configured distance from its peak
- Partial take-profit: closes half at the midpoint to the original target
  and the rest at the target itself, each exactly once
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from core.exchange import ExchangeTrader
from core.models import PositionKey, PositionSide, PositionSnapshot, utc_now
from core.position_state import PositionStateStore, TrackedPositionState

logger = logging.getLogger(__name__)

PARTIAL_TP_FRACTION = 0.5


@dataclass
class AutoExitEvent:
    """One close the controller attempted"""
    key: PositionKey
    kind: str  # "trailing_stop", "partial_tp_50", "partial_tp_100"
    quantity: float
    trigger_price: float
    pnl_pct: float
    success: bool = False
    order_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "symbol": self.key.symbol,
            "side": self.key.side.value,
            "kind": self.kind,
            "quantity": self.quantity,
            "trigger_price": self.trigger_price,
            "pnl_pct": round(self.pnl_pct, 4),
            "success": self.success,
            "order_id": self.order_id,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


def partial_targets(side: PositionSide, entry_price: float, take_profit: float) -> Tuple[float, float]:
    """Return (target50, target100) for a position's original target."""
    if side is PositionSide.LONG:
        move = take_profit - entry_price
        return entry_price + PARTIAL_TP_FRACTION * move, take_profit
    move = entry_price - take_profit
    return entry_price - PARTIAL_TP_FRACTION * move, take_profit


def _reached(side: PositionSide, mark_price: float, target: float) -> bool:
    if side is PositionSide.LONG:
        return mark_price >= target
    return mark_price <= target


class ProfitLossController:
    """
    Trailing-stop and two-stage take-profit state machines.

    State lives on TrackedPositionState; this class only reads live
    snapshots, calls the venue and flips the one-shot flags after a close
    succeeds. A failed close leaves flags untouched so the next cycle retries.
    """

    def __init__(self, config: Dict, exchange: ExchangeTrader, positions: PositionStateStore):
        self.exchange = exchange
        self.positions = positions

        trailing = config.get("trailing_stop", {})
        self.trailing_enabled = trailing.get("enabled", False)
        self.activation_pct = float(trailing.get("activation_pct", 5.0))
        self.distance_pct = float(trailing.get("distance_pct", 3.0))

        partial = config.get("partial_take_profit", {})
        self.partial_tp_enabled = partial.get("enabled", False)

        logger.info(
            f"ProfitLossController initialized: trailing={self.trailing_enabled} "
            f"(activate {self.activation_pct}%, distance {self.distance_pct}%), "
            f"partial_tp={self.partial_tp_enabled}"
        )

    def run(self, live: Dict[PositionKey, PositionSnapshot]) -> List[AutoExitEvent]:
        """Evaluate every tracked position once. Returns the closes attempted."""
        events: List[AutoExitEvent] = []
        if not (self.trailing_enabled or self.partial_tp_enabled):
            return events

        for key, state in self.positions.items():
            pos = live.get(key)
            if pos is None:
                continue
            state.observe_pnl(pos.unrealized_pnl_pct)

            if self.trailing_enabled:
                event = self._check_trailing_stop(key, state, pos)
                if event is not None:
                    events.append(event)
                    # Trailing stop closes everything; nothing left for partial TP.
                    continue

            if self.partial_tp_enabled and state.take_profit_price > 0:
                events.extend(self._check_partial_take_profit(key, state, pos))

        return events

    def _check_trailing_stop(self, key: PositionKey, state: TrackedPositionState,
                             pos: PositionSnapshot) -> Optional[AutoExitEvent]:
        pnl = pos.unrealized_pnl_pct
        if not state.trailing_stop_activated and pnl >= self.activation_pct:
            state.trailing_stop_activated = True
            logger.info(
                f"Trailing stop armed for {key}: pnl {pnl:+.2f}% >= {self.activation_pct:.2f}%"
            )

        if not state.trailing_stop_activated:
            return None

        drawdown = state.max_profit_pct - pnl
        if drawdown < self.distance_pct:
            return None

        logger.warning(
            f"Trailing stop hit for {key}: peak {state.max_profit_pct:+.2f}% now {pnl:+.2f}% "
            f"(gave back {drawdown:.2f}% >= {self.distance_pct:.2f}%)"
        )
        return self._close(key, "trailing_stop", 0.0, pos)

    def _check_partial_take_profit(self, key: PositionKey, state: TrackedPositionState,
                                   pos: PositionSnapshot) -> List[AutoExitEvent]:
        events: List[AutoExitEvent] = []
        entry = state.entry_price or pos.entry_price
        target50, target100 = partial_targets(key.side, entry, state.take_profit_price)

        if not state.partial_tp50_executed and _reached(key.side, pos.mark_price, target50):
            logger.info(
                f"Partial TP 50% for {key}: mark {pos.mark_price:.4f} reached {target50:.4f}"
            )
            event = self._close(key, "partial_tp_50", pos.quantity * PARTIAL_TP_FRACTION, pos)
            events.append(event)
            if event.success:
                state.partial_tp50_executed = True

        if not state.partial_tp100_executed and _reached(key.side, pos.mark_price, target100):
            logger.info(
                f"Partial TP 100% for {key}: mark {pos.mark_price:.4f} reached {target100:.4f}"
            )
            event = self._close(key, "partial_tp_100", 0.0, pos)
            events.append(event)
            if event.success:
                state.partial_tp100_executed = True

        return events

    def _close(self, key: PositionKey, kind: str, quantity: float,
               pos: PositionSnapshot) -> AutoExitEvent:
        """quantity 0 closes the whole position."""
        event = AutoExitEvent(
            key=key,
            kind=kind,
            quantity=quantity or pos.quantity,
            trigger_price=pos.mark_price,
            pnl_pct=pos.unrealized_pnl_pct,
        )
        try:
            order = self.exchange.close_position(key.side, key.symbol, quantity)
        except Exception as exc:
            event.error = str(exc)
            logger.error(f"{kind} close for {key} failed: {exc}")
            return event

        event.success = True
        event.order_id = str(order.get("order_id")) if order and order.get("order_id") else None
        if order and order.get("quantity"):
            event.quantity = float(order["quantity"])
        return event

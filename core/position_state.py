"""
AutoPerp Core: Position State Store

Per-(symbol, side) metrics that survive across cycles: best/worst PnL%,
the stop and target the position was opened with, partial-take-profit
progress and the trailing-stop arm flag.

The table is owned by one trading instance and passed by reference into
the dispatcher, controller and circuit breaker. Nothing here is global.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Protocol, Tuple

from core.exceptions import CriticalDataUnavailable
from core.models import OpenOrder, PositionKey, PositionSide, PositionSnapshot, utc_now

logger = logging.getLogger(__name__)

STAGE_INITIAL = 1
STAGE_PARTIAL_TAKEN = 2


@dataclass
class TrackedPositionState:
    """Core-owned bookkeeping for one live PositionKey."""
    entry_price: float
    max_profit_pct: float = 0.0
    max_loss_pct: float = 0.0
    stop_loss_price: float = 0.0
    take_profit_price: float = 0.0
    invalidation_condition: str = ""
    opening_reasoning: str = ""
    stage: int = STAGE_INITIAL
    remaining_quantity_fraction: float = 1.0
    partial_tp50_executed: bool = False
    partial_tp100_executed: bool = False
    trailing_stop_activated: bool = False
    first_seen: datetime = field(default_factory=utc_now)

    def observe_pnl(self, pnl_pct: float) -> None:
        """Extend the extremes; they never retreat while the position is open."""
        if pnl_pct > self.max_profit_pct:
            self.max_profit_pct = pnl_pct
        if pnl_pct < self.max_loss_pct:
            self.max_loss_pct = pnl_pct

    def drawdown_from_peak_pct(self, current_pnl_pct: float) -> float:
        if self.max_profit_pct <= 0:
            return 0.0
        return self.max_profit_pct - current_pnl_pct

    def advance_stage(self) -> bool:
        """Move 1 -> 2. Returns True if the stage changed."""
        if self.stage == STAGE_INITIAL:
            self.stage = STAGE_PARTIAL_TAKEN
            return True
        return False

    def replace_protection(self, stop_loss: float, take_profit: float,
                           invalidation_condition: str) -> None:
        """Overwrite stop/target/invalidation with a newer decision's values."""
        self.stop_loss_price = stop_loss
        self.take_profit_price = take_profit
        self.invalidation_condition = invalidation_condition

    def to_dict(self) -> dict:
        data = asdict(self)
        data["first_seen"] = self.first_seen.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "TrackedPositionState":
        data = dict(data)
        first_seen = data.pop("first_seen", None)
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        state = cls(**known)
        if first_seen:
            state.first_seen = datetime.fromisoformat(first_seen)
        return state


# ─── Order classification ─────────────────────────────────────────────────

class OrderClassifier(Protocol):
    """Decides whether a resting order is the position's stop or its target."""

    def classify(self, order: OpenOrder, side: PositionSide, mark_price: float) -> Optional[str]:
        """Return "stop", "target" or None (not a protection order)."""


STOP_ORDER_TYPES = ("STOP_MARKET", "STOP", "STOP_LOSS", "STOP_LOSS_LIMIT")
TARGET_ORDER_TYPES = ("TAKE_PROFIT_MARKET", "TAKE_PROFIT", "TAKE_PROFIT_LIMIT")


class TriggerPriceOrderClassifier:
    """
    Default heuristic: trust explicit order types, otherwise compare the
    trigger price with the mark. For a long, a trigger below mark is the stop
    and above mark is the target; shorts mirror this.

    Misclassifies when a stop has already been moved into profit (trailing
    stop placed above entry); callers wanting exact tagging should supply a
    venue-specific classifier.
    """

    def classify(self, order: OpenOrder, side: PositionSide, mark_price: float) -> Optional[str]:
        if order.trigger_price <= 0:
            return None
        if order.position_side is not None and order.position_side is not side:
            return None
        order_type = (order.order_type or "").upper()
        if order_type in STOP_ORDER_TYPES:
            return "stop"
        if order_type in TARGET_ORDER_TYPES:
            return "target"
        below_mark = order.trigger_price < mark_price
        if side is PositionSide.LONG:
            return "stop" if below_mark else "target"
        return "target" if below_mark else "stop"


# ─── Store ────────────────────────────────────────────────────────────────

@dataclass
class RefreshResult:
    """What one refresh pass saw."""
    live: Dict[PositionKey, PositionSnapshot]
    opened: List[PositionKey] = field(default_factory=list)
    closed: Dict[PositionKey, TrackedPositionState] = field(default_factory=dict)


class PositionStateStore:
    """
    Table PositionKey -> TrackedPositionState.

    ``refresh`` is the only place keys are created or deleted by observation;
    the dispatcher seeds keys it opened so the stop/target from the intent
    wins over order-based seeding.
    """

    def __init__(self, exchange=None, classifier: Optional[OrderClassifier] = None):
        self.exchange = exchange
        self.classifier = classifier or TriggerPriceOrderClassifier()
        self._states: Dict[PositionKey, TrackedPositionState] = {}

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, key: PositionKey) -> bool:
        return key in self._states

    def __iter__(self) -> Iterator[PositionKey]:
        return iter(list(self._states))

    def get(self, key: PositionKey) -> Optional[TrackedPositionState]:
        return self._states.get(key)

    def items(self) -> List[Tuple[PositionKey, TrackedPositionState]]:
        return list(self._states.items())

    def seed_opened(self, key: PositionKey, entry_price: float, stop_loss: float,
                    take_profit: float, invalidation_condition: str = "",
                    reasoning: str = "") -> TrackedPositionState:
        """Fresh state for a position the dispatcher just opened."""
        state = TrackedPositionState(
            entry_price=entry_price,
            stop_loss_price=stop_loss,
            take_profit_price=take_profit,
            invalidation_condition=invalidation_condition,
            opening_reasoning=reasoning,
        )
        self._states[key] = state
        logger.info(
            f"Tracking {key}: entry={entry_price:.4f} stop={stop_loss:.4f} target={take_profit:.4f}"
        )
        return state

    def refresh(self, positions: Optional[List[PositionSnapshot]] = None) -> RefreshResult:
        """
        Sync the table with the live position set.

        New keys are created (seeded from resting orders when possible),
        extremes of existing keys are extended, vanished keys are deleted and
        returned in ``closed``. Raises CriticalDataUnavailable if positions
        cannot be read.
        """
        if positions is None:
            if self.exchange is None:
                raise CriticalDataUnavailable("positions")
            try:
                positions = self.exchange.get_positions()
            except Exception as exc:
                raise CriticalDataUnavailable("positions", exc) from exc

        live: Dict[PositionKey, PositionSnapshot] = {}
        for pos in positions:
            if pos.quantity <= 0:
                continue
            if pos.key in live:
                logger.warning(f"Venue reported duplicate position {pos.key}; keeping first")
                continue
            live[pos.key] = pos

        result = RefreshResult(live=live)

        for key, pos in live.items():
            state = self._states.get(key)
            if state is None:
                state = self._create_from_snapshot(pos)
                self._states[key] = state
                result.opened.append(key)
            state.observe_pnl(pos.unrealized_pnl_pct)

        for key in list(self._states):
            if key not in live:
                result.closed[key] = self._states.pop(key)
                logger.info(f"Position {key} no longer live; tracking removed")

        return result

    def _create_from_snapshot(self, pos: PositionSnapshot) -> TrackedPositionState:
        state = TrackedPositionState(
            entry_price=pos.entry_price,
            max_profit_pct=max(pos.unrealized_pnl_pct, 0.0),
            max_loss_pct=min(pos.unrealized_pnl_pct, 0.0),
        )
        stop, target = self._discover_protection(pos)
        state.stop_loss_price = stop
        state.take_profit_price = target
        logger.info(
            f"First observation of {pos.key}: entry={pos.entry_price:.4f} "
            f"pnl={pos.unrealized_pnl_pct:+.2f}% stop={stop:.4f} target={target:.4f}"
        )
        return state

    def _discover_protection(self, pos: PositionSnapshot) -> Tuple[float, float]:
        if self.exchange is None:
            return 0.0, 0.0
        try:
            orders = self.exchange.get_open_orders(pos.symbol)
        except Exception as exc:
            logger.warning(f"Could not read open orders for {pos.symbol}: {exc}")
            return 0.0, 0.0

        stop = target = 0.0
        for order in orders:
            kind = self.classifier.classify(order, pos.side, pos.mark_price)
            if kind == "stop" and stop == 0.0:
                stop = order.trigger_price
            elif kind == "target" and target == 0.0:
                target = order.trigger_price
        return stop, target

    # ─── Persistence ───────────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, dict]:
        return {str(key): state.to_dict() for key, state in self._states.items()}

    def load_dict(self, data: Optional[Dict[str, dict]]) -> int:
        """Restore a table saved by ``to_dict``. Bad entries are skipped."""
        loaded = 0
        for raw_key, raw_state in (data or {}).items():
            try:
                key = PositionKey.parse(raw_key)
                self._states[key] = TrackedPositionState.from_dict(raw_state)
                loaded += 1
            except (TypeError, ValueError) as exc:
                logger.warning(f"Skipping unreadable tracked state {raw_key!r}: {exc}")
        return loaded

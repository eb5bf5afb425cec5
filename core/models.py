"""
AutoPerp Core: Domain Models

Decision intents as they arrive from the proposal source, and the read-only
views of the venue (positions, balances, resting orders) the core works with.
"""

from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional

from infra.symbols import normalize_symbol


class PositionSide(str, Enum):
    LONG = "long"
    SHORT = "short"

    @property
    def opposite(self) -> "PositionSide":
        return PositionSide.SHORT if self is PositionSide.LONG else PositionSide.LONG


class DecisionAction(str, Enum):
    """Closed set of actions a proposal may carry."""

    OPEN_LONG = "open_long"
    OPEN_SHORT = "open_short"
    CLOSE_LONG = "close_long"
    CLOSE_SHORT = "close_short"
    INCREASE_LONG = "increase_long"
    INCREASE_SHORT = "increase_short"
    DECREASE_LONG = "decrease_long"
    DECREASE_SHORT = "decrease_short"
    UPDATE_LOSS_PROFIT = "update_loss_profit"
    HOLD = "hold"
    WAIT = "wait"

    @classmethod
    def parse(cls, raw: Any) -> Optional["DecisionAction"]:
        """Return the action for a raw tag, or None when the tag is unknown."""
        if isinstance(raw, cls):
            return raw
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            return None

    @property
    def side(self) -> Optional[PositionSide]:
        """Direction implied by the action (None for update/hold/wait)."""
        if self.value.endswith("_long"):
            return PositionSide.LONG
        if self.value.endswith("_short"):
            return PositionSide.SHORT
        return None

    @property
    def is_open(self) -> bool:
        return self in (DecisionAction.OPEN_LONG, DecisionAction.OPEN_SHORT)

    @property
    def is_increase(self) -> bool:
        return self in (DecisionAction.INCREASE_LONG, DecisionAction.INCREASE_SHORT)

    @property
    def is_decrease(self) -> bool:
        return self in (DecisionAction.DECREASE_LONG, DecisionAction.DECREASE_SHORT)

    @property
    def is_close(self) -> bool:
        return self in (DecisionAction.CLOSE_LONG, DecisionAction.CLOSE_SHORT)

    @property
    def adds_exposure(self) -> bool:
        return self.is_open or self.is_increase


# Execution priority: shrink exposure before growing it.
ACTION_PRIORITY: Dict[DecisionAction, int] = {
    DecisionAction.DECREASE_LONG: 1,
    DecisionAction.DECREASE_SHORT: 1,
    DecisionAction.CLOSE_LONG: 2,
    DecisionAction.CLOSE_SHORT: 2,
    DecisionAction.UPDATE_LOSS_PROFIT: 3,
    DecisionAction.INCREASE_LONG: 4,
    DecisionAction.INCREASE_SHORT: 4,
    DecisionAction.OPEN_LONG: 5,
    DecisionAction.OPEN_SHORT: 5,
    DecisionAction.HOLD: 6,
    DecisionAction.WAIT: 6,
}


class PositionKey(NamedTuple):
    symbol: str
    side: PositionSide

    def __str__(self) -> str:
        return f"{self.symbol}_{self.side.value}"

    @classmethod
    def parse(cls, raw: str) -> "PositionKey":
        symbol, _, side = raw.rpartition("_")
        return cls(symbol, PositionSide(side))


@dataclass
class PositionSnapshot:
    """One live position as reported by the venue this cycle."""
    symbol: str
    side: PositionSide
    quantity: float
    entry_price: float
    mark_price: float
    leverage: int = 1
    unrealized_pnl: float = 0.0
    unrealized_pnl_pct: float = 0.0   # leverage-adjusted, percent of margin
    liquidation_price: float = 0.0
    margin_used: float = 0.0
    update_time: Optional[datetime] = None

    @property
    def key(self) -> PositionKey:
        return PositionKey(self.symbol, self.side)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["side"] = self.side.value
        data["update_time"] = self.update_time.isoformat() if self.update_time else None
        return data


def leveraged_pnl_pct(side: PositionSide, entry_price: float, mark_price: float,
                      leverage: int) -> float:
    """Unrealized PnL as a percent of margin."""
    if entry_price <= 0:
        return 0.0
    move = (mark_price - entry_price) / entry_price
    if side is PositionSide.SHORT:
        move = -move
    return move * (leverage or 1) * 100.0


@dataclass
class AccountSnapshot:
    total_equity: float
    available_balance: float = 0.0
    total_unrealized_pnl: float = 0.0
    margin_used: float = 0.0
    position_count: int = 0

    @property
    def margin_used_pct(self) -> float:
        if self.total_equity <= 0:
            return 0.0
        return self.margin_used / self.total_equity * 100.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["margin_used_pct"] = round(self.margin_used_pct, 4)
        return data


@dataclass
class OpenOrder:
    """A resting order at the venue (only trigger orders matter here)."""
    symbol: str
    order_id: str
    order_type: str
    trigger_price: float
    side: str = ""                    # BUY / SELL
    position_side: Optional[PositionSide] = None
    quantity: float = 0.0


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _as_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


@dataclass
class DecisionIntent:
    """
    One proposed action from the proposal source.

    ``action`` keeps the raw tag; it is resolved to a DecisionAction only at
    the validation boundary so unknown tags are rejected there with a reason.
    """
    symbol: str
    action: str
    leverage: int = 0
    position_size_usd: float = 0.0
    entry_price: float = 0.0
    stop_loss: float = 0.0
    take_profit: float = 0.0
    confidence: int = 0
    risk_usd: float = 0.0
    reasoning: str = ""
    invalidation_condition: str = ""

    @property
    def parsed_action(self) -> Optional[DecisionAction]:
        return DecisionAction.parse(self.action)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DecisionIntent":
        return cls(
            symbol=normalize_symbol(data.get("symbol")),
            action=str(data.get("action") or "").strip(),
            leverage=_as_int(data.get("leverage")),
            position_size_usd=_as_float(data.get("position_size_usd")),
            entry_price=_as_float(data.get("entry_price")),
            stop_loss=_as_float(data.get("stop_loss")),
            take_profit=_as_float(data.get("take_profit")),
            confidence=_as_int(data.get("confidence")),
            risk_usd=_as_float(data.get("risk_usd")),
            reasoning=str(data.get("reasoning") or ""),
            invalidation_condition=str(data.get("invalidation_condition") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)

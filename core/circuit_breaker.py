"""
AutoPerp Core: Loss Circuit Breaker

Counts positions that vanished because they were stopped out and pauses new
trading for an exponentially growing cooldown after each one.

A vanished position counts as a loss only when equity fell since the last
cycle AND its last price sits on the losing side of the tracked stop (or of
entry, when no stop was ever recorded). Take-profits and manual closes that
raise equity never count.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Protocol

from core.models import PositionKey, PositionSide, utc_now
from core.position_state import TrackedPositionState

logger = logging.getLogger(__name__)

DEFAULT_BASE_MINUTES = 45.0
DEFAULT_MULTIPLIER = 2.67
DEFAULT_MAX_MINUTES = 360.0
DEFAULT_RESET_HOURS = 24.0
DEFAULT_STOP_TOLERANCE_PCT = 5.0


class LossClassifier(Protocol):
    """Decides whether a closed position's last price looks like a stop-out."""

    def is_loss(self, key: PositionKey, state: TrackedPositionState, last_price: float) -> bool:
        ...


class StopProximityLossClassifier:
    """
    Default heuristic. Long: price <= stop * (1 + tol). Short: price >= stop * (1 - tol).
    Without a stop, a long below entry / short above entry is a loss. With
    neither price known the close is treated as a loss.
    """

    def __init__(self, tolerance_pct: float = DEFAULT_STOP_TOLERANCE_PCT):
        self.tolerance = tolerance_pct / 100.0

    def is_loss(self, key: PositionKey, state: TrackedPositionState, last_price: float) -> bool:
        stop = state.stop_loss_price
        if stop > 0:
            if key.side is PositionSide.LONG:
                return last_price <= stop * (1 + self.tolerance)
            return last_price >= stop * (1 - self.tolerance)

        entry = state.entry_price
        if entry > 0:
            if key.side is PositionSide.LONG:
                return last_price < entry
            return last_price > entry
        return True


@dataclass
class BreakerStatus:
    active: bool
    stop_loss_count: int
    backoff_until: Optional[datetime]
    remaining_minutes: float = 0.0

    def to_dict(self) -> dict:
        return {
            "active": self.active,
            "stop_loss_count": self.stop_loss_count,
            "backoff_until": self.backoff_until.isoformat() if self.backoff_until else None,
            "remaining_minutes": round(self.remaining_minutes, 2),
        }


class LossCircuitBreaker:
    """
    Exponential backoff after confirmed stop-loss closes.

    backoff = min(base * multiplier ** (count - 1), max)
    """

    def __init__(
        self,
        enabled: bool = True,
        base_minutes: float = DEFAULT_BASE_MINUTES,
        multiplier: float = DEFAULT_MULTIPLIER,
        max_minutes: float = DEFAULT_MAX_MINUTES,
        reset_hours: float = DEFAULT_RESET_HOURS,
        classifier: Optional[LossClassifier] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.enabled = enabled
        self.base_minutes = base_minutes
        self.multiplier = multiplier
        self.max_minutes = max_minutes
        self.reset_window = timedelta(hours=reset_hours)
        self.classifier = classifier or StopProximityLossClassifier()
        self.clock = clock

        self.stop_loss_count = 0
        self.last_stop_loss_time: Optional[datetime] = None
        self.backoff_until: Optional[datetime] = None
        self.last_observed_equity = 0.0

    @classmethod
    def from_config(cls, config: Dict, clock: Callable[[], datetime] = utc_now) -> "LossCircuitBreaker":
        cb = config.get("circuit_breaker", {})
        return cls(
            enabled=cb.get("enabled", True),
            base_minutes=float(cb.get("base_minutes", DEFAULT_BASE_MINUTES)),
            multiplier=float(cb.get("multiplier", DEFAULT_MULTIPLIER)),
            max_minutes=float(cb.get("max_minutes", DEFAULT_MAX_MINUTES)),
            reset_hours=float(cb.get("reset_hours", DEFAULT_RESET_HOURS)),
            classifier=StopProximityLossClassifier(
                float(cb.get("stop_tolerance_pct", DEFAULT_STOP_TOLERANCE_PCT))
            ),
            clock=clock,
        )

    # ─── Queries ───────────────────────────────────────────────────────────

    def backoff_minutes_for(self, count: int) -> float:
        if count <= 0:
            return 0.0
        return min(self.base_minutes * self.multiplier ** (count - 1), self.max_minutes)

    def is_active(self, now: Optional[datetime] = None) -> bool:
        if not self.enabled or self.backoff_until is None:
            return False
        return (now or self.clock()) < self.backoff_until

    def status(self, now: Optional[datetime] = None) -> BreakerStatus:
        now = now or self.clock()
        active = self.is_active(now)
        remaining = (self.backoff_until - now).total_seconds() / 60.0 if active else 0.0
        return BreakerStatus(active, self.stop_loss_count, self.backoff_until, remaining)

    # ─── Cycle hooks ───────────────────────────────────────────────────────

    def maybe_reset(self, now: Optional[datetime] = None) -> bool:
        """Clear the loss counter once the reset window has passed since the last loss."""
        now = now or self.clock()
        if self.stop_loss_count > 0 and self.last_stop_loss_time is not None:
            if now - self.last_stop_loss_time > self.reset_window:
                logger.info(
                    f"Stop-loss counter reset ({self.stop_loss_count} -> 0) after "
                    f"{self.reset_window.total_seconds() / 3600:g}h without losses"
                )
                self.stop_loss_count = 0
                return True
        return False

    def detect(
        self,
        closed: Dict[PositionKey, TrackedPositionState],
        current_equity: float,
        price_lookup: Callable[[str], float],
        now: Optional[datetime] = None,
    ) -> List[PositionKey]:
        """
        Classify this cycle's vanished positions and arm the backoff on losses.

        Always records ``current_equity`` as the new baseline afterwards.
        Returns the keys counted as stop-loss events.
        """
        now = now or self.clock()
        losses: List[PositionKey] = []

        equity_fell = 0 < self.last_observed_equity and current_equity < self.last_observed_equity

        if self.enabled and closed:
            if not equity_fell:
                logger.info(
                    f"{len(closed)} position(s) closed with equity not lower "
                    f"({self.last_observed_equity:.2f} -> {current_equity:.2f}); not a stop-loss"
                )
            else:
                for key, state in closed.items():
                    try:
                        last_price = float(price_lookup(key.symbol))
                    except Exception as exc:
                        logger.warning(f"No last price for closed {key}: {exc}; skipping")
                        continue
                    if self.classifier.is_loss(key, state, last_price):
                        losses.append(key)
                        self._record_loss(key, state, last_price, now)
                    else:
                        logger.info(
                            f"Closed {key} at {last_price:.4f} not near stop "
                            f"{state.stop_loss_price:.4f}; not a stop-loss"
                        )

        self.last_observed_equity = current_equity
        return losses

    def _record_loss(self, key: PositionKey, state: TrackedPositionState,
                     last_price: float, now: datetime) -> None:
        self.stop_loss_count += 1
        self.last_stop_loss_time = now
        minutes = self.backoff_minutes_for(self.stop_loss_count)
        self.backoff_until = now + timedelta(minutes=minutes)
        logger.warning(
            f"Stop-loss detected on {key} (last {last_price:.4f}, stop {state.stop_loss_price:.4f}); "
            f"loss #{self.stop_loss_count}, trading paused {minutes:.2f} min until "
            f"{self.backoff_until.isoformat()}"
        )

    # ─── Persistence ───────────────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            "stop_loss_count": self.stop_loss_count,
            "last_stop_loss_time": self.last_stop_loss_time.isoformat() if self.last_stop_loss_time else None,
            "backoff_until": self.backoff_until.isoformat() if self.backoff_until else None,
            "last_observed_equity": self.last_observed_equity,
        }

    def load_dict(self, data: Optional[dict]) -> None:
        if not data:
            return
        self.stop_loss_count = int(data.get("stop_loss_count", 0))
        self.last_observed_equity = float(data.get("last_observed_equity", 0.0))
        last = data.get("last_stop_loss_time")
        until = data.get("backoff_until")
        self.last_stop_loss_time = datetime.fromisoformat(last) if last else None
        self.backoff_until = datetime.fromisoformat(until) if until else None

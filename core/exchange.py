"""
AutoPerp Core: Exchange Trader interface

The venue-facing surface the core consumes. Concrete adapters own signing,
wire formats and symbol precision; the core only sees typed snapshots.

Every call is synchronous and blocking. Adapters raise on failure; the
dispatcher turns those exceptions into per-decision errors.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from core.models import AccountSnapshot, OpenOrder, PositionSide, PositionSnapshot


class ExchangeTrader(ABC):
    """Abstract perpetual-futures venue (hedge mode: one long and one short per symbol)."""

    name: str = "exchange"

    @abstractmethod
    def get_positions(self) -> List[PositionSnapshot]:
        """All open positions with non-zero quantity."""

    @abstractmethod
    def get_balance(self) -> AccountSnapshot:
        """Account equity fields."""

    @abstractmethod
    def get_market_price(self, symbol: str) -> float:
        """Latest mark/last price for a symbol."""

    @abstractmethod
    def open_long(self, symbol: str, quantity: float, leverage: int) -> Dict[str, Any]:
        """Open or add to a long; returns an order reference (``order_id``, ``price``)."""

    @abstractmethod
    def open_short(self, symbol: str, quantity: float, leverage: int) -> Dict[str, Any]:
        """Open or add to a short; returns an order reference."""

    @abstractmethod
    def close_long(self, symbol: str, quantity: float = 0.0) -> Dict[str, Any]:
        """Close ``quantity`` of a long, or all of it when quantity is 0."""

    @abstractmethod
    def close_short(self, symbol: str, quantity: float = 0.0) -> Dict[str, Any]:
        """Close ``quantity`` of a short, or all of it when quantity is 0."""

    @abstractmethod
    def set_stop_loss(self, symbol: str, side: PositionSide, quantity: float, price: float) -> None:
        """Place a reduce-only stop for the position side."""

    @abstractmethod
    def set_take_profit(self, symbol: str, side: PositionSide, quantity: float, price: float) -> None:
        """Place a reduce-only take-profit for the position side."""

    @abstractmethod
    def cancel_all_orders(self, symbol: str) -> None:
        """Cancel every resting order on the symbol."""

    @abstractmethod
    def get_open_orders(self, symbol: str) -> List[OpenOrder]:
        """Resting orders on the symbol."""

    # Convenience wrappers keyed by side, used by the dispatcher and controller.

    def open_position(self, side: PositionSide, symbol: str, quantity: float,
                      leverage: int) -> Dict[str, Any]:
        if side is PositionSide.LONG:
            return self.open_long(symbol, quantity, leverage)
        return self.open_short(symbol, quantity, leverage)

    def close_position(self, side: PositionSide, symbol: str,
                       quantity: float = 0.0) -> Dict[str, Any]:
        if side is PositionSide.LONG:
            return self.close_long(symbol, quantity)
        return self.close_short(symbol, quantity)

    def find_position(self, symbol: str, side: PositionSide) -> Optional[PositionSnapshot]:
        for pos in self.get_positions():
            if pos.symbol == symbol and pos.side is side:
                return pos
        return None

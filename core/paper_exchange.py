"""
AutoPerp Core: Paper Exchange

In-memory hedge-mode perpetual venue implementing ExchangeTrader.
Used for dry runs and tests.

Simulation features:
- Market fills at the current mark price with a flat taker fee
- Isolated margin per position (notional / leverage)
- Reduce-only stop and take-profit orders that fill when marks cross them
- Leverage-adjusted unrealized PnL% like a real venue reports
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from core.exchange import ExchangeTrader
from core.models import (
    AccountSnapshot,
    OpenOrder,
    PositionKey,
    PositionSide,
    PositionSnapshot,
    leveraged_pnl_pct,
    utc_now,
)

logger = logging.getLogger(__name__)

STOP_MARKET = "STOP_MARKET"
TAKE_PROFIT_MARKET = "TAKE_PROFIT_MARKET"


@dataclass
class PaperPosition:
    symbol: str
    side: PositionSide
    quantity: float
    entry_price: float
    leverage: int
    opened_at: datetime = field(default_factory=utc_now)

    @property
    def notional(self) -> float:
        return self.quantity * self.entry_price

    @property
    def margin(self) -> float:
        return self.notional / max(self.leverage, 1)


@dataclass
class PaperFill:
    order_id: str
    symbol: str
    side: PositionSide
    action: str                    # open / close / stop / take_profit
    quantity: float
    price: float
    realized_pnl: float = 0.0
    fee: float = 0.0
    timestamp: datetime = field(default_factory=utc_now)


class PaperExchange(ExchangeTrader):
    """
    Simulated venue with the same surface as a live adapter.

    Prices come from ``set_price`` or, when a ``price_source`` callable is
    given, are pulled from it on every ``get_market_price`` call and for every
    held symbol on each position or balance read.
    """

    name = "paper"

    def __init__(
        self,
        initial_balance: float = 10_000.0,
        prices: Optional[Dict[str, float]] = None,
        price_source: Optional[Callable[[str], float]] = None,
        taker_fee_bps: float = 4.0,
        read_only: bool = False,
    ):
        self.wallet_balance = float(initial_balance)
        self.prices: Dict[str, float] = dict(prices or {})
        self.price_source = price_source
        self.taker_fee_bps = taker_fee_bps
        self.read_only = read_only

        self.positions: Dict[PositionKey, PaperPosition] = {}
        self.orders: Dict[str, OpenOrder] = {}
        self.fills: List[PaperFill] = []

        logger.info(
            f"PaperExchange initialized: balance=${self.wallet_balance:.2f}, "
            f"fee={self.taker_fee_bps}bps"
        )

    # ─── Prices ────────────────────────────────────────────────────────────

    def set_price(self, symbol: str, price: float) -> None:
        """Move the mark price and fill any trigger orders it crosses."""
        if price <= 0:
            raise ValueError(f"Invalid price for {symbol}: {price}")
        self.prices[symbol] = float(price)
        self._process_triggers(symbol)

    def get_market_price(self, symbol: str) -> float:
        if self.price_source is not None:
            self.set_price(symbol, float(self.price_source(symbol)))
        price = self.prices.get(symbol)
        if not price:
            raise ValueError(f"No price available for {symbol}")
        return price

    def _refresh_marks(self) -> None:
        if self.price_source is None:
            return
        for symbol in sorted({pos.symbol for pos in self.positions.values()}):
            self.set_price(symbol, float(self.price_source(symbol)))

    # ─── Account ───────────────────────────────────────────────────────────

    def get_positions(self) -> List[PositionSnapshot]:
        self._refresh_marks()
        snapshots = []
        for pos in self.positions.values():
            mark = self.prices.get(pos.symbol, pos.entry_price)
            pnl = self._unrealized(pos, mark)
            snapshots.append(PositionSnapshot(
                symbol=pos.symbol,
                side=pos.side,
                quantity=pos.quantity,
                entry_price=pos.entry_price,
                mark_price=mark,
                leverage=pos.leverage,
                unrealized_pnl=pnl,
                unrealized_pnl_pct=leveraged_pnl_pct(pos.side, pos.entry_price, mark, pos.leverage),
                liquidation_price=self._liquidation_price(pos),
                margin_used=pos.margin,
                update_time=pos.opened_at,
            ))
        return snapshots

    def get_balance(self) -> AccountSnapshot:
        self._refresh_marks()
        unrealized = sum(
            self._unrealized(pos, self.prices.get(pos.symbol, pos.entry_price))
            for pos in self.positions.values()
        )
        margin = sum(pos.margin for pos in self.positions.values())
        equity = self.wallet_balance + unrealized
        return AccountSnapshot(
            total_equity=equity,
            available_balance=max(equity - margin, 0.0),
            total_unrealized_pnl=unrealized,
            margin_used=margin,
            position_count=len(self.positions),
        )

    # ─── Orders ────────────────────────────────────────────────────────────

    def open_long(self, symbol: str, quantity: float, leverage: int) -> dict:
        return self._open(symbol, PositionSide.LONG, quantity, leverage)

    def open_short(self, symbol: str, quantity: float, leverage: int) -> dict:
        return self._open(symbol, PositionSide.SHORT, quantity, leverage)

    def close_long(self, symbol: str, quantity: float = 0.0) -> dict:
        return self._close(symbol, PositionSide.LONG, quantity, action="close")

    def close_short(self, symbol: str, quantity: float = 0.0) -> dict:
        return self._close(symbol, PositionSide.SHORT, quantity, action="close")

    def set_stop_loss(self, symbol: str, side: PositionSide, quantity: float, price: float) -> None:
        self._place_trigger(symbol, side, quantity, price, STOP_MARKET)

    def set_take_profit(self, symbol: str, side: PositionSide, quantity: float, price: float) -> None:
        self._place_trigger(symbol, side, quantity, price, TAKE_PROFIT_MARKET)

    def cancel_all_orders(self, symbol: str) -> None:
        cancelled = [oid for oid, order in self.orders.items() if order.symbol == symbol]
        for oid in cancelled:
            del self.orders[oid]
        if cancelled:
            logger.debug(f"Cancelled {len(cancelled)} orders on {symbol}")

    def get_open_orders(self, symbol: str) -> List[OpenOrder]:
        return [order for order in self.orders.values() if order.symbol == symbol]

    # ─── Internal ──────────────────────────────────────────────────────────

    def _check_writable(self) -> None:
        if self.read_only:
            raise RuntimeError("Cannot place orders in READ_ONLY mode")

    def _open(self, symbol: str, side: PositionSide, quantity: float, leverage: int) -> dict:
        self._check_writable()
        if quantity <= 0:
            raise ValueError(f"Order quantity must be positive, got {quantity}")
        if leverage < 1:
            raise ValueError(f"Leverage must be >= 1, got {leverage}")

        price = self.get_market_price(symbol)
        margin_needed = quantity * price / leverage
        fee = quantity * price * self.taker_fee_bps / 10_000.0
        available = self.get_balance().available_balance
        if margin_needed + fee > available:
            raise RuntimeError(
                f"Insufficient margin: need ${margin_needed + fee:.2f}, available ${available:.2f}"
            )

        key = PositionKey(symbol, side)
        existing = self.positions.get(key)
        if existing:
            total_qty = existing.quantity + quantity
            existing.entry_price = (existing.notional + quantity * price) / total_qty
            existing.quantity = total_qty
            existing.leverage = leverage
        else:
            self.positions[key] = PaperPosition(symbol, side, quantity, price, leverage)

        self.wallet_balance -= fee
        order_id = uuid.uuid4().hex[:12]
        self.fills.append(PaperFill(order_id, symbol, side, "open", quantity, price, fee=fee))
        logger.info(f"PAPER OPEN {side.value} {symbol} qty={quantity:.6f} @ {price:.4f} ({leverage}x)")
        return {"order_id": order_id, "symbol": symbol, "price": price, "quantity": quantity}

    def _close(self, symbol: str, side: PositionSide, quantity: float, action: str) -> dict:
        self._check_writable()
        key = PositionKey(symbol, side)
        # A fresh mark can fill a resting stop/target that removes the position.
        price = self.get_market_price(symbol) if action == "close" else self.prices[symbol]
        pos = self.positions.get(key)
        if pos is None:
            raise RuntimeError(f"No {side.value} position on {symbol}")

        qty = pos.quantity if quantity <= 0 or quantity >= pos.quantity else quantity
        realized = self._unrealized(pos, price) * (qty / pos.quantity)
        fee = qty * price * self.taker_fee_bps / 10_000.0

        self.wallet_balance += realized - fee
        pos.quantity -= qty
        if pos.quantity <= 1e-12:
            del self.positions[key]
            self._drop_orders(key)

        order_id = uuid.uuid4().hex[:12]
        self.fills.append(PaperFill(order_id, symbol, side, action, qty, price, realized, fee))
        logger.info(
            f"PAPER {action.upper()} {side.value} {symbol} qty={qty:.6f} @ {price:.4f} "
            f"pnl=${realized:+.2f}"
        )
        return {"order_id": order_id, "symbol": symbol, "price": price, "quantity": qty}

    def _place_trigger(self, symbol: str, side: PositionSide, quantity: float,
                       price: float, order_type: str) -> None:
        self._check_writable()
        if price <= 0:
            raise ValueError(f"Trigger price must be positive, got {price}")
        if PositionKey(symbol, side) not in self.positions:
            raise RuntimeError(f"No {side.value} position on {symbol} to protect")
        order_id = uuid.uuid4().hex[:12]
        self.orders[order_id] = OpenOrder(
            symbol=symbol,
            order_id=order_id,
            order_type=order_type,
            trigger_price=price,
            side="SELL" if side is PositionSide.LONG else "BUY",
            position_side=side,
            quantity=quantity,
        )

    def _process_triggers(self, symbol: str) -> None:
        price = self.prices[symbol]
        for order in list(self.orders.values()):
            if order.symbol != symbol or order.order_id not in self.orders:
                continue
            key = PositionKey(symbol, order.position_side)
            if key not in self.positions:
                continue
            if self._trigger_hit(order, price):
                del self.orders[order.order_id]
                kind = "stop" if order.order_type == STOP_MARKET else "take_profit"
                self._close(symbol, order.position_side, order.quantity, action=kind)

    @staticmethod
    def _trigger_hit(order: OpenOrder, price: float) -> bool:
        is_long = order.position_side is PositionSide.LONG
        if order.order_type == STOP_MARKET:
            return price <= order.trigger_price if is_long else price >= order.trigger_price
        return price >= order.trigger_price if is_long else price <= order.trigger_price

    def _drop_orders(self, key: PositionKey) -> None:
        for oid, order in list(self.orders.items()):
            if order.symbol == key.symbol and order.position_side is key.side:
                del self.orders[oid]

    @staticmethod
    def _unrealized(pos: PaperPosition, mark: float) -> float:
        diff = mark - pos.entry_price
        if pos.side is PositionSide.SHORT:
            diff = -diff
        return diff * pos.quantity

    @staticmethod
    def _liquidation_price(pos: PaperPosition) -> float:
        # Isolated margin, maintenance margin ignored.
        move = pos.entry_price / max(pos.leverage, 1)
        if pos.side is PositionSide.LONG:
            return max(pos.entry_price - move, 0.0)
        return pos.entry_price + move

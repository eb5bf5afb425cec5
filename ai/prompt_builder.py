"""
Prompt Builder - Construct the system and user prompts for the proposal source.

The system prompt carries the fixed rules (actions, limits, output format);
the user prompt carries this cycle's account, positions and market data.
"""

import logging
from typing import Any

from ai.schemas import PositionView, ProposalContext
from core.market import format_snapshot
from core.models import utc_now
from infra.symbols import ASSET_CLASS_ALTCOIN, ASSET_CLASS_MAJOR

logger = logging.getLogger(__name__)


_OUTPUT_FORMAT = """OUTPUT FORMAT:
First write your analysis in plain text. Then output ONE JSON array of decisions:
[
  {"symbol": "BTCUSDT", "action": "open_long", "leverage": 5, "position_size_usd": 500,
   "entry_price": 65000, "stop_loss": 63700, "take_profit": 67600, "confidence": 80,
   "risk_usd": 10, "reasoning": "...", "invalidation_condition": "4h close below 63500"},
  {"symbol": "ETHUSDT", "action": "close_short", "reasoning": "..."}
]
Every decision needs "symbol", "action" and "reasoning"."""


def build_system_prompt(ctx: ProposalContext) -> str:
    equity = ctx.account.total_equity
    major_lev = ctx.leverage_ceilings.get(ASSET_CLASS_MAJOR, 5)
    alt_lev = ctx.leverage_ceilings.get(ASSET_CLASS_ALTCOIN, 5)
    major_mult = ctx.notional_multiples.get(ASSET_CLASS_MAJOR, 10.0)
    alt_mult = ctx.notional_multiples.get(ASSET_CLASS_ALTCOIN, 5.0)

    if ctx.manage_only:
        actions = (
            "close_long, close_short, increase_long, increase_short, decrease_long, "
            "decrease_short, update_loss_profit, hold, wait\n"
            "You manage EXISTING positions only. Opening new positions is not allowed."
        )
    else:
        actions = (
            "open_long, open_short, close_long, close_short, increase_long, increase_short, "
            "decrease_long, decrease_short, update_loss_profit, hold, wait"
        )

    return f"""You are a professional crypto perpetual-futures trader running every {ctx.scan_interval_minutes} minutes.

ALLOWED ACTIONS:
{actions}

HARD LIMITS (violations are rejected automatically):
- Leverage: BTC/ETH 1-{major_lev}x, other coins 1-{alt_lev}x
- Position size (notional USD): BTC/ETH at most {major_mult * equity:.0f} ({major_mult:g}x equity), others at most {alt_mult * equity:.0f} ({alt_mult:g}x equity)
- open_*/increase_*: entry_price, stop_loss, take_profit all > 0, stop and target on the correct side of entry
- Risk:reward (reward% / risk%) must be at least {ctx.min_risk_reward_ratio:.1f}:1
- open_*/increase_* require an invalidation_condition
- decrease_*: position_size_usd is the USD amount to reduce, must be smaller than the position
- update_loss_profit: new stop_loss and take_profit, stop on the losing side of the current price
- Never open a second position on a symbol and side that is already open; use increase_* instead

{_OUTPUT_FORMAT}"""


def build_user_prompt(ctx: ProposalContext) -> str:
    acct = ctx.account
    equity = acct.total_equity or 0.0
    available_pct = (acct.available_balance / equity * 100.0) if equity > 0 else 0.0

    parts = [
        f"**Time**: {ctx.timestamp.strftime('%Y-%m-%d %H:%M:%S')} UTC | "
        f"**Cycle**: #{ctx.cycle_number} | **Runtime**: {ctx.runtime_minutes} min",
        "",
        f"**Account**: equity {equity:.2f} | available {acct.available_balance:.2f} "
        f"({available_pct:.1f}%) | unrealized {acct.total_unrealized_pnl:+.2f} | "
        f"margin used {acct.margin_used_pct:.1f}% | positions {acct.position_count}",
        "",
    ]

    if ctx.positions:
        parts.append("## Current positions")
        for i, view in enumerate(ctx.positions, 1):
            parts.append(_format_position(i, view))
            market = ctx.market.get(view.snapshot.symbol)
            if market:
                parts.append(format_snapshot(market))
    else:
        parts.append("**Current positions**: none")
        parts.append("")

    held = {view.snapshot.symbol for view in ctx.positions}
    candidates = [s for s in ctx.candidate_symbols if s not in held and s in ctx.market]
    if candidates and not ctx.manage_only:
        parts.append(f"## Candidates ({len(candidates)})")
        for i, symbol in enumerate(candidates, 1):
            parts.append(f"### {i}. {symbol}")
            parts.append(format_snapshot(ctx.market[symbol]))

    parts.append("---")
    parts.append("Analyze and output your decisions (analysis text, then the JSON array).")
    return "\n".join(parts)


def _format_position(index: int, view: PositionView) -> str:
    pos = view.snapshot
    tracked = view.tracked
    line = (
        f"{index}. {pos.symbol} {pos.side.value.upper()} | entry {pos.entry_price:.4f} | "
        f"mark {pos.mark_price:.4f} | qty {pos.quantity:.6f} | pnl {pos.unrealized_pnl_pct:+.2f}% | "
        f"{pos.leverage}x | margin {pos.margin_used:.2f} | liq {pos.liquidation_price:.4f}"
    )
    if tracked is not None:
        held_minutes = int((utc_now() - tracked.first_seen).total_seconds() // 60)
        line += (
            f" | held {held_minutes} min | stop {tracked.stop_loss_price:.4f} | "
            f"target {tracked.take_profit_price:.4f} | peak {tracked.max_profit_pct:+.2f}% | "
            f"drawdown from peak {tracked.drawdown_from_peak_pct(pos.unrealized_pnl_pct):.2f}%"
        )
        if tracked.invalidation_condition:
            line += f"\n   invalidation: {tracked.invalidation_condition}"
    return line


def describe_context(ctx: ProposalContext) -> dict[str, Any]:
    """Short summary for debug logging."""
    return {
        "cycle": ctx.cycle_number,
        "equity": round(ctx.account.total_equity, 2),
        "positions": [str(v.snapshot.key) for v in ctx.positions],
        "market_symbols": sorted(ctx.market),
        "manage_only": ctx.manage_only,
    }

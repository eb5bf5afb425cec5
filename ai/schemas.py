"""
Proposal source schemas and data structures.

Defines the contract between the cycle orchestrator and the proposal source.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from core.market import MarketSnapshot
from core.models import AccountSnapshot, DecisionIntent, PositionSnapshot, utc_now
from core.position_state import TrackedPositionState


@dataclass
class PositionView:
    """A live position plus what the core tracks about it."""
    snapshot: PositionSnapshot
    tracked: Optional[TrackedPositionState] = None


@dataclass
class ProposalContext:
    """Complete input for one proposal request."""
    account: AccountSnapshot
    positions: List[PositionView]
    market: Dict[str, MarketSnapshot]          # symbol -> snapshot
    candidate_symbols: List[str]
    cycle_number: int = 0
    runtime_minutes: int = 0
    scan_interval_minutes: int = 3
    leverage_ceilings: Dict[str, int] = field(default_factory=dict)
    notional_multiples: Dict[str, float] = field(default_factory=dict)
    min_risk_reward_ratio: float = 2.0
    manage_only: bool = False
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class ProposalBatch:
    """Proposal source response: free-text rationale plus structured intents."""
    rationale: str
    intents: List[DecisionIntent]
    user_prompt: str = ""
    raw_decisions: str = ""                    # JSON array text as returned
    model_used: Optional[str] = None
    latency_ms: Optional[float] = None

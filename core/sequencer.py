"""
AutoPerp Core: Decision Sequencer

Reorders a validated batch so exposure is shrunk before it is grown:
decrease, close, stop/target update, increase, open, then hold/wait.
Ties keep the order the proposal source gave them.
"""

from typing import List, Sequence

from core.models import ACTION_PRIORITY, DecisionAction, DecisionIntent

# Unknown tags never get this far; sort them last if they do.
_UNRANKED = max(ACTION_PRIORITY.values()) + 1


def action_priority(action) -> int:
    parsed = DecisionAction.parse(action)
    if parsed is None:
        return _UNRANKED
    return ACTION_PRIORITY[parsed]


def sequence_decisions(decisions: Sequence[DecisionIntent]) -> List[DecisionIntent]:
    """Return a new list in execution order (stable)."""
    return sorted(decisions, key=lambda d: action_priority(d.action))

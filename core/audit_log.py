"""
AutoPerp Core: Audit Logger

Append-only record of every cycle: what the account looked like, what was
proposed, what was rejected and why, and what the venue actually did.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.models import utc_now

logger = logging.getLogger(__name__)


@dataclass
class DecisionRecord:
    """One proposed intent and what became of it"""
    intent: Dict[str, Any]
    status: str  # "rejected" | "executed" | "failed" | "skipped"
    reason: Optional[str] = None
    outcome: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.intent,
            "status": self.status,
            "reason": self.reason,
            "outcome": self.outcome,
        }


@dataclass
class CycleRecord:
    """Everything persisted for one cycle"""
    instance_id: str
    cycle_number: int
    timestamp: datetime = field(default_factory=utc_now)
    account: Optional[Dict[str, Any]] = None
    positions: List[Dict[str, Any]] = field(default_factory=list)
    input_prompt: str = ""
    rationale: str = ""
    decision_json: str = ""
    decisions: List[DecisionRecord] = field(default_factory=list)
    auto_exits: List[Dict[str, Any]] = field(default_factory=list)
    stop_loss_events: List[str] = field(default_factory=list)
    breaker: Optional[Dict[str, Any]] = None
    execution_log: List[str] = field(default_factory=list)
    success: bool = True
    error_message: Optional[str] = None

    def log(self, line: str) -> None:
        self.execution_log.append(line)

    def fail(self, message: str) -> None:
        self.success = False
        self.error_message = message
        self.execution_log.append(f"ERROR: {message}")

    @property
    def status(self) -> str:
        if not self.success:
            return "FAILED"
        if any(d.status == "executed" for d in self.decisions) or any(
            e.get("success") for e in self.auto_exits
        ):
            return "EXECUTED"
        if self.breaker and self.breaker.get("active"):
            return "BACKOFF"
        return "NO_TRADE"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "cycle_number": self.cycle_number,
            "timestamp": self.timestamp.isoformat(),
            "status": self.status,
            "success": self.success,
            "error_message": self.error_message,
            "account": self.account,
            "positions": self.positions,
            "input_prompt": self.input_prompt,
            "rationale": self.rationale,
            "decision_json": self.decision_json,
            "decisions": [d.to_dict() for d in self.decisions],
            "auto_exits": self.auto_exits,
            "stop_loss_events": self.stop_loss_events,
            "breaker": self.breaker,
            "execution_log": self.execution_log,
        }


class AuditLogger:
    """
    Structured audit trail logger.

    Output format: JSONL (one CycleRecord per line), one file per instance.
    """

    def __init__(self, audit_file: Optional[str] = None):
        """
        Initialize audit logger.

        Args:
            audit_file: Path to audit log file (default: logs/decisions.jsonl)
        """
        if audit_file:
            self.audit_file = Path(audit_file)
        else:
            self.audit_file = Path("logs/decisions.jsonl")

        self.audit_file.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def log_cycle(self, record: CycleRecord) -> bool:
        """Append one record. Returns False if the write failed."""
        try:
            with open(self.audit_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(record.to_dict(), default=str) + "\n")
        except OSError as e:
            logger.error(f"Failed to write audit log: {e}")
            return False

        logger.debug(f"Audited cycle #{record.cycle_number}: status={record.status}")
        return True

    def get_recent_cycles(self, n: int = 10) -> List[Dict[str, Any]]:
        """
        Get the N most recent cycle logs.

        Args:
            n: Number of cycles to retrieve

        Returns:
            List of cycle log entries (most recent first)
        """
        if not self.audit_file.exists():
            return []

        try:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            logger.error(f"Failed to read audit log: {e}")
            return []

        cycles = []
        for line in lines[-n:]:
            try:
                cycles.append(json.loads(line))
            except json.JSONDecodeError:
                continue

        return list(reversed(cycles))

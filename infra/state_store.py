"""
AutoPerp Infrastructure: State Store

Persistent per-instance state with atomic writes: the tracked position
table, the loss circuit breaker and the cycle counter, so a restart resumes
where the last cycle left off.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_STATE = {
    "cycle_number": 0,
    "started_at": None,
    "last_cycle_at": None,
    "positions": {},  # "SYMBOL_side" -> TrackedPositionState dict
    "circuit_breaker": {},  # LossCircuitBreaker.to_dict()
}


class StateStore:
    """
    Persistent state storage using one JSON file per trading instance.

    Features:
    - Atomic writes (temp file + rename)
    - Defaults merged on load, so older files keep working
    """

    def __init__(self, state_file: str):
        """
        Initialize state store.

        Args:
            state_file: Path to state JSON file (e.g. data/<instance>.state.json)
        """
        self.state_file = Path(state_file)
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized StateStore at {self.state_file}")

    @classmethod
    def for_instance(cls, state_dir: str, instance_id: str) -> "StateStore":
        return cls(os.path.join(state_dir, f"{instance_id}.state.json"))

    def load(self) -> Dict[str, Any]:
        """
        Load state from file.

        Returns:
            State dict with defaults merged. A missing or unreadable file
            yields the defaults.
        """
        if not self.state_file.exists():
            logger.debug("No state file found, using defaults")
            return self._defaults()

        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load state from {self.state_file}: {e}")
            return self._defaults()

        if not isinstance(data, dict):
            logger.warning("Invalid state file format, using defaults")
            return self._defaults()

        return {**self._defaults(), **data}

    def save(self, state: Dict[str, Any]) -> bool:
        """
        Save state to file atomically.

        Returns:
            False if the write failed (the previous file is left intact)
        """
        temp_path = None
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.state_file.parent,
                prefix=".state_",
                suffix=".json.tmp"
            )
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2, default=str)

            os.replace(temp_path, self.state_file)
            logger.debug("Saved state to file")
            return True

        except OSError as e:
            logger.error(f"Failed to save state: {e}")
            if temp_path and os.path.exists(temp_path):
                os.unlink(temp_path)
            return False

    @staticmethod
    def _defaults() -> Dict[str, Any]:
        return json.loads(json.dumps(DEFAULT_STATE))


def snapshot_state(cycle_number: int, positions: Dict[str, Any], breaker: Dict[str, Any],
                   previous: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build the dict persisted at the end of a cycle."""
    state = dict(previous or StateStore._defaults())
    state["cycle_number"] = cycle_number
    state["positions"] = positions
    state["circuit_breaker"] = breaker
    state["last_cycle_at"] = datetime.now(timezone.utc).isoformat()
    if not state.get("started_at"):
        state["started_at"] = state["last_cycle_at"]
    return state

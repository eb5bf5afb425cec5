"""
Tests for the per-instance state file and the JSONL cycle audit trail.
"""

import json

from core.audit_log import AuditLogger, CycleRecord, DecisionRecord
from infra.state_store import StateStore, snapshot_state
from tests.helpers import T0


class TestStateStore:
    def test_missing_file_gives_defaults(self, tmp_path):
        store = StateStore(str(tmp_path / "a.state.json"))
        state = store.load()
        assert state["cycle_number"] == 0
        assert state["positions"] == {}
        assert state["circuit_breaker"] == {}

    def test_save_and_load(self, tmp_path):
        store = StateStore.for_instance(str(tmp_path / "data"), "paper-auto")
        assert store.state_file.name == "paper-auto.state.json"

        state = snapshot_state(7, {"BTCUSDT_long": {"entry_price": 100.0}}, {"stop_loss_count": 1})
        assert store.save(state)

        loaded = store.load()
        assert loaded["cycle_number"] == 7
        assert loaded["positions"]["BTCUSDT_long"]["entry_price"] == 100.0
        assert loaded["started_at"] == loaded["last_cycle_at"]
        assert not list((tmp_path / "data").glob(".state_*"))

    def test_started_at_kept_across_snapshots(self):
        first = snapshot_state(1, {}, {})
        second = snapshot_state(2, {}, {}, previous={**first, "started_at": "2025-01-01T00:00:00+00:00"})
        assert second["started_at"] == "2025-01-01T00:00:00+00:00"

    def test_corrupt_file_falls_back(self, tmp_path):
        path = tmp_path / "a.state.json"
        path.write_text("{not json")
        assert StateStore(str(path)).load()["cycle_number"] == 0

        path.write_text("[1, 2]")
        assert StateStore(str(path)).load()["positions"] == {}

    def test_older_file_gets_new_keys(self, tmp_path):
        path = tmp_path / "a.state.json"
        path.write_text(json.dumps({"cycle_number": 3}))
        state = StateStore(str(path)).load()
        assert state["cycle_number"] == 3
        assert state["positions"] == {}
        assert state["circuit_breaker"] == {}


class TestAuditLogger:
    def _record(self, n, **kwargs):
        return CycleRecord(instance_id="paper-auto", cycle_number=n, timestamp=T0, **kwargs)

    def test_appends_one_line_per_cycle(self, tmp_path):
        path = tmp_path / "logs" / "paper-auto.decisions.jsonl"
        audit = AuditLogger(str(path))

        for n in (1, 2, 3):
            assert audit.log_cycle(self._record(n))

        assert len(path.read_text().splitlines()) == 3
        recent = audit.get_recent_cycles(2)
        assert [c["cycle_number"] for c in recent] == [3, 2]

    def test_record_fields(self, tmp_path):
        audit = AuditLogger(str(tmp_path / "d.jsonl"))
        record = self._record(1, input_prompt="PROMPT", rationale="why", decision_json="[]")
        record.decisions.append(DecisionRecord({"action": "open_long"}, "rejected", "leverage 9x"))
        record.log("open_long BTCUSDT: rejected")

        audit.log_cycle(record)
        saved = audit.get_recent_cycles(1)[0]

        assert saved["timestamp"] == T0.isoformat()
        assert saved["status"] == "NO_TRADE"
        assert saved["decisions"][0] == {
            "intent": {"action": "open_long"}, "status": "rejected",
            "reason": "leverage 9x", "outcome": None,
        }
        assert saved["execution_log"] == ["open_long BTCUSDT: rejected"]

    def test_status_values(self):
        record = self._record(1)
        assert record.status == "NO_TRADE"

        record.breaker = {"active": True}
        assert record.status == "BACKOFF"

        record.auto_exits.append({"kind": "trailing_stop", "success": True})
        assert record.status == "EXECUTED"

        record.fail("boom")
        assert record.status == "FAILED"
        assert record.execution_log[-1] == "ERROR: boom"

    def test_unreadable_lines_skipped(self, tmp_path):
        path = tmp_path / "d.jsonl"
        audit = AuditLogger(str(path))
        audit.log_cycle(self._record(1))
        with open(path, "a") as f:
            f.write("garbage\n")
        assert [c["cycle_number"] for c in audit.get_recent_cycles(5)] == [1]

    def test_no_file_yet(self, tmp_path):
        assert AuditLogger(str(tmp_path / "d.jsonl")).get_recent_cycles() == []

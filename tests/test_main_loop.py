"""Tests for the runner: venue registry, instance wiring and the CLI entry point."""

from unittest.mock import Mock

import pytest
import yaml

from ai.llm_client import MockProposalSource
from core.exceptions import FatalConfigError
from core.paper_exchange import PaperExchange
from runner.main_loop import InstanceManager, TradingInstance, build_exchange, main


def _app_config(tmp_path, **trader_overrides):
    trader = {
        "id": "paper-test",
        "exchange": "paper",
        "initial_balance": 5000,
        "symbols": ["BTCUSDT"],
        "ai": {"provider": "mock"},
        "market": {"provider": "none"},
    }
    trader.update(trader_overrides)
    return {
        "log_dir": str(tmp_path / "logs"),
        "state_dir": str(tmp_path / "data"),
        "log_level": "INFO",
        "metrics": {"enabled": False},
        "alerts": {"enabled": False},
        "traders": [trader],
    }


def test_paper_exchange_registered():
    exchange = build_exchange({"id": "t", "exchange": "paper", "initial_balance": 2500}, None)
    assert isinstance(exchange, PaperExchange)
    assert exchange.wallet_balance == 2500.0


def test_unknown_exchange_is_fatal():
    with pytest.raises(FatalConfigError, match="no exchange adapter registered for 'binance'"):
        build_exchange({"id": "t", "exchange": "binance"}, None)


def test_instance_from_config(tmp_path):
    app_cfg = _app_config(tmp_path)

    instance = TradingInstance.from_config(app_cfg["traders"][0], app_cfg)

    assert instance.instance_id == "paper-test"
    assert instance.interval_seconds == 180
    assert isinstance(instance.orchestrator.proposal_source, MockProposalSource)
    assert instance.orchestrator.state_store.state_file == tmp_path / "data" / "paper-test.state.json"


def test_run_once_persists(tmp_path):
    app_cfg = _app_config(tmp_path)
    instance = TradingInstance.from_config(app_cfg["traders"][0], app_cfg)

    record = instance.run_once()

    assert record.success
    assert (tmp_path / "logs" / "paper-test.decisions.jsonl").exists()
    assert (tmp_path / "data" / "paper-test.state.json").exists()

    again = TradingInstance.from_config(app_cfg["traders"][0], app_cfg)
    assert again.orchestrator.cycle_number == 1


def test_loop_survives_unexpected_error():
    orchestrator = Mock(instance_id="t")
    instance = TradingInstance(orchestrator, interval_seconds=60)

    def boom():
        instance.stop()
        raise RuntimeError("bug")

    orchestrator.run_cycle.side_effect = boom
    instance.run_forever()

    assert instance.stopped
    orchestrator.run_cycle.assert_called_once()


def test_stopped_loop_never_runs():
    orchestrator = Mock(instance_id="t")
    instance = TradingInstance(orchestrator, interval_seconds=60)
    instance.stop()

    instance.run_forever()

    orchestrator.run_cycle.assert_not_called()


def test_manager_needs_an_enabled_trader(tmp_path):
    with pytest.raises(FatalConfigError, match="No enabled traders"):
        InstanceManager(_app_config(tmp_path, enabled=False))

    with pytest.raises(FatalConfigError, match="No enabled trader matches 'other'"):
        InstanceManager(_app_config(tmp_path), only="other")


def test_main_once(tmp_path):
    path = tmp_path / "traders.yaml"
    path.write_text(yaml.safe_dump(_app_config(tmp_path)))

    assert main(["--config", str(path), "--once"]) == 0
    assert (tmp_path / "data" / "paper-test.state.json").exists()


def test_main_rejects_bad_config(tmp_path):
    path = tmp_path / "traders.yaml"
    path.write_text(yaml.safe_dump(_app_config(tmp_path, scan_interval_minutes=0)))

    assert main(["--config", str(path), "--once"]) == 1


def test_each_instance_gets_its_own_alert_service(tmp_path):
    app_cfg = _app_config(tmp_path)
    app_cfg["alerts"] = {"enabled": True, "dry_run": True}
    app_cfg["traders"].append({**app_cfg["traders"][0], "id": "paper-second"})

    manager = InstanceManager(app_cfg)

    first, second = (i.orchestrator.alerts for i in manager.instances)
    assert first is not second
    assert first.is_enabled() and second.is_enabled()

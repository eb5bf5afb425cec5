"""
Tests for configuration validation.

Validates that config_validator correctly identifies invalid configs
and accepts valid configs.
"""
from pathlib import Path

import pytest
import yaml

from core.exceptions import FatalConfigError
from tools.config_validator import (
    AppConfig,
    TraderConfig,
    load_app_config,
    validate_config,
    validate_config_data,
)


def _trader(**overrides):
    trader = {
        "id": "t1",
        "symbols": ["BTCUSDT", "ETHUSDT"],
        "ai": {"provider": "mock"},
        "market": {"provider": "none"},
    }
    trader.update(overrides)
    return trader


def _write(tmp_path: Path, data) -> Path:
    path = tmp_path / "traders.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


class TestTraderValidation:
    """Test traders entries"""

    def test_valid_minimal_config(self):
        assert validate_config_data({"traders": [_trader()]}) == []

    def test_defaults_filled_in(self):
        trader = TraderConfig(**_trader())
        assert trader.mode == "auto"
        assert trader.leverage.btc_eth == 5
        assert trader.notional_multiple.altcoin == 5.0
        assert trader.circuit_breaker.multiplier == 2.67
        assert trader.trailing_stop.enabled is False
        assert trader.scan_interval_minutes == 3

    def test_symbols_normalized_and_deduped(self):
        trader = TraderConfig(**_trader(symbols=["btc", "BTC-USDT", "sol/usdt:usdt"]))
        assert trader.symbols == ["BTCUSDT", "SOLUSDT"]

    def test_leverage_above_venue_max(self):
        errors = validate_config_data({"traders": [_trader(leverage={"btc_eth": 200})]})
        assert len(errors) == 1
        assert "leverage -> btc_eth" in errors[0]

    def test_unknown_mode(self):
        errors = validate_config_data({"traders": [_trader(mode="yolo")]})
        assert any("mode" in e for e in errors)

    def test_backoff_max_below_base(self):
        errors = validate_config_data({
            "traders": [_trader(circuit_breaker={"base_minutes": 60, "max_minutes": 30})]
        })
        assert any("max_minutes" in e for e in errors)

    def test_duplicate_ids(self):
        errors = validate_config_data({"traders": [_trader(), _trader()]})
        assert any("Duplicate trader id" in e for e in errors)

    def test_no_traders(self):
        assert validate_config_data({"traders": []})
        assert validate_config_data({})


class TestCredentials:
    """Enabled real providers need a key"""

    def test_missing_key_env(self, monkeypatch):
        monkeypatch.delenv("TEST_LLM_KEY", raising=False)
        errors = validate_config_data({
            "traders": [_trader(ai={"provider": "deepseek", "api_key_env": "TEST_LLM_KEY"})]
        })
        assert len(errors) == 1
        assert "missing credentials" in errors[0]
        assert "TEST_LLM_KEY" in errors[0]

    def test_key_from_env(self, monkeypatch):
        monkeypatch.setenv("TEST_LLM_KEY", "sk-test")
        errors = validate_config_data({
            "traders": [_trader(ai={"provider": "deepseek", "api_key_env": "TEST_LLM_KEY"})]
        })
        assert errors == []

    def test_disabled_trader_not_checked(self):
        errors = validate_config_data({
            "traders": [_trader(enabled=False, ai={"provider": "openai"})]
        })
        assert errors == []

    def test_custom_provider_needs_endpoint(self):
        errors = validate_config_data({
            "traders": [_trader(ai={"provider": "custom", "api_key": "sk-x"})]
        })
        assert any("base_url and model" in e for e in errors)


class TestFileValidation:
    """Test file loading"""

    def test_missing_file_returns_error(self, tmp_path):
        errors = validate_config(tmp_path / "nope.yaml")
        assert len(errors) == 1
        assert "not found" in errors[0]

    def test_malformed_yaml_returns_error(self, tmp_path):
        path = tmp_path / "traders.yaml"
        path.write_text("traders:\n  - id: t1\n    symbols: [BTCUSDT\n")

        errors = validate_config(path)

        assert len(errors) == 1
        assert "Invalid YAML" in errors[0]
        assert "line" in errors[0]

    def test_load_app_config_returns_full_dict(self, tmp_path):
        path = _write(tmp_path, {"traders": [_trader()], "log_level": "DEBUG"})

        config = load_app_config(path)

        assert config["log_level"] == "DEBUG"
        assert config["traders"][0]["circuit_breaker"]["base_minutes"] == 45.0
        assert config["alerts"]["enabled"] is False

    def test_load_app_config_raises_with_all_errors(self, tmp_path):
        path = _write(tmp_path, {"traders": [_trader(scan_interval_minutes=0, min_risk_reward_ratio=-1)]})

        with pytest.raises(FatalConfigError) as exc_info:
            load_app_config(path)

        assert len(exc_info.value.errors) == 2


class TestConfigIntegration:
    """Test the shipped config"""

    def test_shipped_config_schema_is_valid(self):
        path = Path(__file__).resolve().parent.parent / "config" / "traders.yaml"
        data = yaml.safe_load(path.read_text())
        data["alerts"]["webhook_url"] = None

        config = AppConfig(**data)

        assert [t.id for t in config.traders] == ["paper-auto", "paper-manager"]
        assert config.traders[1].mode == "position_manager"

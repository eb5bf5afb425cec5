"""
Configuration Validation Module

Validates traders.yaml against Pydantic schemas.
Ensures config files are correct before any trading instance starts.

Usage:
    from tools.config_validator import load_app_config

    config = load_app_config("config/traders.yaml")   # raises FatalConfigError
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from core.exceptions import FatalConfigError
from infra.symbols import normalize_symbol

logger = logging.getLogger(__name__)

MAX_VENUE_LEVERAGE = 125


# ===== Trader Schema =====
class LeverageConfig(BaseModel):
    """Per-asset-class leverage ceilings"""
    btc_eth: int = Field(default=5, ge=1, le=MAX_VENUE_LEVERAGE, description="BTC/ETH max leverage")
    altcoin: int = Field(default=5, ge=1, le=MAX_VENUE_LEVERAGE, description="Other symbols max leverage")


class NotionalMultipleConfig(BaseModel):
    """Max position notional as a multiple of account equity"""
    btc_eth: float = Field(default=10.0, gt=0, le=100)
    altcoin: float = Field(default=5.0, gt=0, le=100)


class TrailingStopConfig(BaseModel):
    enabled: bool = False
    activation_pct: float = Field(default=5.0, gt=0, description="PnL% that arms the trailing stop")
    distance_pct: float = Field(default=3.0, gt=0, description="PnL% give-back from peak that closes")


class PartialTakeProfitConfig(BaseModel):
    enabled: bool = False


class CircuitBreakerConfig(BaseModel):
    """Stop-loss backoff"""
    enabled: bool = True
    base_minutes: float = Field(default=45.0, gt=0)
    multiplier: float = Field(default=2.67, ge=1.0)
    max_minutes: float = Field(default=360.0, gt=0)
    reset_hours: float = Field(default=24.0, gt=0)
    stop_tolerance_pct: float = Field(default=5.0, ge=0, le=50,
                                      description="How close to the stop a close must be to count as stopped out")

    @model_validator(mode="after")
    def check_backoff_bounds(self) -> "CircuitBreakerConfig":
        if self.max_minutes < self.base_minutes:
            raise ValueError(
                f"max_minutes ({self.max_minutes}) must be >= base_minutes ({self.base_minutes})"
            )
        return self


class AIConfig(BaseModel):
    """Proposal source (OpenAI-compatible chat model)"""
    provider: str = Field(default="openai", pattern="^(openai|deepseek|qwen|custom|mock)$")
    model: Optional[str] = None
    api_key: Optional[str] = None
    api_key_env: Optional[str] = None
    base_url: Optional[str] = None
    timeout_seconds: float = Field(default=120.0, gt=0)
    temperature: float = Field(default=0.5, ge=0, le=2)
    max_tokens: int = Field(default=4000, gt=0)


class MarketConfig(BaseModel):
    provider: str = Field(default="hyperliquid", pattern="^(hyperliquid|none)$")
    # None: follow scan_interval_minutes
    candle_interval: Optional[str] = Field(
        default=None, pattern="^(1m|3m|5m|15m|30m|1h|2h|4h|8h|12h|1d)$"
    )
    candle_count: int = Field(default=24, ge=2, le=500)


class TraderConfig(BaseModel):
    """One trading instance"""
    id: str = Field(min_length=1, pattern="^[A-Za-z0-9_.-]+$")
    name: Optional[str] = None
    enabled: bool = True
    mode: str = Field(default="auto", pattern="^(auto|position_manager)$")
    exchange: str = Field(default="paper", min_length=1)
    initial_balance: float = Field(default=10_000.0, gt=0)
    symbols: List[str] = Field(default_factory=list, description="Candidate symbols offered to the model")
    scan_interval_minutes: int = Field(default=3, ge=1, le=1440)
    leverage: LeverageConfig = Field(default_factory=LeverageConfig)
    notional_multiple: NotionalMultipleConfig = Field(default_factory=NotionalMultipleConfig)
    min_risk_reward_ratio: float = Field(default=2.0, gt=0)
    trailing_stop: TrailingStopConfig = Field(default_factory=TrailingStopConfig)
    partial_take_profit: PartialTakeProfitConfig = Field(default_factory=PartialTakeProfitConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    price_drift_tolerance_pct: float = Field(default=3.0, gt=0, le=50)
    post_exit_refresh_seconds: float = Field(default=2.0, ge=0, le=60)
    ai: AIConfig = Field(default_factory=AIConfig)
    market: MarketConfig = Field(default_factory=MarketConfig)

    @field_validator("symbols")
    @classmethod
    def normalize_symbols(cls, v: List[str]) -> List[str]:
        normalized = []
        for raw in v:
            symbol = normalize_symbol(raw)
            if not symbol:
                raise ValueError(f"Invalid symbol {raw!r}")
            if symbol not in normalized:
                normalized.append(symbol)
        return normalized


class MetricsConfig(BaseModel):
    enabled: bool = False
    port: int = Field(default=9100, ge=1, le=65535)


class AlertsConfig(BaseModel):
    enabled: bool = False
    webhook_url: Optional[str] = None
    webhook_env: str = "ALERT_WEBHOOK_URL"
    min_severity: str = Field(default="warning", pattern="^(info|warning|critical)$")
    dry_run: bool = False
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=300.0, ge=0)


class AppConfig(BaseModel):
    """Complete traders.yaml schema"""
    traders: List[TraderConfig] = Field(min_length=1)
    log_dir: str = "logs"
    state_dir: str = "data"
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR)$")
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)

    @field_validator("traders")
    @classmethod
    def unique_ids(cls, v: List[TraderConfig]) -> List[TraderConfig]:
        seen = set()
        for trader in v:
            if trader.id in seen:
                raise ValueError(f"Duplicate trader id {trader.id!r}")
            seen.add(trader.id)
        return v


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return message with line/column context for YAML errors."""

    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None or getattr(mark, "line", None) is None:
        return message

    line, column = mark.line, mark.column
    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}"

    snippet = "\n".join(
        f"{'▶' if idx == line else ' '} {idx + 1:04d} | {raw_lines[idx]}"
        for idx in range(max(line - 2, 0), min(line + 3, len(raw_lines)))
    )
    problem = getattr(error, "problem", str(error))
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _credential_errors(config: AppConfig) -> List[str]:
    errors = []
    for trader in config.traders:
        if not trader.enabled or trader.ai.provider == "mock":
            continue
        key = trader.ai.api_key or (os.environ.get(trader.ai.api_key_env) if trader.ai.api_key_env else None)
        if not key:
            hint = f"env {trader.ai.api_key_env} is empty" if trader.ai.api_key_env else "no api_key or api_key_env"
            errors.append(f"traders -> {trader.id} -> ai: missing credentials ({hint})")
        if trader.ai.provider == "custom" and not (trader.ai.base_url and trader.ai.model):
            errors.append(f"traders -> {trader.id} -> ai: custom provider needs base_url and model")
    return errors


def validate_config_data(data: Dict[str, Any], source: str = "traders.yaml") -> List[str]:
    """Validate an already-loaded config dict. Returns error strings (empty if valid)."""
    try:
        config = AppConfig(**(data or {}))
    except ValidationError as e:
        errors = []
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{source}: {field}: {error['msg']}")
        return errors
    return [f"{source}: {err}" for err in _credential_errors(config)]


def validate_config(config_path: Union[str, Path] = "config/traders.yaml") -> List[str]:
    """
    Validate a traders.yaml file.

    Returns:
        List of error messages (empty if valid)
    """
    path = Path(config_path)
    try:
        data = load_yaml_file(path)
    except FileNotFoundError as e:
        return [f"{path.name}: {e}"]
    except yaml.YAMLError as e:
        return [f"{path.name}: Invalid YAML - {e}"]

    errors = validate_config_data(data, path.name)
    if errors:
        logger.error(f"❌ {len(errors)} validation error(s) found in {path}")
    else:
        logger.info(f"✅ {path.name} validation passed")
    return errors


def load_app_config(config_path: Union[str, Path] = "config/traders.yaml") -> Dict[str, Any]:
    """
    Load, validate and return the config with defaults filled in.

    Raises:
        FatalConfigError: on any validation or credential error
    """
    errors = validate_config(config_path)
    if errors:
        raise FatalConfigError(f"Invalid configuration in {config_path}", errors)
    data = load_yaml_file(Path(config_path))
    return AppConfig(**data).model_dump()


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    path = sys.argv[1] if len(sys.argv) > 1 else "config/traders.yaml"
    errors = validate_config(path)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ Configuration is valid!\n")
        sys.exit(0)

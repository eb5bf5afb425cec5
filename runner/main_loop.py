"""
AutoPerp Runner: Main Loop

Starts one trading instance per enabled ``traders`` entry in the config.
Each instance owns its venue adapter, proposal source, tracked position
table and circuit breaker, and runs its own fixed-interval loop on a thread;
instances share nothing but the metrics exporter.

Usage:
    python -m runner.main_loop --config config/traders.yaml
    python -m runner.main_loop --once --instance paper-auto
"""

import argparse
import logging
import signal
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ai.llm_client import create_proposal_source
from core.audit_log import AuditLogger
from core.exceptions import FatalConfigError
from core.exchange import ExchangeTrader
from core.market import HyperliquidMarketReader
from core.paper_exchange import PaperExchange
from core.trading_cycle import CycleOrchestrator
from infra.alerting import AlertService
from infra.metrics import MetricsRecorder
from infra.state_store import StateStore
from tools.config_validator import load_app_config

logger = logging.getLogger(__name__)


def setup_logging(log_dir: str = "logs", level: str = "INFO") -> None:
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = log_path / "autoperp.log"

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s [%(threadName)s]: %(message)s",
        handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
    )


# ─── Venue registry ───────────────────────────────────────────────────────

def _build_paper_exchange(trader_cfg: Dict[str, Any],
                          market_reader: Optional[HyperliquidMarketReader]) -> ExchangeTrader:
    return PaperExchange(
        initial_balance=float(trader_cfg.get("initial_balance", 10_000.0)),
        price_source=market_reader.price if market_reader is not None else None,
    )


EXCHANGE_FACTORIES: Dict[str, Callable[[Dict[str, Any], Optional[HyperliquidMarketReader]], ExchangeTrader]] = {
    "paper": _build_paper_exchange,
}


def build_market_reader(trader_cfg: Dict[str, Any]) -> Optional[HyperliquidMarketReader]:
    market_cfg = trader_cfg.get("market") or {}
    if market_cfg.get("provider", "hyperliquid") == "none":
        return None
    return HyperliquidMarketReader(
        candle_interval=market_cfg.get("candle_interval"),
        candle_count=int(market_cfg.get("candle_count", 24)),
    )


def build_exchange(trader_cfg: Dict[str, Any],
                   market_reader: Optional[HyperliquidMarketReader]) -> ExchangeTrader:
    name = trader_cfg.get("exchange", "paper")
    factory = EXCHANGE_FACTORIES.get(name)
    if factory is None:
        raise FatalConfigError(
            f"Trader '{trader_cfg.get('id')}': no exchange adapter registered for '{name}' "
            f"(available: {', '.join(sorted(EXCHANGE_FACTORIES))})"
        )
    return factory(trader_cfg, market_reader)


# ─── Instances ────────────────────────────────────────────────────────────

class TradingInstance:
    """
    One trader: a CycleOrchestrator plus its timer loop.

    Stopping is cooperative: ``stop()`` sets a flag checked between cycles and
    wakes the inter-cycle wait; a cycle in flight always finishes.
    """

    def __init__(self, orchestrator: CycleOrchestrator, interval_seconds: float):
        self.orchestrator = orchestrator
        self.instance_id = orchestrator.instance_id
        self.interval_seconds = max(float(interval_seconds), 1.0)
        self._stop = threading.Event()

    @classmethod
    def from_config(cls, trader_cfg: Dict[str, Any], app_cfg: Dict[str, Any],
                    metrics: Optional[MetricsRecorder] = None,
                    alerts: Optional[AlertService] = None,
                    interval_seconds: Optional[float] = None) -> "TradingInstance":
        instance_id = trader_cfg["id"]
        market_reader = build_market_reader(trader_cfg)
        exchange = build_exchange(trader_cfg, market_reader)
        proposal_source = create_proposal_source(trader_cfg.get("ai") or {})

        log_dir = app_cfg.get("log_dir", "logs")
        orchestrator = CycleOrchestrator(
            instance_id=instance_id,
            config=trader_cfg,
            exchange=exchange,
            proposal_source=proposal_source,
            market_reader=market_reader,
            audit_logger=AuditLogger(str(Path(log_dir) / f"{instance_id}.decisions.jsonl")),
            state_store=StateStore.for_instance(app_cfg.get("state_dir", "data"), instance_id),
            metrics=metrics,
            alerts=alerts or AlertService.from_config(app_cfg.get("alerts")),
        )
        orchestrator.restore_state()

        interval = interval_seconds or int(trader_cfg.get("scan_interval_minutes", 3)) * 60
        return cls(orchestrator, interval)

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()

    def run_once(self):
        return self.orchestrator.run_cycle()

    def run_forever(self) -> None:
        logger.info(f"[{self.instance_id}] Starting loop (interval={self.interval_seconds:.0f}s)")
        while not self._stop.is_set():
            start = time.monotonic()
            try:
                self.orchestrator.run_cycle()
            except Exception:
                # Data and proposal failures are handled inside the cycle; this is a bug.
                logger.exception(f"[{self.instance_id}] Unexpected error in cycle; continuing")
            elapsed = time.monotonic() - start

            sleep_for = max(1.0, self.interval_seconds - elapsed)
            logger.info(f"[{self.instance_id}] Cycle took {elapsed:.2f}s, sleeping {sleep_for:.2f}s")
            self._stop.wait(sleep_for)

        logger.info(f"[{self.instance_id}] Trading loop stopped cleanly.")


class InstanceManager:
    """Builds every enabled instance and runs each on its own thread."""

    def __init__(self, app_cfg: Dict[str, Any], only: Optional[str] = None,
                 interval_seconds: Optional[float] = None):
        self.app_cfg = app_cfg

        metrics_cfg = app_cfg.get("metrics") or {}
        self.metrics = MetricsRecorder(enabled=metrics_cfg.get("enabled", False),
                                       port=int(metrics_cfg.get("port", 9100)))

        self.instances: List[TradingInstance] = []
        for trader_cfg in app_cfg.get("traders", []):
            if only and trader_cfg["id"] != only:
                continue
            if not trader_cfg.get("enabled", True):
                logger.info(f"Trader '{trader_cfg['id']}' disabled; skipping")
                continue
            self.instances.append(TradingInstance.from_config(
                trader_cfg, app_cfg, self.metrics, interval_seconds=interval_seconds
            ))

        if not self.instances:
            raise FatalConfigError(
                f"No enabled trader matches '{only}'" if only else "No enabled traders configured"
            )
        self._threads: List[threading.Thread] = []

    def run_once(self) -> None:
        for instance in self.instances:
            instance.run_once()

    def start(self) -> None:
        self.metrics.start()
        for instance in self.instances:
            thread = threading.Thread(target=instance.run_forever,
                                      name=instance.instance_id, daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"Started {len(self._threads)} trading instance(s)")

    def stop(self, *_) -> None:
        logger.warning("Shutdown requested; stopping after in-flight cycles finish")
        for instance in self.instances:
            instance.stop()

    def join(self, poll_seconds: float = 1.0) -> None:
        # Short joins keep the main thread responsive to signals.
        while any(thread.is_alive() for thread in self._threads):
            for thread in self._threads:
                thread.join(timeout=poll_seconds)


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    parser = argparse.ArgumentParser(description="AutoPerp perpetual-futures trading engine")
    parser.add_argument("--config", default="config/traders.yaml", help="Path to traders.yaml")
    parser.add_argument("--once", action="store_true", help="Run one cycle per instance and exit")
    parser.add_argument("--instance", help="Only run the trader with this id")
    parser.add_argument("--interval", type=float,
                        help="Seconds between cycles (default: each trader's scan_interval_minutes)")
    args = parser.parse_args(argv)

    try:
        app_cfg = load_app_config(args.config)
    except FatalConfigError as exc:
        logging.basicConfig(level=logging.ERROR, format="%(levelname)s: %(message)s")
        logger.error(str(exc))
        for error in exc.errors:
            logger.error(f"  • {error}")
        return 1

    setup_logging(app_cfg.get("log_dir", "logs"), app_cfg.get("log_level", "INFO"))

    try:
        manager = InstanceManager(app_cfg, only=args.instance, interval_seconds=args.interval)
    except FatalConfigError as exc:
        logger.error(f"Startup failed: {exc}")
        return 1

    if args.once:
        manager.run_once()
        return 0

    signal.signal(signal.SIGINT, manager.stop)
    signal.signal(signal.SIGTERM, manager.stop)
    manager.start()
    manager.join()
    logger.info("All trading instances stopped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

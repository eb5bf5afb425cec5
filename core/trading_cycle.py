"""
Trading Cycle Pipeline - Per-instance Cycle Orchestrator

One call to ``run_cycle`` walks the state machine:

    CheckBreaker -> RefreshPositions -> DetectLossEvents -> RunProfitLossControllers
    -> [RefreshPositions again if anything closed] -> SolicitProposals
    -> Validate -> Sequence -> Dispatch -> PersistCycleRecord

Each instance owns its own PositionStateStore and LossCircuitBreaker; the
orchestrator only passes them by reference to the components that need them.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ai.llm_client import ProposalSource
from ai.schemas import PositionView, ProposalBatch, ProposalContext
from core.audit_log import AuditLogger, CycleRecord, DecisionRecord
from core.circuit_breaker import LossCircuitBreaker
from core.decision_validator import DecisionValidator, RiskLimits
from core.exceptions import CriticalDataUnavailable, ProposalSourceError, ValidationError
from core.exchange import ExchangeTrader
from core.execution import ExecutionDispatcher
from core.market import MarketReader, collect_market_context
from core.models import AccountSnapshot, DecisionAction, DecisionIntent, utc_now
from core.position_manager import ProfitLossController
from core.position_state import PositionStateStore, RefreshResult
from core.sequencer import sequence_decisions
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import CycleStats, MetricsRecorder
from infra.state_store import StateStore, snapshot_state

logger = logging.getLogger(__name__)

MODE_AUTO = "auto"
MODE_POSITION_MANAGER = "position_manager"
DEFAULT_POST_EXIT_REFRESH_SECONDS = 2.0


@dataclass
class CycleSummary:
    """Counts for one cycle, fed to metrics"""
    proposals: int = 0
    approved: int = 0
    executed: int = 0
    no_trade_reason: Optional[str] = None


class CycleOrchestrator:
    """
    Runs one trading cycle at a time for a single instance.

    ``run_cycle`` never raises for missing venue data or proposal-source
    failures; those end the cycle early with the failure recorded. Anything
    else is a bug and propagates to the runner.
    """

    def __init__(
        self,
        instance_id: str,
        config: Dict[str, Any],
        exchange: ExchangeTrader,
        proposal_source: ProposalSource,
        market_reader: Optional[MarketReader] = None,
        audit_logger: Optional[AuditLogger] = None,
        state_store: Optional[StateStore] = None,
        metrics: Optional[MetricsRecorder] = None,
        alerts: Optional[AlertService] = None,
        sleep: Callable[[float], Any] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            instance_id: Trader id, used in records, state file and metric labels
            config: One validated ``traders`` entry
            exchange: Venue adapter
            proposal_source: Where decision batches come from
            market_reader: Optional market data for the prompt
            sleep: Settle delay after automatic exits (injectable for tests)
            clock: UTC clock shared with the circuit breaker
        """
        self.instance_id = instance_id
        self.config = config
        self.exchange = exchange
        self.proposal_source = proposal_source
        self.market_reader = market_reader
        self.audit_logger = audit_logger
        self.state_store = state_store
        self.metrics = metrics
        self.alerts = alerts
        self.sleep = sleep
        self.clock = clock

        self.manage_only = config.get("mode", MODE_AUTO) == MODE_POSITION_MANAGER
        self.candidate_symbols: List[str] = list(config.get("symbols") or [])
        self.scan_interval_minutes = int(config.get("scan_interval_minutes", 3))
        self.post_exit_refresh_seconds = float(
            config.get("post_exit_refresh_seconds", DEFAULT_POST_EXIT_REFRESH_SECONDS)
        )

        self.limits = RiskLimits.from_config(config)
        self.positions = PositionStateStore(exchange)
        self.validator = DecisionValidator(self.limits)
        self.dispatcher = ExecutionDispatcher(
            exchange, self.positions,
            price_drift_tolerance_pct=float(config.get("price_drift_tolerance_pct", 3.0)),
        )
        self.controller = ProfitLossController(config, exchange, self.positions)
        self.breaker = LossCircuitBreaker.from_config(config, clock=clock)

        self.cycle_number = 0
        self.started_at = clock()
        self._saved_state: Optional[Dict[str, Any]] = None

        logger.info(
            f"[{instance_id}] CycleOrchestrator ready: mode={config.get('mode', MODE_AUTO)}, "
            f"candidates={len(self.candidate_symbols)}, interval={self.scan_interval_minutes}m"
        )

    # ─── Persistence ───────────────────────────────────────────────────────

    def restore_state(self) -> None:
        """Reload tracked positions, breaker and cycle counter from the state store."""
        if self.state_store is None:
            return
        state = self.state_store.load()
        self._saved_state = state
        self.cycle_number = int(state.get("cycle_number", 0))
        loaded = self.positions.load_dict(state.get("positions"))
        self.breaker.load_dict(state.get("circuit_breaker"))
        logger.info(
            f"[{self.instance_id}] Restored state: cycle #{self.cycle_number}, "
            f"{loaded} tracked position(s), stop-loss count {self.breaker.stop_loss_count}"
        )

    def save_state(self) -> None:
        if self.state_store is None:
            return
        state = snapshot_state(self.cycle_number, self.positions.to_dict(),
                               self.breaker.to_dict(), self._saved_state)
        if self.state_store.save(state):
            self._saved_state = state

    # ─── Cycle ─────────────────────────────────────────────────────────────

    def run_cycle(self) -> CycleRecord:
        self.cycle_number += 1
        now = self.clock()
        started = time.perf_counter()
        record = CycleRecord(instance_id=self.instance_id, cycle_number=self.cycle_number,
                             timestamp=now)
        summary = CycleSummary()

        logger.info(f"[{self.instance_id}] ── cycle #{self.cycle_number} ──")
        try:
            self._run(record, summary, now)
        finally:
            if record.breaker is None:
                record.breaker = self.breaker.status(now).to_dict()
            if self.audit_logger is not None:
                self.audit_logger.log_cycle(record)
            self.save_state()
            self._observe(record, summary, time.perf_counter() - started)

        logger.info(
            f"[{self.instance_id}] cycle #{self.cycle_number} finished: {record.status}"
            + (f" ({record.error_message})" if record.error_message else "")
        )
        return record

    def _run(self, record: CycleRecord, summary: CycleSummary, now: datetime) -> None:
        self.breaker.maybe_reset(now)

        refreshed = self._refresh(record)
        if refreshed is None:
            summary.no_trade_reason = "positions_unavailable"
            return
        account = self._account(record)
        if account is None:
            summary.no_trade_reason = "balance_unavailable"
            return
        self._snapshot_into(record, account, refreshed)

        losses = self.breaker.detect(refreshed.closed, account.total_equity,
                                     self.exchange.get_market_price, now)
        if losses:
            record.stop_loss_events = [str(key) for key in losses]
            record.log(f"stop-loss detected: {', '.join(record.stop_loss_events)}")
            self._alert_breaker_trip(record, now)

        exits = self.controller.run(refreshed.live)
        record.auto_exits = [event.to_dict() for event in exits]
        for event in exits:
            record.log(
                f"auto-exit {event.kind} {event.key}: "
                + ("ok" if event.success else f"failed ({event.error})")
            )
        if any(event.success for event in exits):
            # Let the venue settle so the proposal source sees post-exit quantities.
            self.sleep(self.post_exit_refresh_seconds)
            refreshed = self._refresh(record)
            if refreshed is None:
                summary.no_trade_reason = "positions_unavailable"
                return
            account = self._account(record)
            if account is None:
                summary.no_trade_reason = "balance_unavailable"
                return
            self._snapshot_into(record, account, refreshed)

        status = self.breaker.status(now)
        record.breaker = status.to_dict()
        if status.active:
            record.log(
                f"circuit breaker active until {status.backoff_until.isoformat()} "
                f"({status.remaining_minutes:.1f} min left, {status.stop_loss_count} stop-loss(es)); "
                f"skipping proposals"
            )
            summary.no_trade_reason = "circuit_breaker"
            return

        if self.manage_only and not refreshed.live:
            record.log("no open positions to manage; skipping proposals")
            summary.no_trade_reason = "no_positions"
            return

        ctx = self._build_context(account, refreshed, now)
        batch = self._solicit(record, ctx)
        if batch is None:
            summary.no_trade_reason = "proposal_source_failed"
            return

        summary.proposals = len(batch.intents)
        approved = self._validate(record, batch.intents, account.total_equity)
        summary.approved = len(approved)

        for intent in sequence_decisions(approved):
            outcome = self.dispatcher.dispatch(intent)
            if intent.parsed_action in (DecisionAction.HOLD, DecisionAction.WAIT):
                status_text = "skipped"
            else:
                status_text = "executed" if outcome.success else "failed"
            if status_text == "executed":
                summary.executed += 1
            record.decisions.append(
                DecisionRecord(intent.to_dict(), status_text, outcome.error, outcome.to_dict())
            )
            record.log(
                f"{intent.action} {intent.symbol}: {status_text}"
                + (f" ({outcome.error})" if outcome.error else "")
                + (f" [{'; '.join(outcome.notes)}]" if outcome.notes else "")
            )

        if summary.executed == 0:
            summary.no_trade_reason = "no_executable_decisions"

    # ─── Steps ─────────────────────────────────────────────────────────────

    def _refresh(self, record: CycleRecord) -> Optional[RefreshResult]:
        try:
            return self.positions.refresh()
        except CriticalDataUnavailable as exc:
            cause = exc.original or exc
            record.fail(f"position refresh failed ({exc.source}): {cause}")
            logger.error(f"[{self.instance_id}] Position refresh failed, aborting cycle: {cause}")
            self._alert_aborted(record)
            return None

    def _account(self, record: CycleRecord) -> Optional[AccountSnapshot]:
        try:
            return self.exchange.get_balance()
        except Exception as exc:
            record.fail(f"balance read failed: {exc}")
            logger.error(f"[{self.instance_id}] Balance read failed, aborting cycle: {exc}")
            self._alert_aborted(record)
            return None

    @staticmethod
    def _snapshot_into(record: CycleRecord, account: AccountSnapshot,
                       refreshed: RefreshResult) -> None:
        record.account = account.to_dict()
        record.positions = [pos.to_dict() for pos in refreshed.live.values()]

    def _build_context(self, account: AccountSnapshot, refreshed: RefreshResult,
                       now: datetime) -> ProposalContext:
        views = [PositionView(snapshot=pos, tracked=self.positions.get(key))
                 for key, pos in refreshed.live.items()]
        held = [pos.symbol for pos in refreshed.live.values()]
        wanted = held if self.manage_only else held + self.candidate_symbols

        market = {}
        if self.market_reader is not None:
            market = collect_market_context(self.market_reader, wanted, self.scan_interval_minutes)

        return ProposalContext(
            account=account,
            positions=views,
            market=market,
            candidate_symbols=[] if self.manage_only else list(self.candidate_symbols),
            cycle_number=self.cycle_number,
            runtime_minutes=int((now - self.started_at).total_seconds() // 60),
            scan_interval_minutes=self.scan_interval_minutes,
            leverage_ceilings=dict(self.limits.leverage_ceilings),
            notional_multiples=dict(self.limits.notional_multiples),
            min_risk_reward_ratio=self.limits.min_risk_reward_ratio,
            manage_only=self.manage_only,
            timestamp=now,
        )

    def _solicit(self, record: CycleRecord, ctx: ProposalContext) -> Optional[ProposalBatch]:
        try:
            batch = self.proposal_source.get_proposals(ctx)
        except ProposalSourceError as exc:
            partial = exc.partial
            if partial is not None:
                record.input_prompt = partial.user_prompt
                record.rationale = partial.rationale
                record.decision_json = partial.raw_decisions
            record.fail(f"proposal source failed: {exc}")
            logger.error(f"[{self.instance_id}] Proposal source failed, aborting cycle: {exc}")
            self._alert_aborted(record)
            return None

        record.input_prompt = batch.user_prompt
        record.rationale = batch.rationale
        record.decision_json = batch.raw_decisions
        if self.metrics is not None and batch.latency_ms is not None:
            self.metrics.record_proposal_latency(self.instance_id, batch.latency_ms)
        logger.info(f"[{self.instance_id}] {len(batch.intents)} proposed decision(s)")
        return batch

    def _validate(self, record: CycleRecord, intents: List[DecisionIntent],
                  equity: float) -> List[DecisionIntent]:
        approved = []
        for intent in intents:
            try:
                self.validator.check(intent, equity)
            except ValidationError as exc:
                record.decisions.append(DecisionRecord(intent.to_dict(), "rejected", exc.reason))
                record.log(f"{intent.action} {intent.symbol}: rejected ({exc.reason})")
                if self.metrics is not None:
                    self.metrics.record_rejection(self.instance_id, exc.reason)
                continue
            approved.append(intent)
        return approved

    # ─── Side channels ─────────────────────────────────────────────────────

    def _alert_breaker_trip(self, record: CycleRecord, now: datetime) -> None:
        status = self.breaker.status(now)
        if self.alerts is None:
            return
        self.alerts.notify(
            AlertSeverity.CRITICAL,
            f"[{self.instance_id}] stop-loss circuit breaker tripped",
            f"{len(record.stop_loss_events)} stop-loss close(s): {', '.join(record.stop_loss_events)}; "
            f"trading paused until {status.backoff_until.isoformat() if status.backoff_until else '-'}",
            {"stop_loss_count": status.stop_loss_count, "cycle": record.cycle_number},
        )

    def _alert_aborted(self, record: CycleRecord) -> None:
        if self.alerts is None:
            return
        self.alerts.notify(
            AlertSeverity.WARNING,
            f"[{self.instance_id}] cycle aborted",
            record.error_message or "unknown error",
            {"cycle": record.cycle_number},
        )

    def _observe(self, record: CycleRecord, summary: CycleSummary, duration: float) -> None:
        if self.metrics is None:
            return
        self.metrics.observe_cycle(CycleStats(
            instance_id=self.instance_id,
            status=record.status,
            proposals=summary.proposals,
            approved=summary.approved,
            executed=summary.executed,
            auto_exits=len(record.auto_exits),
            duration_seconds=duration,
        ))
        if summary.no_trade_reason:
            self.metrics.record_no_trade_reason(self.instance_id, summary.no_trade_reason)
        if record.account:
            self.metrics.record_account(self.instance_id, record.account.get("total_equity", 0.0),
                                        len(record.positions))
        self.metrics.record_breaker_state(self.instance_id, bool(record.breaker and record.breaker.get("active")))
        self.metrics.record_stop_loss_events(self.instance_id, len(record.stop_loss_events))
        for event in record.auto_exits:
            self.metrics.record_auto_exit(self.instance_id, event["kind"], event["success"])

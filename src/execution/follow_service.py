"""
One follow round: fetch plans from the analyzer and dispatch each in turn.

The analyzer (position diffing, polling cadence) is an external
collaborator; this module only defines the surface the engine needs from
it and returns a typed report instead of terminating the host process on
failure.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from loguru import logger
from pydantic import BaseModel, Field

from ..core.config import FollowerConfig
from ..core.event_bus import EventBus
from ..core.log_capture import capture_logs
from ..core.models import FollowPlan
from ..core.order_history import OrderHistoryLedger
from .dispatcher import DispatchResult, DispatchStatus, ExecutionDispatcher
from .binance_exchange import BinanceFuturesExchange
from .exchange import ExchangeFacade
from .risk import RiskGate, RiskManager
from .sizing import PositionSizer


class FollowAnalyzer(ABC):
    """
    Source of follow plans for one followed agent.

    The analyzer owns the idempotency ledger; the engine reuses that
    instance through ``history_ledger`` and never opens its own.
    """

    @abstractmethod
    async def follow_agent(self, agent: str) -> List[FollowPlan]:
        """Return the plans detected since the previous call."""

    @abstractmethod
    def set_price_tolerance(self, percent: float) -> None:
        """Configure the analyzer's entry-price drift tolerance."""

    @property
    @abstractmethod
    def history_ledger(self) -> OrderHistoryLedger:
        """The ledger shared between analyzer and engine."""


class FollowRunReport(BaseModel):
    """
    Result of one follow round.

    Attributes:
        agent: Followed agent
        success: False only if the round itself failed (e.g. analyzer error);
            individual plan failures are in ``results``
        error: Round failure text
        results: One DispatchResult per plan, in processing order
        logs: Tail of the log lines emitted during the round
        started_at: Round start time (UTC)
    """

    agent: str
    success: bool
    error: Optional[str] = None
    results: List[DispatchResult] = Field(default_factory=list)
    logs: List[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def count(self, status: DispatchStatus) -> int:
        return sum(1 for r in self.results if r.status == status)


class FollowService:
    """
    Runs follow rounds for one agent.

    Plans are dispatched one after another so that each plan finishes
    sizing, execution and recording before the next one reads the balance.

    Examples:
        >>> service = FollowService(analyzer, dispatcher, config)
        >>> report = await service.run_once("gpt-5")
        >>> report.count(DispatchStatus.EXECUTED)
        1
    """

    def __init__(
        self,
        analyzer: FollowAnalyzer,
        dispatcher: ExecutionDispatcher,
        config: Optional[FollowerConfig] = None,
        log_limit: int = 50,
    ):
        self.analyzer = analyzer
        self.dispatcher = dispatcher
        self.config = config or FollowerConfig()
        self.log_limit = log_limit
        self._apply_configuration()

    def _apply_configuration(self) -> None:
        self.analyzer.set_price_tolerance(self.config.price_tolerance)
        self.dispatcher.price_tolerance = self.config.price_tolerance
        self.dispatcher.risk_only = self.config.risk_only
        self.dispatcher.margin_type = self.config.margin_type
        shared_ledger = self.analyzer.history_ledger
        if self.dispatcher.ledger is not shared_ledger:
            if self.dispatcher.ledger is not None:
                logger.warning("Replacing dispatcher ledger with the analyzer's ledger")
            self.dispatcher.ledger = shared_ledger

        logger.info(f"Price tolerance set to {self.config.price_tolerance}%")
        logger.info(f"Margin type set to {self.config.margin_type.value}")
        if self.config.total_margin:
            logger.info(f"Total margin set to ${self.config.total_margin:.2f}")

    async def run_once(self, agent: Optional[str] = None) -> FollowRunReport:
        """
        Fetch and dispatch the agent's pending plans.

        ``agent`` defaults to the configured ``agent_name``. Never raises for
        analyzer failures; those produce a report with ``success=False``.

        Raises:
            ValueError: If no agent is given and none is configured
        """
        agent = agent or self.config.agent_name
        if not agent:
            raise ValueError("No agent to follow: pass one or set agent_name")

        report = FollowRunReport(agent=agent, success=True)

        with capture_logs(limit=self.log_limit) as captured:
            try:
                plans = await self.analyzer.follow_agent(agent)
            except Exception as e:
                logger.error(f"Failed to fetch follow plans for {agent}: {e}")
                report.success = False
                report.error = str(e)
                plans = []

            if report.success:
                logger.info(f"{len(plans)} follow plan(s) for {agent}")

            for index, plan in enumerate(plans):
                logger.info(f"{index + 1}. {plan.symbol} - {plan.action.value}")
                report.results.append(await self.dispatcher.dispatch(plan))

        report.logs = captured.lines
        return report


def create_follow_service(
    config: FollowerConfig,
    exchange: ExchangeFacade,
    analyzer: FollowAnalyzer,
    events: Optional[EventBus] = None,
) -> FollowService:
    """
    Wire the engine components for one exchange account.

    The dispatcher reuses the analyzer's ledger.
    """
    risk_manager = RiskManager(price_tolerance=config.price_tolerance)
    dispatcher = ExecutionDispatcher(
        exchange=exchange,
        risk_gate=RiskGate(risk_manager),
        sizer=PositionSizer(exchange, allocation_fraction=config.allocation_fraction),
        ledger=analyzer.history_ledger,
        events=events,
    )
    return FollowService(analyzer, dispatcher, config)


def create_event_bus(config: FollowerConfig) -> EventBus:
    """Event bus whose handler timeout is the per-plan deadline."""
    return EventBus(handler_timeout=config.plan_deadline_seconds)


def open_ledger(config: FollowerConfig, base: Optional[Path] = None) -> OrderHistoryLedger:
    """
    Open the configured ledger for an analyzer to own.

    Relative ``ledger_path`` values resolve against ``base`` (project root
    by default).
    """
    path = config.resolved_ledger_path(base)
    logger.debug(f"Opening order history ledger at {path}")
    return OrderHistoryLedger(path)


def create_exchange(config: FollowerConfig) -> BinanceFuturesExchange:
    """Binance futures adapter for the configured environment (not yet connected)."""
    return BinanceFuturesExchange(use_testnet=config.use_testnet)

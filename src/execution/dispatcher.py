"""
Execution Dispatcher for mirrored follow plans.

This module turns one FollowPlan into at most one follower order:

    RECEIVED -> SIZING -> EXECUTING_BRACKETED | EXECUTING_PLAIN
             -> RECORDING | DONE -> TERMINAL

- SIZING covers the ledger pre-check, the risk gate and position sizing;
  nothing has left the process yet, so cancellation here is harmless
- EXECUTING_* submits to the exchange: ENTER plans with a source position
  get a bracketed (stop-loss/take-profit) order, all others a plain order
- RECORDING writes the source order id to the ledger after a confirmed fill

Submission and recording run shielded from caller cancellation: once an
order has been sent it is out of the engine's control, and its ledger entry
must still be written. Plans for the same agent and symbol are serialized
because sizing reads the shared account balance.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger
from pydantic import BaseModel, Field

from ..core.event_bus import Event, EventBus, EventType
from ..core.models import (
    ExecutionResult,
    FollowAction,
    FollowPlan,
    MarginType,
    RiskAssessment,
    SizingOutcome,
    TradingPlan,
)
from ..core.order_history import LedgerError, LedgerWriteStatus, OrderHistoryLedger
from .exchange import ExchangeFacade
from .risk import RiskGate
from .sizing import PositionSizer


class DispatchState(str, Enum):
    RECEIVED = "RECEIVED"
    SIZING = "SIZING"
    EXECUTING_BRACKETED = "EXECUTING_BRACKETED"
    EXECUTING_PLAIN = "EXECUTING_PLAIN"
    RECORDING = "RECORDING"
    DONE = "DONE"
    TERMINAL = "TERMINAL"


class DispatchStatus(str, Enum):
    """Terminal outcome of one follow plan."""

    EXECUTED = "executed"
    FAILED = "failed"
    REJECTED_BY_RISK = "rejected_by_risk"
    RISK_ONLY = "risk_only"
    SKIPPED_DUPLICATE = "skipped_duplicate"


class DispatchResult(BaseModel):
    """
    Everything a caller needs to tell outcomes apart.

    Attributes:
        status: Terminal outcome
        states: Visited states, in order
        trading_plan: Follower order intent after sizing
        risk: Risk assessment, if the gate ran
        sizing: Sizing outcome, if sizing ran
        execution: Exchange result, if an order was submitted
        bracketed: True if the bracketed path was taken
        ledger_status: Ledger outcome for executed plans
        ledger_error: Ledger failure text, if the write failed
        error: Failure text for FAILED plans
    """

    status: DispatchStatus
    states: List[DispatchState] = Field(default_factory=list)
    trading_plan: TradingPlan
    risk: Optional[RiskAssessment] = None
    sizing: Optional[SizingOutcome] = None
    execution: Optional[ExecutionResult] = None
    bracketed: bool = False
    ledger_status: Optional[LedgerWriteStatus] = None
    ledger_error: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        """True if an order was placed, whatever happened in the ledger."""
        return self.status == DispatchStatus.EXECUTED

    @property
    def degraded(self) -> bool:
        """True if sizing fell back to the source quantity."""
        return bool(self.sizing and self.sizing.degraded)

    @property
    def ledger_write_failed(self) -> bool:
        """Trade executed but its ledger entry could not be written."""
        return self.ledger_status == LedgerWriteStatus.FAILED


@dataclass
class _DispatchRun:
    follow_plan: FollowPlan
    trading_plan: TradingPlan
    states: List[DispatchState] = field(default_factory=lambda: [DispatchState.RECEIVED])
    risk: Optional[RiskAssessment] = None
    sizing: Optional[SizingOutcome] = None
    bracketed: bool = False

    def finish(self, status: DispatchStatus, **kwargs) -> DispatchResult:
        self.states.append(DispatchState.TERMINAL)
        return DispatchResult(
            status=status,
            states=self.states,
            trading_plan=self.trading_plan,
            risk=self.risk,
            sizing=self.sizing,
            bracketed=self.bracketed,
            **kwargs,
        )


class ExecutionDispatcher:
    """
    Processes follow plans end to end: gate, size, submit, record.

    Attributes:
        exchange (ExchangeFacade): Order submission capability
        risk_gate (RiskGate): Chooses and runs the risk assessment
        sizer (PositionSizer): Sizes the follower order
        ledger (OrderHistoryLedger): Shared idempotency ledger, optional
        events (EventBus): Outcome event channel, optional
        risk_only (bool): Assess but never submit
        price_tolerance (float): Drift tolerance override for the risk gate
        margin_type (MarginType): Margin mode override for every order, optional

    Examples:
        >>> dispatcher = ExecutionDispatcher(
        ...     exchange, RiskGate(RiskManager()), PositionSizer(exchange),
        ...     ledger=analyzer.history_ledger,
        ... )
        >>> result = await dispatcher.dispatch(plan)
        >>> result.status
        <DispatchStatus.EXECUTED: 'executed'>
    """

    def __init__(
        self,
        exchange: ExchangeFacade,
        risk_gate: RiskGate,
        sizer: PositionSizer,
        ledger: Optional[OrderHistoryLedger] = None,
        events: Optional[EventBus] = None,
        risk_only: bool = False,
        price_tolerance: Optional[float] = None,
        margin_type: Optional[MarginType] = None,
    ):
        self.exchange = exchange
        self.risk_gate = risk_gate
        self.sizer = sizer
        self.ledger = ledger
        self.events = events
        self.risk_only = risk_only
        self.price_tolerance = price_tolerance
        self.margin_type = margin_type
        # Entries exist only while a plan for the key holds or awaits the lock
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._lock_users: Dict[Tuple[str, str], int] = {}

    async def _acquire(self, key: Tuple[str, str]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._forget(key)
            raise
        return lock

    def _release(self, key: Tuple[str, str], lock: asyncio.Lock) -> None:
        lock.release()
        self._forget(key)

    def _forget(self, key: Tuple[str, str]) -> None:
        users = self._lock_users[key] - 1
        if users:
            self._lock_users[key] = users
        else:
            del self._lock_users[key]
            del self._locks[key]

    async def dispatch(self, follow_plan: FollowPlan) -> DispatchResult:
        """
        Process one follow plan.

        Never raises for exchange, sizing or ledger problems; those are
        reported on the returned DispatchResult. Cancellation before
        submission propagates and places no order.
        """
        run = _DispatchRun(
            follow_plan=follow_plan,
            trading_plan=TradingPlan.from_follow_plan(follow_plan),
        )
        logger.info(
            f"Processing {follow_plan.action.value} {follow_plan.symbol} "
            f"({follow_plan.side.value}) from {follow_plan.agent}: {follow_plan.reason}"
        )

        if self.margin_type is not None:
            run.trading_plan.margin_type = self.margin_type

        key = (follow_plan.agent, follow_plan.symbol)
        lock = await self._acquire(key)
        handed_off = False
        try:
            early = await self._prepare(run)
            if early is not None:
                return early

            submission = asyncio.ensure_future(self._submit_and_record(run))
            submission.add_done_callback(lambda _: self._release(key, lock))
            handed_off = True
            try:
                return await asyncio.shield(submission)
            except asyncio.CancelledError:
                logger.warning(
                    f"Caller cancelled {run.trading_plan.id} after submission started; "
                    f"order submission and recording continue"
                )
                raise
        finally:
            if not handed_off:
                self._release(key, lock)

    async def _prepare(self, run: _DispatchRun) -> Optional[DispatchResult]:
        """Run every pre-submission step; return a result if the plan ends here."""
        plan = run.follow_plan
        run.states.append(DispatchState.SIZING)

        try:
            if await self._already_processed(plan):
                logger.info(
                    f"Source order {plan.source_order_id} already processed, skipping"
                )
                return run.finish(DispatchStatus.SKIPPED_DUPLICATE)

            run.risk = self.risk_gate.assess(plan, run.trading_plan, self.price_tolerance)
            await self._notify(EventType.RISK_ASSESSED, {
                "plan_id": run.trading_plan.id,
                "symbol": plan.symbol,
                "is_valid": run.risk.is_valid,
                "risk_score": run.risk.risk_score,
                "warnings": list(run.risk.warnings),
            })

            if not run.risk.is_valid:
                logger.warning(
                    f"Risk gate rejected {run.trading_plan.id}: {', '.join(run.risk.warnings)}"
                )
                return run.finish(DispatchStatus.REJECTED_BY_RISK)

            if self.risk_only:
                logger.info(f"Risk-only mode, not executing {run.trading_plan.id}")
                return run.finish(DispatchStatus.RISK_ONLY)

            run.sizing = await self.sizer.apply(run.trading_plan, plan)
        except LedgerError as e:
            logger.error(f"Ledger unavailable, refusing to execute {run.trading_plan.id}: {e}")
            return run.finish(DispatchStatus.FAILED, error=str(e))
        except Exception as e:
            logger.error(f"Failed to prepare {run.trading_plan.id}: {e}")
            await self._publish_error(e, "prepare")
            return run.finish(DispatchStatus.FAILED, error=f"{type(e).__name__}: {e}")

        if run.trading_plan.quantity <= 0:
            error = f"Refusing to submit non-positive quantity {run.trading_plan.quantity}"
            logger.error(f"{run.trading_plan.id}: {error}")
            return run.finish(DispatchStatus.FAILED, error=error)

        return None

    async def _already_processed(self, plan: FollowPlan) -> bool:
        if plan.action != FollowAction.ENTER or self.ledger is None:
            return False
        source_id = plan.source_order_id
        if not source_id:
            return False
        try:
            return await asyncio.to_thread(self.ledger.is_processed, source_id)
        except Exception as e:
            raise LedgerError(f"Failed to read ledger for {source_id}: {e}") from e

    async def _submit_and_record(self, run: _DispatchRun) -> DispatchResult:
        plan = run.follow_plan
        trading_plan = run.trading_plan
        run.bracketed = plan.action == FollowAction.ENTER and plan.position is not None

        try:
            if run.bracketed:
                run.states.append(DispatchState.EXECUTING_BRACKETED)
                logger.info("Setting up stop orders based on exit plan...")
                result = await self.exchange.execute_plan_with_stop_orders(
                    trading_plan, plan.position
                )
            else:
                run.states.append(DispatchState.EXECUTING_PLAIN)
                result = await self.exchange.execute_plan(trading_plan)
        except Exception as e:
            logger.error(f"Exchange raised while executing {trading_plan.id}: {e}")
            result = ExecutionResult(success=False, error=f"{type(e).__name__}: {e}")

        if not result.success:
            logger.error(f"Trade execution failed: {result.error}")
            await self._notify(EventType.EXECUTION_FAILED, {
                "plan_id": trading_plan.id,
                "symbol": trading_plan.symbol,
                "error": result.error,
            })
            return run.finish(DispatchStatus.FAILED, execution=result, error=result.error)

        logger.info(f"Trade executed successfully! Order ID: {result.order_id}")
        if result.take_profit_order_id:
            logger.info(f"Take Profit Order ID: {result.take_profit_order_id}")
        if result.stop_loss_order_id:
            logger.info(f"Stop Loss Order ID: {result.stop_loss_order_id}")

        await self._notify(EventType.ORDER_PLACED, {
            "plan_id": trading_plan.id,
            "symbol": trading_plan.symbol,
            "side": trading_plan.side.value,
            "quantity": trading_plan.quantity,
            "order_id": result.order_id,
            "take_profit_order_id": result.take_profit_order_id,
            "stop_loss_order_id": result.stop_loss_order_id,
            "bracketed": run.bracketed,
        })

        ledger_status, ledger_error = await self._record(run, result)
        run.states.append(DispatchState.DONE)
        return run.finish(
            DispatchStatus.EXECUTED,
            execution=result,
            ledger_status=ledger_status,
            ledger_error=ledger_error,
        )

    def _missing_ledger_precondition(
        self,
        plan: FollowPlan,
        result: ExecutionResult,
    ) -> Optional[str]:
        if self.ledger is None:
            return "ledger is missing"
        if plan.action != FollowAction.ENTER:
            return f"action is {plan.action.value}, only ENTER is recorded"
        if not plan.source_order_id:
            return f"entry_oid is missing (position: {plan.position is not None})"
        if not result.order_id:
            return "orderId is missing"
        return None

    async def _record(
        self,
        run: _DispatchRun,
        result: ExecutionResult,
    ) -> Tuple[LedgerWriteStatus, Optional[str]]:
        plan = run.follow_plan

        missing = self._missing_ledger_precondition(plan, result)
        if missing is not None:
            logger.debug(f"Order history not saved: {missing}")
            return LedgerWriteStatus.SKIPPED, None

        run.states.append(DispatchState.RECORDING)
        logger.info(f"Saving order to history: {plan.symbol} (OID: {plan.source_order_id})")

        try:
            status = await asyncio.to_thread(
                self.ledger.record,
                plan.source_order_id,
                plan.symbol,
                plan.agent,
                plan.side,
                plan.quantity,
                plan.entry_price,
                result.order_id,
            )
        except Exception as e:
            logger.error(
                f"Trade executed (order {result.order_id}) but ledger write failed "
                f"for source order {plan.source_order_id}: {e}"
            )
            await self._notify(EventType.LEDGER_WRITE_FAILED, {
                "plan_id": run.trading_plan.id,
                "source_order_id": plan.source_order_id,
                "order_id": result.order_id,
                "error": str(e),
            })
            return LedgerWriteStatus.FAILED, str(e)

        event_type = (
            EventType.LEDGER_DUPLICATE
            if status == LedgerWriteStatus.DUPLICATE
            else EventType.LEDGER_RECORDED
        )
        await self._notify(event_type, {
            "plan_id": run.trading_plan.id,
            "source_order_id": plan.source_order_id,
            "order_id": result.order_id,
        })
        return status, None

    async def _notify(self, event_type: EventType, data: Dict[str, Any]) -> None:
        if self.events is None:
            return
        try:
            await self.events.notify(
                Event(event_type=event_type, data=data, source="ExecutionDispatcher")
            )
        except Exception as e:
            logger.error(f"Failed to publish {event_type.value}: {e}")

    async def _publish_error(self, error: Exception, context: str) -> None:
        await self._notify(EventType.ERROR, {
            "error_type": type(error).__name__,
            "error_message": str(error),
            "component": "ExecutionDispatcher",
            "context": context,
        })

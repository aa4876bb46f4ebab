"""
Pytest configuration and shared fixtures for the follow engine tests.

This module provides:
- FakeExchange: in-memory ExchangeFacade with scriptable failures
- Follow plan factories and a temporary ledger
"""

from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Optional, Tuple

import pytest

from src.core.models import ExecutionResult, FollowPlan, SourcePosition, TradingPlan
from src.core.order_history import OrderHistoryLedger
from src.execution.exchange import ExchangeFacade


class FakeExchange(ExchangeFacade):
    """
    In-memory exchange account.

    Any of ``account``, ``symbol_info`` and ``ticker`` may be set to an
    Exception instance to make the corresponding lookup fail.
    """

    def __init__(
        self,
        available_balance: str = "1000",
        min_qty: str = "0.001",
        step_size: str = "0.001",
        last_price: str = "50000",
        quantity_decimals: int = 3,
    ):
        self.account: Any = {"availableBalance": available_balance}
        self.symbol_info: Any = {
            "symbol": "BTCUSDT",
            "filters": [
                {"filterType": "PRICE_FILTER", "tickSize": "0.10"},
                {"filterType": "LOT_SIZE", "minQty": min_qty, "stepSize": step_size},
            ],
        }
        self.ticker: Any = {"lastPrice": last_price}
        self.quantity_decimals = quantity_decimals
        self.execute_error: Optional[str] = None
        self.execute_exception: Optional[Exception] = None
        self.order_id_override: Any = "unset"
        self.submissions: List[Tuple[str, TradingPlan]] = []
        self.lookups: List[str] = []
        self._next_order_id = 1000

    @staticmethod
    def _answer(value):
        if isinstance(value, Exception):
            raise value
        return value

    async def get_account_info(self) -> Dict[str, Any]:
        self.lookups.append("account")
        return self._answer(self.account)

    async def get_symbol_info(self, symbol: str) -> Dict[str, Any]:
        self.lookups.append(f"symbol_info:{symbol}")
        return self._answer(self.symbol_info)

    async def get_24hr_ticker(self, symbol: str) -> Dict[str, Any]:
        self.lookups.append(f"ticker:{symbol}")
        return self._answer(self.ticker)

    def format_quantity(self, value: float, symbol: str) -> str:
        quantum = Decimal(1).scaleb(-self.quantity_decimals)
        return format(Decimal(str(value)).quantize(quantum, rounding=ROUND_DOWN), "f")

    def _result(self) -> ExecutionResult:
        if self.execute_exception is not None:
            raise self.execute_exception
        if self.execute_error is not None:
            return ExecutionResult(success=False, error=self.execute_error)
        self._next_order_id += 1
        order_id = self._next_order_id if self.order_id_override == "unset" else self.order_id_override
        return ExecutionResult(success=True, order_id=order_id)

    async def execute_plan(self, plan: TradingPlan) -> ExecutionResult:
        self.submissions.append(("plain", plan.model_copy()))
        return self._result()

    async def execute_plan_with_stop_orders(
        self,
        plan: TradingPlan,
        position: SourcePosition,
    ) -> ExecutionResult:
        self.submissions.append(("bracketed", plan.model_copy()))
        result = self._result()
        if result.success:
            result.take_profit_order_id = "tp-1" if position.exit_plan.profit_target else None
            result.stop_loss_order_id = "sl-1" if position.exit_plan.stop_loss else None
        return result


@pytest.fixture
def fake_exchange() -> FakeExchange:
    """Exchange with $1000 available, BTCUSDT at $50,000, 0.001 lots."""
    return FakeExchange()


@pytest.fixture
def ledger(tmp_path) -> OrderHistoryLedger:
    """Fresh ledger in a temporary directory."""
    return OrderHistoryLedger(tmp_path / "ledger" / "order_history.db")


@pytest.fixture
def make_follow_plan():
    """Factory for FollowPlans; defaults describe a BTCUSDT long entry."""

    def _make(
        action: str = "ENTER",
        with_position: bool = True,
        entry_oid: Optional[str] = "abc123",
        current_price: float = 50000.0,
        **overrides,
    ) -> FollowPlan:
        fields = {
            "agent": "gpt-5",
            "symbol": "BTCUSDT",
            "action": action,
            "side": "LONG",
            "quantity": 0.5,
            "leverage": 10,
            "entry_price": 50000.0,
            "reason": "New position detected",
            "timestamp": 1700000000000,
        }
        if with_position:
            fields["position"] = {
                "symbol": "BTCUSDT",
                "quantity": 0.5,
                "entry_price": 50000.0,
                "current_price": current_price,
                "leverage": 10,
                "entry_oid": entry_oid,
                "exit_plan": {"profit_target": 52000.0, "stop_loss": 48000.0},
            }
        fields.update(overrides)
        return FollowPlan(**fields)

    return _make

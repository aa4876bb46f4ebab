"""
Exchange capability interface used by the execution engine.

The sizing and dispatch components only ever talk to an exchange through
this interface; they never reach into a client's private attributes.
``BinanceFuturesExchange`` is the production implementation; tests use
in-memory fakes.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict

from ..core.models import ExecutionResult, SourcePosition, TradingPlan


class ExchangeError(Exception):
    """
    Raised by exchange adapters for failed lookups.

    Order submission does not raise it: submission failures are reported
    through ``ExecutionResult(success=False, error=...)``.
    """
    pass


class ExchangeFacade(ABC):
    """
    Account, market-rule, price and order capabilities of one exchange account.

    Methods:
        get_account_info: ``{"availableBalance": ...}`` of the futures wallet
        get_symbol_info: Symbol rules, ``{"filters": [{"filterType", "minQty", "stepSize"}, ...]}``
        get_24hr_ticker: ``{"lastPrice": ...}`` (or ``{"price": ...}``)
        format_quantity: Render a quantity with the symbol's precision
        execute_plan: Submit a plain order
        execute_plan_with_stop_orders: Submit entry plus stop-loss/take-profit
    """

    @abstractmethod
    async def get_account_info(self) -> Dict[str, Any]:
        """Return account data including ``availableBalance``."""

    @abstractmethod
    async def get_symbol_info(self, symbol: str) -> Dict[str, Any]:
        """Return the symbol's exchange rules including ``filters``."""

    @abstractmethod
    async def get_24hr_ticker(self, symbol: str) -> Dict[str, Any]:
        """Return 24h ticker statistics including ``lastPrice``."""

    @abstractmethod
    def format_quantity(self, value: float, symbol: str) -> str:
        """Render ``value`` to the decimal precision the exchange accepts."""

    @abstractmethod
    async def execute_plan(self, plan: TradingPlan) -> ExecutionResult:
        """Submit ``plan`` as a single order."""

    @abstractmethod
    async def execute_plan_with_stop_orders(
        self,
        plan: TradingPlan,
        position: SourcePosition,
    ) -> ExecutionResult:
        """Submit ``plan`` plus stop-loss/take-profit from ``position.exit_plan``."""

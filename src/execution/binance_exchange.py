"""
Binance USDT-M futures adapter for the ExchangeFacade.

This module wires python-binance's AsyncClient to the capabilities the
execution engine needs: wallet balance, symbol rules, ticker price, and
order submission with optional stop-loss/take-profit brackets.

Security Features:
    - Separate testnet/mainnet credential handling (see core.config)
    - Credentials are never logged

Architecture:
    - Async/await patterns for non-blocking I/O
    - Async context manager for automatic connection cleanup
    - Exchange info cached per connection (symbol rules rarely change)
"""

from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, Optional

from loguru import logger
from binance import AsyncClient
from binance.exceptions import BinanceAPIException

from ..core.config import load_credentials
from ..core.models import ExecutionResult, SourcePosition, TradingPlan
from .exchange import ExchangeError, ExchangeFacade


# Binance: "No need to change margin type."
_MARGIN_TYPE_UNCHANGED = -4046


def _decimals_of(value: str) -> int:
    exponent = Decimal(value).normalize().as_tuple().exponent
    return max(0, -exponent)


class BinanceFuturesExchange(ExchangeFacade):
    """
    ExchangeFacade over Binance USDT-M futures.

    Attributes:
        client (AsyncClient): python-binance async client, set on connect()
        use_testnet (bool): Whether the testnet endpoints are used

    Examples:
        >>> async with BinanceFuturesExchange(use_testnet=True) as exchange:
        ...     info = await exchange.get_account_info()
        ...     info["availableBalance"]
        '1000.00000000'
    """

    def __init__(self, client: Optional[AsyncClient] = None, use_testnet: bool = True):
        """
        Args:
            client: Already-created AsyncClient. When omitted, connect()
                creates one from environment credentials.
            use_testnet: Select testnet credentials and endpoints
        """
        self.client = client
        self.use_testnet = use_testnet
        self._symbols: Optional[Dict[str, Dict[str, Any]]] = None
        self._owns_client = client is None

    async def connect(self) -> None:
        """
        Create the AsyncClient from environment credentials.

        Raises:
            CredentialError: If credentials are missing or placeholders
            ExchangeError: If the client cannot be created
        """
        if self.client is not None:
            return

        api_key, api_secret = load_credentials(self.use_testnet)
        env_name = "testnet" if self.use_testnet else "mainnet"

        try:
            self.client = await AsyncClient.create(
                api_key=api_key,
                api_secret=api_secret,
                testnet=self.use_testnet
            )
        except Exception as e:
            logger.error(f"Failed to connect to Binance {env_name}: {e}")
            raise ExchangeError(f"Binance connection failed: {e}") from e

        self._owns_client = True
        logger.info(f"Connected to Binance futures {env_name}")

    async def disconnect(self) -> None:
        """Close the client if this adapter created it. Safe to call twice."""
        if self.client is not None and self._owns_client:
            await self.client.close_connection()
            logger.info("Disconnected from Binance futures")
        self.client = None
        self._symbols = None

    async def __aenter__(self) -> "BinanceFuturesExchange":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    def _require_client(self) -> AsyncClient:
        if self.client is None:
            raise ExchangeError("Exchange is not connected. Call connect() first.")
        return self.client

    async def get_account_info(self) -> Dict[str, Any]:
        client = self._require_client()
        try:
            return await client.futures_account()
        except BinanceAPIException as e:
            raise ExchangeError(f"Failed to fetch futures account: {e.message}") from e

    async def _load_symbols(self) -> Dict[str, Dict[str, Any]]:
        if self._symbols is None:
            client = self._require_client()
            try:
                info = await client.futures_exchange_info()
            except BinanceAPIException as e:
                raise ExchangeError(f"Failed to fetch exchange info: {e.message}") from e
            self._symbols = {s["symbol"]: s for s in info.get("symbols", [])}
            logger.debug(f"Cached exchange info for {len(self._symbols)} symbols")
        return self._symbols

    async def get_symbol_info(self, symbol: str) -> Dict[str, Any]:
        symbols = await self._load_symbols()
        info = symbols.get(symbol.upper())
        if info is None:
            raise ExchangeError(f"Unknown futures symbol: {symbol}")
        return info

    async def get_24hr_ticker(self, symbol: str) -> Dict[str, Any]:
        client = self._require_client()
        try:
            return await client.futures_ticker(symbol=symbol.upper())
        except BinanceAPIException as e:
            raise ExchangeError(f"Failed to fetch ticker for {symbol}: {e.message}") from e

    def _cached_symbol(self, symbol: str) -> Optional[Dict[str, Any]]:
        if self._symbols is None:
            return None
        return self._symbols.get(symbol.upper())

    def _quantity_decimals(self, symbol: str) -> int:
        info = self._cached_symbol(symbol)
        if info is None:
            return 8
        if "quantityPrecision" in info:
            return int(info["quantityPrecision"])
        for f in info.get("filters", []):
            if f.get("filterType") == "LOT_SIZE" and f.get("stepSize"):
                return _decimals_of(str(f["stepSize"]))
        return 8

    def _price_decimals(self, symbol: str) -> int:
        info = self._cached_symbol(symbol)
        if info is None:
            return 8
        if "pricePrecision" in info:
            return int(info["pricePrecision"])
        return 8

    def format_quantity(self, value: float, symbol: str) -> str:
        """
        Truncate ``value`` to the symbol's quantity precision.

        Truncation (not rounding) keeps the rendered quantity at or below
        the computed one.

        Examples:
            >>> exchange.format_quantity(0.123456, "BTCUSDT")  # precision 3
            '0.123'
        """
        decimals = self._quantity_decimals(symbol)
        quantum = Decimal(1).scaleb(-decimals)
        rendered = Decimal(str(value)).quantize(quantum, rounding=ROUND_DOWN)
        return format(rendered, "f")

    def _format_price(self, value: float, symbol: str) -> str:
        decimals = self._price_decimals(symbol)
        quantum = Decimal(1).scaleb(-decimals)
        return format(Decimal(str(value)).quantize(quantum), "f")

    async def _prepare_account(self, plan: TradingPlan) -> None:
        """Apply margin type and leverage for the plan's symbol."""
        client = self._require_client()
        try:
            await client.futures_change_margin_type(
                symbol=plan.symbol, marginType=plan.margin_type.value
            )
        except BinanceAPIException as e:
            if e.code != _MARGIN_TYPE_UNCHANGED:
                raise
        await client.futures_change_leverage(
            symbol=plan.symbol, leverage=int(plan.leverage)
        )

    async def execute_plan(self, plan: TradingPlan) -> ExecutionResult:
        """
        Submit ``plan`` as a single market order.

        Returns:
            ExecutionResult with the exchange order id, or the exchange's
            error text on rejection
        """
        try:
            client = self._require_client()
            await self._load_symbols()
            await self._prepare_account(plan)
            order = await client.futures_create_order(
                symbol=plan.symbol,
                side=plan.side.value,
                type=plan.type.value,
                quantity=self.format_quantity(plan.quantity, plan.symbol),
                newClientOrderId=self._client_order_id(plan),
            )
        except BinanceAPIException as e:
            logger.error(f"Binance rejected order {plan.id}: {e.message}")
            return ExecutionResult(success=False, error=e.message)
        except ExchangeError as e:
            return ExecutionResult(success=False, error=str(e))

        logger.info(
            f"Placed {plan.side.value} {plan.type.value} order {order.get('orderId')}: "
            f"{plan.quantity} {plan.symbol} ({plan.leverage}x)"
        )
        return ExecutionResult(success=True, order_id=order.get("orderId"))

    async def execute_plan_with_stop_orders(
        self,
        plan: TradingPlan,
        position: SourcePosition,
    ) -> ExecutionResult:
        """
        Submit the entry order, then close-position stop-loss/take-profit orders.

        Bracket legs come from ``position.exit_plan``. A failed bracket leg
        does not fail the result: the entry order is already live, so the
        leg's id is left empty and the failure is logged.
        """
        result = await self.execute_plan(plan)
        if not result.success:
            return result

        exit_plan = position.exit_plan
        close_side = plan.side.opposite

        if exit_plan.profit_target:
            result.take_profit_order_id = await self._place_close_order(
                plan, close_side, "TAKE_PROFIT_MARKET", exit_plan.profit_target
            )
        if exit_plan.stop_loss:
            result.stop_loss_order_id = await self._place_close_order(
                plan, close_side, "STOP_MARKET", exit_plan.stop_loss
            )

        return result

    async def _place_close_order(
        self,
        plan: TradingPlan,
        side,
        order_type: str,
        stop_price: float,
    ) -> Optional[str]:
        client = self._require_client()
        try:
            order = await client.futures_create_order(
                symbol=plan.symbol,
                side=side.value,
                type=order_type,
                stopPrice=self._format_price(stop_price, plan.symbol),
                closePosition="true",
                workingType="MARK_PRICE",
            )
        except BinanceAPIException as e:
            logger.warning(
                f"Failed to place {order_type} for {plan.symbol} @ {stop_price}: {e.message}"
            )
            return None
        except Exception as e:
            # Entry order is already live; a lost leg must not fail it
            logger.warning(
                f"Failed to place {order_type} for {plan.symbol} @ {stop_price}: "
                f"{type(e).__name__}: {e}"
            )
            return None

        order_id = order.get("orderId")
        logger.info(f"Placed {order_type} {order_id} for {plan.symbol} @ {stop_price}")
        return str(order_id) if order_id is not None else None

    @staticmethod
    def _client_order_id(plan: TradingPlan) -> str:
        # Binance limits client order ids to 36 chars of [.A-Z:/a-z0-9_-]
        raw = "".join(c if c.isalnum() or c in "._-" else "_" for c in plan.id)
        return raw[-36:]

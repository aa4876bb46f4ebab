"""
Unit tests for the Binance futures adapter.

The python-binance AsyncClient is replaced by an AsyncMock; tests check
the requests the adapter sends and how exchange errors are mapped.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
from binance.exceptions import BinanceAPIException, BinanceRequestException

from src.core.models import ExitPlan, SourcePosition, TradingPlan
from src.core.order_history import LedgerWriteStatus
from src.execution import binance_exchange
from src.execution.binance_exchange import BinanceFuturesExchange
from src.execution.dispatcher import DispatchStatus, ExecutionDispatcher
from src.execution.exchange import ExchangeError
from src.execution.risk import RiskGate, RiskManager
from src.execution.sizing import PositionSizer


EXCHANGE_INFO = {
    "symbols": [
        {
            "symbol": "BTCUSDT",
            "quantityPrecision": 3,
            "pricePrecision": 2,
            "filters": [
                {"filterType": "LOT_SIZE", "minQty": "0.001", "stepSize": "0.001"},
            ],
        },
        {
            "symbol": "DOGEUSDT",
            "filters": [
                {"filterType": "LOT_SIZE", "minQty": "1", "stepSize": "1"},
            ],
        },
    ]
}


def _api_error(code: int, msg: str) -> BinanceAPIException:
    return BinanceAPIException(Mock(), 400, f'{{"code": {code}, "msg": "{msg}"}}')


@pytest.fixture
def client():
    client = AsyncMock()
    client.futures_exchange_info.return_value = EXCHANGE_INFO
    client.futures_account.return_value = {"availableBalance": "1000.00000000"}
    client.futures_ticker.return_value = {"symbol": "BTCUSDT", "lastPrice": "50000.10"}
    client.futures_create_order.side_effect = [
        {"orderId": 111},
        {"orderId": 222},
        {"orderId": 333},
    ]
    return client


@pytest.fixture
def exchange(client):
    return BinanceFuturesExchange(client=client)


@pytest.fixture
def plan():
    return TradingPlan(
        id="gpt-5_BTCUSDT_abc123",
        symbol="BTCUSDT",
        side="BUY",
        quantity=0.04,
        leverage=10,
        timestamp=1700000000000,
        source_order_id="abc123",
    )


@pytest.fixture
def position():
    return SourcePosition(
        symbol="BTCUSDT",
        quantity=0.5,
        entry_price=50000.0,
        current_price=50000.0,
        leverage=10,
        entry_oid="abc123",
        exit_plan=ExitPlan(profit_target=52000.0, stop_loss=48000.0),
    )


class TestMarketData:
    """Test account, symbol and ticker lookups."""

    @pytest.mark.asyncio
    async def test_account_info(self, exchange, client):
        """Test the futures account is returned as-is."""
        info = await exchange.get_account_info()
        assert info["availableBalance"] == "1000.00000000"
        client.futures_account.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_symbol_info_is_cached(self, exchange, client):
        """Test exchange info is fetched once per connection."""
        await exchange.get_symbol_info("BTCUSDT")
        info = await exchange.get_symbol_info("btcusdt")

        assert info["symbol"] == "BTCUSDT"
        client.futures_exchange_info.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_symbol(self, exchange):
        """Test an unlisted symbol raises ExchangeError."""
        with pytest.raises(ExchangeError, match="Unknown futures symbol"):
            await exchange.get_symbol_info("FOOUSDT")

    @pytest.mark.asyncio
    async def test_ticker(self, exchange, client):
        """Test the 24h ticker is requested for the upper-cased symbol."""
        ticker = await exchange.get_24hr_ticker("btcusdt")

        assert ticker["lastPrice"] == "50000.10"
        client.futures_ticker.assert_awaited_once_with(symbol="BTCUSDT")

    @pytest.mark.asyncio
    async def test_api_error_mapped(self, exchange, client):
        """Test API errors surface as ExchangeError."""
        client.futures_account.side_effect = _api_error(-2015, "Invalid API-key")

        with pytest.raises(ExchangeError, match="Invalid API-key"):
            await exchange.get_account_info()

    @pytest.mark.asyncio
    async def test_requires_connection(self):
        """Test lookups before connect() raise ExchangeError."""
        with pytest.raises(ExchangeError, match="not connected"):
            await BinanceFuturesExchange().get_account_info()


class TestFormatQuantity:
    """Test quantity rendering."""

    @pytest.mark.asyncio
    async def test_truncates_to_quantity_precision(self, exchange):
        """Test quantities are truncated, never rounded up."""
        await exchange.get_symbol_info("BTCUSDT")

        assert exchange.format_quantity(0.123999, "BTCUSDT") == "0.123"
        assert exchange.format_quantity(0.04, "BTCUSDT") == "0.040"

    @pytest.mark.asyncio
    async def test_falls_back_to_step_size(self, exchange):
        """Test symbols without quantityPrecision use the step size decimals."""
        await exchange.get_symbol_info("DOGEUSDT")

        assert exchange.format_quantity(123.9, "DOGEUSDT") == "123"

    def test_unknown_symbol_keeps_eight_decimals(self, exchange):
        """Test formatting before symbols are loaded."""
        assert exchange.format_quantity(0.123456789, "BTCUSDT") == "0.12345678"


class TestExecutePlan:
    """Test order submission."""

    @pytest.mark.asyncio
    async def test_market_order(self, exchange, client, plan):
        """Test margin type, leverage and the market order request."""
        await exchange.get_symbol_info("BTCUSDT")

        result = await exchange.execute_plan(plan)

        assert result.success is True
        assert result.order_id == "111"
        client.futures_change_margin_type.assert_awaited_once_with(
            symbol="BTCUSDT", marginType="CROSSED"
        )
        client.futures_change_leverage.assert_awaited_once_with(symbol="BTCUSDT", leverage=10)
        client.futures_create_order.assert_awaited_once_with(
            symbol="BTCUSDT",
            side="BUY",
            type="MARKET",
            quantity="0.040",
            newClientOrderId="gpt-5_BTCUSDT_abc123",
        )

    @pytest.mark.asyncio
    async def test_margin_type_unchanged_ignored(self, exchange, client, plan):
        """Test 'no need to change margin type' is not an error."""
        client.futures_change_margin_type.side_effect = _api_error(
            -4046, "No need to change margin type."
        )

        result = await exchange.execute_plan(plan)

        assert result.success is True

    @pytest.mark.asyncio
    async def test_order_rejected(self, exchange, client, plan):
        """Test an order rejection becomes a failed result."""
        client.futures_create_order.side_effect = _api_error(-2019, "Margin is insufficient.")

        result = await exchange.execute_plan(plan)

        assert result.success is False
        assert result.error == "Margin is insufficient."

    @pytest.mark.asyncio
    async def test_not_connected_is_failed_result(self, plan):
        """Test submission without a client fails without raising."""
        result = await BinanceFuturesExchange().execute_plan(plan)

        assert result.success is False
        assert "not connected" in result.error

    @pytest.mark.asyncio
    async def test_fresh_adapter_uses_symbol_precision(self, exchange, client, plan):
        """Test the first plain order loads exchange info before formatting."""
        plan.quantity = 50 * 5 / 2100

        result = await exchange.execute_plan(plan)

        assert result.success is True
        client.futures_exchange_info.assert_awaited_once()
        assert client.futures_create_order.await_args.kwargs["quantity"] == "0.119"

    @pytest.mark.asyncio
    async def test_exchange_info_failure_is_failed_result(self, exchange, client, plan):
        """Test an exchange info error fails the plan before any order."""
        client.futures_exchange_info.side_effect = _api_error(-1003, "Too many requests.")

        result = await exchange.execute_plan(plan)

        assert result.success is False
        assert "Too many requests." in result.error
        client.futures_create_order.assert_not_awaited()

    def test_client_order_id_sanitized(self, plan):
        """Test long or exotic plan ids fit Binance's client order id rules."""
        plan.id = "agent with spaces_BTCUSDT_" + "9" * 40
        client_id = BinanceFuturesExchange._client_order_id(plan)

        assert len(client_id) == 36
        assert " " not in client_id


class TestExecuteWithStopOrders:
    """Test bracketed submission."""

    @pytest.mark.asyncio
    async def test_entry_then_close_orders(self, exchange, client, plan, position):
        """Test take-profit and stop-loss close the position on the opposite side."""
        await exchange.get_symbol_info("BTCUSDT")

        result = await exchange.execute_plan_with_stop_orders(plan, position)

        assert result.success is True
        assert result.order_id == "111"
        assert result.take_profit_order_id == "222"
        assert result.stop_loss_order_id == "333"

        tp_call, sl_call = client.futures_create_order.await_args_list[1:]
        assert tp_call.kwargs == {
            "symbol": "BTCUSDT",
            "side": "SELL",
            "type": "TAKE_PROFIT_MARKET",
            "stopPrice": "52000.00",
            "closePosition": "true",
            "workingType": "MARK_PRICE",
        }
        assert sl_call.kwargs["type"] == "STOP_MARKET"
        assert sl_call.kwargs["stopPrice"] == "48000.00"

    @pytest.mark.asyncio
    async def test_failed_leg_keeps_entry(self, exchange, client, plan, position):
        """Test a rejected bracket leg leaves the entry order successful."""
        client.futures_create_order.side_effect = [
            {"orderId": 111},
            _api_error(-2021, "Order would immediately trigger."),
            {"orderId": 333},
        ]

        result = await exchange.execute_plan_with_stop_orders(plan, position)

        assert result.success is True
        assert result.take_profit_order_id is None
        assert result.stop_loss_order_id == "333"

    @pytest.mark.asyncio
    async def test_leg_network_error_keeps_entry(self, exchange, client, plan, position):
        """Test a transport error on a bracket leg leaves the entry successful."""
        client.futures_create_order.side_effect = [
            {"orderId": 111},
            BinanceRequestException("connection reset"),
            asyncio.TimeoutError(),
        ]

        result = await exchange.execute_plan_with_stop_orders(plan, position)

        assert result.success is True
        assert result.order_id == "111"
        assert result.take_profit_order_id is None
        assert result.stop_loss_order_id is None

    @pytest.mark.asyncio
    async def test_leg_network_error_is_recorded_once(
        self, exchange, client, ledger, make_follow_plan
    ):
        """Test a retried plan whose legs failed is skipped, not re-entered."""
        client.futures_create_order.side_effect = [
            {"orderId": 111},
            BinanceRequestException("connection reset"),
            BinanceRequestException("connection reset"),
        ]
        dispatcher = ExecutionDispatcher(
            exchange, RiskGate(RiskManager()), PositionSizer(exchange), ledger=ledger
        )

        first = await dispatcher.dispatch(make_follow_plan())
        retry = await dispatcher.dispatch(make_follow_plan())

        assert first.status == DispatchStatus.EXECUTED
        assert first.ledger_status == LedgerWriteStatus.RECORDED
        assert retry.status == DispatchStatus.SKIPPED_DUPLICATE
        assert ledger.count() == 1
        assert client.futures_create_order.await_count == 3

    @pytest.mark.asyncio
    async def test_no_exit_levels_no_brackets(self, exchange, client, plan, position):
        """Test a position without exit levels gets only the entry order."""
        bare = position.model_copy(update={"exit_plan": ExitPlan()})

        result = await exchange.execute_plan_with_stop_orders(plan, bare)

        assert result.success is True
        assert client.futures_create_order.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_entry_places_no_brackets(self, exchange, client, plan, position):
        """Test brackets are not placed when the entry is rejected."""
        client.futures_create_order.side_effect = _api_error(-2019, "Margin is insufficient.")

        result = await exchange.execute_plan_with_stop_orders(plan, position)

        assert result.success is False
        assert client.futures_create_order.await_count == 1


class TestConnection:
    """Test client lifecycle."""

    @pytest.mark.asyncio
    async def test_context_manager_creates_and_closes_client(self, monkeypatch):
        """Test connect() builds a testnet client and disconnect() closes it."""
        created = AsyncMock()
        factory = Mock()
        factory.create = AsyncMock(return_value=created)
        monkeypatch.setattr(binance_exchange, "AsyncClient", factory)
        monkeypatch.setattr(
            binance_exchange, "load_credentials", lambda use_testnet: ("key", "secret")
        )

        async with BinanceFuturesExchange(use_testnet=True) as exchange:
            assert exchange.client is created

        factory.create.assert_awaited_once_with(
            api_key="key", api_secret="secret", testnet=True
        )
        created.close_connection.assert_awaited_once()
        assert exchange.client is None

    @pytest.mark.asyncio
    async def test_connection_failure(self, monkeypatch):
        """Test client creation errors become ExchangeError."""
        factory = Mock()
        factory.create = AsyncMock(side_effect=OSError("network unreachable"))
        monkeypatch.setattr(binance_exchange, "AsyncClient", factory)
        monkeypatch.setattr(
            binance_exchange, "load_credentials", lambda use_testnet: ("key", "secret")
        )

        with pytest.raises(ExchangeError, match="network unreachable"):
            await BinanceFuturesExchange().connect()

    @pytest.mark.asyncio
    async def test_injected_client_not_closed(self, exchange, client):
        """Test a client passed in by the caller is left open."""
        await exchange.disconnect()

        client.close_connection.assert_not_awaited()

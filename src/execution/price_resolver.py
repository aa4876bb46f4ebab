"""
Current price resolution for sizing.

A price already carried by the follow plan wins over a live query. A
result of ``0.0`` means "price unavailable" and must stop sizing; it is
never a valid order price.
"""

from typing import Optional

from loguru import logger

from .exchange import ExchangeFacade


PRICE_UNAVAILABLE = 0.0


class PriceResolver:
    """
    Resolves a usable price for a symbol.

    Examples:
        >>> resolver = PriceResolver(exchange)
        >>> await resolver.resolve("BTCUSDT", hinted_price=45100.0)
        45100.0
    """

    def __init__(self, exchange: ExchangeFacade):
        self.exchange = exchange

    async def resolve(self, symbol: str, hinted_price: Optional[float] = None) -> float:
        """
        Return ``hinted_price`` if truthy, else the 24h ticker's last price.

        Returns:
            float: Price, or PRICE_UNAVAILABLE (0.0) on any failure
        """
        if hinted_price:
            return hinted_price

        try:
            ticker = await self.exchange.get_24hr_ticker(symbol)
            raw = ticker.get("lastPrice") or ticker.get("price")
            price = float(raw)
        except Exception as e:
            logger.warning(f"Failed to get current price for {symbol}: {e}")
            return PRICE_UNAVAILABLE

        if price <= 0:
            logger.warning(f"Ticker returned non-positive price for {symbol}: {price}")
            return PRICE_UNAVAILABLE

        return price

"""
Per-symbol lot size resolution.

A failed lookup must not block a mirrored trade: the resolver degrades to
conservative defaults and logs a warning instead of raising.
"""

from loguru import logger

from ..core.models import DEFAULT_LOT_SIZE, LotSizeRule
from .exchange import ExchangeFacade


class LotSizeResolver:
    """
    Resolves ``minQty``/``stepSize`` from the symbol's LOT_SIZE filter.

    Rules are fetched on every call; the exchange adapter may cache.

    Examples:
        >>> resolver = LotSizeResolver(exchange)
        >>> await resolver.resolve("BTCUSDT")
        LotSizeRule(min_qty=0.001, step_size=0.001)
    """

    def __init__(self, exchange: ExchangeFacade):
        self.exchange = exchange

    async def resolve(self, symbol: str) -> LotSizeRule:
        """
        Return the symbol's lot size rule, or the defaults on any failure.

        Never raises.
        """
        try:
            symbol_info = await self.exchange.get_symbol_info(symbol)
            filters = (symbol_info or {}).get("filters") or []
            lot_filter = next(
                (f for f in filters if f.get("filterType") == "LOT_SIZE"), None
            )
            if lot_filter is not None:
                return LotSizeRule(
                    min_qty=float(lot_filter.get("minQty") or DEFAULT_LOT_SIZE.min_qty),
                    step_size=float(lot_filter.get("stepSize") or DEFAULT_LOT_SIZE.step_size),
                )
            logger.warning(f"No LOT_SIZE filter for {symbol}, using defaults")
        except Exception as e:
            logger.warning(f"Failed to get symbol info for {symbol}, using defaults: {e}")

        return DEFAULT_LOT_SIZE

"""
Position sizing for mirrored orders.

The follower's quantity is decoupled from the followed agent's size:
- ENTER: a fixed fraction of the follower's available balance, levered,
  converted at the current price and quantized down to the lot step
- EXIT/ADJUST with released margin: the released margin, levered,
  converted at the source's current price (no lot quantization)
- otherwise: the source quantity is kept

Lookup failures never abort the caller: the original quantity is kept and
the outcome is marked degraded.
"""

import math
from decimal import Decimal

from loguru import logger

from ..core.models import (
    FollowAction,
    FollowPlan,
    LotSizeRule,
    SizingOutcome,
    TradingPlan,
)
from .exchange import ExchangeFacade
from .lot_size import LotSizeResolver
from .price_resolver import PriceResolver


DEFAULT_ALLOCATION_FRACTION = 0.2

# Relative slack for floor() so 0.3 / 0.1 counts as 3 steps, not 2
_STEP_EPSILON = 1e-9


def _step_decimals(step_size: float) -> int:
    exponent = Decimal(str(step_size)).normalize().as_tuple().exponent
    return max(0, -exponent)


def calculate_quantity(
    available_margin: float,
    leverage: float,
    price: float,
    lot: LotSizeRule,
) -> float:
    """
    Convert margin into an exchange-valid quantity.

    notional = margin * leverage; raw = notional / price; the raw quantity
    is floored to a whole number of steps and then raised to ``min_qty``
    if smaller. The raise can commit more margin than ``available_margin``.

    Args:
        available_margin: Margin to commit, in quote currency
        leverage: Leverage multiplier
        price: Current price, must be positive
        lot: Symbol lot size rule

    Returns:
        float: Quantity that is ``min_qty`` or a whole multiple of ``step_size``

    Raises:
        ValueError: If price is not positive

    Examples:
        >>> calculate_quantity(200.0, 10, 50000.0, LotSizeRule(min_qty=0.001, step_size=0.001))
        0.04
        >>> calculate_quantity(0.2, 10, 50000.0, LotSizeRule(min_qty=0.001, step_size=0.001))
        0.001
    """
    if price <= 0:
        raise ValueError(f"price must be positive, got {price}")

    notional = available_margin * leverage
    raw_quantity = notional / price

    steps = math.floor(raw_quantity / lot.step_size + _STEP_EPSILON)
    quantity = round(steps * lot.step_size, _step_decimals(lot.step_size))

    return max(quantity, lot.min_qty)


class PositionSizer:
    """
    Sizes TradingPlans against the follower's own account.

    Attributes:
        exchange (ExchangeFacade): Account and market capability
        allocation_fraction (float): Share of available balance per ENTER
        lot_resolver (LotSizeResolver): Lot size lookup with defaults
        price_resolver (PriceResolver): Price lookup with plan hint

    Examples:
        >>> sizer = PositionSizer(exchange, allocation_fraction=0.2)
        >>> outcome = await sizer.apply(trading_plan, follow_plan)
        >>> outcome.method
        'margin_allocation'
    """

    def __init__(
        self,
        exchange: ExchangeFacade,
        allocation_fraction: float = DEFAULT_ALLOCATION_FRACTION,
        lot_resolver: LotSizeResolver = None,
        price_resolver: PriceResolver = None,
    ):
        if not 0 < allocation_fraction <= 1:
            raise ValueError(
                f"allocation_fraction must be in (0, 1], got {allocation_fraction}"
            )
        self.exchange = exchange
        self.allocation_fraction = allocation_fraction
        self.lot_resolver = lot_resolver or LotSizeResolver(exchange)
        self.price_resolver = price_resolver or PriceResolver(exchange)

    async def apply(self, trading_plan: TradingPlan, follow_plan: FollowPlan) -> SizingOutcome:
        """Size ``trading_plan`` in place according to the plan's action."""
        if follow_plan.action == FollowAction.ENTER:
            return await self.size_opening(trading_plan, follow_plan)

        if (
            follow_plan.released_margin
            and follow_plan.released_margin > 0
            and follow_plan.position is not None
        ):
            return self.size_from_released_margin(trading_plan, follow_plan)

        return SizingOutcome(quantity=trading_plan.quantity, method="source")

    def _keep_original(self, trading_plan: TradingPlan, reason: str) -> SizingOutcome:
        logger.warning(
            f"{reason}, using original quantity: {trading_plan.quantity}"
        )
        return SizingOutcome(
            quantity=trading_plan.quantity,
            method="source",
            degraded=True,
            reason=reason,
        )

    async def size_opening(self, trading_plan: TradingPlan, follow_plan: FollowPlan) -> SizingOutcome:
        """
        Size an ENTER plan from the follower's available balance.

        Writes the formatted quantity to ``trading_plan.quantity``. On any
        lookup failure the plan is left untouched and a degraded outcome is
        returned.
        """
        symbol = trading_plan.symbol

        try:
            account = await self.exchange.get_account_info()
            available_balance = float(account["availableBalance"])
        except Exception as e:
            return self._keep_original(trading_plan, f"Failed to get account balance: {e}")

        margin_to_use = available_balance * self.allocation_fraction

        try:
            lot = await self.lot_resolver.resolve(symbol)
            logger.debug(f"Symbol info {symbol}: minQty={lot.min_qty}, stepSize={lot.step_size}")

            price = await self.price_resolver.resolve(symbol, follow_plan.source_current_price)
            if price <= 0:
                return self._keep_original(
                    trading_plan, f"Unable to get current price for {symbol}"
                )

            quantity = calculate_quantity(margin_to_use, trading_plan.leverage, price, lot)
            formatted = float(self.exchange.format_quantity(quantity, symbol))
        except Exception as e:
            return self._keep_original(trading_plan, f"Failed to calculate quantity: {e}")

        if formatted <= 0:
            return self._keep_original(
                trading_plan, f"Formatted quantity for {symbol} is zero"
            )

        committed_margin = formatted * price / trading_plan.leverage
        clamped = formatted <= lot.min_qty and committed_margin > margin_to_use
        if clamped:
            logger.warning(
                f"{symbol} quantity raised to minQty {lot.min_qty}: commits "
                f"${committed_margin:.2f} margin vs ${margin_to_use:.2f} target"
            )

        trading_plan.quantity = formatted
        logger.info(
            f"Opening {self.allocation_fraction:.0%} position for {symbol}: "
            f"{formatted:.6f} (Margin: ${margin_to_use:.2f}, Price: ${price:.2f})"
        )
        return SizingOutcome(
            quantity=formatted,
            method="margin_allocation",
            clamped_to_min=clamped,
            margin_used=margin_to_use,
            price=price,
        )

    def size_from_released_margin(
        self,
        trading_plan: TradingPlan,
        follow_plan: FollowPlan,
    ) -> SizingOutcome:
        """
        Size an EXIT/ADJUST plan from the margin the source released.

        quantity = released_margin * leverage / position.current_price,
        without lot quantization; exchange-side validation still applies.
        """
        current_price = follow_plan.position.current_price
        if not current_price or current_price <= 0:
            return self._keep_original(
                trading_plan, f"No current price for {trading_plan.symbol} in released-margin sizing"
            )

        released = follow_plan.released_margin
        quantity = released * follow_plan.leverage / current_price
        trading_plan.quantity = quantity

        logger.info(
            f"Using released margin: ${released:.2f} ({follow_plan.leverage}x leverage) "
            f"-> Quantity: {quantity:.4f}"
        )
        return SizingOutcome(
            quantity=quantity,
            method="released_margin",
            margin_used=released,
            price=current_price,
        )

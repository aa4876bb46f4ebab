"""
Trading models with comprehensive validation.

This module defines the entities that flow through the copy-follow engine:
- FollowPlan: A detected change on the followed agent's account
- SourcePosition: Snapshot of the followed agent's position
- TradingPlan: The follower's own order intent derived from a FollowPlan
- LotSizeRule: Per-symbol quantity constraints from the exchange
- ExecutionResult: Outcome of submitting a TradingPlan
- ProcessedOrderRecord: Idempotency ledger entry
- RiskAssessment / PriceToleranceCheck: Risk gate output
- SizingOutcome: How the follower quantity was derived
"""

from enum import Enum
from typing import List, Optional
from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator


class FollowAction(str, Enum):
    """Kind of change detected on the followed agent's account."""

    ENTER = "ENTER"
    EXIT = "EXIT"
    ADJUST = "ADJUST"


class OrderSide(str, Enum):
    """
    Exchange order direction.

    Source agents report LONG/SHORT; the exchange speaks BUY/SELL.
    Both spellings are accepted on input and normalized to BUY/SELL.
    """

    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "OrderSide":
        """Side used by closing (stop-loss / take-profit) orders."""
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class MarginType(str, Enum):
    CROSSED = "CROSSED"
    ISOLATED = "ISOLATED"


_SIDE_ALIASES = {"LONG": "BUY", "SHORT": "SELL"}


def _normalize_side(value):
    if isinstance(value, str):
        upper = value.upper()
        return _SIDE_ALIASES.get(upper, upper)
    return value


class ExitPlan(BaseModel):
    """
    Exit levels the source agent attached to its position.

    Attributes:
        profit_target: Take-profit trigger price
        stop_loss: Stop-loss trigger price
        invalidation_condition: Free-text condition from the source agent
    """

    profit_target: Optional[float] = Field(default=None, gt=0)
    stop_loss: Optional[float] = Field(default=None, gt=0)
    invalidation_condition: Optional[str] = None


class SourcePosition(BaseModel):
    """
    Snapshot of a position on the followed agent's account.

    Attributes:
        symbol: Trading pair (e.g., 'BTCUSDT')
        quantity: Signed source quantity (negative for shorts)
        entry_price: Source agent's average entry price
        current_price: Mark/last price observed with the snapshot
        leverage: Source leverage
        entry_oid: Source agent's own order identifier (idempotency key)
        exit_plan: Source stop-loss / take-profit levels
        confidence: Source agent's confidence, if reported

    Examples:
        >>> pos = SourcePosition(
        ...     symbol="BTCUSDT",
        ...     quantity=0.5,
        ...     entry_price=45000.0,
        ...     current_price=45100.0,
        ...     leverage=10,
        ...     entry_oid=210131632249,
        ... )
        >>> pos.entry_oid
        '210131632249'
    """

    symbol: str = Field(min_length=1)
    quantity: float = 0.0
    entry_price: float = Field(default=0.0, ge=0)
    current_price: float = Field(default=0.0, ge=0)
    leverage: float = Field(default=1.0, gt=0)
    entry_oid: Optional[str] = None
    exit_plan: ExitPlan = Field(default_factory=ExitPlan)
    confidence: Optional[float] = None

    @field_validator("entry_oid", mode="before")
    @classmethod
    def stringify_entry_oid(cls, value):
        """Source order ids arrive as ints or strings; store them as strings."""
        if value is None or value == "":
            return None
        return str(value)


class FollowPlan(BaseModel):
    """
    Immutable description of one detected change to mirror.

    Produced once per detected change by the analyzer and consumed exactly
    once by the ExecutionDispatcher. Quantity and leverage are advisory:
    the follower's own sizing may replace the quantity.

    Attributes:
        agent: Name of the followed agent
        symbol: Trading pair
        action: ENTER opens a position, EXIT/ADJUST modify or close one
        side: Order direction (LONG/SHORT accepted)
        type: Order type
        quantity: Quantity reported by the source agent
        leverage: Leverage reported by the source agent
        entry_price: Source entry price, if known
        exit_price: Source exit price, if known
        released_margin: Margin freed on the source side by EXIT/ADJUST
        position: Source position snapshot
        reason: Human-readable justification (diagnostic only)
        margin_type: CROSSED or ISOLATED
        timestamp: Detection time in epoch milliseconds

    Examples:
        >>> plan = FollowPlan(
        ...     agent="gpt-5",
        ...     symbol="BTCUSDT",
        ...     action="ENTER",
        ...     side="LONG",
        ...     quantity=0.5,
        ...     leverage=10,
        ...     timestamp=1700000000000,
        ... )
        >>> plan.side
        <OrderSide.BUY: 'BUY'>
    """

    model_config = {"frozen": True}

    agent: str = Field(min_length=1)
    symbol: str = Field(min_length=1)
    action: FollowAction
    side: OrderSide
    type: OrderType = OrderType.MARKET
    quantity: float = Field(ge=0)
    leverage: float = Field(gt=0)
    entry_price: Optional[float] = Field(default=None, ge=0)
    exit_price: Optional[float] = Field(default=None, ge=0)
    released_margin: Optional[float] = None
    position: Optional[SourcePosition] = None
    reason: str = ""
    margin_type: MarginType = MarginType.CROSSED
    timestamp: int = Field(ge=0)

    @field_validator("side", mode="before")
    @classmethod
    def normalize_side(cls, value):
        return _normalize_side(value)

    @field_validator("symbol")
    @classmethod
    def uppercase_symbol(cls, value: str) -> str:
        return value.upper()

    @property
    def source_order_id(self) -> Optional[str]:
        """The source agent's order id, or None when the plan carries none."""
        if self.position is None:
            return None
        return self.position.entry_oid

    @property
    def source_current_price(self) -> Optional[float]:
        """Live source price from the position snapshot, if any."""
        if self.position is None or not self.position.current_price:
            return None
        return self.position.current_price


class TradingPlan(BaseModel):
    """
    Mutable follower order intent.

    NOT frozen: the PositionSizer overwrites ``quantity`` once before the
    plan is handed to the exchange.

    Attributes:
        id: Stable identifier, derived from the source order id when present
        symbol: Trading pair
        side: BUY or SELL
        type: Order type
        quantity: Order quantity in base asset
        leverage: Leverage to apply on the follower account
        margin_type: CROSSED or ISOLATED
        timestamp: Source detection time (epoch ms)
        source_order_id: Source agent order id, if known
    """

    id: str = Field(min_length=1)
    symbol: str = Field(min_length=1)
    side: OrderSide
    type: OrderType = OrderType.MARKET
    quantity: float = Field(ge=0)
    leverage: float = Field(gt=0)
    margin_type: MarginType = MarginType.CROSSED
    timestamp: int = Field(ge=0)
    source_order_id: Optional[str] = None

    @field_validator("side", mode="before")
    @classmethod
    def normalize_side(cls, value):
        return _normalize_side(value)

    @classmethod
    def from_follow_plan(cls, plan: FollowPlan) -> "TradingPlan":
        """
        Build the follower's order intent from a FollowPlan.

        The id is keyed on the source order id so that retries of the same
        source event map to the same TradingPlan id. Plans without a source
        order id (typically EXIT/ADJUST) fall back to the detection time.

        Examples:
            >>> tp = TradingPlan.from_follow_plan(plan)
            >>> tp.id
            'gpt-5_BTCUSDT_210131632249'
        """
        source_id = plan.source_order_id
        suffix = source_id if source_id is not None else str(plan.timestamp)
        return cls(
            id=f"{plan.agent}_{plan.symbol}_{suffix}",
            symbol=plan.symbol,
            side=plan.side,
            type=plan.type,
            quantity=plan.quantity,
            leverage=plan.leverage,
            margin_type=plan.margin_type,
            timestamp=plan.timestamp,
            source_order_id=source_id,
        )


class LotSizeRule(BaseModel):
    """Exchange quantity constraints for one symbol."""

    model_config = {"frozen": True}

    min_qty: float = Field(gt=0)
    step_size: float = Field(gt=0)


DEFAULT_LOT_SIZE = LotSizeRule(min_qty=0.001, step_size=0.001)


class ExecutionResult(BaseModel):
    """
    Outcome of submitting a TradingPlan to the exchange.

    Only ``order_id`` outlives the dispatch: it is persisted in the ledger.
    """

    success: bool
    order_id: Optional[str] = None
    take_profit_order_id: Optional[str] = None
    stop_loss_order_id: Optional[str] = None
    error: Optional[str] = None

    @field_validator(
        "order_id", "take_profit_order_id", "stop_loss_order_id", mode="before"
    )
    @classmethod
    def stringify_ids(cls, value):
        if value is None or value == "":
            return None
        return str(value)


class ProcessedOrderRecord(BaseModel):
    """Immutable idempotency ledger entry, unique on ``source_order_id``."""

    model_config = {"frozen": True}

    source_order_id: str = Field(min_length=1)
    symbol: str
    agent_name: str
    side: OrderSide
    quantity: float
    entry_price: Optional[float] = None
    follower_order_id: str = Field(min_length=1)
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PriceToleranceCheck(BaseModel):
    """
    Drift between the source entry price and its current price.

    Attributes:
        entry_price: Source entry price
        current_price: Source current price
        price_difference: Absolute drift in percent of entry price
        tolerance: Allowed drift in percent
        should_execute: True if drift is within tolerance
        reason: Human-readable verdict
    """

    entry_price: float
    current_price: float
    price_difference: float
    tolerance: float
    should_execute: bool
    reason: str


class RiskAssessment(BaseModel):
    """Output of the risk gate for one TradingPlan."""

    is_valid: bool = True
    risk_score: float = Field(default=0.0, ge=0, le=100)
    warnings: List[str] = Field(default_factory=list)
    price_tolerance: Optional[PriceToleranceCheck] = None


class SizingOutcome(BaseModel):
    """
    How the follower quantity was derived for one plan.

    Attributes:
        quantity: Final quantity written to the TradingPlan
        method: 'margin_allocation', 'released_margin' or 'source'
        degraded: True if sizing fell back to the source quantity
        clamped_to_min: True if the lot minimum raised the quantity
        reason: Why sizing degraded, if it did
        margin_used: Margin the sizing was based on
        price: Price the sizing was based on
    """

    quantity: float
    method: str
    degraded: bool = False
    clamped_to_min: bool = False
    reason: Optional[str] = None
    margin_used: Optional[float] = None
    price: Optional[float] = None

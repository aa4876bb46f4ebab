"""
Risk gate for mirrored orders.

The RiskGate decides WHICH assessment a follow plan gets; the RiskManager
decides HOW a plan is scored:
- ENTER plans with both a source entry price and a live source price are
  assessed with the price-tolerance (drift) check
- every other plan gets the plain assessment
"""

from typing import Optional

from loguru import logger

from ..core.models import (
    FollowAction,
    FollowPlan,
    PriceToleranceCheck,
    RiskAssessment,
    TradingPlan,
)


DEFAULT_PRICE_TOLERANCE = 1.0  # percent
DEFAULT_MAX_LEVERAGE = 125.0


class RiskManager:
    """
    Default risk scoring collaborator.

    Scoring (0-100, higher is riskier):
        - base score 10
        - leverage above 10x adds 20, above 20x adds 40 instead
        - a failed price-tolerance check adds 20

    A plan is invalid when its leverage exceeds ``max_leverage`` or when
    the source price drifted beyond the tolerance.

    Examples:
        >>> manager = RiskManager()
        >>> manager.set_price_tolerance(0.5)
        >>> manager.check_price_tolerance(100.0, 101.0, "ETHUSDT").should_execute
        False
    """

    def __init__(
        self,
        price_tolerance: float = DEFAULT_PRICE_TOLERANCE,
        max_leverage: float = DEFAULT_MAX_LEVERAGE,
    ):
        self.set_price_tolerance(price_tolerance)
        self.max_leverage = max_leverage

    @property
    def price_tolerance(self) -> float:
        return self._price_tolerance

    def set_price_tolerance(self, percent: float) -> None:
        """
        Raises:
            ValueError: If percent is not positive
        """
        if percent is None or percent <= 0:
            raise ValueError(f"price tolerance must be positive, got {percent}")
        self._price_tolerance = float(percent)

    def assess_risk(self, plan: TradingPlan) -> RiskAssessment:
        """Score a plan on leverage alone."""
        warnings = []
        score = 10.0
        is_valid = True

        if plan.leverage > self.max_leverage:
            is_valid = False
            warnings.append(
                f"Leverage {plan.leverage}x exceeds maximum {self.max_leverage}x"
            )

        if plan.leverage > 20:
            score += 40
            warnings.append(f"High leverage ({plan.leverage}x)")
        elif plan.leverage > 10:
            score += 20
            warnings.append(f"Elevated leverage ({plan.leverage}x)")

        return RiskAssessment(
            is_valid=is_valid,
            risk_score=min(score, 100.0),
            warnings=warnings,
        )

    def check_price_tolerance(
        self,
        entry_price: float,
        current_price: float,
        symbol: str,
        tolerance: Optional[float] = None,
    ) -> PriceToleranceCheck:
        """
        Compare the source's entry price with its current price.

        price_difference = |current - entry| / entry * 100
        """
        tolerance = self._price_tolerance if tolerance is None else tolerance

        if entry_price <= 0:
            return PriceToleranceCheck(
                entry_price=entry_price,
                current_price=current_price,
                price_difference=0.0,
                tolerance=tolerance,
                should_execute=False,
                reason=f"Invalid entry price for {symbol}: {entry_price}",
            )

        difference = abs(current_price - entry_price) / entry_price * 100
        should_execute = difference <= tolerance

        if should_execute:
            reason = f"Price difference {difference:.2f}% is within tolerance {tolerance}%"
        else:
            reason = f"Price difference {difference:.2f}% exceeds tolerance {tolerance}%"

        return PriceToleranceCheck(
            entry_price=entry_price,
            current_price=current_price,
            price_difference=difference,
            tolerance=tolerance,
            should_execute=should_execute,
            reason=reason,
        )

    def assess_risk_with_price_tolerance(
        self,
        plan: TradingPlan,
        entry_price: float,
        current_price: float,
        symbol: str,
        tolerance: Optional[float] = None,
    ) -> RiskAssessment:
        """Plain assessment plus the price-drift check."""
        base = self.assess_risk(plan)
        check = self.check_price_tolerance(entry_price, current_price, symbol, tolerance)

        warnings = list(base.warnings)
        score = base.risk_score
        if not check.should_execute:
            warnings.append(check.reason)
            score += 20

        return RiskAssessment(
            is_valid=base.is_valid and check.should_execute,
            risk_score=min(score, 100.0),
            warnings=warnings,
            price_tolerance=check,
        )


class RiskGate:
    """
    Chooses the assessment path for a follow plan.

    Attributes:
        risk_manager: Scoring collaborator exposing ``assess_risk`` and
            ``assess_risk_with_price_tolerance``
    """

    def __init__(self, risk_manager: RiskManager):
        self.risk_manager = risk_manager

    @staticmethod
    def uses_price_tolerance(follow_plan: FollowPlan) -> bool:
        return bool(
            follow_plan.action == FollowAction.ENTER
            and follow_plan.entry_price
            and follow_plan.source_current_price
        )

    def assess(
        self,
        follow_plan: FollowPlan,
        trading_plan: TradingPlan,
        tolerance: Optional[float] = None,
    ) -> RiskAssessment:
        if self.uses_price_tolerance(follow_plan):
            assessment = self.risk_manager.assess_risk_with_price_tolerance(
                trading_plan,
                follow_plan.entry_price,
                follow_plan.source_current_price,
                follow_plan.symbol,
                tolerance,
            )
        else:
            assessment = self.risk_manager.assess_risk(trading_plan)

        logger.info(f"Risk Score: {assessment.risk_score:.0f}/100")
        if assessment.warnings:
            logger.info(f"Warnings: {', '.join(assessment.warnings)}")
        if assessment.price_tolerance:
            pt = assessment.price_tolerance
            logger.info(
                f"Price Check: Entry ${pt.entry_price} vs Current ${pt.current_price}, "
                f"difference {pt.price_difference:.2f}% (Tolerance: {pt.tolerance}%): {pt.reason}"
            )

        return assessment

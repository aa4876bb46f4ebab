"""
Execution module for sizing, risk gating and order placement.

This module handles:
- Exchange access through the ExchangeFacade (Binance futures adapter)
- Lot size and price resolution with safe fallbacks
- Position sizing from the follower's available balance
- Risk gating with entry-price drift checks
- Idempotent dispatch of follow plans
"""

from .dispatcher import DispatchResult, DispatchStatus, ExecutionDispatcher
from .exchange import ExchangeError, ExchangeFacade
from .follow_service import (
    FollowAnalyzer,
    FollowRunReport,
    FollowService,
    create_event_bus,
    create_exchange,
    create_follow_service,
    open_ledger,
)
from .risk import RiskGate, RiskManager
from .sizing import PositionSizer, calculate_quantity

__all__ = [
    "DispatchResult",
    "DispatchStatus",
    "ExecutionDispatcher",
    "ExchangeError",
    "ExchangeFacade",
    "FollowAnalyzer",
    "FollowRunReport",
    "FollowService",
    "create_event_bus",
    "create_exchange",
    "create_follow_service",
    "open_ledger",
    "RiskGate",
    "RiskManager",
    "PositionSizer",
    "calculate_quantity",
]

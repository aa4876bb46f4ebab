"""
Core module for the follow engine.

This module provides the foundational components:
- Models: FollowPlan, TradingPlan, ExecutionResult and friends
- EventBus / EventProcessor: Publish-subscribe outcome reporting
- OrderHistoryLedger: Durable idempotency record of mirrored source orders
- FollowerConfig: config.yaml settings and environment credentials
"""

from .event_processor import EventProcessor
from .order_history import OrderHistoryLedger, LedgerWriteStatus

__all__ = [
    "EventProcessor",
    "OrderHistoryLedger",
    "LedgerWriteStatus",
]

"""
Event Processors for the follow engine

This package contains the event processors that feed the execution engine:
- FollowPlanProcessor: Dispatches FOLLOW_PLAN_RECEIVED events

Examples:
    >>> from src.core.event_bus import EventBus
    >>> from src.processors import FollowPlanProcessor
    >>>
    >>> bus = EventBus(handler_timeout=30.0)
    >>> await bus.start()
    >>>
    >>> processor = FollowPlanProcessor(bus, dispatcher)
    >>> await processor.start()
    >>>
    >>> # ... analyzer publishes FOLLOW_PLAN_RECEIVED events ...
    >>>
    >>> await processor.stop()
    >>> await bus.stop()
"""

from .follow_processor import FollowPlanProcessor

__all__ = [
    "FollowPlanProcessor",
]

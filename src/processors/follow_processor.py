"""
Follow Plan Processor

This module connects the event bus to the ExecutionDispatcher: every
FOLLOW_PLAN_RECEIVED event is dispatched as one follow plan. The bus's
handler timeout acts as the per-plan deadline; the dispatcher keeps an
order that was already submitted, and its ledger write, running past it.
"""

from typing import Dict, List, Optional

from loguru import logger

from ..core.event_bus import Event, EventBus, EventType
from ..core.event_processor import EventProcessor, Handler
from ..core.models import FollowPlan
from ..execution.dispatcher import DispatchResult, DispatchStatus, ExecutionDispatcher


class FollowPlanProcessor(EventProcessor):
    """
    Dispatches follow plans received on the event bus.

    Event payload: ``{"plan": FollowPlan}`` or the plan's fields as a dict.

    Examples:
        >>> bus = EventBus(handler_timeout=config.plan_deadline_seconds)
        >>> processor = FollowPlanProcessor(bus, dispatcher)
        >>> await bus.start()
        >>> await processor.start()
        >>> await bus.publish(Event(EventType.FOLLOW_PLAN_RECEIVED, {"plan": plan}, "analyzer"))
    """

    def __init__(self, event_bus: EventBus, dispatcher: ExecutionDispatcher):
        super().__init__(event_bus)
        self.dispatcher = dispatcher
        self._results: List[DispatchResult] = []

    async def _on_start(self) -> None:
        self._results = []
        logger.info("FollowPlanProcessor state initialized")

    async def _on_stop(self) -> None:
        executed = sum(1 for r in self._results if r.status == DispatchStatus.EXECUTED)
        logger.info(
            f"FollowPlanProcessor processed {len(self._results)} plan(s), {executed} executed"
        )

    def subscriptions(self) -> Dict[EventType, Handler]:
        return {EventType.FOLLOW_PLAN_RECEIVED: self._on_follow_plan}

    @staticmethod
    def _extract_plan(event: Event) -> Optional[FollowPlan]:
        payload = event.data.get("plan", event.data)
        if isinstance(payload, FollowPlan):
            return payload
        try:
            return FollowPlan.model_validate(payload)
        except ValueError as e:
            logger.warning(f"Invalid follow plan from {event.source}: {e}")
            return None

    async def _on_follow_plan(self, event: Event) -> None:
        plan = self._extract_plan(event)
        if plan is None:
            return

        result = await self.dispatcher.dispatch(plan)
        self._results.append(result)
        logger.info(
            f"Follow plan {result.trading_plan.id} finished: {result.status.value}"
        )

    @property
    def results(self) -> List[DispatchResult]:
        return list(self._results)

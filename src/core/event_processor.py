"""
Event-driven component base for the copy-follow engine.

An EventProcessor declares which EventBus events it handles through
subscriptions(); the base class owns the start/stop lifecycle and makes
sure exactly the handlers it subscribed are removed again on stop.

FollowPlanProcessor is the production subclass: it turns
FOLLOW_PLAN_RECEIVED events into ExecutionDispatcher calls.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict

from loguru import logger

from .event_bus import Event, EventBus, EventType


Handler = Callable[[Event], Any]


class EventProcessor(ABC):
    """
    Base class for components fed by the EventBus.

    Lifecycle:
    1. start() runs _on_start(), then subscribes every handler returned
       by subscriptions()
    2. Handlers receive queued events while the processor runs
    3. stop() unsubscribes those same handlers, then runs _on_stop()

    Attributes:
        event_bus (EventBus): Bus the handlers are subscribed on

    Examples:
        >>> bus = EventBus(handler_timeout=config.plan_deadline_seconds)
        >>> processor = FollowPlanProcessor(bus, dispatcher)
        >>> await processor.start()
        >>> # ... FOLLOW_PLAN_RECEIVED events are dispatched ...
        >>> await processor.stop()
    """

    def __init__(self, event_bus: EventBus):
        self.event_bus = event_bus
        self._subscribed: Dict[EventType, Handler] = {}
        self._running = False

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @abstractmethod
    def subscriptions(self) -> Dict[EventType, Handler]:
        """Handlers this processor needs, keyed by event type."""

    async def start(self) -> None:
        """
        Subscribe the processor's handlers. A second call is a no-op.

        Raises:
            Exception: Re-raised from _on_start(); nothing is subscribed then
        """
        if self.is_running:
            logger.debug(f"{self.name} already started")
            return

        try:
            await self._on_start()
        except Exception as e:
            logger.error(f"Failed to start {self.name}: {e}")
            raise

        handlers = dict(self.subscriptions())
        for event_type, handler in handlers.items():
            self.event_bus.subscribe(event_type, handler)
        self._subscribed = handlers
        self._running = True
        logger.info(
            f"{self.name} started, handling {', '.join(t.value for t in handlers)}"
        )

    async def stop(self) -> None:
        """
        Unsubscribe the handlers registered by start(), then run _on_stop().

        Shutdown hook errors are logged; the processor is stopped regardless.
        """
        if not self.is_running:
            logger.debug(f"{self.name} already stopped")
            return

        for event_type, handler in self._subscribed.items():
            self.event_bus.unsubscribe(event_type, handler)
        self._subscribed = {}
        self._running = False

        try:
            await self._on_stop()
        except Exception as e:
            logger.error(f"Error during {self.name} shutdown: {e}")
            return
        logger.info(f"{self.name} stopped")

    async def _on_start(self) -> None:
        """Runs before any handler is subscribed."""

    async def _on_stop(self) -> None:
        """Runs after every handler is unsubscribed."""

    @property
    def is_running(self) -> bool:
        return self._running

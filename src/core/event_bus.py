"""
Event Bus System for the copy-follow engine

This module provides the structured event channel of the system. Components
report what happened to a follow plan (received, risk-assessed, executed,
recorded) as typed events instead of writing to shared console output, so
callers can observe outcomes without global log redirection.
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass
from datetime import datetime, timezone
import asyncio
from loguru import logger


class EventType(Enum):
    """
    Enumeration of all event types in the follow pipeline.

    Event values are string literals to ensure clear logging and debugging.
    All components should use these enum members rather than raw strings.

    Examples:
        >>> EventType.FOLLOW_PLAN_RECEIVED
        <EventType.FOLLOW_PLAN_RECEIVED: 'follow_plan_received'>

        >>> str(EventType.ORDER_PLACED)
        'ORDER_PLACED'
    """

    FOLLOW_PLAN_RECEIVED = "follow_plan_received"
    """
    Emitted when the analyzer hands over a detected source change.

    Payload: {"plan": FollowPlan}. The FollowPlanProcessor consumes it and
    runs the plan through the ExecutionDispatcher.
    """

    RISK_ASSESSED = "risk_assessed"
    """
    Emitted after the risk gate evaluated a plan.

    Payload: plan_id, symbol, is_valid, risk_score, warnings.
    """

    ORDER_PLACED = "order_placed"
    """
    Emitted when the exchange accepted the follower order.

    Payload: plan_id, symbol, side, quantity, order_id, take_profit_order_id,
    stop_loss_order_id, bracketed.
    """

    EXECUTION_FAILED = "execution_failed"
    """
    Emitted when the exchange rejected the follower order.

    Payload: plan_id, symbol, error. Terminal for that plan; no retry.
    """

    LEDGER_RECORDED = "ledger_recorded"
    """Emitted when the source order id was written to the ledger."""

    LEDGER_DUPLICATE = "ledger_duplicate"
    """
    Emitted when the source order id was already present in the ledger.

    Benign: the source event had been handled before.
    """

    LEDGER_WRITE_FAILED = "ledger_write_failed"
    """
    Emitted when the trade executed but the ledger write failed.

    Distinct from EXECUTION_FAILED: an order exists on the exchange.
    """

    ERROR = "error"
    """
    Emitted when an unexpected exception occurs.

    Payload includes: error_type, error_message, component, context.
    """

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"<EventType.{self.name}: '{self.value}'>"


@dataclass
class Event:
    """
    Event data structure for the event bus system.

    Attributes:
        event_type (EventType): The type of event being emitted
        data (Dict[str, Any]): Event payload data specific to the event type
        source (str): Component that emitted the event
        timestamp (datetime): When the event was created

    Examples:
        >>> event = Event(
        ...     event_type=EventType.ORDER_PLACED,
        ...     data={'symbol': 'BTCUSDT', 'order_id': '42'},
        ...     source='ExecutionDispatcher'
        ... )
        >>> event.event_type
        <EventType.ORDER_PLACED: 'order_placed'>
    """

    event_type: EventType
    data: Dict[str, Any]
    source: str
    timestamp: datetime = None

    def __post_init__(self):
        """
        Validate event data and set timestamp if not provided.

        Raises:
            TypeError: If event_type is not EventType or data is not dict
        """
        if not isinstance(self.event_type, EventType):
            raise TypeError(
                f"event_type must be EventType enum, got {type(self.event_type).__name__}"
            )

        if not isinstance(self.data, dict):
            raise TypeError(
                f"data must be dict, got {type(self.data).__name__}"
            )

        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc)

    def __str__(self) -> str:
        return f"Event({self.event_type.name} from {self.source} at {self.timestamp})"


class EventBus:
    """
    Central event bus for publish-subscribe event handling.

    Supports two delivery modes:
        - emit(): synchronous, in the caller's stack (sync handlers only)
        - publish(): queued, delivered by the loop started with start();
          async handlers are awaited, sync handlers run in a thread

    Each queued delivery is bounded by ``handler_timeout`` seconds. For
    handlers that place orders this timeout is the plan deadline: it
    cancels the handler cooperatively, so work the handler shields from
    cancellation still completes.

    Examples:
        >>> bus = EventBus(handler_timeout=30.0)
        >>> bus.subscribe(EventType.ORDER_PLACED, lambda e: print(e.data['order_id']))
        >>> bus.emit(Event(EventType.ORDER_PLACED, {'order_id': '42'}, 'test'))
        42
    """

    def __init__(self, handler_timeout: Optional[float] = 1.0):
        """
        Initialize the event bus with empty subscriber lists.

        Args:
            handler_timeout (float, optional): Seconds each queued handler may
                run. None disables the timeout.
        """
        if handler_timeout is not None and handler_timeout <= 0:
            raise ValueError(
                f"handler_timeout must be positive, got {handler_timeout}"
            )

        self._subscribers: Dict[EventType, List[Callable[[Event], Any]]] = {
            event_type: [] for event_type in EventType
        }
        self.handler_timeout = handler_timeout
        self._queue: asyncio.Queue = None  # Created in start() to use correct event loop
        self._running: bool = False
        self._task: asyncio.Task = None

    def subscribe(self, event_type: EventType, callback: Callable[[Event], Any]) -> None:
        """
        Subscribe to a specific event type.

        Raises:
            TypeError: If event_type is not an EventType enum member
        """
        if not isinstance(event_type, EventType):
            raise TypeError(f"event_type must be EventType enum, got {type(event_type)}")

        if callback not in self._subscribers[event_type]:
            self._subscribers[event_type].append(callback)

    def unsubscribe(self, event_type: EventType, callback: Callable[[Event], Any]) -> None:
        """Unsubscribe from a specific event type."""
        if callback in self._subscribers[event_type]:
            self._subscribers[event_type].remove(callback)

    def emit(self, event: Event) -> None:
        """
        Emit an event to all synchronous subscribers.

        Exceptions in callbacks are logged so one subscriber cannot break
        the others. Coroutine handlers are skipped here; they only receive
        queued events via publish().

        Raises:
            TypeError: If event is not an Event instance
        """
        if not isinstance(event, Event):
            raise TypeError(f"event must be Event instance, got {type(event)}")

        for callback in self._subscribers[event.event_type]:
            if asyncio.iscoroutinefunction(callback):
                logger.debug(
                    f"Skipping async subscriber {callback.__name__} "
                    f"for synchronous emit of {event.event_type.value}"
                )
                continue
            try:
                callback(event)
            except Exception as e:
                logger.error(
                    f"Error in event subscriber {callback.__name__} "
                    f"for {event.event_type.value}: {e}"
                )

    def subscriber_count(self, event_type: EventType) -> int:
        return len(self._subscribers[event_type])

    def clear_subscribers(self, event_type: EventType = None) -> None:
        """Clear subscribers for one event type, or all if None."""
        if event_type is None:
            for event_type in EventType:
                self._subscribers[event_type].clear()
        else:
            self._subscribers[event_type].clear()

    async def publish(self, event: Event) -> None:
        """
        Publish an event to the async queue for non-blocking delivery.

        Raises:
            TypeError: If event is not an Event instance
            RuntimeError: If event bus is not started
        """
        if not isinstance(event, Event):
            raise TypeError(f"event must be Event instance, got {type(event)}")

        if self._queue is None:
            raise RuntimeError("Event bus not started. Call start() first.")

        self._queue.put_nowait(event)

    async def notify(self, event: Event) -> None:
        """
        Deliver an event through the queue when running, inline otherwise.

        Lets components report outcomes whether or not a processing loop
        has been started by the host.
        """
        if self._running:
            await self.publish(event)
        else:
            self.emit(event)

    async def start(self) -> None:
        """Start the async event processing loop."""
        if self._running:
            return

        self._queue = asyncio.Queue()
        self._running = True
        self._task = asyncio.create_task(self._process_events())

    async def _process_events(self) -> None:
        """Read events from the queue until stopped and drained."""
        while True:
            event = None
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.1)
                await self._dispatch(event)

            except asyncio.TimeoutError:
                if not self._running and self._queue.empty():
                    break
                continue
            except Exception as e:
                logger.error(f"Error processing event: {e}")
            finally:
                if event is not None:
                    self._queue.task_done()

    async def _dispatch(self, event: Event) -> None:
        """
        Dispatch an event to all subscribers with timeout protection.

        Async handlers are awaited directly; sync handlers are executed in a
        thread pool to avoid blocking the event loop.
        """
        handlers = list(self._subscribers[event.event_type])

        logger.debug(
            f"Dispatching event {event.event_type.value} to {len(handlers)} handler(s)"
        )

        for callback in handlers:
            try:
                if asyncio.iscoroutinefunction(callback):
                    await asyncio.wait_for(callback(event), timeout=self.handler_timeout)
                else:
                    await asyncio.wait_for(
                        asyncio.to_thread(callback, event),
                        timeout=self.handler_timeout
                    )
            except asyncio.TimeoutError:
                logger.warning(
                    f"Handler {callback.__name__} for event {event.event_type.value} "
                    f"exceeded {self.handler_timeout}s timeout"
                )
            except Exception as e:
                logger.error(
                    f"Error in event subscriber {callback.__name__} "
                    f"for {event.event_type.value}: {e}"
                )

    async def stop(self) -> None:
        """
        Stop the event processing loop after the queue drains.

        Waits up to 5s for queued events before cancelling the loop task.
        """
        if not self._running:
            return

        self._running = False

        try:
            await asyncio.wait_for(self._queue.join(), timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Event queue did not drain within 5s timeout")

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def queue_size(self) -> int:
        if self._queue is None:
            return 0
        return self._queue.qsize()

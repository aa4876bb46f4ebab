"""
Unit tests for the EventProcessor base class.

Tests cover:
- Lifecycle hook ordering around handler subscription
- Exactly the declared handlers are subscribed and removed
- Queued delivery only while the processor runs
"""

import asyncio

import pytest

from src.core.event_bus import Event, EventBus, EventType
from src.core.event_processor import EventProcessor


class RecordingProcessor(EventProcessor):
    """Processor that records lifecycle calls and received plans."""

    def __init__(self, event_bus: EventBus, name: str = "P", journal: list = None):
        super().__init__(event_bus)
        self.label = name
        self.journal = journal if journal is not None else []
        self.received = []
        self.outcomes = []

    def subscriptions(self):
        self.journal.append(f"{self.label}:subscriptions")
        return {
            EventType.FOLLOW_PLAN_RECEIVED: self._on_plan,
            EventType.ORDER_PLACED: self._on_outcome,
        }

    async def _on_start(self) -> None:
        self.journal.append(f"{self.label}:on_start")

    async def _on_stop(self) -> None:
        self.journal.append(f"{self.label}:on_stop")

    async def _on_plan(self, event: Event) -> None:
        self.received.append(event.data["plan_id"])

    async def _on_outcome(self, event: Event) -> None:
        self.outcomes.append(event.data["plan_id"])


class BrokenStartProcessor(RecordingProcessor):
    async def _on_start(self) -> None:
        raise RuntimeError("ledger unavailable")


class BrokenStopProcessor(RecordingProcessor):
    async def _on_stop(self) -> None:
        raise RuntimeError("flush failed")


def _plan_event(plan_id: str) -> Event:
    return Event(EventType.FOLLOW_PLAN_RECEIVED, {"plan_id": plan_id}, "analyzer")


@pytest.fixture
def event_bus():
    """Create EventBus instance for tests."""
    return EventBus()


class TestEventProcessor:
    """Tests for EventProcessor base class."""

    @pytest.mark.asyncio
    async def test_start_runs_hook_before_subscribing(self, event_bus):
        """Test _on_start runs before handlers are subscribed."""
        processor = RecordingProcessor(event_bus)
        await processor.start()

        assert processor.is_running is True
        assert processor.journal == ["P:on_start", "P:subscriptions"]
        assert event_bus.subscriber_count(EventType.FOLLOW_PLAN_RECEIVED) == 1
        assert event_bus.subscriber_count(EventType.ORDER_PLACED) == 1

    @pytest.mark.asyncio
    async def test_stop_unsubscribes_declared_handlers(self, event_bus):
        """Test every declared handler is removed before _on_stop runs."""
        processor = RecordingProcessor(event_bus)
        await processor.start()
        await processor.stop()

        assert processor.is_running is False
        assert processor.journal[-1] == "P:on_stop"
        assert event_bus.subscriber_count(EventType.FOLLOW_PLAN_RECEIVED) == 0
        assert event_bus.subscriber_count(EventType.ORDER_PLACED) == 0

    @pytest.mark.asyncio
    async def test_stop_leaves_other_subscribers(self, event_bus):
        """Test stopping one processor does not touch another's handlers."""
        first = RecordingProcessor(event_bus, "A")
        second = RecordingProcessor(event_bus, "B")
        await first.start()
        await second.start()

        await first.stop()

        assert event_bus.subscriber_count(EventType.FOLLOW_PLAN_RECEIVED) == 1
        assert second.is_running is True

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self, event_bus):
        """Test repeated start/stop calls are no-ops."""
        processor = RecordingProcessor(event_bus)
        await processor.start()
        await processor.start()
        await processor.stop()
        await processor.stop()

        assert processor.journal.count("P:on_start") == 1
        assert processor.journal.count("P:subscriptions") == 1
        assert processor.journal.count("P:on_stop") == 1

    @pytest.mark.asyncio
    async def test_failed_start_propagates(self, event_bus):
        """Test a failing startup hook raises and subscribes nothing."""
        processor = BrokenStartProcessor(event_bus)

        with pytest.raises(RuntimeError, match="ledger unavailable"):
            await processor.start()

        assert processor.is_running is False
        assert "P:subscriptions" not in processor.journal
        assert event_bus.subscriber_count(EventType.FOLLOW_PLAN_RECEIVED) == 0

    @pytest.mark.asyncio
    async def test_failed_stop_still_marks_stopped(self, event_bus):
        """Test shutdown hook errors are logged and the processor is stopped anyway."""
        processor = BrokenStopProcessor(event_bus)
        await processor.start()
        await processor.stop()

        assert processor.is_running is False
        assert event_bus.subscriber_count(EventType.FOLLOW_PLAN_RECEIVED) == 0

    @pytest.mark.asyncio
    async def test_only_running_processor_receives_events(self, event_bus):
        """Test events published after stop() are not delivered."""
        processor = RecordingProcessor(event_bus)
        await event_bus.start()
        await processor.start()

        await event_bus.publish(_plan_event("first"))
        await asyncio.sleep(0.2)
        await processor.stop()
        await event_bus.publish(_plan_event("second"))
        await asyncio.sleep(0.2)

        assert processor.received == ["first"]
        await event_bus.stop()

    @pytest.mark.asyncio
    async def test_each_handler_gets_its_event_type(self, event_bus):
        """Test events are routed to the handler declared for their type."""
        processor = RecordingProcessor(event_bus)
        await event_bus.start()
        await processor.start()

        await event_bus.publish(_plan_event("plan-1"))
        await event_bus.publish(
            Event(EventType.ORDER_PLACED, {"plan_id": "plan-1"}, "dispatcher")
        )
        await asyncio.sleep(0.2)

        assert processor.received == ["plan-1"]
        assert processor.outcomes == ["plan-1"]
        await processor.stop()
        await event_bus.stop()

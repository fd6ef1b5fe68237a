"""Tests for the in-process operation event bus."""

from homestack.core.event_bus import OperationEventBus
from homestack.models import (
    OperationAction,
    OperationEventType,
    OperationStatus,
    StoreOperationEvent,
)


def make_event(operation_id: str = "op-1", percent: int = 1) -> StoreOperationEvent:
    return StoreOperationEvent(
        type=OperationEventType.STEP,
        operation_id=operation_id,
        app_id="homepage",
        action=OperationAction.INSTALL,
        status=OperationStatus.RUNNING,
        progress_percent=percent,
        step="render",
    )


class TestOperationEventBus:
    def test_delivers_only_to_matching_operation(self):
        bus = OperationEventBus()
        first, second = [], []
        bus.subscribe("op-1", first.append)
        bus.subscribe("op-2", second.append)

        bus.publish(make_event("op-1"))

        assert len(first) == 1
        assert second == []

    def test_latest_event_is_cached(self):
        bus = OperationEventBus()
        bus.publish(make_event(percent=8))
        bus.publish(make_event(percent=15))

        assert bus.get_latest("op-1").progress_percent == 15
        assert bus.get_latest("missing") is None

    def test_unsubscribe(self):
        bus = OperationEventBus()
        received = []
        unsubscribe = bus.subscribe("op-1", received.append)
        assert bus.subscriber_count("op-1") == 1

        unsubscribe()
        unsubscribe()
        bus.publish(make_event())

        assert received == []
        assert bus.subscriber_count("op-1") == 0

    def test_failing_subscriber_does_not_stop_others(self):
        bus = OperationEventBus()
        received = []

        def broken(event):
            raise RuntimeError("socket closed")

        bus.subscribe("op-1", broken)
        bus.subscribe("op-1", received.append)
        bus.publish(make_event())

        assert len(received) == 1

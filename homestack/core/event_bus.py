"""In-process publish/subscribe for operation events."""

from collections import defaultdict
from collections.abc import Callable

import structlog

from ..models.operation import StoreOperationEvent

logger = structlog.get_logger()

OperationEventHandler = Callable[[StoreOperationEvent], None]


class OperationEventBus:
    """Per-operation subscribers plus the latest event for late joiners.

    A late subscriber reads ``get_latest`` and then subscribes, so it may see
    the cached event once more on the live stream.
    """

    def __init__(self):
        self._subscribers: dict[str, list[OperationEventHandler]] = defaultdict(list)
        self._latest: dict[str, StoreOperationEvent] = {}

    def subscribe(self, operation_id: str, handler: OperationEventHandler) -> Callable[[], None]:
        """Register ``handler``; the returned callable unsubscribes it."""
        self._subscribers[operation_id].append(handler)

        def unsubscribe() -> None:
            handlers = self._subscribers.get(operation_id)
            if not handlers:
                return
            if handler in handlers:
                handlers.remove(handler)
            if not handlers:
                self._subscribers.pop(operation_id, None)

        return unsubscribe

    def publish(self, event: StoreOperationEvent) -> None:
        self._latest[event.operation_id] = event

        for handler in list(self._subscribers.get(event.operation_id, ())):
            try:
                handler(event)
            except Exception as e:
                logger.warning(
                    "Operation event subscriber failed",
                    operation_id=event.operation_id,
                    event_type=event.type.value,
                    error=str(e),
                )

    def get_latest(self, operation_id: str) -> StoreOperationEvent | None:
        return self._latest.get(operation_id)

    def subscriber_count(self, operation_id: str) -> int:
        return len(self._subscribers.get(operation_id, ()))

"""Change notifications raised by the balance store.

Subscribers (a dashboard, a cache warmer, tests) register a callable per
event name. Delivery is synchronous and best-effort: a failing subscriber is
logged and never affects the write that raised the event.
"""

from enum import Enum
from typing import Any, Callable, Dict, List

import structlog

logger = structlog.get_logger()


class BalanceEvent(str, Enum):
    BALANCES_CHANGED = "balances_changed"
    BLOCK_MAPPING_CHANGED = "block_mapping_changed"
    BALANCES_SAVE_FAILED = "balances_save_failed"


Handler = Callable[[BalanceEvent, Dict[str, Any]], None]


class EventChannel:
    """Observer registry for BalanceEvent notifications."""

    def __init__(self):
        self._subscribers: Dict[BalanceEvent, List[Handler]] = {}
        self.logger = logger.bind(component="event_channel")

    def subscribe(self, event: BalanceEvent, handler: Handler) -> None:
        handlers = self._subscribers.setdefault(event, [])
        if handler not in handlers:
            handlers.append(handler)

    def unsubscribe(self, event: BalanceEvent, handler: Handler) -> None:
        handlers = self._subscribers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self._subscribers.pop(event, None)

    def emit(self, event: BalanceEvent, **payload: Any) -> None:
        for handler in list(self._subscribers.get(event, [])):
            try:
                handler(event, payload)
            except Exception as e:
                self.logger.error(
                    "event_handler_failed",
                    event_name=event.value,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e),
                )

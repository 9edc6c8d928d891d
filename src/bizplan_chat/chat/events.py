from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from loguru import logger

RETRY_INITIATED = "retry.initiated"
RETRY_SUCCEEDED = "retry.succeeded"
RETRY_FAILED = "retry.failed"
RETRY_MAX_REACHED = "retry.max_reached"


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


@dataclass(frozen=True)
class ChatEvent:
    session_key: str
    type: str
    payload: dict
    created_at: str = field(default_factory=utc_now)


class EventEmitter:
    def __init__(self, *, max_events: int = 500):
        self._max_events = max(1, max_events)
        self._events: list[ChatEvent] = []
        self._listeners: list[Callable[[ChatEvent], None]] = []

    def subscribe(self, listener: Callable[[ChatEvent], None]) -> None:
        self._listeners.append(listener)

    def emit(self, session_key: str, event_type: str, payload: dict) -> None:
        event = ChatEvent(session_key, event_type, dict(payload))
        self._events.append(event)
        if len(self._events) > self._max_events:
            del self._events[: len(self._events) - self._max_events]
        logger.debug(f"event {event_type} session={session_key} payload={payload}")
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as ex:
                logger.warning(f"Event listener failed for {event_type}: {ex}")

    def events(self, session_key: str | None = None, event_type: str | None = None) -> list[ChatEvent]:
        return [
            e
            for e in self._events
            if (session_key is None or e.session_key == session_key)
            and (event_type is None or e.type == event_type)
        ]

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from loguru import logger
from pydantic import BaseModel, Field


class LongrunEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    session_id: str | None = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class EventBus:
    """A synchronous event bus between the workflow and its observers."""

    def __init__(self):
        self._subscribers: List[Callable[[LongrunEvent], None]] = []

    def subscribe(self, callback: Callable[[LongrunEvent], None]) -> None:
        """Register a callback to be executed when an event is emitted."""
        self._subscribers.append(callback)

    def emit(
        self,
        event_type: str,
        payload: Dict[str, Any] | None = None,
        session_id: str | None = None,
    ) -> LongrunEvent:
        """Construct and broadcast a LongrunEvent to all subscribers."""
        event = LongrunEvent(
            event_type=event_type,
            session_id=session_id,
            payload=payload or {},
        )

        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                # A failing observer must not stop the workflow
                logger.warning(f"[EVENTS] Subscriber failed on {event_type}: {e}")

        return event

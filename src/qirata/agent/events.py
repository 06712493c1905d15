"""Ordered streaming events for one execution.

Every execution emits ``start`` first, then any number of ``token`` or
``content`` events, then exactly one terminal event (``end``, ``error`` or
``interrupted``). Consumers read the events with ``async for``.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from ..errors import StreamProtocolError

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    START = "start"
    TOKEN = "token"
    CONTENT = "content"
    END = "end"
    ERROR = "error"
    INTERRUPTED = "interrupted"


TERMINAL_EVENTS = frozenset({EventType.END, EventType.ERROR, EventType.INTERRUPTED})


@dataclass
class StreamEvent:
    type: EventType
    session_id: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "session_id": self.session_id, **self.data}


class StreamEmitter:
    """Event channel for a single execution, backed by an asyncio.Queue."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self._queue: asyncio.Queue[Optional[StreamEvent]] = asyncio.Queue()
        self._started = False
        self._terminal: Optional[EventType] = None

    @property
    def started(self) -> bool:
        return self._started

    @property
    def closed(self) -> bool:
        return self._terminal is not None

    @property
    def terminal_event(self) -> Optional[EventType]:
        return self._terminal

    def start(self) -> bool:
        if self._started:
            raise StreamProtocolError(f"Stream for {self.session_id} already started")
        self._started = True
        return self._emit(EventType.START, {})

    def token(self, text: str) -> bool:
        return self._emit(EventType.TOKEN, {"data": text})

    def content(self, fragment: Dict[str, Any]) -> bool:
        return self._emit(EventType.CONTENT, {"data": fragment})

    def end(self, **payload: Any) -> bool:
        return self._emit(EventType.END, payload)

    def error(self, message: str) -> bool:
        return self._emit(EventType.ERROR, {"error": message})

    def interrupted(self, reason: Optional[str] = None) -> bool:
        return self._emit(EventType.INTERRUPTED, {"reason": reason or "user request"})

    def _emit(self, event_type: EventType, data: Dict[str, Any]) -> bool:
        """Queue an event. Returns False when the stream is already closed."""
        if self._terminal is not None:
            logger.debug(
                "Dropping %s event for %s after %s",
                event_type.value,
                self.session_id,
                self._terminal.value,
            )
            return False
        if not self._started:
            raise StreamProtocolError(
                f"'{event_type.value}' emitted before 'start' for {self.session_id}"
            )
        event = StreamEvent(type=event_type, session_id=self.session_id, data=data)
        self._queue.put_nowait(event)
        if event.is_terminal:
            self._terminal = event_type
            self._queue.put_nowait(None)
        return True

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def collect(self) -> List[StreamEvent]:
        """Drain the stream into a list (waits for the terminal event)."""
        return [event async for event in self]

import pytest

from qirata.agent.events import EventType, StreamEmitter
from qirata.errors import StreamProtocolError


@pytest.mark.asyncio
async def test_events_arrive_in_order() -> None:
    """Events are delivered in the order they were emitted."""
    emitter = StreamEmitter("s1")
    emitter.start()
    emitter.token("Hel")
    emitter.token("lo")
    emitter.content({"platform": "linkedin"})
    emitter.end(content="Hello")
    events = await emitter.collect()
    assert [e.type for e in events] == [
        EventType.START,
        EventType.TOKEN,
        EventType.TOKEN,
        EventType.CONTENT,
        EventType.END,
    ]
    assert events[-1].to_dict() == {"type": "end", "session_id": "s1", "content": "Hello"}


@pytest.mark.asyncio
async def test_nothing_after_terminal_event() -> None:
    """Emits after a terminal event are dropped."""
    emitter = StreamEmitter("s1")
    emitter.start()
    assert emitter.interrupted() is True
    assert emitter.token("late") is False
    assert emitter.end(content="late") is False
    assert emitter.error("late") is False
    events = await emitter.collect()
    assert [e.type for e in events] == [EventType.START, EventType.INTERRUPTED]
    assert events[-1].data == {"reason": "user request"}
    assert emitter.terminal_event is EventType.INTERRUPTED


def test_emit_before_start_is_rejected() -> None:
    """Emitting before start is a protocol error."""
    emitter = StreamEmitter("s1")
    with pytest.raises(StreamProtocolError):
        emitter.token("too early")


def test_start_twice_is_rejected() -> None:
    """A second start is a protocol error."""
    emitter = StreamEmitter("s1")
    emitter.start()
    with pytest.raises(StreamProtocolError):
        emitter.start()


@pytest.mark.asyncio
async def test_error_event_payload() -> None:
    """The error event carries only the sanitized message."""
    emitter = StreamEmitter("s1")
    emitter.start()
    emitter.error("An error occurred while processing your request.")
    events = await emitter.collect()
    assert events[-1].is_terminal
    assert events[-1].to_dict() == {
        "type": "error",
        "session_id": "s1",
        "error": "An error occurred while processing your request.",
    }
    assert emitter.closed

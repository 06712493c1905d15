import time

import pytest

from qirata.agent.registry import CancellationToken, SessionRegistry
from qirata.errors import ExecutionCancelled
from qirata.models import ExecutionStatus


def test_begin_registers_running_token() -> None:
    """begin registers a running token for the session."""
    registry = SessionRegistry()
    token = registry.begin("s1")
    assert token.running
    assert registry.is_active("s1")
    assert registry.status("s1") is ExecutionStatus.RUNNING
    assert len(registry) == 1


def test_begin_cancels_previous_execution() -> None:
    """A second begin for the same session cancels the first token."""
    registry = SessionRegistry()
    first = registry.begin("s1")
    second = registry.begin("s1")
    assert first.cancelled
    assert first.reason == "superseded by a newer message"
    assert second.running
    assert registry.is_active("s1")


def test_sessions_are_independent() -> None:
    """Cancelling one session leaves the others running."""
    registry = SessionRegistry()
    a = registry.begin("a")
    b = registry.begin("b")
    assert registry.cancel("a", "stop")
    assert a.cancelled
    assert not b.cancelled
    assert registry.is_active("b")


def test_cancel_unknown_session_returns_false() -> None:
    """Cancelling a session that never started returns False."""
    assert SessionRegistry().cancel("missing") is False


def test_cancel_notifies_listeners_once() -> None:
    """Listeners hear the first cancel only."""
    token = CancellationToken("s1")
    seen = []
    token.add_listener(seen.append)
    assert token.cancel("user request") is True
    assert token.cancel("again") is False
    assert seen == ["user request"]


def test_raise_if_cancelled() -> None:
    """raise_if_cancelled raises with the cancel reason."""
    token = CancellationToken("s1")
    token.raise_if_cancelled()
    token.cancel("stop")
    with pytest.raises(ExecutionCancelled) as exc:
        token.raise_if_cancelled()
    assert exc.value.reason == "stop"


def test_sealed_token_cannot_be_cancelled() -> None:
    """A sealed token ignores cancel."""
    token = CancellationToken("s1")
    token.seal()
    assert token.cancel("late") is False
    assert not token.cancelled


def test_seal_after_cancel_raises() -> None:
    """Sealing an already cancelled token raises."""
    token = CancellationToken("s1")
    token.cancel("stop")
    with pytest.raises(ExecutionCancelled):
        token.seal()


def test_release_keeps_successor() -> None:
    """Releasing a superseded token must not drop the newer execution."""
    registry = SessionRegistry()
    first = registry.begin("s1")
    second = registry.begin("s1")
    registry.release("s1", first, ExecutionStatus.CANCELLED)
    assert registry.is_active("s1")
    registry.release("s1", second, ExecutionStatus.COMPLETED)
    assert not registry.is_active("s1")
    assert registry.status("s1") is ExecutionStatus.IDLE
    assert second.status is ExecutionStatus.COMPLETED


def test_sweep_inactive_drops_idle_tokens() -> None:
    """Tokens idle past the TTL are cancelled and dropped."""
    registry = SessionRegistry()
    idle = registry.begin("idle")
    busy = registry.begin("busy")
    idle.last_activity = time.monotonic() - 120
    assert registry.sweep_inactive(60) == 1
    assert idle.cancelled
    assert idle.reason == "inactive"
    assert not busy.cancelled
    assert not registry.is_active("idle")


def test_shutdown_cancels_everything() -> None:
    """shutdown cancels and forgets every token."""
    registry = SessionRegistry()
    tokens = [registry.begin(f"s{i}") for i in range(3)]
    registry.shutdown()
    assert all(t.cancelled for t in tokens)
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_wait_returns_after_cancel() -> None:
    """wait returns once the token is cancelled."""
    token = CancellationToken("s1")
    token.cancel()
    await token.wait()
    assert token.cancelled

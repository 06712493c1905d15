"""Session registry: at most one running execution per session.

``begin`` cancels whatever is running for the session before installing a new
token, so the newest message always wins. Cancellation is cooperative: the
token flips a flag that stages check at suspension points and notifies its
listeners (the execution's stream emitter) right away.
"""

import asyncio
import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from ..errors import ExecutionCancelled
from ..models import ExecutionStatus

logger = logging.getLogger(__name__)

CancelListener = Callable[[Optional[str]], None]


class CancellationToken:
    """Cooperative cancellation signal for one execution."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.status = ExecutionStatus.RUNNING
        self.reason: Optional[str] = None
        self.last_activity = time.monotonic()
        self._event = asyncio.Event()
        self._listeners: List[CancelListener] = []
        self._sealed = False

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def running(self) -> bool:
        return self.status is ExecutionStatus.RUNNING and not self.cancelled

    def add_listener(self, listener: CancelListener) -> None:
        self._listeners.append(listener)

    def cancel(self, reason: Optional[str] = None) -> bool:
        """Signal cancellation. Returns False if already cancelled, sealed or finished."""
        if not self.running or self._sealed:
            return False
        self.reason = reason
        self._event.set()
        for listener in self._listeners:
            listener(reason)
        return True

    def seal(self) -> None:
        """Make the token uncancellable; used once results are being committed."""
        self.raise_if_cancelled()
        self._sealed = True

    def raise_if_cancelled(self) -> None:
        self.last_activity = time.monotonic()
        if self._event.is_set():
            raise ExecutionCancelled(self.reason)

    async def wait(self) -> None:
        await self._event.wait()

    def finish(self, status: ExecutionStatus) -> None:
        self.status = status
        self._listeners.clear()


class SessionRegistry:
    """Maps session ids to the token of their running execution."""

    def __init__(self) -> None:
        self._tokens: Dict[str, CancellationToken] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)

    def begin(self, session_id: str) -> CancellationToken:
        """Cancel any running execution for session_id and register a new one."""
        with self._lock:
            if self._cancel_locked(session_id, "superseded by a newer message"):
                logger.info("Cancelled previous execution for session %s", session_id)
            token = CancellationToken(session_id)
            self._tokens[session_id] = token
            return token

    def cancel(self, session_id: str, reason: Optional[str] = None) -> bool:
        """Signal the running execution for session_id. True if one was signaled."""
        with self._lock:
            return self._cancel_locked(session_id, reason)

    def _cancel_locked(self, session_id: str, reason: Optional[str]) -> bool:
        token = self._tokens.get(session_id)
        if token is None:
            return False
        return token.cancel(reason)

    def is_active(self, session_id: str) -> bool:
        with self._lock:
            token = self._tokens.get(session_id)
            return token is not None and token.running

    def status(self, session_id: str) -> ExecutionStatus:
        with self._lock:
            token = self._tokens.get(session_id)
        if token is None:
            return ExecutionStatus.IDLE
        return token.status

    def release(
        self, session_id: str, token: CancellationToken, status: ExecutionStatus
    ) -> None:
        """Record how an execution ended and return the session to idle.

        The entry is only removed while it still holds ``token``; a successor
        registered by a newer ``begin`` is left untouched.
        """
        token.finish(status)
        with self._lock:
            if self._tokens.get(session_id) is token:
                del self._tokens[session_id]
        logger.debug("Session %s released with status %s", session_id, status.value)

    def sweep_inactive(self, max_idle_seconds: float) -> int:
        """Cancel and drop executions that have not reached a checkpoint recently."""
        cutoff = time.monotonic() - max_idle_seconds
        with self._lock:
            stale = [
                (sid, token)
                for sid, token in self._tokens.items()
                if token.last_activity < cutoff
            ]
            for session_id, token in stale:
                token.cancel("inactive")
                del self._tokens[session_id]
        if stale:
            logger.info("Swept %d inactive session executions", len(stale))
        return len(stale)

    def shutdown(self) -> None:
        with self._lock:
            for token in self._tokens.values():
                token.cancel("server shutdown")
            self._tokens.clear()

"""Conversation memory: a bounded recent window plus a rolling summary.

Every ``summary_threshold`` messages the window is compacted: the previous
summary, the last ``summary_keep_recent`` exchanges and the article summary are
folded into a new summary by one model call, then the window is truncated.
"""

import logging
from typing import List, Optional

from ..errors import GenerationError
from ..models import MemorySnapshot, MessagePair, SessionContext, SessionState
from ..services.memory_store import InMemoryMemoryStore, MemoryStore
from ..settings import Settings, get_settings
from .base import Stage, StageContext, StateUpdate
from .gateway import ModelGateway
from .registry import CancellationToken

logger = logging.getLogger(__name__)


class ConversationMemoryManager:
    """Owns each session's message window and rolling summary."""

    def __init__(
        self,
        gateway: ModelGateway,
        store: MemoryStore | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        if settings.summary_keep_recent >= settings.window_size:
            raise ValueError("summary_keep_recent must be smaller than window_size")
        self._gateway = gateway
        self._store = store or InMemoryMemoryStore()
        self._settings = settings
        self.window_size = settings.window_size
        self.threshold = settings.summary_threshold
        self.keep_recent = settings.summary_keep_recent

    @property
    def store(self) -> MemoryStore:
        return self._store

    async def init(self) -> None:
        await self._store.init()

    async def shutdown(self) -> None:
        await self._store.close()

    async def load(self, session_id: str) -> MemorySnapshot:
        """Return the session's window and summary (empty for unknown sessions)."""
        snapshot = await self._store.get(session_id)
        return snapshot or MemorySnapshot()

    async def load_or_seed(self, session_id: str, context: SessionContext) -> MemorySnapshot:
        """Return stored memory, seeding it from the caller's persisted context if absent."""
        async with self._store.lock(session_id):
            snapshot = await self._store.get(session_id)
            if snapshot is not None:
                return snapshot
            messages = list(context.recent_messages)[-self.window_size:]
            snapshot = MemorySnapshot(
                recent_messages=messages,
                rolling_summary=context.rolling_summary,
                total_message_count=max(
                    context.total_message_count, len(context.recent_messages)
                ),
            )
            await self._store.put(session_id, snapshot)
            logger.debug(
                "Seeded memory for session %s with %d messages", session_id, len(messages)
            )
            return snapshot

    def should_summarize(self, total_message_count: int) -> bool:
        return (
            total_message_count >= self.threshold
            and total_message_count % self.threshold == 0
        )

    async def summarize(
        self,
        rolling_summary: Optional[str],
        recent_window: List[MessagePair],
        reference_context: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> Optional[str]:
        """Fold the recent window into a new summary.

        Returns ``rolling_summary`` unchanged when the model call fails or
        answers with nothing.
        """
        summary = await self._generate_summary(
            rolling_summary, recent_window, reference_context, token
        )
        return rolling_summary if summary is None else summary

    async def _generate_summary(
        self,
        rolling_summary: Optional[str],
        recent_window: List[MessagePair],
        reference_context: Optional[str],
        token: Optional[CancellationToken],
    ) -> Optional[str]:
        window = recent_window[-self.keep_recent:]
        transcript = "\n".join(
            f"User: {m.user_message}\nAssistant: {m.ai_response}" for m in window
        )
        prompt = (
            f"Previous summary:\n{rolling_summary or self._settings.summary_sentinel}\n\n"
            f"Article summary:\n{reference_context or '(none)'}\n\n"
            f"Recent messages:\n{transcript or '(none)'}"
        )
        messages = [
            {"role": "system", "content": self._settings.summary_system_prompt},
            {"role": "user", "content": prompt},
        ]
        try:
            if token is not None:
                token.raise_if_cancelled()
            summary = await self._gateway.complete_text(messages)
            if token is not None:
                token.raise_if_cancelled()
        except GenerationError as e:
            logger.warning("Summarization failed, keeping previous summary: %s", e)
            return None
        summary = (summary or "").strip()
        if not summary:
            logger.warning("Summarization returned nothing, keeping previous summary")
            return None
        return summary

    async def compact(
        self,
        snapshot: MemorySnapshot,
        reference_context: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> MemorySnapshot:
        """Summarize and truncate the window when the message count hits the threshold."""
        if not self.should_summarize(snapshot.total_message_count):
            return snapshot
        summary = await self._generate_summary(
            snapshot.rolling_summary, snapshot.recent_messages, reference_context, token
        )
        if summary is None:
            # Failed compaction keeps the full window; nothing was summarized.
            return snapshot
        logger.info(
            "Compacted memory at message %d (window %d -> %d)",
            snapshot.total_message_count,
            len(snapshot.recent_messages),
            min(len(snapshot.recent_messages), self.keep_recent),
        )
        return MemorySnapshot(
            recent_messages=snapshot.recent_messages[-self.keep_recent:],
            rolling_summary=summary,
            total_message_count=snapshot.total_message_count,
        )

    async def commit(
        self,
        session_id: str,
        user_message: str,
        ai_response: str,
        snapshot: Optional[MemorySnapshot] = None,
    ) -> MemorySnapshot:
        """Append one exchange on top of ``snapshot`` (or the stored memory) and persist it."""
        async with self._store.lock(session_id):
            base = snapshot or await self._store.get(session_id) or MemorySnapshot()
            messages = list(base.recent_messages)
            messages.append(MessagePair(user_message=user_message, ai_response=ai_response))
            updated = MemorySnapshot(
                recent_messages=messages[-self.window_size:],
                rolling_summary=base.rolling_summary,
                total_message_count=base.total_message_count + 1,
            )
            await self._store.put(session_id, updated)
        return updated

    async def clear(self, session_id: str) -> bool:
        async with self._store.lock(session_id):
            cleared = await self._store.delete(session_id)
        logger.info("Cleared memory for session %s", session_id)
        return cleared

    async def sweep_inactive(self, max_idle_seconds: float) -> int:
        return await self._store.sweep_inactive(max_idle_seconds)


class SummarizeMemoryStage(Stage):
    """First stage of every execution: compacts memory when it is due."""

    name = "summarize_memory"

    def __init__(self, memory: ConversationMemoryManager) -> None:
        self._memory = memory

    async def run(self, state: SessionState, ctx: StageContext) -> StateUpdate:
        snapshot = state.snapshot()
        reference = state.post_context.summary if state.post_context else None
        compacted = await self._memory.compact(snapshot, reference, ctx.token)
        if compacted is snapshot:
            return {}
        return {
            "recent_messages": compacted.recent_messages,
            "rolling_summary": compacted.rolling_summary,
        }

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from ..errors import ExecutionCancelled
from ..models import (
    ChatResult,
    ExecutionResult,
    ExecutionStatus,
    MemorySnapshot,
    ResultKind,
    SessionContext,
    SessionState,
)
from ..services.documents import DocumentRepository
from ..settings import Settings, get_settings
from .base import StageContext
from .events import EventType, StreamEmitter
from .gateway import ModelGateway, OpenAIModelGateway
from .graph import StageGraphExecutor, build_chat_graph
from .memory import ConversationMemoryManager
from .registry import CancellationToken, SessionRegistry

logger = logging.getLogger(__name__)

ERROR_MESSAGE = "An error occurred while processing your request."


def _memory_text(result: ExecutionResult) -> str:
    """Assistant side of the exchange as remembered in the window."""
    if result.kind is ResultKind.SOCIAL_POST and result.draft is not None:
        return f"{result.text}\n\n{result.draft.main_text}"
    return result.text


def _end_payload(result: ExecutionResult, memory: MemorySnapshot) -> Dict[str, Any]:
    return {
        "content": result.text,
        "suggested_options": list(result.suggested_options),
        "response_kind": result.kind.value,
        "platform": result.platform.value if result.platform else None,
        "structured_draft": result.draft.to_dict() if result.draft else None,
        "edited_post_id": result.edited_post_id,
        "clarification": result.clarification,
        "summary": memory.rolling_summary,
    }


class ChatOrchestrator:
    """Entry point for chat traffic: one graph execution per submitted message."""

    def __init__(
        self,
        gateway: ModelGateway | None = None,
        memory: ConversationMemoryManager | None = None,
        registry: SessionRegistry | None = None,
        documents: DocumentRepository | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.gateway = gateway or OpenAIModelGateway(settings=self.settings)
        self.memory = memory or ConversationMemoryManager(self.gateway, settings=self.settings)
        self.registry = registry or SessionRegistry()
        self.documents = documents
        self.executor = StageGraphExecutor(build_chat_graph(self.memory))
        self._tasks: Set[asyncio.Task] = set()
        self._running: Dict[str, asyncio.Task] = {}
        self._streams: Dict[StreamEmitter, CancellationToken] = {}

    async def init(self) -> None:
        await self.memory.init()
        logger.info("Chat orchestrator ready")

    async def shutdown(self) -> None:
        self.registry.shutdown()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.memory.shutdown()
        logger.info("Chat orchestrator stopped")

    async def submit(
        self, session_id: str, message: str, context: SessionContext | None = None
    ) -> StreamEmitter:
        """Start an execution for message and return its event stream.

        A running execution for the same session is cancelled first; the new
        one waits for it to wind down before reading memory.
        """
        token = self.registry.begin(session_id)
        emitter = StreamEmitter(session_id)
        emitter.start()
        token.add_listener(emitter.interrupted)
        self._streams[emitter] = token

        previous = self._running.get(session_id)
        task = asyncio.create_task(
            self._execute(
                session_id, message, context or SessionContext(), token, emitter, previous
            )
        )
        self._tasks.add(task)
        self._running[session_id] = task
        task.add_done_callback(lambda t: self._forget(session_id, t))
        logger.info("Submitted message for session %s", session_id)
        return emitter

    def _forget(self, session_id: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if self._running.get(session_id) is task:
            del self._running[session_id]

    async def _execute(
        self,
        session_id: str,
        message: str,
        context: SessionContext,
        token: CancellationToken,
        emitter: StreamEmitter,
        previous: Optional[asyncio.Task],
    ) -> None:
        status = ExecutionStatus.FAILED
        try:
            if previous is not None and not previous.done():
                await asyncio.wait({previous})
            token.raise_if_cancelled()

            snapshot = await self.memory.load_or_seed(session_id, context)
            state = SessionState(
                session_id=session_id,
                user_message=message,
                post_context=context.post_context,
                recent_messages=list(snapshot.recent_messages),
                rolling_summary=snapshot.rolling_summary,
                total_message_count=snapshot.total_message_count,
                cached_social_posts=list(context.cached_social_posts),
                last_intent=context.last_intent,
                last_platform=context.last_platform,
            )
            ctx = StageContext(
                gateway=self.gateway,
                token=token,
                emitter=emitter,
                settings=self.settings,
                documents=self.documents,
            )
            outcome = await self.executor.execute(state, ctx)
            status = outcome.status

            if outcome.status is ExecutionStatus.COMPLETED:
                result = outcome.state.result
                token.seal()
                memory = await self.memory.commit(
                    session_id, message, _memory_text(result), outcome.state.snapshot()
                )
                emitter.end(**_end_payload(result, memory))
            elif outcome.status is ExecutionStatus.CANCELLED:
                emitter.interrupted(outcome.detail)
            else:
                emitter.error(ERROR_MESSAGE)
        except ExecutionCancelled as e:
            status = ExecutionStatus.CANCELLED
            emitter.interrupted(e.reason)
        except asyncio.CancelledError:
            status = ExecutionStatus.CANCELLED
            emitter.interrupted("server shutdown")
            raise
        except Exception:
            logger.exception("Execution for session %s failed", session_id)
            status = ExecutionStatus.FAILED
            emitter.error(ERROR_MESSAGE)
        finally:
            self.registry.release(session_id, token, status)
            self._streams.pop(emitter, None)
            if not emitter.closed:
                emitter.error(ERROR_MESSAGE)

    async def run(
        self, session_id: str, message: str, context: SessionContext | None = None
    ) -> ChatResult:
        """Submit message and wait for the terminal event."""
        emitter = await self.submit(session_id, message, context)
        streamed = ""
        result = ChatResult(session_id=session_id, is_complete=False, content="")
        async for event in emitter:
            if event.type is EventType.TOKEN:
                streamed += event.data.get("data", "")
            elif event.type is EventType.END:
                draft = event.data.get("structured_draft")
                result = ChatResult(
                    session_id=session_id,
                    is_complete=True,
                    content=event.data.get("content", ""),
                    summary=event.data.get("summary"),
                    is_social_post=event.data.get("response_kind") == ResultKind.SOCIAL_POST.value,
                    platform=event.data.get("platform"),
                    structured_draft=draft,
                    suggested_options=event.data.get("suggested_options") or [],
                )
            elif event.type is EventType.ERROR:
                result = ChatResult(
                    session_id=session_id,
                    is_complete=False,
                    content=streamed,
                    error=event.data.get("error"),
                )
            elif event.type is EventType.INTERRUPTED:
                result = ChatResult(
                    session_id=session_id,
                    is_complete=False,
                    content=streamed,
                    interrupted=True,
                )
        return result

    def interrupt(self, session_id: str, reason: str | None = None) -> bool:
        interrupted = self.registry.cancel(session_id, reason or "user request")
        if interrupted:
            logger.info("Interrupted session %s", session_id)
        return interrupted

    def interrupt_stream(self, emitter: StreamEmitter, reason: str | None = None) -> bool:
        """Cancel the execution behind emitter, never a newer one for the same session."""
        token = self._streams.get(emitter)
        if token is None or not token.cancel(reason or "user request"):
            return False
        logger.info("Interrupted stream for session %s", emitter.session_id)
        return True

    async def clear_memory(self, session_id: str) -> bool:
        return await self.memory.clear(session_id)

    async def test_connection(self) -> bool:
        return await self.gateway.ping()

    def get_workflow_status(self, session_id: str) -> Dict[str, Any]:
        return {
            "session_id": session_id,
            "is_active": self.registry.is_active(session_id),
            "status": self.registry.status(session_id).value,
        }

    async def sweep_inactive(self) -> int:
        """Drop idle executions and memories older than the inactivity TTL."""
        ttl = self.settings.session_inactive_ttl_seconds
        swept = self.registry.sweep_inactive(ttl)
        swept += await self.memory.sweep_inactive(ttl)
        return swept


def get_orchestrator() -> ChatOrchestrator:
    """Return the process-wide orchestrator, creating a default one on first use."""
    global _ORCHESTRATOR
    try:
        return _ORCHESTRATOR
    except NameError:
        _ORCHESTRATOR = ChatOrchestrator()
        return _ORCHESTRATOR


def set_orchestrator(orchestrator: ChatOrchestrator) -> None:
    global _ORCHESTRATOR
    _ORCHESTRATOR = orchestrator

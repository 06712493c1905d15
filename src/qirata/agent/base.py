"""Shared plumbing for graph stages: the stage context, base class and fallbacks."""

import logging
from contextlib import aclosing
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel

from ..errors import MissingUpstreamField
from ..models import ExecutionResult, MessagePair, ResultKind, SessionState
from ..services.documents import DocumentRepository
from ..settings import Settings
from .events import StreamEmitter
from .gateway import ChatMessages, ModelGateway
from .registry import CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)
StateUpdate = Dict[str, Any]

FALLBACK_MESSAGE = (
    "Sorry, I couldn't complete that request right now. "
    "Please try again in a moment."
)
GENERIC_OPTIONS = [
    "Summarize the article",
    "Create a LinkedIn post",
    "Create a Twitter post",
]


def fallback_result() -> ExecutionResult:
    return ExecutionResult(
        kind=ResultKind.ANSWER,
        text=FALLBACK_MESSAGE,
        suggested_options=list(GENERIC_OPTIONS),
    )


def clarification_result(text: str, options: List[str]) -> ExecutionResult:
    return ExecutionResult(
        kind=ResultKind.ANSWER,
        text=text,
        suggested_options=options,
        clarification=True,
    )


def history_messages(pairs: List[MessagePair], limit: int) -> ChatMessages:
    """Recent exchanges as alternating user/assistant chat messages."""
    messages: ChatMessages = []
    for pair in pairs[-limit:] if limit else []:
        messages.append({"role": "user", "content": pair.user_message})
        messages.append({"role": "assistant", "content": pair.ai_response})
    return messages


def history_digest(pairs: List[MessagePair], limit: int, width: int = 200) -> str:
    """Compact one-line-per-turn history for classifier prompts."""
    lines = []
    for pair in pairs[-limit:] if limit else []:
        user = pair.user_message[:width]
        ai = pair.ai_response[:width]
        lines.append(f"user: {user}\nassistant: {ai}")
    return "\n".join(lines)


@dataclass
class StageContext:
    """Collaborators a stage may use during one execution.

    Every gateway call goes through this context so that the session's
    cancellation token is checked right before the call and right after it.
    """

    gateway: ModelGateway
    token: CancellationToken
    emitter: StreamEmitter
    settings: Settings
    documents: Optional[DocumentRepository] = None

    async def structured(
        self, messages: ChatMessages, schema: Type[T], *, model: str | None = None
    ) -> T:
        self.token.raise_if_cancelled()
        result = await self.gateway.complete_structured(messages, schema, model=model)
        self.token.raise_if_cancelled()
        return result

    async def text(self, messages: ChatMessages, *, model: str | None = None) -> str:
        self.token.raise_if_cancelled()
        result = await self.gateway.complete_text(messages, model=model)
        self.token.raise_if_cancelled()
        return result

    async def stream(
        self, messages: ChatMessages, *, model: str | None = None
    ) -> AsyncIterator[str]:
        self.token.raise_if_cancelled()
        async with aclosing(self.gateway.stream_text(messages, model=model)) as chunks:
            async for chunk in chunks:
                self.token.raise_if_cancelled()
                yield chunk
        self.token.raise_if_cancelled()

    async def reference_text(
        self, state: SessionState, *, full: bool
    ) -> Tuple[str, StateUpdate]:
        """Return article text for prompts, fetching the full text when needed.

        When ``full`` is requested and only a summary is cached, the document
        repository is asked for the full text and the returned update caches it
        on the state.
        """
        post = state.post_context
        if post is None:
            return "", {}
        if not full:
            return post.summary or post.full_text, {}
        if post.full_text:
            return post.full_text, {}
        if post.document_id and self.documents is not None:
            self.token.raise_if_cancelled()
            text = await self.documents.get_full_text(post.document_id)
            self.token.raise_if_cancelled()
            if text:
                logger.info(
                    "Loaded full text of document %s for session %s",
                    post.document_id,
                    state.session_id,
                )
                return text, {"post_context": replace(post, full_text=text)}
        return post.summary, {}


class Stage:
    """One step of the graph: reads the state, returns a partial update."""

    name = "stage"

    async def run(self, state: SessionState, ctx: StageContext) -> StateUpdate:
        raise NotImplementedError

    def require(self, value: Any, field_name: str) -> Any:
        if value is None:
            raise MissingUpstreamField(self.name, field_name)
        return value

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"

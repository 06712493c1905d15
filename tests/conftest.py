import asyncio
import sys
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional


_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

import pytest  # noqa: E402

from qirata.agent.base import StageContext  # noqa: E402
from qirata.agent.events import StreamEmitter  # noqa: E402
from qirata.agent.gateway import ModelGateway  # noqa: E402
from qirata.agent.memory import ConversationMemoryManager  # noqa: E402
from qirata.agent.orchestrator import ChatOrchestrator  # noqa: E402
from qirata.agent.registry import CancellationToken  # noqa: E402
from qirata.errors import GenerationError  # noqa: E402
from qirata.services.memory_store import InMemoryMemoryStore  # noqa: E402
from qirata.settings import Settings  # noqa: E402


class StubGateway(ModelGateway):
    """Scripted gateway: answers structured calls by schema class.

    A scripted response may be a dict (validated against the schema), a
    model instance, an exception to raise, or a list of those consumed in
    order. ``blocker`` makes every call wait until the event is set;
    ``chunk_gate`` holds a stream after its first chunk. A stream chunk that
    is an exception is raised in place.
    """

    def __init__(
        self,
        structured: Optional[Dict[type, Any]] = None,
        texts: Optional[List[Any]] = None,
        chunks: Optional[List[Any]] = None,
        fail: bool = False,
    ) -> None:
        self.structured = dict(structured or {})
        self.texts = list(texts or [])
        self.chunks = list(chunks or [])
        self.fail = fail
        self.blocker: Optional[asyncio.Event] = None
        self.chunk_gate: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()
        self.calls: List[tuple] = []

    async def _pause(self) -> None:
        self.entered.set()
        if self.blocker is not None:
            await self.blocker.wait()

    async def complete_structured(self, messages, schema, *, model=None):
        self.calls.append(("structured", schema.__name__, messages))
        await self._pause()
        if self.fail:
            raise GenerationError("stub gateway failure")
        response = self.structured.get(schema)
        if isinstance(response, list):
            response = response.pop(0) if response else None
        if response is None:
            raise GenerationError(f"no scripted response for {schema.__name__}")
        if isinstance(response, Exception):
            raise response
        if isinstance(response, dict):
            return schema.model_validate(response)
        return response

    async def complete_text(self, messages, *, model=None) -> str:
        self.calls.append(("text", None, messages))
        await self._pause()
        if self.fail or not self.texts:
            raise GenerationError("stub gateway failure")
        response = self.texts.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def stream_text(self, messages, *, model=None) -> AsyncIterator[str]:
        self.calls.append(("stream", None, messages))
        await self._pause()
        if self.fail:
            raise GenerationError("stub gateway failure")
        for index, chunk in enumerate(self.chunks):
            if index and self.chunk_gate is not None:
                await self.chunk_gate.wait()
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    async def ping(self) -> bool:
        return not self.fail

    def schemas_called(self) -> List[str]:
        return [name for kind, name, _ in self.calls if kind == "structured"]


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from .env, without Redis."""
    return Settings(_env_file=None, openai_api_key="test-key", redis_url=None)


@pytest.fixture
def gateway() -> StubGateway:
    """Scripted gateway with nothing scripted yet."""
    return StubGateway()


@pytest.fixture
def memory(gateway: StubGateway, settings: Settings) -> ConversationMemoryManager:
    """Memory manager over the in-memory store."""
    return ConversationMemoryManager(gateway, store=InMemoryMemoryStore(), settings=settings)


@pytest.fixture
def orchestrator(
    gateway: StubGateway, memory: ConversationMemoryManager, settings: Settings
) -> ChatOrchestrator:
    """Orchestrator wired to the scripted gateway and in-memory memory."""
    return ChatOrchestrator(gateway=gateway, memory=memory, settings=settings)


@pytest.fixture
def make_ctx(gateway: StubGateway, settings: Settings) -> Callable[..., StageContext]:
    """Build a StageContext with a fresh token and a started emitter."""

    def _make(session_id: str = "s1", documents=None) -> StageContext:
        emitter = StreamEmitter(session_id)
        emitter.start()
        return StageContext(
            gateway=gateway,
            token=CancellationToken(session_id),
            emitter=emitter,
            settings=settings,
            documents=documents,
        )

    return _make

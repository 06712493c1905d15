import asyncio
import json
import logging
from contextlib import asynccontextmanager, suppress
from dataclasses import asdict
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .agent import ChatOrchestrator, ConversationMemoryManager, OpenAIModelGateway
from .agent import get_orchestrator, set_orchestrator
from .agent.events import StreamEmitter
from .models import SessionContext
from .services.documents import InMemoryDocumentRepository
from .services.memory_store import build_memory_store
from .settings import get_settings


def setup_server_logging() -> logging.Logger:
    """Configure the ``qirata`` logger tree and return the server logger."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger("qirata")
    logger = logging.getLogger("qirata.server")
    if root.handlers:
        return logger

    root.setLevel(get_settings().log_level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    root.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    root.addHandler(fh)

    return logger


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


LOGGER = setup_server_logging()
settings = get_settings()


async def _sweep_forever(orchestrator: ChatOrchestrator, interval: float) -> None:
    """Periodically drop idle executions and memories until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            swept = await orchestrator.sweep_inactive()
        except (OSError, ConnectionError, TimeoutError) as e:
            LOGGER.warning("Inactive session sweep failed: %s", e)
            continue
        except Exception as e:
            LOGGER.exception("Unexpected error during inactive session sweep: %s", e)
            continue
        if swept:
            LOGGER.info("Swept %d inactive session entries", swept)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the orchestrator (Redis-backed memory when reachable) and run the sweeper."""
    gateway = OpenAIModelGateway(settings=settings)
    store = await build_memory_store(settings.context_ttl_seconds)
    LOGGER.info("Session memory backend: %s", type(store).__name__)
    orchestrator = ChatOrchestrator(
        gateway=gateway,
        memory=ConversationMemoryManager(gateway, store=store, settings=settings),
        documents=InMemoryDocumentRepository(),
        settings=settings,
    )
    await orchestrator.init()
    set_orchestrator(orchestrator)
    sweeper = asyncio.create_task(
        _sweep_forever(orchestrator, settings.sweep_interval_seconds)
    )

    yield

    LOGGER.info("Shutting down...")
    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    await orchestrator.shutdown()


app = FastAPI(
    title="Qirata Chat Orchestrator",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ChatRequest(BaseModel):
    session_id: str = Field(min_length=1)
    message: str = Field(min_length=1)
    context: Optional[Dict[str, Any]] = None


@app.get("/health")
async def health() -> dict[str, Any]:
    """Health check for load balancers and monitoring."""
    return {"status": "ok"}


@app.get("/health/model")
async def health_model() -> dict[str, Any]:
    """Report whether the model gateway is reachable."""
    ok = await get_orchestrator().test_connection()
    return {"status": "ok" if ok else "unavailable", "model": settings.model}


@app.post("/chat")
async def chat(request: ChatRequest) -> dict[str, Any]:
    """Run one message to completion and return the final result."""
    try:
        context = SessionContext.from_dict(request.context)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise HTTPException(status_code=422, detail=f"Invalid context: {e}") from e
    result = await get_orchestrator().run(request.session_id, request.message.strip(), context)
    return asdict(result)


@app.delete("/sessions/{session_id}/memory")
async def clear_session_memory(session_id: str) -> dict[str, Any]:
    """Drop the stored window and rolling summary for a session.

    Returns:
        dict[str, Any]: session_id and whether anything was stored.
    """
    cleared = await get_orchestrator().clear_memory(session_id)
    return {"session_id": session_id, "cleared": cleared}


@app.get("/sessions/{session_id}/status")
async def session_status(session_id: str) -> dict[str, Any]:
    """Report whether an execution is currently running for the session."""
    return get_orchestrator().get_workflow_status(session_id)


async def _forward_events(websocket: WebSocket, emitter: StreamEmitter) -> None:
    try:
        async for event in emitter:
            await websocket.send_json(event.to_dict())
    except (WebSocketDisconnect, RuntimeError) as e:
        LOGGER.info("Stopped streaming to session %s: %s", emitter.session_id, e)


def _interrupt_pending(orchestrator: ChatOrchestrator, emitters: list[StreamEmitter]) -> int:
    """Interrupt the executions behind emitters that have not finished yet."""
    count = 0
    for emitter in emitters:
        if not emitter.closed and orchestrator.interrupt_stream(emitter, "client disconnected"):
            count += 1
    if count:
        LOGGER.info("Interrupted %d pending execution(s) after disconnect", count)
    return count


@app.websocket("/ws/chat")
async def chat_ws(websocket: WebSocket) -> None:
    """WebSocket chat endpoint.

    Client frames (JSON):
        {"type": "message", "session_id": str, "message": str, "context": {...}}
        {"type": "interrupt", "session_id": str, "reason": str}

    Every message produces ``start``, any number of ``token``/``content``
    events, then one of ``end``, ``error`` or ``interrupted``. An interrupt
    frame is answered with ``interrupt_ack``.
    """
    await websocket.accept()
    orchestrator = get_orchestrator()
    forwarders: set[asyncio.Task] = set()
    submitted: list[StreamEmitter] = []
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError as e:
                LOGGER.error("Invalid WS payload (not JSON): %s", e)
                await websocket.send_json({"type": "error", "error": "Invalid JSON payload"})
                continue
            if not isinstance(payload, dict):
                await websocket.send_json({"type": "error", "error": "Invalid payload"})
                continue

            frame_type = payload.get("type") or "message"
            session_id = str(payload.get("session_id") or "default")

            if frame_type == "interrupt":
                interrupted = orchestrator.interrupt(session_id, payload.get("reason"))
                await websocket.send_json(
                    {
                        "type": "interrupt_ack",
                        "session_id": session_id,
                        "interrupted": interrupted,
                    }
                )
                continue
            if frame_type != "message":
                await websocket.send_json(
                    {
                        "type": "error",
                        "session_id": session_id,
                        "error": f"Unknown frame type: {frame_type}",
                    }
                )
                continue

            message = str(payload.get("message") or "").strip()
            if not message:
                await websocket.send_json(
                    {"type": "error", "session_id": session_id, "error": "Empty message"}
                )
                continue
            try:
                context = SessionContext.from_dict(payload.get("context"))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                LOGGER.warning("Invalid context for session %s: %s", session_id, e)
                await websocket.send_json(
                    {"type": "error", "session_id": session_id, "error": "Invalid context"}
                )
                continue

            LOGGER.info("WS chat message session_id=%s", session_id)
            emitter = await orchestrator.submit(session_id, message, context)
            submitted = [e for e in submitted if not e.closed]
            submitted.append(emitter)
            task = asyncio.create_task(_forward_events(websocket, emitter))
            forwarders.add(task)
            task.add_done_callback(forwarders.discard)

    except WebSocketDisconnect:
        LOGGER.info("WS disconnect")
    except (ConnectionError, TimeoutError, RuntimeError) as e:
        LOGGER.exception("Unexpected WS error: %s", e)
        with suppress(OSError, RuntimeError):
            await websocket.close()
    finally:
        _interrupt_pending(orchestrator, submitted)
        for task in list(forwarders):
            task.cancel()

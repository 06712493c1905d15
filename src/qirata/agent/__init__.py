"""Conversation orchestration engine for the Qirata reading assistant.

Each chat message runs through a static graph of stages (memory compaction,
intent and platform classification, answer and social-post generation) and
reports progress as an ordered stream of events.
"""

from .events import EventType, StreamEmitter, StreamEvent
from .gateway import ModelGateway, OpenAIModelGateway
from .graph import END, StageGraph, StageGraphExecutor, build_chat_graph
from .memory import ConversationMemoryManager
from .orchestrator import ChatOrchestrator, get_orchestrator, set_orchestrator
from .registry import CancellationToken, SessionRegistry

__all__ = [
    "END",
    "CancellationToken",
    "ChatOrchestrator",
    "ConversationMemoryManager",
    "EventType",
    "ModelGateway",
    "OpenAIModelGateway",
    "SessionRegistry",
    "StageGraph",
    "StageGraphExecutor",
    "StreamEmitter",
    "StreamEvent",
    "build_chat_graph",
    "get_orchestrator",
    "set_orchestrator",
]

"""Static stage graph and the executor that walks it.

The graph is a declarative table of ``GraphNode(stage, router, targets)``
entries built once at startup::

    summarize_memory -> classify_intent
    classify_intent  -(route_by_intent)->    detect_platform | answer_question | clarify_intent
    detect_platform  -(route_by_platform)->  clarify_platform | select_post | create_post
    select_post      -(route_by_selection)-> edit_post | END
    answer_question, clarify_intent, clarify_platform, create_post, edit_post -> END

Routers are pure functions of the state. The executor runs one stage at a
time, checking the session's cancellation token before each one.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from ..errors import ExecutionCancelled, GraphError, MissingUpstreamField, StageError
from ..models import ExecutionStatus, IntentLabel, SessionState, SocialAction
from .base import Stage, StageContext, StateUpdate, fallback_result
from .classifiers import IntentClassifier, PlatformClassifier
from .generators import (
    IntentClarification,
    PlatformClarification,
    PostSelector,
    QuestionAnswerGenerator,
    SocialPostCreator,
    SocialPostEditor,
)
from .memory import ConversationMemoryManager, SummarizeMemoryStage

logger = logging.getLogger(__name__)

END = "__end__"

Router = Callable[[SessionState], str]

_PROTECTED_FIELDS = frozenset({"session_id", "user_message"})


@dataclass(frozen=True)
class GraphNode:
    stage: Stage
    targets: Tuple[str, ...]
    router: Optional[Router] = None


def route_by_intent(state: SessionState) -> str:
    intent = state.intent
    if intent is None:
        raise MissingUpstreamField("intent_router", "intent")
    if intent.needs_clarification:
        return "clarify_intent"
    if intent.label is IntentLabel.SOCIAL:
        return "detect_platform"
    return "answer_question"


def route_by_platform(state: SessionState) -> str:
    intent = state.intent
    decision = state.platform_decision
    if intent is None:
        raise MissingUpstreamField("platform_router", "intent")
    if decision is None:
        raise MissingUpstreamField("platform_router", "platform_decision")
    if intent.social_action is SocialAction.EDIT:
        return "select_post"
    if decision.needs_clarification or decision.platform is None:
        return "clarify_platform"
    return "create_post"


def route_by_selection(state: SessionState) -> str:
    return "edit_post" if state.selected_post_id else END


class StageGraph:
    """Validated, immutable node table."""

    def __init__(self, entry: str, nodes: Dict[str, GraphNode]) -> None:
        self.entry = entry
        self.nodes = dict(nodes)
        self._validate()

    def _validate(self) -> None:
        if self.entry not in self.nodes:
            raise GraphError(f"Entry node '{self.entry}' is not defined")
        for name, node in self.nodes.items():
            if not node.targets:
                raise GraphError(f"Node '{name}' has no outgoing edges")
            if node.router is None and len(node.targets) != 1:
                raise GraphError(f"Unconditional node '{name}' must have exactly one target")
            for target in node.targets:
                if target != END and target not in self.nodes:
                    raise GraphError(f"Node '{name}' points at unknown node '{target}'")

    def next_node(self, name: str, state: SessionState) -> str:
        node = self.nodes[name]
        if node.router is None:
            return node.targets[0]
        target = node.router(state)
        if target not in node.targets:
            raise GraphError(f"Router of '{name}' returned undeclared target '{target}'")
        return target


def build_chat_graph(memory: ConversationMemoryManager) -> StageGraph:
    return StageGraph(
        entry="summarize_memory",
        nodes={
            "summarize_memory": GraphNode(SummarizeMemoryStage(memory), ("classify_intent",)),
            "classify_intent": GraphNode(
                IntentClassifier(),
                ("detect_platform", "answer_question", "clarify_intent"),
                route_by_intent,
            ),
            "detect_platform": GraphNode(
                PlatformClassifier(),
                ("clarify_platform", "select_post", "create_post"),
                route_by_platform,
            ),
            "select_post": GraphNode(PostSelector(), ("edit_post", END), route_by_selection),
            "answer_question": GraphNode(QuestionAnswerGenerator(), (END,)),
            "clarify_intent": GraphNode(IntentClarification(), (END,)),
            "clarify_platform": GraphNode(PlatformClarification(), (END,)),
            "create_post": GraphNode(SocialPostCreator(), (END,)),
            "edit_post": GraphNode(SocialPostEditor(), (END,)),
        },
    )


@dataclass
class ExecutionOutcome:
    state: SessionState
    status: ExecutionStatus
    detail: Optional[str] = None


class StageGraphExecutor:
    def __init__(self, graph: StageGraph) -> None:
        self.graph = graph

    async def execute(self, state: SessionState, ctx: StageContext) -> ExecutionOutcome:
        """Drive ``state`` through the graph until END, cancellation or failure.

        Never raises for stage failures: recoverable ones land in
        ``state.error``, unrecoverable ones yield a FAILED outcome.
        """
        current = self.graph.entry
        try:
            while current != END:
                ctx.token.raise_if_cancelled()
                if state.result is not None:
                    raise GraphError(f"Stage '{current}' scheduled after the result was set")
                stage = self.graph.nodes[current].stage
                logger.debug("Session %s entering stage %s", state.session_id, current)
                try:
                    update = await stage.run(state, ctx)
                except StageError as e:
                    logger.warning(
                        "Stage %s failed for session %s: %s", current, state.session_id, e
                    )
                    update = {"error": str(e)}
                self._merge(state, update, current)
                current = self.graph.next_node(current, state)

            if state.result is None:
                logger.warning(
                    "Session %s reached the end without a result, using fallback",
                    state.session_id,
                )
                state.result = fallback_result()
            return ExecutionOutcome(state=state, status=ExecutionStatus.COMPLETED)

        except ExecutionCancelled as e:
            logger.info(
                "Execution for session %s cancelled at %s: %s",
                state.session_id,
                current,
                e.reason,
            )
            return ExecutionOutcome(state=state, status=ExecutionStatus.CANCELLED, detail=e.reason)
        except Exception as e:
            logger.exception(
                "Unrecoverable failure in stage %s for session %s", current, state.session_id
            )
            state.error = str(e)
            return ExecutionOutcome(state=state, status=ExecutionStatus.FAILED, detail=str(e))

    @staticmethod
    def _merge(state: SessionState, update: StateUpdate, stage_name: str) -> None:
        for key, value in (update or {}).items():
            if key in _PROTECTED_FIELDS or not hasattr(state, key):
                raise GraphError(f"Stage '{stage_name}' wrote unknown or read-only field '{key}'")
            if key == "result" and state.result is not None:
                raise GraphError(f"Stage '{stage_name}' tried to overwrite the result")
            setattr(state, key, value)

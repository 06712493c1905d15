from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Platform(str, Enum):
    TWITTER = "twitter"
    LINKEDIN = "linkedin"

    @property
    def display_name(self) -> str:
        return "Twitter" if self is Platform.TWITTER else "LinkedIn"


class IntentLabel(str, Enum):
    SUPPORT = "support"
    ASK_POST = "ask_post"
    SOCIAL = "social"


class SocialAction(str, Enum):
    CREATE = "create"
    EDIT = "edit"


class ResultKind(str, Enum):
    ANSWER = "answer"
    SOCIAL_POST = "socialPost"


class ExecutionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class MessagePair:
    """One user message and the assistant reply it produced."""

    user_message: str
    ai_response: str


@dataclass
class PostContext:
    """Reference document the conversation is attached to."""

    document_id: Optional[str] = None
    title: str = ""
    summary: str = ""
    full_text: str = ""
    style_preferences: str = ""


@dataclass
class CodeExample:
    language: str
    code: str
    description: Optional[str] = None


@dataclass
class VisualElement:
    type: str
    description: str
    content: str = ""
    style: str = ""


@dataclass
class StructuredDraft:
    """Social post split into main text, code snippets and visual descriptions."""

    main_text: str
    code_examples: List[CodeExample] = field(default_factory=list)
    visual_elements: List[VisualElement] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CachedSocialPost:
    """A draft generated earlier in the session."""

    id: str
    platform: Platform
    content: str
    code_examples: List[CodeExample] = field(default_factory=list)
    visual_elements: List[VisualElement] = field(default_factory=list)

    def preview(self, length: int = 40) -> str:
        text = " ".join(self.content.split())
        if len(text) > length:
            text = text[:length].rstrip() + "..."
        return f"{self.platform.display_name}: {text}"


@dataclass
class IntentResult:
    label: IntentLabel
    confidence: float
    reasoning: str
    needs_clarification: bool = False
    social_action: Optional[SocialAction] = None
    clarifying_question: Optional[str] = None
    suggested_options: List[str] = field(default_factory=list)


@dataclass
class PlatformDecision:
    platform: Optional[Platform]
    confidence: float
    reasoning: str
    needs_clarification: bool
    clarification_message: Optional[str] = None


@dataclass
class ExecutionResult:
    """Terminal payload of one execution."""

    kind: ResultKind
    text: str
    suggested_options: List[str] = field(default_factory=list)
    platform: Optional[Platform] = None
    draft: Optional[StructuredDraft] = None
    edited_post_id: Optional[str] = None
    clarification: bool = False


@dataclass
class MemorySnapshot:
    """Window, rolling summary and message count of a session's memory."""

    recent_messages: List[MessagePair] = field(default_factory=list)
    rolling_summary: Optional[str] = None
    total_message_count: int = 0


@dataclass
class SessionContext:
    """Persisted session data the caller supplies with each message."""

    post_context: Optional[PostContext] = None
    recent_messages: List[MessagePair] = field(default_factory=list)
    rolling_summary: Optional[str] = None
    total_message_count: int = 0
    cached_social_posts: List[CachedSocialPost] = field(default_factory=list)
    last_intent: Optional[str] = None
    last_platform: Optional[Platform] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SessionContext":
        """Build a SessionContext from a transport payload (e.g. websocket JSON)."""
        data = data or {}
        post = data.get("post_context")
        messages = [
            MessagePair(
                user_message=str(m.get("user_message", "")),
                ai_response=str(m.get("ai_response", "")),
            )
            for m in data.get("recent_messages") or []
        ]
        posts = [_post_from_dict(p) for p in data.get("cached_social_posts") or []]
        last_platform = data.get("last_platform")
        return cls(
            post_context=PostContext(
                document_id=post.get("document_id"),
                title=post.get("title") or "",
                summary=post.get("summary") or "",
                full_text=post.get("full_text") or "",
                style_preferences=post.get("style_preferences") or "",
            )
            if post
            else None,
            recent_messages=messages,
            rolling_summary=data.get("rolling_summary"),
            total_message_count=int(data.get("total_message_count") or len(messages)),
            cached_social_posts=posts,
            last_intent=data.get("last_intent"),
            last_platform=Platform(last_platform) if last_platform else None,
        )


def _post_from_dict(data: Dict[str, Any]) -> CachedSocialPost:
    return CachedSocialPost(
        id=str(data["id"]),
        platform=Platform(str(data["platform"]).lower()),
        content=data.get("content") or "",
        code_examples=[CodeExample(**c) for c in data.get("code_examples") or []],
        visual_elements=[VisualElement(**v) for v in data.get("visual_elements") or []],
    )


@dataclass
class SessionState:
    """Mutable record threaded through one execution of the stage graph."""

    session_id: str
    user_message: str
    post_context: Optional[PostContext] = None
    recent_messages: List[MessagePair] = field(default_factory=list)
    rolling_summary: Optional[str] = None
    total_message_count: int = 0
    cached_social_posts: List[CachedSocialPost] = field(default_factory=list)
    last_intent: Optional[str] = None
    last_platform: Optional[Platform] = None

    intent: Optional[IntentResult] = None
    platform_decision: Optional[PlatformDecision] = None
    selected_post_id: Optional[str] = None

    result: Optional[ExecutionResult] = None
    error: Optional[str] = None

    def find_post(self, post_id: Optional[str]) -> Optional[CachedSocialPost]:
        for post in self.cached_social_posts:
            if post.id == post_id:
                return post
        return None

    def snapshot(self) -> MemorySnapshot:
        return MemorySnapshot(
            recent_messages=list(self.recent_messages),
            rolling_summary=self.rolling_summary,
            total_message_count=self.total_message_count,
        )


@dataclass
class ChatResult:
    """Synchronous result returned to non-streaming callers."""

    session_id: str
    is_complete: bool
    content: str
    error: Optional[str] = None
    summary: Optional[str] = None
    is_social_post: bool = False
    platform: Optional[str] = None
    structured_draft: Optional[Dict[str, Any]] = None
    suggested_options: List[str] = field(default_factory=list)
    interrupted: bool = False

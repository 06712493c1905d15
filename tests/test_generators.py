from unittest.mock import patch

import pytest

from qirata.agent.base import FALLBACK_MESSAGE
from qirata.agent.events import EventType
from qirata.agent.generators import (
    PostSelector,
    QuestionAnswerGenerator,
    SocialPostCreator,
    SocialPostEditor,
    has_reference_cue,
)
from qirata.agent.schemas import PostSelectionOutput, SocialPostOutput, SuggestionsOutput
from qirata.agent.separation import check_separation, enforce_separation, wants_inline_code
from qirata.errors import GenerationError, SeparationViolation
from qirata.models import (
    CachedSocialPost,
    CodeExample,
    IntentLabel,
    IntentResult,
    Platform,
    PlatformDecision,
    PostContext,
    ResultKind,
    SessionState,
    SocialAction,
    StructuredDraft,
)
from qirata.services.documents import InMemoryDocumentRepository

TWITTER_POST = CachedSocialPost(
    id="p1", platform=Platform.TWITTER, content="Remote work tips in 280 chars #remote"
)
LINKEDIN_POST = CachedSocialPost(
    id="p2",
    platform=Platform.LINKEDIN,
    content="Five lessons from a year of async collaboration across timezones.",
    code_examples=[CodeExample(language="python", code="print('hi')")],
)


def _social_state(message: str, platform=None, posts=None, **kwargs) -> SessionState:
    action = SocialAction.EDIT if posts is not None else SocialAction.CREATE
    return SessionState(
        session_id="s1",
        user_message=message,
        intent=IntentResult(
            label=IntentLabel.SOCIAL, confidence=0.9, reasoning="", social_action=action
        ),
        platform_decision=PlatformDecision(
            platform=platform,
            confidence=0.9,
            reasoning="",
            needs_clarification=platform is None,
        ),
        cached_social_posts=list(posts or []),
        **kwargs,
    )


def test_check_separation_rejects_fenced_code() -> None:
    """check_separation raises when main text holds a fenced block."""
    with pytest.raises(SeparationViolation):
        check_separation(StructuredDraft(main_text="Look:\n```python\nprint(1)\n```"))


def test_check_separation_allows_explicit_inline_request() -> None:
    """An explicit inline-code request lets fences stay in main text."""
    draft = StructuredDraft(main_text="```x = 1```")
    check_separation(draft, allow_inline_code=True)
    assert wants_inline_code("Please include the code in the post")
    assert not wants_inline_code("Write a post about Python")


def test_enforce_separation_moves_code_out() -> None:
    """A closed fence is moved to code_examples with its language."""
    draft = StructuredDraft(main_text="Try this:\n```python\nprint('hi')\n```\nNeat!")
    repaired = enforce_separation(draft)
    assert "```" not in repaired.main_text
    assert "Neat!" in repaired.main_text
    assert repaired.code_examples == [CodeExample(language="python", code="print('hi')")]


def test_enforce_separation_moves_unterminated_fence() -> None:
    """A fence the model never closed is moved out along with everything after it."""
    draft = StructuredDraft(main_text="Tip:\n```python\nprint('hello world')\n")
    repaired = enforce_separation(draft)
    assert repaired.main_text == "Tip:"
    assert repaired.code_examples == [
        CodeExample(language="python", code="print('hello world')")
    ]
    check_separation(repaired)


def test_enforce_separation_moves_single_line_fence() -> None:
    """Code fenced on a single line is moved out and the sentence is rejoined."""
    draft = StructuredDraft(main_text="Tip: ```print('hello world')``` done")
    repaired = enforce_separation(draft)
    assert repaired.main_text == "Tip: done"
    assert repaired.code_examples == [
        CodeExample(language="text", code="print('hello world')")
    ]


def test_enforce_separation_keeps_existing_examples() -> None:
    """Extracted code is appended after examples the draft already had."""
    existing = CodeExample(language="bash", code="ls")
    draft = StructuredDraft(main_text="Run ```pwd``` first", code_examples=[existing])
    repaired = enforce_separation(draft)
    assert repaired.code_examples[0] == existing
    assert repaired.code_examples[1].code == "pwd"


@pytest.mark.asyncio
async def test_creator_returns_linkedin_draft(gateway, make_ctx) -> None:
    """The creator returns a LinkedIn draft and emits it as content."""
    gateway.structured[SocialPostOutput] = {
        "message": "Here's your LinkedIn post.",
        "post": {"main_text": "Remote work tip #1: set boundaries. #remotework"},
    }
    ctx = make_ctx()
    state = _social_state(
        "Create a LinkedIn post about remote work tips",
        platform=Platform.LINKEDIN,
        post_context=PostContext(title="Remote", summary="Remote work tips", style_preferences="casual"),
    )
    update = await SocialPostCreator().run(state, ctx)
    result = update["result"]
    assert result.kind is ResultKind.SOCIAL_POST
    assert result.platform is Platform.LINKEDIN
    assert result.draft.main_text
    assert result.draft.code_examples == []
    assert 0 < len(result.suggested_options) <= 3

    ctx.emitter.end()
    events = await ctx.emitter.collect()
    content = [e for e in events if e.type is EventType.CONTENT]
    assert content[0].data["data"]["platform"] == "linkedin"


@pytest.mark.asyncio
async def test_creator_repairs_code_in_main_text(gateway, make_ctx) -> None:
    """Code the model put in main text ends up in code_examples."""
    gateway.structured[SocialPostOutput] = {
        "post": {"main_text": "Use this:\n```bash\nls -la\n```"},
    }
    update = await SocialPostCreator().run(
        _social_state("Create a tweet", platform=Platform.TWITTER), make_ctx()
    )
    draft = update["result"].draft
    assert "```" not in draft.main_text
    assert draft.code_examples[0].language == "bash"


@pytest.mark.asyncio
async def test_creator_repairs_unterminated_fence(gateway, make_ctx) -> None:
    """An unclosed fence in the model output never reaches the post text."""
    gateway.structured[SocialPostOutput] = {
        "post": {"main_text": "Tip:\n```python\nprint('hello world')\n"},
    }
    update = await SocialPostCreator().run(
        _social_state("Create a tweet", platform=Platform.TWITTER), make_ctx()
    )
    draft = update["result"].draft
    assert draft.main_text == "Tip:"
    assert "print(" not in draft.main_text
    assert draft.code_examples == [CodeExample(language="python", code="print('hello world')")]


@pytest.mark.asyncio
async def test_creator_falls_back_when_separation_fails(gateway, make_ctx) -> None:
    """A draft that cannot be separated is replaced by the fallback answer."""
    gateway.structured[SocialPostOutput] = {"post": {"main_text": "Tip: ```x```"}}
    ctx = make_ctx()
    with patch(
        "qirata.agent.generators.enforce_separation",
        side_effect=SeparationViolation("Post main text contains a fenced code block"),
    ):
        update = await SocialPostCreator().run(
            _social_state("Create a tweet", platform=Platform.TWITTER), ctx
        )
    result = update["result"]
    assert result.text == FALLBACK_MESSAGE
    assert result.draft is None

    ctx.emitter.end()
    events = await ctx.emitter.collect()
    assert not [e for e in events if e.type is EventType.CONTENT]


@pytest.mark.asyncio
async def test_creator_falls_back_on_failure(gateway, make_ctx) -> None:
    """A failing model call yields the fallback answer."""
    gateway.fail = True
    update = await SocialPostCreator().run(
        _social_state("Create a tweet", platform=Platform.TWITTER), make_ctx()
    )
    result = update["result"]
    assert result.kind is ResultKind.ANSWER
    assert result.text == FALLBACK_MESSAGE
    assert result.suggested_options


@pytest.mark.asyncio
async def test_creator_fetches_full_text(gateway, make_ctx) -> None:
    """The creator loads the full article text into the prompt."""
    gateway.structured[SocialPostOutput] = {"post": {"main_text": "A post"}}
    documents = InMemoryDocumentRepository({"doc-1": "The complete article body."})
    state = _social_state(
        "Create a tweet",
        platform=Platform.TWITTER,
        post_context=PostContext(document_id="doc-1", summary="short"),
    )
    update = await SocialPostCreator().run(state, make_ctx(documents=documents))
    assert update["post_context"].full_text == "The complete article body."
    prompt = gateway.calls[0][2][1]["content"]
    assert "The complete article body." in prompt


@pytest.mark.asyncio
async def test_answer_streams_tokens(gateway, make_ctx) -> None:
    """The answer is streamed token by token and suggestions are attached."""
    gateway.chunks = ["Remote ", "work ", "is great."]
    gateway.structured[SuggestionsOutput] = {"options": ["Tell me more", "Create a Twitter post"]}
    ctx = make_ctx()
    state = SessionState(
        session_id="s1",
        user_message="What is this about?",
        intent=IntentResult(label=IntentLabel.ASK_POST, confidence=0.9, reasoning=""),
    )
    update = await QuestionAnswerGenerator().run(state, ctx)
    result = update["result"]
    assert result.text == "Remote work is great."
    assert result.suggested_options == ["Tell me more", "Create a Twitter post"]

    ctx.emitter.end()
    tokens = [e.data["data"] for e in await ctx.emitter.collect() if e.type is EventType.TOKEN]
    assert "".join(tokens) == "Remote work is great."


@pytest.mark.asyncio
async def test_answer_falls_back_on_failure(gateway, make_ctx) -> None:
    """A failing stream before any token yields the fallback answer."""
    gateway.fail = True
    state = SessionState(
        session_id="s1",
        user_message="hi",
        intent=IntentResult(label=IntentLabel.SUPPORT, confidence=0.0, reasoning=""),
    )
    update = await QuestionAnswerGenerator().run(state, make_ctx())
    assert update["result"].text == FALLBACK_MESSAGE
    assert update["result"].suggested_options


@pytest.mark.asyncio
async def test_answer_falls_back_when_stream_breaks(gateway, make_ctx) -> None:
    """A stream that fails after some tokens still ends with the fallback answer."""
    gateway.chunks = ["Partial ", GenerationError("connection dropped")]
    ctx = make_ctx()
    state = SessionState(
        session_id="s1",
        user_message="What is this about?",
        intent=IntentResult(label=IntentLabel.ASK_POST, confidence=0.9, reasoning=""),
    )
    update = await QuestionAnswerGenerator().run(state, ctx)
    result = update["result"]
    assert result.text == FALLBACK_MESSAGE
    assert result.suggested_options
    assert "SuggestionsOutput" not in gateway.schemas_called()

    ctx.emitter.end()
    tokens = [e.data["data"] for e in await ctx.emitter.collect() if e.type is EventType.TOKEN]
    assert tokens == ["Partial "]


def test_reference_cue_by_platform() -> None:
    """Platform, ordinal and keyword cues single out one post."""
    posts = [TWITTER_POST, LINKEDIN_POST]
    assert has_reference_cue("shorten the tweet", posts, TWITTER_POST)
    assert not has_reference_cue("shorten the tweet", posts, LINKEDIN_POST)
    assert has_reference_cue("edit the timezones one", posts, LINKEDIN_POST)
    assert not has_reference_cue("make it more engaging", posts, LINKEDIN_POST)


@pytest.mark.asyncio
async def test_selector_without_posts_asks_to_create(make_ctx) -> None:
    """With no cached posts the selector offers to create one."""
    update = await PostSelector().run(_social_state("edit my post", posts=[]), make_ctx())
    assert update["selected_post_id"] is None
    assert update["result"].clarification


@pytest.mark.asyncio
async def test_selector_single_post_is_selected(gateway, make_ctx) -> None:
    """A single cached post is selected without a model call."""
    update = await PostSelector().run(
        _social_state("make it shorter", posts=[TWITTER_POST]), make_ctx()
    )
    assert update == {"selected_post_id": "p1"}
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_selector_ambiguous_edit_asks_which_post(gateway, make_ctx) -> None:
    """A confident model pick without any cue in the message is not trusted."""
    gateway.structured[PostSelectionOutput] = {"selected_post_id": "p2", "confidence": 0.95}
    update = await PostSelector().run(
        _social_state("make it more engaging", posts=[TWITTER_POST, LINKEDIN_POST]),
        make_ctx(),
    )
    result = update["result"]
    assert update["selected_post_id"] is None
    assert result.clarification
    assert result.kind is ResultKind.ANSWER
    assert result.suggested_options == [TWITTER_POST.preview(), LINKEDIN_POST.preview()]


@pytest.mark.asyncio
async def test_selector_accepts_referenced_post(gateway, make_ctx) -> None:
    """A confident pick backed by a cue in the message is accepted."""
    gateway.structured[PostSelectionOutput] = {"selected_post_id": "p2", "confidence": 0.9}
    update = await PostSelector().run(
        _social_state("make the LinkedIn one punchier", posts=[TWITTER_POST, LINKEDIN_POST]),
        make_ctx(),
    )
    assert update == {"selected_post_id": "p2"}


@pytest.mark.asyncio
async def test_editor_marks_edited_post(gateway, make_ctx) -> None:
    """The editor result records which post was edited."""
    gateway.structured[SocialPostOutput] = {"post": {"main_text": "Shorter remote tips #remote"}}
    state = _social_state("make it shorter", posts=[TWITTER_POST], selected_post_id="p1")
    update = await SocialPostEditor().run(state, make_ctx())
    result = update["result"]
    assert result.edited_post_id == "p1"
    assert result.platform is Platform.TWITTER

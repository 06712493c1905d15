import logging
import re
from typing import List, Optional, Set

from ..errors import GenerationError, SchemaValidationError, SeparationViolation
from ..models import (
    CachedSocialPost,
    CodeExample,
    ExecutionResult,
    IntentLabel,
    Platform,
    ResultKind,
    SessionState,
    StructuredDraft,
    VisualElement,
)
from .base import (
    GENERIC_OPTIONS,
    Stage,
    StageContext,
    StateUpdate,
    clarification_result,
    fallback_result,
    history_messages,
)
from .classifiers import (
    INTENT_OPTIONS,
    INTENT_QUESTION,
    PLATFORM_OPTIONS,
    PLATFORM_QUESTION,
    explicit_platform_mentions,
)
from .schemas import DraftOutput, PostSelectionOutput, SocialPostOutput, SuggestionsOutput
from .separation import enforce_separation, wants_inline_code

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 10
POST_OPTIONS = {
    Platform.TWITTER: ["Make it shorter", "Add more hashtags", "Create a LinkedIn version"],
    Platform.LINKEDIN: ["Make it more concise", "Add a call to action", "Create a Twitter version"],
}
NO_POSTS_MESSAGE = (
    "There are no posts in this conversation to edit yet. "
    "Would you like me to create one?"
)
NO_POSTS_OPTIONS = ["Create a Twitter post", "Create a LinkedIn post"]
SELECT_POST_MESSAGE = "Which post would you like to edit?"

_ORDINAL_REFERENCE = re.compile(
    r"\b(first|second|third|last|latest|previous|newest|oldest|most recent|earlier)\b",
    re.IGNORECASE,
)
_WORD = re.compile(r"[\w']+")
_GENERIC_WORDS = {
    "about", "again", "change", "could", "edit", "engaging", "from", "into",
    "linkedin", "longer", "make", "more", "please", "post", "posts", "rewrite",
    "shorter", "that", "their", "them", "there", "these", "this", "tweet",
    "twitter", "update", "want", "with", "would", "your",
}


def _keywords(text: str) -> Set[str]:
    return {
        word
        for word in (w.lower() for w in _WORD.findall(text or ""))
        if len(word) >= 4 and word not in _GENERIC_WORDS
    }


def has_reference_cue(
    message: str, posts: List[CachedSocialPost], selected: CachedSocialPost
) -> bool:
    """True when the message itself singles out ``selected`` among ``posts``."""
    mentions = explicit_platform_mentions(message)
    if mentions:
        on_platform = [p for p in posts if p.platform in mentions]
        if len(on_platform) == 1 and on_platform[0] is selected:
            return True
    if _ORDINAL_REFERENCE.search(message or ""):
        return True
    words = _keywords(message)
    if not words:
        return False
    matching = [
        p
        for p in posts
        if words & (_keywords(p.content) | {c.language.lower() for c in p.code_examples})
    ]
    return len(matching) == 1 and matching[0] is selected


def _draft_from_output(output: DraftOutput) -> StructuredDraft:
    return StructuredDraft(
        main_text=output.main_text.strip(),
        code_examples=[
            CodeExample(language=c.language, code=c.code, description=c.description)
            for c in output.code_examples or []
        ],
        visual_elements=[
            VisualElement(
                type=v.type, description=v.description, content=v.content, style=v.style
            )
            for v in output.visual_elements or []
        ],
    )


def _describe_post(post: CachedSocialPost) -> str:
    text = f"Platform: {post.platform.value}\n\n{post.content}"
    if post.code_examples:
        snippets = "\n".join(
            f"- ({c.language}) {c.description or c.code[:60]}" for c in post.code_examples
        )
        text += f"\n\nCode examples:\n{snippets}"
    return text


class QuestionAnswerGenerator(Stage):
    """Streams a free-text answer, then proposes follow-up options."""

    name = "answer_question"

    async def run(self, state: SessionState, ctx: StageContext) -> StateUpdate:
        intent = self.require(state.intent, "intent")
        settings = ctx.settings
        reference, update = await ctx.reference_text(
            state, full=intent.label is IntentLabel.ASK_POST
        )

        system = settings.question_system_prompt
        if state.post_context is not None:
            system += f"\n\nArticle: {state.post_context.title}\n{reference}"
        if state.rolling_summary:
            system += f"\n\nConversation summary:\n{state.rolling_summary}"
        messages = [{"role": "system", "content": system}]
        messages += history_messages(state.recent_messages, HISTORY_LIMIT)
        messages.append({"role": "user", "content": state.user_message})

        answer = ""
        try:
            async for chunk in ctx.stream(messages):
                answer += chunk
                ctx.emitter.token(chunk)
        except GenerationError as e:
            # Tokens already streamed are superseded by the fallback in the end event.
            logger.warning(
                "Answer generation failed for session %s after %d chars: %s",
                state.session_id,
                len(answer),
                e,
            )
            update["result"] = fallback_result()
            return update

        if not answer.strip():
            update["result"] = fallback_result()
            return update

        options = await self._suggest(state, ctx, answer)
        update["result"] = ExecutionResult(
            kind=ResultKind.ANSWER, text=answer, suggested_options=options
        )
        return update

    async def _suggest(self, state: SessionState, ctx: StageContext, answer: str) -> List[str]:
        limit = ctx.settings.max_suggested_options
        messages = [
            {"role": "system", "content": ctx.settings.suggestions_system_prompt},
            {
                "role": "user",
                "content": f"Question: {state.user_message}\n\nAnswer: {answer}",
            },
        ]
        try:
            output = await ctx.structured(
                messages, SuggestionsOutput, model=ctx.settings.classifier_model
            )
        except GenerationError as e:
            logger.info("Suggestions unavailable for session %s: %s", state.session_id, e)
            return GENERIC_OPTIONS[:limit]
        options = [o.strip() for o in output.options if o and o.strip()]
        return options[:limit] or GENERIC_OPTIONS[:limit]


class _PostWriter(Stage):
    """Common structured-draft call shared by the creator and the editor."""

    async def _write(
        self,
        state: SessionState,
        ctx: StageContext,
        messages: List[dict],
        platform: Platform,
    ) -> Optional[ExecutionResult]:
        try:
            output = await ctx.structured(messages, SocialPostOutput)
            draft = enforce_separation(
                _draft_from_output(output.post),
                allow_inline_code=wants_inline_code(state.user_message),
            )
            if not draft.main_text:
                raise SchemaValidationError("Draft main text is empty")
        except (GenerationError, SeparationViolation) as e:
            logger.warning(
                "%s failed for session %s: %s", self.name, state.session_id, e
            )
            return None

        ctx.emitter.content({"platform": platform.value, "draft": draft.to_dict()})
        limit = ctx.settings.max_suggested_options
        options = [o for o in output.suggested_options or [] if o and o.strip()]
        return ExecutionResult(
            kind=ResultKind.SOCIAL_POST,
            text=output.message.strip()
            or f"Here's your {platform.display_name} post.",
            suggested_options=(options or POST_OPTIONS[platform])[:limit],
            platform=platform,
            draft=draft,
        )


class SocialPostCreator(_PostWriter):
    name = "create_post"

    async def run(self, state: SessionState, ctx: StageContext) -> StateUpdate:
        decision = self.require(state.platform_decision, "platform_decision")
        platform = self.require(decision.platform, "platform_decision.platform")
        reference, update = await ctx.reference_text(state, full=True)

        context = f"Target platform: {platform.value.upper()}\n\n"
        preferences = state.post_context.style_preferences if state.post_context else ""
        if preferences.strip():
            context += f'User content preferences: "{preferences}"\n\n'
        context += f"Article content:\n{reference or '(no article attached)'}"

        messages = [
            {"role": "system", "content": ctx.settings.social_post_create_system_prompt},
            {"role": "user", "content": context},
        ]
        if state.rolling_summary:
            messages.append(
                {"role": "system", "content": f"Conversation summary:\n{state.rolling_summary}"}
            )
        messages += history_messages(state.recent_messages, HISTORY_LIMIT)
        existing = [p for p in state.cached_social_posts if p.platform is platform]
        if existing:
            previous = "\n---\n".join(p.content for p in existing[-3:])
            messages.append(
                {
                    "role": "system",
                    "content": f"Posts already written for this platform (do not repeat):\n{previous}",
                }
            )
        messages.append({"role": "user", "content": state.user_message})

        result = await self._write(state, ctx, messages, platform)
        update["result"] = result or fallback_result()
        return update


class PostSelector(Stage):
    """Resolves an edit request to exactly one cached post, or asks which one."""

    name = "select_post"

    async def run(self, state: SessionState, ctx: StageContext) -> StateUpdate:
        posts = state.cached_social_posts
        if not posts:
            ctx.emitter.token(NO_POSTS_MESSAGE)
            return {
                "selected_post_id": None,
                "result": clarification_result(NO_POSTS_MESSAGE, list(NO_POSTS_OPTIONS)),
            }
        if len(posts) == 1:
            logger.info("Session %s has a single post, selecting %s", state.session_id, posts[0].id)
            return {"selected_post_id": posts[0].id}

        listing = "\n\n".join(
            f"Post {i} [ID: {p.id}]\n{_describe_post(p)}" for i, p in enumerate(posts, 1)
        )
        messages = [
            {"role": "system", "content": ctx.settings.post_selector_system_prompt},
            *history_messages(state.recent_messages, HISTORY_LIMIT),
            {"role": "user", "content": f"Available posts:\n\n{listing}"},
            {"role": "user", "content": state.user_message},
        ]
        output: Optional[PostSelectionOutput] = None
        try:
            output = await ctx.structured(
                messages, PostSelectionOutput, model=ctx.settings.classifier_model
            )
        except GenerationError as e:
            logger.warning("Post selection failed for session %s: %s", state.session_id, e)

        selected = state.find_post(output.selected_post_id) if output else None
        if (
            selected is not None
            and output.confidence >= ctx.settings.confidence_floor
            and has_reference_cue(state.user_message, posts, selected)
        ):
            logger.info("Session %s selected post %s", state.session_id, selected.id)
            return {"selected_post_id": selected.id}

        previews = [p.preview() for p in posts]
        text = SELECT_POST_MESSAGE + "\n" + "\n".join(f"- {p}" for p in previews)
        ctx.emitter.token(text)
        return {
            "selected_post_id": None,
            "result": clarification_result(text, previews),
        }


class SocialPostEditor(_PostWriter):
    name = "edit_post"

    async def run(self, state: SessionState, ctx: StageContext) -> StateUpdate:
        post_id = self.require(state.selected_post_id, "selected_post_id")
        post = self.require(state.find_post(post_id), "selected_post")

        context = f"Existing post:\n{_describe_post(post)}"
        preferences = state.post_context.style_preferences if state.post_context else ""
        if preferences.strip():
            context += f'\n\nUser content preferences: "{preferences}"'
        messages = [
            {"role": "system", "content": ctx.settings.social_post_edit_system_prompt},
            {"role": "user", "content": context},
            *history_messages(state.recent_messages, HISTORY_LIMIT),
            {"role": "user", "content": state.user_message},
        ]
        result = await self._write(state, ctx, messages, post.platform)
        if result is None:
            return {"result": fallback_result()}
        result.edited_post_id = post.id
        return {"result": result}


class PlatformClarification(Stage):
    name = "clarify_platform"

    async def run(self, state: SessionState, ctx: StageContext) -> StateUpdate:
        decision = self.require(state.platform_decision, "platform_decision")
        text = decision.clarification_message or PLATFORM_QUESTION
        ctx.emitter.token(text)
        return {"result": clarification_result(text, list(PLATFORM_OPTIONS))}


class IntentClarification(Stage):
    name = "clarify_intent"

    async def run(self, state: SessionState, ctx: StageContext) -> StateUpdate:
        intent = self.require(state.intent, "intent")
        text = intent.clarifying_question or INTENT_QUESTION
        options = intent.suggested_options or list(INTENT_OPTIONS)
        ctx.emitter.token(text)
        return {
            "result": clarification_result(
                text, options[: ctx.settings.max_suggested_options]
            )
        }

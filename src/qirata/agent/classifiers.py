import logging
import re
from typing import Dict, Set

from ..errors import GenerationError
from ..models import (
    IntentLabel,
    IntentResult,
    Platform,
    PlatformDecision,
    SessionState,
    SocialAction,
)
from .base import Stage, StageContext, StateUpdate, history_digest
from .schemas import IntentOutput, PlatformOutput

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 5

PLATFORM_QUESTION = "Which platform would you like this post for: Twitter or LinkedIn?"
PLATFORM_OPTIONS = ["Twitter", "LinkedIn"]
INTENT_QUESTION = "Could you tell me a bit more about what you'd like to do?"
INTENT_OPTIONS = [
    "Ask a question about the article",
    "Create a social media post",
    "Edit a previous post",
]

_PLATFORM_PATTERNS: Dict[Platform, re.Pattern] = {
    Platform.TWITTER: re.compile(
        r"(?i:\b(?:twitter|tweets?|tweeting|x\.com)\b)"
        r"|(?i:\b(?:on|for|to|via)\s+)X\b"
        r"|تويتر|تغريدة"
    ),
    Platform.LINKEDIN: re.compile(r"(?i:\blinked\s?in\b)|لينكد\s?إن|لينكدان"),
}


def explicit_platform_mentions(text: str) -> Set[Platform]:
    """Platforms named explicitly in text; tone or style never counts."""
    return {
        platform
        for platform, pattern in _PLATFORM_PATTERNS.items()
        if pattern.search(text or "")
    }


def default_intent() -> IntentResult:
    return IntentResult(
        label=IntentLabel.SUPPORT,
        confidence=0.0,
        reasoning="Intent classification unavailable; treating as a general question.",
    )


def default_platform_decision(reasoning: str) -> PlatformDecision:
    return PlatformDecision(
        platform=None,
        confidence=0.0,
        reasoning=reasoning,
        needs_clarification=True,
        clarification_message=PLATFORM_QUESTION,
    )


class IntentClassifier(Stage):
    name = "classify_intent"

    async def run(self, state: SessionState, ctx: StageContext) -> StateUpdate:
        settings = ctx.settings
        context = history_digest(state.recent_messages, HISTORY_LIMIT)
        prompt = (
            f"Recent conversation:\n{context or '(none)'}\n\n"
            f"Last intent: {state.last_intent or 'none'}\n"
            f"Previously generated posts: {len(state.cached_social_posts)}\n\n"
            f'Current message: "{state.user_message}"'
        )
        messages = [
            {"role": "system", "content": settings.intent_system_prompt},
            {"role": "user", "content": prompt},
        ]
        try:
            output = await ctx.structured(
                messages, IntentOutput, model=settings.classifier_model
            )
        except GenerationError as e:
            logger.warning(
                "Intent classification failed for session %s, using default: %s",
                state.session_id,
                e,
            )
            return {"intent": default_intent()}

        label = IntentLabel(output.intent)
        action = None
        if label is IntentLabel.SOCIAL:
            action = SocialAction(output.social_action or SocialAction.CREATE.value)
        result = IntentResult(
            label=label,
            confidence=output.confidence,
            reasoning=output.reasoning,
            social_action=action,
            clarifying_question=output.clarifying_question,
            suggested_options=(output.suggested_options or [])[
                : settings.max_suggested_options
            ],
        )
        if result.confidence < settings.confidence_floor:
            result.needs_clarification = True
            result.clarifying_question = result.clarifying_question or INTENT_QUESTION
            result.suggested_options = result.suggested_options or list(INTENT_OPTIONS)
        logger.info(
            "Session %s intent=%s action=%s confidence=%.2f clarify=%s",
            state.session_id,
            result.label.value,
            action.value if action else None,
            result.confidence,
            result.needs_clarification,
        )
        return {"intent": result}


class PlatformClassifier(Stage):
    """Detects the target platform, accepting only explicit mentions.

    The model's answer is kept only when the current message names exactly
    one platform, the model agrees with it, and its confidence clears the
    floor. Everything else asks the user instead of guessing.
    """

    name = "detect_platform"

    async def run(self, state: SessionState, ctx: StageContext) -> StateUpdate:
        settings = ctx.settings
        mentions = explicit_platform_mentions(state.user_message)
        context = history_digest(state.recent_messages, HISTORY_LIMIT)
        prompt = (
            f"Recent conversation:\n{context or '(none)'}\n\n"
            f"Last platform: {state.last_platform.value if state.last_platform else 'none'}\n\n"
            f'Current message: "{state.user_message}"'
        )
        messages = [
            {"role": "system", "content": settings.platform_system_prompt},
            {"role": "user", "content": prompt},
        ]
        try:
            output = await ctx.structured(
                messages, PlatformOutput, model=settings.classifier_model
            )
        except GenerationError as e:
            logger.warning(
                "Platform detection failed for session %s, asking user: %s",
                state.session_id,
                e,
            )
            return {"platform_decision": default_platform_decision("detection failed")}

        detected = Platform(output.platform) if output.platform else None
        question = output.message.strip() or PLATFORM_QUESTION

        if len(mentions) != 1:
            reason = "no explicit platform mention" if not mentions else "several platforms mentioned"
            decision = PlatformDecision(
                platform=None,
                confidence=output.confidence,
                reasoning=reason,
                needs_clarification=True,
                clarification_message=question if detected is None else PLATFORM_QUESTION,
            )
        elif detected not in mentions:
            decision = PlatformDecision(
                platform=None,
                confidence=output.confidence,
                reasoning="model answer does not match the platform named by the user",
                needs_clarification=True,
                clarification_message=PLATFORM_QUESTION,
            )
        elif output.confidence < settings.confidence_floor:
            decision = PlatformDecision(
                platform=None,
                confidence=output.confidence,
                reasoning="confidence below floor",
                needs_clarification=True,
                clarification_message=PLATFORM_QUESTION,
            )
        else:
            decision = PlatformDecision(
                platform=detected,
                confidence=output.confidence,
                reasoning=f"explicit mention of {detected.value}",
                needs_clarification=False,
            )
        logger.info(
            "Session %s platform=%s clarify=%s (%s)",
            state.session_id,
            decision.platform.value if decision.platform else None,
            decision.needs_clarification,
            decision.reasoning,
        )
        return {"platform_decision": decision}

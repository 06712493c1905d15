import logging
import re
from dataclasses import replace

from ..errors import SeparationViolation
from ..models import CodeExample, StructuredDraft

logger = logging.getLogger(__name__)

FENCE = "```"
_FENCED_BLOCK = re.compile(r"```[ \t]*([\w+#.-]*)[^\n]*\n(.*?)```", re.DOTALL)
_INLINE_FENCE = re.compile(r"```([^`\n]+?)```")
_OPEN_FENCE = re.compile(r"```([^\n]*)(?:\n(.*))?\Z", re.DOTALL)
_LANGUAGE = re.compile(r"[\w+#.-]+")
_BLANK_RUNS = re.compile(r"\n{3,}")
_SPACE_RUNS = re.compile(r"[ \t]{2,}")
_INLINE_CODE_REQUEST = re.compile(
    r"\b(inline code|code inline|"
    r"(?:include|put|keep|embed) (?:the )?code (?:in|inside|within) (?:the )?(?:post|text|body)|"
    r"code in(?:side)? the (?:post|text|body))\b",
    re.IGNORECASE,
)


def wants_inline_code(message: str) -> bool:
    """True when the user explicitly asked for code inside the post text."""
    return bool(_INLINE_CODE_REQUEST.search(message or ""))


def check_separation(draft: StructuredDraft, *, allow_inline_code: bool = False) -> None:
    """Reject drafts whose main text carries a code fence."""
    if not allow_inline_code and FENCE in draft.main_text:
        raise SeparationViolation("Post main text contains a fenced code block")


def _example(language: str, code: str) -> CodeExample | None:
    code = code.strip("\n")
    if not code.strip():
        return None
    return CodeExample(language=language or "text", code=code)


def _unterminated(text: str) -> tuple[str, CodeExample | None]:
    """Split off a fence that is never closed; it runs to the end of the text."""
    match = _OPEN_FENCE.search(text)
    if match is None:
        return text, None
    head = match.group(1).strip()
    body = match.group(2) or ""
    if _LANGUAGE.fullmatch(head) and body.strip():
        example = _example(head, body)
    else:
        example = _example("text", f"{head}\n{body}" if head else body)
    return text[: match.start()], example


def enforce_separation(
    draft: StructuredDraft, *, allow_inline_code: bool = False
) -> StructuredDraft:
    """Return a draft that passes check_separation, moving fenced code to code_examples.

    Handles single-line fences, regular fenced blocks and a trailing fence the
    model never closed. Raises SeparationViolation when a fence is left over.
    """
    try:
        check_separation(draft, allow_inline_code=allow_inline_code)
        return draft
    except SeparationViolation:
        logger.warning("Moving fenced code out of post main text")

    extracted = []
    text = draft.main_text
    for code in _INLINE_FENCE.findall(text):
        extracted.append(_example("text", code.strip()))
    text = _INLINE_FENCE.sub(" ", text)
    for lang, code in _FENCED_BLOCK.findall(text):
        extracted.append(_example(lang, code))
    text = _FENCED_BLOCK.sub("", text)
    text, trailing = _unterminated(text)
    extracted.append(trailing)

    text = _SPACE_RUNS.sub(" ", text)
    text = _BLANK_RUNS.sub("\n\n", text).strip()
    repaired = replace(
        draft,
        main_text=text,
        code_examples=list(draft.code_examples) + [e for e in extracted if e is not None],
    )
    check_separation(repaired)
    return repaired

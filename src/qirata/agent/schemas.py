"""Pydantic schemas for structured model output, validated at runtime."""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class IntentOutput(BaseModel):
    intent: Literal["support", "ask_post", "social"]
    social_action: Optional[Literal["create", "edit"]] = None
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    clarifying_question: Optional[str] = None
    suggested_options: Optional[List[str]] = None


class PlatformOutput(BaseModel):
    platform: Optional[Literal["twitter", "linkedin"]] = None
    confidence: float = Field(ge=0.0, le=1.0)
    needs_clarification: bool = True
    message: str = ""


class CodeExampleOutput(BaseModel):
    language: str
    code: str
    description: Optional[str] = None


class VisualElementOutput(BaseModel):
    type: str
    description: str
    content: str = ""
    style: str = ""


class DraftOutput(BaseModel):
    main_text: str = Field(min_length=1)
    code_examples: Optional[List[CodeExampleOutput]] = None
    visual_elements: Optional[List[VisualElementOutput]] = None


class SocialPostOutput(BaseModel):
    message: str = ""
    post: DraftOutput
    suggested_options: Optional[List[str]] = None


class PostSelectionOutput(BaseModel):
    selected_post_id: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = ""
    message: str = ""


class SuggestionsOutput(BaseModel):
    options: List[str] = Field(default_factory=list)

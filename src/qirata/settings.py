from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    cors_origins: str = "*"

    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"
    model: str = "gpt-4.1-mini"
    classifier_model: str = "gpt-4.1-mini"
    temperature: float = 0.0
    model_timeout_seconds: float | None = 60.0

    # Conversation memory
    window_size: int = 10
    summary_threshold: int = 5
    summary_keep_recent: int = 8
    summary_sentinel: str = "Beginning of conversation."

    confidence_floor: float = 0.7
    max_suggested_options: int = 3

    session_inactive_ttl_seconds: int = 1800
    sweep_interval_seconds: int = 300

    redis_url: str | None = None
    context_ttl_seconds: int = 86400  # 24 hours

    intent_system_prompt: str = (
        "You classify messages sent to a chat assistant attached to an article.\n"
        "Intents:\n"
        " - support: greetings, help with the app, general conversation.\n"
        " - ask_post: questions about the article or its content.\n"
        " - social: requests to create or edit a Twitter/X or LinkedIn post. "
        "Set social_action to 'create' for new posts and 'edit' for changes "
        "to a previously generated post.\n"
        "Use the recent conversation and the last intent for continuity. "
        "When unsure, lower the confidence and provide a clarifying_question "
        "with up to 3 suggested_options."
    )
    platform_system_prompt: str = (
        "You detect the social platform the user wants to post on.\n"
        "Return platform 'twitter' only when the user explicitly mentions "
        "Twitter, X or a tweet, and 'linkedin' only when LinkedIn is "
        "explicitly mentioned. Never guess from tone or style: if no platform "
        "is named, return platform null and set needs_clarification to true."
    )
    question_system_prompt: str = (
        "You are Qirata's reading assistant. Answer the user's question "
        "clearly and concisely using the article and the conversation so far. "
        "If the article does not cover the question, say so."
    )
    suggestions_system_prompt: str = (
        "Suggest up to 3 short follow-up requests the user could send next, "
        "based on the last answer. Return JSON with key options (array of "
        "strings)."
    )
    social_post_create_system_prompt: str = (
        "You are Qirata's social media content creator. Write one post for "
        "the target platform from the article.\n"
        "Twitter: punchy, under 280 characters, 1-3 hashtags.\n"
        "LinkedIn: professional, 1300-1600 characters, 3-5 hashtags, opening "
        "with a strong hook.\n"
        "Never put code in main_text: move every snippet to code_examples. "
        "Describe useful diagrams in visual_elements."
    )
    social_post_edit_system_prompt: str = (
        "You are Qirata's social media editor. Apply the user's requested "
        "change to the existing post, keeping the platform's rules. Keep code "
        "in code_examples and visuals in visual_elements, never inside "
        "main_text."
    )
    post_selector_system_prompt: str = (
        "You decide which previously generated social post the user wants to "
        "edit. Select a post only when the message clearly identifies it by "
        "platform, content or position. Otherwise return selected_post_id "
        "null and ask the user to pick."
    )
    summary_system_prompt: str = (
        "You maintain a running summary of a conversation about an article. "
        "Merge the previous summary with the new messages into one brief "
        "paragraph capturing topics discussed, user preferences, platforms "
        "mentioned and posts requested."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="allow",
    )


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS

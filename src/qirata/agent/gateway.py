import json
import logging
import re
from typing import Any, AsyncIterator, Dict, List, Type, TypeVar

from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, ValidationError

from ..errors import GenerationError, SchemaValidationError
from ..settings import Settings, get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)
ChatMessages = List[Dict[str, str]]

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def parse_structured(content: str, schema: Type[T]) -> T:
    """Extract the JSON object from raw model output and validate it against schema."""
    match = _JSON_OBJECT.search(content or "")
    if not match:
        raise SchemaValidationError(f"No JSON object in output for {schema.__name__}")
    try:
        return schema.model_validate_json(match.group(0))
    except ValidationError as e:
        raise SchemaValidationError(f"{schema.__name__} validation failed: {e}") from e


def schema_instructions(schema: Type[BaseModel]) -> str:
    return (
        "Respond with a single JSON object that matches this JSON schema, "
        "with no other text:\n"
        f"{json.dumps(schema.model_json_schema())}"
    )


class ModelGateway:
    """Generative model access used by every stage.

    Implementations raise GenerationError on transport failures and
    SchemaValidationError when structured output does not match the schema.
    """

    async def complete_structured(
        self, messages: ChatMessages, schema: Type[T], *, model: str | None = None
    ) -> T:
        raise NotImplementedError

    async def complete_text(
        self, messages: ChatMessages, *, model: str | None = None
    ) -> str:
        raise NotImplementedError

    def stream_text(
        self, messages: ChatMessages, *, model: str | None = None
    ) -> AsyncIterator[str]:
        raise NotImplementedError

    async def ping(self) -> bool:
        raise NotImplementedError


class OpenAIModelGateway(ModelGateway):
    """ModelGateway backed by the OpenAI chat completions API."""

    def __init__(
        self, client: AsyncOpenAI | None = None, settings: Settings | None = None
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        # Created lazily so a missing API key surfaces as a GenerationError per call.
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self._settings.openai_api_key,
                base_url=self._settings.openai_base_url,
                timeout=self._settings.model_timeout_seconds,
            )
        return self._client

    async def _create(self, messages: ChatMessages, model: str | None, **kwargs: Any) -> Any:
        try:
            return await self.client.chat.completions.create(
                model=model or self._settings.model,
                messages=messages,
                temperature=self._settings.temperature,
                **kwargs,
            )
        except (OpenAIError, TimeoutError, ConnectionError) as e:
            logger.error("Model request failed: %s", e)
            raise GenerationError(str(e)) from e

    async def complete_structured(
        self, messages: ChatMessages, schema: Type[T], *, model: str | None = None
    ) -> T:
        request = list(messages) + [
            {"role": "system", "content": schema_instructions(schema)}
        ]
        response = await self._create(
            request, model, response_format={"type": "json_object"}
        )
        try:
            content = response.choices[0].message.content or ""
        except (AttributeError, IndexError) as e:
            raise SchemaValidationError(f"Unexpected response shape: {e}") from e
        return parse_structured(content, schema)

    async def complete_text(
        self, messages: ChatMessages, *, model: str | None = None
    ) -> str:
        response = await self._create(messages, model)
        try:
            return response.choices[0].message.content or ""
        except (AttributeError, IndexError) as e:
            raise GenerationError(f"Unexpected response shape: {e}") from e

    async def stream_text(
        self, messages: ChatMessages, *, model: str | None = None
    ) -> AsyncIterator[str]:
        stream = await self._create(messages, model, stream=True)
        try:
            async for chunk in stream:
                if chunk.choices and len(chunk.choices) > 0:
                    delta = chunk.choices[0].delta
                    if delta.content:
                        yield delta.content
        except (OpenAIError, TimeoutError, ConnectionError) as e:
            logger.error("Model stream interrupted: %s", e)
            raise GenerationError(str(e)) from e

    async def ping(self) -> bool:
        try:
            await self.client.models.list()
            logger.info("Model gateway connection test successful")
            return True
        except (OpenAIError, TimeoutError, ConnectionError) as e:
            logger.error("Model gateway connection test failed: %s", e)
            return False

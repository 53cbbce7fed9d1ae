"""
OpenAI-compatible completion client.
"""

import logging
from typing import Callable, Optional

from openai import AsyncOpenAI, OpenAIError

from config import AssistantConfig
from memory.short_term import Memory

logger = logging.getLogger(__name__)


class CompletionError(Exception):
    """The completion endpoint failed or returned nothing usable."""


def _to_messages(messages: list[Memory]) -> list[dict]:
    return [m.to_dict() for m in messages]


class CompletionClient:
    """
    Thin async wrapper over the chat completions API.
    complete() always resolves to the full reply text; with stream=True the
    tokens are also handed to on_token as they arrive.
    """

    def __init__(self, config: AssistantConfig, client: Optional[AsyncOpenAI] = None):
        self.config = config
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.config.api_key or "not-needed",
                base_url=self.config.api_base,
            )
        return self._client

    def request_options(self, response_format: Optional[dict] = None) -> dict:
        options = {
            "model": self.config.model,
            "max_tokens": self.config.context_max_tokens,
        }
        if self.config.stop_words:
            options["stop"] = list(self.config.stop_words)
        if self.config.temperature is not None:
            options["temperature"] = self.config.temperature
        if response_format:
            options["response_format"] = {"type": "json_schema", "json_schema": response_format}
        return options

    async def complete(
        self,
        messages: list[Memory],
        stream: bool = False,
        response_format: Optional[dict] = None,
        on_token: Optional[Callable[[str], None]] = None,
    ) -> str:
        options = self.request_options(response_format)
        payload = _to_messages(messages)
        logger.debug("Sending %d messages to %s", len(payload), self.config.model)
        try:
            if stream:
                return await self._stream(payload, options, on_token)
            response = await self.client.chat.completions.create(messages=payload, **options)
        except OpenAIError as e:
            raise CompletionError(f"Completion request failed: {e}") from e

        if not response or not response.choices:
            raise CompletionError("No assistant response")
        content = response.choices[0].message.content
        if content is None:
            raise CompletionError("No assistant response")
        return content

    async def _stream(self, payload: list[dict], options: dict, on_token) -> str:
        parts = []
        stream = await self.client.chat.completions.create(messages=payload, stream=True, **options)
        async for chunk in stream:
            for choice in chunk.choices:
                content = choice.delta.content if choice.delta else None
                if content:
                    parts.append(content)
                    if on_token is not None:
                        on_token(content)
        if not parts:
            raise CompletionError("No assistant response")
        return "".join(parts)

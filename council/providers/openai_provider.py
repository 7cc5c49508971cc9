"""OpenAI provider using openai SDK with native async."""

import asyncio
import logging
import os
import time

from openai import AsyncOpenAI

from config.config_loader import ProviderConfig
from council.models import ProviderResponse, TokenUsage
from council.providers.base import AIProvider, ProviderError

logger = logging.getLogger(__name__)


def _chat_messages(prompt: str, context: str | None) -> list[dict[str, str]]:
    messages = []
    if context:
        messages.append({"role": "system", "content": context})
    messages.append({"role": "user", "content": prompt})
    return messages


class OpenAIProvider(AIProvider):
    """OpenAI provider via openai SDK."""

    _label = "OpenAI"

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = self._make_client(api_key)

    def _make_client(self, api_key: str) -> AsyncOpenAI:
        return AsyncOpenAI(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def generate(
        self,
        prompt: str,
        model: str | None = None,
        context: str | None = None,
    ) -> ProviderResponse:
        model = model or self._config.model
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=model,
                    messages=_chat_messages(prompt, context),
                    max_tokens=self._config.max_tokens,
                ),
                timeout=self._config.request_timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(
                self._config.name, f"Request timed out after {self._config.request_timeout_sec}s"
            ) from exc
        except Exception as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start

        choice = response.choices[0] if response.choices else None
        if not choice or not choice.message.content:
            raise ProviderError(self._config.name, "Empty response content")

        usage = TokenUsage()
        if response.usage:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
                total_tokens=response.usage.total_tokens,
            )

        logger.info("%s %s: %.2fs, %d tokens", self._label, model, latency, usage.total_tokens)

        return ProviderResponse(
            success=True,
            content=choice.message.content,
            token_usage=usage,
            latency_sec=latency,
        )

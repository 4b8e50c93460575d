"""Async chat-completion client used by the advisor chat and report generation."""
from __future__ import annotations

import os
from typing import Any, AsyncIterator


class LLMCallError(Exception):
    """The AI provider call failed or could not be made."""


class LLMClient:
    """Unified async LLM client supporting OpenAI and Anthropic."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int = 4000,
        temperature: float = 0.7,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "openai")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            try:
                self._client = openai.AsyncOpenAI(**kwargs)
            except openai.OpenAIError as exc:
                raise LLMCallError(f"OpenAI client not configured: {exc}") from exc
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def complete(self, system: str, user: str) -> str:
        """Send system+user message to the LLM, return the raw reply text."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                return response.content[0].text.strip()
            response = await self._client.chat.completions.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            )
            return (response.choices[0].message.content or "").strip()
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}") from exc

    async def stream_chat(self, system: str, messages: list[dict[str, str]]) -> AsyncIterator[str]:
        """Yield reply text deltas for a multi-turn conversation."""
        try:
            if self.provider == "anthropic":
                async with self._client.messages.stream(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                    system=system,
                    messages=messages,
                ) as stream:
                    async for text in stream.text_stream:
                        yield text
                return
            stream = await self._client.chat.completions.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                stream=True,
                messages=[{"role": "system", "content": system}, *messages],
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        except Exception as exc:
            raise LLMCallError(f"LLM stream failed: {exc}") from exc

"""
Streaming completion clients used to explain metric ingestion.

Provides:
- Async OpenAI client (GPT-4o family)
- Async Anthropic client (Claude)
- Unified streaming interface: text fragments in delivery order
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from typing import AsyncIterator, Dict, List, Optional

from dpm_finder.config.base_config import LLMConfig

logger = logging.getLogger(__name__)

OPENAI_PROVIDER = "openai"
ANTHROPIC_PROVIDER = "anthropic"


class CompletionClient(ABC):
    """
    Abstract base class for streaming completion clients.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o",
        max_retries: int = 2,
        timeout: float = 60.0,
        base_url: Optional[str] = None,
    ):
        """
        Initialize completion client.

        Args:
            api_key: API key (or use env var)
            model: Model name/ID
            max_retries: Retries performed by the vendor SDK before the stream opens
            timeout: Request timeout in seconds
            base_url: Optional custom base URL
        """
        self.api_key = api_key
        self.model = model
        self.max_retries = max_retries
        self.timeout = timeout
        self.base_url = base_url

        self._client = None

    @abstractmethod
    def complete_stream(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.2,
        max_tokens: int = 1024,
    ) -> AsyncIterator[str]:
        """
        Stream completion from messages.

        Args:
            messages: List of message dicts with 'role' and 'content'
            temperature: Sampling temperature
            max_tokens: Maximum tokens

        Yields:
            Content fragments as they arrive
        """

    def stream_prompt(
        self,
        prompt: str,
        temperature: float = 0.2,
        max_tokens: int = 1024,
    ) -> AsyncIterator[str]:
        """Stream the answer to a single user-role prompt."""
        return self.complete_stream(
            [{"role": "user", "content": prompt}],
            temperature=temperature,
            max_tokens=max_tokens,
        )

    async def close(self) -> None:
        """Close the client and cleanup resources."""


class OpenAIClient(CompletionClient):
    """
    OpenAI chat completions client.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o",
        max_retries: int = 2,
        timeout: float = 60.0,
        base_url: Optional[str] = None,
        organization: Optional[str] = None,
    ):
        super().__init__(api_key, model, max_retries, timeout, base_url)

        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.organization = organization or os.getenv("OPENAI_ORG_ID")

        if not self.api_key:
            raise ValueError(
                "OpenAI API key required. Set OPENAI_API_KEY or pass api_key"
            )

    def _get_client(self):
        """Get or create OpenAI client."""
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(
                api_key=self.api_key,
                organization=self.organization,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=self.max_retries,
            )
        return self._client

    async def complete_stream(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.2,
        max_tokens: int = 1024,
    ) -> AsyncIterator[str]:
        """Stream completion using OpenAI API."""
        client = self._get_client()

        try:
            stream = await client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                stream=True,
            )

            async for chunk in stream:
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content

        except Exception as e:
            logger.error(f"OpenAI streaming error: {e}")
            raise

    async def close(self) -> None:
        """Close the OpenAI client."""
        if self._client is not None:
            await self._client.close()
            self._client = None


class AnthropicClient(CompletionClient):
    """
    Anthropic messages client.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "claude-3-5-sonnet-20241022",
        max_retries: int = 2,
        timeout: float = 60.0,
        base_url: Optional[str] = None,
    ):
        super().__init__(api_key, model, max_retries, timeout, base_url)

        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")

        if not self.api_key:
            raise ValueError(
                "Anthropic API key required. Set ANTHROPIC_API_KEY or pass api_key"
            )

    def _get_client(self):
        """Get or create Anthropic client."""
        if self._client is None:
            from anthropic import AsyncAnthropic

            kwargs = {
                "api_key": self.api_key,
                "timeout": self.timeout,
                "max_retries": self.max_retries,
            }
            if self.base_url:
                kwargs["base_url"] = self.base_url

            self._client = AsyncAnthropic(**kwargs)
        return self._client

    async def complete_stream(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.2,
        max_tokens: int = 1024,
    ) -> AsyncIterator[str]:
        """Stream completion using Anthropic API."""
        client = self._get_client()

        # System prompts travel separately in the Anthropic API
        system = None
        filtered_messages = []
        for msg in messages:
            if msg["role"] == "system":
                system = msg["content"]
            else:
                filtered_messages.append(msg)

        api_kwargs = {
            "model": self.model,
            "messages": filtered_messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if system:
            api_kwargs["system"] = system

        try:
            async with client.messages.stream(**api_kwargs) as stream:
                async for text in stream.text_stream:
                    yield text

        except Exception as e:
            logger.error(f"Anthropic streaming error: {e}")
            raise

    async def close(self) -> None:
        """Close the Anthropic client."""
        if self._client is not None:
            await self._client.close()
            self._client = None


def detect_provider(model: str) -> str:
    """Guess the provider from a model name; OpenAI when unsure."""
    model_lower = model.lower()
    if any(x in model_lower for x in ["claude", "anthropic"]):
        return ANTHROPIC_PROVIDER
    if not any(x in model_lower for x in ["gpt", "openai", "o1", "o3", "turbo"]):
        logger.warning(f"Unknown model {model}, defaulting to OpenAI client")
    return OPENAI_PROVIDER


def create_completion_client(
    model: str,
    provider: Optional[str] = None,
    api_key: Optional[str] = None,
    **kwargs,
) -> CompletionClient:
    """
    Factory function to create the appropriate completion client.

    Args:
        model: Model name
        provider: "openai" or "anthropic"; detected from the model if None
        api_key: API key (optional, uses env vars)
        **kwargs: Additional client arguments

    Returns:
        CompletionClient instance
    """
    provider = (provider or detect_provider(model)).lower()

    if provider == ANTHROPIC_PROVIDER:
        return AnthropicClient(api_key=api_key, model=model, **kwargs)
    if provider == OPENAI_PROVIDER:
        return OpenAIClient(api_key=api_key, model=model, **kwargs)
    raise ValueError(f"Unsupported completion provider: {provider}")


def create_completion_client_from_config(config: LLMConfig) -> CompletionClient:
    provider = (config.provider or detect_provider(config.model)).lower()
    api_key = (
        config.anthropic_api_key if provider == ANTHROPIC_PROVIDER
        else config.openai_api_key
    )
    return create_completion_client(
        config.model,
        provider=provider,
        api_key=api_key,
        max_retries=config.max_retries,
        timeout=config.timeout_seconds,
        base_url=config.base_url,
    )

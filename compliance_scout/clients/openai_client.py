"""
Singleton OpenAI client with rate limiting and 429 backoff.
"""
import os
from typing import Optional

import openai
from openai import AsyncOpenAI
from loguru import logger

from compliance_scout.config import (
    LLM_TIMEOUT,
    OPENAI_API_KEY,
    OPENAI_MAX_CONCURRENT,
    OPENAI_MODEL,
    OPENAI_REQUESTS_PER_MINUTE,
)
from compliance_scout.errors import AuthenticationError, MissingCredentialsError, ProviderError, RateLimitError
from compliance_scout.rate_limiter import RateLimitedCaller


class OpenAIClient:
    """
    Singleton OpenAI client used for classification, extraction and deduplication prompts.
    Every request goes through a RateLimitedCaller.
    """
    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not OpenAIClient._initialized:
            api_key = OPENAI_API_KEY or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise MissingCredentialsError("OPENAI_API_KEY must be set in environment or config")

            # The SDK's own retries would hide 429s from our backoff
            self.client = AsyncOpenAI(api_key=api_key, timeout=LLM_TIMEOUT, max_retries=0)
            self.caller = RateLimitedCaller(
                name="openai",
                max_concurrent=OPENAI_MAX_CONCURRENT,
                requests_per_minute=OPENAI_REQUESTS_PER_MINUTE,
            )
            OpenAIClient._initialized = True

    async def chat_completions_create(self, **kwargs):
        """
        Create a chat completion with rate limiting.
        Accepts all arguments that AsyncOpenAI.chat.completions.create accepts.

        Returns:
            The response from OpenAI's chat completions API, or None when every
            attempt was rate limited.
        """
        async def _create():
            try:
                return await self.client.chat.completions.create(**kwargs)
            except openai.RateLimitError as e:
                raise RateLimitError(f"OpenAI rate limited: {e}", status=429) from e
            except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
                raise AuthenticationError(f"OpenAI authentication failed: {e}", status=401) from e
            except openai.APIError as e:
                logger.debug(f"⚠️ OpenAI API request failed: {e}")
                raise ProviderError(f"OpenAI API error: {e}", status=getattr(e, "status_code", None)) from e

        return await self.caller.call(_create)

    async def complete(self, prompt: str, model: str = OPENAI_MODEL, temperature: float = 0.1) -> Optional[str]:
        """
        Send a single user prompt and return the response text.

        Returns:
            The message content, or None when the call was rate limited out.
        """
        resp = await self.chat_completions_create(
            model=model,
            messages=[{"role": "user", "content": prompt}],
            temperature=temperature,
        )
        if resp is None:
            return None
        return resp.choices[0].message.content or ""

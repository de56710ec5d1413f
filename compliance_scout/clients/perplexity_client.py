"""
Singleton Perplexity Sonar client used as the search provider.
"""
from typing import List, Optional

from aiohttp import ClientSession, ClientTimeout
from loguru import logger

from compliance_scout.config import (
    PERPLEXITY_API_KEY,
    PERPLEXITY_MAX_CONCURRENT,
    PERPLEXITY_MODEL,
    PERPLEXITY_REQUESTS_PER_MINUTE,
    PERPLEXITY_URL,
    SEARCH_TIMEOUT,
)
from compliance_scout.errors import AuthenticationError, MissingCredentialsError, ProviderError, RateLimitError
from compliance_scout.models import SearchHit, SearchResponse
from compliance_scout.rate_limiter import RateLimitedCaller


def raise_for_provider_status(provider: str, status: int, body: str) -> None:
    """Map an HTTP error status to the matching ProviderError subclass."""
    if status == 429 or "rate limit" in body.lower():
        raise RateLimitError(f"{provider} rate limited: {body[:200]}", status=status)
    if status in (401, 403):
        raise AuthenticationError(f"{provider} authentication failed. Please check your API key.", status=status)
    raise ProviderError(f"{provider} API error ({status}): {body[:200]}", status=status)


class PerplexityClient:
    """
    Singleton search client. `search` returns cited URLs and the answer text.
    """
    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not PerplexityClient._initialized:
            if not PERPLEXITY_API_KEY:
                raise MissingCredentialsError("PERPLEXITY_API_KEY must be set in environment or config")
            self.api_key = PERPLEXITY_API_KEY
            self.base_url = PERPLEXITY_URL
            self.caller = RateLimitedCaller(
                name="perplexity",
                max_concurrent=PERPLEXITY_MAX_CONCURRENT,
                requests_per_minute=PERPLEXITY_REQUESTS_PER_MINUTE,
            )
            self._session: Optional[ClientSession] = None
            PerplexityClient._initialized = True

    async def _get_session(self) -> ClientSession:
        """Get or create the aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = ClientSession(timeout=ClientTimeout(total=SEARCH_TIMEOUT))
        return self._session

    async def _post(self, payload: dict) -> dict:
        session = await self._get_session()
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        async with session.post(self.base_url, json=payload, headers=headers) as resp:
            if resp.status >= 400:
                raise_for_provider_status("Perplexity", resp.status, await resp.text())
            return await resp.json()

    async def search(
        self,
        prompt: str,
        domain_filter: Optional[List[str]] = None,
        context_size: str = "medium",
    ) -> Optional[SearchResponse]:
        """
        Run one web-grounded search prompt.

        Args:
            prompt: Natural-language search prompt.
            domain_filter: Optional allow-list of domains.
            context_size: "low", "medium" or "high".

        Returns:
            SearchResponse, or None when every attempt was rate limited.
        """
        payload = {
            "model": PERPLEXITY_MODEL,
            "messages": [{"role": "user", "content": prompt}],
            "web_search_options": {"search_context_size": context_size},
        }
        if domain_filter:
            payload["search_domain_filter"] = domain_filter

        data = await self.caller.call(lambda: self._post(payload))
        if data is None:
            return None

        hits = [
            SearchHit(url=r["url"], title=r.get("title") or "")
            for r in data.get("search_results") or []
            if r.get("url")
        ]
        if not hits:
            # Older responses only carry a flat citations list
            hits = [SearchHit(url=u) for u in data.get("citations") or [] if isinstance(u, str)]

        choices = data.get("choices") or [{}]
        answer = (choices[0].get("message") or {}).get("content", "")
        logger.debug(f"🔎 Perplexity returned {len(hits)} URLs")
        return SearchResponse(result_urls=hits, raw_answer_text=answer)

    async def close(self):
        """Close the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

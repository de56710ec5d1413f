"""
Singleton Firecrawl client with rate limiting, used as the scrape provider.
"""
import asyncio
import time
from typing import Any, Dict, List, Optional

from aiohttp import ClientSession, ClientTimeout
from loguru import logger

from compliance_scout.config import (
    BATCH_POLL_INTERVAL,
    BATCH_TIMEOUT,
    FIRECRAWL_API_KEY,
    FIRECRAWL_MAX_CONCURRENT,
    FIRECRAWL_REQUESTS_PER_MINUTE,
    FIRECRAWL_URL,
    SCRAPE_TIMEOUT_MS,
)
from compliance_scout.clients.perplexity_client import raise_for_provider_status
from compliance_scout.errors import MissingCredentialsError, ProviderError
from compliance_scout.models import ScrapeResponse
from compliance_scout.rate_limiter import RateLimitedCaller


def _scrape_options(
    extraction_schema: Optional[Dict[str, Any]],
    extraction_prompt: Optional[str],
    wait_ms: Optional[int],
    timeout_ms: int,
) -> Dict[str, Any]:
    options: Dict[str, Any] = {
        "formats": ["markdown"],
        "onlyMainContent": True,
        "timeout": timeout_ms,
    }
    if wait_ms:
        options["waitFor"] = wait_ms
    if extraction_schema:
        options["formats"].append("json")
        options["jsonOptions"] = {"schema": extraction_schema}
        if extraction_prompt:
            options["jsonOptions"]["prompt"] = extraction_prompt
    return options


def _to_scrape_response(url: str, page: Dict[str, Any], success: bool = True) -> ScrapeResponse:
    structured = page.get("json")
    return ScrapeResponse(
        url=url,
        plain_text=page.get("markdown") or "",
        structured_json=structured if isinstance(structured, dict) else None,
        success=success,
        metadata=page.get("metadata") or {},
    )


class FirecrawlClient:
    """
    Singleton client for Firecrawl's scrape and batch-scrape endpoints.
    Every HTTP request goes through a RateLimitedCaller.
    """
    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not FirecrawlClient._initialized:
            if not FIRECRAWL_API_KEY:
                raise MissingCredentialsError("FIRECRAWL_API_KEY must be set in environment or config")
            self.api_key = FIRECRAWL_API_KEY
            self.base_url = FIRECRAWL_URL
            self.caller = RateLimitedCaller(
                name="firecrawl",
                max_concurrent=FIRECRAWL_MAX_CONCURRENT,
                requests_per_minute=FIRECRAWL_REQUESTS_PER_MINUTE,
            )
            self._session: Optional[ClientSession] = None
            FirecrawlClient._initialized = True

    async def _get_session(self) -> ClientSession:
        """Get or create the aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = ClientSession()
        return self._session

    async def _request(self, method: str, path: str, timeout: float, payload: Optional[dict] = None) -> dict:
        session = await self._get_session()
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        async with session.request(
            method,
            f"{self.base_url}{path}",
            json=payload,
            headers=headers,
            timeout=ClientTimeout(total=timeout),
        ) as resp:
            if resp.status >= 400:
                raise_for_provider_status("Firecrawl", resp.status, await resp.text())
            return await resp.json()

    async def scrape(
        self,
        url: str,
        extraction_schema: Optional[Dict[str, Any]] = None,
        extraction_prompt: Optional[str] = None,
        wait_ms: Optional[int] = None,
        timeout_ms: int = SCRAPE_TIMEOUT_MS,
        max_retries: Optional[int] = None,
    ) -> Optional[ScrapeResponse]:
        """
        Scrape one page, optionally with schema-guided JSON extraction.

        Args:
            url: Page to scrape.
            extraction_schema: JSON schema for structured extraction.
            extraction_prompt: Instructions accompanying the schema.
            wait_ms: Time to let JavaScript render before capture.
            timeout_ms: Provider-side timeout.
            max_retries: Rate-limit retries for this request; the client default when None.

        Returns:
            ScrapeResponse, or None when every attempt was rate limited.
        """
        payload = {"url": url, **_scrape_options(extraction_schema, extraction_prompt, wait_ms, timeout_ms)}
        # Client-side timeout covers the provider timeout plus the render wait
        total_timeout = (timeout_ms + (wait_ms or 0)) / 1000 + 15

        data = await self.caller.call(
            lambda: self._request("POST", "/scrape", total_timeout, payload), max_retries=max_retries
        )
        if data is None:
            return None
        if not data.get("success", False):
            raise ProviderError(f"Firecrawl scrape failed for {url}: {data.get('error', 'no details')}")
        return _to_scrape_response(url, data.get("data") or {})

    async def scrape_many(
        self,
        urls: List[str],
        extraction_schema: Optional[Dict[str, Any]] = None,
        extraction_prompt: Optional[str] = None,
        wait_ms: Optional[int] = None,
        timeout_ms: int = SCRAPE_TIMEOUT_MS,
    ) -> Optional[List[ScrapeResponse]]:
        """
        Scrape several pages with one batch job and poll until it finishes.

        Returns:
            One ScrapeResponse per input URL in input order (success=False for
            pages the job did not return), or None when rate limited out.
        """
        payload = {"urls": urls, **_scrape_options(extraction_schema, extraction_prompt, wait_ms, timeout_ms)}
        job = await self.caller.call(lambda: self._request("POST", "/batch/scrape", 60, payload))
        if job is None:
            return None
        job_id = job.get("id")
        if not job_id:
            raise ProviderError(f"Firecrawl batch scrape did not return a job id: {job}")

        logger.debug(f"📦 Firecrawl batch job {job_id} started for {len(urls)} URLs")
        deadline = time.monotonic() + BATCH_TIMEOUT
        while True:
            status = await self.caller.call(lambda: self._request("GET", f"/batch/scrape/{job_id}", 60))
            if status is None:
                return None
            state = status.get("status")
            if state == "completed":
                break
            if state == "failed":
                raise ProviderError(f"Firecrawl batch job {job_id} failed")
            if time.monotonic() > deadline:
                raise asyncio.TimeoutError(f"Firecrawl batch job {job_id} timed out")
            await asyncio.sleep(BATCH_POLL_INTERVAL)

        by_url: Dict[str, Dict[str, Any]] = {}
        for page in status.get("data") or []:
            source = (page.get("metadata") or {}).get("sourceURL")
            if source:
                by_url[source] = page
        return [
            _to_scrape_response(url, by_url[url]) if url in by_url else ScrapeResponse(url=url, success=False)
            for url in urls
        ]

    async def close(self):
        """Close the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

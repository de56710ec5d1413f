"""
Exception types shared across the compliance pipeline.

Provider errors describe a single failed external call. Pipeline errors are
fatal: they abort the whole run so that callers never mistake "could not look"
for "looked and found nothing".
"""
from typing import Optional


class ComplianceScoutError(Exception):
    """Base class for all errors raised by this package."""


class ProviderError(ComplianceScoutError):
    """An external provider (search, scrape or LLM) call failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RateLimitError(ProviderError):
    """The provider answered 429 / "rate limited". The only retryable failure."""


class AuthenticationError(ProviderError):
    """The provider rejected our credentials (401/403)."""


class ScrapeError(ComplianceScoutError):
    """A single URL could not be scraped."""


class PipelineError(ComplianceScoutError):
    """A fatal condition that aborts the whole run."""


class MissingCredentialsError(PipelineError, ValueError):
    """A required API key is not configured."""


class NoSourcesFoundError(PipelineError):
    """Discovery or filtering left no URLs to scrape."""


class ScrapingFailedError(PipelineError):
    """Every selected source failed to scrape."""

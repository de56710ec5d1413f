"""Client singletons for external API interactions."""
from compliance_scout.clients.firecrawl_client import FirecrawlClient
from compliance_scout.clients.openai_client import OpenAIClient
from compliance_scout.clients.perplexity_client import PerplexityClient

__all__ = ["FirecrawlClient", "OpenAIClient", "PerplexityClient"]

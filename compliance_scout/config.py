# compliance_scout/config.py
from dotenv import load_dotenv
import os

load_dotenv()

# API Keys
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
PERPLEXITY_API_KEY = os.getenv("PERPLEXITY_API_KEY")
FIRECRAWL_API_KEY = os.getenv("FIRECRAWL_API_KEY")

# Models
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o")
PERPLEXITY_MODEL = os.getenv("PERPLEXITY_MODEL", "sonar-reasoning")

# URLs
PERPLEXITY_URL = "https://api.perplexity.ai/chat/completions"
FIRECRAWL_URL = "https://api.firecrawl.dev/v1"

# Rate limits per provider (Firecrawl hobby plan: 100 req/min, 5 concurrent)
FIRECRAWL_MAX_CONCURRENT = int(os.getenv("FIRECRAWL_CONCURRENT_LIMIT", "5"))
FIRECRAWL_REQUESTS_PER_MINUTE = int(os.getenv("FIRECRAWL_RATE_LIMIT", "100"))
PERPLEXITY_MAX_CONCURRENT = 4
PERPLEXITY_REQUESTS_PER_MINUTE = 50
OPENAI_MAX_CONCURRENT = 10
OPENAI_REQUESTS_PER_MINUTE = 500

# Retry/backoff for rate-limited calls
MAX_RETRIES = 3
RETRY_BASE_DELAY = 2.0
RETRY_MAX_DELAY = 30.0

# Timeouts (seconds unless suffixed _MS)
SEARCH_TIMEOUT = 60
LLM_TIMEOUT = 90
SCRAPE_TIMEOUT_MS = 30000
GOV_SITE_WAIT_MS = 3000
DEFAULT_WAIT_MS = 1000
RETRY_WAIT_MS = 2000
BATCH_POLL_INTERVAL = 2.0
BATCH_TIMEOUT = 300

# Scraping
SCRAPE_CHUNK_SIZE = 5
CHUNK_DELAY_SECONDS = 1.0
RATE_LIMIT_COOLDOWN_SECONDS = 5.0
MIN_FALLBACK_TEXT_LENGTH = 50
USE_BATCH_SCRAPE = os.getenv("USE_BATCH_SCRAPE", "false").lower() in ("1", "true", "yes")

# Classification
REQUIREMENT_CLASSIFY_BATCH_SIZE = 20

# Coverage scoring
KEYWORD_MATCH_THRESHOLD = 0.6
JURISDICTION_WEIGHTS = {"federal": 0.4, "state": 0.3, "city": 0.1, "industry": 0.2}
CONFIDENCE_WEIGHTS = {"HIGH": 1.0, "MEDIUM": 0.7, "LOW": 0.4}

# Batch runner
BATCH_SIZE = 3
INPUT_CSV = "profiles.csv"
OUTPUT_CSV = "requirements.csv"
GAPS_CSV = "gaps.csv"
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG")

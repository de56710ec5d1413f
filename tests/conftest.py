import pytest

from compliance_scout.clients import FirecrawlClient, OpenAIClient, PerplexityClient
from compliance_scout.models import BusinessProfile, Requirement


def _reset_clients():
    for client_cls in (FirecrawlClient, OpenAIClient, PerplexityClient):
        client_cls._instance = None
        client_cls._initialized = False


@pytest.fixture(autouse=True)
def reset_singletons():
    """Client singletons hold asyncio primitives bound to one event loop."""
    _reset_clients()
    yield
    _reset_clients()


@pytest.fixture
def restaurant_profile():
    return BusinessProfile(
        state="California",
        city="San Francisco",
        industry="Restaurant",
        employee_count=15,
        annual_revenue=1_500_000,
        special_factors=("Business structure: LLC", "Serves alcohol"),
    )


class RecordingSink:
    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    @property
    def types(self):
        return [e.type for e in self.events]

    def of_type(self, event_type):
        return [e for e in self.events if e.type == event_type]


@pytest.fixture
def sink():
    return RecordingSink()


def make_requirement(name, source_type="federal", **fields):
    defaults = dict(
        id=f"req-{name}",
        name=name,
        description=f"{name} description",
        source="IRS",
        source_url="https://www.irs.gov/example",
        source_type=source_type,
    )
    defaults.update(fields)
    return Requirement(**defaults)


@pytest.fixture
def req():
    """Factory for Requirement records with sensible defaults."""
    return make_requirement

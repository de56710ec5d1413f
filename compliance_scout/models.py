"""
Typed data models for the compliance research pipeline.
All data structures used throughout the codebase should be defined here.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

from compliance_scout.geography import state_code

Jurisdiction = Literal["federal", "state", "city", "industry"]
QueryCategory = Literal["federal", "state", "local", "industry"]
ConfidenceLevel = Literal["HIGH", "MEDIUM", "LOW"]
Priority = Literal["critical", "required", "recommended"]
Severity = Literal["critical", "high", "medium", "low"]
RiskLevel = Literal["low", "medium", "high", "critical"]

JURISDICTIONS: Tuple[str, ...] = ("federal", "state", "city", "industry")
QUERY_CATEGORIES: Tuple[str, ...] = ("federal", "state", "local", "industry")

BUSINESS_STRUCTURE_PREFIX = "Business structure:"


@dataclass(frozen=True)
class BusinessProfile:
    """Input business profile. Immutable once a run starts."""
    state: str
    industry: str
    city: Optional[str] = None
    naics_code: Optional[str] = None
    employee_count: int = 0
    annual_revenue: Optional[float] = None
    special_factors: Tuple[str, ...] = ()  # e.g. "Business structure: LLC"
    has_physical_location: Optional[bool] = None

    def __post_init__(self):
        if self.employee_count < 0:
            raise ValueError("employee_count must be >= 0")
        # Accept lists from callers but store an immutable tuple
        object.__setattr__(self, "special_factors", tuple(self.special_factors))

    @property
    def state_code(self) -> Optional[str]:
        return state_code(self.state)

    @property
    def location(self) -> str:
        return f"{self.city}, {self.state}" if self.city else self.state

    @property
    def business_structure(self) -> str:
        for factor in self.special_factors:
            if factor.startswith(BUSINESS_STRUCTURE_PREFIX):
                return factor[len(BUSINESS_STRUCTURE_PREFIX):].strip()
        return "unknown"

    @property
    def other_factors(self) -> List[str]:
        return [f for f in self.special_factors if not f.startswith(BUSINESS_STRUCTURE_PREFIX)]

    def describe(self) -> str:
        """Multi-line profile summary used as context in every LLM prompt."""
        naics = f" (NAICS {self.naics_code})" if self.naics_code else ""
        revenue = f"${self.annual_revenue:,.0f}" if self.annual_revenue else "unspecified"
        return (
            f"- Industry: {self.industry}{naics}\n"
            f"- Location: {self.city or 'City not specified'}, {self.state}\n"
            f"- Employees: {self.employee_count}\n"
            f"- Revenue: {revenue}\n"
            f"- Structure: {self.business_structure}\n"
            f"- Special Factors: {'; '.join(self.other_factors) or 'none'}"
        )


@dataclass
class SearchHit:
    """A single result URL returned by the search provider."""
    url: str
    title: str = ""


@dataclass
class SearchResponse:
    """Search provider answer: cited URLs plus the free-text answer."""
    result_urls: List[SearchHit]
    raw_answer_text: str = ""


@dataclass
class ScrapeResponse:
    """Scrape provider answer for one page."""
    url: str
    plain_text: str = ""
    structured_json: Optional[Dict[str, Any]] = None
    success: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DiscoveredUrl:
    """URL found by one of the four category searches."""
    url: str
    title: str
    source_query_category: QueryCategory


@dataclass
class ClassifiedUrl:
    """Discovered URL after relevance classification."""
    url: str
    title: str
    source_query_category: QueryCategory
    category: Jurisdiction  # "city" covers county/municipal/township too
    relevant: bool = True


@dataclass
class Requirement:
    """A single discrete compliance obligation."""
    id: str
    name: str
    description: str
    source: str  # agency or organisation name
    source_url: str
    source_type: Jurisdiction
    form_number: Optional[str] = None
    deadline: Optional[str] = None
    frequency: Optional[str] = None
    penalty: Optional[str] = None
    applies_condition: Optional[str] = None
    citation: Optional[str] = None
    confidence_level: ConfidenceLevel = "MEDIUM"
    verified: bool = False  # never set by automated extraction
    category: Optional[str] = None  # topical label: Tax, Employment, Safety...
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchScrapeResult:
    """Outcome of scraping one URL."""
    url: str
    success: bool
    requirements: List[Requirement] = field(default_factory=list)
    error: Optional[str] = None
    markdown: str = ""
    extracted_at: Optional[str] = None


@dataclass(frozen=True)
class KnowledgeBaseConditions:
    """Applicability conditions. Undefined fields always pass."""
    min_employees: Optional[int] = None
    max_employees: Optional[int] = None
    industry: Tuple[str, ...] = ()  # keywords, any of which must appear in the profile industry
    state: Optional[str] = None  # two-letter code
    revenue: Optional[float] = None  # minimum annual revenue
    has_physical_location: Optional[bool] = None


@dataclass(frozen=True)
class KnowledgeBaseEntry:
    """Catalog entry describing an expected compliance obligation."""
    id: str
    category: Jurisdiction
    requirement: str
    conditions: KnowledgeBaseConditions
    priority: Priority
    description: str
    citation: Optional[str] = None
    penalty: Optional[str] = None
    common_name: Optional[str] = None


@dataclass
class GapAnalysis:
    """An expected requirement with no matching discovered requirement."""
    category: Jurisdiction
    requirement: str
    severity: Severity
    description: str
    penalty: Optional[str] = None
    suggested_search_intents: List[str] = field(default_factory=list)
    applicable_conditions: Optional[KnowledgeBaseConditions] = None
    citation: Optional[str] = None


@dataclass
class JurisdictionCoverage:
    found: int
    expected: int
    percentage: int  # always within [0, 100]
    requirements: List[str] = field(default_factory=list)
    missing_requirements: List[str] = field(default_factory=list)


@dataclass
class IndustryCoverage:
    score: int
    expected_requirements: List[str] = field(default_factory=list)
    found_requirements: List[str] = field(default_factory=list)
    missing_requirements: List[str] = field(default_factory=list)


@dataclass
class ConfidenceDistribution:
    """Percentage of requirements per confidence level."""
    high: int = 0
    medium: int = 0
    low: int = 0
    unverified: int = 0


@dataclass
class CoverageReport:
    overall_score: int
    jurisdiction_coverage: Dict[str, JurisdictionCoverage]
    industry_coverage: IndustryCoverage
    confidence_distribution: ConfidenceDistribution
    risk_level: RiskLevel
    gaps: List[GapAnalysis] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    completeness_score: int = 0
    data_quality_score: int = 0


@dataclass
class Deadline:
    requirement: str
    deadline: str
    days_until_due: int
    category: Literal["overdue", "due_soon", "upcoming", "recurring"]
    penalty: Optional[str] = None


@dataclass
class Recommendation:
    id: str
    priority: Severity
    category: Literal["gap", "deadline", "verification", "optimization", "cost_saving"]
    title: str
    description: str
    action: str
    impact: str
    timeframe: Literal["immediate", "within_7_days", "within_30_days", "within_90_days", "annual"]
    estimated_effort: Literal["minimal", "moderate", "significant"]
    related_requirements: List[str] = field(default_factory=list)
    potential_savings: Optional[str] = None


@dataclass
class RequirementStatistics:
    total: int
    federal: int
    state: int
    city: int
    industry: int
    sources_scraped: int = 0
    sources_failed: int = 0


@dataclass
class PipelineResult:
    """Final output of a compliance check."""
    check_id: str
    requirements: List[Requirement]
    coverage: CoverageReport
    gaps: List[GapAnalysis]
    recommendations: List[Recommendation]
    statistics: RequirementStatistics

"""
Progress events emitted by the pipeline and the tracker that owns progress values.

Each milestone has its own event type discriminated by `type`. Progress
percentages come from a single phase table so they can only move forward.
"""
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Literal, Optional, Union

from loguru import logger

# phase -> (start, end) percentage range
PHASE_PROGRESS = {
    "discovery": (5, 20),
    "filtering": (20, 30),
    "scraping": (30, 90),
    "processing": (90, 100),
}


@dataclass
class QueryBuildingEvent:
    type: Literal["query-building"] = field(default="query-building", init=False)
    message: str = ""
    details: str = ""
    progress: Optional[int] = None


@dataclass
class UrlsDiscoveredEvent:
    type: Literal["urls-discovered"] = field(default="urls-discovered", init=False)
    count: int = 0
    breakdown: Dict[str, int] = field(default_factory=dict)
    failed_categories: List[str] = field(default_factory=list)
    message: str = ""
    progress: Optional[int] = None


@dataclass
class UrlsFilteredEvent:
    type: Literal["urls-filtered"] = field(default="urls-filtered", init=False)
    selected: int = 0
    total: int = 0
    breakdown: Dict[str, int] = field(default_factory=dict)
    message: str = ""
    progress: Optional[int] = None


@dataclass
class ScrapingSiteEvent:
    type: Literal["scraping-site"] = field(default="scraping-site", init=False)
    url: str = ""
    index: int = 0
    total: int = 0
    message: str = ""
    progress: Optional[int] = None


@dataclass
class SiteCompleteEvent:
    type: Literal["site-complete"] = field(default="site-complete", init=False)
    url: str = ""
    rules_found: int = 0
    used_text_fallback: bool = False
    message: str = ""
    progress: Optional[int] = None


@dataclass
class SiteFailedEvent:
    type: Literal["site-failed"] = field(default="site-failed", init=False)
    url: str = ""
    error: str = ""
    message: str = ""
    progress: Optional[int] = None


@dataclass
class AggregationCompleteEvent:
    type: Literal["aggregation-complete"] = field(default="aggregation-complete", init=False)
    total_found: int = 0
    after_dedup: int = 0
    message: str = ""
    progress: Optional[int] = None


@dataclass
class AiDeduplicationCompleteEvent:
    type: Literal["ai-deduplication-complete"] = field(default="ai-deduplication-complete", init=False)
    after_dedup: int = 0
    duplicates_removed: int = 0
    message: str = ""
    progress: Optional[int] = None


@dataclass
class AiDeduplicationFailedEvent:
    type: Literal["ai-deduplication-failed"] = field(default="ai-deduplication-failed", init=False)
    error: str = ""
    message: str = ""
    progress: Optional[int] = None


@dataclass
class CompleteEvent:
    type: Literal["complete"] = field(default="complete", init=False)
    total_rules: int = 0
    sources: int = 0
    stats: Dict[str, int] = field(default_factory=dict)
    message: str = ""
    progress: Optional[int] = None


@dataclass
class ErrorEvent:
    type: Literal["error"] = field(default="error", init=False)
    error: str = ""
    message: str = ""
    progress: Optional[int] = None


ProgressEvent = Union[
    QueryBuildingEvent,
    UrlsDiscoveredEvent,
    UrlsFilteredEvent,
    ScrapingSiteEvent,
    SiteCompleteEvent,
    SiteFailedEvent,
    AggregationCompleteEvent,
    AiDeduplicationCompleteEvent,
    AiDeduplicationFailedEvent,
    CompleteEvent,
    ErrorEvent,
]

ProgressSink = Callable[[ProgressEvent], Any]


def event_to_dict(event: ProgressEvent) -> Dict[str, Any]:
    """Serialize an event for transport (e.g. a websocket relay)."""
    return {k: v for k, v in asdict(event).items() if v is not None}


class ProgressTracker:
    """
    Assigns progress values from PHASE_PROGRESS and forwards events to a sink.

    Progress never decreases within a run. Delivery is fire-and-forget: sink
    failures are logged and dropped.
    """

    def __init__(self, sink: Optional[ProgressSink] = None):
        self._sink = sink
        self._progress = 0

    @property
    def progress(self) -> int:
        return self._progress

    def progress_for(self, phase: str, fraction: float = 0.0) -> int:
        start, end = PHASE_PROGRESS[phase]
        fraction = min(max(fraction, 0.0), 1.0)
        return int(round(start + (end - start) * fraction))

    def emit(self, event: ProgressEvent, phase: Optional[str] = None, fraction: float = 0.0) -> None:
        if phase is not None:
            self._progress = max(self._progress, self.progress_for(phase, fraction))
            event.progress = self._progress
        elif event.progress is not None:
            self._progress = max(self._progress, event.progress)
            event.progress = self._progress

        if self._sink is None:
            return
        try:
            self._sink(event)
        except Exception as e:
            logger.debug(f"⚠️ Progress sink failed on '{event.type}': {e}")

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime


@dataclass(slots=True)
class PageMetrics:
    """One page aggregated over a closed date window."""

    page: str
    position: float
    ctr: float
    impressions: float
    clicks: float = 0.0


@dataclass(slots=True)
class QueryMetrics:
    page: str
    query: str
    clicks: float
    impressions: float
    position: float


@dataclass(slots=True)
class DailyMetricPoint:
    date: str
    clicks: float
    impressions: float
    position: float


@dataclass(slots=True)
class SearchAnalyticsRow:
    page: str
    date: date
    clicks: int
    impressions: int
    ctr: float
    position: float
    query: str | None = None


@dataclass(slots=True)
class IndexStatusResult:
    verdict: str
    coverage_state: str | None = None
    indexing_state: str | None = None
    page_fetch_state: str | None = None
    last_crawl_time: datetime | None = None
    robots_txt_state: str | None = None

    @property
    def indexed(self) -> bool:
        return self.verdict == "PASS"


def safe_ctr(clicks: float, impressions: float) -> float:
    return clicks / impressions if impressions > 0 else 0.0

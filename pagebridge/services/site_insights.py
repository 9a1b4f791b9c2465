from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pagebridge.core.dates import days_ago, utcnow
from pagebridge.services.metrics import DailyMetricPoint, PageMetrics, QueryMetrics

logger = logging.getLogger(__name__)

TOP_PERFORMER_LIMIT = 20
ZERO_CLICK_MIN_IMPRESSIONS = 100
ZERO_CLICK_MAX_CLICKS = 2
NEW_KEYWORD_MIN_IMPRESSIONS = 10
NEW_KEYWORD_LIMIT = 50
DAILY_POINTS = 28


@dataclass(slots=True)
class TopPerformer:
    page: str
    clicks: float
    impressions: float
    position: float


@dataclass(slots=True)
class ZeroClickPage:
    page: str
    impressions: float
    clicks: float
    position: float


@dataclass(slots=True)
class OrphanPage:
    page: str
    last_impression: str | None = None


@dataclass(slots=True)
class NewKeywordOpportunity:
    query: str
    page: str
    impressions: float
    position: float


@dataclass(slots=True)
class SiteInsightData:
    top_performers: list[TopPerformer] = field(default_factory=list)
    zero_click_pages: list[ZeroClickPage] = field(default_factory=list)
    orphan_pages: list[OrphanPage] = field(default_factory=list)
    new_keyword_opportunities: list[NewKeywordOpportunity] = field(default_factory=list)


def top_performers(rows: Iterable[PageMetrics], limit: int = TOP_PERFORMER_LIMIT) -> list[TopPerformer]:
    ranked = sorted(rows, key=lambda row: row.clicks, reverse=True)[:limit]
    return [
        TopPerformer(page=row.page, clicks=row.clicks, impressions=row.impressions, position=row.position)
        for row in ranked
    ]


def zero_click_pages(rows: Iterable[PageMetrics]) -> list[ZeroClickPage]:
    selected = [
        row for row in rows if row.impressions >= ZERO_CLICK_MIN_IMPRESSIONS and row.clicks <= ZERO_CLICK_MAX_CLICKS
    ]
    selected.sort(key=lambda row: row.impressions, reverse=True)
    return [
        ZeroClickPage(page=row.page, impressions=row.impressions, clicks=row.clicks, position=row.position)
        for row in selected
    ]


def orphan_page_urls(all_pages: Sequence[str], active_pages: Iterable[str]) -> list[str]:
    active = set(active_pages)
    return [page for page in all_pages if page not in active]


def new_keyword_opportunities(
    recent: Iterable[QueryMetrics],
    historic_queries: set[str],
    *,
    min_impressions: float = NEW_KEYWORD_MIN_IMPRESSIONS,
    limit: int = NEW_KEYWORD_LIMIT,
) -> list[NewKeywordOpportunity]:
    fresh = [row for row in recent if row.query not in historic_queries and row.impressions >= min_impressions]
    fresh.sort(key=lambda row: row.impressions, reverse=True)
    return [
        NewKeywordOpportunity(query=row.query, page=row.page, impressions=row.impressions, position=row.position)
        for row in fresh[:limit]
    ]


def collect_daily_points(
    rows: Iterable[tuple[str, DailyMetricPoint]],
    keep: int = DAILY_POINTS,
) -> dict[str, list[DailyMetricPoint]]:
    by_page: dict[str, list[DailyMetricPoint]] = {}
    for page, point in rows:
        by_page.setdefault(page, []).append(point)
    for page, points in by_page.items():
        points.sort(key=lambda point: point.date)
        by_page[page] = points[-keep:]
    return by_page


class SiteInsightAnalyzer:
    def __init__(self, repository: Any) -> None:
        self.repository = repository

    async def analyze(self, site_id: str, all_pages: Sequence[str], *, now: datetime | None = None) -> SiteInsightData:
        now = now or utcnow()
        start, end = days_ago(28, now=now), days_ago(3, now=now)
        page_rows, recent, historic = await asyncio.gather(
            self.repository.get_page_metrics(site_id, start, end),
            self.repository.get_query_metrics(site_id, days_ago(7, now=now), now),
            self.repository.get_distinct_queries(site_id, days_ago(90, now=now), days_ago(14, now=now)),
        )

        orphans = orphan_page_urls(all_pages, (row.page for row in page_rows))
        last_seen: dict[str, str] = {}
        if orphans:
            last_seen = await self.repository.get_last_impression_dates(site_id, orphans)

        insight = SiteInsightData(
            top_performers=top_performers(page_rows),
            zero_click_pages=zero_click_pages(page_rows),
            orphan_pages=[OrphanPage(page=page, last_impression=last_seen.get(page)) for page in orphans],
            new_keyword_opportunities=new_keyword_opportunities(recent, set(historic)),
        )
        logger.info(
            "site insights site=%s top=%s zero_click=%s orphans=%s new_keywords=%s",
            site_id,
            len(insight.top_performers),
            len(insight.zero_click_pages),
            len(insight.orphan_pages),
            len(insight.new_keyword_opportunities),
        )
        return insight


class DailyMetricsCollector:
    def __init__(self, repository: Any) -> None:
        self.repository = repository

    async def collect(self, site_id: str, *, now: datetime | None = None) -> dict[str, list[DailyMetricPoint]]:
        now = now or utcnow()
        rows = await self.repository.get_daily_points(site_id, days_ago(31, now=now), days_ago(3, now=now))
        return collect_daily_points(rows)

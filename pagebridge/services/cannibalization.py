from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pagebridge.core.dates import days_ago, utcnow
from pagebridge.services.metrics import QueryMetrics
from pagebridge.services.url_matcher import MatchResult

logger = logging.getLogger(__name__)

MIN_QUERY_IMPRESSIONS = 100


@dataclass(slots=True)
class CompetingPage:
    page: str
    clicks: float
    impressions: float
    position: float


@dataclass(slots=True)
class CannibalizationGroup:
    query: str
    pages: list[CompetingPage]

    @property
    def total_impressions(self) -> float:
        return sum(page.impressions for page in self.pages)


@dataclass(slots=True)
class CannibalizationTarget:
    competing_page: str
    competing_document_id: str
    shared_queries: list[str] = field(default_factory=list)


def group_cannibalization(
    rows: Iterable[QueryMetrics],
    min_impressions: float = MIN_QUERY_IMPRESSIONS,
) -> list[CannibalizationGroup]:
    """Queries for which two or more pages rank, biggest combined audience first."""
    by_query: dict[str, list[CompetingPage]] = {}
    for row in rows:
        if row.impressions < min_impressions:
            continue
        by_query.setdefault(row.query, []).append(
            CompetingPage(page=row.page, clicks=row.clicks, impressions=row.impressions, position=row.position)
        )

    groups: list[CannibalizationGroup] = []
    for query, pages in by_query.items():
        if len(pages) < 2:
            continue
        pages.sort(key=lambda item: item.position)
        groups.append(CannibalizationGroup(query=query, pages=pages))
    groups.sort(key=lambda group: group.total_impressions, reverse=True)
    return groups


def targets_for_pages(
    groups: Sequence[CannibalizationGroup],
    matches: Sequence[MatchResult],
) -> dict[str, list[CannibalizationTarget]]:
    matched_urls = {match.gsc_url for match in matches}
    document_by_url = {match.gsc_url: match.sanity_id for match in matches if match.sanity_id}

    result: dict[str, list[CannibalizationTarget]] = {}
    for group in groups:
        pages_in_group = [page.page for page in group.pages]
        for page in pages_in_group:
            if page not in matched_urls:
                continue
            competitors = [other for other in pages_in_group if other != page]
            if not competitors:
                continue
            targets = result.setdefault(page, [])
            for competitor in competitors:
                existing = next((target for target in targets if target.competing_page == competitor), None)
                if existing is None:
                    targets.append(
                        CannibalizationTarget(
                            competing_page=competitor,
                            competing_document_id=document_by_url.get(competitor, ""),
                            shared_queries=[group.query],
                        )
                    )
                elif group.query not in existing.shared_queries:
                    existing.shared_queries.append(group.query)
    return result


class CannibalizationAnalyzer:
    def __init__(self, repository: Any) -> None:
        self.repository = repository

    async def analyze_site_wide(self, site_id: str, *, now: datetime | None = None) -> list[CannibalizationGroup]:
        now = now or utcnow()
        rows = await self.repository.get_query_metrics(site_id, days_ago(28, now=now), days_ago(3, now=now))
        groups = group_cannibalization(rows)
        logger.info("cannibalization site=%s groups=%s", site_id, len(groups))
        return groups

    async def analyze_for_pages(
        self,
        site_id: str,
        matches: Sequence[MatchResult],
        *,
        now: datetime | None = None,
    ) -> dict[str, list[CannibalizationTarget]]:
        groups = await self.analyze_site_wide(site_id, now=now)
        return targets_for_pages(groups, matches)

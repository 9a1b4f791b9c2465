from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pagebridge.core.dates import days_ago, utcnow
from pagebridge.services.cannibalization import CannibalizationTarget
from pagebridge.services.ctr_anomaly import CtrAnomaly, build_alerts
from pagebridge.services.metrics import DailyMetricPoint, IndexStatusResult, PageMetrics, QueryMetrics
from pagebridge.services.publishing_impact import PublishingImpact
from pagebridge.services.quick_wins import QuickWinQuery
from pagebridge.services.sanity_client import camelize, patch_mutation, sanity_key
from pagebridge.services.url_matcher import MatchResult

logger = logging.getLogger(__name__)

PERIOD_DAYS: dict[str, int] = {"last7": 7, "last28": 28, "last90": 90}
INSIGHT_PERIOD = "last28"
DATA_LAG_DAYS = 3
TOP_QUERY_LIMIT = 10

_EXISTING_SNAPSHOTS_QUERY = '*[_type == "gscSnapshot" && site._ref == $siteId]{_id, page, period}'


@dataclass(slots=True)
class SnapshotInsights:
    quick_wins: dict[str, list[QuickWinQuery]] = field(default_factory=dict)
    ctr_anomalies: dict[str, CtrAnomaly] = field(default_factory=dict)
    daily_metrics: dict[str, list[DailyMetricPoint]] = field(default_factory=dict)
    publishing_impact: dict[str, PublishingImpact] = field(default_factory=dict)
    cannibalization_targets: dict[str, list[CannibalizationTarget]] = field(default_factory=dict)
    decay_pages: set[str] = field(default_factory=set)


def map_verdict(verdict: str) -> str:
    if verdict == "PASS":
        return "indexed"
    if verdict == "NEUTRAL":
        return "excluded"
    return "not_indexed"


def build_snapshot_document(
    site_ref: str,
    match: MatchResult,
    period: str,
    metrics: PageMetrics,
    top_queries: Sequence[QueryMetrics],
    *,
    index_status: IndexStatusResult | None = None,
    insights: SnapshotInsights | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    page = match.gsc_url
    document: dict[str, Any] = {
        "_type": "gscSnapshot",
        "site": {"_type": "reference", "_ref": site_ref},
        "page": page,
        "linkedDocument": {"_type": "reference", "_ref": match.sanity_id},
        "period": period,
        "clicks": metrics.clicks,
        "impressions": metrics.impressions,
        "ctr": metrics.ctr,
        "position": metrics.position,
        "topQueries": [
            {
                "_key": sanity_key(f"tq:{row.query}"),
                "query": row.query,
                "clicks": row.clicks,
                "impressions": row.impressions,
                "position": row.position,
            }
            for row in top_queries
        ],
        "fetchedAt": (now or utcnow()).isoformat(),
    }
    if index_status is not None:
        document["indexStatus"] = {
            "verdict": map_verdict(index_status.verdict),
            "coverageState": index_status.coverage_state,
            "lastCrawlTime": index_status.last_crawl_time.isoformat() if index_status.last_crawl_time else None,
            "robotsTxtState": index_status.robots_txt_state,
            "pageFetchState": index_status.page_fetch_state,
        }

    if period != INSIGHT_PERIOD or insights is None:
        return document

    quick_wins = insights.quick_wins.get(page, [])
    ctr_anomaly = insights.ctr_anomalies.get(page)
    daily = insights.daily_metrics.get(page, [])
    impact = insights.publishing_impact.get(page)
    targets = insights.cannibalization_targets.get(page, [])
    alerts = build_alerts(
        ctr_anomaly,
        has_quick_wins=bool(quick_wins),
        has_decay=page in insights.decay_pages,
        has_cannibalization=bool(targets),
    )

    if quick_wins:
        document["quickWinQueries"] = [{"_key": sanity_key(f"qw:{item.query}"), **camelize(item)} for item in quick_wins]
    if ctr_anomaly is not None:
        document["ctrAnomaly"] = camelize(ctr_anomaly)
    if alerts:
        document["alerts"] = [
            {"_key": sanity_key(f"al:{alert.type}:{alert.severity}"), **camelize(alert)} for alert in alerts
        ]
    if daily:
        document["dailyClicks"] = [{"_key": sanity_key(f"dc:{point.date}"), **camelize(point)} for point in daily]
    if impact is not None:
        document["publishingImpact"] = camelize(impact)
    if targets:
        document["cannibalizationTargets"] = [
            {"_key": sanity_key(f"ct:{target.competing_page}"), **camelize(target)} for target in targets
        ]
    return document


class SnapshotWriter:
    def __init__(self, sanity: Any, repository: Any) -> None:
        self.sanity = sanity
        self.repository = repository

    async def write_snapshots(
        self,
        site_ref: str,
        site_url: str,
        matches: Sequence[MatchResult],
        insights: SnapshotInsights | None = None,
        *,
        now: datetime | None = None,
    ) -> int:
        """Create or patch one ``gscSnapshot`` per matched page and period in a single mutation batch."""
        now = now or utcnow()
        matched = [match for match in matches if match.sanity_id]
        if not matched:
            return 0

        existing = await self.sanity.fetch(_EXISTING_SNAPSHOTS_QUERY, {"siteId": site_ref}) or []
        existing_ids = _existing_snapshot_ids(existing)

        statuses = await asyncio.gather(
            *(self.repository.get_index_status(site_url, match.gsc_url) for match in matched)
        )
        index_status_by_page = {match.gsc_url: status for match, status in zip(matched, statuses)}

        mutations: list[dict[str, Any]] = []
        end = days_ago(DATA_LAG_DAYS, now=now)
        for period, days in PERIOD_DAYS.items():
            start = days_ago(days, now=now)
            windows = await asyncio.gather(
                *(self._page_period(site_url, match.gsc_url, start, end) for match in matched)
            )
            for match, (metrics, top_queries) in zip(matched, windows):
                if metrics is None:
                    continue
                document = build_snapshot_document(
                    site_ref,
                    match,
                    period,
                    metrics,
                    top_queries,
                    index_status=index_status_by_page.get(match.gsc_url),
                    insights=insights,
                    now=now,
                )
                existing_id = existing_ids.get((match.gsc_url, period))
                if existing_id:
                    mutations.append(patch_mutation(existing_id, document))
                else:
                    mutations.append({"create": document})

        if mutations:
            await self.sanity.mutate(mutations)
        logger.info("snapshots site=%s pages=%s mutations=%s", site_url, len(matched), len(mutations))
        return len(mutations)

    async def _page_period(
        self,
        site_url: str,
        page: str,
        start: datetime,
        end: datetime,
    ) -> tuple[PageMetrics | None, list[QueryMetrics]]:
        metrics, top_queries = await asyncio.gather(
            self.repository.get_page_window(site_url, page, start, end),
            self.repository.get_top_queries(site_url, page, start, end, limit=TOP_QUERY_LIMIT),
        )
        return metrics, top_queries


def _existing_snapshot_ids(rows: Sequence[Mapping[str, Any]]) -> dict[tuple[str, str], str]:
    ids: dict[tuple[str, str], str] = {}
    for row in rows:
        page, period, document_id = row.get("page"), row.get("period"), row.get("_id")
        if page and period and document_id:
            ids[(page, period)] = document_id
    return ids

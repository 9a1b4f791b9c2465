from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pagebridge.core.dates import utcnow
from pagebridge.services.cannibalization import CannibalizationGroup
from pagebridge.services.quick_wins import QuickWinQuery
from pagebridge.services.sanity_client import sanity_key
from pagebridge.services.site_insights import SiteInsightData

logger = logging.getLogger(__name__)

CANNIBALIZATION_GROUP_LIMIT = 50


@dataclass(slots=True, frozen=True)
class DocumentLookup:
    sanity_id: str
    title: str | None = None


def insight_document_id(site_ref: str) -> str:
    return f"siteInsight-{site_ref}"


def build_site_insight_document(
    site_ref: str,
    data: SiteInsightData,
    cannibalization_groups: Sequence[CannibalizationGroup],
    lookup: Mapping[str, DocumentLookup],
    quick_wins: Mapping[str, Sequence[QuickWinQuery]] | None = None,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    def document_id(page: str) -> str:
        entry = lookup.get(page)
        return entry.sanity_id if entry else ""

    def document_title(page: str) -> str:
        entry = lookup.get(page)
        return (entry.title or "") if entry else ""

    quick_win_pages = []
    for page, queries in (quick_wins or {}).items():
        if not queries:
            continue
        quick_win_pages.append(
            {
                "_key": sanity_key(f"qw:{page}"),
                "page": page,
                "documentId": document_id(page),
                "documentTitle": document_title(page),
                "queryCount": len(queries),
                "totalImpressions": sum(query.impressions for query in queries),
                "avgPosition": sum(query.position for query in queries) / len(queries),
                "queries": [
                    {
                        "_key": sanity_key(f"qwq:{page}:{query.query}"),
                        "query": query.query,
                        "clicks": query.clicks,
                        "impressions": query.impressions,
                        "ctr": query.ctr,
                        "position": query.position,
                    }
                    for query in queries
                ],
            }
        )
    quick_win_pages.sort(key=lambda item: item["totalImpressions"], reverse=True)

    return {
        "_id": insight_document_id(site_ref),
        "_type": "gscSiteInsight",
        "site": {"_type": "reference", "_ref": site_ref},
        "topPerformers": [
            {
                "_key": sanity_key(f"tp:{item.page}"),
                "page": item.page,
                "documentId": document_id(item.page),
                "documentTitle": document_title(item.page),
                "clicks": item.clicks,
                "impressions": item.impressions,
                "position": item.position,
            }
            for item in data.top_performers
        ],
        "zeroClickPages": [
            {
                "_key": sanity_key(f"zc:{item.page}"),
                "page": item.page,
                "documentId": document_id(item.page),
                "documentTitle": document_title(item.page),
                "impressions": item.impressions,
                "clicks": item.clicks,
                "position": item.position,
            }
            for item in data.zero_click_pages
        ],
        "orphanPages": [
            {
                "_key": sanity_key(f"op:{item.page}"),
                "page": item.page,
                "documentId": document_id(item.page),
                "documentTitle": document_title(item.page),
                "lastImpression": item.last_impression,
            }
            for item in data.orphan_pages
        ],
        "quickWinPages": quick_win_pages,
        "newKeywordOpportunities": [
            {
                "_key": sanity_key(f"nk:{item.query}:{item.page}"),
                "query": item.query,
                "page": item.page,
                "documentId": document_id(item.page),
                "impressions": item.impressions,
                "position": item.position,
            }
            for item in data.new_keyword_opportunities
        ],
        "cannibalizationGroups": [
            {
                "_key": sanity_key(f"cg:{group.query}"),
                "query": group.query,
                "pages": [
                    {
                        "_key": sanity_key(f"cgp:{group.query}:{page.page}"),
                        "page": page.page,
                        "documentId": document_id(page.page),
                        "clicks": page.clicks,
                        "impressions": page.impressions,
                        "position": page.position,
                    }
                    for page in group.pages
                ],
            }
            for group in cannibalization_groups[:CANNIBALIZATION_GROUP_LIMIT]
        ],
        "lastComputedAt": (now or utcnow()).isoformat(),
    }


class InsightWriter:
    def __init__(self, sanity: Any) -> None:
        self.sanity = sanity

    async def write(
        self,
        site_ref: str,
        data: SiteInsightData,
        cannibalization_groups: Sequence[CannibalizationGroup],
        lookup: Mapping[str, DocumentLookup],
        quick_wins: Mapping[str, Sequence[QuickWinQuery]] | None = None,
    ) -> str:
        document = build_site_insight_document(site_ref, data, cannibalization_groups, lookup, quick_wins)
        await self.sanity.create_or_replace(document)
        logger.info("site insight written id=%s", document["_id"])
        return document["_id"]

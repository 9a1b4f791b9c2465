from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pagebridge.core.dates import days_ago, utcnow
from pagebridge.services.metrics import QueryMetrics, safe_ctr

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class QuickWinConfig:
    position_min: float = 8
    position_max: float = 20
    min_impressions: float = 50
    max_per_page: int = 10


@dataclass(slots=True)
class QuickWinQuery:
    query: str
    clicks: float
    impressions: float
    ctr: float
    position: float


def find_quick_wins(rows: Iterable[QueryMetrics], config: QuickWinConfig = QuickWinConfig()) -> dict[str, list[QuickWinQuery]]:
    """Page-one opportunities: queries ranking just off the top with real impressions."""
    quick_wins: dict[str, list[QuickWinQuery]] = {}
    for row in rows:
        if row.position < config.position_min or row.position > config.position_max:
            continue
        if row.impressions < config.min_impressions:
            continue
        quick_wins.setdefault(row.page, []).append(
            QuickWinQuery(
                query=row.query,
                clicks=row.clicks,
                impressions=row.impressions,
                ctr=safe_ctr(row.clicks, row.impressions),
                position=row.position,
            )
        )

    for page, queries in quick_wins.items():
        queries.sort(key=lambda item: item.impressions, reverse=True)
        quick_wins[page] = queries[: config.max_per_page]
    return quick_wins


class QuickWinAnalyzer:
    def __init__(self, repository: Any, config: QuickWinConfig | None = None) -> None:
        self.repository = repository
        self.config = config or QuickWinConfig()

    async def analyze(self, site_id: str, *, now: datetime | None = None) -> dict[str, list[QuickWinQuery]]:
        now = now or utcnow()
        rows = await self.repository.get_query_metrics(site_id, days_ago(28, now=now), days_ago(3, now=now))
        quick_wins = find_quick_wins(rows, self.config)
        logger.info("quick wins site=%s pages=%s", site_id, len(quick_wins))
        return quick_wins

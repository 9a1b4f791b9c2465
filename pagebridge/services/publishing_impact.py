from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from pagebridge.core.dates import as_utc, days_since, utcnow
from pagebridge.services.metrics import PageMetrics

logger = logging.getLogger(__name__)

MIN_DAYS_SINCE_EDIT = 7
WINDOW_DAYS = 14


@dataclass(slots=True)
class PublishingImpact:
    last_edited_at: str
    days_since_edit: int
    position_before: float
    position_after: float
    position_delta: float
    clicks_before: float
    clicks_after: float
    impressions_before: float
    impressions_after: float
    ctr_before: float
    ctr_after: float


def impact_windows(edited_at: datetime, days_since_edit: int) -> tuple[tuple[datetime, datetime], tuple[datetime, datetime]]:
    edited_at = as_utc(edited_at)
    before = (edited_at - timedelta(days=WINDOW_DAYS), edited_at)
    after = (edited_at, edited_at + timedelta(days=min(WINDOW_DAYS, days_since_edit)))
    return before, after


def compare_windows(
    edited_at: datetime,
    days_since_edit: int,
    before: PageMetrics | None,
    after: PageMetrics | None,
) -> PublishingImpact | None:
    if before is None or after is None:
        return None
    if before.impressions <= 0 or after.impressions <= 0:
        return None
    return PublishingImpact(
        last_edited_at=as_utc(edited_at).isoformat(),
        days_since_edit=days_since_edit,
        position_before=before.position,
        position_after=after.position,
        position_delta=after.position - before.position,
        clicks_before=before.clicks,
        clicks_after=after.clicks,
        impressions_before=before.impressions,
        impressions_after=after.impressions,
        ctr_before=before.ctr,
        ctr_after=after.ctr,
    )


class PublishingImpactAnalyzer:
    """Compares search performance in the two weeks before and after a content edit.

    Edit dates usually come from the document's ``_updatedAt``, which also moves on
    metadata-only changes, so results are a heuristic.
    """

    def __init__(self, repository: Any) -> None:
        self.repository = repository

    async def analyze(
        self,
        site_id: str,
        edit_dates: Mapping[str, datetime],
        *,
        now: datetime | None = None,
    ) -> dict[str, PublishingImpact]:
        now = now or utcnow()
        results: dict[str, PublishingImpact] = {}
        for page, edited_at in edit_dates.items():
            elapsed = days_since(edited_at, now=now)
            if elapsed < MIN_DAYS_SINCE_EDIT:
                continue
            (before_start, before_end), (after_start, after_end) = impact_windows(edited_at, elapsed)
            before, after = await asyncio.gather(
                self.repository.get_page_window(site_id, page, before_start, before_end),
                self.repository.get_page_window(site_id, page, after_start, after_end),
            )
            impact = compare_windows(edited_at, elapsed, before, after)
            if impact is not None:
                results[page] = impact
        logger.info("publishing impact site=%s edited=%s measured=%s", site_id, len(edit_dates), len(results))
        return results

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from opentelemetry import trace

from pagebridge.core.dates import as_utc, days_ago, utcnow
from pagebridge.services.metrics import SearchAnalyticsRow

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_DIMENSIONS = ("page", "query", "date")
INDEX_INSPECTION_DELAY_SECONDS = 0.1


@dataclass(slots=True)
class SyncResult:
    pages: list[str]
    rows_processed: int
    sync_log_id: str


@dataclass(slots=True)
class IndexStatusSyncResult:
    checked: int = 0
    indexed: int = 0
    not_indexed: int = 0
    skipped: int = 0
    failed_pages: list[str] = field(default_factory=list)


def collect_pages(*row_sets: Sequence[SearchAnalyticsRow]) -> list[str]:
    pages: dict[str, None] = {}
    for rows in row_sets:
        for row in rows:
            pages.setdefault(row.page, None)
    return list(pages)


class SyncEngine:
    def __init__(
        self,
        gsc: Any,
        repository: Any,
        *,
        lookback_days: int = 90,
        lag_days: int = 3,
        index_status_cache_hours: int = 24,
        inspection_delay_seconds: float = INDEX_INSPECTION_DELAY_SECONDS,
    ) -> None:
        self.gsc = gsc
        self.repository = repository
        self.lookback_days = lookback_days
        self.lag_days = lag_days
        self.index_status_cache_hours = index_status_cache_hours
        self.inspection_delay_seconds = inspection_delay_seconds

    async def sync(
        self,
        site_url: str,
        start_date: date | datetime | None = None,
        end_date: date | datetime | None = None,
        dimensions: Sequence[str] = DEFAULT_DIMENSIONS,
    ) -> SyncResult:
        start_date = start_date or days_ago(self.lookback_days)
        end_date = end_date or days_ago(self.lag_days)
        sync_log_id = await self.repository.start_sync_log(site_url)

        with tracer.start_as_current_span("sync.search_analytics") as span:
            span.set_attribute("site.url", site_url)
            try:
                fetch_queries = "query" in dimensions
                page_rows, query_rows = await asyncio.gather(
                    self.gsc.fetch_search_analytics(site_url, start_date, end_date, ("page", "date")),
                    self._fetch_query_rows(site_url, start_date, end_date) if fetch_queries else _no_rows(),
                )
                logger.info(
                    "fetched gsc rows site=%s page_rows=%s query_rows=%s",
                    site_url,
                    len(page_rows),
                    len(query_rows),
                )

                written_pages = await self.repository.upsert_search_analytics(site_url, page_rows)
                written_queries = await self.repository.upsert_query_analytics(site_url, query_rows)
                logger.info(
                    "wrote analytics site=%s page_rows=%s query_rows=%s",
                    site_url,
                    written_pages,
                    written_queries,
                )

                total_rows = len(page_rows) + len(query_rows)
                await self.repository.complete_sync_log(sync_log_id, total_rows)
            except Exception as exc:
                await self.repository.fail_sync_log(sync_log_id, str(exc) or exc.__class__.__name__)
                span.record_exception(exc)
                raise

            span.set_attribute("sync.rows_processed", total_rows)

        return SyncResult(
            pages=collect_pages(page_rows, query_rows),
            rows_processed=total_rows,
            sync_log_id=sync_log_id,
        )

    async def sync_index_status(
        self,
        site_url: str,
        pages: Sequence[str],
        *,
        now: datetime | None = None,
    ) -> IndexStatusSyncResult:
        """Inspect each page's index status, reusing results younger than the cache window."""
        result = IndexStatusSyncResult()
        cache_window = timedelta(hours=self.index_status_cache_hours)

        with tracer.start_as_current_span("sync.index_status") as span:
            span.set_attribute("site.url", site_url)
            for page in pages:
                fetched_at = await self.repository.get_index_status_fetched_at(site_url, page)
                reference = now or utcnow()
                if fetched_at is not None and reference - as_utc(fetched_at) < cache_window:
                    result.skipped += 1
                    continue

                try:
                    status = await self.gsc.inspect_url(site_url, page)
                    await self.repository.upsert_index_status(site_url, page, status)
                except Exception:
                    logger.exception("index status check failed site=%s page=%s", site_url, page)
                    result.skipped += 1
                    result.failed_pages.append(page)
                    continue

                result.checked += 1
                if status.indexed:
                    result.indexed += 1
                else:
                    result.not_indexed += 1
                # URL inspection quota is 600 requests per minute.
                await asyncio.sleep(self.inspection_delay_seconds)

            span.set_attribute("index_status.checked", result.checked)

        logger.info(
            "index status site=%s checked=%s indexed=%s not_indexed=%s skipped=%s",
            site_url,
            result.checked,
            result.indexed,
            result.not_indexed,
            result.skipped,
        )
        return result

    async def _fetch_query_rows(
        self,
        site_url: str,
        start_date: date | datetime,
        end_date: date | datetime,
    ) -> list[SearchAnalyticsRow]:
        return await self.gsc.fetch_search_analytics(site_url, start_date, end_date, ("page", "query", "date"))


async def _no_rows() -> list[SearchAnalyticsRow]:
    return []

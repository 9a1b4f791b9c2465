from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Sequence
from datetime import date, datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from pagebridge.core.config import get_settings
from pagebridge.core.dates import as_utc, utcnow
from pagebridge.services.metrics import (
    DailyMetricPoint,
    IndexStatusResult,
    PageMetrics,
    QueryMetrics,
    SearchAnalyticsRow,
)
from pagebridge.services.url_matcher import MatchResult


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


UNMATCH_REASONS = {"no_slug_extracted", "no_matching_document", "outside_path_prefix"}
TOP_QUERY_ORDERINGS = {
    "clicks": "sum(clicks) desc, sum(impressions) desc",
    "impressions": "sum(impressions) desc, sum(clicks) desc",
}

SCHEMA_STATEMENTS = (
    """
    create table if not exists search_analytics (
      id text primary key,
      site_id text not null,
      page text not null,
      date date not null,
      clicks integer not null default 0,
      impressions integer not null default 0,
      ctr real not null default 0,
      position real not null default 0,
      fetched_at timestamptz default now()
    )
    """,
    "create index if not exists site_page_idx on search_analytics (site_id, page)",
    "create index if not exists site_date_idx on search_analytics (site_id, date)",
    """
    create table if not exists query_analytics (
      id text primary key,
      site_id text not null,
      page text not null,
      query text not null,
      date date not null,
      clicks integer not null default 0,
      impressions integer not null default 0,
      ctr real not null default 0,
      position real not null default 0
    )
    """,
    "create index if not exists site_page_query_idx on query_analytics (site_id, page, query)",
    """
    create table if not exists sync_log (
      id text primary key,
      site_id text not null,
      started_at timestamptz not null,
      completed_at timestamptz,
      rows_processed integer,
      status text not null,
      error text
    )
    """,
    """
    create table if not exists page_index_status (
      id text primary key,
      site_id text not null,
      page text not null,
      verdict text not null,
      coverage_state text,
      indexing_state text,
      page_fetch_state text,
      last_crawl_time timestamptz,
      robots_txt_state text,
      fetched_at timestamptz default now()
    )
    """,
    "create index if not exists page_index_site_idx on page_index_status (site_id, page)",
    """
    create table if not exists unmatch_diagnostics (
      id text primary key,
      site_id text not null,
      gsc_url text not null,
      extracted_slug text,
      unmatch_reason text not null,
      normalized_url text,
      path_after_prefix text,
      configured_prefix text,
      similar_slugs text,
      available_slugs_count integer,
      last_seen_at timestamptz default now(),
      first_seen_at timestamptz default now()
    )
    """,
    "create index if not exists unmatch_site_idx on unmatch_diagnostics (site_id)",
    "create index if not exists unmatch_reason_idx on unmatch_diagnostics (site_id, unmatch_reason)",
)


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        write_batch_size: int = 500,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.write_batch_size = max(1, write_batch_size)
        self._pool: asyncpg.Pool | None = None
        self._pool_lock = asyncio.Lock()

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                for statement in SCHEMA_STATEMENTS:
                    await conn.execute(statement)

    async def ping(self) -> bool:
        pool = await self._get_pool()
        return await pool.fetchval("select 1") == 1

    async def start_sync_log(self, site_id: str) -> str:
        pool = await self._get_pool()
        sync_log_id = f"{site_id}:{int(time.time() * 1000)}"
        await pool.execute(
            """
            insert into sync_log (id, site_id, started_at, status)
            values ($1, $2, $3, 'running')
            """,
            sync_log_id,
            site_id,
            utcnow(),
        )
        return sync_log_id

    async def complete_sync_log(self, sync_log_id: str, rows_processed: int) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update sync_log
            set status = 'completed', completed_at = $2, rows_processed = $3
            where id = $1
            """,
            sync_log_id,
            utcnow(),
            rows_processed,
        )

    async def fail_sync_log(self, sync_log_id: str, error: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update sync_log
            set status = 'failed', completed_at = $2, error = $3
            where id = $1
            """,
            sync_log_id,
            utcnow(),
            error,
        )

    async def get_last_sync(self, site_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select id, site_id, started_at, completed_at, rows_processed, status, error
            from sync_log
            where site_id = $1
            order by started_at desc
            limit 1
            """,
            site_id,
        )
        return dict(row) if row is not None else None

    async def upsert_search_analytics(self, site_id: str, rows: Sequence[SearchAnalyticsRow]) -> int:
        values = [
            (
                f"{site_id}:{row.page}:{_as_date(row.date).isoformat()}",
                site_id,
                row.page,
                _as_date(row.date),
                int(row.clicks),
                int(row.impressions),
                float(row.ctr),
                float(row.position),
            )
            for row in rows
        ]
        await self._write_batches(
            """
            insert into search_analytics (id, site_id, page, date, clicks, impressions, ctr, position, fetched_at)
            values ($1, $2, $3, $4, $5, $6, $7, $8, now())
            on conflict (id) do update
            set clicks = excluded.clicks,
                impressions = excluded.impressions,
                ctr = excluded.ctr,
                position = excluded.position,
                fetched_at = now()
            """,
            values,
        )
        return len(values)

    async def upsert_query_analytics(self, site_id: str, rows: Sequence[SearchAnalyticsRow]) -> int:
        values = [
            (
                f"{site_id}:{row.page}:{row.query}:{_as_date(row.date).isoformat()}",
                site_id,
                row.page,
                row.query,
                _as_date(row.date),
                int(row.clicks),
                int(row.impressions),
                float(row.ctr),
                float(row.position),
            )
            for row in rows
            if row.query
        ]
        await self._write_batches(
            """
            insert into query_analytics (id, site_id, page, query, date, clicks, impressions, ctr, position)
            values ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            on conflict (id) do update
            set clicks = excluded.clicks,
                impressions = excluded.impressions,
                ctr = excluded.ctr,
                position = excluded.position
            """,
            values,
        )
        return len(values)

    async def get_page_metrics(self, site_id: str, start: date | datetime, end: date | datetime) -> list[PageMetrics]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              page,
              avg(position) as position,
              avg(ctr) as ctr,
              sum(impressions) as impressions,
              sum(clicks) as clicks
            from search_analytics
            where site_id = $1 and date >= $2 and date <= $3
            group by page
            """,
            site_id,
            _as_date(start),
            _as_date(end),
        )
        return [
            PageMetrics(
                page=row["page"],
                position=_number(row["position"]),
                ctr=_number(row["ctr"]),
                impressions=_number(row["impressions"]),
                clicks=_number(row["clicks"]),
            )
            for row in rows
        ]

    async def get_page_window(
        self,
        site_id: str,
        page: str,
        start: date | datetime,
        end: date | datetime,
    ) -> PageMetrics | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              count(*) as days,
              sum(clicks) as clicks,
              sum(impressions) as impressions,
              avg(position) as position
            from search_analytics
            where site_id = $1 and page = $2 and date >= $3 and date <= $4
            """,
            site_id,
            page,
            _as_date(start),
            _as_date(end),
        )
        if row is None or not row["days"]:
            return None
        clicks = _number(row["clicks"])
        impressions = _number(row["impressions"])
        return PageMetrics(
            page=page,
            position=_number(row["position"]),
            ctr=clicks / impressions if impressions > 0 else 0.0,
            impressions=impressions,
            clicks=clicks,
        )

    async def get_query_metrics(self, site_id: str, start: date | datetime, end: date | datetime) -> list[QueryMetrics]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              page,
              query,
              sum(clicks) as clicks,
              sum(impressions) as impressions,
              avg(position) as position
            from query_analytics
            where site_id = $1 and date >= $2 and date <= $3
            group by page, query
            """,
            site_id,
            _as_date(start),
            _as_date(end),
        )
        return [_query_metrics(row) for row in rows]

    async def get_top_queries(
        self,
        site_id: str,
        page: str,
        start: date | datetime,
        end: date | datetime,
        limit: int = 10,
        order_by: str = "clicks",
    ) -> list[QueryMetrics]:
        if order_by not in TOP_QUERY_ORDERINGS:
            raise RepositoryValidationError(f"unsupported top query ordering: {order_by}")
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select
              page,
              query,
              sum(clicks) as clicks,
              sum(impressions) as impressions,
              avg(position) as position
            from query_analytics
            where site_id = $1 and page = $2 and date >= $3 and date <= $4
            group by page, query
            order by {TOP_QUERY_ORDERINGS[order_by]}, query asc
            limit $5
            """,
            site_id,
            page,
            _as_date(start),
            _as_date(end),
            limit,
        )
        return [_query_metrics(row) for row in rows]

    async def get_distinct_queries(self, site_id: str, start: date | datetime, end: date | datetime) -> list[str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select distinct query
            from query_analytics
            where site_id = $1 and date >= $2 and date <= $3
            """,
            site_id,
            _as_date(start),
            _as_date(end),
        )
        return [row["query"] for row in rows]

    async def get_daily_points(
        self,
        site_id: str,
        start: date | datetime,
        end: date | datetime,
    ) -> list[tuple[str, DailyMetricPoint]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select page, date, clicks, impressions, position
            from search_analytics
            where site_id = $1 and date >= $2 and date <= $3
            """,
            site_id,
            _as_date(start),
            _as_date(end),
        )
        return [
            (
                row["page"],
                DailyMetricPoint(
                    date=row["date"].isoformat(),
                    clicks=_number(row["clicks"]),
                    impressions=_number(row["impressions"]),
                    position=_number(row["position"]),
                ),
            )
            for row in rows
        ]

    async def get_last_impression_dates(self, site_id: str, pages: Sequence[str]) -> dict[str, str]:
        if not pages:
            return {}
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select page, max(date) as last_date
            from search_analytics
            where site_id = $1 and page = any($2::text[])
            group by page
            """,
            site_id,
            list(pages),
        )
        return {row["page"]: row["last_date"].isoformat() for row in rows if row["last_date"] is not None}

    async def get_index_status_fetched_at(self, site_id: str, page: str) -> datetime | None:
        pool = await self._get_pool()
        return await pool.fetchval(
            "select fetched_at from page_index_status where id = $1",
            f"{site_id}:{page}",
        )

    async def get_index_status(self, site_id: str, page: str) -> IndexStatusResult | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select verdict, coverage_state, indexing_state, page_fetch_state, last_crawl_time, robots_txt_state
            from page_index_status
            where id = $1
            """,
            f"{site_id}:{page}",
        )
        if row is None:
            return None
        return IndexStatusResult(
            verdict=row["verdict"],
            coverage_state=row["coverage_state"],
            indexing_state=row["indexing_state"],
            page_fetch_state=row["page_fetch_state"],
            last_crawl_time=row["last_crawl_time"],
            robots_txt_state=row["robots_txt_state"],
        )

    async def upsert_index_status(self, site_id: str, page: str, status: IndexStatusResult) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into page_index_status (
              id, site_id, page, verdict, coverage_state, indexing_state,
              page_fetch_state, last_crawl_time, robots_txt_state, fetched_at
            )
            values ($1, $2, $3, $4, $5, $6, $7, $8, $9, now())
            on conflict (id) do update
            set verdict = excluded.verdict,
                coverage_state = excluded.coverage_state,
                indexing_state = excluded.indexing_state,
                page_fetch_state = excluded.page_fetch_state,
                last_crawl_time = excluded.last_crawl_time,
                robots_txt_state = excluded.robots_txt_state,
                fetched_at = now()
            """,
            f"{site_id}:{page}",
            site_id,
            page,
            status.verdict,
            status.coverage_state,
            status.indexing_state,
            status.page_fetch_state,
            as_utc(status.last_crawl_time) if status.last_crawl_time else None,
            status.robots_txt_state,
        )

    async def upsert_unmatch_diagnostics(self, site_id: str, results: Sequence[MatchResult]) -> int:
        values = []
        for result in results:
            if result.matched:
                continue
            if result.unmatch_reason not in UNMATCH_REASONS:
                raise RepositoryValidationError(f"unexpected unmatch reason: {result.unmatch_reason}")
            diagnostics = result.diagnostics
            values.append(
                (
                    f"{site_id}:{result.gsc_url}",
                    site_id,
                    result.gsc_url,
                    result.extracted_slug,
                    result.unmatch_reason,
                    diagnostics.normalized_url if diagnostics else None,
                    diagnostics.path_after_prefix if diagnostics else None,
                    diagnostics.configured_prefix if diagnostics else None,
                    json.dumps(list(diagnostics.similar_slugs)) if diagnostics else None,
                    diagnostics.available_slugs_count if diagnostics else None,
                )
            )
        await self._write_batches(
            """
            insert into unmatch_diagnostics (
              id, site_id, gsc_url, extracted_slug, unmatch_reason, normalized_url,
              path_after_prefix, configured_prefix, similar_slugs, available_slugs_count,
              last_seen_at, first_seen_at
            )
            values ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, now(), now())
            on conflict (id) do update
            set extracted_slug = excluded.extracted_slug,
                unmatch_reason = excluded.unmatch_reason,
                normalized_url = excluded.normalized_url,
                path_after_prefix = excluded.path_after_prefix,
                configured_prefix = excluded.configured_prefix,
                similar_slugs = excluded.similar_slugs,
                available_slugs_count = excluded.available_slugs_count,
                last_seen_at = now()
            """,
            values,
        )
        return len(values)

    async def clear_unmatch_diagnostics(self, site_id: str, gsc_urls: Sequence[str]) -> int:
        if not gsc_urls:
            return 0
        pool = await self._get_pool()
        status = await pool.execute(
            "delete from unmatch_diagnostics where site_id = $1 and gsc_url = any($2::text[])",
            site_id,
            list(gsc_urls),
        )
        return _affected_rows(status)

    async def list_unmatch_diagnostics(
        self,
        site_id: str,
        *,
        reason: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        if reason is not None and reason not in UNMATCH_REASONS:
            raise RepositoryValidationError(f"unknown unmatch reason: {reason}")
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              gsc_url, extracted_slug, unmatch_reason, normalized_url, path_after_prefix,
              configured_prefix, similar_slugs, available_slugs_count, last_seen_at, first_seen_at
            from unmatch_diagnostics
            where site_id = $1 and ($2::text is null or unmatch_reason = $2)
            order by last_seen_at desc, gsc_url asc
            limit $3
            """,
            site_id,
            reason,
            limit,
        )
        return [self._diagnostic_row_to_dict(row) for row in rows]

    async def _write_batches(self, query: str, values: list[tuple[Any, ...]]) -> None:
        if not values:
            return
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                for offset in range(0, len(values), self.write_batch_size):
                    batch = values[offset : offset + self.write_batch_size]
                    async with conn.transaction():
                        await conn.executemany(query, batch)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError(str(exc)) from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("PB_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        async with self._pool_lock:
            if self._pool is not None:
                return self._pool
            try:
                self._pool = await asyncpg.create_pool(
                    dsn=self.database_url,
                    min_size=self.min_pool_size,
                    max_size=self.max_pool_size,
                    command_timeout=60,
                )
            except Exception as exc:  # pragma: no cover - depends on environment
                raise RepositoryUnavailableError("database unavailable") from exc
            return self._pool

    @staticmethod
    def _diagnostic_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        similar_slugs = row["similar_slugs"]
        if isinstance(similar_slugs, str):
            try:
                similar_slugs = json.loads(similar_slugs)
            except json.JSONDecodeError:
                similar_slugs = []
        return {
            "gsc_url": row["gsc_url"],
            "extracted_slug": row["extracted_slug"],
            "unmatch_reason": row["unmatch_reason"],
            "normalized_url": row["normalized_url"],
            "path_after_prefix": row["path_after_prefix"],
            "configured_prefix": row["configured_prefix"],
            "similar_slugs": list(similar_slugs or []),
            "available_slugs_count": row["available_slugs_count"],
            "last_seen_at": row["last_seen_at"],
            "first_seen_at": row["first_seen_at"],
        }


def _as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return as_utc(value).date()
    return value


def _number(value: Any) -> float:
    if value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _query_metrics(row: asyncpg.Record) -> QueryMetrics:
    return QueryMetrics(
        page=row["page"],
        query=row["query"],
        clicks=_number(row["clicks"]),
        impressions=_number(row["impressions"]),
        position=_number(row["position"]),
    )


def _affected_rows(status: str) -> int:
    # asyncpg returns the command tag, e.g. "DELETE 3".
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        write_batch_size=settings.write_batch_size,
    )

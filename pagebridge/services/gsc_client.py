from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections.abc import Sequence
from datetime import date, datetime
from functools import lru_cache
from typing import Any

from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from pagebridge.core.config import get_settings
from pagebridge.core.dates import format_date, parse_timestamp
from pagebridge.services.metrics import IndexStatusResult, SearchAnalyticsRow

logger = logging.getLogger(__name__)


class GSCClientError(Exception):
    """Raised when the Search Console API rejects or fails a request."""


class GSCClient:
    """Async facade over the blocking Search Console v1 client."""

    SCOPES = ["https://www.googleapis.com/auth/webmasters.readonly"]

    def __init__(
        self,
        *,
        credentials_json: str | None = None,
        credentials_path: str | None = None,
        row_limit: int = 25000,
        service: Any | None = None,
    ) -> None:
        self.credentials_json = credentials_json
        self.credentials_path = credentials_path
        self.row_limit = max(1, row_limit)
        self._service = service
        # The discovery client shares one httplib2.Http, which is not thread-safe.
        self._lock = threading.Lock()

    async def fetch_search_analytics(
        self,
        site_url: str,
        start_date: date | datetime,
        end_date: date | datetime,
        dimensions: Sequence[str] = ("page", "date"),
    ) -> list[SearchAnalyticsRow]:
        return await asyncio.to_thread(self._fetch_search_analytics, site_url, start_date, end_date, tuple(dimensions))

    async def list_sites(self) -> list[str]:
        return await asyncio.to_thread(self._list_sites)

    async def inspect_url(self, site_url: str, page: str) -> IndexStatusResult:
        return await asyncio.to_thread(self._inspect_url, site_url, page)

    def _fetch_search_analytics(
        self,
        site_url: str,
        start_date: date | datetime,
        end_date: date | datetime,
        dimensions: tuple[str, ...],
    ) -> list[SearchAnalyticsRow]:
        service = self._build_service()
        rows: list[SearchAnalyticsRow] = []
        start_row = 0
        while True:
            body = {
                "startDate": format_date(start_date),
                "endDate": format_date(end_date),
                "dimensions": list(dimensions),
                "rowLimit": self.row_limit,
                "startRow": start_row,
            }
            response = self._execute(service.searchanalytics().query(siteUrl=site_url, body=body))
            page_rows = response.get("rows") or []
            for raw in page_rows:
                row = _parse_row(raw, dimensions)
                if row is not None:
                    rows.append(row)
            if len(page_rows) < self.row_limit:
                break
            start_row += self.row_limit

        logger.info("gsc fetched site=%s dimensions=%s rows=%s", site_url, ",".join(dimensions), len(rows))
        return rows

    def _list_sites(self) -> list[str]:
        service = self._build_service()
        response = self._execute(service.sites().list())
        return [entry["siteUrl"] for entry in response.get("siteEntry") or [] if entry.get("siteUrl")]

    def _inspect_url(self, site_url: str, page: str) -> IndexStatusResult:
        service = self._build_service()
        response = self._execute(
            service.urlInspection().index().inspect(body={"inspectionUrl": page, "siteUrl": site_url})
        )
        index_status = (response.get("inspectionResult") or {}).get("indexStatusResult") or {}
        return IndexStatusResult(
            verdict=index_status.get("verdict") or "VERDICT_UNSPECIFIED",
            coverage_state=index_status.get("coverageState"),
            indexing_state=index_status.get("indexingState"),
            page_fetch_state=index_status.get("pageFetchState"),
            last_crawl_time=parse_timestamp(index_status.get("lastCrawlTime")),
            robots_txt_state=index_status.get("robotsTxtState"),
        )

    def _execute(self, request: Any) -> dict[str, Any]:
        try:
            with self._lock:
                return request.execute() or {}
        except HttpError as exc:
            raise GSCClientError(f"search console request failed: {exc}") from exc

    def _build_service(self) -> Any:
        with self._lock:
            if self._service is None:
                self._service = build(
                    "searchconsole", "v1", credentials=self._build_credentials(), cache_discovery=False
                )
            return self._service

    def _build_credentials(self) -> service_account.Credentials:
        if self.credentials_json:
            try:
                info = json.loads(self.credentials_json)
            except json.JSONDecodeError as exc:
                raise GSCClientError("service account JSON is not valid JSON") from exc
            return service_account.Credentials.from_service_account_info(info, scopes=self.SCOPES)
        if self.credentials_path:
            return service_account.Credentials.from_service_account_file(self.credentials_path, scopes=self.SCOPES)
        raise GSCClientError(
            "Missing GSC credentials. Set PB_GOOGLE_SERVICE_ACCOUNT_JSON or PB_GOOGLE_SERVICE_ACCOUNT_PATH."
        )


def _parse_row(raw: dict[str, Any], dimensions: tuple[str, ...]) -> SearchAnalyticsRow | None:
    keys = raw.get("keys") or []
    values = dict(zip(dimensions, keys))
    raw_date = values.get("date")
    parsed_date = parse_timestamp(raw_date) if raw_date else None
    if parsed_date is None:
        return None
    return SearchAnalyticsRow(
        page=values.get("page", ""),
        query=values.get("query"),
        date=parsed_date.date(),
        clicks=int(raw.get("clicks") or 0),
        impressions=int(raw.get("impressions") or 0),
        ctr=float(raw.get("ctr") or 0.0),
        position=float(raw.get("position") or 0.0),
    )


@lru_cache
def get_gsc_client() -> GSCClient:
    settings = get_settings()
    return GSCClient(
        credentials_json=settings.google_service_account_json,
        credentials_path=settings.google_service_account_path,
        row_limit=settings.gsc_row_limit,
    )

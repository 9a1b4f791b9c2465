from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from opentelemetry import trace

from pagebridge.core.config import Settings
from pagebridge.core.dates import parse_timestamp
from pagebridge.jobs.sync_engine import IndexStatusSyncResult, SyncEngine
from pagebridge.services.cannibalization import CannibalizationAnalyzer, targets_for_pages
from pagebridge.services.ctr_anomaly import CtrAnomalyAnalyzer
from pagebridge.services.decay import DecayDetector, DecaySignal, QuietPeriodConfig
from pagebridge.services.insight_writer import DocumentLookup, InsightWriter
from pagebridge.services.publishing_impact import PublishingImpactAnalyzer
from pagebridge.services.quick_wins import QuickWinAnalyzer
from pagebridge.services.sanity_client import sanity_key
from pagebridge.services.site_insights import DailyMetricsCollector, SiteInsightAnalyzer
from pagebridge.services.snapshots import SnapshotInsights, SnapshotWriter
from pagebridge.services.task_generator import TaskGenerator
from pagebridge.services.url_configs import group_url_configs, match_with_configs, normalize_url_configs
from pagebridge.services.url_matcher import MatchResult

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_SITE_QUERY = '*[_type == "gscSite" && siteUrl == $siteUrl][0]{_id, siteUrl, urlConfigs, contentTypes, slugField, pathPrefix}'
_DOCUMENT_DATES_QUERY = "*[_id in $ids]{_id, _createdAt, _updatedAt, publishedAt, title}"


@dataclass(slots=True)
class SiteSyncOptions:
    start_date: date | datetime | None = None
    end_date: date | datetime | None = None
    dry_run: bool = False
    skip_tasks: bool = False
    check_index: bool = False
    quiet_period: QuietPeriodConfig = field(default_factory=QuietPeriodConfig)

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> SiteSyncOptions:
        options = cls(
            check_index=settings.index_status_enabled,
            quiet_period=QuietPeriodConfig(enabled=settings.quiet_period_enabled, days=settings.quiet_period_days),
        )
        for key, value in overrides.items():
            if value is not None:
                setattr(options, key, value)
        return options


@dataclass(slots=True)
class SiteSyncDeps:
    settings: Settings
    repository: Any
    sanity: Any
    gsc: Any


@dataclass(slots=True)
class SiteSyncSummary:
    site_url: str
    site_ref: str
    sync_log_id: str
    pages: int
    rows_processed: int
    matched: int
    unmatched: int
    unmatched_by_reason: dict[str, int]
    signals: int
    tasks_created: int = 0
    snapshots_written: int = 0
    insight_id: str | None = None
    index_status: IndexStatusSyncResult | None = None
    dry_run: bool = False


@dataclass(slots=True)
class DocumentDates:
    published: dict[str, datetime] = field(default_factory=dict)
    edited: dict[str, datetime] = field(default_factory=dict)
    lookup: dict[str, DocumentLookup] = field(default_factory=dict)


def _site_document_stub(site_url: str) -> dict[str, Any]:
    return {"_id": f"gscSite-{sanity_key(site_url)}", "_type": "gscSite", "siteUrl": site_url}


async def fetch_site_document(sanity: Any, site_url: str) -> dict[str, Any] | None:
    return await sanity.fetch(_SITE_QUERY, {"siteUrl": site_url}) or None


async def ensure_site_document(sanity: Any, site_url: str) -> dict[str, Any]:
    """Return the ``gscSite`` document for ``site_url``, creating a bare one when missing."""
    site_doc = await fetch_site_document(sanity, site_url)
    if site_doc:
        return site_doc
    site_doc = _site_document_stub(site_url)
    await sanity.create_if_not_exists(site_doc)
    logger.info("created site document id=%s site=%s", site_doc["_id"], site_url)
    return site_doc


async def load_document_dates(sanity: Any, matches: Sequence[MatchResult]) -> DocumentDates:
    pages_by_document: dict[str, list[str]] = {}
    for match in matches:
        if match.sanity_id:
            pages_by_document.setdefault(match.sanity_id, []).append(match.gsc_url)
    dates = DocumentDates()
    if not pages_by_document:
        return dates

    documents = await sanity.fetch(_DOCUMENT_DATES_QUERY, {"ids": list(pages_by_document)}) or []
    for document in documents:
        document_id = document.get("_id")
        published = parse_timestamp(document.get("publishedAt")) or parse_timestamp(document.get("_createdAt"))
        edited = parse_timestamp(document.get("_updatedAt"))
        title = document.get("title") if isinstance(document.get("title"), str) else None
        for page in pages_by_document.get(document_id, []):
            if published is not None:
                dates.published[page] = published
            if edited is not None:
                dates.edited[page] = edited
            dates.lookup[page] = DocumentLookup(sanity_id=document_id, title=title)

    for match in matches:
        if match.sanity_id and match.gsc_url not in dates.lookup:
            dates.lookup[match.gsc_url] = DocumentLookup(sanity_id=match.sanity_id)
    return dates


async def run_site_sync(site_url: str, options: SiteSyncOptions, deps: SiteSyncDeps) -> SiteSyncSummary:
    settings = deps.settings
    repository = deps.repository
    sanity = deps.sanity

    with tracer.start_as_current_span("site_sync") as span:
        span.set_attribute("site.url", site_url)
        span.set_attribute("site_sync.dry_run", options.dry_run)

        if options.dry_run:
            site_doc = await fetch_site_document(sanity, site_url) or _site_document_stub(site_url)
        else:
            site_doc = await ensure_site_document(sanity, site_url)
        site_ref = site_doc["_id"]

        engine = SyncEngine(
            deps.gsc,
            repository,
            lookback_days=settings.sync_lookback_days,
            lag_days=settings.sync_lag_days,
            index_status_cache_hours=settings.index_status_cache_hours,
        )
        sync_result = await engine.sync(site_url, options.start_date, options.end_date)
        pages = sync_result.pages

        index_status = None
        if options.check_index:
            index_status = await engine.sync_index_status(site_url, pages)

        with tracer.start_as_current_span("site_sync.match"):
            url_configs = normalize_url_configs(
                site_doc,
                default_content_types=settings.default_content_types,
                default_slug_field=settings.default_slug_field,
                default_path_prefix=settings.default_path_prefix,
            )
            matcher_configs = group_url_configs(url_configs, settings.site_base_url or "")
            matches = await match_with_configs(sanity, matcher_configs, pages)

        matched = [match for match in matches if match.matched]
        unmatched = [match for match in matches if not match.matched]
        await repository.upsert_unmatch_diagnostics(site_url, unmatched)
        await repository.clear_unmatch_diagnostics(site_url, [match.gsc_url for match in matched])
        unmatched_by_reason = dict(Counter(match.unmatch_reason for match in unmatched))
        logger.info(
            "matched site=%s matched=%s unmatched=%s reasons=%s",
            site_url,
            len(matched),
            len(unmatched),
            unmatched_by_reason,
        )

        document_dates = await load_document_dates(sanity, matched)

        with tracer.start_as_current_span("site_sync.decay"):
            signals = await DecayDetector(repository).detect_decay(
                site_url,
                document_dates.published,
                options.quiet_period,
            )

        summary = SiteSyncSummary(
            site_url=site_url,
            site_ref=site_ref,
            sync_log_id=sync_result.sync_log_id,
            pages=len(pages),
            rows_processed=sync_result.rows_processed,
            matched=len(matched),
            unmatched=len(unmatched),
            unmatched_by_reason=unmatched_by_reason,
            signals=len(signals),
            index_status=index_status,
            dry_run=options.dry_run,
        )

        if not options.skip_tasks and not options.dry_run:
            generator = TaskGenerator(sanity, repository)
            summary.tasks_created = await generator.create_tasks(site_ref, signals, matches, site_url)
        elif options.dry_run:
            _log_planned_tasks(signals)

        with tracer.start_as_current_span("site_sync.insights"):
            insights, groups, site_insight = await _run_analyzers(
                repository, site_url, matched, document_dates, signals
            )

        if not options.dry_run:
            with tracer.start_as_current_span("site_sync.write"):
                summary.snapshots_written = await SnapshotWriter(sanity, repository).write_snapshots(
                    site_ref, site_url, matched, insights
                )
                summary.insight_id = await InsightWriter(sanity).write(
                    site_ref, site_insight, groups, document_dates.lookup, insights.quick_wins
                )

        span.set_attribute("site_sync.signals", summary.signals)
        span.set_attribute("site_sync.tasks_created", summary.tasks_created)

    logger.info(
        "site sync complete site=%s rows=%s matched=%s signals=%s tasks=%s snapshots=%s dry_run=%s",
        site_url,
        summary.rows_processed,
        summary.matched,
        summary.signals,
        summary.tasks_created,
        summary.snapshots_written,
        summary.dry_run,
    )
    return summary


async def _run_analyzers(
    repository: Any,
    site_url: str,
    matched: Sequence[MatchResult],
    document_dates: DocumentDates,
    signals: Sequence[DecaySignal],
):
    quick_wins, anomalies, daily, impact, groups, site_insight = await asyncio.gather(
        QuickWinAnalyzer(repository).analyze(site_url),
        CtrAnomalyAnalyzer(repository).analyze(site_url),
        DailyMetricsCollector(repository).collect(site_url),
        PublishingImpactAnalyzer(repository).analyze(site_url, document_dates.edited),
        CannibalizationAnalyzer(repository).analyze_site_wide(site_url),
        SiteInsightAnalyzer(repository).analyze(site_url, [match.gsc_url for match in matched]),
    )
    insights = SnapshotInsights(
        quick_wins=quick_wins,
        ctr_anomalies=anomalies,
        daily_metrics=daily,
        publishing_impact=impact,
        cannibalization_targets=targets_for_pages(groups, matched),
        decay_pages={signal.page for signal in signals},
    )
    return insights, groups, site_insight


def _log_planned_tasks(signals: Sequence[DecaySignal]) -> None:
    for signal in signals:
        logger.info(
            "dry run: would open task severity=%s page=%s reason=%s position=%.1f->%.1f",
            signal.severity,
            signal.page,
            signal.reason,
            signal.metrics.position_before,
            signal.metrics.position_now,
        )

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any

from pagebridge.core.dates import days_ago, utcnow
from pagebridge.services.decay import DecaySignal
from pagebridge.services.sanity_client import sanity_key
from pagebridge.services.url_matcher import MatchResult

logger = logging.getLogger(__name__)

TASK_STATUSES = {"open", "snoozed", "in_progress", "done", "dismissed"}
QUERY_CONTEXT_LIMIT = 5
QUERY_CONTEXT_DAYS = 28

_OPEN_TASK_QUERY = (
    '*[_type == "gscRefreshTask" && linkedDocument._ref == $docId && status in ["open", "in_progress"]][0]._id'
)


def build_task_document(
    site_ref: str,
    document_id: str,
    signal: DecaySignal,
    query_context: Sequence[dict[str, Any]] | None = None,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    metrics = signal.metrics
    document: dict[str, Any] = {
        "_type": "gscRefreshTask",
        "site": {"_type": "reference", "_ref": site_ref},
        "linkedDocument": {"_type": "reference", "_ref": document_id},
        "reason": signal.reason,
        "severity": signal.severity,
        "status": "open",
        "metrics": {
            "positionBefore": metrics.position_before,
            "positionNow": metrics.position_now,
            "positionDelta": metrics.position_delta,
            "ctrBefore": metrics.ctr_before,
            "ctrNow": metrics.ctr_now,
            "impressions": metrics.impressions,
        },
        "createdAt": (now or utcnow()).isoformat(),
    }
    if query_context:
        document["queryContext"] = list(query_context)
    return document


def build_status_patch(
    status: str,
    *,
    snooze_days: int | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    if status not in TASK_STATUSES:
        raise ValueError(f"unknown task status: {status}")
    now = now or utcnow()
    patch: dict[str, Any] = {"status": status}
    if status == "snoozed" and snooze_days:
        patch["snoozedUntil"] = (now + timedelta(days=snooze_days)).isoformat()
    if status in {"done", "dismissed"}:
        patch["resolvedAt"] = now.isoformat()
    if notes:
        patch["notes"] = notes
    return patch


class TaskGenerator:
    def __init__(self, sanity: Any, repository: Any | None = None) -> None:
        self.sanity = sanity
        self.repository = repository

    async def create_tasks(
        self,
        site_id: str,
        signals: Sequence[DecaySignal],
        matches: Sequence[MatchResult],
        site_url: str | None = None,
    ) -> int:
        """Open one refresh task per decaying matched page unless one is already open.

        ``site_id`` is the ``gscSite`` document id; ``site_url`` keys the metrics store
        and enables the top-query context on each task.
        """
        documents_by_url = {match.gsc_url: match.sanity_id for match in matches if match.sanity_id}
        created = 0
        for signal in signals:
            document_id = documents_by_url.get(signal.page)
            if document_id is None:
                continue

            existing = await self.sanity.fetch(_OPEN_TASK_QUERY, {"docId": document_id})
            if existing:
                logger.debug("refresh task already open page=%s task=%s", signal.page, existing)
                continue

            query_context = await self._query_context(site_url, signal.page)
            await self.sanity.create(build_task_document(site_id, document_id, signal, query_context))
            created += 1

        logger.info("refresh tasks site=%s signals=%s created=%s", site_id, len(signals), created)
        return created

    async def update_task_status(
        self,
        task_id: str,
        status: str,
        snooze_days: int | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        patch = build_status_patch(status, snooze_days=snooze_days, notes=notes)
        await self.sanity.patch_set(task_id, patch)
        logger.info("refresh task updated task=%s status=%s", task_id, status)
        return patch

    async def _query_context(self, site_url: str | None, page: str) -> list[dict[str, Any]]:
        if self.repository is None or not site_url:
            return []
        now = utcnow()
        rows = await self.repository.get_top_queries(
            site_url,
            page,
            days_ago(QUERY_CONTEXT_DAYS, now=now),
            now,
            limit=QUERY_CONTEXT_LIMIT,
            order_by="impressions",
        )
        return [
            {
                "_key": sanity_key(f"qc:{row.query}"),
                "query": row.query,
                "clicks": row.clicks,
                "impressions": row.impressions,
                "position": row.position,
            }
            for row in rows
        ]

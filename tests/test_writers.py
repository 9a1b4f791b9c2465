import asyncio
from datetime import datetime, timezone
from typing import Any

import pytest

from pagebridge.services.cannibalization import CannibalizationGroup, CompetingPage
from pagebridge.services.ctr_anomaly import evaluate_ctr
from pagebridge.services.decay import DecayMetrics, DecaySignal
from pagebridge.services.insight_writer import DocumentLookup, InsightWriter, build_site_insight_document
from pagebridge.services.metrics import IndexStatusResult, PageMetrics, QueryMetrics
from pagebridge.services.quick_wins import QuickWinQuery
from pagebridge.services.site_insights import SiteInsightData, TopPerformer
from pagebridge.services.snapshots import SnapshotInsights, SnapshotWriter, build_snapshot_document, map_verdict
from pagebridge.services.task_generator import TaskGenerator, build_status_patch, build_task_document
from pagebridge.services.url_matcher import MatchResult

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _match(url: str, sanity_id: str | None) -> MatchResult:
    return MatchResult(
        gsc_url=url,
        sanity_id=sanity_id,
        confidence="exact" if sanity_id else "none",
        unmatch_reason="matched" if sanity_id else "no_matching_document",
    )


def _signal(page: str) -> DecaySignal:
    return DecaySignal(
        page=page,
        reason="position_decay",
        severity="high",
        metrics=DecayMetrics(
            position_before=3, position_now=12, position_delta=9, ctr_before=0.1, ctr_now=0.02, impressions=800
        ),
    )


class FakeSanity:
    def __init__(self, fetch_results: dict[str, Any] | None = None) -> None:
        self.fetch_results = fetch_results or {}
        self.created: list[dict[str, Any]] = []
        self.replaced: list[dict[str, Any]] = []
        self.patches: list[tuple[str, dict[str, Any]]] = []
        self.mutations: list[list[dict[str, Any]]] = []

    async def fetch(self, query: str, params: dict[str, Any] | None = None) -> Any:
        for marker, result in self.fetch_results.items():
            if marker in query:
                return result(params) if callable(result) else result
        return None

    async def create(self, document: dict[str, Any]) -> str:
        self.created.append(document)
        return f"created-{len(self.created)}"

    async def create_or_replace(self, document: dict[str, Any]) -> str:
        self.replaced.append(document)
        return document["_id"]

    async def patch_set(self, document_id: str, values: dict[str, Any]) -> str:
        self.patches.append((document_id, values))
        return document_id

    async def mutate(self, mutations: list[dict[str, Any]]) -> dict[str, Any]:
        self.mutations.append(mutations)
        return {"results": []}


class FakeRepository:
    def __init__(self) -> None:
        self.top_query_calls: list[dict[str, Any]] = []

    async def get_top_queries(self, site_id, page, start, end, limit=10, order_by="clicks") -> list[QueryMetrics]:
        self.top_query_calls.append({"page": page, "limit": limit, "order_by": order_by})
        return [QueryMetrics(page=page, query="best shoes", clicks=5, impressions=400, position=7.5)]

    async def get_page_window(self, site_id, page, start, end) -> PageMetrics | None:
        if page.endswith("/empty"):
            return None
        return PageMetrics(page=page, position=6.0, ctr=0.05, impressions=200, clicks=10)

    async def get_index_status(self, site_id, page) -> IndexStatusResult | None:
        return IndexStatusResult(verdict="NEUTRAL", coverage_state="Crawled - currently not indexed")


def test_build_task_document() -> None:
    document = build_task_document("gscSite-1", "post-1", _signal("/a"), [{"query": "q"}], now=NOW)

    assert document["_type"] == "gscRefreshTask"
    assert document["site"] == {"_type": "reference", "_ref": "gscSite-1"}
    assert document["linkedDocument"]["_ref"] == "post-1"
    assert document["status"] == "open"
    assert document["severity"] == "high"
    assert document["metrics"]["positionDelta"] == 9
    assert document["queryContext"] == [{"query": "q"}]
    assert document["createdAt"] == NOW.isoformat()


def test_build_status_patch() -> None:
    snoozed = build_status_patch("snoozed", snooze_days=7, now=NOW)
    done = build_status_patch("done", notes="refreshed intro", now=NOW)

    assert snoozed == {"status": "snoozed", "snoozedUntil": "2024-06-08T00:00:00+00:00"}
    assert done == {"status": "done", "resolvedAt": NOW.isoformat(), "notes": "refreshed intro"}
    assert build_status_patch("in_progress") == {"status": "in_progress"}
    with pytest.raises(ValueError):
        build_status_patch("archived")


def test_create_tasks_skips_unmatched_and_already_open() -> None:
    sanity = FakeSanity({"gscRefreshTask": lambda params: "task-9" if params["docId"] == "post-open" else None})
    repository = FakeRepository()
    matches = [_match("/a", "post-a"), _match("/b", "post-open"), _match("/c", None)]

    created = asyncio.run(
        TaskGenerator(sanity, repository).create_tasks(
            "gscSite-1", [_signal("/a"), _signal("/b"), _signal("/c")], matches, "https://example.com/"
        )
    )

    assert created == 1
    [task] = sanity.created
    assert task["linkedDocument"]["_ref"] == "post-a"
    assert task["queryContext"][0]["query"] == "best shoes"
    assert repository.top_query_calls == [{"page": "/a", "limit": 5, "order_by": "impressions"}]


def test_update_task_status_patches_document() -> None:
    sanity = FakeSanity()

    patch = asyncio.run(TaskGenerator(sanity).update_task_status("task-1", "dismissed"))

    assert patch["status"] == "dismissed"
    assert "resolvedAt" in patch
    assert sanity.patches == [("task-1", patch)]


def test_map_verdict() -> None:
    assert map_verdict("PASS") == "indexed"
    assert map_verdict("NEUTRAL") == "excluded"
    assert map_verdict("FAIL") == "not_indexed"
    assert map_verdict("VERDICT_UNSPECIFIED") == "not_indexed"


def test_snapshot_document_carries_insights_only_for_last28() -> None:
    match = _match("https://example.com/a", "post-a")
    metrics = PageMetrics(page=match.gsc_url, position=5, ctr=0.0, impressions=1000, clicks=0)
    insights = SnapshotInsights(
        quick_wins={match.gsc_url: [QuickWinQuery(query="q", clicks=1, impressions=90, ctr=1 / 90, position=11)]},
        ctr_anomalies={match.gsc_url: evaluate_ctr(metrics)},
        decay_pages={match.gsc_url},
    )

    last28 = build_snapshot_document("site-1", match, "last28", metrics, [], insights=insights, now=NOW)
    last7 = build_snapshot_document("site-1", match, "last7", metrics, [], insights=insights, now=NOW)

    assert last28["quickWinQueries"][0]["query"] == "q"
    assert last28["ctrAnomaly"]["severity"] == "high"
    assert [alert["type"] for alert in last28["alerts"]] == ["ctr_anomaly", "quick_win_available", "position_decay"]
    assert "quickWinQueries" not in last7
    assert "alerts" not in last7


def test_snapshot_writer_patches_existing_and_creates_new_in_one_batch() -> None:
    sanity = FakeSanity(
        {"gscSnapshot": [{"_id": "snap-1", "page": "https://example.com/a", "period": "last28"}]}
    )
    matches = [
        _match("https://example.com/a", "post-a"),
        _match("https://example.com/empty", "post-e"),
        _match("https://example.com/x", None),
    ]

    written = asyncio.run(
        SnapshotWriter(sanity, FakeRepository()).write_snapshots("site-1", "https://example.com/", matches, now=NOW)
    )

    assert written == 3
    [batch] = sanity.mutations
    patches = [mutation for mutation in batch if "patch" in mutation]
    creates = [mutation for mutation in batch if "create" in mutation]
    assert [mutation["patch"]["id"] for mutation in patches] == ["snap-1"]
    assert {mutation["create"]["period"] for mutation in creates} == {"last7", "last90"}
    assert creates[0]["create"]["indexStatus"]["verdict"] == "excluded"
    assert creates[0]["create"]["topQueries"][0]["query"] == "best shoes"


def test_site_insight_document_caps_groups_and_resolves_titles() -> None:
    groups = [
        CannibalizationGroup(
            query=f"q{index}",
            pages=[
                CompetingPage(page="/a", clicks=1, impressions=200, position=3),
                CompetingPage(page="/b", clicks=1, impressions=200, position=4),
            ],
        )
        for index in range(60)
    ]
    data = SiteInsightData(top_performers=[TopPerformer(page="/a", clicks=10, impressions=100, position=2)])
    lookup = {"/a": DocumentLookup(sanity_id="post-a", title="Post A")}

    document = build_site_insight_document("gscSite-1", data, groups, lookup, now=NOW)

    assert document["_id"] == "siteInsight-gscSite-1"
    assert len(document["cannibalizationGroups"]) == 50
    assert document["topPerformers"][0]["documentTitle"] == "Post A"
    assert document["cannibalizationGroups"][0]["pages"][1]["documentId"] == ""


def test_insight_writer_replaces_document() -> None:
    sanity = FakeSanity()

    document_id = asyncio.run(InsightWriter(sanity).write("gscSite-1", SiteInsightData(), [], {}))

    assert document_id == "siteInsight-gscSite-1"
    assert sanity.replaced[0]["_type"] == "gscSiteInsight"

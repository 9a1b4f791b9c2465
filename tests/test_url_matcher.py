import asyncio
from typing import Any

from pagebridge.services.url_matcher import (
    DocumentRef,
    MatchResult,
    SlugTable,
    URLMatcher,
    URLMatcherConfig,
    build_slug_table,
    find_similar_slugs,
    levenshtein_distance,
    match_urls,
    merge_match_results,
)


class FakeSanity:
    def __init__(self, documents: list[dict[str, Any]]) -> None:
        self.documents = documents
        self.queries: list[tuple[str, dict[str, Any]]] = []

    async def fetch(self, query: str, params: dict[str, Any] | None = None) -> Any:
        self.queries.append((query, params or {}))
        return self.documents


def _table(*slugs: str) -> SlugTable:
    table = SlugTable()
    for index, slug in enumerate(slugs):
        table.add(slug, DocumentRef(id=f"doc-{index}"))
    return table


def test_match_urls_returns_one_result_per_input_in_order() -> None:
    table = _table("alpha", "beta")
    urls = ["https://example.com/beta", "https://example.com/missing", "https://example.com/alpha"]

    results = match_urls(urls, table)

    assert [result.gsc_url for result in results] == urls
    assert [result.sanity_id for result in results] == ["doc-1", None, "doc-0"]


def test_exact_match_ignores_www_case_query_and_trailing_slash() -> None:
    table = _table("/Hello-World/")

    [result] = match_urls(["https://www.EXAMPLE.com/Hello-World/?ref=x#top"], table)

    assert result.confidence == "exact"
    assert result.unmatch_reason == "matched"
    assert result.matched_slug == "hello-world"
    assert result.extracted_slug == "hello-world"
    assert result.diagnostics is None


def test_root_url_has_no_slug() -> None:
    [result] = match_urls(["https://example.com/"], _table("home"))

    assert result.unmatch_reason == "no_slug_extracted"
    assert result.confidence == "none"
    assert result.diagnostics is not None
    assert result.diagnostics.path_after_prefix == "/"
    assert result.diagnostics.available_slugs_count == 1


def test_outside_prefix_carries_empty_diagnostics() -> None:
    [result] = match_urls(["https://example.com/docs/setup"], _table("setup"), path_prefix="/blog")

    assert result.unmatch_reason == "outside_path_prefix"
    assert result.sanity_id is None
    assert result.diagnostics is not None
    assert result.diagnostics.path_after_prefix is None
    assert result.diagnostics.configured_prefix == "/blog"
    assert result.diagnostics.similar_slugs == ()


def test_prefix_is_stripped_before_lookup() -> None:
    [result] = match_urls(["https://example.com/blog/setup/"], _table("setup"), path_prefix="/blog")
    assert result.confidence == "exact"
    assert result.sanity_id == "doc-0"


def test_unmatched_url_suggests_close_slugs() -> None:
    table = _table("how-to-bake-bread", "how-to-bake-cake", "completely-unrelated-topic-about-taxes")

    [result] = match_urls(["https://example.com/how-to-bake-breed"], table)

    assert result.unmatch_reason == "no_matching_document"
    assert result.extracted_slug == "how-to-bake-breed"
    assert result.diagnostics is not None
    assert result.diagnostics.similar_slugs == ("how-to-bake-bread", "how-to-bake-cake")
    assert result.diagnostics.available_slugs_count == 3


def test_duplicate_normalized_slugs_are_suggested_once() -> None:
    table = build_slug_table(
        [
            {"_id": "draft", "slug": {"current": "Bake-Bread"}},
            {"_id": "live", "slug": "bake-bread/"},
        ],
        "slug",
    )

    [result] = match_urls(["https://example.com/bake-breed"], table)

    assert result.diagnostics is not None
    assert result.diagnostics.similar_slugs == ("bake-bread",)
    assert result.diagnostics.available_slugs_count == 1


def test_malformed_urls_never_raise() -> None:
    results = match_urls(["", "::::", "http://[::1", "not a url"], _table("a"))
    assert len(results) == 4
    assert all(result.sanity_id is None for result in results)


def test_matcher_never_reports_fuzzy_confidence() -> None:
    table = _table("alpha")
    results = match_urls(["https://example.com/alpha", "https://example.com/alpah", "https://example.com/"], table)
    assert {result.confidence for result in results} <= {"exact", "normalized", "none"}


def test_find_similar_slugs_caps_at_three_and_keeps_ties_in_table_order() -> None:
    candidates = ["post-b", "post-a", "post-c", "post-d"]
    assert find_similar_slugs("post-x", candidates) == ["post-b", "post-a", "post-c"]


def test_find_similar_slugs_threshold_scales_with_target_length() -> None:
    long_target = "a" * 30
    assert find_similar_slugs(long_target, ["a" * 15]) == ["a" * 15]
    assert find_similar_slugs(long_target, ["a" * 14]) == []
    assert find_similar_slugs("ab", ["abcdefghijkl"]) == ["abcdefghijkl"]
    assert find_similar_slugs("ab", ["abcdefghijklm"]) == []


def test_levenshtein_distance() -> None:
    assert levenshtein_distance("kitten", "sitting") == 3
    assert levenshtein_distance("", "abc") == 3
    assert levenshtein_distance("same", "same") == 0


def test_build_slug_table_reads_slug_objects_and_skips_incomplete_documents() -> None:
    table = build_slug_table(
        [
            {"_id": "a", "slug": {"current": "First"}},
            {"_id": "b", "slug": "second/"},
            {"_id": "c"},
            {"slug": "orphan"},
        ],
        "slug",
    )
    assert table.slugs() == ["first", "second"]


def test_merge_prefers_matched_then_inside_prefix_then_first() -> None:
    url = "https://example.com/x"
    outside = MatchResult(gsc_url=url, sanity_id=None, confidence="none", unmatch_reason="outside_path_prefix")
    missing = MatchResult(gsc_url=url, sanity_id=None, confidence="none", unmatch_reason="no_matching_document")
    matched = MatchResult(gsc_url=url, sanity_id="doc", confidence="exact", unmatch_reason="matched")

    assert merge_match_results([[outside], [missing], [matched]]) == [matched]
    assert merge_match_results([[outside], [missing]]) == [missing]
    assert merge_match_results([[outside], [outside]]) == [outside]
    assert merge_match_results([]) == []


def test_url_matcher_fetches_configured_types_and_delegates() -> None:
    sanity = FakeSanity(
        [
            {"_id": "post-1", "_type": "post", "slug": "launch-notes", "_createdAt": "2024-01-01T00:00:00Z"},
            {"_id": "post-2", "_type": "post", "slug": None},
        ]
    )
    matcher = URLMatcher(sanity, URLMatcherConfig(content_types=("post",), path_prefix="/blog"))

    results = asyncio.run(matcher.match_urls(["https://example.com/blog/launch-notes", "https://example.com/about"]))
    slugs = asyncio.run(matcher.get_available_slugs())

    assert results[0].sanity_id == "post-1"
    assert results[1].unmatch_reason == "outside_path_prefix"
    assert slugs == ["launch-notes"]
    query, params = sanity.queries[0]
    assert '"slug": slug.current' in query
    assert params == {"types": ["post"]}

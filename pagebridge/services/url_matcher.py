from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

from pagebridge.core.urls import extract_slug, normalize_slug, normalize_url

logger = logging.getLogger(__name__)

MatchConfidence = Literal["exact", "normalized", "fuzzy", "none"]
UnmatchReason = Literal["matched", "no_slug_extracted", "no_matching_document", "outside_path_prefix"]

SIMILAR_SLUG_LIMIT = 3
SIMILARITY_MIN_DISTANCE = 10
SIMILARITY_LENGTH_RATIO = 0.5


@dataclass(slots=True, frozen=True)
class DocumentRef:
    id: str
    created_at: str | None = None


@dataclass(slots=True, frozen=True)
class MatchDiagnostics:
    normalized_url: str
    path_after_prefix: str | None
    configured_prefix: str | None
    available_slugs_count: int
    similar_slugs: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class MatchResult:
    gsc_url: str
    sanity_id: str | None
    confidence: MatchConfidence
    unmatch_reason: UnmatchReason
    matched_slug: str | None = None
    extracted_slug: str | None = None
    diagnostics: MatchDiagnostics | None = None

    @property
    def matched(self) -> bool:
        return self.sanity_id is not None


@dataclass(slots=True)
class SlugTable:
    """Normalized slug -> document lookup, rebuilt for every matching run."""

    documents: dict[str, DocumentRef] = field(default_factory=dict)

    def add(self, raw_slug: str, document: DocumentRef) -> None:
        self.documents[normalize_slug(raw_slug)] = document

    def get(self, slug: str) -> DocumentRef | None:
        return self.documents.get(slug)

    def slugs(self) -> list[str]:
        return list(self.documents)

    def __len__(self) -> int:
        return len(self.documents)


@dataclass(slots=True, frozen=True)
class URLMatcherConfig:
    content_types: tuple[str, ...]
    slug_field: str = "slug"
    path_prefix: str | None = None
    base_url: str = ""


def build_slug_table(documents: Iterable[Mapping[str, Any]], slug_field: str) -> SlugTable:
    table = SlugTable()
    for document in documents:
        slug = document.get(slug_field)
        if isinstance(slug, dict):
            slug = slug.get("current")
        if not isinstance(slug, str) or not slug:
            continue
        document_id = document.get("_id")
        if not isinstance(document_id, str) or not document_id:
            continue
        created_at = document.get("_createdAt")
        table.add(slug, DocumentRef(id=document_id, created_at=created_at if isinstance(created_at, str) else None))
    return table


def match_urls(
    urls: Sequence[str],
    slug_table: SlugTable,
    *,
    path_prefix: str | None = None,
) -> list[MatchResult]:
    candidates = slug_table.slugs()
    return [_match_single_url(url, slug_table, candidates, path_prefix) for url in urls]


def _match_single_url(
    gsc_url: str,
    slug_table: SlugTable,
    candidates: list[str],
    path_prefix: str | None,
) -> MatchResult:
    normalized = normalize_url(gsc_url)
    extraction = extract_slug(normalized, path_prefix)

    if extraction.outside_prefix:
        return MatchResult(
            gsc_url=gsc_url,
            sanity_id=None,
            confidence="none",
            unmatch_reason="outside_path_prefix",
            diagnostics=MatchDiagnostics(
                normalized_url=normalized,
                path_after_prefix=None,
                configured_prefix=path_prefix,
                available_slugs_count=len(slug_table),
            ),
        )

    slug = extraction.slug
    if not slug:
        return MatchResult(
            gsc_url=gsc_url,
            sanity_id=None,
            confidence="none",
            unmatch_reason="no_slug_extracted",
            diagnostics=MatchDiagnostics(
                normalized_url=normalized,
                path_after_prefix=extraction.path_after_prefix,
                configured_prefix=path_prefix,
                available_slugs_count=len(slug_table),
            ),
        )

    exact = slug_table.get(slug)
    if exact is not None:
        return MatchResult(
            gsc_url=gsc_url,
            sanity_id=exact.id,
            confidence="exact",
            unmatch_reason="matched",
            matched_slug=slug,
            extracted_slug=slug,
        )

    without_trailing = slug[:-1] if slug.endswith("/") else slug
    with_trailing = f"{slug}/"
    for variant in (without_trailing, with_trailing):
        document = slug_table.get(variant)
        if document is not None:
            return MatchResult(
                gsc_url=gsc_url,
                sanity_id=document.id,
                confidence="normalized",
                unmatch_reason="matched",
                matched_slug=variant,
                extracted_slug=slug,
            )

    return MatchResult(
        gsc_url=gsc_url,
        sanity_id=None,
        confidence="none",
        unmatch_reason="no_matching_document",
        extracted_slug=slug,
        diagnostics=MatchDiagnostics(
            normalized_url=normalized,
            path_after_prefix=extraction.path_after_prefix,
            configured_prefix=path_prefix,
            available_slugs_count=len(slug_table),
            similar_slugs=tuple(find_similar_slugs(slug, candidates)),
        ),
    )


def find_similar_slugs(target: str, candidates: Sequence[str], limit: int = SIMILAR_SLUG_LIMIT) -> list[str]:
    # The cutoff scales with the target slug, not the candidate.
    max_distance = max(len(target) * SIMILARITY_LENGTH_RATIO, SIMILARITY_MIN_DISTANCE)
    scored = [(levenshtein_distance(target, candidate), candidate) for candidate in candidates]
    close = [item for item in scored if item[0] <= max_distance]
    close.sort(key=lambda item: item[0])
    return [candidate for _, candidate in close[:limit]]


def levenshtein_distance(a: str, b: str) -> int:
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i in range(1, len(a) + 1):
        current = [i] + [0] * len(b)
        for j in range(1, len(b) + 1):
            cost = 0 if a[i - 1] == b[j - 1] else 1
            current[j] = min(current[j - 1] + 1, previous[j] + 1, previous[j - 1] + cost)
        previous = current
    return previous[len(b)]


def merge_match_results(passes: Sequence[Sequence[MatchResult]]) -> list[MatchResult]:
    """Fold several matcher passes over the same URL list into one result per URL.

    A matched result wins; otherwise the first result that was at least inside a
    configured prefix; otherwise the first pass.
    """
    if not passes:
        return []
    merged: list[MatchResult] = []
    for results in zip(*passes):
        chosen = next((result for result in results if result.matched), None)
        if chosen is None:
            chosen = next(
                (result for result in results if result.unmatch_reason != "outside_path_prefix"),
                results[0],
            )
        merged.append(chosen)
    return merged


class URLMatcher:
    def __init__(self, sanity: Any, config: URLMatcherConfig) -> None:
        self.sanity = sanity
        self.config = config

    async def match_urls(self, gsc_urls: Sequence[str]) -> list[MatchResult]:
        documents = await self._fetch_documents()
        slug_table = build_slug_table(documents, self.config.slug_field)
        results = match_urls(gsc_urls, slug_table, path_prefix=self.config.path_prefix)
        matched = sum(1 for result in results if result.matched)
        logger.info(
            "matched urls=%s matched=%s slugs=%s prefix=%s types=%s",
            len(results),
            matched,
            len(slug_table),
            self.config.path_prefix,
            ",".join(self.config.content_types),
        )
        return results

    async def get_available_slugs(self) -> list[str]:
        documents = await self._fetch_documents()
        return build_slug_table(documents, self.config.slug_field).slugs()

    async def _fetch_documents(self) -> list[dict[str, Any]]:
        slug_field = self.config.slug_field
        query = f'*[_type in $types]{{_id, _type, "{slug_field}": {slug_field}.current, _createdAt}}'
        documents = await self.sanity.fetch(query, {"types": list(self.config.content_types)})
        return [document for document in documents or [] if isinstance(document, dict)]

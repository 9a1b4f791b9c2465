from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

MatchConfidence = Literal["exact", "normalized", "fuzzy", "none"]
UnmatchReason = Literal["matched", "no_slug_extracted", "no_matching_document", "outside_path_prefix"]
UnmatchedReason = Literal["no_slug_extracted", "no_matching_document", "outside_path_prefix"]


class UrlConfigIn(BaseModel):
    content_type: str = Field(min_length=1)
    slug_field: str = Field(default="slug", min_length=1)
    path_prefix: str | None = None


class MatchRequest(BaseModel):
    urls: list[str] = Field(min_length=1, max_length=5000)
    site_url: str | None = Field(default=None, min_length=1)
    url_configs: list[UrlConfigIn] | None = None


class MatchDiagnosticsOut(BaseModel):
    normalized_url: str
    path_after_prefix: str | None = None
    configured_prefix: str | None = None
    available_slugs_count: int
    similar_slugs: list[str] = Field(default_factory=list)


class MatchResultOut(BaseModel):
    gsc_url: str
    sanity_id: str | None = None
    confidence: MatchConfidence
    unmatch_reason: UnmatchReason
    matched_slug: str | None = None
    extracted_slug: str | None = None
    diagnostics: MatchDiagnosticsOut | None = None


class MatchResponse(BaseModel):
    matched: int
    unmatched: int
    results: list[MatchResultOut]


class UnmatchDiagnosticOut(BaseModel):
    gsc_url: str
    extracted_slug: str | None = None
    unmatch_reason: UnmatchedReason
    normalized_url: str | None = None
    path_after_prefix: str | None = None
    configured_prefix: str | None = None
    similar_slugs: list[str] = Field(default_factory=list)
    available_slugs_count: int | None = None
    last_seen_at: datetime | None = None
    first_seen_at: datetime | None = None


class DiagnosticsResponse(BaseModel):
    site_url: str
    total: int
    by_reason: dict[str, int]
    items: list[UnmatchDiagnosticOut]

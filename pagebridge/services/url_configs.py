from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from pagebridge.services.url_matcher import MatchResult, URLMatcher, URLMatcherConfig, merge_match_results

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPES = ("post", "page")
DEFAULT_SLUG_FIELD = "slug"


class SiteConfigError(Exception):
    """Raised when a site's URL configuration cannot be used for matching."""


@dataclass(slots=True, frozen=True)
class UrlConfig:
    content_type: str
    slug_field: str = DEFAULT_SLUG_FIELD
    path_prefix: str | None = None


def normalize_url_configs(
    site_doc: Mapping[str, Any] | None,
    *,
    default_content_types: Sequence[str] = DEFAULT_CONTENT_TYPES,
    default_slug_field: str = DEFAULT_SLUG_FIELD,
    default_path_prefix: str | None = None,
) -> list[UrlConfig]:
    """Per-content-type URL settings from a ``gscSite`` document.

    ``urlConfigs`` wins; the flat ``contentTypes``/``slugField``/``pathPrefix``
    form is still read but logged as deprecated; otherwise the defaults apply.
    """
    site_doc = site_doc or {}
    url_configs = site_doc.get("urlConfigs")
    if url_configs is not None:
        if not isinstance(url_configs, list):
            raise SiteConfigError("urlConfigs must be a list")
        configs: list[UrlConfig] = []
        for entry in url_configs:
            content_type = entry.get("contentType") if isinstance(entry, Mapping) else None
            if not isinstance(content_type, str) or not content_type.strip():
                raise SiteConfigError("every urlConfigs entry needs a contentType")
            configs.append(
                UrlConfig(
                    content_type=content_type.strip(),
                    slug_field=_text(entry.get("slugField")) or DEFAULT_SLUG_FIELD,
                    path_prefix=_text(entry.get("pathPrefix")),
                )
            )
        return configs

    content_types = site_doc.get("contentTypes")
    if content_types:
        logger.warning(
            "[DEPRECATED] site uses contentTypes/slugField/pathPrefix; move to urlConfigs for per-type URL paths"
        )
        return [
            UrlConfig(
                content_type=content_type,
                slug_field=_text(site_doc.get("slugField")) or DEFAULT_SLUG_FIELD,
                path_prefix=_text(site_doc.get("pathPrefix")),
            )
            for content_type in content_types
            if isinstance(content_type, str) and content_type
        ]

    return [
        UrlConfig(content_type=content_type, slug_field=default_slug_field, path_prefix=default_path_prefix)
        for content_type in default_content_types
    ]


def group_url_configs(configs: Sequence[UrlConfig], base_url: str = "") -> list[URLMatcherConfig]:
    """One matcher config per distinct (path prefix, slug field), first-seen order."""
    grouped: dict[tuple[str | None, str], list[str]] = {}
    for config in configs:
        content_types = grouped.setdefault((config.path_prefix, config.slug_field), [])
        if config.content_type not in content_types:
            content_types.append(config.content_type)
    return [
        URLMatcherConfig(
            content_types=tuple(content_types),
            slug_field=slug_field,
            path_prefix=path_prefix,
            base_url=base_url,
        )
        for (path_prefix, slug_field), content_types in grouped.items()
    ]


async def match_with_configs(
    sanity: Any,
    configs: Sequence[URLMatcherConfig],
    urls: Sequence[str],
) -> list[MatchResult]:
    if not configs:
        raise SiteConfigError("at least one URL config is required")
    passes = [await URLMatcher(sanity, config).match_urls(urls) for config in configs]
    return merge_match_results(passes)


def _text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import SplitResult, urlsplit, urlunsplit


@dataclass(slots=True, frozen=True)
class SlugExtraction:
    slug: str | None
    path_after_prefix: str | None
    outside_prefix: bool


def normalize_url(raw_url: str) -> str:
    """Lowercased URL without ``www.``, query string or fragment.

    Unparsable input is returned lowercased as-is so callers can keep going.
    """
    parsed = _parse_absolute(raw_url)
    if parsed is None:
        return raw_url.lower()

    userinfo, at, hostport = parsed.netloc.rpartition("@")
    if hostport.lower().startswith("www."):
        hostport = hostport[4:]
    netloc = f"{userinfo}{at}{hostport}"
    return urlunsplit((parsed.scheme, netloc, parsed.path or "/", "", "")).lower()


def normalize_slug(slug: str) -> str:
    return slug.strip("/").lower()


def extract_slug(normalized_url: str, path_prefix: str | None = None) -> SlugExtraction:
    parsed = _parse_absolute(normalized_url)
    if parsed is None:
        return SlugExtraction(slug=None, path_after_prefix=None, outside_prefix=False)

    path = parsed.path or "/"
    if path_prefix:
        escaped = re.escape(path_prefix)
        if not re.match(rf"^{escaped}(/|$)", path):
            return SlugExtraction(slug=None, path_after_prefix=None, outside_prefix=True)
        path = re.sub(rf"^{escaped}", "", path, count=1)

    slug = path.strip("/")
    return SlugExtraction(slug=slug or None, path_after_prefix=path, outside_prefix=False)


def _parse_absolute(raw_url: str) -> SplitResult | None:
    try:
        parsed = urlsplit(raw_url.strip())
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    return parsed

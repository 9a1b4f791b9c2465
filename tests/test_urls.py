from pagebridge.core.urls import extract_slug, normalize_slug, normalize_url


def test_normalize_url_strips_www_query_and_fragment() -> None:
    normalized = normalize_url("https://WWW.Example.com/Blog/My-Post/?utm_source=feed#comments")
    assert normalized == "https://example.com/blog/my-post/"


def test_normalize_url_serializes_empty_path_as_root() -> None:
    assert normalize_url("https://example.com") == "https://example.com/"


def test_normalize_url_lowercases_unparsable_input() -> None:
    assert normalize_url("Not A URL") == "not a url"
    assert normalize_url("/Relative/Path") == "/relative/path"


def test_normalize_slug_trims_slashes() -> None:
    assert normalize_slug("/Hello-World/") == "hello-world"


def test_extract_slug_without_prefix_keeps_nested_path() -> None:
    extraction = extract_slug("https://example.com/guides/setup/")
    assert extraction.slug == "guides/setup"
    assert extraction.path_after_prefix == "/guides/setup/"
    assert extraction.outside_prefix is False


def test_extract_slug_requires_prefix_at_segment_boundary() -> None:
    inside = extract_slug("https://example.com/blog/post-a", "/blog")
    outside = extract_slug("https://example.com/blogroll/post-a", "/blog")

    assert inside.slug == "post-a"
    assert inside.path_after_prefix == "/post-a"
    assert outside.outside_prefix is True
    assert outside.slug is None


def test_extract_slug_returns_nothing_for_prefix_root() -> None:
    extraction = extract_slug("https://example.com/blog/", "/blog")
    assert extraction.slug is None
    assert extraction.path_after_prefix == "/"
    assert extraction.outside_prefix is False


def test_extract_slug_escapes_prefix_metacharacters() -> None:
    extraction = extract_slug("https://example.com/a.b/post", "/a.b")
    assert extraction.slug == "post"
    assert extract_slug("https://example.com/axb/post", "/a.b").outside_prefix is True

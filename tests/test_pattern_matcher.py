import pytest

from framemonkey import pattern_matcher
from framemonkey.pattern_matcher import INCLUDE, MATCH, compile_pattern, matches, script_matches
from framemonkey.userscript import parse_script

from conftest import make_source


@pytest.mark.parametrize("url, expected", [
    ("https://a.b/x", True),
    ("http://a.b/x", True),
    ("file:///x", False),
    ("ftp://a.b/x", False),
])
def test_all_urls_pattern_covers_only_http_and_https(url, expected):
    assert compile_pattern("*://*/*", MATCH)(url) is expected


@pytest.mark.parametrize("url, expected", [
    ("https://sub.example.com/page", True),
    ("https://example.com/page", True),
    ("https://deep.sub.example.com/", True),
    ("https://notexample.com/page", False),
    ("https://example.com.evil.org/", False),
])
def test_subdomain_wildcard_includes_bare_host(url, expected):
    assert compile_pattern("*://*.example.com/*", MATCH)(url) is expected


def test_empty_path_means_root_only():
    pattern = compile_pattern("https://example.com", MATCH)
    assert pattern("https://example.com")
    assert pattern("https://example.com/")
    assert not pattern("https://example.com/other")


def test_star_scheme_does_not_match_file():
    pattern = compile_pattern("*://example.com/*", MATCH)
    assert pattern("http://example.com/a")
    assert not pattern("file://example.com/a")


def test_path_wildcards():
    pattern = compile_pattern("https://example.com/foo*bar", MATCH)
    assert pattern("https://example.com/foo-and-bar")
    assert not pattern("https://example.com/foo-and-baz")


def test_glob_include():
    pattern = compile_pattern("*.example.org/?ath*", INCLUDE)
    assert pattern("https://www.example.org/path/to")
    bare = compile_pattern("*example*", INCLUDE)
    assert bare("http://sub.example.net/")
    assert not bare("http://other.net/")


def test_bare_star_matches_everything():
    assert compile_pattern("*")("about:blank")
    assert compile_pattern("*")("https://x.y/")


def test_regex_literal_uses_search_and_flags():
    assert compile_pattern(r"/example\.com\/app/")("https://www.example.com/app/1")
    assert not compile_pattern(r"/EXAMPLE/")("https://example.com/")
    assert compile_pattern(r"/EXAMPLE/i")("https://example.com/")


def test_invalid_pattern_fails_closed_and_logs_once(caplog):
    with caplog.at_level("WARNING", logger="FrameMonkey"):
        first = compile_pattern("/([unclosed/")
        second = compile_pattern("/([unclosed/")
    assert first is second
    assert not first.valid
    assert first("https://example.com/") is False
    assert sum("never match" in r.message for r in caplog.records) == 1


def test_match_dialect_rejects_non_match_syntax():
    pattern = compile_pattern("example.com/*", MATCH)
    assert not pattern.valid
    assert not pattern("https://example.com/")


def test_matches_any():
    compiled = [compile_pattern("https://a.com/*", MATCH), compile_pattern("https://b.com/*", MATCH)]
    assert matches(compiled, "https://b.com/x")
    assert not matches(compiled, "https://c.com/x")
    assert not matches([], "https://a.com/")


def test_script_matches_requires_include_and_no_exclude():
    script = parse_script(make_source(
        "Scoped", match="https://example.com/*", extra=["@exclude https://example.com/private/*"]
    ))
    assert script_matches(script, "https://example.com/public")
    assert not script_matches(script, "https://example.com/private/area")
    assert not script_matches(script, "https://other.com/")

    script.enabled = False
    assert not script_matches(script, "https://example.com/public")


def test_script_without_any_pattern_never_matches():
    script = parse_script(make_source("Nothing", match=None))
    assert not script_matches(script, "https://example.com/")


def test_clear_cache_recompiles():
    first = compile_pattern("https://example.com/*", MATCH)
    pattern_matcher.clear_pattern_cache()
    assert compile_pattern("https://example.com/*", MATCH) is not first

import requests

from framemonkey.resource_loader import ResourceKind, ResourceLoader, detect_kind
from framemonkey.userscript import parse_script

from conftest import FakeResponse, FakeSession, make_source

LIB = "https://cdn.example.com/lib.js"
CSS = "https://cdn.example.com/style.css"
DEAD = "https://cdn.example.com/dead.js"


def _loader(responses):
    session = FakeSession(responses)
    return ResourceLoader(timeout=1, session=session), session


def test_successful_load_is_cached():
    loader, session = _loader({LIB: FakeResponse("var lib = 1;")})
    assert loader.load(LIB) == "var lib = 1;"
    assert loader.load(LIB) == "var lib = 1;"
    assert session.calls == [LIB]
    assert loader.get_entry(LIB).success
    assert loader.get_entry(LIB).kind is ResourceKind.SCRIPT
    loader.shutdown()


def test_failure_is_cached_until_cleared():
    loader, session = _loader({DEAD: FakeResponse("gone", status_code=404, reason="Not Found")})

    assert loader.load(DEAD) == ""
    assert loader.load(DEAD) == ""
    assert session.calls == [DEAD]
    assert loader.get_entry(DEAD).success is False
    assert loader.peek(DEAD) == ""

    session.responses[DEAD] = FakeResponse("var back = 1;")
    loader.clear_cache(DEAD)
    assert loader.load(DEAD) == "var back = 1;"
    assert session.calls == [DEAD, DEAD]
    loader.shutdown()


def test_timeout_and_connection_errors_never_raise():
    loader, session = _loader({LIB: requests.exceptions.Timeout("slow")})
    assert loader.load(LIB) == ""
    assert loader.get_entry(LIB).error == "timed out"
    assert loader.load("https://nowhere.example.com/x.js") == ""
    loader.shutdown()


def test_force_refresh_bypasses_cache():
    loader, session = _loader({LIB: FakeResponse("v1")})
    loader.load(LIB)
    session.responses[LIB] = FakeResponse("v2")
    assert loader.load(LIB, force_refresh=True) == "v2"
    assert loader.peek(LIB) == "v2"
    loader.shutdown()


def test_peek_without_attempt_is_none():
    loader, _ = _loader({})
    assert loader.peek(LIB) is None
    loader.shutdown()


def test_detect_kind():
    assert detect_kind("https://x/a.JS?v=1") is ResourceKind.SCRIPT
    assert detect_kind(CSS) is ResourceKind.STYLE
    assert detect_kind("https://x/logo.png") is ResourceKind.OTHER


def test_extract_deduplicates_requires_and_resource_names():
    script = parse_script(make_source("Deps", extra=[
        f"@require {LIB}",
        f"@require {LIB}",
        f"@resource style {CSS}",
        "@resource style https://cdn.example.com/other.css",
    ]))
    loader, _ = _loader({})
    extracted = loader.extract(script)
    assert extracted.requires == [LIB]
    assert extracted.resources == [("style", CSS)]
    loader.shutdown()


def test_preprocess_wraps_resources_requires_and_source():
    script = parse_script(make_source("Wrapped", body="window.main = 1;", extra=[
        f"@require {LIB}",
        f"@require {DEAD}",
        f"@resource style {CSS}",
    ]))
    loader, _ = _loader({
        LIB: FakeResponse("var lib = 1;"),
        CSS: FakeResponse("body { color: red; }"),
    })

    result = loader.preprocess(script)
    code = result.processed_code

    assert code.startswith("(function() {")
    assert code.rstrip().endswith("})();")
    assert 'window._gmResourceCache["style"] = "body { color: red; }";' in code
    assert "try {\nvar lib = 1;\n}" in code
    assert code.index("var lib = 1;") < code.index("window.main = 1;")
    assert result.requires == {"loaded": [LIB], "failed": [DEAD]}
    assert result.resources == {"loaded": ["style"], "failed": []}
    loader.shutdown()


def test_load_many_keeps_order():
    loader, _ = _loader({LIB: FakeResponse("a"), CSS: FakeResponse("b")})
    assert loader.load_many([CSS, LIB]) == ["b", "a"]
    loader.shutdown()

import pytest
import requests

from framemonkey.exceptions import ScriptParseError
from framemonkey.userscript_updater import (
    check_for_update, install_from_url, is_newer, update_all, version_key,
)

from framemonkey.script_store import ScriptStore

from conftest import FakeResponse, FakeSession, make_source

SCRIPT_URL = "https://scripts.example.com/tool.user.js"
META_URL = "https://scripts.example.com/tool.meta.js"


def _versioned(version, update_url=None, download_url=None, body="console.log('v');"):
    extra = [f"@version {version}"]
    if update_url:
        extra.append(f"@updateURL {update_url}")
    if download_url:
        extra.append(f"@downloadURL {download_url}")
    return make_source("Tool", extra=extra, body=body)


@pytest.mark.parametrize("candidate, current, expected", [
    ("1.10", "1.9", True),
    ("2.0", "2.0", False),
    ("1.2.1", "1.2", True),
    ("1.0", "", True),
    ("0.9", "1.0", False),
])
def test_is_newer(candidate, current, expected):
    assert is_newer(candidate, current) is expected


def test_version_key_is_numeric():
    assert version_key("1.10") > version_key("1.9")


def test_install_from_url_adds_script(store):
    session = FakeSession({SCRIPT_URL: FakeResponse(_versioned("1.0"))})
    script = install_from_url(store, SCRIPT_URL, session=session)

    assert script is not None
    assert store.get_script(script.id) is script
    assert script.install_url == SCRIPT_URL


def test_install_rejects_non_userscript(store):
    session = FakeSession({SCRIPT_URL: FakeResponse("<html>not found</html>")})
    assert install_from_url(store, SCRIPT_URL, session=session) is None
    assert len(store) == 0


def test_install_survives_offline(store):
    session = FakeSession({SCRIPT_URL: requests.exceptions.Timeout("slow")})
    assert install_from_url(store, SCRIPT_URL, session=session) is None


def test_check_for_update_returns_newer_source(store):
    script = store.add_script(_versioned("1.0", download_url=SCRIPT_URL))
    newer = _versioned("1.1", download_url=SCRIPT_URL)
    session = FakeSession({SCRIPT_URL: FakeResponse(newer)})

    assert check_for_update(script, session=session) == newer


def test_check_for_update_same_version_is_none(store):
    script = store.add_script(_versioned("1.0", download_url=SCRIPT_URL))
    session = FakeSession({SCRIPT_URL: FakeResponse(_versioned("1.0", download_url=SCRIPT_URL))})
    assert check_for_update(script, session=session) is None


def test_meta_file_update_fetches_download_url(store):
    script = store.add_script(_versioned("1.0", update_url=META_URL, download_url=SCRIPT_URL))
    meta_only = _versioned("2.0", update_url=META_URL, download_url=SCRIPT_URL, body="")
    full = _versioned("2.0", update_url=META_URL, download_url=SCRIPT_URL, body="console.log('new');")
    session = FakeSession({META_URL: FakeResponse(meta_only), SCRIPT_URL: FakeResponse(full)})

    assert check_for_update(script, session=session) == full
    assert session.calls == [META_URL, SCRIPT_URL]


def test_check_for_update_propagates_network_errors(store):
    script = store.add_script(_versioned("1.0", download_url=SCRIPT_URL))
    with pytest.raises(requests.exceptions.RequestException):
        check_for_update(script, session=FakeSession())


def test_check_for_update_rejects_non_userscript(store):
    script = store.add_script(_versioned("1.0", download_url=SCRIPT_URL))
    session = FakeSession({SCRIPT_URL: FakeResponse("<html>moved</html>")})
    with pytest.raises(ScriptParseError):
        check_for_update(script, session=session)


def test_update_all_counts(store):
    fresh_url = "https://scripts.example.com/fresh.user.js"
    stale_url = "https://scripts.example.com/stale.user.js"
    dead_url = "https://scripts.example.com/dead.user.js"

    stale = store.add_script(_versioned("1.0", download_url=stale_url))
    store.add_script(_versioned("3.0", download_url=fresh_url))
    store.add_script(_versioned("1.0", download_url=dead_url))
    store.add_script(make_source("Local only"))

    session = FakeSession({
        stale_url: FakeResponse(_versioned("1.5", download_url=stale_url, body="console.log('1.5');")),
        fresh_url: FakeResponse(_versioned("3.0", download_url=fresh_url)),
        dead_url: FakeResponse("", status_code=500, reason="Server Error"),
    })

    results = update_all(store, session=session)

    assert results == {"updated": 1, "skipped": 1, "failed": 1, "total": 3}
    assert store.get_script(stale.id).version == "1.5"
    assert "console.log('1.5');" in store.get_script(stale.id).source


def test_install_url_is_remembered_across_restarts(store, tmp_path):
    session = FakeSession({SCRIPT_URL: FakeResponse(_versioned("1.0"))})
    install_from_url(store, SCRIPT_URL, session=session)
    store.save_directory(str(tmp_path))

    reloaded = ScriptStore()
    [script] = reloaded.load_directory(str(tmp_path))
    assert script.install_url == SCRIPT_URL

    session.responses[SCRIPT_URL] = FakeResponse(_versioned("1.1", body="console.log('1.1');"))
    results = update_all(reloaded, session=session)

    assert results["updated"] == 1
    assert reloaded.get_script(script.id).version == "1.1"

import itertools

import pytest
import requests
from selenium.common.exceptions import WebDriverException

from framemonkey import pattern_matcher
from framemonkey.error_reporter import reset_reported_errors
from framemonkey.exceptions import CrossOriginAccessError, FrameDetachedError
from framemonkey.frames import FrameHandle
from framemonkey.script_store import ScriptStore


def make_source(name, match="https://example.com/*", run_at=None, extra=(), body="console.log('hi');"):
    lines = ["// ==UserScript==", f"// @name {name}"]
    if match:
        lines.append(f"// @match {match}")
    if run_at:
        lines.append(f"// @run-at {run_at}")
    lines.extend(f"// {line}" for line in extra)
    lines.append("// ==/UserScript==")
    lines.append(body)
    return "\n".join(lines)


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeFrame(FrameHandle):
    """
    In-memory stand-in for an iframe and its document.

    Payloads passed to execute() are recorded instead of run; the marker,
    document-token and messaging snippets are emulated.
    """

    _ids = itertools.count(1)

    def __init__(self, url="https://example.com/page", ready_state="complete", title="Page",
                 html=None, accessible=True):
        self.attributes = {"src": url}
        self.attached = True
        self.accessible = accessible
        self.executed = []
        self.posted = []
        self.load_listener_key = None
        self.pending_loads = 0
        self.fail_payloads = 0
        self.outbox = []
        self.callbacks = {}
        self.callback_calls = []
        self._load_document(url, ready_state, title, html)

    def _load_document(self, url, ready_state, title, html):
        self.href = url
        self.ready_state = ready_state
        self.title = title
        self.html = html if html is not None else "<html><head></head><body>" + "x" * 80 + "</body></html>"
        self.markers = {}
        self.doc_token = None
        self.outbox = []
        self.callbacks = {}

    # ---- test controls --------------------------------------------------------
    def navigate(self, url, title="Next", fire_load=True):
        self.attributes["src"] = url
        self._load_document(url, "complete", title, None)
        if fire_load:
            self.pending_loads += 1

    def payloads(self):
        return list(self.executed)

    def register_command(self, script_id, name, callback, script_name="Script"):
        """Emulate GM_registerMenuCommand running inside the frame."""
        command_id = f"cmd_{next(self._ids)}"
        self.callbacks[command_id] = callback
        self.outbox.append({
            "type": "register-menu-command",
            "id": command_id,
            "name": name,
            "accessKey": "",
            "scriptId": script_id,
            "scriptName": script_name,
        })
        return command_id

    def send(self, message):
        self.outbox.append(message)

    # ---- FrameHandle ----------------------------------------------------------
    def _check_attached(self):
        if not self.attached:
            raise FrameDetachedError("frame removed")

    def get_attribute(self, name):
        self._check_attached()
        return self.attributes.get(name)

    def set_attribute(self, name, value):
        self._check_attached()
        self.attributes[name] = str(value)

    def is_attached(self):
        return self.attached

    def install_load_listener(self, key):
        self._check_attached()
        self.load_listener_key = key
        return True

    def consume_load_events(self, key):
        self._check_attached()
        count, self.pending_loads = self.pending_loads, 0
        return count

    def document_state(self):
        if not self.accessible:
            return None
        return {
            "readyState": self.ready_state,
            "hasBody": self.ready_state != "loading",
            "href": self.href,
            "title": self.title,
        }

    def document_html(self):
        return self.html if self.accessible else None

    def has_marker(self, marker_id):
        return self.accessible and marker_id in self.markers

    def post_message(self, message):
        self._check_attached()
        self.posted.append(message)
        if message.get("type") == "execute-command" and message.get("channel") == self.channel:
            callback = self.callbacks.get(message.get("id"))
            if callback is not None:
                self.callback_calls.append(message.get("id"))
                callback()

    def drain_outbox(self):
        items, self.outbox = self.outbox, []
        return items

    def execute(self, script, *args):
        self._check_attached()
        if not self.accessible:
            raise CrossOriginAccessError("cross-origin")
        if "__framemonkeyDoc" in script:
            if args and self.doc_token is None:
                self.doc_token = args[0]
            return self.doc_token
        if "data-injection-time" in script:
            self.markers[args[0]] = {"script_id": args[1], "script_name": args[2]}
            self.html += f'<div id="{args[0]}" hidden></div>'
            return True
        if self.fail_payloads > 0:
            self.fail_payloads -= 1
            raise WebDriverException("javascript error: boom")
        self.executed.append(script)
        return None


class FakeResponse:
    def __init__(self, text="", status_code=200, url="", headers=None, reason="OK"):
        self.text = text
        self.status_code = status_code
        self.url = url
        self.headers = headers or {"Content-Type": "text/plain"}
        self.reason = reason

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} Error", response=self)

    def json(self):
        import json
        return json.loads(self.text)


class FakeSession:
    """requests.Session replacement. responses maps url -> FakeResponse or exception."""

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.headers = {}
        self.calls = []

    def _respond(self, url):
        self.calls.append(url)
        result = self.responses.get(url)
        if result is None:
            raise requests.exceptions.ConnectionError(f"no route to {url}")
        if isinstance(result, Exception):
            raise result
        result.url = result.url or url
        return result

    def get(self, url, timeout=None, **kwargs):
        return self._respond(url)

    def request(self, method, url, **kwargs):
        return self._respond(url)


@pytest.fixture(autouse=True)
def _fresh_caches():
    pattern_matcher.clear_pattern_cache()
    reset_reported_errors()
    yield
    pattern_matcher.clear_pattern_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return ScriptStore()


@pytest.fixture
def frame():
    return FakeFrame()


@pytest.fixture
def no_popup(monkeypatch):
    from framemonkey import error_reporter
    shown = []
    monkeypatch.setattr(error_reporter, "_show_popup", lambda title, message: shown.append((title, message)))
    return shown

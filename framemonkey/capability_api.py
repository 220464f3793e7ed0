"""
Host half of the per-script GM_* / GM.* surface.

A CapabilityAPI is built for one script and one page URL. The in-frame
prelude (gm_prelude) talks to it through bridge messages; Python callers can
use it directly. Every public call catches its own errors, logs them and
returns a safe default so nothing escapes into user script execution.

Storage keys are namespaced ``"<script_id>:<name>"``. The synchronous
methods read a local cache seeded from the durable store and mirror writes
to the store in the background; the ``GM`` (AsyncCapabilities) methods go to
the store and return concurrent.futures.Future objects.
"""

import base64
import mimetypes
import threading
import webbrowser
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

import requests

from framemonkey import messaging
from framemonkey.constants import SCRIPT_HANDLER, USER_AGENT, VERSION
from framemonkey.error_reporter import logger, log_storage_write_error
from framemonkey.gm_prelude import render_prelude
from framemonkey.utils import extract_hostname, generate_random_id

XHR_LOAD = "load"
XHR_ERROR = "error"
XHR_TIMEOUT = "timeout"
XHR_ABORT = "abort"

_LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")
_MISSING = object()


def namespaced_key(script_id: str, name: str) -> str:
    return f"{script_id}:{name}"


def connect_allowed(target_url: str, connects: List[str], page_url: str = "") -> bool:
    """
    Whether target_url's host is covered by a script's @connect list.

    '*' allows everything, localhost is always allowed, an entry matches its
    own host and every subdomain. Without any @connect the page's own host
    is the only allowed one.
    """
    host = extract_hostname(target_url)
    if not host:
        return False
    if host in _LOCAL_HOSTS:
        return True

    allowed = [c.strip().lower() for c in connects or [] if c and c.strip()]
    if not allowed:
        page_host = extract_hostname(page_url)
        return bool(page_host) and host == page_host

    for entry in allowed:
        if entry == "*" or entry == host:
            return True
        domain = entry.lstrip(".")
        if host.endswith("." + domain):
            return True
    return False


def build_info(script) -> Dict[str, Any]:
    """The GM_info object for script."""
    script_info = script.to_dict()
    script_info["run-at"] = script.run_at
    script_info["updateURL"] = script.update_url
    script_info["downloadURL"] = script.download_url
    return {
        "script": script_info,
        "scriptMetaStr": script.meta_str,
        "scriptHandler": SCRIPT_HANDLER,
        "version": VERSION,
    }


def _data_url(content: str, url: str) -> str:
    mime = mimetypes.guess_type(url.split("?", 1)[0])[0] or "text/plain"
    encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
    return f"data:{mime};base64,{encoded}"


def _format_headers(headers) -> str:
    return "".join(f"{key}: {value}\r\n" for key, value in headers.items())


def _completed(value=None, error=None) -> Future:
    future = Future()
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(value)
    return future


class XhrHandle:
    """Returned by xmlhttp_request. abort() discards the response and reports 'abort'."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        self.future: Optional[Future] = None
        self.on_cancel: Optional[Callable[[], None]] = None
        self._aborted = threading.Event()
        self._finished = threading.Event()

    @property
    def aborted(self) -> bool:
        return self._aborted.is_set()

    @property
    def done(self) -> bool:
        return self._finished.is_set()

    def abort(self) -> bool:
        if self.done:
            return False
        self._aborted.set()
        # a request still queued never runs, so report the abort here
        if self.future is not None and self.future.cancel() and self.on_cancel is not None:
            self.on_cancel()
        return True


class CapabilityBuilder:
    """
    Shared collaborators for every CapabilityAPI. Storage work runs on a
    single worker so reads see earlier writes; requests get their own pool.

    deliver(fn) runs fn on the coordinator's pump thread; without a
    coordinator callbacks run on the worker thread that produced them.
    """

    def __init__(self, storage, resource_loader, menu_registry, opener=None, clipboard=None,
                 notifier=None, enforce_connect=False, request_timeout=10, session=None,
                 cookie_source=None, max_workers=8):
        self.storage = storage
        self.resource_loader = resource_loader
        self.menu_registry = menu_registry
        self.opener = opener
        self.clipboard = clipboard
        self.notifier = notifier
        self.enforce_connect = enforce_connect
        self.request_timeout = request_timeout
        self.cookie_source = cookie_source
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)
        self.storage_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="storage")
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="capability")
        self.deliver: Callable[[Callable[[], None]], None] = lambda fn: fn()

    def build(self, script, current_url: str) -> "CapabilityAPI":
        return CapabilityAPI(self, script, current_url)

    def shutdown(self):
        self.executor.shutdown(wait=False)
        self.storage_executor.shutdown(wait=False)


class AsyncCapabilities:
    """GM.* storage: authoritative round trips to the durable store, returning Futures."""

    def __init__(self, api: "CapabilityAPI"):
        self._api = api

    def _submit(self, func, *args) -> Future:
        try:
            return self._api.builder.storage_executor.submit(func, *args)
        except RuntimeError as e:
            # pool already shut down
            return _completed(error=e)

    def get_value(self, name, default=None) -> Future:
        key = self._api.key(name)
        storage = self._api.builder.storage
        return self._submit(storage.get_value, key, default)

    def set_value(self, name, value) -> Future:
        self._api._cache[name] = value
        return self._submit(self._api._write, name, value)

    def delete_value(self, name) -> Future:
        self._api._cache.pop(name, None)
        return self._submit(self._api._delete, name)

    def list_values(self) -> Future:
        return self._submit(self._api._stored_names)

    def get_resource_text(self, name) -> Future:
        url = self._api.resource_url_for(name)
        if not url:
            return _completed("")
        return self._api.builder.resource_loader.load_async(url)


class CapabilityAPI:
    def __init__(self, builder: CapabilityBuilder, script, current_url: str):
        self.builder = builder
        self.script = script
        self.current_url = current_url
        self.info = build_info(script)
        self.GM = AsyncCapabilities(self)
        self._prefix = namespaced_key(script.id, "")
        self._xhrs: Dict[str, XhrHandle] = {}
        self._cache: Dict[str, Any] = self._seed_cache()

    def __repr__(self):
        return f"<CapabilityAPI {self.script.name} @ {self.current_url}>"

    def key(self, name) -> str:
        return namespaced_key(self.script.id, name)

    # ---- storage -------------------------------------------------------------
    def _seed_cache(self) -> Dict[str, Any]:
        storage = self.builder.storage
        try:
            return {
                key[len(self._prefix):]: storage.get_value(key)
                for key in storage.list_values()
                if key.startswith(self._prefix)
            }
        except Exception as e:
            logger.error(f"[STORAGE] Could not read values of {self.script.id}: {e}")
            return {}

    def _stored_names(self) -> List[str]:
        return [
            key[len(self._prefix):]
            for key in self.builder.storage.list_values()
            if key.startswith(self._prefix)
        ]

    def _write(self, name, value):
        try:
            self.builder.storage.set_value(self.key(name), value)
        except Exception as e:
            log_storage_write_error(self.key(name), e)
            raise

    def _delete(self, name):
        try:
            self.builder.storage.delete_value(self.key(name))
        except Exception as e:
            log_storage_write_error(self.key(name), e)
            raise

    def _mirror(self, func, *args):
        try:
            self.builder.storage_executor.submit(func, *args)
        except RuntimeError as e:
            logger.error(f"[STORAGE] Write for {self.script.id} dropped: {e}")

    def get_value(self, name, default=None):
        if name in self._cache:
            return self._cache[name]
        try:
            value = self.builder.storage.get_value(self.key(name), _MISSING)
        except Exception as e:
            logger.error(f"[STORAGE] get_value({name!r}) for {self.script.id} failed: {e}")
            return default
        if value is _MISSING:
            return default
        self._cache[name] = value
        return value

    def set_value(self, name, value):
        self._cache[name] = value
        self._mirror(self._write, name, value)

    def delete_value(self, name):
        self._cache.pop(name, None)
        self._mirror(self._delete, name)

    def list_values(self) -> List[str]:
        return list(self._cache.keys())

    def values_snapshot(self) -> Dict[str, Any]:
        return dict(self._cache)

    # ---- resources -----------------------------------------------------------
    def resource_url_for(self, name) -> str:
        url = self.script.resource_map.get(name)
        if url:
            return url
        try:
            for res_name, res_url in self.builder.resource_loader.extract(self.script).resources:
                if res_name == name:
                    return res_url
        except Exception as e:
            logger.error(f"[RESOURCE] Could not read resources of {self.script.id}: {e}")
        return ""

    def get_resource_text(self, name) -> str:
        """Cached text of resource name; starts a background fetch and returns '' otherwise."""
        try:
            url = self.resource_url_for(name)
            if not url:
                logger.warning(f"[RESOURCE] '{self.script.name}' has no resource named {name!r}")
                return ""
            loader = self.builder.resource_loader
            entry = loader.get_entry(url)
            if entry is not None:
                return entry.content
            loader.load_async(url)
            return ""
        except Exception as e:
            logger.error(f"[RESOURCE] get_resource_text({name!r}) failed: {e}")
            return ""

    def get_resource_url(self, name) -> str:
        try:
            text = self.get_resource_text(name)
            if not text:
                return ""
            return _data_url(text, self.resource_url_for(name))
        except Exception as e:
            logger.error(f"[RESOURCE] get_resource_url({name!r}) failed: {e}")
            return ""

    def resources_snapshot(self) -> Dict[str, Dict[str, str]]:
        """Every already-loaded resource as {name: {"text", "url"}}, for seeding the frame."""
        snapshot = {}
        try:
            loader = self.builder.resource_loader
            for name, url in loader.extract(self.script).resources:
                entry = loader.get_entry(url)
                if entry is not None and entry.success:
                    snapshot[name] = {"text": entry.content, "url": _data_url(entry.content, url)}
        except Exception as e:
            logger.error(f"[RESOURCE] Could not snapshot resources of {self.script.id}: {e}")
        return snapshot

    # ---- network -------------------------------------------------------------
    def check_connect(self, url) -> bool:
        """Apply the @connect policy to url. Only returns False when enforcement is on."""
        if connect_allowed(url, self.script.connects, self.current_url):
            return True
        host = extract_hostname(url) or url
        if self.builder.enforce_connect:
            logger.warning(f"[XHR] Blocked '{self.script.name}' request to {host}: not in @connect")
            return False
        logger.warning(f"[XHR] '{self.script.name}' requested {host} which is not in @connect")
        return True

    def xmlhttp_request(self, details: Dict[str, Any],
                        on_event: Optional[Callable[[str, Dict[str, Any]], None]] = None,
                        request_id: Optional[str] = None) -> XhrHandle:
        handle = XhrHandle(request_id or generate_random_id())
        on_event = on_event or (lambda event, response: None)
        deliver = self.builder.deliver

        def finish(event, response):
            handle._finished.set()
            self._xhrs.pop(handle.request_id, None)
            deliver(lambda: on_event(event, response))

        url = str(details.get("url") or "")
        try:
            if not url or not self.check_connect(url):
                finish(XHR_ERROR, self._error_response(url, "Request blocked" if url else "No URL"))
                return handle

            cookies = None
            if details.get("withCredentials") and self.builder.cookie_source:
                cookies = self.builder.cookie_source(url)

            self._xhrs[handle.request_id] = handle
            handle.on_cancel = lambda: finish(XHR_ABORT, self._error_response(url, "aborted"))
            handle.future = self.builder.executor.submit(self._perform, details, url, cookies, handle, finish)
        except Exception as e:
            logger.error(f"[XHR] Could not start request to {url}: {e}")
            finish(XHR_ERROR, self._error_response(url, str(e)))
        return handle

    def _perform(self, details, url, cookies, handle, finish):
        method = str(details.get("method") or "GET").upper()
        timeout_ms = details.get("timeout") or 0
        timeout = timeout_ms / 1000.0 if timeout_ms else self.builder.request_timeout
        try:
            response = self.builder.session.request(
                method, url,
                headers=details.get("headers") or None,
                data=details.get("data"),
                cookies=cookies,
                timeout=timeout,
            )
        except requests.exceptions.Timeout:
            result = (XHR_TIMEOUT, self._error_response(url, "timed out"))
        except requests.exceptions.RequestException as e:
            result = (XHR_ERROR, self._error_response(url, str(e)))
        else:
            result = (XHR_LOAD, self._response(response, details.get("responseType")))

        if handle.aborted:
            finish(XHR_ABORT, self._error_response(url, "aborted"))
        else:
            finish(*result)

    @staticmethod
    def _response(response, response_type=None) -> Dict[str, Any]:
        text = response.text
        body: Any = text
        if response_type == "json":
            try:
                body = response.json()
            except ValueError:
                body = None
        return {
            "finalUrl": response.url,
            "readyState": 4,
            "status": response.status_code,
            "statusText": response.reason or "",
            "responseHeaders": _format_headers(response.headers),
            "responseText": text,
            "response": body,
        }

    @staticmethod
    def _error_response(url, error) -> Dict[str, Any]:
        return {
            "finalUrl": url,
            "readyState": 4,
            "status": 0,
            "statusText": "",
            "responseHeaders": "",
            "responseText": "",
            "response": None,
            "error": error,
        }

    def abort_request(self, request_id) -> bool:
        handle = self._xhrs.get(request_id)
        return handle.abort() if handle else False

    # ---- UI and host primitives ----------------------------------------------
    def notification(self, details: Dict[str, Any]) -> bool:
        """Show a host notification. False means the frame should fall back to an in-page one."""
        title = str(details.get("title") or self.script.name)
        text = str(details.get("text") or "")
        notifier = self.builder.notifier
        if notifier is None:
            logger.info(f"[NOTIFY] {title}: {text}")
            return False
        try:
            notifier(title, text)
            return True
        except Exception as e:
            logger.error(f"[NOTIFY] Notifier failed: {e}")
            return False

    def set_clipboard(self, data, info=None) -> bool:
        clipboard = self.builder.clipboard
        if clipboard is None:
            logger.warning(f"[CLIPBOARD] No clipboard available for '{self.script.name}'")
            return False
        try:
            clipboard(str(data), info)
            return True
        except Exception as e:
            logger.error(f"[CLIPBOARD] set_clipboard failed: {e}")
            return False

    def open_in_tab(self, url, options=None) -> bool:
        try:
            if self.builder.opener is not None:
                self.builder.opener(url, options or {})
            else:
                webbrowser.open(url)
            return True
        except Exception as e:
            logger.error(f"[TAB] open_in_tab({url}) failed: {e}")
            return False

    def log(self, message):
        logger.info(f"[{self.script.name}] {message}")

    def menu_commands(self):
        return self.builder.menu_registry.commands_for_script(self.script.id)

    # ---- bridge --------------------------------------------------------------
    def prelude_js(self, frame_id: str, channel: str) -> str:
        return render_prelude(
            frame_id, channel, self.script.id, self.script.name,
            self.info, self.values_snapshot(), self.resources_snapshot(),
        )

    def handle_message(self, message, post: Optional[Callable[[Dict[str, Any]], None]] = None):
        """
        Dispatch one bridge message for this script.

        Returns the reply to send back right away, or None. Replies that need
        network or store work are sent later through post.
        """
        post = post or (lambda reply: None)
        request_id = message.request_id
        kind = message.type

        try:
            if kind == messaging.SET_VALUE:
                name = message.get("name")
                if request_id is None:
                    self.set_value(name, message.get("value"))
                    return None
                self._reply_when_done(self.GM.set_value(name, message.get("value")), request_id, post)
                return None

            if kind == messaging.DELETE_VALUE:
                name = message.get("name")
                if request_id is None:
                    self.delete_value(name)
                    return None
                self._reply_when_done(self.GM.delete_value(name), request_id, post)
                return None

            if kind == messaging.GET_VALUE:
                future = self.GM.get_value(message.get("name"), _MISSING)
                self._reply_when_done(future, request_id, post, self._found_value(message.get("name")))
                return None

            if kind == messaging.LIST_VALUES:
                self._reply_when_done(self.GM.list_values(), request_id, post)
                return None

            if kind == messaging.RESOURCE_REQUEST:
                name = message.get("name")
                url = self.resource_url_for(name)
                if not url:
                    return messaging.reply(request_id, {"text": "", "url": ""})
                future = self.builder.resource_loader.load_async(url)
                self._reply_when_done(
                    future, request_id, post,
                    lambda text: {"text": text, "url": _data_url(text, url) if text else ""},
                )
                return None

            if kind == messaging.XHR_REQUEST:
                self.xmlhttp_request(
                    message.get("details") or {},
                    lambda event, response: post(messaging.xhr_event(request_id, event, response)),
                    request_id=request_id,
                )
                return None

            if kind == messaging.XHR_ABORT:
                self.abort_request(request_id)
                return None

            if kind == messaging.NOTIFICATION:
                return messaging.reply(request_id, self.notification(message.get("details") or {}))

            if kind == messaging.OPEN_IN_TAB:
                self.open_in_tab(message.get("url"), message.get("options"))
                return None

            if kind == messaging.SET_CLIPBOARD:
                self.set_clipboard(message.get("data"), message.get("info"))
                return None

            if kind == messaging.LOG:
                self.log(message.get("message"))
                return None
        except Exception as e:
            logger.error(f"[BRIDGE] {kind} from '{self.script.name}' failed: {e}")
            if request_id is not None:
                return messaging.reply(request_id, error=e)
            return None

        logger.debug(f"[BRIDGE] Unhandled {kind} for '{self.script.name}'")
        return None

    def _found_value(self, name):
        def convert(value):
            if value is _MISSING:
                self._cache.pop(name, None)
                return {"found": False, "value": None}
            self._cache[name] = value
            return {"found": True, "value": value}
        return convert

    def _reply_when_done(self, future: Future, request_id, post, convert=None):
        deliver = self.builder.deliver

        def build_reply(f):
            if f.cancelled():
                return messaging.reply(request_id, error="cancelled")
            if f.exception() is not None:
                return messaging.reply(request_id, error=f.exception())
            value = f.result()
            try:
                return messaging.reply(request_id, convert(value) if convert else value)
            except Exception as e:
                return messaging.reply(request_id, error=e)

        # convert may touch the local cache, so it runs on the pump thread too
        future.add_done_callback(lambda f: deliver(lambda: post(build_reply(f))))


# frames.py
# Target frame handles: the injection core talks to frames only through these

import hashlib

from selenium.common.exceptions import (
    JavascriptException,
    NoSuchFrameException,
    StaleElementReferenceException,
    WebDriverException,
)
from selenium.webdriver.common.by import By

from framemonkey.constants import OUTBOX_VAR, HOST_EVENTS_VAR
from framemonkey.error_reporter import logger
from framemonkey.exceptions import CrossOriginAccessError, FrameDetachedError

_DOCUMENT_STATE_JS = """
return {
    readyState: document.readyState,
    hasBody: !!document.body,
    href: String(window.location.href),
    title: document.title || ''
};
"""

_DOCUMENT_HTML_JS = "return document.documentElement ? document.documentElement.outerHTML : '';"

_DRAIN_OUTBOX_JS = f"""
var q = window.{OUTBOX_VAR};
if (!q || !q.length) return [];
return JSON.parse(JSON.stringify(q.splice(0, q.length)));
"""

_POST_MESSAGE_JS = "window.postMessage(arguments[0], '*');"

_HAS_MARKER_JS = "return document.getElementById(arguments[0]) !== null;"

_INSTALL_LOAD_HOOK_JS = f"""
var el = arguments[0], key = arguments[1];
window.{HOST_EVENTS_VAR} = window.{HOST_EVENTS_VAR} || {{}};
if (el.__framemonkeyLoadHook === key) return false;
el.__framemonkeyLoadHook = key;
el.addEventListener('load', function() {{
    var q = window.{HOST_EVENTS_VAR};
    q[key] = (q[key] || 0) + 1;
}});
return true;
"""

_CONSUME_LOAD_EVENTS_JS = f"""
var q = window.{HOST_EVENTS_VAR} || {{}};
var n = q[arguments[0]] || 0;
q[arguments[0]] = 0;
return n;
"""


def content_hash(html):
    if not html:
        return ""
    return hashlib.md5(html.encode("utf-8", "replace")).hexdigest()


class FrameHandle:
    """
    A target frame (iframe/webview element plus its content document).

    Methods touching the content raise CrossOriginAccessError when the
    document is unreachable and FrameDetachedError once the element left the
    host document. Subclasses implement the primitives.

    frame_id and channel are filled in by the coordinator on attach.
    """

    frame_id = None
    channel = None

    # ---- element side (always reachable while attached) ---------------------
    def get_attribute(self, name):
        raise NotImplementedError

    def set_attribute(self, name, value):
        raise NotImplementedError

    def get_src(self):
        return self.get_attribute("src") or ""

    def is_attached(self):
        raise NotImplementedError

    def install_load_listener(self, key):
        raise NotImplementedError

    def consume_load_events(self, key):
        """Number of 'load' events fired on the element since the last call."""
        raise NotImplementedError

    # ---- content side --------------------------------------------------------
    def execute(self, script, *args):
        raise NotImplementedError

    def document_state(self):
        """readyState/hasBody/href/title of the content document, None if unreachable."""
        try:
            return self.execute(_DOCUMENT_STATE_JS)
        except CrossOriginAccessError:
            return None

    def document_html(self):
        try:
            return self.execute(_DOCUMENT_HTML_JS) or ""
        except CrossOriginAccessError:
            return None

    def has_marker(self, marker_id):
        try:
            return bool(self.execute(_HAS_MARKER_JS, marker_id))
        except CrossOriginAccessError:
            return False

    def post_message(self, message):
        self.execute(_POST_MESSAGE_JS, message)

    def drain_outbox(self):
        try:
            return self.execute(_DRAIN_OUTBOX_JS) or []
        except CrossOriginAccessError:
            return []


class SeleniumFrame(FrameHandle):
    """
    An <iframe> element of a Selenium-driven page. Nested frames pass their
    parent handle so the driver can walk down the frame chain.
    """

    def __init__(self, driver, element, parent=None):
        self.driver = driver
        self.element = element
        self.parent = parent

    def __repr__(self):
        return f"<SeleniumFrame {self.get_attribute('src') if self.is_attached() else '(detached)'}>"

    # ---- frame context switching ---------------------------------------------
    def _enter_parent(self):
        self.driver.switch_to.default_content()
        if self.parent is not None:
            self.parent._enter_self()

    def _enter_self(self):
        self._enter_parent()
        self.driver.switch_to.frame(self.element)

    def _in_parent(self, script, *args):
        try:
            self._enter_parent()
            return self.driver.execute_script(script, *args)
        except StaleElementReferenceException as e:
            raise FrameDetachedError(str(e)) from e
        finally:
            self._leave()

    def _leave(self):
        try:
            self.driver.switch_to.default_content()
        except WebDriverException as e:
            logger.debug(f"[FRAME] Could not switch back to default content: {e}")

    # ---- element side --------------------------------------------------------
    def get_attribute(self, name):
        return self._in_parent("return arguments[0].getAttribute(arguments[1]);", self.element, name)

    def set_attribute(self, name, value):
        self._in_parent("arguments[0].setAttribute(arguments[1], arguments[2]);",
                        self.element, name, str(value))

    def get_src(self):
        return self._in_parent("return arguments[0].src || arguments[0].getAttribute('src') || '';",
                               self.element)

    def is_attached(self):
        try:
            return bool(self._in_parent("return document.contains(arguments[0]);", self.element))
        except (FrameDetachedError, WebDriverException):
            return False

    def install_load_listener(self, key):
        return self._in_parent(_INSTALL_LOAD_HOOK_JS, self.element, key)

    def consume_load_events(self, key):
        return int(self._in_parent(_CONSUME_LOAD_EVENTS_JS, key) or 0)

    # ---- content side --------------------------------------------------------
    def execute(self, script, *args):
        try:
            self._enter_self()
            return self.driver.execute_script(script, *args)
        except StaleElementReferenceException as e:
            raise FrameDetachedError(str(e)) from e
        except NoSuchFrameException as e:
            raise CrossOriginAccessError(f"Frame not reachable: {e}") from e
        except JavascriptException as e:
            message = str(e)
            if "SecurityError" in message or "cross-origin" in message.lower():
                raise CrossOriginAccessError(message) from e
            raise
        finally:
            self._leave()


def find_frames(driver, parent=None, selector="iframe"):
    """SeleniumFrame handles for every frame element in the current (or parent's) document."""
    try:
        if parent is None:
            driver.switch_to.default_content()
        else:
            parent._enter_self()
        elements = driver.find_elements(By.CSS_SELECTOR, selector)
    except WebDriverException as e:
        logger.debug(f"[FRAME] Could not list frames: {e}")
        return []
    finally:
        try:
            driver.switch_to.default_content()
        except WebDriverException as e:
            logger.debug(f"[FRAME] Could not switch back to default content: {e}")
    return [SeleniumFrame(driver, element, parent) for element in elements]

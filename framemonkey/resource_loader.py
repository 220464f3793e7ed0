# resource_loader.py
# Fetches and caches @require / @resource content

import re
import json
import time
import threading
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Dict, List, Optional, Tuple

import requests

from framemonkey.constants import USER_AGENT, RESOURCE_CACHE_VAR
from framemonkey.error_reporter import logger
from framemonkey.userscript import iter_meta_lines

_HTTP_URL = re.compile(r"^https?://\S+$")


class ResourceKind(Enum):
    SCRIPT = "script"
    STYLE = "style"
    OTHER = "other"


def detect_kind(url: str) -> ResourceKind:
    lowered = url.lower().split("?", 1)[0]
    if lowered.endswith(".js") or "javascript" in lowered:
        return ResourceKind.SCRIPT
    if lowered.endswith(".css") or "stylesheet" in lowered:
        return ResourceKind.STYLE
    return ResourceKind.OTHER


class ResourceCacheEntry:
    def __init__(self, url, content, success, kind, error=None, timestamp=None):
        self.url = url
        self.content = content
        self.success = success
        self.kind = kind
        self.error = error
        self.timestamp = timestamp if timestamp is not None else time.time()

    def __repr__(self):
        state = "ok" if self.success else f"failed: {self.error}"
        return f"<ResourceCacheEntry {self.url} {self.kind.value} {state}>"


class ExtractedResources:
    def __init__(self, requires: List[str], resources: List[Tuple[str, str]]):
        self.requires = requires
        self.resources = resources


class PreprocessResult:
    def __init__(self, processed_code: str):
        self.processed_code = processed_code
        self.resources = {"loaded": [], "failed": []}
        self.requires = {"loaded": [], "failed": []}


class ResourceLoader:
    """
    Process-wide cache of external script dependencies.

    Failures are cached as well so a dead URL is only hit once; the cache is
    emptied with clear_cache().
    """

    def __init__(self, timeout: float = 10, session: Optional[requests.Session] = None,
                 max_workers: int = 4):
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)
        self._cache: Dict[str, ResourceCacheEntry] = {}
        self._lock = threading.Lock()
        self._in_flight: Dict[str, threading.Event] = {}
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="resource")

    # ---- extraction --------------------------------------------------------
    def extract(self, script) -> ExtractedResources:
        """
        Union of the @require/@resource header lines and the script's
        structured fields, de-duplicated by URL (requires) and name (resources).
        """
        requires: List[str] = []
        resources: List[Tuple[str, str]] = []
        seen_names = set()

        header_requires = []
        header_resources = []
        for key, value in iter_meta_lines(script.source or ""):
            if key == "require" and _HTTP_URL.match(value):
                header_requires.append(value)
            elif key == "resource":
                parts = value.split(None, 1)
                if len(parts) == 2 and _HTTP_URL.match(parts[1].strip()):
                    header_resources.append((parts[0].strip(), parts[1].strip()))

        for url in header_requires + list(script.requires or []):
            if url and url not in requires:
                requires.append(url)

        for name, url in header_resources + list(script.resources or []):
            if name and url and name not in seen_names:
                seen_names.add(name)
                resources.append((name, url))

        return ExtractedResources(requires, resources)

    # ---- loading -----------------------------------------------------------
    def get_entry(self, url: str) -> Optional[ResourceCacheEntry]:
        with self._lock:
            return self._cache.get(url)

    def cached_urls(self) -> List[str]:
        with self._lock:
            return list(self._cache.keys())

    def peek(self, url: str) -> Optional[str]:
        """Cached content for url without fetching: None if never attempted."""
        entry = self.get_entry(url)
        if entry is None:
            return None
        return entry.content

    def load(self, url: str, force_refresh: bool = False) -> str:
        """
        Return the content at url, from cache when possible.

        Never raises: failures are logged, cached, and returned as ''.
        """
        if not force_refresh:
            entry = self.get_entry(url)
            if entry is not None:
                if entry.success:
                    logger.debug(f"[RESOURCE] Cache hit: {url}")
                else:
                    logger.debug(f"[RESOURCE] Cached failure, not refetching: {url}")
                return entry.content

        # Two callers asking for the same URL share one request
        with self._lock:
            waiter = self._in_flight.get(url)
            if waiter is None:
                self._in_flight[url] = threading.Event()
        if waiter is not None:
            waiter.wait(self.timeout + 1)
            entry = self.get_entry(url)
            return entry.content if entry else ""

        try:
            return self._fetch(url)
        finally:
            with self._lock:
                event = self._in_flight.pop(url, None)
            if event:
                event.set()

    def _fetch(self, url: str) -> str:
        kind = detect_kind(url)
        try:
            logger.info(f"[RESOURCE] Loading {url}")
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
            content = response.text
        except requests.exceptions.Timeout:
            return self._store_failure(url, kind, "timed out")
        except requests.exceptions.RequestException as e:
            return self._store_failure(url, kind, str(e))

        with self._lock:
            self._cache[url] = ResourceCacheEntry(url, content, True, kind)
        logger.info(f"[RESOURCE] Loaded {url} ({len(content):,} bytes)")
        return content

    def _store_failure(self, url, kind, reason) -> str:
        logger.warning(f"[RESOURCE] Failed to load {url}: {reason}")
        with self._lock:
            self._cache[url] = ResourceCacheEntry(url, "", False, kind, error=reason)
        return ""

    def load_async(self, url: str):
        """Start loading url on the worker pool. Returns a Future[str]."""
        return self._executor.submit(self.load, url)

    def load_many(self, urls: List[str]) -> List[str]:
        """Load several URLs concurrently; results keep the order of urls."""
        futures = [self.load_async(url) for url in urls]
        return [f.result() for f in futures]

    def clear_cache(self, url: Optional[str] = None):
        with self._lock:
            if url:
                self._cache.pop(url, None)
            else:
                self._cache.clear()
        logger.debug(f"[RESOURCE] Cleared cache{' for ' + url if url else ''}")

    def shutdown(self):
        self._executor.shutdown(wait=False)

    # ---- wrapping ----------------------------------------------------------
    def preprocess(self, script) -> PreprocessResult:
        """
        Build an IIFE that seeds window._gmResourceCache with each loaded
        @resource, runs each @require in its own try/catch, then the user code.
        """
        extracted = self.extract(script)
        result = PreprocessResult(script.source)

        resource_urls = [url for _, url in extracted.resources]
        contents = self.load_many(resource_urls + extracted.requires)
        resource_contents = contents[:len(resource_urls)]
        require_contents = contents[len(resource_urls):]

        resource_code = []
        for (name, url), content in zip(extracted.resources, resource_contents):
            if content:
                resource_code.append(
                    f"window.{RESOURCE_CACHE_VAR}[{json.dumps(name)}] = {json.dumps(content)};"
                )
                result.resources["loaded"].append(name)
            else:
                result.resources["failed"].append(name)

        require_code = []
        for url, content in zip(extracted.requires, require_contents):
            if content:
                require_code.append(
                    f"// @require {url}\n"
                    f"try {{\n{content}\n}} catch (e) {{\n"
                    f"  console.error('[FrameMonkey] @require failed:', {json.dumps(url)}, e);\n}}"
                )
                result.requires["loaded"].append(url)
            else:
                result.requires["failed"].append(url)

        if result.resources["failed"] or result.requires["failed"]:
            logger.warning(
                f"[RESOURCE] '{script.name}' degraded: "
                f"resources failed={result.resources['failed']} requires failed={result.requires['failed']}"
            )

        result.processed_code = "\n".join([
            "(function() {",
            f"window.{RESOURCE_CACHE_VAR} = window.{RESOURCE_CACHE_VAR} || {{}};",
            "\n".join(resource_code),
            "\n".join(require_code),
            script.source,
            "})();",
        ])
        return result

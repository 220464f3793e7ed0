"""Userscript model and `// ==UserScript==` header parsing."""

import re
import base64
from typing import List, Optional, Tuple
from urllib.parse import quote

from framemonkey.constants import RUN_AT_PRIORITY, DEFAULT_RUN_AT
from framemonkey.error_reporter import logger
from framemonkey.utils import now_ms, to_base36

HEADER_START = "// ==UserScript=="
HEADER_END = "// ==/UserScript=="
DEFAULT_NAME = "Unnamed Script"

_META_LINE = re.compile(r"^//\s*@([A-Za-z0-9_\-:]+)(?:\s+(.*))?$")
_ALNUM = re.compile(r"[A-Za-z0-9]")

_HOMEPAGE_KEYS = ("homepage", "homepageURL", "website", "source")
_ICON_KEYS = ("icon", "iconURL", "defaulticon")


class UserScript:
    """A userscript as owned by the script store. The injection core only reads it."""

    def __init__(self, source: str = "", script_id: Optional[str] = None):
        self.id = script_id or ""
        self.name = ""
        self.namespace = ""
        self.version = ""
        self.description = ""
        self.author = ""
        self.homepage = ""
        self.icon = ""
        self.update_url = ""
        self.download_url = ""
        self.install_url = ""
        self.path = ""
        self.matches: List[str] = []
        self.includes: List[str] = []
        self.excludes: List[str] = []
        self.requires: List[str] = []
        self.resources: List[Tuple[str, str]] = []
        self.connects: List[str] = []
        self.grants: List[str] = []
        self.run_at = DEFAULT_RUN_AT
        self.enabled = True
        self.source = source
        self.meta_str = ""
        self.position = 0
        self.last_updated = now_ms()

    @property
    def resource_map(self):
        return {name: url for name, url in self.resources}

    @property
    def run_at_priority(self) -> int:
        return RUN_AT_PRIORITY.get(self.run_at, RUN_AT_PRIORITY[DEFAULT_RUN_AT])

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "namespace": self.namespace,
            "version": self.version,
            "description": self.description,
            "author": self.author,
            "homepage": self.homepage,
            "icon": self.icon,
            "matches": list(self.matches),
            "includes": list(self.includes),
            "excludes": list(self.excludes),
            "requires": list(self.requires),
            "resources": [{"name": n, "url": u} for n, u in self.resources],
            "connects": list(self.connects),
            "grants": list(self.grants),
            "runAt": self.run_at,
            "enabled": self.enabled,
        }

    def __repr__(self):
        return f"<UserScript {self.id} {self.name!r} {self.run_at}>"


def extract_meta_block(source: str) -> str:
    """
    Return the text between the header delimiters.

    A missing or misplaced closing delimiter yields '' rather than an error.
    """
    start = source.find(HEADER_START)
    if start == -1:
        return ""
    end = source.find(HEADER_END, start + len(HEADER_START))
    if end == -1:
        return ""
    return source[start + len(HEADER_START):end]


def iter_meta_lines(source: str):
    """Yield (key, value) pairs for every `// @key value` line of the header."""
    for raw in extract_meta_block(source).splitlines():
        line = raw.strip()
        if not line:
            continue
        match = _META_LINE.match(line)
        if not match:
            continue
        yield match.group(1), (match.group(2) or "").strip()


def make_script_id(name: str, timestamp_ms: Optional[int] = None) -> str:
    """
    Build an id from the alphanumeric characters of the (URI encoded) name
    plus a base-36 timestamp.
    """
    timestamp = to_base36(timestamp_ms if timestamp_ms is not None else now_ms())
    chars = _ALNUM.findall(quote(name, safe=""))
    if not chars:
        encoded = base64.b64encode(name.encode("utf-8")).decode("ascii")
        chars = _ALNUM.findall(encoded)
    name_id = "".join(chars) or "script"
    return f"{name_id}_{timestamp}"


def apply_metadata(script: UserScript, source: str) -> UserScript:
    """Re-derive every metadata field of script from source, in place."""
    fresh = UserScript(source)
    fresh.meta_str = extract_meta_block(source)

    for key, value in iter_meta_lines(source):
        if key == "name":
            if value:
                fresh.name = value
        elif key == "namespace":
            fresh.namespace = value
        elif key == "version":
            fresh.version = value
        elif key == "description":
            fresh.description = value
        elif key == "author":
            fresh.author = value
        elif key in _HOMEPAGE_KEYS:
            fresh.homepage = value
        elif key in _ICON_KEYS:
            fresh.icon = value
        elif key == "updateURL":
            fresh.update_url = value
        elif key == "downloadURL":
            fresh.download_url = value
        elif key == "match":
            if value:
                fresh.matches.append(value)
        elif key == "include":
            if value:
                fresh.includes.append(value)
        elif key == "exclude":
            if value:
                fresh.excludes.append(value)
        elif key == "require":
            if value and value not in fresh.requires:
                fresh.requires.append(value)
        elif key == "resource":
            parts = value.split(None, 1)
            if len(parts) == 2:
                fresh.resources.append((parts[0].strip(), parts[1].strip()))
        elif key == "connect":
            if value and value not in fresh.connects:
                fresh.connects.append(value)
        elif key == "grant":
            if value:
                fresh.grants.append(value)
        elif key == "run-at":
            if value in RUN_AT_PRIORITY:
                fresh.run_at = value
            else:
                logger.debug(f"[PARSE] Unknown @run-at '{value}', using {DEFAULT_RUN_AT}")

    if not fresh.name:
        fresh.name = DEFAULT_NAME
        logger.warning("[PARSE] Script has no @name, using default name")

    for attr in ("name", "namespace", "version", "description", "author", "homepage",
                 "icon", "update_url", "download_url", "matches", "includes", "excludes",
                 "requires", "resources", "connects", "grants", "run_at", "source", "meta_str"):
        setattr(script, attr, getattr(fresh, attr))
    script.last_updated = now_ms()
    return script


def parse_script(source: str, script_id: Optional[str] = None) -> UserScript:
    """
    Parse a userscript source into a UserScript.

    Args:
        source: Full script text including the header block
        script_id: Keep this id instead of generating one (edits)

    Returns:
        The parsed UserScript
    """
    script = UserScript(source)
    apply_metadata(script, source)
    script.id = script_id or make_script_id(script.name)
    return script

"""
URL pattern compilation for @match, @include and @exclude.

Three dialects are understood:

* match patterns, ``scheme://host/path`` with ``*`` wildcards and the
  ``*.`` subdomain form in the host;
* globs, ``*`` and ``?`` anchored to the whole URL;
* regex literals, ``/pattern/`` (optionally ``/pattern/i``).

Compilation never raises to callers: a bad pattern becomes a predicate that
matches nothing and the error is logged once.
"""

import re
from typing import Dict, Iterable, Optional, Tuple

from framemonkey.error_reporter import logger
from framemonkey.exceptions import PatternCompileError

MATCH = "match"
INCLUDE = "include"

ALL_URLS = "*://*/*"

_MATCH_PATTERN = re.compile(
    r"^(?P<scheme>\*|http\*|https?|file|ftp)://"
    r"(?P<host>\*|(?:\*\.)?[^/*]+)?"
    r"(?:/(?P<path>.*))?$"
)
_REGEX_LITERAL = re.compile(r"^/(?P<body>.+)/(?P<flags>[i]*)$", re.DOTALL)

_cache: Dict[Tuple[str, str], "CompiledPattern"] = {}


class CompiledPattern:
    """Immutable predicate over a URL, built from one pattern string."""

    __slots__ = ("pattern", "dialect", "regex", "error", "_search")

    def __init__(self, pattern: str, dialect: str, regex: Optional["re.Pattern"],
                 error: Optional[str] = None, search: bool = False):
        self.pattern = pattern
        self.dialect = dialect
        self.regex = regex
        self.error = error
        self._search = search

    @property
    def valid(self) -> bool:
        return self.regex is not None

    def __call__(self, url: str) -> bool:
        if self.regex is None or not url:
            return False
        if self._search:
            return self.regex.search(url) is not None
        return self.regex.match(url) is not None

    def __repr__(self):
        state = "ok" if self.valid else f"invalid: {self.error}"
        return f"<CompiledPattern {self.pattern!r} ({self.dialect}, {state})>"


def _match_pattern_regex(pattern: str) -> str:
    """Translate a match pattern into a regex string, or raise PatternCompileError."""
    if pattern == ALL_URLS:
        return r"^https?://.*$"

    m = _MATCH_PATTERN.match(pattern)
    if not m:
        raise PatternCompileError(pattern, "expected scheme://host/path")

    scheme = m.group("scheme")
    host = m.group("host") or ""
    path = m.group("path")

    if scheme in ("*", "http*"):
        regex = r"^https?://"
    else:
        regex = "^" + re.escape(scheme) + "://"

    if not host:
        if scheme not in ("file", "*"):
            raise PatternCompileError(pattern, "missing host")
    elif host == "*":
        regex += r"[^/]*"
    elif host.startswith("*."):
        regex += r"([^/]*\.)?" + re.escape(host[2:])
    else:
        regex += re.escape(host)

    if path is None or path == "":
        regex += "/?"
    elif path == "*":
        regex += "(/.*)?"
    else:
        regex += "/" + ".*".join(re.escape(part) for part in path.split("*"))

    return regex + "$"


def _glob_regex(pattern: str) -> str:
    parts = []
    for ch in pattern:
        if ch == "*":
            parts.append(".*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return "^" + "".join(parts) + "$"


def _compile(pattern: str, dialect: str) -> CompiledPattern:
    literal = _REGEX_LITERAL.match(pattern)
    if literal and len(pattern) > 2:
        flags = re.IGNORECASE if "i" in literal.group("flags") else 0
        try:
            return CompiledPattern(pattern, "regex", re.compile(literal.group("body"), flags), search=True)
        except re.error as e:
            raise PatternCompileError(pattern, str(e))

    if pattern == "*":
        return CompiledPattern(pattern, "glob", re.compile(r"^.*$", re.DOTALL))

    if "://" in pattern:
        try:
            return CompiledPattern(pattern, MATCH, re.compile(_match_pattern_regex(pattern)))
        except PatternCompileError:
            if dialect == MATCH:
                raise

    if dialect == MATCH:
        raise PatternCompileError(pattern, "expected scheme://host/path")
    return CompiledPattern(pattern, "glob", re.compile(_glob_regex(pattern), re.DOTALL))


def compile_pattern(pattern: str, dialect: str = INCLUDE) -> CompiledPattern:
    """
    Compile a pattern string, using the process-wide cache.

    Args:
        pattern: The raw @match/@include/@exclude value
        dialect: MATCH for @match (strict), INCLUDE for @include/@exclude
            (match syntax first, glob fallback)

    Returns:
        CompiledPattern; invalid patterns return a fail-closed predicate
    """
    pattern = (pattern or "").strip()
    key = (pattern, dialect)
    cached = _cache.get(key)
    if cached is not None:
        return cached

    try:
        if not pattern:
            raise PatternCompileError(pattern, "empty pattern")
        compiled = _compile(pattern, dialect)
    except PatternCompileError as e:
        logger.warning(f"[PATTERN] {e} - pattern will never match")
        compiled = CompiledPattern(pattern, dialect, None, e.reason)

    _cache[key] = compiled
    return compiled


def matches(compiled_patterns: Iterable[CompiledPattern], url: str) -> bool:
    """True if any of the compiled patterns matches url."""
    return any(p(url) for p in compiled_patterns)


def compile_all(patterns: Iterable[str], dialect: str = INCLUDE):
    return [compile_pattern(p, dialect) for p in patterns]


def script_matches(script, url: str) -> bool:
    """
    A script runs on url iff it is enabled, one of its @match/@include
    patterns matches, and none of its @exclude patterns does.
    """
    if not script.enabled or not url:
        return False

    included = (
        matches(compile_all(script.matches, MATCH), url)
        or matches(compile_all(script.includes, INCLUDE), url)
    )
    if not included:
        return False

    return not matches(compile_all(script.excludes, INCLUDE), url)


def clear_pattern_cache():
    """Drop every compiled pattern (a script's pattern list changed)."""
    _cache.clear()

# userscript_updater.py
# Install userscripts from a URL and keep them current via @updateURL/@downloadURL

import re
from typing import Optional

import requests

from framemonkey.constants import USER_AGENT
from framemonkey.error_reporter import logger
from framemonkey.exceptions import ScriptParseError
from framemonkey.userscript import HEADER_END, extract_meta_block, parse_script

_VERSION_PART = re.compile(r"\d+|[A-Za-z]+")


def version_key(version: str):
    """
    Sort key for @version strings: numeric parts compare as numbers, so
    1.10 is newer than 1.9. A missing version sorts first.
    """
    key = []
    for part in _VERSION_PART.findall(version or ""):
        key.append((0, int(part), "") if part.isdigit() else (-1, 0, part.lower()))
    return tuple(key)


def is_newer(candidate: str, current: str) -> bool:
    return version_key(candidate) > version_key(current)


def _header_only(source: str) -> bool:
    end = source.find(HEADER_END)
    return end != -1 and not source[end + len(HEADER_END):].strip()


def download_script(url: str, timeout: int = 10, session=None) -> str:
    """
    Fetch a userscript's source.

    Raises requests.exceptions.RequestException on network/HTTP errors and
    ScriptParseError when the response has no userscript header.
    """
    http = session or requests
    response = http.get(url, timeout=timeout, headers={"User-Agent": USER_AGENT})
    response.raise_for_status()
    source = response.text
    if not extract_meta_block(source):
        raise ScriptParseError(f"{url} is not a userscript (no ==UserScript== header)")
    return source


def install_from_url(store, url: str, timeout: int = 10, session=None):
    """
    Download a script and add it to the store.

    Returns:
        The new UserScript, or None if the download failed
    """
    try:
        logger.info(f"[UPDATE] Installing {url}")
        source = download_script(url, timeout, session)
    except requests.exceptions.Timeout:
        logger.warning(f"[UPDATE] Timeout downloading {url} (offline?)")
        return None
    except (requests.exceptions.RequestException, ScriptParseError) as e:
        logger.warning(f"[UPDATE] Failed to download {url}: {e}")
        return None

    script = store.add_script(source)
    script.install_url = url
    logger.info(f"[UPDATE] Installed '{script.name}' {script.version}")
    return script


def check_for_update(script, timeout: int = 10, session=None) -> Optional[str]:
    """
    Fetch the script's @updateURL (or @downloadURL, or the URL it was
    installed from) and compare @version.

    Returns:
        The new source when a newer version is published, otherwise None
    """
    url = script.update_url or script.download_url or script.install_url
    if not url:
        return None

    try:
        logger.info(f"[UPDATE] Checking for updates: {script.name}")
        remote = download_script(url, timeout, session)
    except requests.exceptions.Timeout:
        logger.warning(f"[UPDATE] Timeout checking {script.name} (offline?)")
        raise
    except (requests.exceptions.RequestException, ScriptParseError) as e:
        logger.warning(f"[UPDATE] Failed to check {script.name}: {e}")
        raise

    remote_version = parse_script(remote).version
    if not is_newer(remote_version, script.version):
        logger.info(f"[UPDATE] {script.name} is up to date ({script.version or 'no version'})")
        return None

    # an .meta.js update URL only carries the header; the code lives at @downloadURL
    if _header_only(remote):
        code_url = script.download_url or script.install_url
        if not code_url or code_url == url:
            logger.warning(f"[UPDATE] {script.name}: {url} has no code and no @downloadURL to fetch it from")
            return None
        remote = download_script(code_url, timeout, session)

    logger.info(f"[UPDATE] New version found for {script.name}: {script.version} -> {remote_version}")
    return remote


def update_all(store, timeout: int = 10, session=None) -> dict:
    """
    Check every script in the store that declares an update location.

    Returns:
        dict: Results with counts of updated, skipped, and failed scripts
    """
    scripts = [s for s in store.get_all_scripts() if s.update_url or s.download_url or s.install_url]
    results = {
        "updated": 0,
        "skipped": 0,
        "failed": 0,
        "total": len(scripts)
    }

    for script in scripts:
        try:
            source = check_for_update(script, timeout, session)
        except (requests.exceptions.RequestException, ScriptParseError):
            results["failed"] += 1
            continue

        if source is None:
            results["skipped"] += 1
            continue

        store.update_script(script.id, source)
        results["updated"] += 1

    if results["failed"] == 0:
        logger.info(f"[UPDATE] All userscripts checked ({results['updated']} updated of {results['total']})")
    else:
        logger.warning(f"[UPDATE] {results['failed']} script(s) failed to update")
    return results

"""Pick the enabled scripts for a URL, ordered by run-at stage."""

from typing import Dict, List

from framemonkey.constants import RUN_AT_PRIORITY
from framemonkey.error_reporter import logger
from framemonkey.pattern_matcher import script_matches
from framemonkey.userscript import UserScript


def sort_by_run_at(scripts: List[UserScript]) -> List[UserScript]:
    # sorted() is stable, so store order breaks ties
    return sorted(scripts, key=lambda s: s.run_at_priority)


def group_by_run_at(scripts: List[UserScript]) -> Dict[str, List[UserScript]]:
    """Split scripts into the four run-at buckets, every bucket present."""
    buckets = {stage: [] for stage in sorted(RUN_AT_PRIORITY, key=RUN_AT_PRIORITY.get)}
    for script in scripts:
        stage = script.run_at if script.run_at in buckets else "document-idle"
        buckets[stage].append(script)
    return buckets


class ScriptSelector:
    def __init__(self, store):
        self.store = store

    def select_for_url(self, url: str) -> List[UserScript]:
        """
        Enabled scripts whose patterns match url, document-start first and
        document-idle last.
        """
        if not url:
            return []

        selected = []
        for script in self.store.get_enabled_scripts():
            try:
                if script_matches(script, url):
                    selected.append(script)
            except Exception as e:
                logger.error(f"[SELECT] Matching '{script.name}' against {url} failed: {e}")

        selected = sort_by_run_at(selected)
        if selected:
            logger.debug(
                f"[SELECT] {url}: " + ", ".join(f"{s.name} ({s.run_at})" for s in selected)
            )
        return selected

"""
Which scripts went into which frame during the current navigation epoch.

A frame's identity is a synthetic id written onto the frame element
(``data-framemonkey-id``), so re-querying the element later finds the same
ledger entry.
"""

import random
import string
from typing import Dict, Optional, Set

from framemonkey.constants import FRAME_ID_ATTR, FRAME_ID_PREFIX
from framemonkey.error_reporter import logger
from framemonkey.utils import now_ms


def generate_frame_id() -> str:
    suffix = "".join(random.choice(string.ascii_lowercase + string.digits) for _ in range(9))
    return f"{FRAME_ID_PREFIX}{now_ms()}-{suffix}"


def assign_target_id(frame) -> str:
    """Return the frame's id attribute, creating one first if it has none."""
    frame_id = frame.get_attribute(FRAME_ID_ATTR)
    if not frame_id:
        frame_id = generate_frame_id()
        frame.set_attribute(FRAME_ID_ATTR, frame_id)
        logger.debug(f"[LEDGER] Assigned id {frame_id}")
    return frame_id


class LedgerEntry:
    __slots__ = ("epoch", "url", "script_ids")

    def __init__(self):
        self.epoch = 0
        self.url = ""
        self.script_ids: Set[str] = set()


class InjectionLedger:
    def __init__(self):
        self._entries: Dict[str, LedgerEntry] = {}

    def _entry(self, target_id) -> LedgerEntry:
        entry = self._entries.get(target_id)
        if entry is None:
            entry = self._entries[target_id] = LedgerEntry()
        return entry

    def begin_epoch(self, target_id: str, url: str = "") -> int:
        """Start a new navigation epoch for target: forgets all injections."""
        entry = self._entry(target_id)
        entry.epoch += 1
        entry.url = url
        entry.script_ids.clear()
        logger.debug(f"[LEDGER] {target_id} epoch {entry.epoch} ({url or 'unknown url'})")
        return entry.epoch

    def epoch(self, target_id: str) -> int:
        entry = self._entries.get(target_id)
        return entry.epoch if entry else 0

    def url(self, target_id: str) -> Optional[str]:
        entry = self._entries.get(target_id)
        return entry.url if entry else None

    def is_injected(self, target_id: str, script_id: str) -> bool:
        entry = self._entries.get(target_id)
        return bool(entry) and script_id in entry.script_ids

    def mark_injected(self, target_id: str, script_id: str):
        self._entry(target_id).script_ids.add(script_id)

    def injected_scripts(self, target_id: str) -> Set[str]:
        entry = self._entries.get(target_id)
        return set(entry.script_ids) if entry else set()

    def forget_script(self, script_id: str):
        for entry in self._entries.values():
            entry.script_ids.discard(script_id)

    def forget_target(self, target_id: str):
        self._entries.pop(target_id, None)

    def targets(self):
        return list(self._entries.keys())

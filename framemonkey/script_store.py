# script_store.py
# In-memory script store with optional *.user.js directory backing

import os
import re
import glob
import json
import tempfile
import threading
from typing import Callable, Dict, List, Optional

from framemonkey.constants import SCRIPT_INDEX_FILE
from framemonkey.error_reporter import logger
from framemonkey.pattern_matcher import clear_pattern_cache
from framemonkey.userscript import UserScript, parse_script, apply_metadata

ADDED = "added"
UPDATED = "updated"
ENABLED = "enabled"
DISABLED = "disabled"
REMOVED = "removed"

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]+")


class ScriptStore:
    """
    Owns the userscripts. Keeps insertion order, which is the tie-breaker for
    scripts sharing a run-at stage.
    """

    def __init__(self):
        self._scripts: Dict[str, UserScript] = {}
        self._listeners: List[Callable[[str, UserScript], None]] = []
        self._lock = threading.RLock()
        self._next_position = 0
        self._removed_paths: List[str] = []

    # ---- listeners ---------------------------------------------------------
    def add_listener(self, callback: Callable[[str, UserScript], None]):
        self._listeners.append(callback)

    def remove_listener(self, callback):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _emit(self, event: str, script: UserScript):
        for callback in list(self._listeners):
            try:
                callback(event, script)
            except Exception as e:
                logger.error(f"[STORE] Listener failed on {event} for {script.id}: {e}")

    # ---- queries -----------------------------------------------------------
    def get_all_scripts(self) -> List[UserScript]:
        with self._lock:
            return sorted(self._scripts.values(), key=lambda s: s.position)

    def get_enabled_scripts(self) -> List[UserScript]:
        return [s for s in self.get_all_scripts() if s.enabled]

    def get_script(self, script_id: str) -> Optional[UserScript]:
        with self._lock:
            return self._scripts.get(script_id)

    def __len__(self):
        return len(self._scripts)

    # ---- mutations ---------------------------------------------------------
    def add_script(self, raw_source: str, enabled: bool = True, script_id: Optional[str] = None) -> UserScript:
        script = parse_script(raw_source, script_id)
        with self._lock:
            while script.id in self._scripts:
                # Same name added twice within one millisecond, or a copied index entry
                script.id = f"{script.id}x"
            script.enabled = enabled
            script.position = self._next_position
            self._next_position += 1
            self._scripts[script.id] = script
        logger.info(f"[STORE] Added script '{script.name}' ({script.id})")
        self._emit(ADDED, script)
        return script

    def update_script(self, script_id: str, raw_source: str) -> UserScript:
        with self._lock:
            script = self._require(script_id)
            apply_metadata(script, raw_source)
        clear_pattern_cache()
        logger.info(f"[STORE] Updated script '{script.name}' ({script.id})")
        self._emit(UPDATED, script)
        return script

    def enable_script(self, script_id: str) -> UserScript:
        return self._set_enabled(script_id, True)

    def disable_script(self, script_id: str) -> UserScript:
        return self._set_enabled(script_id, False)

    def remove_script(self, script_id: str) -> Optional[UserScript]:
        with self._lock:
            script = self._scripts.pop(script_id, None)
        if script is None:
            logger.warning(f"[STORE] remove_script: unknown id {script_id}")
            return None
        if script.path:
            self._removed_paths.append(script.path)
        logger.info(f"[STORE] Removed script '{script.name}' ({script.id})")
        self._emit(REMOVED, script)
        return script

    def _set_enabled(self, script_id: str, enabled: bool) -> UserScript:
        with self._lock:
            script = self._require(script_id)
            changed = script.enabled != enabled
            script.enabled = enabled
        if changed:
            self._emit(ENABLED if enabled else DISABLED, script)
        return script

    def _require(self, script_id: str) -> UserScript:
        script = self._scripts.get(script_id)
        if script is None:
            raise KeyError(f"Unknown script id: {script_id}")
        return script

    # ---- directory backing -------------------------------------------------
    def load_directory(self, path: str) -> List[UserScript]:
        """
        Load every *.user.js file in path (sorted by filename).

        Ids, enabled flags and install URLs come from the directory's
        scripts.json index so they survive a restart. Files the index does
        not know yet are added to it.

        Returns:
            The scripts that were added
        """
        if not os.path.isdir(path):
            logger.warning(f"[STORE] Userscripts directory not found: {path}")
            return []

        script_files = sorted(glob.glob(os.path.join(path, "*.user.js")))
        if not script_files:
            logger.warning(f"[STORE] No .user.js files found in {path}")
            return []

        index = read_index(path)
        added = []
        for script_path in script_files:
            script_name = os.path.basename(script_path)
            entry = index.get(script_name) or {}
            try:
                with open(script_path, 'r', encoding='utf-8') as f:
                    content = f.read()
            except OSError as e:
                logger.error(f"[STORE] Failed to load {script_name}: {e}")
                continue
            script = self.add_script(content, enabled=entry.get("enabled", True), script_id=entry.get("id"))
            script.path = script_path
            script.install_url = entry.get("installURL", "")
            added.append(script)
            logger.info(f"[STORE] Loaded {script_name}: {len(content):,} bytes")

        logger.info(f"[STORE] Loaded {len(added)} of {len(script_files)} userscript files from {path}")
        fresh = {os.path.basename(s.path): _index_entry(s) for s in added}
        if any(index.get(name) != entry for name, entry in fresh.items()):
            index.update(fresh)
            write_index(path, index)
        return added

    def save_directory(self, path: str) -> int:
        """
        Write every script to path and refresh the index. A script goes back
        to the file it was loaded from; new scripts get <name>.user.js.
        Files of removed scripts are deleted.

        Returns:
            The number of scripts written
        """
        os.makedirs(path, exist_ok=True)
        self._delete_removed(path)

        scripts = self.get_all_scripts()
        claimed = {os.path.basename(s.path) for s in scripts if s.path}
        index = {}
        written = 0
        for script in scripts:
            if script.path:
                filename = os.path.basename(script.path)
            else:
                stem = _UNSAFE_FILENAME.sub("_", script.name).strip("_") or script.id
                filename = f"{stem}.user.js"
                if filename in claimed or os.path.exists(os.path.join(path, filename)):
                    filename = f"{stem}_{script.id}.user.js"
                claimed.add(filename)
            target = os.path.join(path, filename)
            try:
                with open(target, 'w', encoding='utf-8') as f:
                    f.write(script.source)
            except OSError as e:
                logger.error(f"[STORE] Failed to save {script.name} to {target}: {e}")
                continue
            script.path = target
            index[filename] = _index_entry(script)
            written += 1

        write_index(path, index)
        return written

    def _delete_removed(self, path):
        directory = os.path.abspath(path)
        for removed in self._removed_paths:
            if os.path.dirname(os.path.abspath(removed)) != directory or not os.path.exists(removed):
                continue
            try:
                os.remove(removed)
                logger.info(f"[STORE] Deleted {removed}")
            except OSError as e:
                logger.error(f"[STORE] Could not delete {removed}: {e}")
        self._removed_paths = []


def _index_entry(script: UserScript) -> Dict[str, object]:
    return {"id": script.id, "enabled": script.enabled, "installURL": script.install_url}


def read_index(path: str) -> Dict[str, dict]:
    """Read <path>/scripts.json. A missing or unreadable index reads as empty."""
    index_path = os.path.join(path, SCRIPT_INDEX_FILE)
    if not os.path.exists(index_path):
        return {}
    try:
        with open(index_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"[STORE] Ignoring unreadable {index_path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"[STORE] Ignoring {index_path}: not a JSON object")
        return {}
    return {name: entry for name, entry in data.items() if isinstance(entry, dict)}


def write_index(path: str, index: Dict[str, dict]) -> bool:
    index_path = os.path.join(path, SCRIPT_INDEX_FILE)
    try:
        fd, tmp_path = tempfile.mkstemp(prefix=".framemonkey-", suffix=".json", dir=path)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(index, f, indent=2, sort_keys=True)
        os.replace(tmp_path, index_path)
        return True
    except OSError as e:
        logger.error(f"[STORE] Could not write {index_path}: {e}")
        return False

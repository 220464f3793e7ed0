"""Durable key-value stores backing GM_setValue and friends."""

import os
import json
import tempfile
import threading
from typing import Any, Dict, List

from framemonkey.error_reporter import logger
from framemonkey.exceptions import StorageError

_MISSING = object()


class KeyValueStorage:
    """Interface of the durable store. Values must be JSON serializable."""

    def get_value(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def set_value(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete_value(self, key: str) -> None:
        raise NotImplementedError

    def list_values(self) -> List[str]:
        raise NotImplementedError


class MemoryStorage(KeyValueStorage):
    """Process-local store, used for tests and throwaway sessions."""

    def __init__(self, initial: Dict[str, Any] = None):
        self._data = dict(initial or {})
        self._lock = threading.Lock()

    def get_value(self, key, default=None):
        with self._lock:
            return self._data.get(key, default)

    def set_value(self, key, value):
        with self._lock:
            self._data[key] = value

    def delete_value(self, key):
        with self._lock:
            self._data.pop(key, None)

    def list_values(self):
        with self._lock:
            return list(self._data.keys())


class JsonFileStorage(KeyValueStorage):
    """
    Single JSON file store. Every write rewrites the file through a temp file
    and os.replace so a crash never leaves a truncated file behind.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        self._data = self._read()

    def _read(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StorageError(f"Could not read {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"{self.path} does not contain a JSON object")
        return data

    def _write(self):
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".framemonkey-", suffix=".json", dir=directory)
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(self._data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Could not write {self.path}: {e}") from e

    def get_value(self, key, default=None):
        with self._lock:
            return self._data.get(key, default)

    def set_value(self, key, value):
        with self._lock:
            previous = self._data.get(key, _MISSING)
            self._data[key] = value
            try:
                self._write()
            except StorageError:
                if previous is _MISSING:
                    self._data.pop(key, None)
                else:
                    self._data[key] = previous
                raise
        logger.debug(f"[STORAGE] set {key}")

    def delete_value(self, key):
        with self._lock:
            if key not in self._data:
                return
            previous = self._data.pop(key)
            try:
                self._write()
            except StorageError:
                self._data[key] = previous
                raise
        logger.debug(f"[STORAGE] deleted {key}")

    def list_values(self):
        with self._lock:
            return list(self._data.keys())


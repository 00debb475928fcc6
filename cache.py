"""
Durable local key-value cache.

Values are JSON-serializable and survive restarts in a single JSON file.
Every read or write failure degrades to a cache miss or a no-op.
"""

import json
import logging
import os
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

CACHE_PATH = os.getenv("CACHE_PATH", os.path.join(os.path.expanduser("~"), ".strategia_cache.json"))
KEY_PREFIX = "strategia_"


class LocalCache:
    def __init__(self, path: Optional[str] = CACHE_PATH, prefix: str = KEY_PREFIX):
        self.path = path
        self.prefix = prefix
        self._data: Dict[str, Any] = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self.path:
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return data if isinstance(data, dict) else {}
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.debug("Cache unreadable at %s: %s", self.path, e)
            return {}

    def _flush(self) -> None:
        if not self.path:
            return
        tmp = self.path + ".tmp"
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(self._data, f)
            os.replace(tmp, self.path)
        except (OSError, TypeError, ValueError) as e:
            logger.debug("Cache write to %s failed: %s", self.path, e)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(self.prefix + key, default)

    def set(self, key: str, value: Any) -> None:
        try:
            # keep only values that round-trip through JSON
            self._data[self.prefix + key] = json.loads(json.dumps(value))
        except (TypeError, ValueError) as e:
            logger.debug("Cache value for %s not serializable: %s", key, e)
            return
        self._flush()

    def remove(self, *keys: str) -> None:
        for key in keys:
            self._data.pop(self.prefix + key, None)
        self._flush()

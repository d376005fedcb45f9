"""Value store for chaining data between requests.

Holds values extracted from completed responses so later requests can read
them through ``${store.NAME}``. One store lives for exactly one plan run.
"""

import logging
import threading
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from reqflow.runtime.conditions import MISSING, resolve_path

logger = logging.getLogger(__name__)


class ValueStore:
    """Name -> last extracted value.

    Writes are serialized per name; reads never block. Overwriting a name is
    allowed (last write wins) to support refresh-token style flows.
    """

    def __init__(self, initial: Optional[Mapping[str, Any]] = None):
        self._values: Dict[str, Any] = dict(initial or {})
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, name: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.Lock()
            return lock

    def write(self, name: str, value: Any) -> None:
        with self._lock_for(name):
            self._values[name] = value

    def record(self, name: str, path: str, response: Any) -> Any:
        """Extract ``path`` from a response and store it under ``name``.

        Args:
            name: Store key.
            path: Extraction path, e.g. ``body.data.token``, ``headers[X-Id]``,
                ``status`` or ``metrics.duration``.
            response: A Response (or a document dict in the same shape).

        Returns:
            The stored value, or ``MISSING`` when the path resolved to nothing
            (in which case the store is left untouched).
        """
        doc = response.to_document() if hasattr(response, "to_document") else response
        value = resolve_path(doc, path, MISSING)
        if value is MISSING:
            logger.warning(f"Store path '{path}' for '{name}' not found in response")
            return MISSING
        if isinstance(value, Mapping) and not isinstance(value, dict):
            value = dict(value)
        self.write(name, value)
        logger.debug(f"Stored {name} from {path}")
        return value

    def read(self, name: str) -> Any:
        """Return the stored value; raises KeyError when absent."""
        return self._values[name]

    def get(self, name: str, default: Any = None) -> Any:
        return self._values.get(name, default)

    def __contains__(self, name: str) -> bool:
        return name in self._values

    def __len__(self) -> int:
        return len(self._values)

    def snapshot(self) -> Mapping[str, Any]:
        """Read-only copy of the current values."""
        return MappingProxyType(dict(self._values))

    def clear(self) -> None:
        with self._locks_guard:
            self._values.clear()
            self._locks.clear()

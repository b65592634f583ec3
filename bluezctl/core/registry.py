"""Bijective mapping between opaque identifiers and daemon object paths."""

from __future__ import annotations

import itertools
import logging
import threading

from bluezctl.core.errors import NotFoundError
from bluezctl.core.model import ID_TYPES, EntityKind, ObjectId

LOGGER = logging.getLogger(__name__)


class IdentifierRegistry:
    """Hands out identifiers for object paths and never reuses them.

    Registration and removal are performed by the topology task only; lookups
    may come from any number of concurrent callers.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._serials = itertools.count(1)
        self._by_path: dict[str, ObjectId] = {}
        self._by_id: dict[ObjectId, str] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)

    def register(self, path: str, kind: EntityKind) -> ObjectId:
        with self._lock:
            existing = self._by_path.get(path)
            if existing is not None:
                if existing.kind is not kind:
                    # Same path re-announced as a different kind of object.
                    self._drop(path)
                else:
                    return existing
            object_id = ID_TYPES[kind](next(self._serials))
            self._by_path[path] = object_id
            self._by_id[object_id] = path
            LOGGER.debug("Registered %s for %s", object_id, path)
            return object_id

    def resolve(self, object_id: ObjectId) -> str:
        with self._lock:
            path = self._by_id.get(object_id)
        if path is None:
            raise NotFoundError(f"Unknown or invalidated identifier {object_id}")
        return path

    def lookup(self, path: str) -> ObjectId | None:
        with self._lock:
            return self._by_path.get(path)

    def unregister(self, path: str) -> ObjectId | None:
        with self._lock:
            return self._drop(path)

    def _drop(self, path: str) -> ObjectId | None:
        object_id = self._by_path.pop(path, None)
        if object_id is not None:
            del self._by_id[object_id]
            LOGGER.debug("Unregistered %s (%s)", object_id, path)
        return object_id

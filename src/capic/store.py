"""In-memory resource store with optimistic concurrency and a watch feed.

Stands in for the declarative object store the provider runs against:

- ``get``/``list`` return immutable resource values.
- ``update`` succeeds only if the caller read the current
  ``resourceVersion``; otherwise ConflictError tells the caller to re-read.
- An object carrying a deletion timestamp is physically removed as soon as
  its finalizer list is empty.
- Every change is announced to subscribers by resource key (at-least-once,
  no ordering across keys).

Optionally snapshots to a JSON file so a restart resumes where it stopped.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .models import RESOURCE_MODELS, Resource, ResourceKey, ResourceKind

logger = logging.getLogger(__name__)

WatchCallback = Callable[[ResourceKey], None]


class ConflictError(Exception):
    """Raised when a write is based on a stale resourceVersion."""

    pass


class ResourceNotFoundError(Exception):
    """Raised when a key is not present in the store."""

    def __init__(self, key: ResourceKey) -> None:
        super().__init__(f"Resource not found: {key}")
        self.key = key


def atomic_write_json(path: Path, data: Any) -> None:
    """Write ``data`` as JSON to ``path`` via a temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class MemoryResourceStore:
    """Thread-safe store of clusters, machines and secrets."""

    def __init__(self, state_path: Path | None = None) -> None:
        self._objects: dict[ResourceKey, Resource] = {}
        self._subscribers: list[WatchCallback] = []
        self._lock = threading.Lock()
        self._state_path = state_path

        if state_path is not None and state_path.exists():
            self._load(state_path)

    # -- watch ---------------------------------------------------------------

    def subscribe(self, callback: WatchCallback) -> None:
        """Register ``callback`` to receive the key of every changed object."""
        with self._lock:
            self._subscribers.append(callback)

    def _notify(self, key: ResourceKey) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(key)

    # -- reads ---------------------------------------------------------------

    def get(self, key: ResourceKey) -> Resource:
        with self._lock:
            resource = self._objects.get(key)
        if resource is None:
            raise ResourceNotFoundError(key)
        return resource

    def find(self, key: ResourceKey) -> Resource | None:
        with self._lock:
            return self._objects.get(key)

    def list(self, kind: ResourceKind, namespace: str | None = None) -> list[Resource]:
        with self._lock:
            return [
                resource
                for key, resource in sorted(self._objects.items())
                if key.kind == kind and (namespace is None or key.namespace == namespace)
            ]

    # -- writes --------------------------------------------------------------

    def create(self, resource: Resource) -> Resource:
        """Store a new object at resourceVersion 1.

        Raises:
            ConflictError: If an object with the same key already exists.
        """
        key = resource.key
        metadata = resource.metadata.model_copy(update={"resource_version": 1})
        stored = resource.model_copy(update={"metadata": metadata})
        with self._lock:
            if key in self._objects:
                raise ConflictError(f"Resource already exists: {key}")
            self._objects[key] = stored
            self._persist_locked()

        logger.debug(f"Created {key}", extra={"resource": str(key)})
        self._notify(key)
        return stored

    def update(self, resource: Resource) -> Resource | None:
        """Replace an object if ``resource`` was read at the current version.

        Returns:
            The stored object, or None if the write removed its last
            finalizer while deletion was requested and the object is gone.

        Raises:
            ResourceNotFoundError: If the object no longer exists.
            ConflictError: If the object changed since it was read.
        """
        key = resource.key
        with self._lock:
            current = self._objects.get(key)
            if current is None:
                raise ResourceNotFoundError(key)
            if current.metadata.resource_version != resource.metadata.resource_version:
                raise ConflictError(
                    f"{key} was modified: read version "
                    f"{resource.metadata.resource_version}, stored "
                    f"{current.metadata.resource_version}"
                )

            metadata = resource.metadata.model_copy(
                update={
                    "resource_version": current.metadata.resource_version + 1,
                    # Deletion can be requested but never withdrawn
                    "deletion_timestamp": current.metadata.deletion_timestamp
                    or resource.metadata.deletion_timestamp,
                }
            )
            stored: Resource | None = resource.model_copy(update={"metadata": metadata})
            if metadata.deletion_timestamp is not None and not metadata.finalizers:
                del self._objects[key]
                stored = None
            else:
                self._objects[key] = stored
            self._persist_locked()

        if stored is None:
            logger.info(f"Removed {key}", extra={"resource": str(key)})
        self._notify(key)
        return stored

    def request_deletion(self, key: ResourceKey, now: datetime | None = None) -> Resource | None:
        """Mark an object for deletion; remove it at once if it has no finalizers.

        Returns:
            The marked object, or None if it was removed.

        Raises:
            ResourceNotFoundError: If the object does not exist.
        """
        with self._lock:
            current = self._objects.get(key)
            if current is None:
                raise ResourceNotFoundError(key)
            if current.metadata.deletion_timestamp is not None:
                return current

            if not current.metadata.finalizers:
                del self._objects[key]
                self._persist_locked()
                stored: Resource | None = None
            else:
                metadata = current.metadata.model_copy(
                    update={
                        "deletion_timestamp": now or datetime.now(UTC),
                        "resource_version": current.metadata.resource_version + 1,
                    }
                )
                stored = current.model_copy(update={"metadata": metadata})
                self._objects[key] = stored
                self._persist_locked()

        logger.info(
            f"Deletion requested for {key}",
            extra={"resource": str(key), "removed": stored is None},
        )
        self._notify(key)
        return stored

    # -- persistence ---------------------------------------------------------

    def _persist_locked(self) -> None:
        if self._state_path is None:
            return
        snapshot = [
            resource.model_dump(mode="json", by_alias=True)
            for _, resource in sorted(self._objects.items())
        ]
        atomic_write_json(self._state_path, snapshot)

    def _load(self, path: Path) -> None:
        with open(path, encoding="utf-8") as f:
            items = json.load(f)

        for item in items:
            model = RESOURCE_MODELS[ResourceKind(item["kind"])]
            resource = model.model_validate(item)
            self._objects[resource.key] = resource  # type: ignore[index]

        logger.info(
            f"Loaded {len(self._objects)} resources from {path}",
            extra={"state_path": str(path)},
        )

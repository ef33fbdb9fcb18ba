"""
In-memory resource store with optional JSON persistence.

The store is the declarative surface of spindle: users create and edit
resources, controllers read them and write their ``status`` sub-resource.
Every write bumps ``metadata.resource_version`` and an update made against a
stale version is rejected with ``ConflictError`` (optimistic concurrency).

Callers always get deep copies, so mutating a returned resource has no
effect until it is written back.

Persistence Layout:
    When a state directory is configured every resource is mirrored to
    ``{state_dir}/{kind}/{namespace}/{name}.json``. Files are written to a
    ``.tmp`` sibling first and renamed into place, so a crash never leaves
    a half-written resource behind. ``load()`` restores them on startup.

Watching:
    ``watch()`` is an async iterator of ``WatchEvent`` values. Each watcher
    gets its own unbounded queue and sees every write made after it
    subscribed.

Example:
    >>> store = ResourceStore(state_dir=".spindle/state")
    >>> await store.load()
    >>> task = await store.create(task)
    >>> task.status.phase = TaskPhase.RUNNING
    >>> await store.update_status(task)
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TypeVar

import aiofiles
import structlog

from spindle.admission import Admission
from spindle.exceptions import AlreadyExistsError, ConflictError, NotFoundError, ValidationError
from spindle.models.resources import RESOURCE_KINDS, Resource, Task, TaskSpawner

log = structlog.get_logger(__name__)

R = TypeVar("R", bound=Resource)

_Key = tuple[str, str, str]


class WatchEventType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class WatchEvent:
    """A change notification delivered to watchers."""

    type: WatchEventType
    resource: Resource

    @property
    def kind(self) -> str:
        return self.resource.kind


class ResourceStore:
    """Store for Tasks, Workspaces, AgentConfigs and TaskSpawners."""

    def __init__(
        self,
        state_dir: str | Path | None = None,
        admission: Admission | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            state_dir: Directory to mirror resources into. If None the store
                is purely in-memory.
            admission: Admission checks run on create and update
        """
        self.state_dir = Path(state_dir) if state_dir else None
        if self.state_dir:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        self.admission = admission or Admission()
        self._objects: dict[_Key, Resource] = {}
        self._lock = asyncio.Lock()
        self._watchers: list[asyncio.Queue[WatchEvent]] = []

    @staticmethod
    def _key(kind: str, namespace: str, name: str) -> _Key:
        return (kind, namespace, name)

    def _siblings(self, kind: str, namespace: str) -> list[Resource]:
        return [obj for (k, ns, _), obj in self._objects.items() if k == kind and ns == namespace]

    async def create(self, resource: R) -> R:
        """Create a resource.

        Admission runs first. The store assigns ``uid``,
        ``creation_timestamp`` and ``resource_version``; any status on the
        incoming resource is discarded.

        Raises:
            ValidationError: If admission rejects the resource
            AlreadyExistsError: If the name is taken
        """
        async with self._lock:
            key = self._key(resource.kind, resource.namespace, resource.name)
            if key in self._objects:
                raise AlreadyExistsError("resource already exists", kind=resource.kind, key=resource.key)

            self.admission.admit(resource, self._siblings(resource.kind, resource.namespace))

            stored = resource.model_copy(deep=True)
            stored.metadata.uid = str(uuid.uuid4())
            stored.metadata.creation_timestamp = datetime.now(UTC)
            stored.metadata.resource_version = 1
            if isinstance(stored, (Task, TaskSpawner)):
                stored.status = type(stored.status)()

            self._objects[key] = stored
            await self._persist(stored)
            self._notify(WatchEventType.ADDED, stored)
            log.debug("resource_created", kind=stored.kind, key=stored.key)
            return stored.model_copy(deep=True)

    async def get(self, kind: str, namespace: str, name: str) -> Resource:
        """Get a resource by kind and namespaced name.

        Raises:
            NotFoundError: If no such resource exists
        """
        obj = self._objects.get(self._key(kind, namespace, name))
        if obj is None:
            raise NotFoundError("resource not found", kind=kind, key=f"{namespace}/{name}")
        return obj.model_copy(deep=True)

    async def list(
        self,
        kind: str,
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[Resource]:
        """List resources of one kind.

        Args:
            kind: Resource kind
            namespace: Restrict to this namespace (all namespaces if None)
            labels: Only resources carrying all of these label values

        Returns:
            Copies ordered by creation time, then name
        """
        labels = labels or {}
        matched = [
            obj
            for (k, ns, _), obj in self._objects.items()
            if k == kind
            and (namespace is None or ns == namespace)
            and all(obj.metadata.labels.get(lk) == lv for lk, lv in labels.items())
        ]
        matched.sort(key=lambda o: (o.metadata.creation_timestamp or datetime.min.replace(tzinfo=UTC), o.name))
        return [obj.model_copy(deep=True) for obj in matched]

    async def update(self, resource: R) -> R:
        """Update a resource's spec and labels.

        The stored status is kept. A Task's spec is immutable: only its
        labels may change.

        Raises:
            NotFoundError: If the resource does not exist
            ConflictError: If ``resource_version`` is stale
            ValidationError: If a Task spec change is attempted or
                admission rejects the new spec
        """
        async with self._lock:
            current = self._current(resource)
            if isinstance(resource, Task) and resource.spec != current.spec:
                raise ValidationError("Task spec is immutable after creation", field="spec")

            others = [o for o in self._siblings(resource.kind, resource.namespace) if o.name != resource.name]
            self.admission.admit(resource, others)

            stored = current.model_copy(deep=True)
            stored.metadata.labels = dict(resource.metadata.labels)
            stored.spec = resource.spec.model_copy(deep=True)
            return await self._commit(stored)

    async def update_status(self, resource: R) -> R:
        """Write a resource's status sub-resource.

        Only controllers call this. Spec and metadata changes on
        ``resource`` are ignored.

        Raises:
            NotFoundError: If the resource does not exist
            ConflictError: If ``resource_version`` is stale
        """
        async with self._lock:
            current = self._current(resource)
            stored = current.model_copy(deep=True)
            stored.status = resource.status.model_copy(deep=True)
            return await self._commit(stored)

    async def delete(self, kind: str, namespace: str, name: str) -> Resource:
        """Delete a resource and return its last state.

        Deleting a TaskSpawner does not delete the Tasks it created.

        Raises:
            NotFoundError: If no such resource exists
        """
        async with self._lock:
            key = self._key(kind, namespace, name)
            obj = self._objects.pop(key, None)
            if obj is None:
                raise NotFoundError("resource not found", kind=kind, key=f"{namespace}/{name}")
            await self._remove(obj)
            self._notify(WatchEventType.DELETED, obj)
            log.debug("resource_deleted", kind=kind, key=obj.key)
            return obj.model_copy(deep=True)

    async def watch(self) -> AsyncIterator[WatchEvent]:
        """Yield change events until the consumer stops iterating."""
        queue: asyncio.Queue[WatchEvent] = asyncio.Queue()
        self._watchers.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._watchers.remove(queue)

    def _current(self, resource: Resource) -> Resource:
        key = self._key(resource.kind, resource.namespace, resource.name)
        current = self._objects.get(key)
        if current is None:
            raise NotFoundError("resource not found", kind=resource.kind, key=resource.key)
        if resource.metadata.resource_version != current.metadata.resource_version:
            raise ConflictError(
                f"stale resource version {resource.metadata.resource_version}, "
                f"current is {current.metadata.resource_version}",
                kind=resource.kind,
                key=resource.key,
            )
        return current

    async def _commit(self, stored: R) -> R:
        stored.metadata.resource_version += 1
        self._objects[self._key(stored.kind, stored.namespace, stored.name)] = stored
        await self._persist(stored)
        self._notify(WatchEventType.MODIFIED, stored)
        return stored.model_copy(deep=True)

    def _notify(self, event_type: WatchEventType, resource: Resource) -> None:
        for queue in self._watchers:
            queue.put_nowait(WatchEvent(event_type, resource.model_copy(deep=True)))

    def _path(self, resource: Resource) -> Path:
        assert self.state_dir is not None
        return self.state_dir / resource.kind / resource.namespace / f"{resource.name}.json"

    async def _persist(self, resource: Resource) -> None:
        if self.state_dir is None:
            return
        path = self._path(resource)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")

        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(json.dumps(resource.to_manifest(), indent=2))

        # Atomic rename - safe on POSIX when same filesystem
        tmp_path.replace(path)

    async def _remove(self, resource: Resource) -> None:
        if self.state_dir is None:
            return
        self._path(resource).unlink(missing_ok=True)

    async def load(self) -> int:
        """Restore persisted resources from the state directory.

        Admission is not re-run: these resources were admitted when they
        were first created. Unreadable files are logged and skipped.

        Returns:
            Number of resources loaded
        """
        if self.state_dir is None:
            return 0

        loaded = 0
        async with self._lock:
            for kind, model in RESOURCE_KINDS.items():
                kind_dir = self.state_dir / kind
                if not kind_dir.is_dir():
                    continue
                for path in sorted(kind_dir.glob("*/*.json")):
                    try:
                        async with aiofiles.open(path) as f:
                            data = json.loads(await f.read())
                        data.pop("kind", None)
                        obj = model.model_validate(data)
                    except (OSError, ValueError) as e:
                        log.warning("resource_load_failed", path=str(path), error=str(e))
                        continue
                    self._objects[self._key(kind, obj.namespace, obj.name)] = obj
                    loaded += 1

        log.info("resources_loaded", count=loaded, state_dir=str(self.state_dir))
        return loaded

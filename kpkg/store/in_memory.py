"""Module for in memory object store."""

from collections import defaultdict
from collections.abc import Callable
import copy
from datetime import datetime, timezone
import itertools
import logging
from typing import Any, DefaultDict
import uuid

from kpkg.exceptions import AlreadyExistsError, ConflictError, ObjectNotFoundError
from kpkg.manifest import AnyObject, NamedResource

from .store import DeletionPropagation, O, Store, StoreEvent, T


_LOGGER = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _spec(obj: AnyObject) -> Any:
    if (spec := getattr(obj, "spec", None)) is not None:
        return spec
    return getattr(obj, "content", None)


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Objects are keyed by NamedResource and versioned with a counter that is
    shared by all objects, similar to a kubernetes resource version.
    """

    def __init__(self) -> None:
        """Initialize the InMemoryStore."""
        self._objects: dict[NamedResource, AnyObject] = {}
        self._versions = itertools.count(1)
        self._listeners: DefaultDict[StoreEvent, list[Callable[..., None]]] = (
            defaultdict(list)
        )

    def get_object(self, resource_id: NamedResource, cls: type[O]) -> O | None:
        """Retrieve an object by resource identity and type."""
        obj = self._objects.get(resource_id)
        if obj is None:
            return None
        if not isinstance(obj, cls):
            raise ValueError(
                f"Object {resource_id.namespaced_name} is not of type {cls.__name__} (was {obj.__class__.__name__})"
            )
        return copy.deepcopy(obj)

    def get(self, resource_id: NamedResource, cls: type[O]) -> O:
        """Retrieve an object, raising ObjectNotFoundError if it does not exist."""
        if (obj := self.get_object(resource_id, cls)) is None:
            raise ObjectNotFoundError(f"{resource_id} not found")
        return obj

    def list_objects(self, cls: type[T], namespace: str | None = None) -> list[T]:
        """List all objects of a type, optionally in a single namespace."""
        return [
            copy.deepcopy(obj)
            for resource_id, obj in sorted(self._objects.items())
            if isinstance(obj, cls)
            and (namespace is None or resource_id.namespace == namespace)
        ]

    def list_all(self) -> list[AnyObject]:
        """List every object in the store."""
        return [copy.deepcopy(obj) for _, obj in sorted(self._objects.items())]

    def create(self, obj: O) -> O:
        """Create a new object, raising AlreadyExistsError if it exists."""
        resource_id = obj.resource_id
        if resource_id in self._objects:
            raise AlreadyExistsError(f"{resource_id} already exists")
        new_obj = copy.deepcopy(obj)
        new_obj.metadata.uid = new_obj.metadata.uid or str(uuid.uuid4())
        new_obj.metadata.generation = 1
        new_obj.metadata.deletion_timestamp = None
        new_obj.metadata.resource_version = str(next(self._versions))
        _LOGGER.debug("Creating object %s", resource_id)
        self._objects[resource_id] = new_obj
        self._fire_event(StoreEvent.OBJECT_ADDED, resource_id, new_obj)
        return copy.deepcopy(new_obj)

    def update(self, obj: O) -> O:
        """Update the metadata and spec of an object."""
        existing = self._check_current(obj)
        new_obj = copy.deepcopy(obj)
        if hasattr(existing, "status"):
            new_obj.status = copy.deepcopy(existing.status)  # type: ignore[union-attr]
        new_obj.metadata.uid = existing.metadata.uid
        new_obj.metadata.deletion_timestamp = existing.metadata.deletion_timestamp
        new_obj.metadata.generation = existing.metadata.generation
        if _spec(new_obj) != _spec(existing):
            new_obj.metadata.generation = (existing.metadata.generation or 0) + 1
        new_obj.metadata.resource_version = str(next(self._versions))
        _LOGGER.debug("Updating object %s", obj.resource_id)
        self._objects[obj.resource_id] = new_obj
        if new_obj.deleting and not new_obj.metadata.finalizers:
            self._remove(obj.resource_id)
        else:
            self._fire_event(StoreEvent.OBJECT_UPDATED, obj.resource_id, new_obj)
        return copy.deepcopy(new_obj)

    def update_status(self, obj: O) -> O:
        """Update only the status of an object."""
        existing = self._check_current(obj)
        if not hasattr(existing, "status"):
            raise ValueError(f"Resource kind {obj.kind} does not support status updates")
        new_obj = copy.deepcopy(existing)
        new_obj.status = copy.deepcopy(obj.status)  # type: ignore[union-attr]
        new_obj.metadata.resource_version = str(next(self._versions))
        _LOGGER.debug("Updating status of %s", obj.resource_id)
        self._objects[obj.resource_id] = new_obj
        self._fire_event(StoreEvent.STATUS_UPDATED, obj.resource_id, new_obj)
        return copy.deepcopy(new_obj)

    def delete(
        self,
        resource_id: NamedResource,
        propagation: DeletionPropagation = DeletionPropagation.BACKGROUND,
    ) -> None:
        """Delete an object."""
        if (obj := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"{resource_id} not found")
        _LOGGER.debug("Deleting object %s (propagation=%s)", resource_id, propagation)
        if propagation != DeletionPropagation.ORPHAN:
            for dependent in self._dependents(obj):
                if dependent in self._objects:
                    self.delete(dependent, propagation)
        if obj.metadata.finalizers:
            if obj.metadata.deletion_timestamp is None:
                obj.metadata.deletion_timestamp = _now()
                obj.metadata.resource_version = str(next(self._versions))
                self._fire_event(StoreEvent.OBJECT_UPDATED, resource_id, obj)
            return
        self._remove(resource_id)

    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, AnyObject], None],
    ) -> Callable[[], None]:
        """Register a callback for a specific event."""

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)
        return remove

    def _check_current(self, obj: AnyObject) -> AnyObject:
        resource_id = obj.resource_id
        if (existing := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"{resource_id} not found")
        if (
            obj.metadata.resource_version is not None
            and obj.metadata.resource_version != existing.metadata.resource_version
        ):
            raise ConflictError(
                f"Operation cannot be fulfilled on {resource_id}: the object has been modified"
            )
        return existing

    def _dependents(self, owner: AnyObject) -> list[NamedResource]:
        return [
            resource_id
            for resource_id, obj in self._objects.items()
            if any(
                ref.uid == owner.metadata.uid for ref in obj.metadata.owner_references
            )
        ]

    def _remove(self, resource_id: NamedResource) -> None:
        obj = self._objects.pop(resource_id)
        self._fire_event(StoreEvent.OBJECT_DELETED, resource_id, obj)

    def _fire_event(self, event: StoreEvent, *args: Any) -> None:
        for cb in list(self._listeners[event]):
            try:
                cb(*args)
            except Exception:
                _LOGGER.exception("Store listener callback failed for event %s", event)

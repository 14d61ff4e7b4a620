"""Store module for holding the state of cluster objects."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from typing import TypeVar

from kpkg.manifest import AnyObject, KubeObject, NamedResource

T = TypeVar("T", bound=KubeObject)
O = TypeVar("O", bound=AnyObject)


class StoreEvent(str, Enum):
    """Enum for store events."""

    OBJECT_ADDED = "object_added"
    OBJECT_UPDATED = "object_updated"
    STATUS_UPDATED = "status_updated"
    OBJECT_DELETED = "object_deleted"


class DeletionPropagation(str, Enum):
    """How dependents of a deleted object are handled."""

    FOREGROUND = "Foreground"
    """Dependents are deleted before the owner."""

    BACKGROUND = "Background"
    """The owner is deleted first, then its dependents."""

    ORPHAN = "Orphan"
    """Dependents are left in place."""


class Store(ABC):
    """Abstract base class for the cluster object store with listener support.

    Objects returned by the store are copies. A write must be based on the
    latest resource version of an object, otherwise it fails with a
    `ConflictError` and the caller should retry from a fresh read.
    """

    @abstractmethod
    def get_object(self, resource_id: NamedResource, cls: type[O]) -> O | None:
        """Retrieve an object by resource identity and type."""

    @abstractmethod
    def get(self, resource_id: NamedResource, cls: type[O]) -> O:
        """Retrieve an object, raising ObjectNotFoundError if it does not exist."""

    @abstractmethod
    def list_objects(self, cls: type[T], namespace: str | None = None) -> list[T]:
        """List all objects of a type, optionally in a single namespace."""

    @abstractmethod
    def create(self, obj: O) -> O:
        """Create a new object, raising AlreadyExistsError if it exists."""

    @abstractmethod
    def update(self, obj: O) -> O:
        """Update the metadata and spec of an object.

        The status of the stored object is kept as is.
        """

    @abstractmethod
    def update_status(self, obj: O) -> O:
        """Update only the status of an object."""

    @abstractmethod
    def delete(
        self,
        resource_id: NamedResource,
        propagation: DeletionPropagation = DeletionPropagation.BACKGROUND,
    ) -> None:
        """Delete an object.

        An object with finalizers is only marked for deletion and removed once
        its finalizers are cleared.
        """

    @abstractmethod
    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, AnyObject], None],
    ) -> Callable[[], None]:
        """Register a callback for a specific event.

        Returns a callable that can be called to remove the listener.
        """

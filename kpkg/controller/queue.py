"""Work queue running reconciles for objects in the store.

Every object is reconciled by the reconciler registered for its kind. The
queue guarantees that at most one reconcile runs for an object at a time. An
object enqueued while its reconcile is running is reconciled again once the
running pass finishes. The result of a pass decides when the object is
reconciled again.

`watch` connects the queue to store events so that objects are reconciled
when they or the objects they depend on change.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import timedelta
import logging
import time

from kpkg.config import WorkQueueConfig
from kpkg.exceptions import KpkgException
from kpkg.manifest import (
    CLUSTER_PACKAGE_KIND,
    PACKAGE_INFO_KIND,
    PACKAGE_KIND,
    AnyObject,
    KubeObject,
    NamedResource,
)
from kpkg.store import Store, StoreEvent

from .requeue import ReconcileResult

__all__ = [
    "WorkQueue",
    "Reconcile",
]

_LOGGER = logging.getLogger(__name__)

Reconcile = Callable[[NamedResource], Awaitable[ReconcileResult]]

PACKAGE_KINDS = {PACKAGE_KIND, CLUSTER_PACKAGE_KIND}

DEFAULT_RECONCILE_LIMIT = 1000


class WorkQueue:
    """Schedules reconciles per object identity."""

    def __init__(self, config: WorkQueueConfig | None = None) -> None:
        """Initialize the WorkQueue."""
        self._config = config or WorkQueueConfig()
        self._handlers: dict[str, Reconcile] = {}
        self._queued: dict[NamedResource, None] = {}
        self._delayed: dict[NamedResource, float] = {}
        self._running: dict[NamedResource, asyncio.Task[None]] = {}
        self._requeue_when_done: set[NamedResource] = set()
        self._results: dict[NamedResource, ReconcileResult] = {}
        self._wakeup = asyncio.Event()
        self._reconcile_count = 0

    def register(self, kind: str, reconcile: Reconcile) -> None:
        """Register the reconciler for all objects of a kind."""
        self._handlers[kind] = reconcile

    def enqueue(self, resource_id: NamedResource, after: timedelta | None = None) -> None:
        """Schedule a reconcile of the object, now or after a delay.

        An object already scheduled keeps its earliest schedule.
        """
        if resource_id.kind not in self._handlers:
            return
        if after is None or after.total_seconds() <= 0:
            self._delayed.pop(resource_id, None)
            if resource_id in self._running:
                self._requeue_when_done.add(resource_id)
            else:
                self._queued[resource_id] = None
            self._wakeup.set()
            return
        if resource_id in self._queued:
            return
        deadline = time.monotonic() + after.total_seconds()
        if (current := self._delayed.get(resource_id)) is None or deadline < current:
            self._delayed[resource_id] = deadline
            self._wakeup.set()

    def result(self, resource_id: NamedResource) -> ReconcileResult | None:
        """Return the result of the last reconcile of the object."""
        return self._results.get(resource_id)

    @property
    def reconcile_count(self) -> int:
        """The number of reconciles run so far."""
        return self._reconcile_count

    def watch(self, store: Store) -> Callable[[], None]:
        """Enqueue objects when the store changes.

        An object is reconciled when it changes and when an object it owns
        changes. Packages are reconciled when a package or package info changes
        status, since packages wait for their dependencies and package infos.
        Every object already in the store is enqueued.

        Returns a callable that stops watching.
        """

        def on_change(resource_id: NamedResource, obj: AnyObject) -> None:
            self.enqueue(resource_id)
            self._enqueue_owners(obj)

        def on_status(resource_id: NamedResource, obj: AnyObject) -> None:
            on_change(resource_id, obj)
            if resource_id.kind in PACKAGE_KINDS or resource_id.kind == PACKAGE_INFO_KIND:
                self._enqueue_packages(store)

        def on_delete(resource_id: NamedResource, obj: AnyObject) -> None:
            self._enqueue_owners(obj)
            if resource_id.kind in PACKAGE_KINDS:
                self._enqueue_packages(store)

        removers = [
            store.add_listener(StoreEvent.OBJECT_ADDED, on_change),
            store.add_listener(StoreEvent.OBJECT_UPDATED, on_change),
            store.add_listener(StoreEvent.STATUS_UPDATED, on_status),
            store.add_listener(StoreEvent.OBJECT_DELETED, on_delete),
        ]
        for obj in store.list_objects(KubeObject):
            self.enqueue(obj.resource_id)

        def remove() -> None:
            for remover in removers:
                remover()

        return remove

    def _enqueue_owners(self, obj: AnyObject) -> None:
        for ref in obj.metadata.owner_references:
            namespace = obj.namespace if ref.kind == PACKAGE_KIND else None
            self.enqueue(NamedResource(ref.kind, namespace, ref.name))

    def _enqueue_packages(self, store: Store) -> None:
        for obj in store.list_objects(KubeObject):
            if obj.kind in PACKAGE_KINDS:
                self.enqueue(obj.resource_id)

    async def run_until_idle(self, limit: int = DEFAULT_RECONCILE_LIMIT) -> None:
        """Reconcile until no object needs an immediate reconcile.

        Delayed requeues are kept but not waited for. Raises an error if the
        objects do not settle within the given number of reconciles.
        """
        start = self._reconcile_count
        while True:
            if self._reconcile_count - start > limit:
                raise KpkgException(f"Objects did not settle after {limit} reconciles")
            self._start_ready()
            if not self._running:
                _LOGGER.debug("Work queue is idle")
                return
            await asyncio.wait(
                list(self._running.values()), return_when=asyncio.FIRST_COMPLETED
            )

    async def run(self) -> None:
        """Reconcile objects as they are scheduled until cancelled."""
        while True:
            self._start_ready()
            timeout: float | None = None
            if self._delayed:
                timeout = max(0.0, min(self._delayed.values()) - time.monotonic())
            self._wakeup.clear()
            wakeup = asyncio.ensure_future(self._wakeup.wait())
            try:
                await asyncio.wait(
                    [wakeup, *self._running.values()],
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                wakeup.cancel()

    def _start_ready(self) -> None:
        now = time.monotonic()
        for resource_id, deadline in list(self._delayed.items()):
            if deadline <= now:
                del self._delayed[resource_id]
                self._queued.setdefault(resource_id, None)
        for resource_id in list(self._queued):
            if len(self._running) >= self._config.max_concurrency:
                break
            if resource_id in self._running:
                continue
            del self._queued[resource_id]
            self._running[resource_id] = asyncio.create_task(
                self._process(resource_id), name=str(resource_id)
            )

    async def _process(self, resource_id: NamedResource) -> None:
        self._reconcile_count += 1
        try:
            result = await self._handlers[resource_id.kind](resource_id)
        except KpkgException as err:
            _LOGGER.warning("Reconcile of %s failed: %s", resource_id, err)
            result = ReconcileResult(self._config.retry_after_error, err)
        except Exception as err:
            _LOGGER.exception("Unexpected error reconciling %s", resource_id)
            result = ReconcileResult(self._config.retry_after_error, err)
        finally:
            del self._running[resource_id]

        self._results[resource_id] = result
        if resource_id in self._requeue_when_done:
            self._requeue_when_done.discard(resource_id)
            self.enqueue(resource_id)
        elif result.requeue_after is not None:
            self.enqueue(resource_id, result.requeue_after)

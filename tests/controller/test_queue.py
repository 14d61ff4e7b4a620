"""Tests for the work queue."""

import asyncio
from datetime import timedelta
from typing import Any

import pytest

from kpkg.adapter import AdapterKind
from kpkg.config import WorkQueueConfig
from kpkg.controller import (
    PackageInfoReconciler,
    PackageReconciler,
    ReconcileResult,
    WorkQueue,
)
from kpkg.controller.conditions import ConditionType, is_condition_true
from kpkg.exceptions import KpkgException
from kpkg.manifest import ClusterPackage, NamedResource, PackageInfo
from kpkg.store import InMemoryStore

from .conftest import FakeAdapter

A = NamedResource("ConfigMap", "default", "a")
B = NamedResource("ConfigMap", "default", "b")


class Recorder:
    """A reconcile function recording the objects it was called for."""

    def __init__(self, result: ReconcileResult | None = None) -> None:
        self.result = result or ReconcileResult()
        self.calls: list[NamedResource] = []
        self.running = 0
        self.max_running = 0
        self.on_call: Any = None

    async def __call__(self, resource_id: NamedResource) -> ReconcileResult:
        self.calls.append(resource_id)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(0)
            if self.on_call is not None:
                self.on_call(resource_id)
        finally:
            self.running -= 1
        return self.result


async def test_run_until_idle() -> None:
    """Test that every enqueued object is reconciled once."""
    queue = WorkQueue()
    recorder = Recorder()
    queue.register("ConfigMap", recorder)

    queue.enqueue(A)
    queue.enqueue(B)
    queue.enqueue(A)
    queue.enqueue(NamedResource("Secret", "default", "unknown"))
    await queue.run_until_idle()

    assert sorted(recorder.calls) == [A, B]
    assert queue.reconcile_count == 2
    assert queue.result(A) == ReconcileResult()
    assert queue.result(NamedResource("Secret", "default", "unknown")) is None


async def test_max_concurrency() -> None:
    """Test that no more reconciles run at once than configured."""
    queue = WorkQueue(WorkQueueConfig(max_concurrency=2))
    recorder = Recorder()
    queue.register("ConfigMap", recorder)
    for i in range(5):
        queue.enqueue(NamedResource("ConfigMap", "default", str(i)))
    await queue.run_until_idle()
    assert len(recorder.calls) == 5
    assert recorder.max_running == 2


async def test_enqueue_while_running() -> None:
    """Test that an object enqueued during its reconcile runs again afterwards."""
    queue = WorkQueue()
    recorder = Recorder()
    queue.register("ConfigMap", recorder)

    def requeue_once(resource_id: NamedResource) -> None:
        recorder.on_call = None
        queue.enqueue(resource_id)

    recorder.on_call = requeue_once
    queue.enqueue(A)
    await queue.run_until_idle()
    assert recorder.calls == [A, A]
    assert recorder.max_running == 1


async def test_delayed_requeue_is_not_waited_for() -> None:
    """Test that run_until_idle returns with delayed requeues pending."""
    queue = WorkQueue()
    recorder = Recorder(ReconcileResult(requeue_after=timedelta(minutes=1)))
    queue.register("ConfigMap", recorder)
    queue.enqueue(A)
    await queue.run_until_idle()
    assert recorder.calls == [A]


async def test_errors_are_retried() -> None:
    """Test that a raising reconcile is recorded with an error result."""
    queue = WorkQueue()

    async def fail(resource_id: NamedResource) -> ReconcileResult:
        raise KpkgException("reconcile failed")

    async def crash(resource_id: NamedResource) -> ReconcileResult:
        raise RuntimeError("unexpected")

    queue.register("ConfigMap", fail)
    queue.register("Secret", crash)
    queue.enqueue(A)
    queue.enqueue(NamedResource("Secret", "default", "s"))
    await queue.run_until_idle()

    result = queue.result(A)
    assert result is not None
    assert result.requeue_after == timedelta(seconds=30)
    assert str(result.error) == "reconcile failed"
    result = queue.result(NamedResource("Secret", "default", "s"))
    assert result is not None
    assert isinstance(result.error, RuntimeError)


async def test_does_not_settle() -> None:
    """Test that objects requeueing each other forever are reported."""
    queue = WorkQueue()
    recorder = Recorder()
    queue.register("ConfigMap", recorder)
    recorder.on_call = queue.enqueue
    queue.enqueue(A)
    with pytest.raises(KpkgException, match="did not settle after 10 reconciles"):
        await queue.run_until_idle(limit=10)


async def test_run_with_delay() -> None:
    """Test that run picks up delayed requeues."""
    queue = WorkQueue()
    recorder = Recorder()
    queue.register("ConfigMap", recorder)
    queue.enqueue(A, timedelta(milliseconds=10))

    task = asyncio.create_task(queue.run())
    try:
        for _ in range(100):
            if recorder.calls:
                break
            await asyncio.sleep(0.01)
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
    assert recorder.calls == [A]


async def test_install_with_dependencies(
    store: InMemoryStore,
    repos: Any,
    repo_client: Any,
    adapter: FakeAdapter,
    create_package: Any,
) -> None:
    """Test that watching the store drives packages and dependencies to ready."""
    repo_client.add({"name": "db"}, "1.0.0")
    repo_client.add({"name": "app", "dependencies": [{"name": "db"}]}, "1.0.0")

    reconciler = PackageReconciler(store, repos, {AdapterKind.MANIFESTS: adapter})
    info_reconciler = PackageInfoReconciler(store, repos)
    queue = WorkQueue()
    queue.register("ClusterPackage", reconciler.reconcile)
    queue.register("Package", reconciler.reconcile)
    queue.register("PackageInfo", info_reconciler.reconcile)

    app = create_package("app", "1.0.0")
    remove = queue.watch(store)
    await queue.run_until_idle()

    for name in ("app", "db"):
        pkg = store.get(NamedResource("ClusterPackage", None, name), ClusterPackage)
        assert is_condition_true(pkg.conditions, ConditionType.READY), name
    assert [info.name for info in store.list_objects(PackageInfo)] == [
        "app--1.0.0",
        "main--db--1.0.0",
    ]

    count = queue.reconcile_count
    store.delete(app)
    await queue.run_until_idle()
    assert store.list_objects(ClusterPackage) == []
    assert store.list_objects(PackageInfo) == []

    remove()
    create_package("web", "1.0.0")
    await queue.run_until_idle()
    assert queue.reconcile_count > count
    assert store.get(NamedResource("ClusterPackage", None, "web"), ClusterPackage).conditions == []

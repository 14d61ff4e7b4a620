"""Tests for the Package and ClusterPackage reconciler."""

from collections.abc import Callable
from datetime import timedelta
from typing import Any

import pytest

from kpkg.adapter import AdapterResult
from kpkg.controller import (
    PACKAGE_DELETION_FINALIZER,
    PackageInfoReconciler,
    PackageReconciler,
)
from kpkg.controller.conditions import (
    ConditionType,
    find_condition,
    set_failed,
    set_ready,
)
from kpkg.dependency import INSTALLED_AS_DEPENDENCY_ANNOTATION
from kpkg.exceptions import RepositoryError
from kpkg.manifest import (
    BasePackage,
    ClusterPackage,
    ConditionStatus,
    NamedResource,
    OwnedResourceRef,
    Package,
    PackageInfo,
    RawObject,
)
from kpkg.store import InMemoryStore

from .conftest import FakeAdapter

WEB = NamedResource("ClusterPackage", None, "web")
WEB_INFO = NamedResource("PackageInfo", None, "web--1.0.0")


def ready_condition(pkg: BasePackage) -> tuple[ConditionStatus, str, str]:
    ready = find_condition(pkg.conditions, ConditionType.READY)
    assert ready is not None
    failed = find_condition(pkg.conditions, ConditionType.FAILED)
    assert failed is not None
    assert failed.status != ready.status or ready.status == ConditionStatus.UNKNOWN
    return ready.status, ready.reason, ready.message


@pytest.fixture(name="sync")
def sync_fixture(
    store: InMemoryStore,
    reconciler: PackageReconciler,
    info_reconciler: PackageInfoReconciler,
) -> Callable[..., Any]:
    """Fixture to reconcile a package with its PackageInfo synced."""

    async def sync(resource_id: NamedResource = WEB) -> BasePackage:
        await reconciler.reconcile(resource_id)
        for info in store.list_objects(PackageInfo):
            await info_reconciler.reconcile(info.resource_id)
        await reconciler.reconcile(resource_id)
        cls = Package if resource_id.kind == "Package" else ClusterPackage
        return store.get(resource_id, cls)

    return sync


async def test_install(
    store: InMemoryStore,
    reconciler: PackageReconciler,
    info_reconciler: PackageInfoReconciler,
    adapter: FakeAdapter,
    create_package: Callable[..., NamedResource],
) -> None:
    """Test the reconcile passes of a new package."""
    create_package("web", "1.0.0", replicas="2")

    result = await reconciler.reconcile(WEB)
    assert result.requeue_after == timedelta(seconds=60)
    pkg = store.get(WEB, ClusterPackage)
    assert pkg.metadata.finalizers == [PACKAGE_DELETION_FINALIZER]
    assert ready_condition(pkg) == (
        ConditionStatus.UNKNOWN,
        "Pending",
        "PackageInfo status is unknown",
    )
    assert [ref.name for ref in pkg.status.owned_package_infos] == ["web--1.0.0"]
    assert store.get_object(WEB_INFO, PackageInfo) is not None
    assert not adapter.calls

    await info_reconciler.reconcile(WEB_INFO)
    result = await reconciler.reconcile(WEB)
    assert result.requeue_after == timedelta(seconds=60)
    assert result.error is None

    pkg = store.get(WEB, ClusterPackage)
    assert ready_condition(pkg) == (
        ConditionStatus.TRUE,
        "InstallationSucceeded",
        "1 manifests reconciled",
    )
    assert pkg.status.version == "1.0.0"
    assert len(adapter.calls) == 1
    name, info_name, patches = adapter.calls[0]
    assert (name, info_name) == ("web", "web--1.0.0")
    assert len(patches) == 1


async def test_no_changes(
    store: InMemoryStore,
    reconciler: PackageReconciler,
    create_package: Callable[..., NamedResource],
    sync: Callable[..., Any],
) -> None:
    """Test that a ready package is not written again."""
    create_package("web", "1.0.0")
    pkg = await sync()
    await reconciler.reconcile(WEB)
    assert store.get(WEB, ClusterPackage).metadata.resource_version == (
        pkg.metadata.resource_version
    )


async def test_package_info_failed(
    store: InMemoryStore,
    create_package: Callable[..., NamedResource],
    sync: Callable[..., Any],
) -> None:
    """Test that a PackageInfo failure is surfaced on the package."""
    create_package("web", "9.9.9")
    pkg = await sync()
    status, reason, message = ready_condition(pkg)
    assert status == ConditionStatus.FALSE
    assert reason == "SyncFailed"
    assert message.startswith("failed to fetch manifest:")


async def test_suspended(
    store: InMemoryStore,
    reconciler: PackageReconciler,
    create_package: Callable[..., NamedResource],
) -> None:
    """Test that suspended packages are left alone."""
    create_package("web", "1.0.0")
    pkg = store.get(WEB, ClusterPackage)
    pkg.spec.suspend = True
    store.update(pkg)

    result = await reconciler.reconcile(WEB)
    assert result.requeue_after == timedelta(seconds=60)
    assert store.get(WEB, ClusterPackage).status.conditions == []
    assert store.get_object(WEB_INFO, PackageInfo) is None


async def test_not_found(reconciler: PackageReconciler) -> None:
    """Test reconciling a package that does not exist."""
    result = await reconciler.reconcile(WEB)
    assert result.requeue_after is None
    assert result.error is None


async def test_invalid_values(
    create_package: Callable[..., NamedResource],
    adapter: FakeAdapter,
    sync: Callable[..., Any],
) -> None:
    """Test that invalid values fail the package before any adapter runs."""
    create_package("web", "1.0.0", replicas="10", unknown="x")
    pkg = await sync()
    status, reason, message = ready_condition(pkg)
    assert status == ConditionStatus.FALSE
    assert reason == "ValueConfigurationInvalid"
    assert "constraint violation: Max: 5" in message
    assert "no value definition found" in message
    assert not adapter.calls


async def test_unsupported_format(
    store: InMemoryStore,
    reconciler: PackageReconciler,
    repo_client: Any,
    adapter: FakeAdapter,
    create_package: Callable[..., NamedResource],
    sync: Callable[..., Any],
) -> None:
    """Test that a manifest needing an unavailable adapter is not installed."""
    repo_client.add(
        {
            "name": "chart",
            "manifests": [{"url": "crds.yaml"}],
            "helm": {
                "repositoryUrl": "https://charts.example.com",
                "chartName": "chart",
                "chartVersion": "1.0.0",
            },
        },
        "1.0.0",
    )
    rid = create_package("chart", "1.0.0")
    pkg = await sync(rid)
    assert ready_condition(pkg) == (
        ConditionStatus.FALSE,
        "UnsupportedFormat",
        "helm not supported",
    )
    assert not adapter.calls

    result = await reconciler.reconcile(rid)
    assert result.requeue_after is None


@pytest.mark.parametrize(
    ("result", "expected"),
    [
        (
            AdapterResult.waiting("1 resources not ready: apps/web"),
            (ConditionStatus.UNKNOWN, "Pending", "1 resources not ready: apps/web"),
        ),
        (
            AdapterResult.failed("rollout failed"),
            (ConditionStatus.FALSE, "InstallationFailed", "rollout failed"),
        ),
    ],
)
async def test_adapter_not_ready(
    adapter: FakeAdapter,
    create_package: Callable[..., NamedResource],
    sync: Callable[..., Any],
    result: AdapterResult,
    expected: tuple[ConditionStatus, str, str],
) -> None:
    """Test that the adapter result is surfaced on the package."""
    adapter.result = result
    create_package("web", "1.0.0")
    pkg = await sync()
    assert ready_condition(pkg) == expected
    assert pkg.status.version is None


async def test_adapter_error(
    store: InMemoryStore,
    reconciler: PackageReconciler,
    adapter: FakeAdapter,
    create_package: Callable[..., NamedResource],
    sync: Callable[..., Any],
) -> None:
    """Test that adapter errors fail the package and are retried."""
    adapter.error = RepositoryError("Unable to read manifest web.yaml")
    create_package("web", "1.0.0")
    pkg = await sync()
    assert ready_condition(pkg) == (
        ConditionStatus.FALSE,
        "InstallationFailed",
        "Unable to read manifest web.yaml",
    )
    result = await reconciler.reconcile(WEB)
    assert result.requeue_after == timedelta(seconds=30)
    assert str(result.error) == "Unable to read manifest web.yaml"


async def test_prune_owned_resources(
    store: InMemoryStore,
    reconciler: PackageReconciler,
    adapter: FakeAdapter,
    create_package: Callable[..., NamedResource],
    sync: Callable[..., Any],
) -> None:
    """Test that managed objects no longer applied are deleted."""
    for name, managed in (("a", True), ("b", True), ("c", False)):
        store.create(
            RawObject.parse_doc(
                {
                    "apiVersion": "v1",
                    "kind": "Secret",
                    "metadata": {
                        "name": name,
                        "namespace": "apps",
                        "labels": (
                            {"app.kubernetes.io/managed-by": "kpkg"} if managed else {}
                        ),
                    },
                }
            )
        )
    refs = [
        OwnedResourceRef(version="v1", kind="Secret", name=name, namespace="apps")
        for name in ("a", "b", "c")
    ]
    adapter.result = AdapterResult.ready("applied", refs)
    create_package("web", "1.0.0")
    pkg = await sync()
    assert [ref.name for ref in pkg.status.owned_resources] == ["a", "b", "c"]

    adapter.result = AdapterResult.ready("applied", refs[:1])
    await reconciler.reconcile(WEB)
    pkg = store.get(WEB, ClusterPackage)
    assert [ref.name for ref in pkg.status.owned_resources] == ["a"]
    assert [obj.name for obj in store.list_all() if obj.kind == "Secret"] == ["a", "c"]


async def test_upgrade_prunes_package_info(
    store: InMemoryStore,
    create_package: Callable[..., NamedResource],
    sync: Callable[..., Any],
) -> None:
    """Test that the PackageInfo of the old version is deleted after an upgrade."""
    create_package("web", "1.0.0")
    await sync()

    pkg = store.get(WEB, ClusterPackage)
    pkg.spec.package_info.version = "1.1.0"
    store.update(pkg)
    pkg = await sync()

    assert pkg.status.version == "1.1.0"
    assert [ref.name for ref in pkg.status.owned_package_infos] == ["web--1.1.0"]
    assert [info.name for info in store.list_objects(PackageInfo)] == ["web--1.1.0"]


async def test_shared_package_info(
    store: InMemoryStore,
    create_package: Callable[..., NamedResource],
    sync: Callable[..., Any],
) -> None:
    """Test that a PackageInfo used by another package is kept."""
    create_package("web", "1.0.0")
    await sync()
    blue = create_package("blue", "1.0.0", namespace="team", package_name="web")
    await sync(blue)

    pkg = store.get(WEB, ClusterPackage)
    pkg.spec.package_info.version = "1.1.0"
    store.update(pkg)
    await sync()

    assert [info.name for info in store.list_objects(PackageInfo)] == [
        "web--1.0.0",
        "web--1.1.0",
    ]


async def test_dependencies(
    store: InMemoryStore,
    reconciler: PackageReconciler,
    repo_client: Any,
    create_package: Callable[..., NamedResource],
    sync: Callable[..., Any],
) -> None:
    """Test that required packages are created and waited for."""
    repo_client.add({"name": "db"}, "1.0.0", "1.2.0")
    repo_client.add(
        {"name": "app", "dependencies": [{"name": "db", "version": "^1.0.0"}]},
        "1.0.0",
    )
    app = create_package("app", "1.0.0")
    pkg = await sync(app)
    assert ready_condition(pkg) == (
        ConditionStatus.UNKNOWN,
        "Pending",
        "waiting for required package(s) db",
    )

    db = store.get(NamedResource("ClusterPackage", None, "db"), ClusterPackage)
    assert db.spec.package_info.name == "db"
    assert db.spec.package_info.version == "1.2.0"
    assert db.spec.package_info.repository_name == "main"
    assert db.metadata.annotations == {INSTALLED_AS_DEPENDENCY_ANNOTATION: "true"}

    await sync(db.resource_id)
    db = store.get(db.resource_id, ClusterPackage)
    assert ready_condition(db)[0] == ConditionStatus.TRUE

    await reconciler.reconcile(app)
    pkg = store.get(app, ClusterPackage)
    assert ready_condition(pkg)[0] == ConditionStatus.TRUE
    assert [ref.name for ref in pkg.status.owned_packages] == ["db"]


async def test_dependency_conflict(
    store: InMemoryStore,
    repo_client: Any,
    install: Callable[..., BasePackage],
    create_package: Callable[..., NamedResource],
    sync: Callable[..., Any],
) -> None:
    """Test that an installed dependency in the wrong version fails the package."""
    repo_client.add(
        {"name": "app", "dependencies": [{"name": "db", "version": "^2.0.0"}]},
        "1.0.0",
    )
    install("db", "1.0.0")
    app = create_package("app", "1.0.0")
    pkg = await sync(app)
    assert ready_condition(pkg) == (
        ConditionStatus.FALSE,
        "InstallationFailed",
        "conflicting dependencies: need version ^2.0.0 of db but found 1.0.0",
    )


async def test_failed_dependency(
    store: InMemoryStore,
    repo_client: Any,
    install: Callable[..., BasePackage],
    create_package: Callable[..., NamedResource],
    sync: Callable[..., Any],
) -> None:
    """Test that a failed dependency fails the package."""
    repo_client.add({"name": "app", "dependencies": [{"name": "db"}]}, "1.0.0")
    db = install("db", "1.0.0")
    db.status.conditions = []
    set_failed(db.status.conditions, "SyncFailed", "failed to fetch manifest")
    store.update_status(db)

    pkg = await sync(create_package("app", "1.0.0"))
    assert ready_condition(pkg) == (
        ConditionStatus.FALSE,
        "InstallationFailed",
        "required package(s) not installed: db",
    )


async def test_components(
    store: InMemoryStore,
    repo_client: Any,
    create_package: Callable[..., NamedResource],
    sync: Callable[..., Any],
) -> None:
    """Test that components are installed as packages owned by the package."""
    repo_client.add({"name": "db"}, "1.0.0")
    repo_client.add(
        {
            "name": "app",
            "defaultNamespace": "apps",
            "components": [{"name": "db", "installedName": "database"}],
        },
        "1.0.0",
    )
    app = create_package("app", "1.0.0")
    pkg = await sync(app)
    assert ready_condition(pkg)[2] == "waiting for required package(s) app-database"

    component = store.get(NamedResource("Package", "apps", "app-database"), Package)
    assert component.spec.package_info.name == "db"
    assert component.metadata.owner_references[0].uid == pkg.metadata.uid


async def test_delete(
    store: InMemoryStore,
    reconciler: PackageReconciler,
    repo_client: Any,
    create_package: Callable[..., NamedResource],
    sync: Callable[..., Any],
) -> None:
    """Test that a deleted package waits for its required packages and infos."""
    repo_client.add({"name": "db"}, "1.0.0")
    repo_client.add({"name": "app", "dependencies": [{"name": "db"}]}, "1.0.0")
    app = create_package("app", "1.0.0")
    await sync(app)
    db = NamedResource("ClusterPackage", None, "db")
    db_pkg = store.get(db, ClusterPackage)
    set_ready(db_pkg.status.conditions, "InstallationSucceeded", "ready")
    store.update_status(db_pkg)
    await reconciler.reconcile(app)
    assert [ref.name for ref in store.get(app, ClusterPackage).status.owned_packages] == ["db"]

    store.delete(app)
    pkg = store.get(app, ClusterPackage)
    assert pkg.deleting

    result = await reconciler.reconcile(app)
    assert result.requeue_after is None
    assert store.get_object(db, ClusterPackage) is None
    pkg = store.get(app, ClusterPackage)
    assert pkg.status.owned_packages == []
    assert ready_condition(pkg)[2] == "Package is being deleted"

    await reconciler.reconcile(app)
    assert store.get_object(NamedResource("PackageInfo", None, "app--1.0.0"), PackageInfo) is None
    assert store.get(app, ClusterPackage).metadata.finalizers == [PACKAGE_DELETION_FINALIZER]

    await reconciler.reconcile(app)
    assert store.get_object(app, ClusterPackage) is None


async def test_delete_keeps_manual_dependencies(
    store: InMemoryStore,
    reconciler: PackageReconciler,
    repo_client: Any,
    install: Callable[..., BasePackage],
    create_package: Callable[..., NamedResource],
    sync: Callable[..., Any],
) -> None:
    """Test that packages installed by a user are not pruned."""
    repo_client.add({"name": "db"}, "1.0.0")
    repo_client.add({"name": "app", "dependencies": [{"name": "db"}]}, "1.0.0")
    db = install("db", "1.0.0")
    set_ready(db.status.conditions, "InstallationSucceeded", "ready")
    store.update_status(db)
    app = create_package("app", "1.0.0")
    await sync(app)

    store.delete(app)
    for _ in range(3):
        await reconciler.reconcile(app)
    assert store.get_object(app, ClusterPackage) is None
    assert store.get_object(db.resource_id, ClusterPackage) is not None

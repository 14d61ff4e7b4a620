"""Fixtures for the controller tests."""

from typing import Any

import pytest

from kpkg.adapter import AdapterKind, AdapterResult, ManifestAdapter
from kpkg.controller import PackageInfoReconciler, PackageReconciler
from kpkg.exceptions import KpkgException
from kpkg.manifest import (
    BasePackage,
    ClusterPackage,
    NamedResource,
    ObjectMeta,
    Package,
    PackageInfo,
    PackageInfoTemplate,
    PackageSpec,
    ValueConfiguration,
)
from kpkg.repo import RepoAggregator
from kpkg.store import InMemoryStore, Store
from kpkg.values import TargetPatches

WEB_MANIFEST = {
    "name": "web",
    "manifests": [{"url": "web.yaml"}],
    "valueDefinitions": {
        "replicas": {
            "type": "number",
            "constraints": {"max": 5},
            "targets": [
                {
                    "resource": {"apiGroup": "apps/v1", "kind": "Deployment", "name": "web"},
                    "patch": {"op": "replace", "path": "/spec/replicas"},
                    "valueTemplate": "{{.}}",
                }
            ],
        }
    },
}


class FakeAdapter(ManifestAdapter):
    """Records reconciles and returns a configurable result."""

    def __init__(self) -> None:
        self.store: Store | None = None
        self.result = AdapterResult.ready("1 manifests reconciled")
        self.error: KpkgException | None = None
        self.calls: list[tuple[str, str, TargetPatches]] = []

    def controller_init(self, store: Store) -> None:
        self.store = store

    async def reconcile(
        self, pkg: BasePackage, info: PackageInfo, patches: TargetPatches
    ) -> AdapterResult:
        self.calls.append((pkg.name, info.name, patches))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture(name="adapter")
def adapter_fixture() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture(name="reconciler")
def reconciler_fixture(
    store: InMemoryStore, repos: RepoAggregator, adapter: FakeAdapter
) -> PackageReconciler:
    return PackageReconciler(store, repos, {AdapterKind.MANIFESTS: adapter})


@pytest.fixture(name="info_reconciler")
def info_reconciler_fixture(
    store: InMemoryStore, repos: RepoAggregator
) -> PackageInfoReconciler:
    return PackageInfoReconciler(store, repos)


@pytest.fixture(autouse=True)
def web_package(repo_client: Any) -> None:
    """Publish the web package."""
    repo_client.add(WEB_MANIFEST, "1.0.0", "1.1.0")


@pytest.fixture(name="create_package")
def create_package_fixture(store: InMemoryStore) -> Any:
    """Fixture to create a package that was not reconciled yet."""

    def create(
        name: str,
        version: str,
        namespace: str | None = None,
        package_name: str | None = None,
        **values: str,
    ) -> NamedResource:
        spec = PackageSpec(
            package_info=PackageInfoTemplate(name=package_name or name, version=version),
            values={key: ValueConfiguration(value=value) for key, value in values.items()},
        )
        metadata = ObjectMeta(name=name, namespace=namespace)
        pkg: BasePackage
        if namespace:
            pkg = Package(metadata=metadata, spec=spec)
        else:
            pkg = ClusterPackage(metadata=metadata, spec=spec)
        return store.create(pkg).resource_id

    return create

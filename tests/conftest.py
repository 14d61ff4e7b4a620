"""Shared fixtures for kpkg tests."""

import copy
from typing import Any

import pytest

from kpkg.exceptions import RepositoryError
from kpkg.manifest import (
    BasePackage,
    ClusterPackage,
    NamedResource,
    ObjectMeta,
    Package,
    PackageInfo,
    PackageInfoSpec,
    PackageInfoStatus,
    PackageInfoTemplate,
    PackageManifest,
    PackageRepository,
    PackageRepositorySpec,
    PackageSpec,
    PACKAGE_INFO_KIND,
    ValueConfiguration,
)
from kpkg.names import package_info_name
from kpkg.repo import RepoAggregator, RepoClient
from kpkg.store import InMemoryStore

REPO_URL = "https://packages.example.com"


class FakeRepoClient(RepoClient):
    """A RepoClient serving the manifests added by a test."""

    def __init__(self) -> None:
        self.manifests: dict[str, dict[str, PackageManifest]] = {}

    def add(self, manifest: PackageManifest | dict[str, Any], *versions: str) -> None:
        if isinstance(manifest, dict):
            manifest = PackageManifest.parse_doc(manifest)
        for version in versions:
            self.manifests.setdefault(manifest.name, {})[version] = manifest

    async def has_package(self, repo_url: str, name: str) -> bool:
        return name in self.manifests

    async def get_versions(self, repo_url: str, name: str) -> list[str]:
        return list(self.manifests.get(name, {}))

    async def get_manifest(
        self, repo_url: str, name: str, version: str
    ) -> PackageManifest:
        try:
            return copy.deepcopy(self.manifests[name][version])
        except KeyError as err:
            raise RepositoryError(f"{name} version {version} not found") from err


@pytest.fixture(name="store")
def store_fixture() -> InMemoryStore:
    """Store with a single package repository."""
    store = InMemoryStore()
    store.create(
        PackageRepository(
            metadata=ObjectMeta(name="main"),
            spec=PackageRepositorySpec(url=REPO_URL),
        )
    )
    return store


@pytest.fixture(name="repo_client")
def repo_client_fixture() -> FakeRepoClient:
    return FakeRepoClient()


@pytest.fixture(name="repos")
def repos_fixture(store: InMemoryStore, repo_client: FakeRepoClient) -> RepoAggregator:
    return RepoAggregator(store, repo_client)


class PackageInstaller:
    """Creates packages and their PackageInfo objects in a store."""

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def __call__(
        self,
        name: str,
        version: str,
        manifest: PackageManifest | None = None,
        namespace: str | None = None,
        package_name: str | None = None,
        annotations: dict[str, str] | None = None,
        values: dict[str, str] | None = None,
    ) -> BasePackage:
        """Create a ClusterPackage, or a Package if a namespace is given.

        A PackageInfo with the manifest is created as well, as if it had
        already been synced.
        """
        spec = PackageSpec(
            package_info=PackageInfoTemplate(
                name=package_name or (manifest.name if manifest else name),
                version=version,
            ),
            values={
                key: ValueConfiguration(value=value)
                for key, value in (values or {}).items()
            },
        )
        metadata = ObjectMeta(
            name=name, namespace=namespace, annotations=dict(annotations or {})
        )
        pkg: BasePackage
        if namespace:
            pkg = Package(metadata=metadata, spec=spec)
        else:
            pkg = ClusterPackage(metadata=metadata, spec=spec)
        pkg = self._store.create(pkg)
        if manifest is not None and not self._store.get_object(
            NamedResource(PACKAGE_INFO_KIND, None, package_info_name(pkg)),
            PackageInfo,
        ):
            self._store.create(
                PackageInfo(
                    metadata=ObjectMeta(name=package_info_name(pkg)),
                    spec=PackageInfoSpec(name=manifest.name, version=version),
                    status=PackageInfoStatus(manifest=manifest, version=version),
                )
            )
        return pkg


@pytest.fixture(name="install")
def install_fixture(store: InMemoryStore) -> PackageInstaller:
    """Fixture to create installed packages."""
    return PackageInstaller(store)

"""Tests for package repositories."""

from pathlib import Path

import pytest

from kpkg.exceptions import RepositoryError
from kpkg.manifest import Dependency, ObjectMeta, PackageRepository, PackageRepositorySpec
from kpkg.repo import LocalRepoClient, RepoAggregator
from kpkg.store import InMemoryStore

TESTDATA = Path("tests/testdata")
REPO = "repository"


@pytest.fixture(name="client")
def client_fixture() -> LocalRepoClient:
    return LocalRepoClient(TESTDATA)


async def test_local_repository(client: LocalRepoClient) -> None:
    """Test reading the index, versions and manifests of a local repository."""
    assert await client.has_package(REPO, "web")
    assert not await client.has_package(REPO, "missing")
    assert await client.get_versions(REPO, "db") == ["1.0.0", "1.1.0"]

    manifest = await client.get_manifest(REPO, "web", "1.0.0")
    assert manifest.name == "web"
    assert manifest.default_namespace == "apps"
    assert manifest.dependencies == [Dependency(name="db", version=">=1.0.0")]
    assert manifest.value_definitions["greeting"].constraints.max_length == 10
    assert [plain.url for plain in manifest.manifests] == ["manifests.yaml"]


async def test_file_url(client: LocalRepoClient) -> None:
    """Test that file URLs are read from the absolute path."""
    url = (TESTDATA / REPO).absolute().as_uri()
    assert await client.get_versions(url, "web") == ["1.0.0"]


async def test_unsupported_url(client: LocalRepoClient) -> None:
    with pytest.raises(RepositoryError, match="Unsupported repository url"):
        await client.get_versions("https://packages.example.com", "web")


async def test_missing_files(client: LocalRepoClient) -> None:
    """Test reading packages or versions that are not published."""
    with pytest.raises(RepositoryError, match="Unable to read"):
        await client.get_versions(REPO, "missing")
    with pytest.raises(RepositoryError, match="Unable to read"):
        await client.get_manifest(REPO, "web", "9.9.9")


def test_manifest_url(client: LocalRepoClient) -> None:
    assert (
        client.manifest_url("https://packages.example.com/", "web", "1.0.0")
        == "https://packages.example.com/web/1.0.0/package.yaml"
    )


def repository(store: InMemoryStore, name: str) -> None:
    store.create(
        PackageRepository(
            metadata=ObjectMeta(name=name), spec=PackageRepositorySpec(url=REPO)
        )
    )


async def test_aggregator(client: LocalRepoClient) -> None:
    """Test finding the single repository that publishes a package."""
    store = InMemoryStore()
    repos = RepoAggregator(store, client)
    with pytest.raises(RepositoryError, match="web is not available in any repository"):
        await repos.repo_for_package("web")

    repository(store, "main")
    assert (await repos.repo_for_package("web")).name == "main"
    assert await repos.get_versions("web") == ["1.0.0"]
    assert (await repos.get_manifest("db", "1.1.0")).default_namespace == "databases"

    repository(store, "mirror")
    with pytest.raises(
        RepositoryError,
        match=r"web is available from 2 repositories \(currently unsupported\)",
    ):
        await repos.repo_for_package("web")
    assert (await repos.repo_for_package("web", "mirror")).name == "mirror"
    with pytest.raises(RepositoryError, match="PackageRepository other not found"):
        await repos.repo_for_package("web", "other")

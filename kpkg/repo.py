"""Library for fetching package manifests from package repositories.

A package repository publishes an index of its packages, a version index per
package and one manifest per package version. The `RepoClient` interface
fetches these documents from a repository URL. `LocalRepoClient` reads a
repository from a local directory with this layout:

```
index.yaml                      # packages: [{name: ...}]
<name>/versions.yaml            # versions: [{version: ...}]
<name>/<version>/package.yaml   # the PackageManifest
```

`RepoAggregator` decides which of the `PackageRepository` objects in the
cluster a package is installed from.
"""

from abc import ABC, abstractmethod
import logging
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import aiofiles
import yaml

from .exceptions import RepositoryError
from .manifest import NamedResource, PackageManifest, PackageRepository, PACKAGE_REPOSITORY_KIND
from .store import Store

__all__ = [
    "RepoClient",
    "LocalRepoClient",
    "RepoAggregator",
]

_LOGGER = logging.getLogger(__name__)

INDEX_FILE = "index.yaml"
VERSIONS_FILE = "versions.yaml"
MANIFEST_FILE = "package.yaml"


class RepoClient(ABC):
    """Client for fetching documents from a package repository."""

    @abstractmethod
    async def has_package(self, repo_url: str, name: str) -> bool:
        """Return true if the repository index lists the package."""

    @abstractmethod
    async def get_versions(self, repo_url: str, name: str) -> list[str]:
        """Return all published versions of a package."""

    @abstractmethod
    async def get_manifest(
        self, repo_url: str, name: str, version: str
    ) -> PackageManifest:
        """Return the manifest of a package version."""

    def manifest_url(self, repo_url: str, name: str, version: str) -> str:
        """Return the URL a package manifest is fetched from."""
        return "/".join([repo_url.rstrip("/"), name, version, MANIFEST_FILE])


class LocalRepoClient(RepoClient):
    """A RepoClient reading repositories from the local filesystem.

    Repository URLs are either `file://` URLs or paths. Relative paths are
    resolved against the root directory.
    """

    def __init__(self, root: Path | None = None) -> None:
        """Initialize LocalRepoClient."""
        self._root = root or Path.cwd()

    async def has_package(self, repo_url: str, name: str) -> bool:
        """Return true if the repository index lists the package."""
        index = await self._read(self._path(repo_url) / INDEX_FILE)
        return any(item.get("name") == name for item in index.get("packages") or ())

    async def get_versions(self, repo_url: str, name: str) -> list[str]:
        """Return all published versions of a package."""
        index = await self._read(self._path(repo_url) / name / VERSIONS_FILE)
        return [
            str(item["version"])
            for item in index.get("versions") or ()
            if item.get("version") is not None
        ]

    async def get_manifest(
        self, repo_url: str, name: str, version: str
    ) -> PackageManifest:
        """Return the manifest of a package version."""
        doc = await self._read(self._path(repo_url) / name / version / MANIFEST_FILE)
        return PackageManifest.parse_doc(doc)

    def _path(self, repo_url: str) -> Path:
        parsed = urlparse(repo_url)
        if parsed.scheme == "file":
            return Path(parsed.path)
        if parsed.scheme:
            raise RepositoryError(f"Unsupported repository url {repo_url}")
        return self._root / repo_url

    async def _read(self, path: Path) -> dict[str, Any]:
        _LOGGER.debug("Reading repository file %s", path)
        try:
            async with aiofiles.open(str(path)) as repo_file:
                content = await repo_file.read()
        except OSError as err:
            raise RepositoryError(f"Unable to read {path}: {err}") from err
        try:
            doc = yaml.safe_load(content)
        except yaml.YAMLError as err:
            raise RepositoryError(f"Invalid repository file {path}: {err}") from err
        if not isinstance(doc, dict):
            raise RepositoryError(f"Invalid repository file {path}: {doc}")
        return doc


class RepoAggregator:
    """Looks up packages across all PackageRepository objects in the cluster."""

    def __init__(self, store: Store, client: RepoClient) -> None:
        """Initialize RepoAggregator."""
        self._store = store
        self._client = client

    @property
    def client(self) -> RepoClient:
        return self._client

    async def repos_for_package(self, name: str) -> list[PackageRepository]:
        """Return every repository that publishes the package."""
        return [
            repo
            for repo in self._store.list_objects(PackageRepository)
            if await self._client.has_package(repo.spec.url, name)
        ]

    async def repo_for_package(
        self, name: str, repository_name: str | None = None
    ) -> PackageRepository:
        """Return the repository a package is installed from.

        Without an explicit repository name, exactly one repository must
        publish the package.
        """
        if repository_name:
            if (
                repo := self._store.get_object(
                    NamedResource(PACKAGE_REPOSITORY_KIND, None, repository_name),
                    PackageRepository,
                )
            ) is None:
                raise RepositoryError(f"PackageRepository {repository_name} not found")
            return repo
        repos = await self.repos_for_package(name)
        if not repos:
            raise RepositoryError(f"{name} is not available in any repository")
        if len(repos) > 1:
            raise RepositoryError(
                f"{name} is available from {len(repos)} repositories (currently unsupported)"
            )
        return repos[0]

    async def get_versions(self, name: str) -> list[str]:
        """Return all published versions of a package."""
        repo = await self.repo_for_package(name)
        return await self._client.get_versions(repo.spec.url, name)

    async def get_manifest(self, name: str, version: str) -> PackageManifest:
        """Return the manifest of a package version."""
        repo = await self.repo_for_package(name)
        return await self._client.get_manifest(repo.spec.url, name, version)

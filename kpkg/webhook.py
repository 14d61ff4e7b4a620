"""Admission validation of Package and ClusterPackage changes.

The validator rejects changes that would leave the cluster with conflicting
dependencies before they are written. It checks the literal values of a
package against the value definitions of its manifest, refuses packages that
would need transitive dependencies installed and refuses deleting cluster
packages that other installed packages still depend on.

Deleting a package is allowed when all of its dependants are being deleted
already, otherwise a dependant waiting for its dependencies to disappear would
block forever.
"""

import logging

from .dependency import (
    DependencyManager,
    ValidationResult,
    format_conflicts,
    package_ref,
)
from .exceptions import DependencyConflictError, TransitiveDependencyError
from .manifest import BasePackage, PackageManifest
from .repo import RepoAggregator
from .store import Store
from .values import validate_package_values

__all__ = [
    "PackageValidator",
]

_LOGGER = logging.getLogger(__name__)


class PackageValidator:
    """Validates creating, updating and deleting packages."""

    def __init__(
        self,
        store: Store,
        repos: RepoAggregator,
        dependency_manager: DependencyManager | None = None,
    ) -> None:
        """Initialize PackageValidator."""
        self._repos = repos
        self._dependency_manager = dependency_manager or DependencyManager(store, repos)

    async def validate_create(self, pkg: BasePackage) -> None:
        """Raise an error if the package can't be created."""
        _LOGGER.info("Validate create of %s", pkg.resource_id)
        await self._validate_create_or_update(pkg)

    async def validate_update(self, old_pkg: BasePackage, new_pkg: BasePackage) -> None:
        """Raise an error if the package can't be updated.

        Changes that leave the spec untouched, like status or metadata updates,
        are always allowed.
        """
        _LOGGER.info("Validate update of %s", new_pkg.resource_id)
        if old_pkg.spec == new_pkg.spec:
            return
        await self._validate_create_or_update(new_pkg)

    async def validate_delete(self, pkg: BasePackage) -> ValidationResult | None:
        """Raise an error if deleting the package breaks a dependency.

        Only cluster packages can be dependencies, deleting a namespaced
        package is always allowed. Returns the validation result for cluster
        packages, listing the packages that would be pruned along with it.
        """
        _LOGGER.info("Validate delete of %s", pkg.resource_id)
        if pkg.namespace_scoped:
            return None
        result = await self._dependency_manager.validate_delete(package_ref(pkg).name, "")
        if result.conflicts:
            raise DependencyConflictError(
                "; ".join(str(conflict.cause or conflict) for conflict in result.conflicts)
            )
        return result

    async def _validate_create_or_update(self, pkg: BasePackage) -> None:
        # The PackageInfo of a new version does not exist yet, so the manifest
        # is fetched from the repository directly
        manifest = await self._fetch_manifest(pkg)
        validate_package_values(manifest, pkg.spec.values)

        result = await self._dependency_manager.validate(
            pkg.name,
            pkg.namespace or "",
            manifest,
            pkg.spec.package_info.version,
        )
        if result.conflicts:
            raise DependencyConflictError(format_conflicts(result.conflicts))
        if transitive := [req for req in result.requirements if req.transitive]:
            raise TransitiveDependencyError(
                "transitive dependencies are not supported, install them first: "
                + ", ".join(f"{req.name}@{req.version}" for req in transitive)
            )

    async def _fetch_manifest(self, pkg: BasePackage) -> PackageManifest:
        template = pkg.spec.package_info
        repo = await self._repos.repo_for_package(template.name, template.repository_name)
        return await self._repos.client.get_manifest(
            repo.spec.url, template.name, template.version
        )

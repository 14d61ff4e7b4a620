"""Dependency validation against the packages installed in the cluster.

The dependency manager builds a `DependencyGraph` from a snapshot of all
`ClusterPackage` and `Package` objects and their manifests, simulates
installing or deleting a package and reports what this would require or break.
"""

import logging

from kpkg.exceptions import (
    ConstraintError,
    DependencyError,
    InputException,
    NoMatchingVersionError,
)
from kpkg.manifest import (
    BasePackage,
    ClusterPackage,
    NamedResource,
    Package,
    PackageInfo,
    PackageManifest,
    PACKAGE_INFO_KIND,
)
from kpkg.names import package_info_name
from kpkg.repo import RepoAggregator
from kpkg.semver import parse_version
from kpkg.store import Store

from .graph import DependencyGraph, PackageRef
from .result import (
    ComponentMetadata,
    Conflict,
    PackageWithVersion,
    Requirement,
    ValidationResult,
    ValidationStatus,
)

__all__ = [
    "DependencyManager",
    "package_ref",
]

_LOGGER = logging.getLogger(__name__)

INSTALLED_AS_DEPENDENCY_ANNOTATION = "packages.kpkg.dev/installed-as-dependency"


def package_ref(pkg: BasePackage) -> PackageRef:
    """Return the graph identity of a package.

    Cluster packages are identified by their package name so that dependencies
    declared in manifests can refer to them.
    """
    package_name = pkg.spec.package_info.name
    if pkg.namespace_scoped:
        return PackageRef(pkg.name, pkg.namespace or "", package_name)
    return PackageRef(package_name, "", package_name)


def is_installed_as_dependency(pkg: BasePackage) -> bool:
    """Return true if the package was created to satisfy a dependency."""
    return pkg.metadata.annotations.get(INSTALLED_AS_DEPENDENCY_ANNOTATION) == "true"


class DependencyManager:
    """Validates package dependencies against the cluster and repositories."""

    def __init__(self, store: Store, repos: RepoAggregator) -> None:
        """Initialize DependencyManager."""
        self._store = store
        self._repos = repos

    async def new_graph(self) -> DependencyGraph:
        """Build a DependencyGraph from all packages in the store."""
        packages: list[BasePackage] = []
        packages.extend(self._store.list_objects(ClusterPackage))
        packages.extend(self._store.list_objects(Package))

        graph = DependencyGraph()
        for pkg in packages:
            installed_version = pkg.spec.package_info.version
            manifest: PackageManifest | None = None
            if pkg.deleting:
                # A package being deleted is represented as not installed
                installed_version = ""
            elif (
                info := self._store.get_object(
                    NamedResource(PACKAGE_INFO_KIND, None, package_info_name(pkg)),
                    PackageInfo,
                )
            ) is not None:
                manifest = info.status.manifest
            else:
                _LOGGER.debug(
                    "PackageInfo of %s not found, assuming no dependencies",
                    pkg.resource_id,
                )
            manual = not pkg.metadata.owner_references
            if not pkg.namespace_scoped:
                manual = manual and not is_installed_as_dependency(pkg)
            graph.add(package_ref(pkg), manifest, installed_version, manual)
        return graph

    async def validate(
        self,
        name: str,
        namespace: str,
        manifest: PackageManifest | None,
        version: str,
    ) -> ValidationResult:
        """Validate installing or updating a package to the given version."""
        if manifest is None:
            raise InputException("manifest must not be nil")
        if namespace:
            ref = PackageRef(name, namespace, manifest.name)
        else:
            ref = PackageRef(manifest.name)

        graph = await self.new_graph()
        # The cluster may already be inconsistent, e.g. while dependencies are
        # still being created. Only errors introduced by this change count,
        # except for the errors of the package itself.
        errors_before = [
            err for err in graph.validate_errors() if err.name != str(ref)
        ]
        graph.add(ref, manifest, version, graph.manual(ref))
        requirements = await self._add_dependencies(graph, ref, transitive=False)
        requirements.sort(key=lambda req: req.name)

        conflicts: list[Conflict] = []
        for err in graph.validate_errors():
            if _is_new_error(err, errors_before):
                conflicts.append(_to_conflict(err))

        status = ValidationStatus.OK
        if requirements:
            status = ValidationStatus.RESOLVABLE
        if conflicts:
            status = ValidationStatus.CONFLICT
        _LOGGER.debug(
            "Dependency validation of %s: %s (requirements=%s, conflicts=%s)",
            ref,
            status,
            requirements,
            conflicts,
        )
        return ValidationResult(
            status=status, requirements=requirements, conflicts=conflicts
        )

    async def validate_delete(self, name: str, namespace: str) -> ValidationResult:
        """Validate deleting a package.

        The result lists the packages that would be pruned along with it and a
        conflict for every dependency the deletion would break.
        """
        graph = await self.new_graph()
        errors_before = graph.validate_errors()
        pruned, errors = graph.validate_delete(PackageRef(name, namespace))
        conflicts = [
            Conflict(
                actual=PackageWithVersion(err.dependency, ""),
                required=PackageWithVersion(err.dependency, "*"),
                cause=err,
            )
            for err in errors
            if _is_new_error(err, errors_before)
        ]
        return ValidationResult(
            status=ValidationStatus.CONFLICT if conflicts else ValidationStatus.OK,
            conflicts=conflicts,
            pruned=pruned,
        )

    async def _add_dependencies(
        self, graph: DependencyGraph, ref: PackageRef, transitive: bool
    ) -> list[Requirement]:
        """Add the highest possible version of every missing dependency.

        Dependencies of added packages are added as well and marked transitive.
        """
        added: list[Requirement] = []
        for dep in graph.dependencies(ref):
            if graph.version(dep) is not None:
                continue
            versions = [
                parse_version(version)
                for version in await self._repos.get_versions(dep.package_name)
            ]
            try:
                max_version = graph.max(dep, versions)
            except NoMatchingVersionError as err:
                # Left uninstalled so that validation reports the unmet dependency
                _LOGGER.debug("Dependency %s can't be resolved: %s", dep, err)
                continue
            dep_manifest = await self._repos.get_manifest(
                dep.package_name, max_version.original
            )
            graph.add(dep, dep_manifest, max_version.original, graph.manual(dep))
            nested = await self._add_dependencies(graph, dep, transitive=True)
            added.append(
                Requirement(
                    name=dep_manifest.name,
                    version=max_version.original,
                    transitive=transitive,
                    component=(
                        ComponentMetadata(dep.name, dep.namespace)
                        if dep.is_component
                        else None
                    ),
                )
            )
            added.extend(nested)
        return added


def _is_new_error(err: DependencyError, errors_before: list[DependencyError]) -> bool:
    return not any(
        before.name == err.name and before.dependency == err.dependency
        for before in errors_before
    )


def _to_conflict(err: DependencyError) -> Conflict:
    """Return a Conflict for a violated constraint, raise any other error."""
    if not isinstance(err.cause, ConstraintError):
        raise err
    cause = err.cause
    return Conflict(
        actual=PackageWithVersion(cause.name, str(cause.version)),
        required=PackageWithVersion(cause.name, str(cause.constraint)),
        cause=err,
    )

"""Dependency graph of installed packages.

The graph has one vertex per package identity. A vertex has the installed
version of the package (or none if it is not installed), whether it was
installed manually by a user and one outgoing edge per package it requires,
optionally with a version constraint.

The graph is a pure in-memory value. It is built from a snapshot of the
cluster for each validation and operations that only preview a change, like
`validate_delete`, run on a copy.
"""

from dataclasses import dataclass, field
import logging

from kpkg.exceptions import (
    ConstraintError,
    DependencyError,
    DependencyValidationError,
    NoMatchingVersionError,
    NotInstalledError,
)
from kpkg.manifest import Component, PackageManifest
from kpkg.names import component_name
from kpkg.semver import Constraint, Version, parse_constraint, parse_version

__all__ = [
    "DependencyGraph",
    "PackageRef",
    "component_ref",
]

_LOGGER = logging.getLogger(__name__)

DEFAULT_COMPONENT_NAMESPACE = "default"


@dataclass(frozen=True)
class PackageRef:
    """Identity of a package in the dependency graph.

    Two references are the same vertex if name and namespace match. The
    namespace is empty for cluster scoped packages. The package name is the
    name of the package in the repository, which differs from the name for
    components.
    """

    name: str
    namespace: str = ""
    package_name: str = field(default="", compare=False)

    def __post_init__(self) -> None:
        if not self.package_name:
            object.__setattr__(self, "package_name", self.name)

    @property
    def is_component(self) -> bool:
        return bool(self.namespace)

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name


def component_ref(
    parent: PackageRef, manifest: PackageManifest, cmp: Component
) -> PackageRef:
    """Return the identity of a component installed by a package.

    Components are namespaced packages, installed into the namespace of the
    parent or the default namespace of the parent manifest.
    """
    return PackageRef(
        component_name(parent.name, cmp),
        parent.namespace or manifest.default_namespace or DEFAULT_COMPONENT_NAMESPACE,
        cmp.name,
    )


@dataclass
class _Vertex:
    ref: PackageRef
    version: Version | None = None
    manual: bool = False
    edges: dict[PackageRef, Constraint | None] = field(default_factory=dict)


class DependencyGraph:
    """Graph of packages and the packages they depend on."""

    def __init__(self) -> None:
        """Initialize an empty DependencyGraph."""
        self._vertices: dict[PackageRef, _Vertex] = {}

    def add(
        self,
        ref: PackageRef,
        manifest: PackageManifest | None,
        version: str,
        manual: bool,
    ) -> None:
        """Simulate installing or updating a package.

        The outgoing edges of the package are replaced with the dependencies
        and components declared in the manifest. An empty version simulates
        uninstalling the package.
        """
        if not version:
            self._delete(ref)
            return

        parsed_version = parse_version(version)
        edges: dict[PackageRef, Constraint | None] = {}
        if manifest is not None:
            for dep in manifest.dependencies:
                edges[PackageRef(dep.name)] = (
                    parse_constraint(dep.version) if dep.version else None
                )
            for cmp in manifest.components:
                edges[component_ref(ref, manifest, cmp)] = (
                    parse_constraint(cmp.version) if cmp.version else None
                )

        vertex = self._vertex(ref)
        vertex.ref = ref
        vertex.version = parsed_version
        vertex.manual = manual
        vertex.edges = edges
        for target in edges:
            self._vertex(target)

    def version(self, ref: PackageRef) -> Version | None:
        """Return the installed version of a package or None if it is not installed."""
        if (vertex := self._vertices.get(ref)) is not None:
            return vertex.version
        return None

    def manual(self, ref: PackageRef) -> bool:
        """Return whether a package was installed manually by a user."""
        if (vertex := self._vertices.get(ref)) is not None:
            return vertex.manual
        return False

    def refs(self) -> list[PackageRef]:
        """Return all packages known to the graph."""
        return [vertex.ref for vertex in self._vertices.values()]

    def dependencies(self, ref: PackageRef) -> list[PackageRef]:
        """Return the packages this package depends on."""
        if (vertex := self._vertices.get(ref)) is None:
            return []
        return [self._vertices[target].ref for target in vertex.edges]

    def dependants(self, ref: PackageRef) -> list[PackageRef]:
        """Return the installed packages that depend on this package."""
        return [
            vertex.ref
            for vertex in self._vertices.values()
            if vertex.version is not None and ref in vertex.edges
        ]

    def constraints(self, ref: PackageRef) -> list[Constraint]:
        """Return the constraints of all installed dependants of this package."""
        return [
            constraint
            for vertex in self._vertices.values()
            if vertex.version is not None
            and (constraint := vertex.edges.get(ref)) is not None
        ]

    def max(self, ref: PackageRef, versions: list[Version]) -> Version:
        """Return the highest version that satisfies all constraints of this package."""
        constraints = self.constraints(ref)
        max_version: Version | None = None
        for version in versions:
            if max_version is not None and not version.is_upgrade_of(max_version):
                continue
            if any(constraint.check(version) for constraint in constraints):
                continue
            max_version = version
        if max_version is None:
            raise NoMatchingVersionError(str(ref))
        return max_version

    def delete(self, ref: PackageRef) -> bool:
        """Simulate uninstalling a package.

        The vertex is kept, since other packages may still reference it, but
        its version and outgoing edges are cleared. Returns whether the package
        was installed before.
        """
        return self._delete(ref)

    def prune(self) -> list[PackageRef]:
        """Delete every installed package that is not manual and has no dependants.

        Deleting a package can leave its own dependencies without dependants,
        so this repeats until nothing changes.
        """
        removed: list[PackageRef] = []
        stable = False
        while not stable:
            stable = True
            for vertex in list(self._vertices.values()):
                if (
                    not vertex.manual
                    and not self.dependants(vertex.ref)
                    and self._delete(vertex.ref)
                ):
                    _LOGGER.debug("Pruned orphaned package %s", vertex.ref)
                    stable = False
                    removed.append(vertex.ref)
        return removed

    def delete_and_prune(self, ref: PackageRef) -> list[PackageRef]:
        """Delete a package and prune everything that was only needed by it."""
        if self._delete(ref):
            return [self._vertices[ref].ref] + self.prune()
        return []

    def validate_delete(
        self, ref: PackageRef
    ) -> tuple[list[PackageRef], list[DependencyError]]:
        """Preview deleting a package without changing this graph.

        Returns the packages that would be removed and the dependency errors
        of the resulting graph.
        """
        graph = self.copy()
        return graph.delete_and_prune(ref), graph.validate_errors()

    def validate_errors(self) -> list[DependencyError]:
        """Return an error for every unmet dependency or violated constraint."""
        errors: list[DependencyError] = []
        for vertex in self._vertices.values():
            for target, constraint in vertex.edges.items():
                target_vertex = self._vertices[target]
                if target_vertex.version is None:
                    errors.append(
                        DependencyError(
                            str(vertex.ref),
                            str(target_vertex.ref),
                            NotInstalledError(str(target_vertex.ref)),
                        )
                    )
                elif constraint is not None and (
                    cause := constraint.check(target_vertex.version)
                ):
                    errors.append(
                        DependencyError(
                            str(vertex.ref),
                            str(target_vertex.ref),
                            ConstraintError(
                                str(target_vertex.ref),
                                target_vertex.version,
                                constraint,
                                cause,
                            ),
                        )
                    )
        return errors

    def validate(self) -> None:
        """Check that all dependencies are installed and all constraints hold."""
        if errors := self.validate_errors():
            raise DependencyValidationError(errors)

    def copy(self) -> "DependencyGraph":
        """Return an independent copy of this graph."""
        graph = DependencyGraph()
        for key, vertex in self._vertices.items():
            graph._vertices[key] = _Vertex(
                ref=vertex.ref,
                version=vertex.version,
                manual=vertex.manual,
                edges=dict(vertex.edges),
            )
        return graph

    def _vertex(self, ref: PackageRef) -> _Vertex:
        if (vertex := self._vertices.get(ref)) is None:
            vertex = _Vertex(ref=ref)
            self._vertices[ref] = vertex
        return vertex

    def _delete(self, ref: PackageRef) -> bool:
        vertex = self._vertex(ref)
        deleted = vertex.version is not None
        vertex.version = None
        vertex.manual = False
        vertex.edges = {}
        return deleted

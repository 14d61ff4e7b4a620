"""Dependency graph and validation of package dependencies.

The graph tracks which packages are installed in which version and which
packages they require. The manager builds the graph from the cluster and
decides whether a package can be installed as is, needs additional packages,
or conflicts with installed versions.
"""

from .graph import DependencyGraph, PackageRef, component_ref
from .manager import (
    INSTALLED_AS_DEPENDENCY_ANNOTATION,
    DependencyManager,
    is_installed_as_dependency,
    package_ref,
)
from .result import (
    ComponentMetadata,
    Conflict,
    PackageWithVersion,
    Requirement,
    ValidationResult,
    ValidationStatus,
    format_conflicts,
)

__all__ = [
    "DependencyGraph",
    "PackageRef",
    "component_ref",
    "DependencyManager",
    "package_ref",
    "is_installed_as_dependency",
    "INSTALLED_AS_DEPENDENCY_ANNOTATION",
    "ComponentMetadata",
    "Conflict",
    "PackageWithVersion",
    "Requirement",
    "ValidationResult",
    "ValidationStatus",
    "format_conflicts",
]

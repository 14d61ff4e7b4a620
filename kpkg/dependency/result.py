"""Result of validating the dependencies of a package."""

from dataclasses import dataclass, field
from enum import StrEnum

from .graph import PackageRef

__all__ = [
    "ValidationStatus",
    "ValidationResult",
    "Requirement",
    "Conflict",
    "PackageWithVersion",
    "ComponentMetadata",
]


class ValidationStatus(StrEnum):
    """Overall verdict of a dependency validation."""

    OK = "OK"
    """All dependencies are installed in a compatible version."""

    RESOLVABLE = "RESOLVABLE"
    """Some dependencies are missing but can be installed."""

    CONFLICT = "CONFLICT"
    """An installed dependency violates a required version range."""


@dataclass(frozen=True)
class PackageWithVersion:
    """A package name with a version or version range."""

    name: str
    version: str

    def __str__(self) -> str:
        return f"{self.name}@{self.version}"


@dataclass(frozen=True)
class ComponentMetadata:
    """Where a required component is installed."""

    name: str
    namespace: str


@dataclass(frozen=True)
class Requirement:
    """A package that must be installed to satisfy a dependency."""

    name: str
    version: str
    transitive: bool = False
    """True if the package is only required by another requirement."""

    component: ComponentMetadata | None = None
    """Set if the requirement is a component of the validated package."""


@dataclass(frozen=True)
class Conflict:
    """An installed package that violates a required version range."""

    actual: PackageWithVersion
    required: PackageWithVersion
    cause: Exception | None = field(default=None, compare=False)

    def __str__(self) -> str:
        if not self.actual.version:
            return f"{self.required.name} (required: {self.required.version}, not installed)"
        return (
            f"{self.required.name} (required: {self.required.version}, "
            f"actual: {self.actual.version})"
        )


def format_conflicts(conflicts: list[Conflict]) -> str:
    """Return a human readable list of conflicts."""
    return ", ".join(str(conflict) for conflict in conflicts)


@dataclass
class ValidationResult:
    """Verdict of validating the dependencies of a package."""

    status: ValidationStatus
    requirements: list[Requirement] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    pruned: list[PackageRef] = field(default_factory=list)

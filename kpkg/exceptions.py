"""Exceptions related to kpkg."""

from collections.abc import Iterable
from typing import Any

__all__ = [
    "KpkgException",
    "InputException",
    "MultiError",
    "ObjectNotFoundError",
    "AlreadyExistsError",
    "ConflictError",
    "RepositoryError",
    "InvalidVersionError",
    "NoMatchingVersionError",
    "NotInstalledError",
    "ConstraintError",
    "DependencyError",
    "DependencyValidationError",
    "ValueResolutionError",
    "ValueReferenceError",
    "CyclicValueReferenceError",
    "ValueValidationError",
    "InvalidTemplateError",
    "PatchError",
    "DependencyConflictError",
    "TransitiveDependencyError",
]


class KpkgException(Exception):
    """Generic base exception used for this library."""


class InputException(KpkgException):
    """Raised when the input objects or values are not formatted as expected."""


class MultiError(KpkgException):
    """Raised to report several independent errors at once."""

    def __init__(self, errors: Iterable[Exception]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(str(err) for err in self.errors))


class ObjectNotFoundError(KpkgException):
    """Raised when an object is not found in the store."""


class AlreadyExistsError(KpkgException):
    """Raised when creating an object that already exists in the store."""


class ConflictError(KpkgException):
    """Raised when an update is based on a stale resource version."""


class RepositoryError(KpkgException):
    """Raised when a package can't be fetched from a package repository."""


class InvalidVersionError(InputException):
    """Raised when a version or version constraint can't be parsed."""


class NoMatchingVersionError(KpkgException):
    """Raised when no candidate version satisfies all constraints."""

    def __init__(self, name: str) -> None:
        super().__init__(f"no matching version for {name} found")
        self.name = name


class NotInstalledError(KpkgException):
    """Raised when a required package is not installed."""

    def __init__(self, name: str) -> None:
        super().__init__(f"{name} not installed")
        self.name = name


class ConstraintError(KpkgException):
    """Raised when an installed version violates a version constraint."""

    def __init__(self, name: str, version: Any, constraint: Any, cause: str) -> None:
        super().__init__(f"constraint {constraint} violated: {cause}")
        self.name = name
        self.version = version
        self.constraint = constraint
        self.cause = cause


class DependencyError(KpkgException):
    """Raised when the dependency of a package is not met."""

    def __init__(self, name: str, dependency: str, cause: Exception) -> None:
        super().__init__(f"unmet dependency {name} -> {dependency}: {cause}")
        self.name = name
        self.dependency = dependency
        self.cause = cause


class DependencyValidationError(MultiError):
    """Raised when a dependency graph is inconsistent."""


class ValueResolutionError(MultiError):
    """Raised when one or more values can't be resolved."""


class ValueReferenceError(KpkgException):
    """Raised when a value reference can't be resolved."""


class CyclicValueReferenceError(ValueReferenceError):
    """Raised when package value references form a cycle."""

    def __init__(self, chain: list[str]) -> None:
        super().__init__(f"cyclic value reference: {' -> '.join(chain)}")
        self.chain = chain


class ValueValidationError(MultiError):
    """Raised when resolved values don't match their definitions."""


class InvalidTemplateError(InputException):
    """Raised when a value template can't be rendered into JSON."""


class PatchError(KpkgException):
    """Raised when a patch can't be applied to an object."""


class DependencyConflictError(KpkgException):
    """Raised when a change would leave the dependency graph in conflict."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"dependency conflict: {detail}")
        self.detail = detail


class TransitiveDependencyError(KpkgException):
    """Raised when a package requires transitive dependencies to be installed."""

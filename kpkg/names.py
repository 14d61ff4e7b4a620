"""Names of objects derived from other objects."""

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .manifest import BasePackage, Component, PackageInfoTemplate

__all__ = [
    "package_info_name",
    "component_name",
]

_INVALID_NAME_CHARS = re.compile(r"[^\w.-]+")


def package_info_name_for(template: "PackageInfoTemplate") -> str:
    """Return the name of the PackageInfo for a package info template.

    Packages that install the same package version from the same repository
    share one PackageInfo.
    """
    parts = [template.name, template.version]
    if template.repository_name:
        parts.insert(0, template.repository_name)
    return _escape("--".join(parts))


def package_info_name(pkg: "BasePackage") -> str:
    """Return the name of the PackageInfo used by a package."""
    return package_info_name_for(pkg.spec.package_info)


def component_name(parent_name: str, cmp: "Component") -> str:
    """Return the name a component of a package is installed as."""
    return f"{parent_name}-{cmp.installed_name or cmp.name}"


def _escape(name: str) -> str:
    return _INVALID_NAME_CHARS.sub("--", name).lower()

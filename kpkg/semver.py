"""Semantic versions and version ranges of packages.

Versions may carry a leading `v` and may be partial (`1.2`). Ranges use the
syntax common in package manifests: comparisons joined by `,` or whitespace
must all match, alternatives are separated by `||`, and the `^`, `~` and `x`
shorthands are supported. `!=` excludes a version or a wildcard range, `~>`,
`=>` and `=<` are read as `~`, `>=` and `<=`. A pre-release version only
satisfies a range that mentions a pre-release of the same major, minor and
patch version.

Build metadata does not take part in range checks, but it is used when
deciding whether a version is an upgrade: a numeric build is compared as an
integer and a version with build metadata is an upgrade over one without.
"""

from dataclasses import dataclass
import re

import semantic_version

from .exceptions import InvalidVersionError

__all__ = [
    "Version",
    "Constraint",
    "parse_version",
    "parse_constraint",
]

_PARTIAL_VERSION = re.compile(r"^\d+(\.\d+)?$")
_OPERATOR_SPACE = re.compile(r"(!=|>=|<=|>|<|=|\^|~)\s+")
_OPERATOR_ALIASES = {"~>": "~", "=>": ">=", "=<": "<="}
_VERSION_PREFIX = re.compile(r"(?<![\w.])[vV](?=\d)")


@dataclass(frozen=True, eq=False)
class Version:
    """A parsed semantic version that remembers how it was written."""

    original: str
    parsed: semantic_version.Version

    @property
    def metadata(self) -> str:
        """The build metadata of the version."""
        return ".".join(self.parsed.build)

    @property
    def precedence(self) -> semantic_version.Version:
        """The version without build metadata."""
        return self.parsed.truncate("prerelease")

    def is_upgrade_of(self, installed: "Version") -> bool:
        """Return true if this version should replace the installed version."""
        if self.precedence != installed.precedence:
            return self.precedence > installed.precedence
        return _is_upgradable_metadata(installed.metadata, self.metadata)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return (
            self.precedence == other.precedence and self.metadata == other.metadata
        )

    def __hash__(self) -> int:
        return hash((str(self.precedence), self.metadata))

    def __str__(self) -> str:
        return self.original


@dataclass(frozen=True)
class _Range:
    """One alternative of a version range."""

    allowed: semantic_version.NpmSpec
    excluded: tuple[semantic_version.NpmSpec, ...] = ()

    def match(self, version: semantic_version.Version) -> bool:
        return self.allowed.match(version) and not any(
            spec.match(version) for spec in self.excluded
        )


@dataclass(frozen=True)
class Constraint:
    """A parsed version range."""

    original: str
    ranges: tuple[_Range, ...]

    def check(self, version: Version) -> str | None:
        """Return a description of the violation or None if the version matches."""
        if any(r.match(version.parsed) for r in self.ranges):
            return None
        return f"{version} does not satisfy {self.original}"

    def __contains__(self, version: Version) -> bool:
        return self.check(version) is None

    def __str__(self) -> str:
        return self.original


def parse_version(version: str) -> Version:
    """Parse a semantic version."""
    text = version.strip()
    if text[:1] in ("v", "V"):
        text = text[1:]
    try:
        return Version(version, semantic_version.Version(text))
    except ValueError:
        pass
    if _PARTIAL_VERSION.match(text):
        return Version(version, semantic_version.Version.coerce(text))
    raise InvalidVersionError(f"Invalid semantic version: {version!r}")


def parse_constraint(constraint: str) -> Constraint:
    """Parse a version range."""
    try:
        ranges = tuple(_parse_range(part) for part in constraint.split("||"))
    except ValueError as err:
        raise InvalidVersionError(
            f"Invalid version constraint {constraint!r}: {err}"
        ) from err
    return Constraint(constraint, ranges)


def _parse_range(part: str) -> _Range:
    part = part.replace(",", " ")
    for alias, operator in _OPERATOR_ALIASES.items():
        part = part.replace(alias, operator)
    part = _OPERATOR_SPACE.sub(r"\1", part)
    part = _VERSION_PREFIX.sub("", part)
    allowed: list[str] = []
    excluded: list[semantic_version.NpmSpec] = []
    for block in part.split():
        if block.startswith("!="):
            excluded.append(semantic_version.NpmSpec(block[2:]))
        else:
            allowed.append(block)
    return _Range(semantic_version.NpmSpec(" ".join(allowed) or "*"), tuple(excluded))


def _is_upgradable_metadata(installed: str, desired: str) -> bool:
    if installed == desired or not desired:
        return False
    if not installed:
        return True
    if installed.isdigit() and desired.isdigit():
        return int(installed) < int(desired)
    return True

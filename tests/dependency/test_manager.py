"""Tests for validating package dependencies against the cluster."""

from collections.abc import Callable

import pytest

from kpkg.dependency import (
    ComponentMetadata,
    Conflict,
    DependencyManager,
    PackageRef,
    PackageWithVersion,
    Requirement,
    ValidationStatus,
    format_conflicts,
    INSTALLED_AS_DEPENDENCY_ANNOTATION,
)
from kpkg.exceptions import InputException
from kpkg.manifest import BasePackage, Component, Dependency, PackageManifest
from kpkg.repo import RepoAggregator
from kpkg.store import InMemoryStore

APP = PackageManifest(
    name="app", dependencies=[Dependency(name="d", version="^1.2.3")]
)


@pytest.fixture(name="manager")
def manager_fixture(store: InMemoryStore, repos: RepoAggregator) -> DependencyManager:
    return DependencyManager(store, repos)


@pytest.fixture(autouse=True)
def repository(repo_client) -> None:
    """Publish a few versions of package d and e."""
    repo_client.add(
        {"name": "d", "dependencies": [{"name": "e"}]},
        "1.0.0",
        "1.2.1",
        "1.3.0",
        "2.0.0",
    )
    repo_client.add({"name": "e"}, "0.1.0", "0.2.0")


async def test_resolvable(manager: DependencyManager) -> None:
    """Test that missing dependencies are resolved to the highest version."""
    result = await manager.validate("app", "", APP, "1.0.0")
    assert result.status == ValidationStatus.RESOLVABLE
    assert result.requirements == [
        Requirement("d", "1.3.0"),
        Requirement("e", "0.2.0", transitive=True),
    ]
    assert result.conflicts == []


async def test_conflict(
    manager: DependencyManager, install: Callable[..., BasePackage]
) -> None:
    """Test that an installed dependency in the wrong version is a conflict."""
    install("d", "1.2.1")
    result = await manager.validate("app", "", APP, "1.0.0")
    assert result.status == ValidationStatus.CONFLICT
    assert result.conflicts == [
        Conflict(PackageWithVersion("d", "1.2.1"), PackageWithVersion("d", "^1.2.3"))
    ]
    assert format_conflicts(result.conflicts) == "d (required: ^1.2.3, actual: 1.2.1)"


async def test_ok(
    manager: DependencyManager, install: Callable[..., BasePackage]
) -> None:
    """Test that a package with all dependencies installed is valid."""
    install("d", "1.3.0")
    result = await manager.validate("app", "", APP, "1.0.0")
    assert result.status == ValidationStatus.OK
    assert result.requirements == []
    assert result.conflicts == []


async def test_ignores_existing_errors(
    manager: DependencyManager, install: Callable[..., BasePackage]
) -> None:
    """Test that errors of other packages don't fail the validation."""
    install(
        "other",
        "1.0.0",
        PackageManifest(name="other", dependencies=[Dependency(name="missing")]),
    )
    result = await manager.validate(
        "standalone", "", PackageManifest(name="standalone"), "1.0.0"
    )
    assert result.status == ValidationStatus.OK


async def test_missing_manifest(manager: DependencyManager) -> None:
    """Test that a manifest is required."""
    with pytest.raises(InputException):
        await manager.validate("app", "", None, "1.0.0")


async def test_components(manager: DependencyManager, repo_client) -> None:
    """Test that components are required in the namespace of the package."""
    repo_client.add({"name": "db"}, "1.0.0", "1.1.0")
    manifest = PackageManifest(
        name="app",
        default_namespace="apps",
        components=[Component(name="db", version="^1.0.0")],
    )
    result = await manager.validate("app", "", manifest, "1.0.0")
    assert result.status == ValidationStatus.RESOLVABLE
    assert result.requirements == [
        Requirement(
            "db", "1.1.0", component=ComponentMetadata(name="app-db", namespace="apps")
        )
    ]


async def test_new_graph(
    manager: DependencyManager, install: Callable[..., BasePackage]
) -> None:
    """Test building the graph from the packages in the store."""
    install("app", "1.0.0", APP)
    install("d", "1.3.0", annotations={INSTALLED_AS_DEPENDENCY_ANNOTATION: "true"})
    install("web", "2.0.0", namespace="team")

    graph = await manager.new_graph()
    assert graph.manual(PackageRef("app"))
    assert not graph.manual(PackageRef("d"))
    assert graph.dependencies(PackageRef("app")) == [PackageRef("d")]
    assert str(graph.version(PackageRef("web", "team"))) == "2.0.0"


async def test_validate_delete(
    manager: DependencyManager, install: Callable[..., BasePackage]
) -> None:
    """Test deleting a package that is still required."""
    install("app", "1.0.0", APP)
    install("d", "1.3.0")

    result = await manager.validate_delete("d", "")
    assert result.status == ValidationStatus.CONFLICT
    assert len(result.conflicts) == 1
    assert result.conflicts[0].required == PackageWithVersion("d", "*")

    result = await manager.validate_delete("app", "")
    assert result.status == ValidationStatus.OK
    assert result.pruned == [PackageRef("app")]


async def test_validate_delete_prunes_dependencies(
    manager: DependencyManager, install: Callable[..., BasePackage]
) -> None:
    """Test that automatically installed dependencies are pruned with a package."""
    install("app", "1.0.0", APP)
    install("d", "1.3.0", annotations={INSTALLED_AS_DEPENDENCY_ANNOTATION: "true"})

    result = await manager.validate_delete("app", "")
    assert result.status == ValidationStatus.OK
    assert result.pruned == [PackageRef("app"), PackageRef("d")]


async def test_conflict_of_installed_package(
    manager: DependencyManager, install: Callable[..., BasePackage]
) -> None:
    """Test that the conflicts of a package already in the cluster are reported."""
    install("d", "1.2.1")
    install("app", "1.0.0", APP)
    result = await manager.validate("app", "", APP, "1.0.0")
    assert result.status == ValidationStatus.CONFLICT
    assert format_conflicts(result.conflicts) == "d (required: ^1.2.3, actual: 1.2.1)"

    # Errors of other packages existed before and are ignored
    result = await manager.validate(
        "standalone", "", PackageManifest(name="standalone"), "1.0.0"
    )
    assert result.status == ValidationStatus.OK

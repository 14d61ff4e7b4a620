"""Tests for resolving package values."""

from collections.abc import Callable

import pytest

from kpkg.exceptions import CyclicValueReferenceError, ValueResolutionError
from kpkg.manifest import (
    BasePackage,
    ConfigMap,
    ObjectKeyValueSource,
    ObjectMeta,
    PackageValueSource,
    Secret,
    ValueConfiguration,
    ValueReference,
)
from kpkg.store import InMemoryStore
from kpkg.values import ValueResolver


def config_map_ref(name: str, key: str) -> ValueConfiguration:
    return ValueConfiguration(
        value_from=ValueReference(
            config_map_ref=ObjectKeyValueSource(name=name, key=key, namespace="default")
        )
    )


def secret_ref(name: str, key: str) -> ValueConfiguration:
    return ValueConfiguration(
        value_from=ValueReference(
            secret_ref=ObjectKeyValueSource(name=name, key=key, namespace="default")
        )
    )


def package_ref(name: str, value: str) -> ValueConfiguration:
    return ValueConfiguration(
        value_from=ValueReference(package_ref=PackageValueSource(name=name, value=value))
    )


@pytest.fixture(name="resolver")
def resolver_fixture(store: InMemoryStore) -> ValueResolver:
    store.create(
        ConfigMap(
            metadata=ObjectMeta(name="settings", namespace="default"),
            data={"host": "example.com"},
        )
    )
    store.create(
        Secret(
            metadata=ObjectMeta(name="credentials", namespace="default"),
            data={"password": "dGVzdA==", "broken": "not base64!"},
        )
    )
    return ValueResolver(store)


def test_literal(resolver: ValueResolver) -> None:
    """Test that literal values are returned as is."""
    assert resolver.resolve({"replicas": ValueConfiguration(value="3")}) == {
        "replicas": "3"
    }


def test_config_map_and_secret(resolver: ValueResolver) -> None:
    """Test resolving references to a ConfigMap and a Secret."""
    assert resolver.resolve(
        {
            "host": config_map_ref("settings", "host"),
            "password": secret_ref("credentials", "password"),
        }
    ) == {"host": "example.com", "password": "test"}


def test_errors_are_aggregated(resolver: ValueResolver) -> None:
    """Test that every failing value is reported."""
    with pytest.raises(ValueResolutionError) as exc_info:
        resolver.resolve(
            {
                "host": config_map_ref("settings", "missing"),
                "other": config_map_ref("missing", "host"),
                "password": secret_ref("credentials", "broken"),
                "empty": ValueConfiguration(),
                "ok": ValueConfiguration(value="1"),
            }
        )
    errors = exc_info.value.errors
    assert len(errors) == 4
    message = str(exc_info.value)
    assert "cannot resolve value host" in message
    assert "no such key: missing" in message
    assert "cannot resolve value other" in message
    assert "missing not found" in message
    assert "not valid base64" in message
    assert "cannot resolve empty value" in message


def test_package_reference(
    resolver: ValueResolver, install: Callable[..., BasePackage]
) -> None:
    """Test resolving a value configured on another package."""
    install("database", "1.0.0", values={"port": "5432"})
    assert resolver.resolve_value(package_ref("database", "port")) == "5432"

    with pytest.raises(ValueResolutionError, match="no such key: host"):
        resolver.resolve({"host": package_ref("database", "host")})
    with pytest.raises(ValueResolutionError, match="ClusterPackage/missing not found"):
        resolver.resolve({"host": package_ref("missing", "host")})


def test_cyclic_package_reference(
    store: InMemoryStore,
    resolver: ValueResolver,
    install: Callable[..., BasePackage],
) -> None:
    """Test that a reference chain leading back to itself is an error."""
    first = install("first", "1.0.0")
    first.spec.values["x"] = package_ref("second", "y")
    store.update(first)
    second = install("second", "1.0.0")
    second.spec.values["y"] = package_ref("first", "x")
    store.update(second)

    with pytest.raises(CyclicValueReferenceError) as exc_info:
        resolver.resolve_value(package_ref("first", "x"))
    assert exc_info.value.chain == ["first.x", "second.y", "first.x"]


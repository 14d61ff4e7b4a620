"""Resolution of user supplied value configurations into concrete values.

A value is either a literal or a reference to a key of a `ConfigMap`, a key of
a `Secret` (base64 decoded) or a value configured on another package. Package
references are followed recursively; a reference chain that leads back to a
value already being resolved is reported as a cycle.
"""

import logging

from kpkg.exceptions import (
    CyclicValueReferenceError,
    KpkgException,
    ValueReferenceError,
    ValueResolutionError,
)
from kpkg.manifest import (
    BasePackage,
    ClusterPackage,
    ConfigMap,
    NamedResource,
    ObjectKeyValueSource,
    Package,
    PackageValueSource,
    Secret,
    ValueConfiguration,
    ValueReference,
)
from kpkg.store import Store

__all__ = [
    "ValueResolver",
]

_LOGGER = logging.getLogger(__name__)


class ValueResolver:
    """Resolves value configurations using objects from the store."""

    def __init__(self, store: Store) -> None:
        """Initialize ValueResolver."""
        self._store = store

    def resolve(self, values: dict[str, ValueConfiguration]) -> dict[str, str]:
        """Resolve all values.

        Every value is resolved independently and all failures are reported
        together in one ValueResolutionError.
        """
        resolved: dict[str, str] = {}
        errors: list[Exception] = []
        for name, config in values.items():
            try:
                resolved[name] = self.resolve_value(config)
            except KpkgException as err:
                errors.append(ValueReferenceError(f"cannot resolve value {name}: {err}"))
        if errors:
            raise ValueResolutionError(errors)
        return resolved

    def resolve_value(
        self, config: ValueConfiguration, _chain: list[str] | None = None
    ) -> str:
        """Resolve a single value configuration."""
        if config.value is not None:
            return config.value
        if config.value_from is not None:
            return self._resolve_reference(config.value_from, _chain or [])
        raise ValueReferenceError("cannot resolve empty value")

    def _resolve_reference(self, ref: ValueReference, chain: list[str]) -> str:
        if ref.config_map_ref is not None:
            return self._resolve_config_map_ref(ref.config_map_ref)
        if ref.secret_ref is not None:
            return self._resolve_secret_ref(ref.secret_ref)
        if ref.package_ref is not None:
            return self._resolve_package_ref(ref.package_ref, chain)
        raise ValueReferenceError("cannot resolve empty reference")

    def _resolve_config_map_ref(self, ref: ObjectKeyValueSource) -> str:
        try:
            config_map = self._store.get(
                NamedResource(ConfigMap.kind, ref.namespace, ref.name), ConfigMap
            )
            if ref.key not in config_map.data:
                raise ValueReferenceError(f"no such key: {ref.key}")
            return config_map.data[ref.key]
        except KpkgException as err:
            raise ValueReferenceError(
                f"cannot resolve reference to ConfigMap {ref.name}.{ref.namespace}: {err}"
            ) from err

    def _resolve_secret_ref(self, ref: ObjectKeyValueSource) -> str:
        try:
            secret = self._store.get(
                NamedResource(Secret.kind, ref.namespace, ref.name), Secret
            )
            if ref.key not in secret.data:
                raise ValueReferenceError(f"no such key: {ref.key}")
            return secret.decoded(ref.key)
        except KpkgException as err:
            raise ValueReferenceError(
                f"cannot resolve reference to Secret {ref.name}.{ref.namespace}: {err}"
            ) from err

    def _resolve_package_ref(self, ref: PackageValueSource, chain: list[str]) -> str:
        link = f"{ref.namespace}/{ref.name}.{ref.value}" if ref.namespace else f"{ref.name}.{ref.value}"
        if link in chain:
            raise CyclicValueReferenceError(chain + [link])
        try:
            pkg: BasePackage
            if ref.namespace:
                pkg = self._store.get(
                    NamedResource(Package.kind, ref.namespace, ref.name), Package
                )
            else:
                pkg = self._store.get(
                    NamedResource(ClusterPackage.kind, None, ref.name), ClusterPackage
                )
            if (config := pkg.spec.values.get(ref.value)) is None:
                raise ValueReferenceError(f"no such key: {ref.value}")
            return self.resolve_value(config, chain + [link])
        except CyclicValueReferenceError:
            raise
        except KpkgException as err:
            raise ValueReferenceError(
                f"cannot resolve reference to value {ref.value} in Package {ref.name}: {err}"
            ) from err


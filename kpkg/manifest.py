"""Representation of the objects managed by the package operator.

This includes the custom resources (`Package`, `ClusterPackage`, `PackageInfo`,
`PackageRepository`), the core objects values are read from (`ConfigMap`,
`Secret`), arbitrary objects created by manifest adapters (`RawObject`) and the
package manifest published in a repository (`PackageManifest`).

Objects are parsed from the raw kubernetes representation with `parse_doc` and
serialized back with `to_doc`.
"""

import base64
import binascii
from dataclasses import dataclass, field
from enum import StrEnum
import logging
from typing import Any, ClassVar, TypeVar

import yaml
from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig
from mashumaro.exceptions import MissingField, InvalidFieldValue

from .exceptions import InputException

__all__ = [
    "NamedResource",
    "ObjectMeta",
    "OwnerReference",
    "Condition",
    "ConditionStatus",
    "OwnedResourceRef",
    "ValueConfiguration",
    "Package",
    "ClusterPackage",
    "PackageInfo",
    "PackageRepository",
    "ConfigMap",
    "Secret",
    "RawObject",
    "PackageManifest",
    "ValueDefinition",
    "parse_raw_obj",
]

_LOGGER = logging.getLogger(__name__)


DOMAIN = "packages.kpkg.dev"
API_VERSION = f"{DOMAIN}/v1alpha1"
PACKAGE_KIND = "Package"
CLUSTER_PACKAGE_KIND = "ClusterPackage"
PACKAGE_INFO_KIND = "PackageInfo"
PACKAGE_REPOSITORY_KIND = "PackageRepository"
CONFIG_MAP_KIND = "ConfigMap"
SECRET_KIND = "Secret"


def _check_version(doc: dict[str, Any], version: str) -> None:
    """Assert that the resource has the specified version."""
    if not (api_version := doc.get("apiVersion")):
        raise InputException(f"Invalid object missing apiVersion: {doc}")
    if not api_version.startswith(version):
        raise InputException(f"Invalid object expected '{version}': {doc}")


def split_api_version(api_version: str) -> tuple[str, str]:
    """Split an apiVersion into group and version, the core group is empty."""
    if "/" in api_version:
        group, version = api_version.split("/", 1)
        return group, version
    return "", api_version


def join_api_version(group: str, version: str) -> str:
    """Return the apiVersion for a group and version."""
    if group:
        return f"{group}/{version}"
    return version


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    def yaml(self) -> str:
        """Return a YAML string representation of the object."""
        return yaml.dump(self.to_dict(), sort_keys=False, explicit_start=True)

    class Config(BaseConfig):
        omit_none = True
        omit_default = True
        serialize_by_alias = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


@dataclass
class OwnerReference(BaseManifest):
    """A reference from a dependent object to its owner."""

    api_version: str = field(metadata=field_options(alias="apiVersion"))
    kind: str
    name: str
    uid: str
    controller: bool = False
    block_owner_deletion: bool = field(
        metadata=field_options(alias="blockOwnerDeletion"), default=False
    )


@dataclass
class ObjectMeta(BaseManifest):
    """Standard object metadata."""

    name: str
    namespace: str | None = None
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    owner_references: list[OwnerReference] = field(
        metadata=field_options(alias="ownerReferences"), default_factory=list
    )
    deletion_timestamp: str | None = field(
        metadata=field_options(alias="deletionTimestamp"), default=None
    )
    """Set by the store when a delete is waiting for finalizers."""

    resource_version: str | None = field(
        metadata=field_options(alias="resourceVersion"), default=None
    )
    """Opaque version used for optimistic concurrency."""

    uid: str | None = None
    generation: int | None = None


class ConditionStatus(StrEnum):
    """Status of a condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass
class Condition(BaseManifest):
    """A status condition of an object."""

    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_transition_time: str | None = field(
        metadata=field_options(alias="lastTransitionTime"), default=None
    )
    observed_generation: int | None = field(
        metadata=field_options(alias="observedGeneration"), default=None
    )


@dataclass
class OwnedResourceRef(BaseManifest):
    """A record of an object created on behalf of a package."""

    kind: str
    name: str
    version: str
    group: str = ""
    namespace: str = ""
    marked_for_deletion: bool = field(
        metadata=field_options(alias="markedForDeletion"), default=False
    )

    @property
    def api_version(self) -> str:
        """The apiVersion of the referenced object."""
        return join_api_version(self.group, self.version)

    @property
    def resource_id(self) -> NamedResource:
        """The store key of the referenced object."""
        return NamedResource(self.kind, self.namespace or None, self.name)

    def refers_to_same(self, other: "OwnedResourceRef") -> bool:
        """Return true if both refer to the same object, ignoring deletion marks."""
        return (
            self.group == other.group
            and self.version == other.version
            and self.kind == other.kind
            and self.name == other.name
            and self.namespace == other.namespace
        )

    def __str__(self) -> str:
        return str(self.resource_id)


@dataclass
class KubeObject(BaseManifest):
    """Base class for objects with a fixed kind."""

    kind: ClassVar[str]
    api_version: ClassVar[str]

    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str | None:
        return self.metadata.namespace or None

    @property
    def resource_id(self) -> NamedResource:
        """The store key of the object."""
        return NamedResource(self.kind, self.namespace, self.name)

    @property
    def deleting(self) -> bool:
        """Return true if the object is waiting for its finalizers."""
        return self.metadata.deletion_timestamp is not None

    @property
    def group(self) -> str:
        return split_api_version(self.api_version)[0]

    @property
    def version(self) -> str:
        return split_api_version(self.api_version)[1]

    @classmethod
    def parse_doc(cls: type["_K"], doc: dict[str, Any]) -> "_K":
        """Parse the object from a raw kubernetes object."""
        _check_version(doc, cls.api_version)
        if doc.get("kind") != cls.kind:
            raise InputException(f"Invalid {cls.kind} has kind {doc.get('kind')}: {doc}")
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls.kind} missing metadata: {doc}")
        if not metadata.get("name"):
            raise InputException(f"Invalid {cls.kind} missing metadata.name: {doc}")
        try:
            return cls.from_dict(doc)
        except (MissingField, InvalidFieldValue, ValueError) as err:
            raise InputException(f"Invalid {cls.kind} {metadata['name']}: {err}") from err

    def to_doc(self) -> dict[str, Any]:
        """Return the raw kubernetes representation of the object."""
        return {"apiVersion": self.api_version, "kind": self.kind, **self.to_dict()}


_K = TypeVar("_K", bound=KubeObject)


class PackageScope(StrEnum):
    """Scope a package can be installed in."""

    CLUSTER = "Cluster"
    NAMESPACED = "Namespaced"


class ValueType(StrEnum):
    """The type of a configurable value."""

    BOOLEAN = "boolean"
    TEXT = "text"
    NUMBER = "number"
    OPTIONS = "options"


@dataclass
class HelmManifest(BaseManifest):
    """A helm chart installed by a package."""

    repository_url: str = field(metadata=field_options(alias="repositoryUrl"))
    """The URL of the helm repository."""

    chart_name: str = field(metadata=field_options(alias="chartName"))
    """The name of the chart within the helm repository."""

    chart_version: str = field(metadata=field_options(alias="chartVersion"))
    """The version of the chart."""

    values: dict[str, Any] | None = None
    """Values used for the helm release."""


@dataclass
class KustomizeManifest(BaseManifest):
    """A kustomization installed by a package."""


@dataclass
class PlainManifest(BaseManifest):
    """A URL of plain kubernetes objects installed by a package."""

    url: str

    default_namespace: str | None = field(
        metadata=field_options(alias="defaultNamespace"), default=None
    )
    """Namespace used for namespaced objects that don't specify one."""


@dataclass
class Dependency(BaseManifest):
    """A package required by another package."""

    name: str
    """The name of the required package."""

    version: str | None = None
    """An optional version range the required package must satisfy."""


@dataclass
class Component(BaseManifest):
    """A package installed as a part of another package."""

    name: str
    """The name of the component package."""

    installed_name: str | None = field(
        metadata=field_options(alias="installedName"), default=None
    )
    """Overrides the suffix of the name the component is installed as."""

    version: str | None = None
    """An optional version range the component must satisfy."""


@dataclass
class ValueDefinitionMetadata(BaseManifest):
    """Human readable information about a value."""

    label: str | None = None
    description: str | None = None
    hints: list[str] = field(default_factory=list)


@dataclass
class ValueDefinitionConstraints(BaseManifest):
    """Constraints a value must satisfy."""

    required: bool = False
    min: int | None = None
    max: int | None = None
    min_length: int | None = field(
        metadata=field_options(alias="minLength"), default=None
    )
    max_length: int | None = field(
        metadata=field_options(alias="maxLength"), default=None
    )
    pattern: str | None = None


@dataclass
class PartialJsonPatch(BaseManifest):
    """A json patch operation without a value."""

    op: str
    path: str


@dataclass
class TypedObjectReference(BaseManifest):
    """A reference to a specific object in the cluster."""

    kind: str
    name: str
    api_group: str | None = field(
        metadata=field_options(alias="apiGroup"), default=None
    )
    """The group and version of the object, e.g. `apps/v1`."""

    namespace: str | None = None


@dataclass
class ValueDefinitionTarget(BaseManifest):
    """Where a value is patched into.

    Exactly one of `resource` or `chart_name` is set.
    """

    patch: PartialJsonPatch
    resource: TypedObjectReference | None = None
    chart_name: str | None = field(
        metadata=field_options(alias="chartName"), default=None
    )
    value_template: str | None = field(
        metadata=field_options(alias="valueTemplate"), default=None
    )
    """Template that turns the raw value into the JSON value to patch."""


@dataclass
class ValueDefinition(BaseManifest):
    """A value a user may configure for a package."""

    type: ValueType
    metadata: ValueDefinitionMetadata = field(default_factory=ValueDefinitionMetadata)
    default_value: str | None = field(
        metadata=field_options(alias="defaultValue"), default=None
    )
    options: list[str] = field(default_factory=list)
    constraints: ValueDefinitionConstraints = field(
        default_factory=ValueDefinitionConstraints
    )
    targets: list[ValueDefinitionTarget] = field(default_factory=list)


@dataclass
class PackageManifest(BaseManifest):
    """The installable content of a package version."""

    name: str
    """The name of the package."""

    scope: PackageScope | None = None
    """Scope of the package, cluster scoped when unset."""

    short_description: str | None = field(
        metadata=field_options(alias="shortDescription"), default=None
    )

    helm: HelmManifest | None = None
    kustomize: KustomizeManifest | None = None
    manifests: list[PlainManifest] = field(default_factory=list)

    value_definitions: dict[str, ValueDefinition] = field(
        metadata=field_options(alias="valueDefinitions"), default_factory=dict
    )
    """Values a user may configure, keyed by name."""

    default_namespace: str | None = field(
        metadata=field_options(alias="defaultNamespace"), default=None
    )

    dependencies: list[Dependency] = field(default_factory=list)
    """Packages this package requires."""

    components: list[Component] = field(default_factory=list)
    """Packages installed as part of this package."""

    @property
    def namespace_scoped(self) -> bool:
        """Return true if the package is installed into a namespace."""
        return self.scope == PackageScope.NAMESPACED

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "PackageManifest":
        """Parse a PackageManifest from a raw document."""
        if not isinstance(doc, dict):
            raise InputException(f"Invalid package manifest: {doc}")
        if not doc.get("name"):
            raise InputException(f"Invalid package manifest missing name: {doc}")
        try:
            return cls.from_dict(doc)
        except (MissingField, InvalidFieldValue, ValueError) as err:
            raise InputException(
                f"Invalid package manifest {doc['name']}: {err}"
            ) from err

    @classmethod
    def parse_yaml(cls, content: str) -> "PackageManifest":
        """Parse a serialized package manifest."""
        try:
            doc = yaml.safe_load(content)
        except yaml.YAMLError as err:
            raise InputException(f"Invalid package manifest yaml: {err}") from err
        return cls.parse_doc(doc)


@dataclass
class ObjectKeyValueSource(BaseManifest):
    """Selects a key of a ConfigMap or Secret."""

    name: str
    key: str
    namespace: str | None = None


@dataclass
class PackageValueSource(BaseManifest):
    """Selects a value configured on another package."""

    name: str
    """The name of the ClusterPackage, or Package when namespace is set."""

    value: str
    """The name of the value on the referenced package."""

    namespace: str | None = None


@dataclass
class ValueReference(BaseManifest):
    """Reference to a value stored elsewhere.

    Exactly one of the fields is set.
    """

    config_map_ref: ObjectKeyValueSource | None = field(
        metadata=field_options(alias="configMapRef"), default=None
    )
    secret_ref: ObjectKeyValueSource | None = field(
        metadata=field_options(alias="secretRef"), default=None
    )
    package_ref: PackageValueSource | None = field(
        metadata=field_options(alias="packageRef"), default=None
    )


@dataclass
class ValueConfiguration(BaseManifest):
    """A user supplied value, either a literal or a reference."""

    value: str | None = None
    value_from: ValueReference | None = field(
        metadata=field_options(alias="valueFrom"), default=None
    )


@dataclass
class PackageInfoTemplate(BaseManifest):
    """Selects the package and version to install."""

    name: str
    version: str
    repository_name: str | None = field(
        metadata=field_options(alias="repositoryName"), default=None
    )


@dataclass
class PackageSpec(BaseManifest):
    """Desired state of a package."""

    package_info: PackageInfoTemplate = field(
        metadata=field_options(alias="packageInfo")
    )
    values: dict[str, ValueConfiguration] = field(default_factory=dict)
    suspend: bool = False


@dataclass
class PackageStatus(BaseManifest):
    """Observed state of a package."""

    version: str | None = None
    """The version of the package that was installed successfully."""

    conditions: list[Condition] = field(default_factory=list)
    owned_resources: list[OwnedResourceRef] = field(
        metadata=field_options(alias="ownedResources"), default_factory=list
    )
    owned_package_infos: list[OwnedResourceRef] = field(
        metadata=field_options(alias="ownedPackageInfos"), default_factory=list
    )
    owned_packages: list[OwnedResourceRef] = field(
        metadata=field_options(alias="ownedPackages"), default_factory=list
    )


@dataclass
class BasePackage(KubeObject):
    """Shared implementation of Package and ClusterPackage."""

    spec: PackageSpec
    status: PackageStatus = field(default_factory=PackageStatus)

    @property
    def namespace_scoped(self) -> bool:
        return self.kind == PACKAGE_KIND

    @property
    def conditions(self) -> list[Condition]:
        return self.status.conditions


@dataclass
class Package(BasePackage):
    """A package installed into a namespace."""

    kind: ClassVar[str] = PACKAGE_KIND
    api_version: ClassVar[str] = API_VERSION


@dataclass
class ClusterPackage(BasePackage):
    """A package installed cluster wide."""

    kind: ClassVar[str] = CLUSTER_PACKAGE_KIND
    api_version: ClassVar[str] = API_VERSION


@dataclass
class PackageInfoSpec(BaseManifest):
    """Selects the manifest to fetch."""

    name: str
    version: str | None = None
    repository_name: str | None = field(
        metadata=field_options(alias="repositoryName"), default=None
    )


@dataclass
class PackageInfoStatus(BaseManifest):
    """The fetched manifest and fetch conditions."""

    manifest: PackageManifest | None = None
    version: str | None = None
    resolved_url: str | None = field(
        metadata=field_options(alias="resolvedUrl"), default=None
    )
    conditions: list[Condition] = field(default_factory=list)


@dataclass
class PackageInfo(KubeObject):
    """A manifest snapshot of a package version, shared by packages using it."""

    kind: ClassVar[str] = PACKAGE_INFO_KIND
    api_version: ClassVar[str] = API_VERSION

    spec: PackageInfoSpec
    status: PackageInfoStatus = field(default_factory=PackageInfoStatus)

    @property
    def conditions(self) -> list[Condition]:
        return self.status.conditions


@dataclass
class PackageRepositorySpec(BaseManifest):
    """Location of a package repository."""

    url: str
    default: bool = False
    """Marks the default repository of tools that browse packages."""


@dataclass
class PackageRepository(KubeObject):
    """A repository packages are installed from."""

    kind: ClassVar[str] = PACKAGE_REPOSITORY_KIND
    api_version: ClassVar[str] = API_VERSION

    spec: PackageRepositorySpec


@dataclass
class ConfigMap(KubeObject):
    """A ConfigMap is an API object used to store data in key-value pairs."""

    kind: ClassVar[str] = CONFIG_MAP_KIND
    api_version: ClassVar[str] = "v1"

    data: dict[str, str] = field(default_factory=dict)


@dataclass
class Secret(KubeObject):
    """A Secret contains a small amount of sensitive data, base64 encoded."""

    kind: ClassVar[str] = SECRET_KIND
    api_version: ClassVar[str] = "v1"

    data: dict[str, str] = field(default_factory=dict)

    def decoded(self, key: str) -> str:
        """Return the decoded value of a key."""
        try:
            return base64.b64decode(self.data[key], validate=True).decode()
        except (binascii.Error, UnicodeDecodeError) as err:
            raise InputException(
                f"Secret {self.resource_id.namespaced_name} key {key} is not valid base64: {err}"
            ) from err


@dataclass
class RawObject(BaseManifest):
    """An arbitrary kubernetes object, e.g. one created by a manifest adapter."""

    kind: str
    api_version: str = field(metadata=field_options(alias="apiVersion"))
    metadata: ObjectMeta
    content: dict[str, Any] = field(default_factory=dict)
    """All top level fields except apiVersion, kind and metadata."""

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str | None:
        return self.metadata.namespace or None

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(self.kind, self.namespace, self.name)

    @property
    def deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "RawObject":
        """Parse a RawObject from a raw kubernetes object."""
        if not (kind := doc.get("kind")):
            raise InputException(f"Invalid object missing kind: {doc}")
        if not (api_version := doc.get("apiVersion")):
            raise InputException(f"Invalid object missing apiVersion: {doc}")
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid object missing metadata: {doc}")
        if not metadata.get("name"):
            raise InputException(f"Invalid object missing metadata.name: {doc}")
        return cls(
            kind=kind,
            api_version=api_version,
            metadata=ObjectMeta.from_dict(metadata),
            content={
                key: value
                for key, value in doc.items()
                if key not in ("kind", "apiVersion", "metadata")
            },
        )

    def to_doc(self) -> dict[str, Any]:
        """Return the raw kubernetes representation of the object."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": self.metadata.to_dict(),
            **self.content,
        }


AnyObject = KubeObject | RawObject

_KINDS: dict[str, type[KubeObject]] = {
    cls.kind: cls
    for cls in (
        Package,
        ClusterPackage,
        PackageInfo,
        PackageRepository,
        ConfigMap,
        Secret,
    )
}


def parse_raw_obj(obj: dict[str, Any]) -> AnyObject:
    """Parse a raw kubernetes object into a typed object when the kind is known."""
    if not (kind := obj.get("kind")):
        raise InputException(f"Invalid object missing kind: {obj}")
    if not (api_version := obj.get("apiVersion")):
        raise InputException(f"Invalid object missing apiVersion: {obj}")
    if (cls := _KINDS.get(kind)) is not None and api_version.startswith(
        cls.api_version
    ):
        return cls.parse_doc(obj)
    return RawObject.parse_doc(obj)

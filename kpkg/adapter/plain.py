"""Manifest adapter installing plain kubernetes objects.

The objects of every `manifests` entry are fetched, placed into a namespace,
labeled as managed, owned by the package and patched with the package values
before they are written to the store.
"""

from abc import ABC, abstractmethod
import logging
from pathlib import Path
from typing import Any
from urllib.parse import urljoin, urlparse

import aiofiles
import yaml

from kpkg.exceptions import InputException, KpkgException, RepositoryError
from kpkg.manifest import (
    AnyObject,
    BasePackage,
    DOMAIN,
    OwnedResourceRef,
    PackageInfo,
    PlainManifest,
    RawObject,
    parse_raw_obj,
)
from kpkg.owners import is_managed, set_managed, set_owner, to_owned_ref
from kpkg.store import Store
from kpkg.values import TargetPatches

from .adapter import AdapterResult, ManifestAdapter

__all__ = [
    "ManifestFetcher",
    "LocalManifestFetcher",
    "PlainManifestAdapter",
]

_LOGGER = logging.getLogger(__name__)

PACKAGE_LABEL = f"{DOMAIN}/package"
INSTANCE_LABEL = f"{DOMAIN}/instance"

CLUSTER_SCOPED_KINDS = {
    "APIService",
    "ClusterPackage",
    "ClusterRole",
    "ClusterRoleBinding",
    "CSIDriver",
    "CustomResourceDefinition",
    "IngressClass",
    "MutatingWebhookConfiguration",
    "Namespace",
    "Node",
    "PackageInfo",
    "PackageRepository",
    "PersistentVolume",
    "PriorityClass",
    "RuntimeClass",
    "StorageClass",
    "ValidatingWebhookConfiguration",
}

WORKLOAD_KINDS = {"Deployment", "StatefulSet"}


def is_namespaced(doc: dict[str, Any]) -> bool:
    """Return true if objects of this kind live in a namespace."""
    return doc.get("kind") not in CLUSTER_SCOPED_KINDS


class ManifestFetcher(ABC):
    """Fetches the objects of a plain manifest."""

    @abstractmethod
    async def fetch(self, url: str) -> list[dict[str, Any]]:
        """Return all objects of the manifest at the url."""


class LocalManifestFetcher(ManifestFetcher):
    """A ManifestFetcher reading multi document YAML files.

    Urls are either `file://` urls or paths, relative paths are resolved
    against the root directory.
    """

    def __init__(self, root: Path | None = None) -> None:
        """Initialize LocalManifestFetcher."""
        self._root = root or Path.cwd()

    async def fetch(self, url: str) -> list[dict[str, Any]]:
        parsed = urlparse(url)
        if parsed.scheme == "file":
            path = Path(parsed.path)
        elif parsed.scheme:
            raise RepositoryError(f"Unsupported manifest url {url}")
        else:
            path = self._root / url
        _LOGGER.debug("Reading manifest %s", path)
        try:
            async with aiofiles.open(str(path)) as manifest_file:
                content = await manifest_file.read()
        except OSError as err:
            raise RepositoryError(f"Unable to read manifest {path}: {err}") from err
        try:
            return [doc for doc in yaml.safe_load_all(content) if doc]
        except yaml.YAMLError as err:
            raise InputException(f"Invalid manifest {path}: {err}") from err


def _resolve_url(info: PackageInfo, url: str) -> str:
    """Resolve a url relative to the location of the package manifest."""
    parsed = urlparse(url)
    if parsed.scheme or parsed.netloc or url.startswith("/") or not info.status.resolved_url:
        return url
    return urljoin(info.status.resolved_url, url)


def _ready_replicas(obj: AnyObject) -> bool:
    if not isinstance(obj, RawObject):
        return True
    spec = obj.content.get("spec") or {}
    status = obj.content.get("status") or {}
    ready = status.get("readyReplicas") or 0
    if (replicas := spec.get("replicas")) is not None:
        return ready == replicas
    return ready > 0


class PlainManifestAdapter(ManifestAdapter):
    """Installs the `manifests` of a package."""

    def __init__(self, fetcher: ManifestFetcher) -> None:
        """Initialize PlainManifestAdapter."""
        self._fetcher = fetcher
        self._store: Store | None = None

    def controller_init(self, store: Store) -> None:
        self._store = store

    @property
    def store(self) -> Store:
        if self._store is None:
            raise KpkgException("PlainManifestAdapter used before controller_init")
        return self._store

    async def reconcile(
        self, pkg: BasePackage, info: PackageInfo, patches: TargetPatches
    ) -> AdapterResult:
        """Apply all plain manifests and check the readiness of workloads."""
        if (manifest := info.status.manifest) is None:
            raise InputException("manifest must not be nil")
        owned: list[OwnedResourceRef] = []
        for plain in manifest.manifests:
            owned.extend(
                await self._reconcile_plain_manifest(
                    pkg, info, plain, manifest.default_namespace, patches
                )
            )

        not_ready = []
        for ref in owned:
            if ref.kind not in WORKLOAD_KINDS:
                continue
            obj = self.store.get(ref.resource_id, RawObject)
            if not _ready_replicas(obj):
                not_ready.append(ref.resource_id.namespaced_name)
        if not_ready:
            return AdapterResult.waiting(
                f"{len(not_ready)} resources not ready: {','.join(not_ready)}", owned
            )
        return AdapterResult.ready(f"{len(owned)} manifests reconciled", owned)

    async def _reconcile_plain_manifest(
        self,
        pkg: BasePackage,
        info: PackageInfo,
        plain: PlainManifest,
        default_namespace: str | None,
        patches: TargetPatches,
    ) -> list[OwnedResourceRef]:
        url = _resolve_url(info, plain.url)
        docs = await self._fetcher.fetch(url)
        _LOGGER.debug("Fetched %d objects from %s", len(docs), url)

        if pkg.namespace_scoped:
            for doc in docs:
                if is_namespaced(doc):
                    doc.setdefault("metadata", {})["namespace"] = pkg.namespace
        elif namespace := (plain.default_namespace or default_namespace):
            docs = _with_default_namespace(docs, namespace)

        # Patches select objects by their name in the manifest
        for doc in docs:
            patches.apply_to_resource(doc)

        if pkg.namespace_scoped:
            _prefix_names(pkg, docs)

        owned: list[OwnedResourceRef] = []
        for doc in docs:
            obj = parse_raw_obj(doc)
            self._apply(pkg, obj)
            owned.append(to_owned_ref(obj))
            _LOGGER.debug("Applied %s for %s", obj.resource_id, pkg.resource_id)
        return owned

    def _apply(self, pkg: BasePackage, obj: AnyObject) -> None:
        """Create or update an object, taking ownership unless it is unmanaged."""
        existing = self.store.get_object(obj.resource_id, type(obj))
        if existing is None or is_managed(existing.metadata):
            set_managed(obj.metadata)
            set_owner(obj.metadata, pkg)
        if existing is None:
            self.store.create(obj)
            return
        obj.metadata.resource_version = None
        obj.metadata.labels = {**existing.metadata.labels, **obj.metadata.labels}
        obj.metadata.annotations = {
            **existing.metadata.annotations,
            **obj.metadata.annotations,
        }
        obj.metadata.finalizers = existing.metadata.finalizers
        obj.metadata.owner_references = existing.metadata.owner_references + [
            ref
            for ref in obj.metadata.owner_references
            if all(ref.uid != other.uid for other in existing.metadata.owner_references)
        ]
        if isinstance(obj, RawObject) and isinstance(existing, RawObject):
            # The status is owned by the cluster, not by the manifest
            if "status" not in obj.content and "status" in existing.content:
                obj.content["status"] = existing.content["status"]
        if _unchanged(existing, obj):
            _LOGGER.debug("Object %s is up to date", obj.resource_id)
            return
        self.store.update(obj)


def _unchanged(existing: AnyObject, obj: AnyObject) -> bool:
    """Return true if applying the object would not change the stored object."""
    return (
        existing.metadata.labels == obj.metadata.labels
        and existing.metadata.annotations == obj.metadata.annotations
        and existing.metadata.owner_references == obj.metadata.owner_references
        and _body(existing) == _body(obj)
    )


def _body(obj: AnyObject) -> dict[str, Any]:
    return {
        key: value
        for key, value in obj.to_doc().items()
        if key not in ("metadata", "status")
    }


def _with_default_namespace(
    docs: list[dict[str, Any]], namespace: str
) -> list[dict[str, Any]]:
    """Place namespaced objects without a namespace in the default namespace.

    The namespace is created along with the objects when needed.
    """
    required = False
    in_list = False
    for doc in docs:
        metadata = doc.setdefault("metadata", {})
        if doc.get("kind") == "Namespace":
            in_list = in_list or metadata.get("name") == namespace
            continue
        if not is_namespaced(doc):
            continue
        if not metadata.get("namespace"):
            metadata["namespace"] = namespace
        required = required or metadata["namespace"] == namespace
    if required and not in_list:
        namespace_doc = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": namespace}}
        return [namespace_doc, *docs]
    return docs


def _prefix_names(pkg: BasePackage, docs: list[dict[str, Any]]) -> None:
    """Prefix object names with the package name and label them with the instance.

    This allows installing a package more than once in a namespace.
    """
    for doc in docs:
        metadata = doc.setdefault("metadata", {})
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid object missing metadata.name: {doc}")
        metadata["name"] = f"{pkg.name}-{name}"
        labels = metadata.setdefault("labels", {})
        labels[PACKAGE_LABEL] = pkg.spec.package_info.name
        labels[INSTANCE_LABEL] = pkg.name

"""Interface of the manifest adapters.

A manifest adapter installs one format of package content (plain manifests,
kustomize or helm) and reports whether the installed objects are ready.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import StrEnum

from kpkg.manifest import BasePackage, OwnedResourceRef, PackageInfo, PackageManifest
from kpkg.store import Store
from kpkg.values import TargetPatches

__all__ = [
    "AdapterKind",
    "AdapterStatus",
    "AdapterResult",
    "ManifestAdapter",
    "required_adapters",
]


class AdapterKind(StrEnum):
    """The formats a package manifest can contain."""

    MANIFESTS = "manifests"
    KUSTOMIZE = "kustomize"
    HELM = "helm"


class AdapterStatus(StrEnum):
    READY = "Ready"
    WAITING = "Waiting"
    FAILED = "Failed"


@dataclass
class AdapterResult:
    """The outcome of an adapter reconcile."""

    status: AdapterStatus
    message: str = ""
    owned_resources: list[OwnedResourceRef] = field(default_factory=list)

    @classmethod
    def ready(
        cls, message: str, owned_resources: list[OwnedResourceRef] | None = None
    ) -> "AdapterResult":
        return cls(AdapterStatus.READY, message, owned_resources or [])

    @classmethod
    def waiting(
        cls, message: str, owned_resources: list[OwnedResourceRef] | None = None
    ) -> "AdapterResult":
        return cls(AdapterStatus.WAITING, message, owned_resources or [])

    @classmethod
    def failed(
        cls, message: str, owned_resources: list[OwnedResourceRef] | None = None
    ) -> "AdapterResult":
        return cls(AdapterStatus.FAILED, message, owned_resources or [])

    @property
    def is_ready(self) -> bool:
        return self.status == AdapterStatus.READY

    @property
    def is_waiting(self) -> bool:
        return self.status == AdapterStatus.WAITING

    @property
    def is_failed(self) -> bool:
        return self.status == AdapterStatus.FAILED


class ManifestAdapter(ABC):
    """Installs one format of package content."""

    @abstractmethod
    def controller_init(self, store: Store) -> None:
        """Prepare the adapter for use with the store it installs objects into."""

    @abstractmethod
    async def reconcile(
        self, pkg: BasePackage, info: PackageInfo, patches: TargetPatches
    ) -> AdapterResult:
        """Install the content of the package manifest held by the PackageInfo.

        Errors are raised, an AdapterResult describes the state of the
        installed objects.
        """


def required_adapters(manifest: PackageManifest) -> list[AdapterKind]:
    """Return the adapters needed to install a manifest, in installation order."""
    kinds: list[AdapterKind] = []
    if manifest.manifests:
        kinds.append(AdapterKind.MANIFESTS)
    if manifest.kustomize is not None:
        kinds.append(AdapterKind.KUSTOMIZE)
    if manifest.helm is not None:
        kinds.append(AdapterKind.HELM)
    return kinds

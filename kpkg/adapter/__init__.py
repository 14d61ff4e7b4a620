"""Manifest adapters install the content of a package.

The reconciler selects the adapters needed for a manifest by the sections it
contains. Only the plain manifest adapter is implemented here, helm and
kustomize adapters are provided by the embedding application.
"""

from .adapter import (
    AdapterKind,
    AdapterResult,
    AdapterStatus,
    ManifestAdapter,
    required_adapters,
)
from .plain import LocalManifestFetcher, ManifestFetcher, PlainManifestAdapter

__all__ = [
    "AdapterKind",
    "AdapterResult",
    "AdapterStatus",
    "ManifestAdapter",
    "required_adapters",
    "LocalManifestFetcher",
    "ManifestFetcher",
    "PlainManifestAdapter",
]

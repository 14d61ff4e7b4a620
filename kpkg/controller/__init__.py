"""Controllers reconciling packages towards their declared state.

The `PackageReconciler` installs Package and ClusterPackage objects, the
`PackageInfoReconciler` fetches the manifests they are installed from and the
`WorkQueue` schedules reconciles as objects in the store change.
"""

from .package import PACKAGE_DELETION_FINALIZER, PackageReconciler
from .package_info import PackageInfoReconciler
from .queue import WorkQueue
from .requeue import ReconcileResult

__all__ = [
    "PACKAGE_DELETION_FINALIZER",
    "PackageReconciler",
    "PackageInfoReconciler",
    "WorkQueue",
    "ReconcileResult",
]

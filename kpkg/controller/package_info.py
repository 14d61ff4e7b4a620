"""Reconciler fetching the manifest of a PackageInfo from its repository."""

import logging

from kpkg.config import PackageControllerConfig
from kpkg.exceptions import KpkgException
from kpkg.manifest import NamedResource, PackageInfo
from kpkg.repo import RepoAggregator
from kpkg.store import Store

from . import conditions
from .conditions import Reason
from .requeue import ReconcileResult, always, never

__all__ = [
    "PackageInfoReconciler",
]

_LOGGER = logging.getLogger(__name__)


class PackageInfoReconciler:
    """Keeps the manifest of every PackageInfo in sync with its repository."""

    def __init__(
        self,
        store: Store,
        repos: RepoAggregator,
        config: PackageControllerConfig | None = None,
    ) -> None:
        """Initialize PackageInfoReconciler."""
        self.store = store
        self.repos = repos
        self.config = config or PackageControllerConfig()

    async def reconcile(self, resource_id: NamedResource) -> ReconcileResult:
        """Fetch the manifest if it is missing or the version changed.

        A failed fetch is retried after the error interval.
        """
        if (info := self.store.get_object(resource_id, PackageInfo)) is None:
            return never()
        if info.deleting:
            return never()

        changed = conditions.set_initial(info.conditions)
        sync_error: KpkgException | None = None
        if info.status.manifest is None or info.status.version != info.spec.version:
            try:
                await self._sync(info)
                changed = True
            except KpkgException as err:
                sync_error = err
                changed = conditions.set_failed(
                    info.conditions, Reason.SYNC_FAILED, f"failed to fetch manifest: {err}"
                ) or changed

        if changed:
            try:
                self.store.update_status(info)
            except KpkgException as err:
                _LOGGER.warning("Status update of %s failed: %s", resource_id, err)
                return always(self.config, err)
        return always(self.config, sync_error)

    async def _sync(self, info: PackageInfo) -> None:
        _LOGGER.info(
            "Fetching manifest %s version %s for %s",
            info.spec.name,
            info.spec.version,
            info.name,
        )
        repo = await self.repos.repo_for_package(
            info.spec.name, info.spec.repository_name
        )
        manifest = await self.repos.client.get_manifest(
            repo.spec.url, info.spec.name, info.spec.version or ""
        )

        info.status.manifest = manifest
        info.status.version = info.spec.version
        info.status.resolved_url = self.repos.client.manifest_url(
            repo.spec.url, info.spec.name, info.spec.version or ""
        )
        conditions.set_ready(info.conditions, Reason.SYNC_COMPLETED, "PackageInfo is ready")

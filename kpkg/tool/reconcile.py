"""Command to reconcile packages against a local package repository.

The cluster objects are loaded into an in memory store and every package is
reconciled until no object changes anymore. Objects installed by the plain
manifest adapter are written to the same store.
"""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
import pathlib
from typing import Any, cast

from kpkg.adapter import AdapterKind, LocalManifestFetcher, PlainManifestAdapter
from kpkg.config import WorkQueueConfig
from kpkg.controller import PackageInfoReconciler, PackageReconciler, WorkQueue
from kpkg.controller.conditions import ConditionType, find_condition
from kpkg.manifest import CLUSTER_PACKAGE_KIND, PACKAGE_INFO_KIND, PACKAGE_KIND

from . import common
from .format import PrintFormatter, YamlFormatter

_LOGGER = logging.getLogger(__name__)

WIDE_COLUMNS = ["kind", "namespace", "name", "version", "ready", "reason", "message"]


class ReconcileAction:
    """Reconcile packages until they settle and print their status."""

    @classmethod
    def register(
        cls,
        subparsers: SubParsersAction,  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "reconcile",
                help="Reconcile packages with a local package repository",
                description=(
                    "Reconcile the packages in the input files until they are "
                    "ready or can't make progress and print their status"
                ),
            ),
        )
        common.add_common_flags(args)
        args.add_argument(
            "--output",
            "-o",
            choices=["wide", "yaml"],
            default="wide",
            help="Output format of the package status",
        )
        args.add_argument(
            "--max-concurrency",
            type=int,
            default=WorkQueueConfig.max_concurrency,
            help="Maximum number of reconciles running at the same time",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(
        self,
        path: list[pathlib.Path],
        repo: pathlib.Path,
        output: str,
        max_concurrency: int,
        **kwargs: Any,
    ) -> None:
        """Async Action implementation."""
        store, repos = await common.bootstrap(path, repo)
        adapters = {AdapterKind.MANIFESTS: PlainManifestAdapter(LocalManifestFetcher(repo))}
        package_reconciler = PackageReconciler(store, repos, adapters)
        info_reconciler = PackageInfoReconciler(store, repos)

        queue = WorkQueue(WorkQueueConfig(max_concurrency=max_concurrency))
        queue.register(PACKAGE_KIND, package_reconciler.reconcile)
        queue.register(CLUSTER_PACKAGE_KIND, package_reconciler.reconcile)
        queue.register(PACKAGE_INFO_KIND, info_reconciler.reconcile)
        remove = queue.watch(store)
        try:
            await queue.run_until_idle()
        finally:
            remove()
        _LOGGER.info("Finished after %d reconciles", queue.reconcile_count)

        packages = common.list_packages(store)
        if output == "yaml":
            YamlFormatter().print([pkg.to_doc() for pkg in packages])
            return

        rows = []
        for pkg in packages:
            ready = find_condition(pkg.conditions, ConditionType.READY)
            rows.append(
                {
                    "kind": pkg.kind,
                    "namespace": pkg.namespace,
                    "name": pkg.name,
                    "version": pkg.status.version,
                    "ready": ready.status if ready else None,
                    "reason": ready.reason if ready else None,
                    "message": ready.message if ready else None,
                }
            )
        PrintFormatter(WIDE_COLUMNS).print(rows)

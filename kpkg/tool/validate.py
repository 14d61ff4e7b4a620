"""Command to run admission validation for packages."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
import pathlib
from typing import Any, cast

from kpkg.exceptions import KpkgException
from kpkg.webhook import PackageValidator

from . import common
from .format import PrintFormatter

_LOGGER = logging.getLogger(__name__)


class ValidateAction:
    """Validate that every package could be created in the cluster."""

    @classmethod
    def register(
        cls,
        subparsers: SubParsersAction,  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "validate",
                help="Validate packages with a local package repository",
                description=(
                    "Check the values and dependencies of every package in the "
                    "input files the same way admission validation does"
                ),
            ),
        )
        common.add_common_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(
        self,
        path: list[pathlib.Path],
        repo: pathlib.Path,
        **kwargs: Any,
    ) -> None:
        """Async Action implementation."""
        store, repos = await common.bootstrap(path, repo)
        validator = PackageValidator(store, repos)

        rows = []
        failures = 0
        for pkg in common.list_packages(store):
            result = "ok"
            try:
                await validator.validate_create(pkg)
            except KpkgException as err:
                _LOGGER.debug("Validation of %s failed: %s", pkg.resource_id, err)
                result = str(err)
                failures += 1
            rows.append(
                {
                    "kind": pkg.kind,
                    "namespace": pkg.namespace,
                    "name": pkg.name,
                    "result": result,
                }
            )
        PrintFormatter(["kind", "namespace", "name", "result"]).print(rows)
        if failures:
            raise KpkgException(f"{failures} package(s) failed validation")

"""Common flags and setup for commands working on local cluster objects."""

from argparse import ArgumentParser
import logging
import pathlib

import aiofiles
import yaml

from kpkg.exceptions import InputException
from kpkg.manifest import (
    AnyObject,
    BasePackage,
    ClusterPackage,
    ObjectMeta,
    Package,
    PackageRepository,
    PackageRepositorySpec,
    parse_raw_obj,
)
from kpkg.repo import LocalRepoClient, RepoAggregator
from kpkg.store import InMemoryStore

_LOGGER = logging.getLogger(__name__)

DEFAULT_REPOSITORY_NAME = "local"


def add_common_flags(args: ArgumentParser) -> None:
    """Add flags to read cluster objects and a local package repository."""
    args.add_argument(
        "--path",
        type=pathlib.Path,
        nargs="+",
        required=True,
        help="YAML files with the cluster objects, e.g. packages and config maps",
    )
    args.add_argument(
        "--repo",
        type=pathlib.Path,
        required=True,
        help="Directory of the local package repository",
    )


async def load_objects(paths: list[pathlib.Path]) -> list[AnyObject]:
    """Read all objects from multi document YAML files."""
    objects: list[AnyObject] = []
    for path in paths:
        _LOGGER.debug("Loading objects from %s", path)
        try:
            async with aiofiles.open(str(path)) as input_file:
                content = await input_file.read()
        except OSError as err:
            raise InputException(f"Unable to read {path}: {err}") from err
        try:
            docs = [doc for doc in yaml.safe_load_all(content) if doc]
        except yaml.YAMLError as err:
            raise InputException(f"Invalid YAML in {path}: {err}") from err
        objects.extend(parse_raw_obj(doc) for doc in docs)
    return objects


async def bootstrap(
    paths: list[pathlib.Path], repo: pathlib.Path
) -> tuple[InMemoryStore, RepoAggregator]:
    """Create a store with the objects from the files and the local repository.

    A PackageRepository for the repository directory is added unless the
    files declare repositories themselves.
    """
    store = InMemoryStore()
    objects = await load_objects(paths)
    for obj in objects:
        store.create(obj)
    if not store.list_objects(PackageRepository):
        store.create(
            PackageRepository(
                metadata=ObjectMeta(name=DEFAULT_REPOSITORY_NAME),
                spec=PackageRepositorySpec(url="."),
            )
        )
    return store, RepoAggregator(store, LocalRepoClient(repo))


def list_packages(store: InMemoryStore) -> list[BasePackage]:
    """Return all cluster packages followed by all namespaced packages."""
    return [*store.list_objects(ClusterPackage), *store.list_objects(Package)]

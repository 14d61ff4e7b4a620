"""Configuration of the controllers and the work queue."""

from dataclasses import dataclass
from datetime import timedelta

__all__ = [
    "PackageControllerConfig",
    "WorkQueueConfig",
]


@dataclass
class PackageControllerConfig:
    """Configuration for the package and package info reconcilers."""

    requeue_after_success: timedelta = timedelta(seconds=60)
    """Delay before a successfully reconciled object is reconciled again."""

    requeue_after_error: timedelta = timedelta(seconds=30)
    """Delay before a failed reconcile is retried."""


@dataclass
class WorkQueueConfig:
    """Configuration for the WorkQueue."""

    max_concurrency: int = 4
    """Maximum number of reconciles running at the same time."""

    retry_after_error: timedelta = timedelta(seconds=30)
    """Delay before a reconcile that raised an error is retried."""

"""Result of a reconcile pass."""

from dataclasses import dataclass
from datetime import timedelta
import logging

from kpkg.config import PackageControllerConfig

__all__ = [
    "ReconcileResult",
    "always",
    "on_error",
    "never",
]

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    """Tells the work queue when to reconcile an object again."""

    requeue_after: timedelta | None = None
    """None if the object is only reconciled again after it changes."""

    error: Exception | None = None


def always(config: PackageControllerConfig, err: Exception | None = None) -> ReconcileResult:
    """Requeue after the success or the error interval."""
    if err is not None:
        _LOGGER.info("Error during reconciliation: %s", err)
        return ReconcileResult(config.requeue_after_error, err)
    _LOGGER.debug("Reconciliation finished")
    return ReconcileResult(config.requeue_after_success)


def on_error(config: PackageControllerConfig, err: Exception | None = None) -> ReconcileResult:
    """Requeue only after an error."""
    if err is not None:
        return always(config, err)
    _LOGGER.debug("Reconciliation finished, not requeued")
    return ReconcileResult()


def never(err: Exception | None = None) -> ReconcileResult:
    if err is not None:
        _LOGGER.info("Error during reconciliation, not requeued: %s", err)
    return ReconcileResult(error=err)

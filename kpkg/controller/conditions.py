"""Helpers for the Ready and Failed status conditions.

Both conditions are always set together so that they never contradict each
other. Every setter returns true when the conditions changed and the status
needs to be written back.
"""

from datetime import datetime, timezone
from enum import StrEnum
import logging

from kpkg.manifest import Condition, ConditionStatus

__all__ = [
    "ConditionType",
    "Reason",
    "find_condition",
    "is_condition_true",
    "set_initial",
    "set_unknown",
    "set_ready",
    "set_failed",
]

_LOGGER = logging.getLogger(__name__)


class ConditionType(StrEnum):
    """Condition types set on packages and package infos."""

    READY = "Ready"
    FAILED = "Failed"


class Reason(StrEnum):
    """Reasons used in conditions."""

    SYNC_COMPLETED = "SyncCompleted"
    SYNC_FAILED = "SyncFailed"
    RECONCILING = "Reconciling"
    UP_TO_DATE = "UpToDate"
    UNSUPPORTED_FORMAT = "UnsupportedFormat"
    VALUE_CONFIGURATION_INVALID = "ValueConfigurationInvalid"
    INSTALLATION_SUCCEEDED = "InstallationSucceeded"
    INSTALLATION_FAILED = "InstallationFailed"
    PENDING = "Pending"


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def find_condition(conditions: list[Condition], type_: str) -> Condition | None:
    """Return the condition of the given type."""
    return next((cond for cond in conditions if cond.type == type_), None)


def is_condition_true(conditions: list[Condition], type_: str) -> bool:
    return (cond := find_condition(conditions, type_)) is not None and (
        cond.status == ConditionStatus.TRUE
    )


def set_status_condition(conditions: list[Condition], new: Condition) -> bool:
    """Add or update a condition in place.

    The transition time only changes when the status changes.
    """
    if (existing := find_condition(conditions, new.type)) is None:
        new.last_transition_time = new.last_transition_time or _now()
        conditions.append(new)
        return True
    changed = False
    if existing.status != new.status:
        existing.status = new.status
        existing.last_transition_time = new.last_transition_time or _now()
        changed = True
    if existing.reason != new.reason:
        existing.reason = new.reason
        changed = True
    if existing.message != new.message:
        existing.message = new.message
        changed = True
    if new.observed_generation is not None and (
        existing.observed_generation != new.observed_generation
    ):
        existing.observed_generation = new.observed_generation
        changed = True
    return changed


def _set(
    conditions: list[Condition],
    ready: ConditionStatus,
    failed: ConditionStatus,
    reason: str,
    message: str,
) -> bool:
    changed = set_status_condition(
        conditions,
        Condition(type=str(ConditionType.READY), status=ready, reason=str(reason), message=message),
    )
    return (
        set_status_condition(
            conditions,
            Condition(type=str(ConditionType.FAILED), status=failed, reason=str(reason), message=message),
        )
        or changed
    )


def set_initial(conditions: list[Condition]) -> bool:
    """Set both conditions to Unknown if there are no conditions yet."""
    if conditions:
        return False
    return set_unknown(conditions, Reason.RECONCILING, "Starting reconciliation")


def set_unknown(conditions: list[Condition], reason: str, message: str) -> bool:
    _LOGGER.debug("Set condition to unknown: %s", message)
    return _set(conditions, ConditionStatus.UNKNOWN, ConditionStatus.UNKNOWN, reason, message)


def set_ready(conditions: list[Condition], reason: str, message: str) -> bool:
    _LOGGER.debug("Set condition to ready: %s", message)
    return _set(conditions, ConditionStatus.TRUE, ConditionStatus.FALSE, reason, message)


def set_failed(conditions: list[Condition], reason: str, message: str) -> bool:
    """Set Ready to False and Failed to True."""
    changed = _set(conditions, ConditionStatus.FALSE, ConditionStatus.TRUE, reason, message)
    if changed:
        _LOGGER.error("Set condition to failed (%s): %s", reason, message)
    return changed

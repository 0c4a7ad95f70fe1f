from __future__ import annotations

from enum import Enum

from wave_controller.src.workload import FINALIZER, Workload


class WorkloadState(str, Enum):
    """Lifecycle of a workload from the controller's point of view.

    ``UNMANAGED``
        No finalizer: either the workload never opted in or cleanup is done.
    ``MANAGED``
        Finalizer present, opted in, not being deleted.
    ``DELETING``
        Finalizer present and a deletion timestamp is set; owner references
        must be cleared before the finalizer is released.
    """

    UNMANAGED = "Unmanaged"
    MANAGED = "Managed"
    DELETING = "Deleting"


def has_finalizer(workload: Workload) -> bool:
    return FINALIZER in workload.finalizers


def add_finalizer(workload: Workload) -> bool:
    """Append the finalizer if missing. Returns True when the object changed."""
    finalizers = workload.finalizers
    if FINALIZER in finalizers:
        return False
    finalizers.append(FINALIZER)
    workload.finalizers = finalizers
    return True


def remove_finalizer(workload: Workload) -> bool:
    """Remove the finalizer, keeping every other finalizer in its original order."""
    finalizers = workload.finalizers
    kept = [f for f in finalizers if f != FINALIZER]
    if len(kept) == len(finalizers):
        return False
    workload.finalizers = kept
    return True


def to_be_deleted(workload: Workload) -> bool:
    return workload.deletion_timestamp is not None


def workload_state(workload: Workload) -> WorkloadState:
    """Derive the state from live fields.

    A workload seen for the first time with the finalizer already present
    (e.g. after a controller restart) resumes as ``MANAGED`` or
    ``DELETING``.  An opted-out workload still carrying the finalizer is
    reported as ``MANAGED`` until its cleanup has run.
    """
    if not has_finalizer(workload):
        return WorkloadState.UNMANAGED
    if to_be_deleted(workload):
        return WorkloadState.DELETING
    return WorkloadState.MANAGED

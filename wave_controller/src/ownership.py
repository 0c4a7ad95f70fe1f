from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from kubernetes.client import CoreV1Api
from kubernetes.client.exceptions import ApiException

from wave_controller.src.children import (
    CHILD_KINDS,
    ConfigReference,
    list_children,
    read_child,
    replace_child,
)
from wave_controller.src.errors import ChildNotFoundError, ConflictRetriesExhaustedError
from wave_controller.src.kube import is_conflict, is_not_found
from wave_controller.src.metrics import METRICS
from wave_controller.src.workload import Workload

LOGGER = logging.getLogger(__name__)


@dataclass
class OwnershipResult:
    """Children whose owner references were changed during one reconcile."""

    added: list[tuple[str, str]] = field(default_factory=list)
    removed: list[tuple[str, str]] = field(default_factory=list)

    @property
    def writes(self) -> int:
        return len(self.added) + len(self.removed)


def has_owner(obj: Any, uid: str | None) -> bool:
    metadata = getattr(obj, "metadata", None)
    refs = getattr(metadata, "owner_references", None) or []
    return any(ref.uid == uid for ref in refs)


class OwnershipReconciler:
    """Keeps ConfigMap/Secret owner references in line with a workload's pod template.

    The set of children linked to a workload is always rediscovered from
    the cluster by listing both child kinds and filtering on the owner
    UID, never taken from a cached previous result.  A child may be shared
    by several workloads, so writes only ever append or drop the entry for
    one UID and leave other owners' references exactly as they were.

    Every write is a read-modify-replace carrying the read
    ``resourceVersion``.  A ``409 Conflict`` means another writer got there
    first; the mutation is re-applied to a fresh read up to
    ``max_conflict_retries`` times before giving up.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        max_conflict_retries: int = 5,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_conflict_retries < 1:
            raise ValueError("max_conflict_retries must be >= 1")
        self.core_api = core_api
        self.max_conflict_retries = max_conflict_retries
        self.logger = logger or LOGGER

    def linked_children(self, namespace: str, uid: str | None) -> set[tuple[str, str]]:
        """Return ``(kind, name)`` of every child in *namespace* owned by *uid*."""
        linked: set[tuple[str, str]] = set()
        for kind in CHILD_KINDS:
            for obj in list_children(self.core_api, kind, namespace):
                if has_owner(obj, uid):
                    linked.add((kind, obj.metadata.name))
        return linked

    def reconcile(
        self, workload: Workload, references: Iterable[ConfigReference]
    ) -> OwnershipResult:
        """Link exactly the referenced children to *workload*.

        Additions run before removals so a crash part-way leaves extra
        links (cleaned up next time) rather than missing ones.  A required
        child that does not exist raises :class:`ChildNotFoundError`; an
        optional one is skipped until it appears.
        """
        result = OwnershipResult()
        desired = {ref.id: ref for ref in references}
        previous = self.linked_children(workload.namespace, workload.uid)

        for child_id in sorted(set(desired) - previous):
            ref = desired[child_id]
            try:
                if self._add_owner(workload, ref.kind, ref.name):
                    result.added.append(child_id)
            except ChildNotFoundError:
                if not ref.optional:
                    raise
                self.logger.info(
                    "Optional %s %s/%s does not exist yet; not linking it to %s",
                    ref.kind,
                    workload.namespace,
                    ref.name,
                    workload.key,
                )

        for kind, name in sorted(previous - set(desired)):
            if self._remove_owner(workload, kind, name):
                result.removed.append((kind, name))

        return result

    def remove_all(self, workload: Workload) -> OwnershipResult:
        """Drop this workload's owner reference from every child that carries one."""
        result = OwnershipResult()
        for kind, name in sorted(self.linked_children(workload.namespace, workload.uid)):
            if self._remove_owner(workload, kind, name):
                result.removed.append((kind, name))
        return result

    def _add_owner(self, workload: Workload, kind: str, name: str) -> bool:
        owner_ref = workload.owner_reference()

        def mutate(obj: Any) -> bool:
            if has_owner(obj, workload.uid):
                return False
            refs = list(obj.metadata.owner_references or [])
            refs.append(owner_ref)
            obj.metadata.owner_references = refs
            return True

        changed = self._update_with_retry(
            kind, workload.namespace, name, mutate, missing_ok=False
        )
        if changed:
            METRICS.owner_reference_updates_total.labels(action="add").inc()
            self.logger.info(
                "Added owner reference for %s to %s %s/%s",
                workload.key,
                kind,
                workload.namespace,
                name,
            )
        return changed

    def _remove_owner(self, workload: Workload, kind: str, name: str) -> bool:
        def mutate(obj: Any) -> bool:
            refs = list(obj.metadata.owner_references or [])
            kept = [ref for ref in refs if ref.uid != workload.uid]
            if len(kept) == len(refs):
                return False
            obj.metadata.owner_references = kept
            return True

        changed = self._update_with_retry(
            kind, workload.namespace, name, mutate, missing_ok=True
        )
        if changed:
            METRICS.owner_reference_updates_total.labels(action="remove").inc()
            self.logger.info(
                "Removed owner reference for %s from %s %s/%s",
                workload.key,
                kind,
                workload.namespace,
                name,
            )
        return changed

    def _update_with_retry(
        self,
        kind: str,
        namespace: str,
        name: str,
        mutate: Callable[[Any], bool],
        *,
        missing_ok: bool,
    ) -> bool:
        """Apply *mutate* to a fresh read of the child and write it back.

        Returns True when a write was committed, False when *mutate* found
        nothing to change (or the child is gone and *missing_ok*).
        """
        for attempt in range(1, self.max_conflict_retries + 1):
            try:
                obj = read_child(self.core_api, kind, namespace, name)
            except ApiException as exc:
                if not is_not_found(exc):
                    raise
                if missing_ok:
                    return False
                raise ChildNotFoundError(kind, namespace, name) from exc

            if not mutate(obj):
                return False

            try:
                replace_child(self.core_api, kind, obj)
                return True
            except ApiException as exc:
                if is_not_found(exc):
                    if missing_ok:
                        return False
                    raise ChildNotFoundError(kind, namespace, name) from exc
                if not is_conflict(exc):
                    raise
                METRICS.conflict_retries_total.labels(kind=kind).inc()
                self.logger.info(
                    "Conflict updating %s %s/%s (attempt %d/%d); retrying from a fresh read",
                    kind,
                    namespace,
                    name,
                    attempt,
                    self.max_conflict_retries,
                )

        raise ConflictRetriesExhaustedError(kind, namespace, name, self.max_conflict_retries)

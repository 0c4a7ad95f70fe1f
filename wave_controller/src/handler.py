from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from kubernetes.client import AppsV1Api, CoreV1Api
from kubernetes.client.exceptions import ApiException

from wave_controller.src.children import extract_references, fetch_children
from wave_controller.src.errors import ChildNotFoundError
from wave_controller.src.finalizer import (
    WorkloadState,
    add_finalizer,
    has_finalizer,
    remove_finalizer,
    to_be_deleted,
    workload_state,
)
from wave_controller.src.hashing import calculate_config_hash
from wave_controller.src.kube import EventRecorder, is_not_found
from wave_controller.src.metrics import METRICS
from wave_controller.src.ownership import OwnershipReconciler
from wave_controller.src.workload import (
    CONFIG_HASH_ANNOTATION,
    Workload,
    WorkloadKey,
    is_enabled,
    workload_for_kind,
)

CONFIG_CHANGED_REASON = "ConfigChanged"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconcile of one workload.

    ``writes`` counts every object the reconcile wrote (the workload itself
    and any ConfigMap/Secret whose owner references changed); a settled
    workload reconciles with ``writes == 0``.
    """

    key: WorkloadKey
    state: WorkloadState
    config_hash: str | None = None
    hash_updated: bool = False
    writes: int = 0


class Handler:
    """Level-triggered reconcile of a single workload against live cluster state.

    Each call to :meth:`reconcile` re-reads the workload, its ConfigMaps and
    its Secrets, so repeated or reordered invocations converge to the same
    result.  The steps are:

    1. A workload that no longer exists is a no-op.
    2. A workload being deleted only has its owner references cleared and
       the finalizer released; no hash is computed.
    3. A workload without the opt-in annotation is cleaned up if it still
       carries the finalizer, and any config hash annotation is removed.
    4. Otherwise the finalizer is ensured, owner references are reconciled,
       and the pod template hash annotation is rewritten when the content
       of the referenced children changed, which makes the workload's own
       controller roll its pods.

    Errors propagate to the caller, which is expected to retry the key with
    backoff.  Nothing needs rolling back because every step is idempotent.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        ownership: OwnershipReconciler | None = None,
        recorder: EventRecorder | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.apps_api = apps_api
        self.ownership = ownership or OwnershipReconciler(core_api)
        self.recorder = recorder or EventRecorder(core_api)
        self.logger = logger or logging.getLogger(__name__)

    def reconcile(self, key: WorkloadKey) -> ReconcileResult:
        started = time.monotonic()
        try:
            result = self._reconcile(key)
        except Exception:
            METRICS.reconcile_total.labels(kind=key.kind, result="error").inc()
            raise
        finally:
            METRICS.reconcile_duration_seconds.labels(kind=key.kind).observe(
                time.monotonic() - started
            )
        METRICS.reconcile_total.labels(kind=key.kind, result="success").inc()
        return result

    def _reconcile(self, key: WorkloadKey) -> ReconcileResult:
        workload_cls = workload_for_kind(key.kind)
        try:
            workload = workload_cls.read(self.apps_api, key.namespace, key.name)
        except ApiException as exc:
            if is_not_found(exc):
                self.logger.debug("%s no longer exists; nothing to reconcile", key)
                return ReconcileResult(key=key, state=WorkloadState.UNMANAGED)
            raise

        if to_be_deleted(workload):
            return self._handle_delete(workload)

        if not is_enabled(workload):
            return self._handle_disabled(workload)

        return self._handle_enabled(workload)

    def _handle_delete(self, workload: Workload) -> ReconcileResult:
        if not has_finalizer(workload):
            return ReconcileResult(key=workload.key, state=WorkloadState.UNMANAGED)

        cleanup = self.ownership.remove_all(workload)
        remove_finalizer(workload)
        workload.replace(self.apps_api)
        self.logger.info(
            "Released finalizer on deleted %s after removing %d owner reference(s)",
            workload.key,
            len(cleanup.removed),
        )
        return ReconcileResult(
            key=workload.key,
            state=WorkloadState.UNMANAGED,
            writes=cleanup.writes + 1,
        )

    def _handle_disabled(self, workload: Workload) -> ReconcileResult:
        writes = 0
        changed = False

        if has_finalizer(workload):
            cleanup = self.ownership.remove_all(workload)
            writes += cleanup.writes
            remove_finalizer(workload)
            changed = True
            self.logger.info(
                "%s opted out; removed %d owner reference(s)",
                workload.key,
                len(cleanup.removed),
            )

        template_annotations = workload.template_annotations
        if CONFIG_HASH_ANNOTATION in template_annotations:
            del template_annotations[CONFIG_HASH_ANNOTATION]
            workload.template_annotations = template_annotations
            changed = True

        if changed:
            workload.replace(self.apps_api)
            writes += 1

        return ReconcileResult(key=workload.key, state=WorkloadState.UNMANAGED, writes=writes)

    def _handle_enabled(self, workload: Workload) -> ReconcileResult:
        writes = 0
        if add_finalizer(workload):
            workload.replace(self.apps_api)
            writes += 1
            self.logger.info("Added finalizer to %s", workload.key)

        references = extract_references(workload.pod_template)
        ownership = self.ownership.reconcile(workload, references)
        writes += ownership.writes

        fetched = fetch_children(self.core_api, workload.namespace, references)
        for ref in fetched.missing:
            if not ref.optional:
                raise ChildNotFoundError(ref.kind, workload.namespace, ref.name)

        config_hash = calculate_config_hash(fetched.children)
        template_annotations = workload.template_annotations
        if template_annotations.get(CONFIG_HASH_ANNOTATION) == config_hash:
            return ReconcileResult(
                key=workload.key,
                state=workload_state(workload),
                config_hash=config_hash,
                writes=writes,
            )

        template_annotations[CONFIG_HASH_ANNOTATION] = config_hash
        workload.template_annotations = template_annotations
        workload.replace(self.apps_api)
        writes += 1
        METRICS.hash_updates_total.labels(kind=workload.kind).inc()
        self.logger.info("Updated config hash of %s to %s", workload.key, config_hash)
        self.recorder.normal(
            workload,
            CONFIG_CHANGED_REASON,
            f"Configuration hash updated to {config_hash}",
        )
        return ReconcileResult(
            key=workload.key,
            state=workload_state(workload),
            config_hash=config_hash,
            hash_updated=True,
            writes=writes,
        )

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import AppsV1Api, CoreV1Api
from kubernetes.client.exceptions import ApiException

from wave_controller.src.children import CONFIG_MAP, SECRET
from wave_controller.src.errors import WaveError
from wave_controller.src.handler import Handler
from wave_controller.src.health import ReconcileStatus
from wave_controller.src.kube import is_forbidden
from wave_controller.src.metrics import METRICS
from wave_controller.src.workload import WORKLOAD_KINDS, WorkloadKey
from wave_controller.src.workqueue import WorkQueue

WATCHED_RESOURCES = (*WORKLOAD_KINDS, CONFIG_MAP, SECRET)
RELEVANT_EVENT_TYPES = frozenset({"ADDED", "MODIFIED", "DELETED"})
THREAD_JOIN_TIMEOUT_SECONDS = 5


class WaveController:
    """Drives :class:`Handler` from Kubernetes watches.

    One list-then-watch loop runs per resource kind (Deployments,
    StatefulSets, ConfigMaps, Secrets).  Workload events enqueue the
    workload itself; ConfigMap and Secret events enqueue every workload
    named in the object's owner references, which is how a content change
    finds its way back to the pods that mount it.  Initial lists and
    re-lists after ``410 Gone`` enqueue everything they return, so missed
    events are caught up by a full level-triggered pass.  Every
    ``resync_period_seconds`` the workloads are listed again, which picks up
    children created after the workload that references them.

    ``workers`` threads pull keys from a :class:`WorkQueue`, which never
    hands the same workload to two workers at once.  A failed reconcile is
    requeued with bounded exponential backoff (1 s to 30 s).

    ``401`` / ``403`` responses are treated as RBAC misconfiguration and
    stop the controller instead of retrying forever.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        handler: Handler,
        namespace: str | None = None,
        workers: int = 2,
        watch_timeout_seconds: int = 300,
        queue: WorkQueue | None = None,
        status: ReconcileStatus | None = None,
        resync_period_seconds: float = 600,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        if resync_period_seconds < 0:
            raise ValueError("resync_period_seconds must be >= 0")
        self.core_api = core_api
        self.apps_api = apps_api
        self.handler = handler
        self.namespace = namespace
        self.workers = workers
        self.watch_timeout_seconds = watch_timeout_seconds
        self.queue = queue if queue is not None else WorkQueue()
        self.status = status if status is not None else ReconcileStatus()
        self.resync_period_seconds = resync_period_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watchers: set[watch.Watch] = set()
        self._watcher_lock = threading.Lock()

    def _list_method(self, resource: str) -> Callable[..., Any]:
        all_namespaces = self.namespace is None
        if resource in WORKLOAD_KINDS:
            return WORKLOAD_KINDS[resource].list_method(self.apps_api, all_namespaces)
        if resource == CONFIG_MAP:
            if all_namespaces:
                return self.core_api.list_config_map_for_all_namespaces
            return self.core_api.list_namespaced_config_map
        if resource == SECRET:
            if all_namespaces:
                return self.core_api.list_secret_for_all_namespaces
            return self.core_api.list_namespaced_secret
        raise ValueError(f"Unsupported resource: {resource!r}")

    def _list_kwargs(self) -> dict[str, str]:
        if self.namespace is None:
            return {}
        return {"namespace": self.namespace}

    @staticmethod
    def keys_for_object(resource: str, obj: Any) -> list[WorkloadKey]:
        """Map a watched object to the workload keys that must be reconciled."""
        metadata = getattr(obj, "metadata", None)
        if metadata is None or not metadata.name:
            return []

        if resource in WORKLOAD_KINDS:
            return [WorkloadKey(resource, metadata.namespace, metadata.name)]

        keys: list[WorkloadKey] = []
        for ref in metadata.owner_references or []:
            if ref.kind in WORKLOAD_KINDS and ref.name:
                keys.append(WorkloadKey(ref.kind, metadata.namespace, ref.name))
        return keys

    def handle_event(self, resource: str, event_type: str, obj: Any) -> list[WorkloadKey]:
        """Enqueue the workloads affected by one watch event and return their keys."""
        if event_type not in RELEVANT_EVENT_TYPES:
            return []
        keys = self.keys_for_object(resource, obj)
        for key in keys:
            self.queue.add(key)
        return keys

    def process_next(self, timeout: float | None = None) -> bool:
        """Reconcile one queued workload.  Returns False if nothing was processed."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False

        try:
            self.handler.reconcile(key)
        except (ApiException, WaveError) as exc:
            self.status.record_failure(key, exc)
            delay = self.queue.add_rate_limited(key)
            METRICS.requeues_total.inc()
            self.logger.warning(
                "Reconcile of %s failed (%s); retrying in %.1fs",
                key,
                exc,
                delay,
            )
        except Exception as exc:
            self.status.record_failure(key, exc)
            delay = self.queue.add_rate_limited(key)
            METRICS.requeues_total.inc()
            self.logger.exception("Unexpected error reconciling %s; retrying in %.1fs", key, delay)
        else:
            self.status.record_success(key)
            self.queue.forget(key)
        finally:
            self.queue.done(key)
        return True

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt open watch streams."""
        self._external_stop.set()
        self.queue.shut_down()
        with self._watcher_lock:
            watchers = list(self._active_watchers)
        for watcher in watchers:
            watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _access_denied(self, resource: str, status: int | None) -> None:
        self.logger.error(
            "Kubernetes API access denied for %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            resource,
            status,
        )
        self.ready.clear()
        self.request_stop()

    def list_and_enqueue(self, resource: str) -> str | None:
        """List every object of *resource*, enqueue affected workloads, return the list version."""
        listing = self._list_method(resource)(**self._list_kwargs())
        for item in getattr(listing, "items", None) or []:
            self.handle_event(resource, "ADDED", item)
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def _initial_sync(self, stop: threading.Event) -> dict[str, str | None] | None:
        """List all watched resources, retrying with jittered backoff until it succeeds."""
        resource_versions: dict[str, str | None] = {}
        backoff_seconds = 1
        while not self._should_stop(stop):
            resource = ""
            try:
                for resource in WATCHED_RESOURCES:
                    if resource not in resource_versions:
                        resource_versions[resource] = self.list_and_enqueue(resource)
                return resource_versions
            except ApiException as exc:
                if is_forbidden(exc):
                    self._access_denied(resource, exc.status)
                    return None
                self.logger.exception("Initial %s list failed", resource)
                METRICS.watch_errors_total.labels(resource=resource).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", resource)
                METRICS.watch_errors_total.labels(resource=resource).inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)
        return None

    def _watch_resource(
        self,
        resource: str,
        resource_version: str | None,
        stop: threading.Event,
    ) -> None:
        # Reset to 1 on every successful stream; doubled on error up to 30 s.
        backoff_seconds = 1
        stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watchers.add(watcher)
            try:
                if stream_count > 0:
                    METRICS.watch_reconnects_total.labels(resource=resource).inc()
                stream_count += 1
                stream = watcher.stream(
                    self._list_method(resource),
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **self._list_kwargs(),
                )
                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version

                    self.handle_event(resource, str(event.get("type", "")), obj)

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: our resourceVersion was compacted away.  Re-list
                # to catch up on anything missed, then resume from the new one.
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", resource)
                    try:
                        resource_version = self.list_and_enqueue(resource)
                    except ApiException as relist_exc:
                        if is_forbidden(relist_exc):
                            self._access_denied(resource, relist_exc.status)
                            return
                        self.logger.exception("Failed to re-list %s after 410", resource)
                        METRICS.watch_errors_total.labels(resource=resource).inc()
                        resource_version = None
                    continue

                if is_forbidden(exc):
                    METRICS.watch_errors_total.labels(resource=resource).inc()
                    self._access_denied(resource, exc.status)
                    return

                self.logger.exception("Kubernetes API %s watch error", resource)
                METRICS.watch_errors_total.labels(resource=resource).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", resource)
                METRICS.watch_errors_total.labels(resource=resource).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    self._active_watchers.discard(watcher)

    def resync_workloads(self) -> None:
        """Re-list every workload kind and enqueue all of them.

        A ConfigMap or Secret created after the workload that references it
        carries no owner reference yet, so its watch event maps to nothing.
        The periodic re-list is what picks such children up.
        """
        for resource in WORKLOAD_KINDS:
            self.list_and_enqueue(resource)

    def _resync_loop(self, stop: threading.Event) -> None:
        while not self._should_stop(stop):
            # Sliced so that request_stop() is noticed without the caller's event.
            deadline = time.monotonic() + self.resync_period_seconds
            while not self._should_stop(stop) and time.monotonic() < deadline:
                stop.wait(timeout=min(1.0, deadline - time.monotonic()))
            if self._should_stop(stop):
                return
            try:
                self.resync_workloads()
            except ApiException as exc:
                if is_forbidden(exc):
                    self._access_denied("resync", exc.status)
                    return
                self.logger.exception("Periodic workload resync failed")
                METRICS.watch_errors_total.labels(resource="resync").inc()
            except Exception:
                self.logger.exception("Unexpected error during periodic workload resync")
                METRICS.watch_errors_total.labels(resource="resync").inc()

    def _run_worker(self, stop: threading.Event) -> None:
        while not self._should_stop(stop):
            self.process_next(timeout=1.0)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Main control loop: list everything, then watch and reconcile until shutdown."""
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_versions = self._initial_sync(stop)
        if resource_versions is None or self._should_stop(stop):
            self.ready.clear()
            return

        threads: list[threading.Thread] = []
        for index in range(self.workers):
            threads.append(
                threading.Thread(
                    target=self._run_worker,
                    args=(stop,),
                    name=f"wave-worker-{index}",
                    daemon=True,
                )
            )
        for resource, resource_version in resource_versions.items():
            threads.append(
                threading.Thread(
                    target=self._watch_resource,
                    args=(resource, resource_version, stop),
                    name=f"wave-watch-{resource.lower()}",
                    daemon=True,
                )
            )
        if self.resync_period_seconds > 0:
            threads.append(
                threading.Thread(
                    target=self._resync_loop,
                    args=(stop,),
                    name="wave-resync",
                    daemon=True,
                )
            )
        for thread in threads:
            thread.start()

        self.ready.set()
        self.logger.info(
            "Controller started with %d worker(s) watching %s",
            self.workers,
            self.namespace or "all namespaces",
        )

        while not self._should_stop(stop):
            stop.wait(timeout=1.0)

        self.request_stop()
        for thread in threads:
            thread.join(timeout=THREAD_JOIN_TIMEOUT_SECONDS)
        self.ready.clear()

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from kubernetes import client, config
from kubernetes.client import AppsV1Api, CoreV1Api
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

EVENT_SOURCE_COMPONENT = "wave"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


def is_not_found(exc: ApiException) -> bool:
    return exc.status == 404


def is_conflict(exc: ApiException) -> bool:
    return exc.status == 409


def is_forbidden(exc: ApiException) -> bool:
    return exc.status in {401, 403}


def utc_now() -> datetime:
    return datetime.now(UTC)


class EventRecorder:
    """Creates core/v1 Events attributed to a workload.

    Failures to create the event are logged and never raised.
    """

    def __init__(self, core_api: CoreV1Api, logger: logging.Logger | None = None) -> None:
        self.core_api = core_api
        self.logger = logger or LOGGER

    def normal(self, workload: Any, reason: str, message: str) -> None:
        self._record(workload, "Normal", reason, message)

    def _record(self, workload: Any, event_type: str, reason: str, message: str) -> None:
        now = utc_now()
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(
                generate_name=f"{workload.name}.",
                namespace=workload.namespace,
            ),
            involved_object=client.V1ObjectReference(
                api_version=workload.api_version,
                kind=workload.kind,
                name=workload.name,
                namespace=workload.namespace,
                uid=workload.uid,
                resource_version=workload.resource_version,
            ),
            reason=reason,
            message=message,
            type=event_type,
            source=client.V1EventSource(component=EVENT_SOURCE_COMPONENT),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self.core_api.create_namespaced_event(namespace=workload.namespace, body=event)
        except ApiException as exc:
            self.logger.warning(
                "Failed to record %s event for %s %s/%s: %s",
                reason,
                workload.kind,
                workload.namespace,
                workload.name,
                exc.reason,
            )

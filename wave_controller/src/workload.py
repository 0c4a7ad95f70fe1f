from __future__ import annotations

from datetime import datetime
from typing import Any, ClassVar, NamedTuple

from kubernetes.client import (
    AppsV1Api,
    V1ObjectMeta,
    V1OwnerReference,
    V1PodTemplateSpec,
)

REQUIRED_ANNOTATION = "wave.pusher.com/update-on-config-change"
CONFIG_HASH_ANNOTATION = "wave.pusher.com/config-hash"
FINALIZER = "wave.pusher.com/finalizer"


class WorkloadKey(NamedTuple):
    """Identity of a workload as carried through the work queue."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind} {self.namespace}/{self.name}"


class Workload:
    """Kind-agnostic view over a live apps/v1 workload object.

    Subclasses bind the wrapped model type to the AppsV1Api calls used to
    read and write it.  Everything else in the engine only talks to this
    interface, so supporting another pod-template kind means adding one
    subclass and registering it in ``WORKLOAD_KINDS``.
    """

    kind: ClassVar[str]
    api_version: ClassVar[str] = "apps/v1"

    def __init__(self, obj: Any) -> None:
        self.obj = obj
        if self.obj.metadata is None:
            self.obj.metadata = V1ObjectMeta()

    @classmethod
    def read(cls, apps_api: AppsV1Api, namespace: str, name: str) -> Workload:
        raise NotImplementedError

    @classmethod
    def list_method(cls, apps_api: AppsV1Api, all_namespaces: bool) -> Any:
        raise NotImplementedError

    def replace(self, apps_api: AppsV1Api) -> None:
        raise NotImplementedError

    @property
    def key(self) -> WorkloadKey:
        return WorkloadKey(self.kind, self.namespace, self.name)

    @property
    def name(self) -> str:
        return self.obj.metadata.name

    @property
    def namespace(self) -> str:
        return self.obj.metadata.namespace

    @property
    def uid(self) -> str | None:
        return self.obj.metadata.uid

    @property
    def resource_version(self) -> str | None:
        return self.obj.metadata.resource_version

    @property
    def deletion_timestamp(self) -> datetime | None:
        return self.obj.metadata.deletion_timestamp

    @property
    def annotations(self) -> dict[str, str]:
        return dict(self.obj.metadata.annotations or {})

    @annotations.setter
    def annotations(self, value: dict[str, str]) -> None:
        self.obj.metadata.annotations = dict(value)

    @property
    def finalizers(self) -> list[str]:
        return list(self.obj.metadata.finalizers or [])

    @finalizers.setter
    def finalizers(self, value: list[str]) -> None:
        self.obj.metadata.finalizers = list(value)

    @property
    def pod_template(self) -> V1PodTemplateSpec:
        if self.obj.spec.template is None:
            self.obj.spec.template = V1PodTemplateSpec()
        return self.obj.spec.template

    @pod_template.setter
    def pod_template(self, value: V1PodTemplateSpec) -> None:
        self.obj.spec.template = value

    @property
    def template_annotations(self) -> dict[str, str]:
        metadata = self.pod_template.metadata
        if metadata is None:
            return {}
        return dict(metadata.annotations or {})

    @template_annotations.setter
    def template_annotations(self, value: dict[str, str]) -> None:
        template = self.pod_template
        if template.metadata is None:
            template.metadata = V1ObjectMeta()
        template.metadata.annotations = dict(value)

    def owner_reference(self) -> V1OwnerReference:
        """Return the owner reference that children of this workload carry.

        Wave never claims to be the controller of a ConfigMap or Secret;
        ``block_owner_deletion`` keeps foreground deletion of the workload
        waiting on its children.
        """
        return V1OwnerReference(
            api_version=self.api_version,
            kind=self.kind,
            name=self.name,
            uid=self.uid,
            controller=False,
            block_owner_deletion=True,
        )


class DeploymentWorkload(Workload):
    kind = "Deployment"

    @classmethod
    def read(cls, apps_api: AppsV1Api, namespace: str, name: str) -> Workload:
        return cls(apps_api.read_namespaced_deployment(name=name, namespace=namespace))

    @classmethod
    def list_method(cls, apps_api: AppsV1Api, all_namespaces: bool) -> Any:
        if all_namespaces:
            return apps_api.list_deployment_for_all_namespaces
        return apps_api.list_namespaced_deployment

    def replace(self, apps_api: AppsV1Api) -> None:
        self.obj = apps_api.replace_namespaced_deployment(
            name=self.name,
            namespace=self.namespace,
            body=self.obj,
        )


class StatefulSetWorkload(Workload):
    kind = "StatefulSet"

    @classmethod
    def read(cls, apps_api: AppsV1Api, namespace: str, name: str) -> Workload:
        return cls(apps_api.read_namespaced_stateful_set(name=name, namespace=namespace))

    @classmethod
    def list_method(cls, apps_api: AppsV1Api, all_namespaces: bool) -> Any:
        if all_namespaces:
            return apps_api.list_stateful_set_for_all_namespaces
        return apps_api.list_namespaced_stateful_set

    def replace(self, apps_api: AppsV1Api) -> None:
        self.obj = apps_api.replace_namespaced_stateful_set(
            name=self.name,
            namespace=self.namespace,
            body=self.obj,
        )


WORKLOAD_KINDS: dict[str, type[Workload]] = {
    DeploymentWorkload.kind: DeploymentWorkload,
    StatefulSetWorkload.kind: StatefulSetWorkload,
}


def workload_for_kind(kind: str) -> type[Workload]:
    try:
        return WORKLOAD_KINDS[kind]
    except KeyError:
        raise ValueError(f"Unsupported workload kind: {kind!r}") from None


def is_enabled(workload: Workload) -> bool:
    """Return True when the workload opted in to config-change restarts."""
    value = workload.annotations.get(REQUIRED_ANNOTATION)
    if value is None:
        return False
    return value == "true"

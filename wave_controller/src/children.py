from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from kubernetes.client import CoreV1Api
from kubernetes.client.exceptions import ApiException

from wave_controller.src.kube import is_not_found

LOGGER = logging.getLogger(__name__)

CONFIG_MAP = "ConfigMap"
SECRET = "Secret"
CHILD_KINDS = (CONFIG_MAP, SECRET)


@dataclass(frozen=True)
class ConfigReference:
    """A ``(kind, name)`` pair referenced from a pod template.

    ``optional`` is carried along for the fetch step but is not part of the
    reference's identity; see :func:`extract_references` for how duplicates
    merge.
    """

    kind: str
    name: str
    optional: bool = field(default=False, compare=False)

    @property
    def id(self) -> tuple[str, str]:
        return (self.kind, self.name)


@dataclass(frozen=True)
class ConfigSource:
    """Resolved content of a live ConfigMap or Secret."""

    kind: str
    name: str
    namespace: str
    data: dict[str, str]
    binary_data: dict[str, str]
    resource_version: str | None = None

    @property
    def id(self) -> tuple[str, str]:
        return (self.kind, self.name)


@dataclass(frozen=True)
class FetchResult:
    children: list[ConfigSource]
    missing: list[ConfigReference]


class _ReferenceCollector:
    def __init__(self) -> None:
        self._refs: dict[tuple[str, str], ConfigReference] = {}

    def add(self, kind: str, name: str | None, optional: bool | None) -> None:
        if not name:
            LOGGER.debug("Skipping %s reference without a name", kind)
            return
        key = (kind, name)
        is_optional = bool(optional)
        existing = self._refs.get(key)
        if existing is not None:
            # A single required use makes the whole reference required.
            is_optional = existing.optional and is_optional
        self._refs[key] = ConfigReference(kind=kind, name=name, optional=is_optional)

    def result(self) -> set[ConfigReference]:
        return set(self._refs.values())


def _mounted_volume_names(containers: Iterable[Any]) -> set[str]:
    names: set[str] = set()
    for container in containers:
        for mount in container.volume_mounts or []:
            if mount.name:
                names.add(mount.name)
    return names


def _collect_volume(collector: _ReferenceCollector, volume: Any) -> None:
    if volume.config_map is not None:
        collector.add(CONFIG_MAP, volume.config_map.name, volume.config_map.optional)
    if volume.secret is not None:
        collector.add(SECRET, volume.secret.secret_name, volume.secret.optional)
    if volume.projected is not None:
        for source in volume.projected.sources or []:
            if source.config_map is not None:
                collector.add(CONFIG_MAP, source.config_map.name, source.config_map.optional)
            if source.secret is not None:
                collector.add(SECRET, source.secret.name, source.secret.optional)


def _collect_container_env(collector: _ReferenceCollector, container: Any) -> None:
    for env_from in container.env_from or []:
        if env_from.config_map_ref is not None:
            ref = env_from.config_map_ref
            collector.add(CONFIG_MAP, ref.name, ref.optional)
        if env_from.secret_ref is not None:
            ref = env_from.secret_ref
            collector.add(SECRET, ref.name, ref.optional)

    for env_var in container.env or []:
        source = env_var.value_from
        if source is None:
            continue
        if source.config_map_key_ref is not None:
            ref = source.config_map_key_ref
            collector.add(CONFIG_MAP, ref.name, ref.optional)
        if source.secret_key_ref is not None:
            ref = source.secret_key_ref
            collector.add(SECRET, ref.name, ref.optional)


def extract_references(pod_template: Any) -> set[ConfigReference]:
    """Return every ConfigMap and Secret the pod template depends on.

    Scans volumes mounted by any container (init containers included),
    ``envFrom`` sources and per-variable ``valueFrom`` key references.
    Volumes that no container mounts do not affect running pods and are
    ignored.  The same object referenced several times yields a single
    entry, which is optional only if every use of it is optional.
    """
    collector = _ReferenceCollector()
    pod_spec = getattr(pod_template, "spec", None)
    if pod_spec is None:
        return collector.result()

    containers = list(pod_spec.init_containers or []) + list(pod_spec.containers or [])
    mounted = _mounted_volume_names(containers)

    for volume in pod_spec.volumes or []:
        if volume.name in mounted:
            _collect_volume(collector, volume)

    for container in containers:
        _collect_container_env(collector, container)

    return collector.result()


def _normalize_mapping(raw: Any) -> dict[str, str]:
    """Coerce ``data``/``binaryData`` into a stable ``dict[str, str]``.

    Anything other than a mapping is treated as empty so that an object of
    unexpected shape contributes empty content instead of failing the hash.
    """
    if not isinstance(raw, dict):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw.items()
        if isinstance(k, str)
    }


def config_source_from_object(kind: str, obj: Any) -> ConfigSource:
    metadata = obj.metadata
    binary_data = getattr(obj, "binary_data", None) if kind == CONFIG_MAP else None
    return ConfigSource(
        kind=kind,
        name=metadata.name,
        namespace=metadata.namespace,
        data=_normalize_mapping(getattr(obj, "data", None)),
        binary_data=_normalize_mapping(binary_data),
        resource_version=metadata.resource_version,
    )


def read_child(core_api: CoreV1Api, kind: str, namespace: str, name: str) -> Any:
    """Read a live ConfigMap or Secret object."""
    if kind == CONFIG_MAP:
        return core_api.read_namespaced_config_map(name=name, namespace=namespace)
    if kind == SECRET:
        return core_api.read_namespaced_secret(name=name, namespace=namespace)
    raise ValueError(f"Unsupported child kind: {kind!r}")


def replace_child(core_api: CoreV1Api, kind: str, obj: Any) -> Any:
    metadata = obj.metadata
    if kind == CONFIG_MAP:
        return core_api.replace_namespaced_config_map(
            name=metadata.name, namespace=metadata.namespace, body=obj
        )
    if kind == SECRET:
        return core_api.replace_namespaced_secret(
            name=metadata.name, namespace=metadata.namespace, body=obj
        )
    raise ValueError(f"Unsupported child kind: {kind!r}")


def list_children(core_api: CoreV1Api, kind: str, namespace: str) -> list[Any]:
    if kind == CONFIG_MAP:
        listing = core_api.list_namespaced_config_map(namespace=namespace)
    elif kind == SECRET:
        listing = core_api.list_namespaced_secret(namespace=namespace)
    else:
        raise ValueError(f"Unsupported child kind: {kind!r}")
    return list(getattr(listing, "items", None) or [])


def fetch_children(
    core_api: CoreV1Api,
    namespace: str,
    references: Iterable[ConfigReference],
) -> FetchResult:
    """Resolve references to live content.

    A reference whose object does not exist is reported in ``missing``
    rather than raised; every other API error propagates.
    """
    children: list[ConfigSource] = []
    missing: list[ConfigReference] = []
    for ref in sorted(references, key=lambda r: r.id):
        try:
            obj = read_child(core_api, ref.kind, namespace, ref.name)
        except ApiException as exc:
            if is_not_found(exc):
                LOGGER.info(
                    "%s %s/%s referenced but not found", ref.kind, namespace, ref.name
                )
                missing.append(ref)
                continue
            raise
        children.append(config_source_from_object(ref.kind, obj))
    return FetchResult(children=children, missing=missing)

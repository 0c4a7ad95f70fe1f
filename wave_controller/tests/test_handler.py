from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiException, V1Container

from wave_controller.src.errors import ChildNotFoundError
from wave_controller.src.finalizer import WorkloadState
from wave_controller.src.handler import Handler
from wave_controller.src.kube import EventRecorder
from wave_controller.src.ownership import OwnershipReconciler
from wave_controller.src.workload import (
    CONFIG_HASH_ANNOTATION,
    FINALIZER,
    REQUIRED_ANNOTATION,
    WorkloadKey,
)
from wave_controller.tests.fakes import (
    NAMESPACE,
    FakeCluster,
    config_map_volume,
    env_from_config_map,
    example_pod_template,
    make_config_map,
    make_deployment,
    make_pod_template,
    make_stateful_set,
    mount,
    seed_children,
)

DEPLOYMENT_KEY = WorkloadKey("Deployment", NAMESPACE, "example")
STATEFUL_SET_KEY = WorkloadKey("StatefulSet", NAMESPACE, "example")
ALL_CHILDREN = {
    ("ConfigMap", "cm1"),
    ("ConfigMap", "cm2"),
    ("ConfigMap", "cm3"),
    ("Secret", "s1"),
    ("Secret", "s2"),
    ("Secret", "s3"),
}


def _handler(cluster: FakeCluster) -> Handler:
    return Handler(core_api=cluster.core, apps_api=cluster.apps)


def _setup(**deployment_kwargs: object) -> tuple[FakeCluster, Handler, str]:
    cluster = FakeCluster()
    seed_children(cluster)
    created = cluster.create(make_deployment(**deployment_kwargs))  # type: ignore[arg-type]
    return cluster, _handler(cluster), created.metadata.uid


def _deployment(cluster: FakeCluster, name: str = "example"):  # type: ignore[no-untyped-def]
    return cluster.get("Deployment", NAMESPACE, name)


def _template_hash(obj) -> str | None:  # type: ignore[no-untyped-def]
    annotations = (obj.spec.template.metadata.annotations or {}) if obj.spec.template.metadata else {}
    return annotations.get(CONFIG_HASH_ANNOTATION)


# ---------------------------------------------------------------------------
# Enabled workloads
# ---------------------------------------------------------------------------


class TestEnabledWorkload:
    def test_adds_owner_references_to_all_children(self) -> None:
        cluster, handler, uid = _setup()

        handler.reconcile(DEPLOYMENT_KEY)

        assert cluster.children_owned_by(uid) == ALL_CHILDREN

    def test_adds_finalizer(self) -> None:
        cluster, handler, _ = _setup()

        result = handler.reconcile(DEPLOYMENT_KEY)

        assert FINALIZER in _deployment(cluster).metadata.finalizers
        assert result.state is WorkloadState.MANAGED

    def test_writes_config_hash_to_pod_template(self) -> None:
        cluster, handler, _ = _setup()

        result = handler.reconcile(DEPLOYMENT_KEY)

        assert result.hash_updated is True
        assert _template_hash(_deployment(cluster)) == result.config_hash

    def test_records_event_when_hash_updated(self) -> None:
        cluster, handler, uid = _setup()

        result = handler.reconcile(DEPLOYMENT_KEY)

        assert len(cluster.events) == 1
        event = cluster.events[0]
        assert event.message == f"Configuration hash updated to {result.config_hash}"
        assert event.reason == "ConfigChanged"
        assert event.type == "Normal"
        assert event.involved_object.kind == "Deployment"
        assert event.involved_object.uid == uid

    def test_second_reconcile_is_a_no_op(self) -> None:
        cluster, handler, _ = _setup()
        first = handler.reconcile(DEPLOYMENT_KEY)
        writes_before = len(cluster.writes)

        second = handler.reconcile(DEPLOYMENT_KEY)

        assert second.writes == 0
        assert second.hash_updated is False
        assert second.config_hash == first.config_hash
        assert len(cluster.writes) == writes_before
        assert len(cluster.events) == 1

    @pytest.mark.parametrize(
        ("kind", "name", "data"),
        [
            ("ConfigMap", "cm1", {"key": "volume-update"}),
            ("ConfigMap", "cm2", {"key": "env-from-update"}),
            ("ConfigMap", "cm3", {"key": "key-ref-update"}),
            ("Secret", "s1", {"key": "dXBkYXRlZA=="}),
            ("Secret", "s2", {"key": "dXBkYXRlZDI="}),
            ("Secret", "s3", {"key": "dXBkYXRlZDM="}),
        ],
    )
    def test_child_update_changes_hash(self, kind: str, name: str, data: dict[str, str]) -> None:
        cluster, handler, _ = _setup()
        original = handler.reconcile(DEPLOYMENT_KEY).config_hash

        cluster.edit(kind, name, data=data)
        updated = handler.reconcile(DEPLOYMENT_KEY)

        assert updated.hash_updated is True
        assert updated.config_hash != original
        assert _template_hash(_deployment(cluster)) == updated.config_hash
        assert len(cluster.events) == 2

    def test_unrelated_object_update_does_not_change_hash(self) -> None:
        cluster, handler, _ = _setup()
        cluster.create(make_config_map("unrelated"))
        original = handler.reconcile(DEPLOYMENT_KEY).config_hash

        cluster.edit("ConfigMap", "unrelated", data={"key": "changed"})
        result = handler.reconcile(DEPLOYMENT_KEY)

        assert result.config_hash == original
        assert result.writes == 0

    def test_metadata_only_child_update_does_not_change_hash(self) -> None:
        cluster, handler, _ = _setup()
        original = handler.reconcile(DEPLOYMENT_KEY).config_hash

        cluster.edit("ConfigMap", "cm1", metadata__labels={"team": "x"})
        result = handler.reconcile(DEPLOYMENT_KEY)

        assert result.config_hash == original
        assert result.hash_updated is False

    def test_removed_child_loses_owner_reference_and_hash_changes(self) -> None:
        cluster, handler, uid = _setup()
        original = handler.reconcile(DEPLOYMENT_KEY).config_hash

        template = example_pod_template()
        template.spec.containers = template.spec.containers[:1]
        template.spec.volumes = [config_map_volume("cm1", "cm1")]
        template.spec.containers[0].volume_mounts = [mount("cm1")]
        cluster.edit("Deployment", "example", spec__template=template)
        result = handler.reconcile(DEPLOYMENT_KEY)

        assert cluster.children_owned_by(uid) == {
            ("ConfigMap", "cm1"),
            ("ConfigMap", "cm2"),
            ("Secret", "s2"),
        }
        assert result.config_hash != original

    def test_missing_required_child_fails_without_writing_hash(self) -> None:
        cluster = FakeCluster()
        cluster.create(make_config_map("cm1"))
        template = make_pod_template(
            containers=[
                V1Container(
                    name="a",
                    env_from=[env_from_config_map("cm1"), env_from_config_map("ghost")],
                )
            ]
        )
        cluster.create(make_deployment(template=template))
        handler = _handler(cluster)

        with pytest.raises(ChildNotFoundError):
            handler.reconcile(DEPLOYMENT_KEY)

        assert _template_hash(_deployment(cluster)) is None
        assert cluster.events == []

    def test_missing_optional_child_is_hashed_as_absent(self) -> None:
        cluster = FakeCluster()
        cluster.create(make_config_map("cm1"))
        with_optional = make_pod_template(
            containers=[
                V1Container(
                    name="a",
                    env_from=[env_from_config_map("cm1"), env_from_config_map("later", optional=True)],
                )
            ]
        )
        cluster.create(make_deployment(template=with_optional))
        handler = _handler(cluster)

        absent = handler.reconcile(DEPLOYMENT_KEY).config_hash

        cluster.create(make_config_map("later"))
        present = handler.reconcile(DEPLOYMENT_KEY)

        assert present.hash_updated is True
        assert present.config_hash != absent
        assert ("ConfigMap", "later") in cluster.children_owned_by(
            _deployment(cluster).metadata.uid
        )

    def test_resumes_with_existing_finalizer_without_rewriting_it(self) -> None:
        cluster, handler, _ = _setup(finalizers=[FINALIZER])

        handler.reconcile(DEPLOYMENT_KEY)

        assert _deployment(cluster).metadata.finalizers == [FINALIZER]

    def test_conflicting_workload_write_propagates(self) -> None:
        cluster, handler, _ = _setup()
        cluster.injected_conflicts[("Deployment", "example")] = 1

        with pytest.raises(ApiException) as excinfo:
            handler.reconcile(DEPLOYMENT_KEY)

        assert excinfo.value.status == 409
        # The next attempt starts from a fresh read and converges.
        result = handler.reconcile(DEPLOYMENT_KEY)
        assert result.hash_updated is True


# ---------------------------------------------------------------------------
# Opting out
# ---------------------------------------------------------------------------


class TestDisabledWorkload:
    def test_does_nothing_without_annotation(self) -> None:
        cluster, handler, uid = _setup(enabled=False)

        result = handler.reconcile(DEPLOYMENT_KEY)

        assert result.writes == 0
        assert result.state is WorkloadState.UNMANAGED
        assert cluster.children_owned_by(uid) == set()
        assert not _deployment(cluster).metadata.finalizers
        assert _template_hash(_deployment(cluster)) is None
        assert cluster.writes == []

    def test_annotation_other_than_true_does_not_enable(self) -> None:
        cluster, handler, uid = _setup(enabled=False, annotations={REQUIRED_ANNOTATION: "false"})

        handler.reconcile(DEPLOYMENT_KEY)

        assert cluster.children_owned_by(uid) == set()
        assert cluster.writes == []

    def test_removing_annotation_cleans_up(self) -> None:
        cluster, handler, uid = _setup(finalizers=["keep.me.around/finalizer"])
        handler.reconcile(DEPLOYMENT_KEY)
        assert cluster.children_owned_by(uid) == ALL_CHILDREN

        cluster.edit("Deployment", "example", metadata__annotations={})
        result = handler.reconcile(DEPLOYMENT_KEY)

        deployment = _deployment(cluster)
        assert cluster.children_owned_by(uid) == set()
        assert deployment.metadata.finalizers == ["keep.me.around/finalizer"]
        assert _template_hash(deployment) is None
        assert result.state is WorkloadState.UNMANAGED

        settled = handler.reconcile(DEPLOYMENT_KEY)
        assert settled.writes == 0

    def test_removes_leftover_hash_annotation_without_finalizer(self) -> None:
        template = example_pod_template()
        template.metadata.annotations = {CONFIG_HASH_ANNOTATION: "stale", "other": "keep"}
        cluster, handler, _ = _setup(enabled=False, template=template)

        result = handler.reconcile(DEPLOYMENT_KEY)

        annotations = _deployment(cluster).spec.template.metadata.annotations
        assert annotations == {"other": "keep"}
        assert result.writes == 1

    def test_shared_child_keeps_other_workloads_link_after_opt_out(self) -> None:
        cluster, handler, first_uid = _setup()
        second_uid = cluster.create(make_deployment("second")).metadata.uid
        handler.reconcile(DEPLOYMENT_KEY)
        handler.reconcile(WorkloadKey("Deployment", NAMESPACE, "second"))

        cluster.edit("Deployment", "example", metadata__annotations={})
        handler.reconcile(DEPLOYMENT_KEY)

        assert cluster.children_owned_by(first_uid) == set()
        assert cluster.children_owned_by(second_uid) == ALL_CHILDREN


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------


class TestDeletion:
    def test_missing_workload_is_a_no_op(self) -> None:
        cluster = FakeCluster()

        result = _handler(cluster).reconcile(DEPLOYMENT_KEY)

        assert result.writes == 0
        assert result.state is WorkloadState.UNMANAGED

    def test_other_read_errors_propagate(self) -> None:
        apps_api = MagicMock()
        apps_api.read_namespaced_deployment.side_effect = ApiException(status=500, reason="boom")
        handler = Handler(core_api=MagicMock(), apps_api=apps_api)

        with pytest.raises(ApiException):
            handler.reconcile(DEPLOYMENT_KEY)

    def test_deletion_clears_owner_references_then_releases_finalizer(self) -> None:
        cluster, handler, uid = _setup()
        handler.reconcile(DEPLOYMENT_KEY)

        cluster.delete("Deployment", NAMESPACE, "example")
        assert cluster.exists("Deployment", NAMESPACE, "example")

        result = handler.reconcile(DEPLOYMENT_KEY)

        assert cluster.children_owned_by(uid) == set()
        assert not cluster.exists("Deployment", NAMESPACE, "example")
        assert result.state is WorkloadState.UNMANAGED
        assert result.hash_updated is False

    def test_deletion_keeps_unrelated_finalizers(self) -> None:
        cluster, handler, uid = _setup(finalizers=["keep.me.around/finalizer"])
        handler.reconcile(DEPLOYMENT_KEY)

        cluster.delete("Deployment", NAMESPACE, "example")
        handler.reconcile(DEPLOYMENT_KEY)

        deployment = _deployment(cluster)
        assert deployment.metadata.finalizers == ["keep.me.around/finalizer"]
        assert deployment.metadata.deletion_timestamp is not None
        assert cluster.children_owned_by(uid) == set()

    def test_deletion_skips_hash_computation(self) -> None:
        cluster, handler, _ = _setup(finalizers=[FINALIZER, "keep.me.around/finalizer"])
        cluster.delete("Deployment", NAMESPACE, "example")
        cluster.edit("ConfigMap", "cm1", data={"key": "changed"})

        handler.reconcile(DEPLOYMENT_KEY)

        assert _template_hash(_deployment(cluster)) is None
        assert cluster.events == []

    def test_deletion_keeps_other_owners_links(self) -> None:
        cluster, handler, first_uid = _setup()
        second_uid = cluster.create(make_deployment("second")).metadata.uid
        handler.reconcile(DEPLOYMENT_KEY)
        handler.reconcile(WorkloadKey("Deployment", NAMESPACE, "second"))

        cluster.delete("Deployment", NAMESPACE, "example")
        handler.reconcile(DEPLOYMENT_KEY)

        assert cluster.children_owned_by(first_uid) == set()
        assert cluster.children_owned_by(second_uid) == ALL_CHILDREN

    def test_deleting_workload_without_finalizer_is_left_alone(self) -> None:
        cluster, handler, _ = _setup(finalizers=["keep.me.around/finalizer"])
        cluster.delete("Deployment", NAMESPACE, "example")

        result = handler.reconcile(DEPLOYMENT_KEY)

        assert result.writes == 0
        assert cluster.writes == []

    def test_crash_between_cleanup_and_finalizer_release_converges(self) -> None:
        cluster, handler, uid = _setup()
        handler.reconcile(DEPLOYMENT_KEY)
        cluster.delete("Deployment", NAMESPACE, "example")
        cluster.injected_conflicts[("Deployment", "example")] = 1

        with pytest.raises(ApiException):
            handler.reconcile(DEPLOYMENT_KEY)
        assert cluster.children_owned_by(uid) == set()
        assert cluster.exists("Deployment", NAMESPACE, "example")

        handler.reconcile(DEPLOYMENT_KEY)
        assert not cluster.exists("Deployment", NAMESPACE, "example")


# ---------------------------------------------------------------------------
# StatefulSet scenario
# ---------------------------------------------------------------------------


def test_stateful_set_scenario() -> None:
    cluster = FakeCluster()
    cluster.create(make_config_map("cm1"))
    cluster.create(make_config_map("cm2"))
    template = make_pod_template(
        containers=[
            V1Container(name="mounts", volume_mounts=[mount("config")]),
            V1Container(name="env", env_from=[env_from_config_map("cm2")]),
        ],
        volumes=[config_map_volume("config", "cm1")],
    )
    uid = cluster.create(make_stateful_set(template=template)).metadata.uid
    handler = _handler(cluster)

    h0 = handler.reconcile(STATEFUL_SET_KEY).config_hash
    assert cluster.children_owned_by(uid) == {("ConfigMap", "cm1"), ("ConfigMap", "cm2")}

    cm1_version = cluster.get("ConfigMap", NAMESPACE, "cm1").metadata.resource_version
    cluster.edit("ConfigMap", "cm2", data={"key": "edited"})
    h1 = handler.reconcile(STATEFUL_SET_KEY).config_hash
    assert h1 != h0
    assert cluster.get("ConfigMap", NAMESPACE, "cm1").metadata.resource_version == cm1_version

    edited = template
    edited.spec.containers = edited.spec.containers[:1]
    cluster.edit("StatefulSet", "example", spec__template=edited)
    h2 = handler.reconcile(STATEFUL_SET_KEY).config_hash

    assert h2 not in {h0, h1}
    assert cluster.children_owned_by(uid) == {("ConfigMap", "cm1")}
    statefulset = cluster.get("StatefulSet", NAMESPACE, "example")
    assert _template_hash(statefulset) == h2


def test_uses_injected_collaborators() -> None:
    cluster = FakeCluster()
    seed_children(cluster)
    cluster.create(make_deployment())
    recorder = MagicMock(spec=EventRecorder)
    handler = Handler(
        core_api=cluster.core,
        apps_api=cluster.apps,
        ownership=OwnershipReconciler(cluster.core, max_conflict_retries=1),
        recorder=recorder,
    )

    result = handler.reconcile(DEPLOYMENT_KEY)

    recorder.normal.assert_called_once()
    args = recorder.normal.call_args.args
    assert args[1] == "ConfigChanged"
    assert args[2] == f"Configuration hash updated to {result.config_hash}"


def test_event_failure_does_not_fail_reconcile() -> None:
    cluster, handler, _ = _setup()

    def broken_create(namespace: str, body: object) -> None:
        raise ApiException(status=500, reason="boom")

    cluster.core.create_namespaced_event = broken_create  # type: ignore[method-assign]

    result = handler.reconcile(DEPLOYMENT_KEY)

    assert result.hash_updated is True

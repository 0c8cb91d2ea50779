from unittest import mock

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from drainsafe import executor as executor_module
from drainsafe.errors import DrainError, ExecutorError
from drainsafe.executor import KubernetesExecutor


def pod(name, namespace="default", owner_kind="ReplicaSet", phase="Running", pod_annotations=None):
    owners = [client.V1OwnerReference(api_version="apps/v1", kind=owner_kind, name="owner", uid="uid")]
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace, owner_references=owners,
                                     annotations=pod_annotations),
        status=client.V1PodStatus(phase=phase),
    )


def pod_list(*pods):
    return client.V1PodList(items=list(pods))


@pytest.fixture
def core_v1():
    return mock.MagicMock()


@pytest.fixture
def kexec(core_v1):
    return KubernetesExecutor(core_v1, poll_interval=0)


def test_cordon_patches_unschedulable(kexec, core_v1):
    kexec.cordon("node-1")
    core_v1.patch_node.assert_called_once_with("node-1", {"spec": {"unschedulable": True}})


def test_uncordon_patches_schedulable(kexec, core_v1):
    kexec.uncordon("node-1")
    core_v1.patch_node.assert_called_once_with("node-1", {"spec": {"unschedulable": False}})


def test_cordon_failure_raises(kexec, core_v1):
    core_v1.patch_node.side_effect = ApiException(status=500, reason="Internal Server Error")
    with pytest.raises(ExecutorError):
        kexec.cordon("node-1")


def test_pods_to_evict_skips_daemonsets_mirrors_and_completed(kexec, core_v1):
    core_v1.list_pod_for_all_namespaces.return_value = pod_list(
        pod("web"),
        pod("agent", owner_kind="DaemonSet"),
        pod("static", pod_annotations={"kubernetes.io/config.mirror": "abc"}),
        pod("job", phase="Succeeded"),
    )
    assert [p.metadata.name for p in kexec.pods_to_evict("node-1")] == ["web"]
    core_v1.list_pod_for_all_namespaces.assert_called_once_with(field_selector="spec.nodeName=node-1")


def test_drain_evicts_with_grace_period(kexec, core_v1):
    core_v1.list_pod_for_all_namespaces.side_effect = [pod_list(pod("web")), pod_list()]
    kexec.drain("node-1", 540)
    core_v1.patch_node.assert_called_once_with("node-1", {"spec": {"unschedulable": True}})
    kwargs = core_v1.create_namespaced_pod_eviction.call_args.kwargs
    assert kwargs["name"] == "web"
    assert kwargs["namespace"] == "default"
    assert kwargs["body"].delete_options.grace_period_seconds == 540


def test_drain_with_nothing_to_evict(kexec, core_v1):
    core_v1.list_pod_for_all_namespaces.return_value = pod_list()
    kexec.drain("node-1", 60)
    core_v1.create_namespaced_pod_eviction.assert_not_called()


def test_already_deleted_pod_is_fine(kexec, core_v1):
    core_v1.list_pod_for_all_namespaces.side_effect = [pod_list(pod("web")), pod_list()]
    core_v1.create_namespaced_pod_eviction.side_effect = ApiException(status=404, reason="Not Found")
    kexec.drain("node-1", 60)


def test_pdb_block_is_retried(kexec, core_v1, monkeypatch):
    monkeypatch.setattr(executor_module, "EVICTION_RETRY_INTERVAL", 0)
    core_v1.list_pod_for_all_namespaces.side_effect = [pod_list(pod("web")), pod_list()]
    core_v1.create_namespaced_pod_eviction.side_effect = [
        ApiException(status=429, reason="Too Many Requests"),
        None,
    ]
    kexec.drain("node-1", 60)
    assert core_v1.create_namespaced_pod_eviction.call_count == 2


def test_pdb_block_past_deadline_fails(kexec, core_v1, monkeypatch):
    monkeypatch.setattr(executor_module, "DRAIN_TIMEOUT_SLACK", 0)
    core_v1.list_pod_for_all_namespaces.return_value = pod_list(pod("web"))
    core_v1.create_namespaced_pod_eviction.side_effect = ApiException(status=429, reason="Too Many Requests")
    with pytest.raises(DrainError):
        kexec.drain("node-1", 0)


def test_eviction_error_fails_drain(kexec, core_v1):
    core_v1.list_pod_for_all_namespaces.return_value = pod_list(pod("web"))
    core_v1.create_namespaced_pod_eviction.side_effect = ApiException(status=500, reason="Internal Server Error")
    with pytest.raises(DrainError):
        kexec.drain("node-1", 60)


def test_drain_times_out_when_pods_linger(kexec, core_v1, monkeypatch):
    monkeypatch.setattr(executor_module, "DRAIN_TIMEOUT_SLACK", 0.05)
    core_v1.list_pod_for_all_namespaces.return_value = pod_list(pod("web"))
    with pytest.raises(DrainError):
        kexec.drain("node-1", 0)

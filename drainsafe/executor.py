"""
Cordon, drain and uncordon primitives

NodeExecutor is the contract the state machine consumes. KubernetesExecutor
implements it against the API server the way `kubectl drain --ignore-daemonsets
--force --delete-emptydir-data --grace-period=N` does: cordon, evict every pod
that is not owned by a DaemonSet or a mirror pod through the eviction
subresource (so PodDisruptionBudgets are honoured), then wait for the pods to
go away.
"""

import time
from typing import List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException
from loguru import logger
from tenacity import RetryError, retry, retry_if_exception, stop_after_delay, wait_fixed
from urllib3.exceptions import HTTPError

from drainsafe.errors import DrainError, ExecutorError

# Extra time on top of the grace period before a drain is declared failed
DRAIN_TIMEOUT_SLACK = 120
EVICTION_RETRY_INTERVAL = 5
POD_POLL_INTERVAL = 5

MIRROR_POD_ANNOTATION = "kubernetes.io/config.mirror"


class NodeExecutor:
    """Imperative node operations. Every method raises ExecutorError on failure."""

    def cordon(self, node_name: str) -> None:
        raise NotImplementedError

    def drain(self, node_name: str, grace_period: int) -> None:
        raise NotImplementedError

    def uncordon(self, node_name: str) -> None:
        raise NotImplementedError


def _blocked_by_pdb(e: BaseException) -> bool:
    # 429 Too Many Requests: eviction would violate a PodDisruptionBudget
    return isinstance(e, ApiException) and e.status == 429


class KubernetesExecutor(NodeExecutor):

    def __init__(self, core_v1: Optional[client.CoreV1Api] = None, poll_interval: float = POD_POLL_INTERVAL):
        self.core_v1 = core_v1 or client.CoreV1Api()
        self.poll_interval = poll_interval

    def _set_unschedulable(self, node_name: str, unschedulable: bool) -> None:
        try:
            self.core_v1.patch_node(node_name, {"spec": {"unschedulable": unschedulable}})
        except (ApiException, HTTPError) as e:
            verb = "cordon" if unschedulable else "uncordon"
            raise ExecutorError(f"failed to {verb} node {node_name}: {e}") from e

    def cordon(self, node_name: str) -> None:
        logger.info(f"Cordoning node: {node_name}")
        self._set_unschedulable(node_name, True)

    def uncordon(self, node_name: str) -> None:
        logger.info(f"Uncordoning node: {node_name}")
        self._set_unschedulable(node_name, False)

    def pods_to_evict(self, node_name: str) -> List[client.V1Pod]:
        """Pods on the node that a drain must remove"""
        try:
            pods = self.core_v1.list_pod_for_all_namespaces(field_selector=f"spec.nodeName={node_name}")
        except (ApiException, HTTPError) as e:
            raise ExecutorError(f"failed to list pods on node {node_name}: {e}") from e

        result = []
        for pod in pods.items:
            if pod.metadata.owner_references and any(
                    ref.kind == "DaemonSet" for ref in pod.metadata.owner_references):
                continue
            if MIRROR_POD_ANNOTATION in (pod.metadata.annotations or {}):
                continue
            if pod.status and pod.status.phase in ("Succeeded", "Failed"):
                continue
            result.append(pod)
        return result

    def _evict(self, pod: client.V1Pod, grace_period: int, deadline: float) -> None:
        name, namespace = pod.metadata.name, pod.metadata.namespace
        eviction = client.V1Eviction(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            delete_options=client.V1DeleteOptions(grace_period_seconds=grace_period),
        )

        @retry(retry=retry_if_exception(_blocked_by_pdb),
               stop=stop_after_delay(max(deadline - time.monotonic(), 0)),
               wait=wait_fixed(EVICTION_RETRY_INTERVAL))
        def evict():
            self.core_v1.create_namespaced_pod_eviction(name=name, namespace=namespace, body=eviction)

        try:
            evict()
        except RetryError as e:
            raise DrainError(f"eviction of {namespace}/{name} blocked by a PodDisruptionBudget") from e
        except ApiException as e:
            if e.status == 404:
                return
            raise DrainError(f"failed to evict pod {namespace}/{name}: {e}") from e
        except HTTPError as e:
            raise DrainError(f"failed to evict pod {namespace}/{name}: {e}") from e

    def drain(self, node_name: str, grace_period: int) -> None:
        deadline = time.monotonic() + grace_period + DRAIN_TIMEOUT_SLACK
        self.cordon(node_name)

        pods = self.pods_to_evict(node_name)
        if not pods:
            logger.info(f"No pods to evict from node: {node_name}")
            return

        logger.info(f"Evicting {len(pods)} pods from node {node_name} (grace period {grace_period}s)")
        for pod in pods:
            self._evict(pod, grace_period, deadline)

        while time.monotonic() < deadline:
            remaining = self.pods_to_evict(node_name)
            if not remaining:
                logger.info(f"Node {node_name} drained successfully")
                return
            logger.info(f"Waiting for {len(remaining)} pods to be evicted from {node_name}")
            time.sleep(self.poll_interval)

        raise DrainError(f"timed out draining node {node_name}")

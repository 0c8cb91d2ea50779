"""
Thin Kubernetes control plane client

Wraps the handful of CoreV1Api calls drainsafe needs and translates
ApiException into the drainsafe error taxonomy, so the state machine and the
detector never deal with HTTP status codes.
"""

from datetime import datetime, timezone
from typing import Dict, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from loguru import logger
from urllib3.exceptions import HTTPError

from drainsafe.errors import ConfigurationError, ConflictError, NotFoundError, TransportError

COMPONENT = "drainsafe"


def load_kube_config(kubeconfig: str = "") -> None:
    """Load in-cluster config, falling back to a kube config file for local runs."""
    if kubeconfig:
        try:
            config.load_kube_config(config_file=kubeconfig)
            return
        except (config.ConfigException, OSError) as e:
            raise ConfigurationError(f"could not load kube config {kubeconfig}: {e}") from e
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException as incluster_error:
        logger.info(f"In-cluster config unavailable ({incluster_error}), trying kube config")
        try:
            config.load_kube_config()
            logger.info("Loaded local kube config")
        except (config.ConfigException, OSError) as e:
            raise ConfigurationError(
                f"Kubernetes client configuration failed. In-cluster error: {incluster_error}. "
                f"Kube config error: {e}") from e


def translate(e: ApiException, what: str) -> Exception:
    if e.status == 404:
        return NotFoundError(f"{what}: not found")
    if e.status == 409:
        return ConflictError(f"{what}: {e.reason}")
    return TransportError(f"{what}: {e.status} {e.reason}")


class KubernetesHelper:
    """Helper class for the node operations drainsafe performs"""

    def __init__(self, core_v1: Optional[client.CoreV1Api] = None,
                 event_namespace: str = "default", component: str = COMPONENT):
        self.core_v1 = core_v1 or client.CoreV1Api()
        self.event_namespace = event_namespace
        self.component = component

    def get_node(self, name: str) -> client.V1Node:
        try:
            return self.core_v1.read_node(name)
        except ApiException as e:
            raise translate(e, f"get node {name}") from e
        except HTTPError as e:
            raise TransportError(f"get node {name}: {e}") from e

    def patch_node_annotations(self, name: str, resource_version: str,
                               node_annotations: Dict[str, Optional[str]]) -> client.V1Node:
        """
        Merge annotations into a node, failing with ConflictError when the node
        changed since resource_version was read. A None value removes the key.
        """
        body = {
            "metadata": {
                "resourceVersion": resource_version,
                "annotations": node_annotations,
            }
        }
        try:
            return self.core_v1.patch_node(name, body)
        except ApiException as e:
            raise translate(e, f"update node {name}") from e
        except HTTPError as e:
            raise TransportError(f"update node {name}: {e}") from e

    def record_event(self, node: client.V1Node, reason: str, message: str,
                     event_type: str = "Normal") -> None:
        """Emit an event on the node. Best effort: failures are only logged."""
        now = datetime.now(timezone.utc)
        name = node.metadata.name
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{name}."),
            involved_object=client.V1ObjectReference(
                api_version="v1",
                kind="Node",
                name=name,
                uid=node.metadata.uid,
            ),
            reason=reason,
            message=message,
            type=event_type,
            source=client.V1EventSource(component=self.component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self.core_v1.create_namespaced_event(self.event_namespace, event)
        except (ApiException, HTTPError) as e:
            logger.warning(f"Failed to record {reason} event on node {name}: {e}")

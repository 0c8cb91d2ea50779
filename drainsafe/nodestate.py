"""
Versioned read-check-write of the maintenance annotations

Both control loops go through NodeStateStore.transition, which is what makes a
transition idempotent under duplicate notifications and safe against the other
loop writing the same node concurrently:

* a write whose target already holds on the observed node is a no-op;
* otherwise the latest node is re-read and the write is made against its
  resourceVersion;
* if the latest state is no longer the state the caller based its decision on,
  the transition is dropped. The newer write produces its own notification.
"""

from typing import Dict, Optional

from kubernetes import client
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from drainsafe import annotations
from drainsafe.annotations import MaintenanceState
from drainsafe.errors import ConflictError
from drainsafe.kube import KubernetesHelper

CONFLICT_ATTEMPTS = 3

# Sentinel for "leave this annotation alone"
UNCHANGED = object()


def node_annotations(node: client.V1Node) -> Dict[str, str]:
    return node.metadata.annotations or {}


def maintenance_state(node: client.V1Node) -> str:
    return node_annotations(node).get(annotations.MAINTENANCE_STATE, "")


def maintenance_type(node: client.V1Node) -> str:
    return node_annotations(node).get(annotations.MAINTENANCE_TYPE, "")


def maintenance_owner(node: client.V1Node) -> str:
    return node_annotations(node).get(annotations.MAINTENANCE_OWNER, "")


def is_unschedulable(node: client.V1Node) -> bool:
    return bool(node.spec and node.spec.unschedulable)


class NodeStateStore:

    def __init__(self, kube: KubernetesHelper, source: str):
        self.kube = kube
        self.source = source

    def transition(self, node: client.V1Node, state: MaintenanceState,
                   maintenance_type=UNCHANGED, owner=UNCHANGED) -> bool:
        """
        Move node from its observed state to state. Returns True when a write
        happened. Raises ConflictError once conflicts outlast the retry budget,
        TransportError or NotFoundError from the control plane.
        """
        observed = maintenance_state(node)
        if observed == state.value:
            return False
        written = self._write(node.metadata.name, observed, state, maintenance_type, owner)
        if written is None:
            return False
        self._record(written, state, maintenance_type)
        return True

    def set_owner(self, node: client.V1Node, owner: Optional[str]) -> None:
        """Set or clear (None) the owner annotation without touching the state."""
        if (maintenance_owner(node) or None) == owner:
            return
        self._write_owner(node.metadata.name, owner)

    @retry(retry=retry_if_exception_type(ConflictError),
           stop=stop_after_attempt(CONFLICT_ATTEMPTS), wait=wait_fixed(0.1), reraise=True)
    def _write(self, name: str, observed: str, state: MaintenanceState,
               mtype, owner) -> Optional[client.V1Node]:
        latest = self.kube.get_node(name)
        current = maintenance_state(latest)
        if current == state.value:
            return None
        if current != observed:
            logger.info(f"Node {name} moved from {observed or '<none>'} to {current} "
                        f"before {state} could be written, dropping transition")
            return None

        changes: Dict[str, Optional[str]] = {annotations.MAINTENANCE_STATE: state.value}
        if mtype is not UNCHANGED:
            changes[annotations.MAINTENANCE_TYPE] = mtype or None
        if owner is not UNCHANGED:
            changes[annotations.MAINTENANCE_OWNER] = owner or None

        logger.info(f"Updating node {name} state from {current or '<none>'} to {state}")
        return self.kube.patch_node_annotations(name, latest.metadata.resource_version, changes)

    @retry(retry=retry_if_exception_type(ConflictError),
           stop=stop_after_attempt(CONFLICT_ATTEMPTS), wait=wait_fixed(0.1), reraise=True)
    def _write_owner(self, name: str, owner: Optional[str]) -> None:
        latest = self.kube.get_node(name)
        if (maintenance_owner(latest) or None) == owner:
            return
        self.kube.patch_node_annotations(name, latest.metadata.resource_version,
                                         {annotations.MAINTENANCE_OWNER: owner})

    def _record(self, node: client.V1Node, state: MaintenanceState, mtype) -> None:
        if mtype is not UNCHANGED and mtype:
            self.kube.record_event(node, state.value, f"{mtype} on {node.metadata.name} by {self.source}")
        else:
            self.notify(node, state.value)

    def notify(self, node: client.V1Node, reason: str) -> None:
        self.kube.record_event(node, reason, f"{node.metadata.name} by {self.source}")

    def warn(self, node: client.V1Node, reason: str, message: str) -> None:
        self.kube.record_event(node, reason, message, event_type="Warning")

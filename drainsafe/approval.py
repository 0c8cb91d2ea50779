"""
Maintenance approval gates

The state machine asks its gate before cordoning a node and tells it when the
node is back in service. NoopApprovalGate stands in when no approval authority
is deployed, so the state machine never branches on "is there a gate".

RepairmanApprovalGate talks to repairman through its cluster scoped
MaintenanceRequest custom resources: drainsafe files a Pending request for the
node, repairman (or a human) flips it to Approved, drainsafe marks it
InProgress while the node is out of service and Completed afterwards.
"""

from typing import Any, Dict, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException
from loguru import logger
from urllib3.exceptions import HTTPError

from drainsafe.errors import TransportError

NODE_KIND = "node"

# MaintenanceRequest spec.state values
PENDING = "Pending"
APPROVED = "Approved"
IN_PROGRESS = "InProgress"
COMPLETED = "Completed"

REPAIRMAN_GROUP = "repairman.k8s.io"
REPAIRMAN_VERSION = "v1"
REPAIRMAN_PLURAL = "maintenancerequests"
REPAIRMAN_KIND = "MaintenanceRequest"


class ApprovalGate:
    """Both operations raise TransportError when the authority cannot be reached."""

    def is_approved(self, node_name: str, kind: str = NODE_KIND) -> bool:
        raise NotImplementedError

    def mark_state(self, node_name: str, state: str, kind: str = NODE_KIND) -> None:
        raise NotImplementedError


class NoopApprovalGate(ApprovalGate):
    """Used when no approval authority is deployed: everything is approved"""

    def is_approved(self, node_name: str, kind: str = NODE_KIND) -> bool:
        return True

    def mark_state(self, node_name: str, state: str, kind: str = NODE_KIND) -> None:
        pass


def request_name(node_name: str, kind: str) -> str:
    return f"{kind}-{node_name}".lower()


class RepairmanApprovalGate(ApprovalGate):

    def __init__(self, custom_objects: Optional[client.CustomObjectsApi] = None, requester: str = "drainsafe"):
        self.custom_objects = custom_objects or client.CustomObjectsApi()
        self.requester = requester

    def _get(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self.custom_objects.get_cluster_custom_object(
                group=REPAIRMAN_GROUP,
                version=REPAIRMAN_VERSION,
                plural=REPAIRMAN_PLURAL,
                name=name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise TransportError(f"get maintenance request {name}: {e.status} {e.reason}") from e
        except HTTPError as e:
            raise TransportError(f"get maintenance request {name}: {e}") from e

    def _create(self, name: str, node_name: str, kind: str) -> None:
        body = {
            "apiVersion": f"{REPAIRMAN_GROUP}/{REPAIRMAN_VERSION}",
            "kind": REPAIRMAN_KIND,
            "metadata": {"name": name},
            "spec": {
                "name": node_name,
                "type": kind,
                "state": PENDING,
                "requester": self.requester,
            },
        }
        try:
            self.custom_objects.create_cluster_custom_object(
                group=REPAIRMAN_GROUP,
                version=REPAIRMAN_VERSION,
                plural=REPAIRMAN_PLURAL,
                body=body,
            )
        except ApiException as e:
            # 409: another writer filed it first, which is just as good
            if e.status != 409:
                raise TransportError(f"create maintenance request {name}: {e.status} {e.reason}") from e
        except HTTPError as e:
            raise TransportError(f"create maintenance request {name}: {e}") from e
        logger.info(f"Requested maintenance approval for {kind} {node_name}")

    def _patch_state(self, name: str, state: str) -> None:
        try:
            self.custom_objects.patch_cluster_custom_object(
                group=REPAIRMAN_GROUP,
                version=REPAIRMAN_VERSION,
                plural=REPAIRMAN_PLURAL,
                name=name,
                body={"spec": {"state": state}},
            )
        except (ApiException, HTTPError) as e:
            raise TransportError(f"update maintenance request {name} to {state}: {e}") from e

    def is_approved(self, node_name: str, kind: str = NODE_KIND) -> bool:
        name = request_name(node_name, kind)
        request = self._get(name)
        if request is None:
            self._create(name, node_name, kind)
            return False
        state = (request.get("spec") or {}).get("state", PENDING)
        if state == COMPLETED:
            # Leftover from the previous cycle, ask again
            self._patch_state(name, PENDING)
            return False
        return state in (APPROVED, IN_PROGRESS)

    def mark_state(self, node_name: str, state: str, kind: str = NODE_KIND) -> None:
        name = request_name(node_name, kind)
        if self._get(name) is None:
            logger.warning(f"No maintenance request for {kind} {node_name}, not marking it {state}")
            return
        self._patch_state(name, state)
        logger.info(f"Marked maintenance request {name} {state}")

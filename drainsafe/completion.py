"""
Approve the platform event once the node is drained

This is the only place a scheduled event gets approved, and it only happens
for a node whose stored state is NodeDrained. It runs in the node agent because
the metadata service answers only on the VM itself.
"""

from kubernetes import client
from loguru import logger

from drainsafe import annotations
from drainsafe.annotations import MaintenanceState
from drainsafe.controller import Result
from drainsafe.errors import DrainSafeError, TransportError
from drainsafe.metadata import MetadataClient
from drainsafe.nodestate import NodeStateStore, maintenance_state

APPROVE_REQUEUE = 30.0


class CompletionSignal:

    def __init__(self, hostname: str, instance_id: str, metadata: MetadataClient, store: NodeStateStore):
        self.hostname = hostname
        self.instance_id = instance_id
        self.metadata = metadata
        self.store = store

    def process_node_event(self, node: client.V1Node) -> Result:
        name = node.metadata.name
        if name.lower() != self.hostname.lower():
            return Result()

        if maintenance_state(node) != MaintenanceState.DRAINED.value:
            return Result(requeue_after=APPROVE_REQUEUE)

        try:
            events = self.metadata.actionable_events(self.instance_id)
            if not events:
                logger.info(f"No scheduled event left to approve for {self.instance_id}")
            for event in events:
                self.metadata.approve(event.event_id)
                logger.info(f"Approved {event.maintenance_type} event {event.event_id} for node {name}")
        except TransportError as e:
            logger.error(f"Failed to approve scheduled event: {e}")
            self.store.warn(node, annotations.EVENT_APPROVE_FAILED, str(e))
            return Result(requeue_after=APPROVE_REQUEUE)

        try:
            self.store.transition(node, MaintenanceState.STARTED)
        except DrainSafeError as e:
            logger.error(f"Failed to update node {name}: {e}")
            self.store.warn(node, annotations.STATE_UPDATE_FAILED, str(e))
            return Result(requeue_after=APPROVE_REQUEUE)
        return Result()

"""
Scheduled event detector

Runs inside the per-node agent. Every tick it compares the platform's scheduled
events with the node's maintenance state:

* an actionable event and an idle node starts a cycle (MaintenanceScheduled,
  with the event type attached);
* an actionable event on a node already in a cycle is left alone, the running
  cycle finishes first;
* no event left on the platform side for a node whose maintenance started
  closes the cycle (NodeRunning);
* an event withdrawn before the node was cordoned cancels the cycle
  (NodeRunning).
"""

import threading

from loguru import logger

from drainsafe import annotations
from drainsafe.annotations import MaintenanceState
from drainsafe.errors import ConfigurationError, DrainSafeError, TransportError
from drainsafe.kube import KubernetesHelper
from drainsafe.metadata import MetadataClient, is_actionable, is_in_flight
from drainsafe.nodestate import NodeStateStore, maintenance_state

DEFAULT_INTERVAL = 25.0

# States from which a new cycle may start
IDLE_STATES = ("", MaintenanceState.RUNNING.value)

# Cycles that have not touched the node yet; a withdrawn event cancels them
WITHDRAWABLE_STATES = (
    MaintenanceState.SCHEDULED.value,
    MaintenanceState.PENDING.value,
    MaintenanceState.APPROVED.value,
)

# States from which the cycle may close once no event is left
CLOSABLE_STATES = ("", MaintenanceState.STARTED.value) + WITHDRAWABLE_STATES


def resolve_instance_id(metadata: MetadataClient) -> str:
    """Instance name of this VM; without it the agent has no identity to match events against."""
    try:
        instance_id = metadata.current_instance_id()
    except TransportError as e:
        raise ConfigurationError(f"failed to get vm instance name: {e}") from e
    if not instance_id:
        raise ConfigurationError("metadata service returned an empty vm instance name")
    return instance_id


class EventDetector:

    def __init__(self, hostname: str, instance_id: str, kube: KubernetesHelper,
                 metadata: MetadataClient, store: NodeStateStore, interval: float = DEFAULT_INTERVAL):
        self.hostname = hostname
        self.instance_id = instance_id
        self.kube = kube
        self.metadata = metadata
        self.store = store
        self.interval = interval
        self.log = logger.bind(node=hostname, instance=instance_id)

    def process_scheduled_event(self) -> None:
        """One evaluation. Failures are logged; the next tick starts from scratch."""
        try:
            node = self.kube.get_node(self.hostname)
        except DrainSafeError as e:
            self.log.error(f"Failed to get node {self.hostname}: {e}")
            return

        try:
            events = self.metadata.list_scheduled_events()
        except TransportError as e:
            self.log.error(f"Failed to find scheduled events: {e}")
            self.store.warn(node, annotations.EVENT_LIST_FAILED, str(e))
            return

        current = maintenance_state(node)
        actionable = [e for e in events if is_actionable(e, self.instance_id)]
        try:
            if actionable:
                event = actionable[0]
                if current not in IDLE_STATES:
                    self.log.info(f"Node is undergoing maintenance ({current}), "
                                  f"not scheduling {event.maintenance_type} event {event.event_id}")
                    return
                self.log.info(f"Scheduled {event.maintenance_type} event {event.event_id} "
                              f"not before {event.not_before or 'unknown'}")
                self.store.transition(node, MaintenanceState.SCHEDULED,
                                      maintenance_type=event.maintenance_type)
                return

            if any(is_in_flight(e, self.instance_id) for e in events):
                self.log.debug("Maintenance is still executing on the platform")
                return
            if current in WITHDRAWABLE_STATES:
                self.log.info(f"Scheduled event for node went away while {current}, cancelling maintenance")
            if current in CLOSABLE_STATES:
                self.store.transition(node, MaintenanceState.RUNNING, maintenance_type="")
        except DrainSafeError as e:
            self.log.error(f"Failed to update node {self.hostname}: {e}")
            self.store.warn(node, annotations.STATE_UPDATE_FAILED, str(e))

    def run(self, stop: threading.Event) -> None:
        """Tick every interval until stop is set. Ticks never overlap."""
        self.log.info(f"Watching scheduled events every {self.interval:g}s")
        while not stop.wait(self.interval):
            try:
                self.process_scheduled_event()
            except Exception as e:
                self.log.exception(f"Unhandled error checking scheduled events: {e}")
        self.log.info("Scheduled event detector stopped")

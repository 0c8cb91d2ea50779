"""
Node maintenance state machine

Every change of a Node advances its maintenance state by exactly one step:

    MaintenanceScheduled -> MaintenanceApproved -> NodeCordoning -> NodeCordoned
    -> NodeDraining -> NodeDrained -> (completion signal) MaintenanceStarted
    -> (event detector) NodeRunning -> uncordon

Each step performs at most one side effect and persists the next state through
NodeStateStore, whose write fires the next notification. A failed side effect
leaves the state untouched and asks to be retried after STEP_REQUEUE seconds.
"""

from typing import Callable, Dict, Optional

from kubernetes import client
from loguru import logger

from drainsafe import annotations
from drainsafe.annotations import MaintenanceState
from drainsafe.approval import COMPLETED, IN_PROGRESS, ApprovalGate, NoopApprovalGate
from drainsafe.config import DEFAULT_OWNER
from drainsafe.controller import Result
from drainsafe.errors import ConflictError, ExecutorError, NotFoundError, TransportError
from drainsafe.executor import NodeExecutor
from drainsafe.nodestate import (NodeStateStore, is_unschedulable, maintenance_owner,
                                 maintenance_state, maintenance_type)

STEP_REQUEUE = 60.0
STARTED_REQUEUE = 30.0


class NodeStateMachine:

    def __init__(self, store: NodeStateStore, executor: NodeExecutor,
                 gate: Optional[ApprovalGate] = None, owner: str = DEFAULT_OWNER):
        self.store = store
        self.executor = executor
        self.gate = gate or NoopApprovalGate()
        self.owner = owner
        self._handlers: Dict[MaintenanceState, Callable[[client.V1Node], Result]] = {
            MaintenanceState.SCHEDULED: self._scheduled,
            MaintenanceState.PENDING: self._scheduled,
            MaintenanceState.APPROVED: self._advance_to(MaintenanceState.CORDONING),
            MaintenanceState.CORDONING: self._cordoning,
            MaintenanceState.CORDONED: self._advance_to(MaintenanceState.DRAINING),
            MaintenanceState.DRAINING: self._draining,
            MaintenanceState.DRAINED: self._drained,
            MaintenanceState.STARTED: self._started,
            MaintenanceState.RUNNING: self._running,
        }

    def process_node_event(self, node: client.V1Node) -> Result:
        name = node.metadata.name
        value = maintenance_state(node)
        if not value:
            return Result()

        state = annotations.parse_state(value)
        if state is None:
            logger.warning(f"Node {name} carries unknown maintenance state {value!r}, ignoring")
            return Result()

        logger.debug(f"Got node event for {name}: maintenance={value} unschedulable={is_unschedulable(node)}")
        try:
            return self._handlers[state](node)
        except NotFoundError:
            return Result()
        except (ConflictError, TransportError) as e:
            logger.error(f"Failed to update node {name}: {e}")
            self.store.warn(node, annotations.STATE_UPDATE_FAILED, str(e))
            return Result(requeue_after=STEP_REQUEUE)

    def _advance_to(self, state: MaintenanceState) -> Callable[[client.V1Node], Result]:
        def advance(node: client.V1Node) -> Result:
            self.store.transition(node, state)
            return Result()
        return advance

    def _scheduled(self, node: client.V1Node) -> Result:
        name = node.metadata.name
        try:
            if not self.gate.is_approved(name):
                logger.info(f"Maintenance on node {name} is not approved yet")
                return Result(requeue_after=STEP_REQUEUE)
            self.gate.mark_state(name, IN_PROGRESS)
        except TransportError as e:
            logger.error(f"Failed to get maintenance approval for node {name}: {e}")
            self.store.warn(node, annotations.APPROVAL_FAILED, str(e))
            return Result(requeue_after=STEP_REQUEUE)
        self.store.transition(node, MaintenanceState.APPROVED)
        return Result()

    def _cordoning(self, node: client.V1Node) -> Result:
        name = node.metadata.name
        if not is_unschedulable(node):
            try:
                self.executor.cordon(name)
            except ExecutorError as e:
                logger.error(f"Failed to cordon node {name}: {e}")
                self.store.warn(node, annotations.CORDON_FAILED, str(e))
                return Result(requeue_after=STEP_REQUEUE)
        self.store.transition(node, MaintenanceState.CORDONED, owner=self.owner)
        return Result()

    def _draining(self, node: client.V1Node) -> Result:
        name = node.metadata.name
        grace = annotations.grace_period(maintenance_type(node))
        try:
            self.executor.drain(name, grace)
        except ExecutorError as e:
            logger.error(f"Failed to drain node {name}: {e}")
            self.store.warn(node, annotations.DRAIN_FAILED, str(e))
            return Result(requeue_after=STEP_REQUEUE)
        self.store.transition(node, MaintenanceState.DRAINED)
        return Result()

    def _drained(self, node: client.V1Node) -> Result:
        # The node agent approves the platform event and moves on to Started
        logger.debug(f"Node {node.metadata.name} drained, waiting for the scheduled event to be approved")
        return Result()

    def _started(self, node: client.V1Node) -> Result:
        return Result(requeue_after=STARTED_REQUEUE)

    def _running(self, node: client.V1Node) -> Result:
        name = node.metadata.name
        owner = maintenance_owner(node)
        if not is_unschedulable(node):
            if owner == self.owner:
                # Uncordoned earlier but the owner was never released
                self.store.set_owner(node, None)
                self.store.notify(node, annotations.UNCORDONED)
            return Result()

        if owner and owner != self.owner:
            logger.warning(f"Node {name} was cordoned by {owner}, leaving the uncordon to it")
            return Result()
        if not owner:
            logger.info(f"Node {name} is cordoned without a maintenance owner, uncordoning anyway")

        try:
            self.gate.mark_state(name, COMPLETED)
        except TransportError as e:
            logger.error(f"Failed to mark maintenance complete for node {name}: {e}")
            self.store.warn(node, annotations.APPROVAL_FAILED, str(e))
            return Result(requeue_after=STEP_REQUEUE)

        try:
            self.executor.uncordon(name)
        except ExecutorError as e:
            logger.error(f"Failed to uncordon node {name}: {e}")
            self.store.warn(node, annotations.UNCORDON_FAILED, str(e))
            return Result(requeue_after=STEP_REQUEUE)

        self.store.set_owner(node, None)
        self.store.notify(node, annotations.UNCORDONED)
        return Result()

"""Full maintenance cycles with both control loops sharing one node object."""

import pytest

from drainsafe.annotations import MaintenanceState
from drainsafe.completion import CompletionSignal
from drainsafe.controller import Controller, Result
from drainsafe.detector import EventDetector
from drainsafe.statemachine import NodeStateMachine

from fakes import INSTANCE, NODE, FakeGate, event, make_node, scheduled_events


class Cluster:
    """Delivers change notifications the way the two controllers would"""

    def __init__(self, kube, store, executor, metadata, gate=None):
        self.kube = kube
        self.machine = NodeStateMachine(store, executor, gate=gate, owner="drainsafe")
        self.completion = CompletionSignal(NODE, INSTANCE, metadata, store)
        self.detector = EventDetector(NODE, INSTANCE, kube, metadata, store)
        self.reconciler = Controller("drainsafe", kube, self.machine.process_node_event)
        self.agent = Controller("scheduledevent", kube, self.completion.process_node_event)
        self.history = []

    def settle(self, rounds=20, duplicates=1):
        """Deliver notifications until the node stops changing."""
        for _ in range(rounds):
            version = self.kube.nodes[NODE].metadata.resource_version
            for _ in range(duplicates):
                self.reconciler.reconcile_one(NODE)
                self._observe()
                self.agent.reconcile_one(NODE)
                self._observe()
            if self.kube.nodes[NODE].metadata.resource_version == version:
                return

    def _observe(self):
        state = self.kube.state()
        if not self.history or self.history[-1] != state:
            self.history.append(state)


@pytest.fixture
def cluster(kube, store, executor, metadata):
    return Cluster(kube, store, executor, metadata)


def run_cycle(cluster, kube, session, duplicates=1):
    kube.add(make_node())
    session.document = scheduled_events(event("Reboot"))

    cluster.detector.process_scheduled_event()
    assert kube.state() == MaintenanceState.SCHEDULED.value
    cluster.settle(duplicates=duplicates)
    assert kube.state() == MaintenanceState.STARTED.value

    # Platform reboots the VM and retires the event
    session.document = scheduled_events(event("Reboot", status="Started"))
    cluster.detector.process_scheduled_event()
    assert kube.state() == MaintenanceState.STARTED.value

    session.document = scheduled_events()
    cluster.detector.process_scheduled_event()
    assert kube.state() == MaintenanceState.RUNNING.value
    cluster.settle(duplicates=duplicates)


def test_reboot_cycle(cluster, kube, executor, session):
    run_cycle(cluster, kube, session)

    assert cluster.history == [
        MaintenanceState.APPROVED.value,
        MaintenanceState.CORDONING.value,
        MaintenanceState.CORDONED.value,
        MaintenanceState.DRAINING.value,
        MaintenanceState.DRAINED.value,
        MaintenanceState.STARTED.value,
        MaintenanceState.RUNNING.value,
    ]
    assert executor.calls == [("cordon", NODE), ("drain", NODE, 840), ("uncordon", NODE)]
    assert len(session.posts()) == 1
    assert kube.nodes[NODE].spec.unschedulable is False


def test_duplicate_deliveries_do_not_repeat_side_effects(cluster, kube, executor, session):
    run_cycle(cluster, kube, session, duplicates=3)

    assert executor.count("cordon") == 1
    assert executor.count("drain") == 1
    assert executor.count("uncordon") == 1
    assert len(session.posts()) == 1
    assert kube.state() == MaintenanceState.RUNNING.value


def test_detector_ticks_during_cycle_do_not_interfere(cluster, kube, executor, session):
    kube.add(make_node())
    session.document = scheduled_events(event("Redeploy"))
    cluster.detector.process_scheduled_event()
    for _ in range(10):
        cluster.reconciler.reconcile_one(NODE)
        cluster.detector.process_scheduled_event()
        cluster.agent.reconcile_one(NODE)
    assert kube.state() == MaintenanceState.STARTED.value
    assert executor.calls == [("cordon", NODE), ("drain", NODE, 540)]


def test_denied_gate_holds_then_releases_once(kube, store, executor, metadata, session):
    gate = FakeGate(approved=False)
    cluster = Cluster(kube, store, executor, metadata, gate=gate)
    kube.add(make_node())
    session.document = scheduled_events(event("Reboot"))
    cluster.detector.process_scheduled_event()

    for _ in range(3):
        assert cluster.machine.process_node_event(kube.get_node(NODE)) == Result(requeue_after=60)
        assert kube.state() == MaintenanceState.SCHEDULED.value
    assert executor.calls == []

    gate.approved = True
    assert cluster.machine.process_node_event(kube.get_node(NODE)) == Result()
    assert kube.state() == MaintenanceState.APPROVED.value
    cluster.machine.process_node_event(kube.get_node(NODE))
    assert kube.state() == MaintenanceState.CORDONING.value


def test_withdrawn_event_is_never_drained(kube, store, executor, metadata, session):
    gate = FakeGate(approved=False)
    cluster = Cluster(kube, store, executor, metadata, gate=gate)
    kube.add(make_node())
    session.document = scheduled_events(event("Reboot"))
    cluster.detector.process_scheduled_event()
    cluster.settle()
    assert kube.state() == MaintenanceState.SCHEDULED.value

    session.document = scheduled_events()
    for _ in range(3):
        cluster.detector.process_scheduled_event()
    assert kube.state() == MaintenanceState.RUNNING.value

    gate.approved = True
    cluster.settle()
    assert kube.state() == MaintenanceState.RUNNING.value
    assert executor.calls == []
    assert session.posts() == []

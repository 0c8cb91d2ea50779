"""Process wiring for the two drainsafe roles and their shared stop signal."""

import signal
import threading

from loguru import logger

from drainsafe.approval import NoopApprovalGate, RepairmanApprovalGate
from drainsafe.completion import CompletionSignal
from drainsafe.config import Settings
from drainsafe.controller import Controller
from drainsafe.detector import EventDetector, resolve_instance_id
from drainsafe.executor import KubernetesExecutor
from drainsafe.kube import KubernetesHelper, load_kube_config
from drainsafe.metadata import MetadataClient
from drainsafe.nodestate import NodeStateStore
from drainsafe.statemachine import NodeStateMachine


def install_signal_handlers(stop: threading.Event) -> None:
    def handle(signum, _frame):
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        stop.set()

    signal.signal(signal.SIGINT, handle)
    signal.signal(signal.SIGTERM, handle)


def run_controller(settings: Settings, stop: threading.Event) -> None:
    """Cluster wide role: drive every node through the maintenance pipeline."""
    load_kube_config(settings.kubeconfig)
    kube = KubernetesHelper(event_namespace=settings.event_namespace)
    store = NodeStateStore(kube, settings.source)
    gate = RepairmanApprovalGate(requester=settings.owner) if settings.repairman else NoopApprovalGate()
    machine = NodeStateMachine(store, KubernetesExecutor(), gate=gate, owner=settings.owner)

    controller = Controller("drainsafe", kube, machine.process_node_event)
    controller.start(stop)
    logger.info(f"Starting drainsafe controller as {settings.owner} "
                f"(approval gate: {'repairman' if settings.repairman else 'none'})")
    stop.wait()
    controller.join(timeout=5)


def run_agent(settings: Settings, stop: threading.Event) -> None:
    """Per-node role: detect scheduled events and approve them once drained."""
    load_kube_config(settings.kubeconfig)
    kube = KubernetesHelper(event_namespace=settings.event_namespace)
    store = NodeStateStore(kube, settings.source)
    metadata = MetadataClient(settings.metadata_url, timeout=settings.metadata_timeout)
    instance_id = resolve_instance_id(metadata)
    logger.info(f"Node {settings.node_name} is vm instance {instance_id}")

    detector = EventDetector(settings.node_name, instance_id, kube, metadata, store,
                             interval=settings.poll_interval)
    completion = CompletionSignal(settings.node_name, instance_id, metadata, store)
    controller = Controller("scheduledevent", kube, completion.process_node_event,
                            field_selector=f"metadata.name={settings.node_name}")

    controller.start(stop)
    poller = threading.Thread(target=detector.run, args=(stop,), name="scheduledevent-poller", daemon=True)
    poller.start()
    stop.wait()
    poller.join(timeout=settings.poll_interval)
    controller.join(timeout=5)

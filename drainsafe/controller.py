"""
Node change notifications to reconcile calls

A Controller runs two threads: a watch on Node objects that enqueues the name of
every added or modified node, and a worker that pops names, fetches the node
fresh and hands it to a reconcile function. Reconcile functions never raise
for expected failures; they return a Result whose requeue_after the worker
turns into a delayed re-add.
"""

import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from kubernetes import client, watch
from kubernetes.client.rest import ApiException
from loguru import logger
from urllib3.exceptions import HTTPError

from drainsafe.errors import ConfigurationError, DrainSafeError, NotFoundError
from drainsafe.kube import KubernetesHelper
from drainsafe.workqueue import WorkQueue

ERROR_REQUEUE = 60.0
WATCH_TIMEOUT = 60
WATCH_BACKOFF = 5.0


@dataclass(frozen=True)
class Result:
    requeue_after: Optional[float] = None


Reconcile = Callable[[client.V1Node], Result]


class Controller:

    def __init__(self, name: str, kube: KubernetesHelper, reconcile: Reconcile,
                 field_selector: Optional[str] = None, queue: Optional[WorkQueue] = None):
        self.name = name
        self.kube = kube
        self.reconcile = reconcile
        self.field_selector = field_selector
        self.queue = queue or WorkQueue()
        self.log = logger.bind(controller=name)
        self._threads: List[threading.Thread] = []

    def reconcile_one(self, node_name: str) -> Optional[float]:
        """Reconcile one node; returns the requeue delay, if any."""
        try:
            node = self.kube.get_node(node_name)
        except NotFoundError:
            self.log.debug(f"Node {node_name} is gone, nothing to reconcile")
            return None
        except DrainSafeError as e:
            self.log.error(f"Failed to get node {node_name}: {e}")
            return ERROR_REQUEUE

        try:
            result = self.reconcile(node)
        except Exception as e:
            self.log.exception(f"Unhandled error reconciling node {node_name}: {e}")
            return ERROR_REQUEUE
        return result.requeue_after

    def _watch(self, stop: threading.Event) -> None:
        self.log.info("Starting node watch")
        while not stop.is_set():
            w = watch.Watch()
            try:
                kwargs = {"timeout_seconds": WATCH_TIMEOUT}
                if self.field_selector:
                    kwargs["field_selector"] = self.field_selector
                for event in w.stream(self.kube.core_v1.list_node, **kwargs):
                    if stop.is_set():
                        break
                    if event["type"] in ("ADDED", "MODIFIED"):
                        self.queue.add(event["object"].metadata.name)
            except ApiException as e:
                if e.status == 410:
                    self.log.info("Node watch resource version expired, restarting")
                    continue
                self.log.error(f"Node watch error: {e}")
                stop.wait(WATCH_BACKOFF)
            except Exception as e:
                self.log.error(f"Unexpected node watch error: {e}")
                stop.wait(WATCH_BACKOFF)
            finally:
                w.stop()
        self.log.info("Node watch stopped")

    def _work(self, stop: threading.Event) -> None:
        while not stop.is_set():
            node_name = self.queue.get(timeout=1.0)
            if node_name is None:
                continue
            delay = self.reconcile_one(node_name)
            if delay:
                self.queue.add_after(node_name, delay)
        self.queue.shutdown()

    def verify_permissions(self) -> None:
        """Fail fast when nodes cannot be listed, which the watch depends on."""
        kwargs = {"limit": 1}
        if self.field_selector:
            kwargs["field_selector"] = self.field_selector
        try:
            self.kube.core_v1.list_node(**kwargs)
        except ApiException as e:
            raise ConfigurationError(f"cannot list nodes: {e.status} {e.reason}") from e
        except HTTPError as e:
            raise ConfigurationError(f"cannot reach the Kubernetes API: {e}") from e

    def start(self, stop: threading.Event) -> None:
        self.verify_permissions()
        self._threads = [
            threading.Thread(target=self._watch, args=(stop,), name=f"{self.name}-watch", daemon=True),
            threading.Thread(target=self._work, args=(stop,), name=f"{self.name}-worker", daemon=True),
        ]
        for t in self._threads:
            t.start()
        self.log.info("Controller started")

    def join(self, timeout: Optional[float] = None) -> None:
        for t in self._threads:
            t.join(timeout)

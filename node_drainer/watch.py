# Standard library imports
import logging
import queue
import threading
from typing import Optional

# Third party imports
from kubernetes import client, watch

from .filters import FilterChain, NodeConditionFilter
from .k8s import KubernetesClient, describe_api_error, is_gone
from .scheduler import DrainScheduler

logger = logging.getLogger(__name__)

EVENT_DELETED = "DELETED"
EVENT_ERROR = "ERROR"


class NodeWatch:
    """
    Watches nodes and feeds their changes through the filter chain into the scheduler.

    A background thread streams notifications from the cluster into a queue; run()
    consumes the queue in order, so filtering and cordoning happen one node at a time.

    Args:
        kube (KubernetesClient): The cluster client.
        chain (FilterChain): Decides which notifications reach the scheduler.
        scheduler (DrainScheduler): Cordons and schedules drains.
        watch_timeout (int): Seconds the server keeps each watch request open.
        retry_interval (float): Seconds to wait before re-watching after a stream error.
    """

    def __init__(
        self,
        kube: KubernetesClient,
        chain: FilterChain,
        scheduler: DrainScheduler,
        watch_timeout: int = 300,
        retry_interval: float = 5.0,
    ):
        self.kube = kube
        self.chain = chain
        self.scheduler = scheduler
        self.watch_timeout = watch_timeout
        self.retry_interval = retry_interval
        self.events: "queue.Queue" = queue.Queue()
        self._watcher: Optional[watch.Watch] = None

    def run(self, stop: threading.Event) -> None:
        producer = threading.Thread(
            target=self.watch_nodes, args=(stop,), name="node-watch", daemon=True
        )
        producer.start()
        logger.info("Watching nodes")
        while not stop.is_set():
            try:
                event_type, node = self.events.get(timeout=0.5)
            except queue.Empty:
                continue
            self.dispatch(event_type, node)
        if self._watcher is not None:
            self._watcher.stop()
        logger.info("Stopped watching nodes")

    def dispatch(self, event_type: str, node: client.V1Node) -> None:
        node_name = node.metadata.name
        try:
            if event_type == EVENT_DELETED:
                self.scheduler.delete_schedule(node_name)
                self.chain.forget(node_name)
                return
            rejected_by = self.chain.first_rejecting(node)
            if rejected_by is None:
                self.scheduler.handle_node(node)
            elif isinstance(rejected_by, NodeConditionFilter):
                self.scheduler.clear_if_healthy(node_name)
        except Exception:
            logger.exception(f"Failed to handle {event_type} notification for node '{node_name}'")

    def watch_nodes(self, stop: threading.Event) -> None:
        """Stream node notifications into the queue until stopped, re-watching as needed."""
        resource_version = None
        while not stop.is_set():
            self._watcher = watch.Watch()
            try:
                for event in self.kube.stream_node_events(
                    self._watcher,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout,
                ):
                    if stop.is_set():
                        self._watcher.stop()
                        break
                    if event["type"] == EVENT_ERROR:
                        raw = event.get("raw_object") or {}
                        if raw.get("code") == 410:
                            logger.info("Node watch expired; listing nodes again")
                            resource_version = None
                            break
                        logger.warning(f"Node watch returned an error: {raw.get('message', raw)}")
                        continue
                    node = event["object"]
                    resource_version = node.metadata.resource_version
                    self.events.put((event["type"], node))
            except client.ApiException as e:
                if is_gone(e):
                    logger.info("Node watch expired; listing nodes again")
                    resource_version = None
                    continue
                logger.warning(f"Node watch failed: {describe_api_error(e)}")
                stop.wait(self.retry_interval)
            except Exception as e:
                logger.warning(f"Node watch stream broke: {e}")
                stop.wait(self.retry_interval)

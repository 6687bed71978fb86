# Standard library imports
import logging
import uuid
from datetime import datetime, timezone

# Third party imports
from kubernetes import client

from .k8s import KubernetesClient, describe_api_error

logger = logging.getLogger(__name__)

COMPONENT = "node-drainer"

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

REASON_CORDON_STARTING = "CordonStarting"
REASON_CORDON_SUCCEEDED = "CordonSucceeded"
REASON_CORDON_FAILED = "CordonFailed"
REASON_DRAIN_SCHEDULED = "DrainScheduled"
REASON_DRAIN_STARTING = "DrainStarting"
REASON_DRAIN_SUCCEEDED = "DrainSucceeded"
REASON_DRAIN_FAILED = "DrainFailed"


class EventRecorder:
    """
    Records Kubernetes events against nodes.

    Nodes are cluster scoped, so events are written to a fixed namespace. A failure
    to record an event is logged and never raised.

    Args:
        kube (KubernetesClient): The cluster client.
        namespace (str): Namespace the events are created in.
        component (str): Reported as the event source.
    """

    def __init__(
        self,
        kube: KubernetesClient,
        namespace: str = "default",
        component: str = COMPONENT,
    ):
        self.kube = kube
        self.namespace = namespace
        self.component = component

    def event(self, node_name: str, event_type: str, reason: str, message: str) -> None:
        now = datetime.now(timezone.utc)
        body = client.CoreV1Event(
            metadata=client.V1ObjectMeta(
                name=f"{node_name}.{uuid.uuid4().hex[:16]}",
                namespace=self.namespace,
            ),
            involved_object=client.V1ObjectReference(
                kind="Node", name=node_name, uid=node_name
            ),
            reason=reason,
            message=message,
            type=event_type,
            source=client.V1EventSource(component=self.component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        logger.debug(f"Recording {event_type} event {reason} for node '{node_name}': {message}")
        try:
            self.kube.create_event(self.namespace, body)
        except client.ApiException as e:
            logger.warning(
                f"Could not record event {reason} for node '{node_name}': {describe_api_error(e)}"
            )

# Standard library imports
import logging
from functools import wraps
from time import time
from typing import Any, Callable, Iterator, List, Optional

# Third party imports
from tenacity import retry, stop_after_attempt, wait_fixed, retry_if_exception
from kubernetes import client, config, watch

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def is_not_found(error: BaseException) -> bool:
    return isinstance(error, client.ApiException) and error.status == 404


def is_too_many_requests(error: BaseException) -> bool:
    """True for HTTP 429, which the eviction API returns when a disruption budget would be violated."""
    return isinstance(error, client.ApiException) and error.status == 429


def is_gone(error: BaseException) -> bool:
    return isinstance(error, client.ApiException) and error.status == 410


def is_transient(error: BaseException) -> bool:
    """True for API errors worth retrying: throttling, conflicts and server-side failures."""
    if not isinstance(error, client.ApiException):
        return False
    status = error.status or 0
    return status in (409, 429) or status >= 500


def describe_api_error(error: client.ApiException) -> str:
    return f"{error.status} {error.reason}".strip()


def create_api_client(
    kubeconfig: Optional[str] = None, master: Optional[str] = None
) -> client.ApiClient:
    """
    Create a Kubernetes API client.

    With neither a kubeconfig nor a master address the in-cluster service account
    is used, falling back to the default kubeconfig when not running in a cluster.

    Args:
        kubeconfig (Optional[str]): Path to a kubeconfig file.
        master (Optional[str]): Address of the Kubernetes API server. Overrides the kubeconfig.

    Returns:
        client.ApiClient: A configured API client.

    Raises:
        ConfigurationError: If no usable configuration could be loaded.
    """
    configuration = client.Configuration()
    try:
        if kubeconfig:
            config.load_kube_config(
                config_file=kubeconfig, client_configuration=configuration
            )
        elif not master:
            try:
                config.load_incluster_config(client_configuration=configuration)
            except config.ConfigException:
                logger.info("Not running in a cluster; loading the default kubeconfig.")
                config.load_kube_config(client_configuration=configuration)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Kubernetes config file not found: {e}") from e
    except config.ConfigException as e:
        raise ConfigurationError(f"Error loading Kubernetes config: {e}") from e

    if master:
        configuration.host = master
    return client.ApiClient(configuration)


class KubernetesClient:
    """
    The cluster calls made by the node drainer.

    Attributes:
        core_api (client.CoreV1Api): Nodes, pods, evictions and events.
        apps_api (client.AppsV1Api): DaemonSets.
    """

    # Configure a retry decorator for recoverable errors on reads
    retry_decorator = retry(
        stop=stop_after_attempt(3),
        wait=wait_fixed(2),
        retry=retry_if_exception(is_transient),
        reraise=True,
    )

    def __init__(self, api_client: Optional[client.ApiClient] = None):
        self.core_api = client.CoreV1Api(api_client)
        self.apps_api = client.AppsV1Api(api_client)

    @staticmethod
    def measure_execution_time(function: Callable) -> Callable:
        """
        A decorator for logging the execution time of a function at debug level.

        Args:
            function (Callable): The function to measure.

        Returns:
            Callable: The decorated function.
        """

        @wraps(function)
        def time_wrapper(*args, **kwargs):
            start_time = time()
            try:
                return function(*args, **kwargs)
            finally:
                logger.debug(
                    f"Execution time for {function.__name__}: {time() - start_time:.3f} seconds"
                )

        return time_wrapper

    @staticmethod
    def handle_exceptions(function):
        @wraps(function)
        def exception_wrapper(*args, **kwargs):
            try:
                return function(*args, **kwargs)
            except client.ApiException as e:
                if is_not_found(e):
                    logger.debug(
                        f"Resource not found when attempting to {function.__name__}: {e.reason}"
                    )
                elif is_transient(e):
                    logger.warning(
                        f"Recoverable API error when attempting to {function.__name__}: {describe_api_error(e)}"
                    )
                else:
                    logger.error(
                        f"API error occurred when attempting to {function.__name__}: {describe_api_error(e)}"
                    )
                raise

        return exception_wrapper

    # No retry_decorator: cordons retry with their own backoff
    @measure_execution_time
    @handle_exceptions
    def get_node(self, node_name: str) -> client.V1Node:
        """
        Retrieve a node.

        Args:
            node_name (str): The name of the node.

        Returns:
            client.V1Node: The node.
        """
        return self.core_api.read_node(node_name)

    @measure_execution_time
    @handle_exceptions
    def disable_node_scheduling(self, node_name: str) -> client.V1Node:
        """
        Disable scheduling for a specific node.

        Args:
            node_name (str): The name of the node.

        Returns:
            client.V1Node: The patched node.
        """
        node = self.core_api.patch_node(node_name, {"spec": {"unschedulable": True}})
        logger.info(f"Scheduling was successfully disabled for node '{node_name}'.")
        return node

    @measure_execution_time
    @retry_decorator
    @handle_exceptions
    def list_pods_in_specific_node(self, node_name: str) -> List[client.V1Pod]:
        """
        Retrieve all pods bound to a specific node.

        Args:
            node_name (str): The name of the node.

        Returns:
            List[client.V1Pod]: The pods bound to the node.
        """
        pod_list = self.core_api.list_pod_for_all_namespaces(
            field_selector=f"spec.nodeName={node_name}"
        )
        logger.debug(f"Listed {len(pod_list.items)} pod(s) on node '{node_name}'")
        return pod_list.items

    @handle_exceptions
    def retrieve_pod(self, pod_name: str, pod_namespace: str) -> client.V1Pod:
        """
        Retrieve a specific pod.

        Args:
            pod_name (str): The name of the pod to retrieve.
            pod_namespace (str): The namespace of the pod.

        Returns:
            client.V1Pod: The pod.
        """
        return self.core_api.read_namespaced_pod(pod_name, pod_namespace)

    @measure_execution_time
    @handle_exceptions
    def evict_pod(self, pod: client.V1Pod, grace_period_seconds: int) -> None:
        """
        Request eviction of a pod through the eviction subresource, honouring disruption budgets.

        Args:
            pod (client.V1Pod): The pod to evict.
            grace_period_seconds (int): The termination grace period to grant the pod.
        """
        name = pod.metadata.name
        namespace = pod.metadata.namespace
        body = client.V1Eviction(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            delete_options=client.V1DeleteOptions(
                grace_period_seconds=grace_period_seconds
            ),
        )
        self.core_api.create_namespaced_pod_eviction(
            name=name, namespace=namespace, body=body
        )
        logger.info(
            f"Eviction of pod '{name}' in namespace '{namespace}' was requested "
            f"with a {grace_period_seconds}s grace period."
        )

    @retry_decorator
    @handle_exceptions
    def retrieve_daemon_set(
        self, daemon_set_name: str, daemon_set_namespace: str
    ) -> client.V1DaemonSet:
        """
        Retrieve a specific DaemonSet.

        Args:
            daemon_set_name (str): The name of the DaemonSet.
            daemon_set_namespace (str): The namespace of the DaemonSet.

        Returns:
            client.V1DaemonSet: The DaemonSet.
        """
        return self.apps_api.read_namespaced_daemon_set(
            daemon_set_name, daemon_set_namespace
        )

    @handle_exceptions
    def create_event(self, namespace: str, event: client.CoreV1Event) -> None:
        self.core_api.create_namespaced_event(namespace, event)

    def stream_node_events(
        self,
        watcher: watch.Watch,
        resource_version: Optional[str] = None,
        timeout_seconds: int = 300,
    ) -> Iterator[Any]:
        """
        Stream node change notifications.

        Args:
            watcher (watch.Watch): The watch to stream with. Calling its stop() ends the stream.
            resource_version (Optional[str]): Resume after this version, or list all nodes first when None.
            timeout_seconds (int): How long the server keeps the stream open.

        Returns:
            Iterator[Any]: Watch events with ``type`` and ``object`` keys.
        """
        return watcher.stream(
            self.core_api.list_node,
            resource_version=resource_version,
            timeout_seconds=timeout_seconds,
        )

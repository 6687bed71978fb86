"""Cordon and drain nodes through the Kubernetes API."""

# Standard library imports
import logging
import math
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Optional

# Third party imports
from kubernetes import client
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .errors import CordonError, DrainError
from .k8s import (
    KubernetesClient,
    describe_api_error,
    is_not_found,
    is_too_many_requests,
    is_transient,
)
from .models import DrainResult, EvictionOutcome, PodResult
from .pod_filters import PodFilterSet

logger = logging.getLogger(__name__)

DEFAULT_MAX_GRACE_PERIOD = 8 * 60.0
DEFAULT_EVICTION_HEADROOM = 30.0
DEFAULT_DRAIN_BUFFER = 10 * 60.0

# Kubernetes applies this grace period when a pod does not set one.
DEFAULT_POD_GRACE_PERIOD = 30

DEFAULT_EVICTION_RETRY_INTERVAL = 5.0
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_CORDON_ATTEMPTS = 5


class CordonDrainer(ABC):
    """Cordons and drains nodes."""

    @abstractmethod
    def cordon(self, node: client.V1Node) -> None:
        ...

    @abstractmethod
    def drain(self, node: client.V1Node) -> DrainResult:
        ...


class NoopCordonDrainer(CordonDrainer):
    """Pretends to cordon and drain, for dry runs."""

    def cordon(self, node: client.V1Node) -> None:
        logger.info(f"Dry run: would cordon node '{node.metadata.name}'")

    def drain(self, node: client.V1Node) -> DrainResult:
        logger.info(f"Dry run: would drain node '{node.metadata.name}'")
        return DrainResult(node_name=node.metadata.name)


class APICordonDrainer(CordonDrainer):
    """
    Cordons nodes and evicts their pods through the Kubernetes API.

    Args:
        kube (KubernetesClient): The cluster client.
        pod_filter (Optional[PodFilterSet]): Decides which pods are evicted. All pods when omitted.
        max_grace_period (float): Upper bound, in seconds, of the grace period given to evicted pods.
        eviction_headroom (float): Extra seconds to wait past a pod's grace period for it to be deleted.
        eviction_retry_interval (float): Seconds between eviction attempts rejected by a disruption budget.
        poll_interval (float): Seconds between checks that an evicted pod is gone.
        cordon_attempts (int): Attempts made to cordon a node on transient API errors.
        max_concurrent_evictions (Optional[int]): Pods of one node evicted in parallel. All of them when None.
        clock (Callable[[], float]): Monotonic clock in seconds.
        sleep (Callable[[float], None]): Sleep function.
    """

    def __init__(
        self,
        kube: KubernetesClient,
        pod_filter: Optional[PodFilterSet] = None,
        max_grace_period: float = DEFAULT_MAX_GRACE_PERIOD,
        eviction_headroom: float = DEFAULT_EVICTION_HEADROOM,
        eviction_retry_interval: float = DEFAULT_EVICTION_RETRY_INTERVAL,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        cordon_attempts: int = DEFAULT_CORDON_ATTEMPTS,
        max_concurrent_evictions: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.kube = kube
        self.pod_filter = pod_filter if pod_filter is not None else PodFilterSet()
        self.max_grace_period = max_grace_period
        self.eviction_headroom = eviction_headroom
        self.eviction_retry_interval = eviction_retry_interval
        self.poll_interval = poll_interval
        self.cordon_attempts = cordon_attempts
        self.max_concurrent_evictions = max_concurrent_evictions
        self._clock = clock
        self._sleep = sleep

    @property
    def drain_timeout(self) -> float:
        return self.max_grace_period + self.eviction_headroom

    def cordon(self, node: client.V1Node) -> None:
        """
        Mark a node unschedulable. Does nothing if it already is.

        Args:
            node (client.V1Node): The node to cordon.

        Raises:
            CordonError: If the node could not be cordoned.
        """
        node_name = node.metadata.name
        if node.spec is not None and node.spec.unschedulable:
            logger.debug(f"Node '{node_name}' is already cordoned")
            return

        retrying = Retrying(
            stop=stop_after_attempt(self.cordon_attempts),
            wait=wait_exponential(multiplier=1, max=10),
            retry=retry_if_exception(is_transient),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            retrying(self._cordon, node_name)
        except client.ApiException as e:
            raise CordonError(
                f"cannot cordon node '{node_name}': {describe_api_error(e)}"
            ) from e

    def _cordon(self, node_name: str) -> None:
        try:
            fresh = self.kube.get_node(node_name)
            if fresh.spec is not None and fresh.spec.unschedulable:
                logger.debug(f"Node '{node_name}' was cordoned by someone else")
                return
            self.kube.disable_node_scheduling(node_name)
        except client.ApiException as e:
            if is_not_found(e):
                logger.info(f"Node '{node_name}' no longer exists; nothing to cordon")
                return
            raise

    def grace_period_for(self, pod: client.V1Pod) -> int:
        grace = pod.spec.termination_grace_period_seconds
        if grace is None:
            grace = DEFAULT_POD_GRACE_PERIOD
        # Sub-second maximums round up to one second
        return math.ceil(min(grace, self.max_grace_period))

    def drain(self, node: client.V1Node) -> DrainResult:
        """
        Evict every eligible pod from a node and wait for them to be deleted.

        Each pod is given the max grace period plus the eviction headroom, counted from
        when its eviction starts.

        Args:
            node (client.V1Node): The node to drain.

        Returns:
            DrainResult: The outcome for every pod that was on the node.

        Raises:
            DrainError: If the pods on the node could not be listed or filtered.
        """
        node_name = node.metadata.name
        result = DrainResult(node_name=node_name)

        try:
            pods = self.kube.list_pods_in_specific_node(node_name)
        except client.ApiException as e:
            raise DrainError(
                f"cannot list pods on node '{node_name}': {describe_api_error(e)}"
            ) from e

        evictable = []
        for pod in pods:
            try:
                keep, reason = self.pod_filter.evaluate(pod)
            except client.ApiException as e:
                raise DrainError(
                    f"cannot decide whether to evict pod '{pod.metadata.namespace}/{pod.metadata.name}': "
                    f"{describe_api_error(e)}"
                ) from e
            if keep:
                evictable.append(pod)
                continue
            logger.info(
                f"Not evicting pod '{pod.metadata.namespace}/{pod.metadata.name}' from node '{node_name}': {reason}"
            )
            result.pods.append(
                PodResult(
                    namespace=pod.metadata.namespace,
                    name=pod.metadata.name,
                    outcome=EvictionOutcome.FILTERED_OUT,
                    reason=reason,
                )
            )

        if evictable:
            workers = len(evictable)
            if self.max_concurrent_evictions:
                workers = min(self.max_concurrent_evictions, workers)
            with ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix=f"evict-{node_name}"
            ) as pool:
                futures = [pool.submit(self._evict, pod) for pod in evictable]
                for future in as_completed(futures):
                    result.pods.append(future.result())

        logger.info(f"Drain of node '{node_name}' finished: {result.summary()}")
        return result

    def _evict(self, pod: client.V1Pod) -> PodResult:
        deadline = self._clock() + self.drain_timeout
        namespace = pod.metadata.namespace
        name = pod.metadata.name
        grace_period = self.grace_period_for(pod)

        retrying = Retrying(
            stop=self._stop_at(deadline),
            wait=self._wait_until(deadline),
            retry=retry_if_exception(is_transient),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.INFO),
            reraise=True,
        )
        try:
            retrying(self.kube.evict_pod, pod, grace_period)
        except client.ApiException as e:
            attempts = retrying.statistics.get("attempt_number", 1)
            if is_not_found(e):
                return PodResult(namespace, name, EvictionOutcome.EVICTED, "already gone", attempts)
            if is_too_many_requests(e):
                return PodResult(
                    namespace,
                    name,
                    EvictionOutcome.TIMED_OUT,
                    f"eviction still rejected when the eviction deadline passed: {describe_api_error(e)}",
                    attempts,
                )
            return PodResult(
                namespace, name, EvictionOutcome.FAILED, f"cannot evict: {describe_api_error(e)}", attempts
            )
        attempts = retrying.statistics.get("attempt_number", 1)

        timeout = min(grace_period + self.eviction_headroom, max(deadline - self._clock(), 0.0))
        try:
            deleted = self._await_deletion(pod, timeout)
        except client.ApiException as e:
            return PodResult(
                namespace,
                name,
                EvictionOutcome.FAILED,
                f"cannot confirm deletion: {describe_api_error(e)}",
                attempts,
            )
        if deleted:
            return PodResult(namespace, name, EvictionOutcome.EVICTED, "", attempts)
        return PodResult(
            namespace,
            name,
            EvictionOutcome.TIMED_OUT,
            f"still present {timeout:.0f}s after eviction",
            attempts,
        )

    def _await_deletion(self, pod: client.V1Pod, timeout: float) -> bool:
        """Poll until the pod is gone or replaced by a pod with a different uid."""
        give_up = self._clock() + timeout
        while True:
            try:
                current = self.kube.retrieve_pod(pod.metadata.name, pod.metadata.namespace)
            except client.ApiException as e:
                if is_not_found(e):
                    return True
                if not is_transient(e):
                    raise
            else:
                if current.metadata.uid != pod.metadata.uid:
                    return True
            remaining = give_up - self._clock()
            if remaining <= 0:
                return False
            self._sleep(min(self.poll_interval, remaining))

    def _stop_at(self, deadline: float) -> Callable:
        def stop(retry_state) -> bool:
            return self._clock() >= deadline

        return stop

    def _wait_until(self, deadline: float) -> Callable:
        def wait(retry_state) -> float:
            return max(0.0, min(self.eviction_retry_interval, deadline - self._clock()))

        return wait

# Standard library imports
import logging
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Sequence, Tuple

# Third party imports
from kubernetes import client

from .k8s import KubernetesClient, is_not_found
from .utils.parsing import parse_annotation_marker

logger = logging.getLogger(__name__)

MIRROR_POD_ANNOTATION = "kubernetes.io/config.mirror"
FINISHED_POD_PHASES = ("Succeeded", "Failed")

FilterVerdict = Tuple[bool, str]


def controller_reference(pod: client.V1Pod) -> Optional[client.V1OwnerReference]:
    for reference in pod.metadata.owner_references or []:
        if reference.controller:
            return reference
    return None


class PodFilter(ABC):
    """Decides whether a pod may be evicted. evaluate() returns (keep, reason)."""

    @abstractmethod
    def evaluate(self, pod: client.V1Pod) -> FilterVerdict:
        ...


class MirrorPodFilter(PodFilter):
    def evaluate(self, pod: client.V1Pod) -> FilterVerdict:
        if MIRROR_POD_ANNOTATION in (pod.metadata.annotations or {}):
            return False, "mirror pod of a static pod"
        return True, ""


class LocalStoragePodFilter(PodFilter):
    def evaluate(self, pod: client.V1Pod) -> FilterVerdict:
        for volume in pod.spec.volumes or []:
            if volume.empty_dir is not None:
                return False, f"uses local storage volume '{volume.name}'"
        return True, ""


class UnreplicatedPodFilter(PodFilter):
    def evaluate(self, pod: client.V1Pod) -> FilterVerdict:
        # Finished pods are never recreated, evicting them loses nothing.
        if pod.status is not None and pod.status.phase in FINISHED_POD_PHASES:
            return True, ""
        if controller_reference(pod) is not None:
            return True, ""
        return False, "not managed by a controller"


class DaemonSetPodFilter(PodFilter):
    """
    Excludes pods managed by a DaemonSet that still exists.

    Args:
        kube (KubernetesClient): Used to check whether the owning DaemonSet exists.
    """

    def __init__(self, kube: KubernetesClient):
        self.kube = kube

    def evaluate(self, pod: client.V1Pod) -> FilterVerdict:
        reference = controller_reference(pod)
        if reference is None or reference.kind != "DaemonSet":
            return True, ""
        try:
            self.kube.retrieve_daemon_set(reference.name, pod.metadata.namespace)
        except client.ApiException as e:
            if is_not_found(e):
                logger.debug(
                    f"DaemonSet '{reference.name}' of pod '{pod.metadata.name}' is gone; pod is orphaned"
                )
                return True, ""
            raise
        return False, f"managed by DaemonSet '{reference.name}'"


class ProtectedAnnotationPodFilter(PodFilter):
    """Excludes pods carrying any of the given ``KEY`` or ``KEY=VALUE`` annotations."""

    def __init__(self, markers: Iterable[str]):
        self.markers = [parse_annotation_marker(marker) for marker in markers]

    def evaluate(self, pod: client.V1Pod) -> FilterVerdict:
        annotations = pod.metadata.annotations or {}
        for key, value in self.markers:
            if key not in annotations:
                continue
            if value is None:
                return False, f"protected by annotation '{key}'"
            if annotations[key] == value:
                return False, f"protected by annotation '{key}={value}'"
        return True, ""


class PodFilterSet:
    """A pod is evicted only if every filter keeps it."""

    def __init__(self, filters: Sequence[PodFilter] = ()):
        self.filters: List[PodFilter] = list(filters)

    def evaluate(self, pod: client.V1Pod) -> FilterVerdict:
        for pod_filter in self.filters:
            keep, reason = pod_filter.evaluate(pod)
            if not keep:
                return False, reason
        return True, ""


def build_pod_filters(
    kube: KubernetesClient,
    evict_daemonset_pods: bool = False,
    evict_local_storage_pods: bool = False,
    evict_unreplicated_pods: bool = False,
    protected_annotations: Sequence[str] = (),
) -> PodFilterSet:
    filters: List[PodFilter] = [MirrorPodFilter()]
    if not evict_local_storage_pods:
        filters.append(LocalStoragePodFilter())
    if not evict_unreplicated_pods:
        filters.append(UnreplicatedPodFilter())
    if not evict_daemonset_pods:
        filters.append(DaemonSetPodFilter(kube))
    if protected_annotations:
        filters.append(ProtectedAnnotationPodFilter(protected_annotations))
    return PodFilterSet(filters)

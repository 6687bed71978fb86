from __future__ import annotations

import threading
import time
from unittest.mock import MagicMock

import pytest
from kubernetes import client

from fakes import FakeClock, FakeKube, api_error, make_node, make_pod
from node_drainer.drainer import APICordonDrainer, CordonDrainer, NoopCordonDrainer
from node_drainer.k8s import KubernetesClient
from node_drainer.errors import CordonError, DrainError
from node_drainer.models import EvictionOutcome
from node_drainer.pod_filters import build_pod_filters


def make_drainer(kube: FakeKube, clock: FakeClock, **kwargs) -> APICordonDrainer:
    kwargs.setdefault("pod_filter", build_pod_filters(kube))
    kwargs.setdefault("max_concurrent_evictions", 1)
    return APICordonDrainer(kube, clock=clock, sleep=clock.sleep, **kwargs)


def outcomes(result):
    return {pod.key: pod.outcome for pod in result.pods}


# Cordon


def test_cordon_is_idempotent(clock):
    """Test cordoning twice patches the node once and succeeds both times."""
    kube = FakeKube(nodes=[make_node("n1")])
    drainer = make_drainer(kube, clock)

    drainer.cordon(make_node("n1"))
    drainer.cordon(make_node("n1"))

    assert kube.patches == ["n1"]
    assert kube.nodes["n1"].spec.unschedulable is True


def test_cordon_skips_nodes_already_unschedulable(clock):
    """Test a cordoned node is not read or patched."""
    kube = FakeKube()
    kube.get_node_errors.append(api_error(500))
    make_drainer(kube, clock).cordon(make_node("n1", unschedulable=True))
    assert kube.patches == []
    assert kube.get_node_errors


def test_cordon_of_missing_node_succeeds(clock):
    """Test a node that no longer exists needs no cordoning."""
    make_drainer(FakeKube(), clock).cordon(make_node("gone"))


def test_cordon_retries_transient_errors(clock):
    """Test throttling and server errors are retried with backoff."""
    kube = FakeKube(nodes=[make_node("n1")])
    kube.patch_errors.extend([api_error(429), api_error(503)])
    make_drainer(kube, clock).cordon(make_node("n1"))
    assert kube.patches == ["n1"]
    assert len(clock.sleeps) == 2


def test_cordon_reads_are_retried_only_by_the_cordon_loop(clock):
    """Test a run of server errors costs one node read per cordon attempt, with backoff on the injected clock."""
    kube = KubernetesClient(client.ApiClient(client.Configuration()))
    kube.core_api = MagicMock()
    kube.core_api.read_node.side_effect = api_error(503, "Service Unavailable")

    with pytest.raises(CordonError, match="503"):
        make_drainer(kube, clock, cordon_attempts=5).cordon(make_node("n1"))

    assert kube.core_api.read_node.call_count == 5
    assert len(clock.sleeps) == 4
    kube.core_api.patch_node.assert_not_called()


def test_cordon_gives_up_after_attempts(clock):
    """Test persistent transient errors become a CordonError."""
    kube = FakeKube(nodes=[make_node("n1")])
    kube.patch_errors.extend([api_error(500)] * 10)
    with pytest.raises(CordonError):
        make_drainer(kube, clock, cordon_attempts=3).cordon(make_node("n1"))
    assert len(kube.patch_errors) == 7


def test_cordon_does_not_retry_fatal_errors(clock):
    """Test a forbidden patch fails immediately."""
    kube = FakeKube(nodes=[make_node("n1")])
    kube.patch_errors.extend([api_error(403, "Forbidden"), api_error(403, "Forbidden")])
    with pytest.raises(CordonError, match="403"):
        make_drainer(kube, clock).cordon(make_node("n1"))
    assert clock.sleeps == []


# Drain


def test_drain_evicts_all_eligible_pods(clock):
    """Test every kept pod is evicted and the drain succeeds."""
    kube = FakeKube(pods=[make_pod("web-1"), make_pod("web-2"), make_pod("other", node_name="n2")])
    result = make_drainer(kube, clock).drain(make_node("n1"))

    assert result.succeeded
    assert outcomes(result) == {
        "default/web-1": EvictionOutcome.EVICTED,
        "default/web-2": EvictionOutcome.EVICTED,
    }
    assert ("default", "other") in kube.pods


def test_drain_evicts_pods_concurrently(clock):
    """Test several eviction workers reach the same result."""
    pods = [make_pod(f"web-{i}") for i in range(6)]
    kube = FakeKube(pods=pods)
    result = make_drainer(kube, clock, max_concurrent_evictions=4).drain(make_node("n1"))
    assert result.succeeded
    assert len(result.with_outcome(EvictionOutcome.EVICTED)) == 6


def test_grace_period_is_capped(clock):
    """Test the eviction grace period is the smaller of the pod's and the maximum."""
    kube = FakeKube(pods=[make_pod("slow", grace_period=3600), make_pod("fast", grace_period=5)])
    make_drainer(kube, clock, max_grace_period=60).drain(make_node("n1"))
    assert sorted(kube.evictions) == [("default/fast", 5), ("default/slow", 60)]


def test_grace_period_defaults_when_unset(clock):
    """Test pods without a grace period get the Kubernetes default."""
    kube = FakeKube(pods=[make_pod("web")])
    make_drainer(kube, clock).drain(make_node("n1"))
    assert kube.evictions == [("default/web", 30)]


def test_filtered_pod_is_not_evicted_and_drain_succeeds(clock):
    """Test a local storage pod is left alone and does not fail the drain."""
    kube = FakeKube(pods=[make_pod("p1", empty_dirs=["cache"]), make_pod("web")])
    result = make_drainer(kube, clock).drain(make_node("n1"))

    assert result.succeeded
    assert outcomes(result) == {
        "default/p1": EvictionOutcome.FILTERED_OUT,
        "default/web": EvictionOutcome.EVICTED,
    }
    assert "cache" in result.with_outcome(EvictionOutcome.FILTERED_OUT)[0].reason
    assert [key for key, _ in kube.evictions] == ["default/web"]


def test_disruption_budget_rejection_retried_until_deadline(clock):
    """Test a pod whose eviction is always rejected times out at its eviction deadline."""
    kube = FakeKube(pods=[make_pod("p2"), make_pod("web")])
    kube.always_reject.add("default/p2")
    drainer = make_drainer(
        kube, clock, max_grace_period=60, eviction_headroom=30, eviction_retry_interval=5
    )
    started = clock()

    result = drainer.drain(make_node("n1"))

    assert not result.succeeded
    assert outcomes(result)["default/p2"] is EvictionOutcome.TIMED_OUT
    assert outcomes(result)["default/web"] is EvictionOutcome.EVICTED
    assert clock() - started == pytest.approx(90)
    rejected = [pod for pod in result.pods if pod.key == "default/p2"][0]
    assert rejected.attempts == 19
    assert "default/p2" in result.error_summary()


def test_disruption_budget_rejection_then_success(clock):
    """Test an eviction accepted after a few rejections counts as evicted."""
    kube = FakeKube(pods=[make_pod("p2")])
    kube.eviction_errors["default/p2"] = [api_error(429), api_error(429)]
    result = make_drainer(kube, clock, eviction_retry_interval=5).drain(make_node("n1"))

    assert result.succeeded
    assert result.pods[0].attempts == 3
    assert result.retries == 2
    assert clock.sleeps[:2] == [5, 5]


def test_eviction_of_vanished_pod_counts_as_evicted(clock):
    """Test a pod deleted before its eviction is a success."""
    kube = FakeKube(pods=[make_pod("web")])
    kube.eviction_errors["default/web"] = [api_error(404)]
    result = make_drainer(kube, clock).drain(make_node("n1"))
    assert result.succeeded
    assert result.pods[0].outcome is EvictionOutcome.EVICTED


def test_eviction_rejected_outright_fails(clock):
    """Test a non-retryable eviction error fails the pod and the drain."""
    kube = FakeKube(pods=[make_pod("web")])
    kube.eviction_errors["default/web"] = [api_error(403, "Forbidden")]
    result = make_drainer(kube, clock).drain(make_node("n1"))
    assert not result.succeeded
    assert result.pods[0].outcome is EvictionOutcome.FAILED
    assert "403" in result.pods[0].reason


def test_wait_for_deletion_is_bounded_by_grace_and_headroom(clock):
    """Test a pod that never disappears is waited on for grace period plus headroom only."""
    kube = FakeKube(pods=[make_pod("stuck", grace_period=10)])
    kube.never_gone.add("default/stuck")
    drainer = make_drainer(kube, clock, max_grace_period=60, eviction_headroom=5)
    started = clock()

    result = drainer.drain(make_node("n1"))

    assert result.pods[0].outcome is EvictionOutcome.TIMED_OUT
    assert clock() - started == pytest.approx(15)
    assert not result.succeeded


def test_wait_for_deletion_polls_until_gone(clock):
    """Test eviction success is confirmed by the pod disappearing."""
    kube = FakeKube(pods=[make_pod("web")])
    kube.reads_until_gone["default/web"] = 3
    result = make_drainer(kube, clock, poll_interval=1).drain(make_node("n1"))
    assert result.succeeded
    assert kube.pod_reads["default/web"] == 4
    assert clock.sleeps == [1, 1, 1]


def test_replaced_pod_counts_as_evicted(clock):
    """Test a pod recreated under the same name with a new uid is treated as gone."""
    kube = FakeKube(pods=[make_pod("web")])
    kube.replaced.add("default/web")
    kube.never_gone.discard("default/web")
    result = make_drainer(kube, clock).drain(make_node("n1"))
    assert result.succeeded


def test_drain_without_pods_succeeds(clock):
    """Test an empty node drains trivially."""
    result = make_drainer(FakeKube(), clock).drain(make_node("n1"))
    assert result.succeeded
    assert result.pods == []


def test_drain_fails_when_pods_cannot_be_listed(clock):
    """Test a pod listing error raises DrainError."""
    kube = FakeKube()
    kube.list_errors.append(api_error(403, "Forbidden"))
    with pytest.raises(DrainError, match="cannot list pods"):
        make_drainer(kube, clock).drain(make_node("n1"))


def test_drain_fails_when_pod_filter_errors(clock):
    """Test a DaemonSet lookup error raises DrainError."""
    kube = FakeKube(pods=[make_pod("agent", owner_kind="DaemonSet", owner_name="agent")])
    kube.daemon_set_errors.append(api_error(403, "Forbidden"))
    with pytest.raises(DrainError, match="agent"):
        make_drainer(kube, clock).drain(make_node("n1"))


def test_noop_drainer_touches_nothing():
    """Test the dry-run drainer always succeeds without cluster access."""
    drainer = NoopCordonDrainer()
    drainer.cordon(make_node("n1"))
    result = drainer.drain(make_node("n1"))
    assert result.succeeded
    assert result.node_name == "n1"


class SlowDeletionKube(FakeKube):
    """Evicted pods disappear a fixed wall-clock delay after their eviction."""

    def __init__(self, delay: float, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay
        self.evicted_at = {}
        self._evicted_lock = threading.Lock()

    def evict_pod(self, pod, grace_period_seconds):
        super().evict_pod(pod, grace_period_seconds)
        with self._evicted_lock:
            self.evicted_at[(pod.metadata.namespace, pod.metadata.name)] = time.monotonic()

    def retrieve_pod(self, pod_name, pod_namespace):
        with self._evicted_lock:
            evicted_at = self.evicted_at.get((pod_namespace, pod_name))
        if evicted_at is not None and time.monotonic() - evicted_at >= self.delay:
            raise api_error(404, "Not Found")
        return self.pods[(pod_namespace, pod_name)]


def test_drain_evicts_every_pod_at_once():
    """Test a node with many slow-terminating pods drains within one grace period plus headroom."""
    pods = [make_pod(f"p{i}", grace_period=1) for i in range(15)]
    kube = SlowDeletionKube(0.8, pods=pods)
    drainer = APICordonDrainer(
        kube,
        pod_filter=build_pod_filters(kube),
        max_grace_period=1.0,
        eviction_headroom=0.5,
        poll_interval=0.05,
    )

    result = drainer.drain(make_node("n1"))

    assert result.succeeded, result.error_summary()
    assert len(result.with_outcome(EvictionOutcome.EVICTED)) == 15


def test_pods_waiting_for_a_worker_get_a_full_deadline(clock):
    """Test a pod evicted after an earlier pod used up its deadline still gets its own deadline."""
    kube = FakeKube(pods=[make_pod("p2"), make_pod("web", grace_period=10)])
    kube.always_reject.add("default/p2")
    kube.reads_until_gone["default/web"] = 20
    drainer = make_drainer(kube, clock, max_grace_period=60, eviction_headroom=30, poll_interval=1)

    result = drainer.drain(make_node("n1"))

    assert outcomes(result)["default/web"] is EvictionOutcome.EVICTED


def test_sub_second_max_grace_period_rounds_up(clock):
    """Test a sub-second maximum grace period still gives pods one second."""
    kube = FakeKube(pods=[make_pod("web", grace_period=30)])
    drainer = make_drainer(kube, clock, max_grace_period=0.5)

    assert drainer.grace_period_for(kube.pods[("default", "web")]) == 1
    drainer.drain(make_node("n1"))
    assert kube.evictions == [("default/web", 1)]


def test_cordon_drainer_is_abstract():
    """Test a drainer must implement both cordon and drain."""

    class CordonOnly(CordonDrainer):
        def cordon(self, node):
            pass

    with pytest.raises(TypeError):
        CordonDrainer()
    with pytest.raises(TypeError):
        CordonOnly()

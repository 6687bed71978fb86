# Standard library imports
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

CONDITION_TRUE = "True"


@dataclass(frozen=True)
class ConditionSpec:
    """A node condition that marks a node as unhealthy.

    Attributes:
        type (str): The node condition type, e.g. ``KernelDeadlock``.
        status (str): The condition status that counts as a match. Defaults to ``True``.
    """

    type: str
    status: str = CONDITION_TRUE

    def __str__(self) -> str:
        return f"{self.type}={self.status}"


class DrainPhase(Enum):
    CORDONED = "cordoned"
    SCHEDULED = "scheduled"
    DRAINING = "draining"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (DrainPhase.SUCCEEDED, DrainPhase.FAILED)


class EvictionOutcome(Enum):
    EVICTED = "evicted"
    FILTERED_OUT = "filtered-out"
    FAILED = "failed"
    TIMED_OUT = "timed-out"


@dataclass
class PodResult:
    namespace: str
    name: str
    outcome: EvictionOutcome
    reason: str = ""
    attempts: int = 0

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class DrainResult:
    """Aggregated per-pod outcomes of one node drain."""

    node_name: str
    pods: List[PodResult] = field(default_factory=list)

    def with_outcome(self, outcome: EvictionOutcome) -> List[PodResult]:
        return [pod for pod in self.pods if pod.outcome is outcome]

    @property
    def unevicted(self) -> List[PodResult]:
        return [
            pod
            for pod in self.pods
            if pod.outcome in (EvictionOutcome.FAILED, EvictionOutcome.TIMED_OUT)
        ]

    @property
    def succeeded(self) -> bool:
        # Filtered pods do not count against the drain.
        return not self.unevicted

    @property
    def retries(self) -> int:
        return sum(max(pod.attempts - 1, 0) for pod in self.pods)

    def summary(self) -> str:
        counts = [
            f"{len(self.with_outcome(outcome))} {outcome.value}"
            for outcome in EvictionOutcome
            if self.with_outcome(outcome)
        ]
        return ", ".join(counts) if counts else "no pods"

    def error_summary(self) -> Optional[str]:
        if self.succeeded:
            return None
        details = "; ".join(
            f"{pod.key} {pod.outcome.value}: {pod.reason}" for pod in self.unevicted
        )
        return f"{len(self.unevicted)} pod(s) not evicted: {details}"


@dataclass
class DrainRecord:
    """In-memory bookkeeping for one node's cordon and drain.

    Attributes:
        node_name (str): The name of the node.
        phase (DrainPhase): Where the node is in the cordon/drain state machine.
        scheduled_for (Optional[float]): Epoch seconds at which the drain may start.
        started_at (Optional[float]): Epoch seconds at which the drain started.
        finished_at (Optional[float]): Epoch seconds at which the drain finished.
        retries (int): Eviction retries made while draining.
        last_error (Optional[str]): Why the drain failed, if it did.
    """

    node_name: str
    phase: DrainPhase = DrainPhase.CORDONED
    scheduled_for: Optional[float] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    retries: int = 0
    last_error: Optional[str] = None

"""Filters deciding which node change notifications reach the drain scheduler.

Filters are evaluated in order and the chain stops at the first filter that
drops a node, so the cheapest and most selective filters go first.
"""

# Standard library imports
import logging
import threading
from abc import ABC, abstractmethod
from typing import List, Mapping, Optional, Sequence, Set

# Third party imports
from kubernetes import client

from .models import ConditionSpec

logger = logging.getLogger(__name__)


class NodeFilter(ABC):
    name = "node"

    @abstractmethod
    def evaluate(self, node: client.V1Node) -> bool:
        ...


class NodeLabelFilter(NodeFilter):
    """Keeps nodes whose labels carry every configured ``key=value`` pair."""

    name = "label"

    def __init__(self, labels: Optional[Mapping[str, str]] = None):
        self.labels = dict(labels or {})

    def evaluate(self, node: client.V1Node) -> bool:
        node_labels = node.metadata.labels or {}
        for key, value in self.labels.items():
            if node_labels.get(key) != value:
                return False
        return True


class NodeConditionFilter(NodeFilter):
    """Keeps nodes with at least one condition matching a configured spec."""

    name = "condition"

    def __init__(self, conditions: Sequence[ConditionSpec]):
        self.conditions = list(conditions)

    def offending_conditions(self, node: client.V1Node) -> List[client.V1NodeCondition]:
        node_conditions = (node.status.conditions if node.status else None) or []
        return [
            condition
            for condition in node_conditions
            if any(
                condition.type == spec.type and condition.status == spec.status
                for spec in self.conditions
            )
        ]

    def evaluate(self, node: client.V1Node) -> bool:
        return bool(self.offending_conditions(node))


class NodeSchedulableFilter(NodeFilter):
    """Drops nodes that are already cordoned."""

    name = "schedulable"

    def evaluate(self, node: client.V1Node) -> bool:
        return not (node.spec and node.spec.unschedulable)


class NodeProcessedFilter(NodeFilter):
    """Keeps each node at most once. Used in dry-run mode, where nodes are never cordoned."""

    name = "processed"

    def __init__(self):
        self._lock = threading.Lock()
        self._processed: Set[str] = set()

    def evaluate(self, node: client.V1Node) -> bool:
        node_name = node.metadata.name
        with self._lock:
            if node_name in self._processed:
                return False
            self._processed.add(node_name)
        return True

    def forget(self, node_name: str) -> None:
        with self._lock:
            self._processed.discard(node_name)


class FilterChain:
    def __init__(self, filters: Sequence[NodeFilter]):
        self.filters = list(filters)

    def first_rejecting(self, node: client.V1Node) -> Optional[NodeFilter]:
        """Return the first filter that drops the node, or None when every filter keeps it."""
        for node_filter in self.filters:
            if not node_filter.evaluate(node):
                logger.debug(
                    f"Node '{node.metadata.name}' dropped by the {node_filter.name} filter"
                )
                return node_filter
        return None

    def evaluate(self, node: client.V1Node) -> bool:
        return self.first_rejecting(node) is None

    def forget(self, node_name: str) -> None:
        for node_filter in self.filters:
            if isinstance(node_filter, NodeProcessedFilter):
                node_filter.forget(node_name)


def build_filter_chain(
    labels: Mapping[str, str],
    conditions: Sequence[ConditionSpec],
    dry_run: bool = False,
) -> FilterChain:
    filters: List[NodeFilter] = [
        NodeLabelFilter(labels),
        NodeConditionFilter(conditions),
        NodeSchedulableFilter(),
    ]
    if dry_run:
        filters.append(NodeProcessedFilter())
    return FilterChain(filters)

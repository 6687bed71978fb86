# Standard library imports
import logging
from typing import Optional

# Third party imports
import statsd
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest

logger = logging.getLogger(__name__)

NAMESPACE = "node_drainer"

RESULT_SUCCEEDED = "succeeded"
RESULT_FAILED = "failed"


class DrainerMetrics:
    """
    Counters for cordoned and drained nodes, tagged with the result.

    Samples are kept in a Prometheus registry for scraping and, when a statsd
    client is given, also pushed to statsd.

    Args:
        registry (Optional[CollectorRegistry]): Registry to register the counters in.
        statsd_client (Optional[statsd.StatsClient]): Optional statsd mirror.
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(
        self,
        registry: Optional[CollectorRegistry] = None,
        statsd_client: Optional[statsd.StatsClient] = None,
    ):
        self.registry = registry if registry is not None else CollectorRegistry()
        self.statsd = statsd_client
        self.nodes_cordoned = Counter(
            "cordoned_nodes_total",
            "Number of nodes cordoned.",
            ["result"],
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.nodes_drained = Counter(
            "drained_nodes_total",
            "Number of nodes drained.",
            ["result"],
            namespace=NAMESPACE,
            registry=self.registry,
        )

    def record_cordon(self, result: str) -> None:
        self.nodes_cordoned.labels(result=result).inc()
        if self.statsd is not None:
            self.statsd.incr(f"cordoned_nodes.{result}")

    def record_drain(self, result: str) -> None:
        self.nodes_drained.labels(result=result).inc()
        if self.statsd is not None:
            self.statsd.incr(f"drained_nodes.{result}")

    def expose(self) -> bytes:
        return generate_latest(self.registry)


def create_statsd_client(host: Optional[str], port: int = 8125) -> Optional[statsd.StatsClient]:
    if not host:
        return None
    logger.info(f"Mirroring metrics to statsd at {host}:{port}")
    return statsd.StatsClient(host, port, prefix=NAMESPACE)

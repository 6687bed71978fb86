# Standard library imports
import logging
import threading
from typing import Optional, Sequence, Tuple

from .config import DrainerConfig, load_config
from .drain_buffer import DrainBuffer
from .drainer import APICordonDrainer, CordonDrainer, NoopCordonDrainer
from .errors import ConfigurationError
from .events import EventRecorder
from .filters import build_filter_chain
from .k8s import KubernetesClient, create_api_client
from .metrics import DrainerMetrics, create_statsd_client
from .pod_filters import build_pod_filters
from .runner import LifecycleRunner, install_signal_handlers
from .scheduler import DrainScheduler
from .server import HTTPRunner, create_app
from .watch import NodeWatch

log_format = "%(asctime)s.%(msecs)03d [%(levelname)s] %(filename)s:%(lineno)d (%(funcName)s) - %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=log_format,
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # The Kubernetes client logs every request at debug level
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_node_watch(
    settings: DrainerConfig, kube: KubernetesClient, metrics: DrainerMetrics
) -> Tuple[NodeWatch, DrainScheduler]:
    """Wire the filter chain, scheduler and executor for the given settings."""
    drainer: CordonDrainer
    if settings.dry_run:
        drainer = NoopCordonDrainer()
    else:
        pod_filter = build_pod_filters(
            kube,
            evict_daemonset_pods=settings.evict_daemonset_pods,
            evict_local_storage_pods=settings.evict_local_storage_pods,
            evict_unreplicated_pods=settings.evict_unreplicated_pods,
            protected_annotations=settings.protected_pod_annotations,
        )
        drainer = APICordonDrainer(
            kube,
            pod_filter=pod_filter,
            max_grace_period=settings.max_grace_period,
            eviction_headroom=settings.eviction_headroom,
        )

    scheduler = DrainScheduler(
        drainer,
        DrainBuffer(settings.drain_buffer),
        EventRecorder(kube),
        metrics,
    )
    chain = build_filter_chain(settings.node_labels, settings.conditions, dry_run=settings.dry_run)
    return NodeWatch(kube, chain, scheduler), scheduler


def main(argv: Optional[Sequence[str]] = None) -> None:
    settings = load_config(argv)
    configure_logging(settings.debug)
    logger.info(
        f"Draining nodes matching {', '.join(str(c) for c in settings.conditions)}"
        + (" (dry run)" if settings.dry_run else "")
    )

    try:
        kube = KubernetesClient(create_api_client(settings.kubeconfig, settings.master))
    except ConfigurationError as e:
        raise SystemExit(f"cannot create Kubernetes client: {e}")

    try:
        metrics = DrainerMetrics(
            statsd_client=create_statsd_client(settings.statsd_host, settings.statsd_port)
        )
    except (ValueError, OSError) as e:
        raise SystemExit(f"cannot create metrics: {e}")

    nodes, scheduler = build_node_watch(settings, kube, metrics)
    web = HTTPRunner(create_app(metrics), settings.listen)

    stop = threading.Event()
    install_signal_handlers(stop)
    try:
        LifecycleRunner([nodes, web], stop).run()
    except Exception as e:
        raise SystemExit(f"error serving: {e}")
    finally:
        scheduler.stop()


if __name__ == "__main__":
    main()

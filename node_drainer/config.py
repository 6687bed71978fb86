# Standard library imports
import argparse
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

# Third party imports
from dotenv import find_dotenv, load_dotenv

from .drainer import DEFAULT_DRAIN_BUFFER, DEFAULT_EVICTION_HEADROOM, DEFAULT_MAX_GRACE_PERIOD
from .models import ConditionSpec
from .utils.parsing import (
    parse_annotation_marker,
    parse_condition_spec,
    parse_duration,
    parse_label_map,
    parse_listen_address,
)

ENV_PREFIX = "NODE_DRAINER_"

TRUTHY = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class DrainerConfig:
    """
    Settings of the node drainer.

    Attributes:
        conditions (Tuple[ConditionSpec, ...]): Node conditions that trigger a cordon and drain.
        node_labels (Dict[str, str]): Only nodes carrying all of these labels are eligible.
        listen (str): Address serving /metrics and /healthz.
        kubeconfig (Optional[str]): Path to a kubeconfig. In-cluster config when unset.
        master (Optional[str]): Kubernetes API server address.
        dry_run (bool): Record events without cordoning or draining.
        max_grace_period (float): Seconds evicted pods are given to terminate.
        eviction_headroom (float): Extra seconds to wait for an evicted pod to be deleted.
        drain_buffer (float): Minimum seconds between the starts of two drains.
    """

    conditions: Tuple[ConditionSpec, ...]
    node_labels: Dict[str, str] = field(default_factory=dict)
    debug: bool = False
    listen: str = ":10002"
    kubeconfig: Optional[str] = None
    master: Optional[str] = None
    dry_run: bool = False
    max_grace_period: float = DEFAULT_MAX_GRACE_PERIOD
    eviction_headroom: float = DEFAULT_EVICTION_HEADROOM
    drain_buffer: float = DEFAULT_DRAIN_BUFFER
    evict_daemonset_pods: bool = False
    evict_local_storage_pods: bool = False
    evict_unreplicated_pods: bool = False
    protected_pod_annotations: Tuple[str, ...] = ()
    statsd_host: Optional[str] = None
    statsd_port: int = 8125


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.getenv(ENV_PREFIX + name, default)


def _env_flag(name: str) -> bool:
    return (_env(name, "") or "").strip().lower() in TRUTHY


def _env_list(name: str) -> List[str]:
    value = _env(name, "") or ""
    return [item.strip() for item in value.split(",") if item.strip()]


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser. Every flag defaults to its NODE_DRAINER_* environment variable."""
    parser = argparse.ArgumentParser(
        prog="node-drainer",
        description="Automatically cordons and drains nodes that match the supplied conditions.",
    )
    parser.add_argument("-d", "--debug", action="store_true", default=_env_flag("DEBUG"),
                        help="Run with debug logging.")
    parser.add_argument("--listen", default=_env("LISTEN", ":10002"),
                        help="Address at which to expose /metrics and /healthz.")
    parser.add_argument("--kubeconfig", default=_env("KUBECONFIG"),
                        help="Path to kubeconfig file. Leave unset to use in-cluster config.")
    parser.add_argument("--master", default=_env("MASTER"),
                        help="Address of Kubernetes API server. Leave unset to use in-cluster config.")
    parser.add_argument("--dry-run", action="store_true", default=_env_flag("DRY_RUN"),
                        help="Emit an event without cordoning or draining matching nodes.")
    parser.add_argument("--max-grace-period", default=_env("MAX_GRACE_PERIOD", "8m"),
                        help="Maximum time evicted pods will be given to terminate gracefully.")
    parser.add_argument("--eviction-headroom", default=_env("EVICTION_HEADROOM", "30s"),
                        help="Additional time to wait after a pod's termination grace period for it to have been deleted.")
    parser.add_argument("--drain-buffer", default=_env("DRAIN_BUFFER", "10m"),
                        help="Minimum time between starting each drain. Nodes are always cordoned immediately.")
    parser.add_argument("--node-label", action="append", metavar="KEY=VALUE",
                        default=_env_list("NODE_LABEL"),
                        help="Only nodes with this label will be eligible for cordoning and draining. "
                             "May be specified multiple times.")
    parser.add_argument("--evict-daemonset-pods", action="store_true",
                        default=_env_flag("EVICT_DAEMONSET_PODS"),
                        help="Evict pods that were created by an extant DaemonSet.")
    parser.add_argument("--evict-emptydir-pods", dest="evict_local_storage_pods", action="store_true",
                        default=_env_flag("EVICT_EMPTYDIR_PODS"),
                        help="Evict pods with local storage, i.e. with emptyDir volumes.")
    parser.add_argument("--evict-unreplicated-pods", action="store_true",
                        default=_env_flag("EVICT_UNREPLICATED_PODS"),
                        help="Evict pods that were not created by a replication controller.")
    parser.add_argument("--protected-pod-annotation", action="append", metavar="KEY[=VALUE]",
                        default=_env_list("PROTECTED_POD_ANNOTATION"),
                        help="Protect pods with this annotation from eviction. May be specified multiple times.")
    parser.add_argument("--statsd-host", default=_env("STATSD_HOST"),
                        help="Also send metrics to the statsd server on this host.")
    parser.add_argument("--statsd-port", type=int, default=int(_env("STATSD_PORT", "8125")),
                        help="Port of the statsd server.")
    parser.add_argument("node_conditions", nargs="*", metavar="TYPE[=STATE]",
                        help="Nodes for which any of these conditions are true will be cordoned and drained.")
    return parser


def config_from_args(args: argparse.Namespace) -> DrainerConfig:
    """
    Validate parsed arguments into a DrainerConfig.

    Raises:
        ValueError: If any value is malformed or the combination is invalid.
    """
    condition_values = args.node_conditions or _env_list("NODE_CONDITIONS")
    if not condition_values:
        raise ValueError("at least one node condition is required")
    conditions = tuple(parse_condition_spec(value) for value in condition_values)

    max_grace_period = parse_duration(args.max_grace_period)
    eviction_headroom = parse_duration(args.eviction_headroom)
    drain_buffer = parse_duration(args.drain_buffer)
    for flag, value in (
        ("--max-grace-period", max_grace_period),
        ("--eviction-headroom", eviction_headroom),
        ("--drain-buffer", drain_buffer),
    ):
        if value < 0:
            raise ValueError(f"{flag} must not be negative")

    parse_listen_address(args.listen)
    for marker in args.protected_pod_annotation:
        parse_annotation_marker(marker)

    return DrainerConfig(
        conditions=conditions,
        node_labels=parse_label_map(args.node_label),
        debug=args.debug,
        listen=args.listen,
        kubeconfig=args.kubeconfig or None,
        master=args.master or None,
        dry_run=args.dry_run,
        max_grace_period=max_grace_period,
        eviction_headroom=eviction_headroom,
        drain_buffer=drain_buffer,
        evict_daemonset_pods=args.evict_daemonset_pods,
        evict_local_storage_pods=args.evict_local_storage_pods,
        evict_unreplicated_pods=args.evict_unreplicated_pods,
        protected_pod_annotations=tuple(args.protected_pod_annotation),
        statsd_host=args.statsd_host or None,
        statsd_port=args.statsd_port,
    )


def load_config(argv: Optional[Sequence[str]] = None) -> DrainerConfig:
    """Read settings from a .env file, the environment and the command line. Exits on invalid input."""
    load_dotenv(find_dotenv(usecwd=True))
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return config_from_args(args)
    except ValueError as e:
        parser.error(str(e))

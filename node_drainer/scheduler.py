"""Turns unhealthy node notifications into an immediate cordon and a buffered drain.

Each node moves through cordoned, scheduled, draining and finally succeeded or
failed. A node has at most one drain record at a time, so repeated
notifications for the same node do nothing until its record is cleared.
"""

# Standard library imports
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

# Third party imports
from kubernetes import client

from .drain_buffer import DrainBuffer
from .drainer import CordonDrainer
from .errors import AlreadyScheduledError, CordonError
from .events import (
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    REASON_CORDON_FAILED,
    REASON_CORDON_STARTING,
    REASON_CORDON_SUCCEEDED,
    REASON_DRAIN_FAILED,
    REASON_DRAIN_SCHEDULED,
    REASON_DRAIN_STARTING,
    REASON_DRAIN_SUCCEEDED,
    EventRecorder,
)
from .metrics import RESULT_FAILED, RESULT_SUCCEEDED, DrainerMetrics
from .models import DrainPhase, DrainRecord

logger = logging.getLogger(__name__)


def format_timestamp(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat(timespec="seconds")


class DrainScheduler:
    """
    Cordons unhealthy nodes and schedules their drains.

    Args:
        drainer (CordonDrainer): Performs cordons and drains.
        buffer (DrainBuffer): Spaces out drain start times.
        recorder (EventRecorder): Records node events.
        metrics (DrainerMetrics): Counts cordons and drains.
        timer_factory (Callable): Builds a startable, cancellable timer, like threading.Timer.
        clock (Callable[[], float]): Returns the current time in epoch seconds.
    """

    def __init__(
        self,
        drainer: CordonDrainer,
        buffer: DrainBuffer,
        recorder: EventRecorder,
        metrics: DrainerMetrics,
        timer_factory: Callable = threading.Timer,
        clock: Callable[[], float] = time.time,
    ):
        self.drainer = drainer
        self.buffer = buffer
        self.recorder = recorder
        self.metrics = metrics
        self._timer_factory = timer_factory
        self._clock = clock
        self._lock = threading.Lock()
        self._records: Dict[str, DrainRecord] = {}
        self._timers: Dict[str, object] = {}

    def handle_node(self, node: client.V1Node) -> None:
        """Cordon an unhealthy node and schedule its drain, unless it already has a drain record."""
        node_name = node.metadata.name
        has_schedule, _ = self.has_schedule(node_name)
        if has_schedule:
            logger.debug(f"Node '{node_name}' already has a drain record; ignoring")
            return

        self.recorder.event(node_name, EVENT_TYPE_NORMAL, REASON_CORDON_STARTING, "Cordoning node")
        try:
            self.drainer.cordon(node)
        except CordonError as e:
            logger.warning(f"Failed to cordon node '{node_name}': {e}")
            self.metrics.record_cordon(RESULT_FAILED)
            self.recorder.event(
                node_name, EVENT_TYPE_WARNING, REASON_CORDON_FAILED, f"Cordoning failed: {e}"
            )
            return
        logger.info(f"Cordoned node '{node_name}'")
        self.metrics.record_cordon(RESULT_SUCCEEDED)
        self.recorder.event(node_name, EVENT_TYPE_NORMAL, REASON_CORDON_SUCCEEDED, "Cordoned node")

        try:
            self.schedule(node)
        except AlreadyScheduledError as e:
            logger.debug(str(e))

    def schedule(self, node: client.V1Node) -> float:
        """
        Reserve a drain start time for a node and arm a timer for it.

        Args:
            node (client.V1Node): The node to drain.

        Returns:
            float: The time at which the drain will start, in epoch seconds.

        Raises:
            AlreadyScheduledError: If the node already has a drain record.
        """
        node_name = node.metadata.name
        with self._lock:
            existing = self._records.get(node_name)
            if existing is not None:
                raise AlreadyScheduledError(node_name, existing.scheduled_for)
            record = DrainRecord(node_name=node_name, phase=DrainPhase.CORDONED)
            self._records[node_name] = record

            now = self._clock()
            when = self.buffer.reserve(now)
            record.scheduled_for = when
            record.phase = DrainPhase.SCHEDULED
            timer = self._timer_factory(max(when - now, 0.0), self._run_drain, args=(node, record))
            timer.name = f"drain-{node_name}"
            self._timers[node_name] = timer
        timer.start()

        logger.info(f"Scheduled drain of node '{node_name}' for {format_timestamp(when)}")
        self.recorder.event(
            node_name,
            EVENT_TYPE_NORMAL,
            REASON_DRAIN_SCHEDULED,
            f"Will drain node after {format_timestamp(when)}",
        )
        return when

    def _run_drain(self, node: client.V1Node, record: DrainRecord) -> None:
        node_name = node.metadata.name
        with self._lock:
            if self._records.get(node_name) is not record:
                logger.info(f"Drain of node '{node_name}' was cancelled before it started")
                return
            self._timers.pop(node_name, None)
            record.phase = DrainPhase.DRAINING
            record.started_at = self._clock()

        self.recorder.event(node_name, EVENT_TYPE_NORMAL, REASON_DRAIN_STARTING, "Draining node")
        retries = 0
        try:
            result = self.drainer.drain(node)
            retries = result.retries
            error = result.error_summary()
        except Exception as e:
            logger.exception(f"Drain of node '{node_name}' raised an error")
            error = str(e) or type(e).__name__

        with self._lock:
            record.finished_at = self._clock()
            record.retries = retries
            record.last_error = error
            record.phase = DrainPhase.FAILED if error else DrainPhase.SUCCEEDED
            still_tracked = self._records.get(node_name) is record
        if not still_tracked:
            logger.info(f"Node '{node_name}' was removed while it was being drained")

        if error:
            logger.warning(f"Failed to drain node '{node_name}': {error}")
            self.metrics.record_drain(RESULT_FAILED)
            self.recorder.event(
                node_name, EVENT_TYPE_WARNING, REASON_DRAIN_FAILED, f"Draining failed: {error}"
            )
            return
        logger.info(f"Drained node '{node_name}'")
        self.metrics.record_drain(RESULT_SUCCEEDED)
        self.recorder.event(node_name, EVENT_TYPE_NORMAL, REASON_DRAIN_SUCCEEDED, "Drained node")

    def has_schedule(self, node_name: str) -> Tuple[bool, bool]:
        """Return whether the node has a drain record, and whether that drain failed."""
        with self._lock:
            record = self._records.get(node_name)
            if record is None:
                return False, False
            return True, record.phase is DrainPhase.FAILED

    def get_record(self, node_name: str) -> Optional[DrainRecord]:
        with self._lock:
            return self._records.get(node_name)

    def records(self) -> List[DrainRecord]:
        with self._lock:
            return list(self._records.values())

    def delete_schedule(self, node_name: str) -> None:
        """Forget a node that left the cluster. A drain already running is left to finish."""
        with self._lock:
            record = self._records.pop(node_name, None)
            timer = self._timers.pop(node_name, None)
        if timer is not None:
            timer.cancel()
        if record is not None:
            logger.info(f"Removed {record.phase.value} drain record of deleted node '{node_name}'")

    def clear_if_healthy(self, node_name: str) -> bool:
        """Drop the record of a finished drain once the node looks healthy again, so it can be drained again later."""
        with self._lock:
            record = self._records.get(node_name)
            if record is None or not record.phase.terminal:
                return False
            del self._records[node_name]
        logger.info(f"Node '{node_name}' is healthy again; cleared its {record.phase.value} drain record")
        return True

    def stop(self) -> None:
        """Cancel drains that have not started yet. Running drains continue."""
        with self._lock:
            timers = list(self._timers.items())
            self._timers.clear()
            for node_name, _ in timers:
                self._records.pop(node_name, None)
        for node_name, timer in timers:
            timer.cancel()
            logger.info(f"Cancelled pending drain of node '{node_name}'")

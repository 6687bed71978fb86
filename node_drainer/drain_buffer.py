# Standard library imports
import threading
import time
from typing import Callable, Optional


class DrainBuffer:
    """
    Spaces out the start times of drains across all nodes.

    Reservations never block. The caller gets back the time its drain may start
    and is expected to wait until then itself.

    Args:
        spacing (float): Minimum seconds between the starts of two drains.
        clock (Callable[[], float]): Returns the current time in epoch seconds.
    """

    def __init__(self, spacing: float, clock: Callable[[], float] = time.time):
        if spacing < 0:
            raise ValueError("drain buffer spacing must not be negative")
        self.spacing = spacing
        self._clock = clock
        self._lock = threading.Lock()
        self._last_reserved: Optional[float] = None

    @property
    def last_reserved(self) -> Optional[float]:
        with self._lock:
            return self._last_reserved

    def reserve(self, now: Optional[float] = None) -> float:
        """
        Reserve the next drain start time no earlier than now.

        Args:
            now (Optional[float]): The current time. Read from the clock when omitted.

        Returns:
            float: The reserved start time in epoch seconds.
        """
        if now is None:
            now = self._clock()
        with self._lock:
            if self._last_reserved is None:
                start = now
            else:
                start = max(now, self._last_reserved + self.spacing)
            self._last_reserved = start
            return start

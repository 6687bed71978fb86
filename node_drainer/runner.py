# Standard library imports
import logging
import signal
import threading
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)


class LifecycleRunner:
    """
    Runs long-lived components side by side and stops them together.

    Each component has a ``run(stop)`` method that returns once the shared stop
    event is set. When any component returns or raises, the stop event is set for
    all of them. run() waits for every component and re-raises the first failure.

    Args:
        runners (Sequence): Components with a ``run(stop: threading.Event)`` method.
        stop (Optional[threading.Event]): The shared stop event.
    """

    def __init__(self, runners: Sequence, stop: Optional[threading.Event] = None):
        self.runners = list(runners)
        self.stop = stop if stop is not None else threading.Event()
        self._errors: List[BaseException] = []
        self._lock = threading.Lock()

    def _run_one(self, runner) -> None:
        try:
            runner.run(self.stop)
        except Exception as e:
            logger.exception(f"{type(runner).__name__} failed")
            with self._lock:
                self._errors.append(e)
        finally:
            self.stop.set()

    def run(self) -> None:
        threads = [
            threading.Thread(target=self._run_one, args=(runner,), name=type(runner).__name__)
            for runner in self.runners
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            while thread.is_alive():
                thread.join(timeout=0.5)
        if self._errors:
            raise self._errors[0]


def install_signal_handlers(stop: threading.Event) -> None:
    def handler(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}; shutting down")
        stop.set()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)

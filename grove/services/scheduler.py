import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class _Job:
    name: str
    interval_s: float
    fn: Callable[[], None]
    next_run: float


class Scheduler:
    """Single background thread running periodic jobs.

    Jobs run on the scheduler thread; anything slow should hand work to a pool.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._jobs: list[_Job] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: threading.Thread | None = None

    def add_job(self, name: str, interval_s: float, fn: Callable[[], None], run_immediately: bool = True) -> None:
        """Schedule `fn` every `interval_s` seconds. A job with the same name is replaced."""
        first = self._clock() if run_immediately else self._clock() + interval_s
        with self._lock:
            self._jobs = [job for job in self._jobs if job.name != name]
            self._jobs.append(_Job(name=name, interval_s=interval_s, fn=fn, next_run=first))
        self._wake.set()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="grove-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def run_pending(self) -> int:
        """Run every due job once. Returns how many ran."""
        now = self._clock()
        with self._lock:
            due = [job for job in self._jobs if job.next_run <= now]
        for job in due:
            try:
                job.fn()
            except Exception:
                logger.warning("Scheduled job failed", extra={"job": job.name}, exc_info=True)
            job.next_run = self._clock() + job.interval_s
        return len(due)

    def _seconds_until_next(self) -> float:
        with self._lock:
            if not self._jobs:
                return 1.0
            return max(0.0, min(job.next_run for job in self._jobs) - self._clock())

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_pending()
            self._wake.wait(self._seconds_until_next())
            self._wake.clear()

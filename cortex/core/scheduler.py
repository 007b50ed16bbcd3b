"""Interval scheduler for background maintenance passes.

Consolidation, validation and session sweeps run on a daemon thread and
write through the engine, so they share the store's single write lock with
foreground calls. ``run_pending()`` fires due jobs synchronously, which is
what tests and single-threaded hosts use.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

if TYPE_CHECKING:
    from cortex.core.engine import MemoryEngine

logger = logging.getLogger(__name__)

DEFAULT_CONSOLIDATE_INTERVAL = 3600.0
DEFAULT_VALIDATE_INTERVAL = 86400.0
DEFAULT_SWEEP_INTERVAL = 600.0

# Longest the background loop sleeps before re-checking its jobs
MAX_IDLE_SECONDS = 60.0

JobFunc = Callable[[threading.Event], Any]


@dataclass
class ScheduledJob:
    name: str
    interval_seconds: float
    func: JobFunc
    next_run: float = 0.0
    last_run: Optional[float] = None
    last_status: Optional[str] = None  # "success" | "error"
    last_error: Optional[str] = None
    runs: int = 0
    enabled: bool = True

    def __post_init__(self):
        if self.interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive for job '{self.name}'")


class MaintenanceScheduler:
    """Runs registered jobs every ``interval_seconds``.

    Each job receives the scheduler's cancel event; ``stop()`` sets it so a
    long consolidation or validation pass ends between units of work.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._jobs: Dict[str, ScheduledJob] = {}
        self._jobs_lock = threading.Lock()
        self._run_lock = threading.Lock()
        self._cancel = threading.Event()
        self._wakeup = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def jobs(self) -> List[ScheduledJob]:
        with self._jobs_lock:
            return list(self._jobs.values())

    def register(
        self,
        name: str,
        interval_seconds: float,
        func: JobFunc,
        run_immediately: bool = False,
    ) -> ScheduledJob:
        """Add a job. Raises ValueError if the name is taken."""
        with self._jobs_lock:
            if name in self._jobs:
                raise ValueError(f"Job '{name}' already registered")
            job = ScheduledJob(name=name, interval_seconds=interval_seconds, func=func)
            job.next_run = self._clock() + (0.0 if run_immediately else interval_seconds)
            self._jobs[name] = job
        self._wakeup.set()
        logger.debug(f"Registered maintenance job '{name}' every {interval_seconds}s")
        return job

    def unregister(self, name: str) -> bool:
        with self._jobs_lock:
            return self._jobs.pop(name, None) is not None

    def register_defaults(
        self,
        engine: "MemoryEngine",
        consolidate_every: float = DEFAULT_CONSOLIDATE_INTERVAL,
        validate_every: float = DEFAULT_VALIDATE_INTERVAL,
        sweep_every: float = DEFAULT_SWEEP_INTERVAL,
    ) -> None:
        """Register consolidation, validation and session sweeping for ``engine``."""
        self.register(
            "consolidate", consolidate_every, lambda cancel: engine.consolidate(cancel_event=cancel)
        )
        self.register(
            "validate", validate_every, lambda cancel: engine.validate(cancel_event=cancel)
        )
        self.register("sweep_sessions", sweep_every, lambda cancel: engine.sweep_sessions())

    def run_pending(self) -> Dict[str, Any]:
        """Run every due job now, on this thread. Returns ``{job name: result}``.

        A failing job is logged and recorded on the job; the others still run.
        """
        results: Dict[str, Any] = {}
        with self._run_lock:
            now = self._clock()
            due = [j for j in self.jobs if j.enabled and j.next_run <= now]
            for job in sorted(due, key=lambda j: (j.next_run, j.name)):
                if self._cancel.is_set():
                    break
                results[job.name] = self._run_job(job)
        return results

    def _run_job(self, job: ScheduledJob) -> Any:
        logger.debug(f"Running maintenance job '{job.name}'")
        result = None
        try:
            result = job.func(self._cancel)
            job.last_status = "success"
            job.last_error = None
        except Exception as e:
            logger.error(f"Maintenance job '{job.name}' failed: {e}", exc_info=True)
            job.last_status = "error"
            job.last_error = str(e)
        job.runs += 1
        job.last_run = self._clock()
        job.next_run = job.last_run + job.interval_seconds
        return result

    def _seconds_until_next(self) -> float:
        pending = [j.next_run for j in self.jobs if j.enabled]
        if not pending:
            return MAX_IDLE_SECONDS
        return max(0.0, min(min(pending) - self._clock(), MAX_IDLE_SECONDS))

    def _loop(self) -> None:
        while not self._cancel.is_set():
            self.run_pending()
            self._wakeup.clear()
            self._wakeup.wait(timeout=self._seconds_until_next())

    def start(self) -> None:
        """Start the background thread. No-op if already running."""
        if self.is_running:
            return
        self._cancel.clear()
        self._thread = threading.Thread(target=self._loop, name="cortex-maintenance", daemon=True)
        self._thread.start()
        logger.info(f"Maintenance scheduler started with {len(self.jobs)} job(s)")

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Set the cancel event, wake the loop and join the thread."""
        self._cancel.set()
        self._wakeup.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Maintenance thread did not stop within timeout")
            self._thread = None
        logger.info("Maintenance scheduler stopped")

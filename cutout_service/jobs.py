"""In-process registry of recent jobs so results can be downloaded or saved later."""

from __future__ import annotations

from collections import OrderedDict
import logging
from threading import Lock
from typing import Optional

from .pipeline import ProcessingJob

logger = logging.getLogger(__name__)


class JobRegistry:
    """Keeps the `capacity` most recently added jobs; older ones are evicted."""

    def __init__(self, capacity: int = 64):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._jobs: "OrderedDict[str, ProcessingJob]" = OrderedDict()
        self._lock = Lock()

    def add(self, job: ProcessingJob) -> None:
        with self._lock:
            self._jobs[job.job_id] = job
            self._jobs.move_to_end(job.job_id)
            while len(self._jobs) > self.capacity:
                evicted, _ = self._jobs.popitem(last=False)
                logger.debug("Evicted job %s", evicted)

    def get(self, job_id: str) -> Optional[ProcessingJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

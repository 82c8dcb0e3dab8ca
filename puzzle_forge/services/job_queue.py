"""Job triggers that hand puzzle ids to the job runner."""

import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, Optional

from puzzle_forge.models.puzzle_model import JobParams
from puzzle_forge.services.job_orchestrator import JobOutcome, PuzzleJobRunner

logger = logging.getLogger(__name__)


class JobTrigger(ABC):
    """Starts the generation job for a puzzle."""

    @abstractmethod
    def enqueue(self, puzzle_id: str, params: Optional[JobParams] = None) -> None:
        """Schedule the job; called once the source image and record exist."""


class InlineJobTrigger(JobTrigger):
    """Runs the job synchronously in the caller's thread."""

    def __init__(self, runner: PuzzleJobRunner) -> None:
        self.runner = runner
        self.outcomes: Dict[str, JobOutcome] = {}

    def enqueue(self, puzzle_id: str, params: Optional[JobParams] = None) -> None:
        params = params or JobParams(puzzle_id=puzzle_id)
        self.outcomes[puzzle_id] = self.runner.run(params)


class ThreadPoolJobTrigger(JobTrigger):
    """Runs jobs on a background worker pool.

    A puzzle id with a job still in flight is not scheduled a second time, so
    two jobs never run against the same puzzle.
    """

    def __init__(self, runner: PuzzleJobRunner, max_workers: int = 2) -> None:
        self.runner = runner
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="puzzle-job")
        self._in_flight: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def enqueue(self, puzzle_id: str, params: Optional[JobParams] = None) -> None:
        params = params or JobParams(puzzle_id=puzzle_id)
        with self._lock:
            if puzzle_id in self._in_flight:
                logger.warning("Job for puzzle %s is already running, not scheduling again", puzzle_id)
                return
            future = self._executor.submit(self.runner.run, params)
            self._in_flight[puzzle_id] = future
        future.add_done_callback(lambda f: self._done(puzzle_id, f))

    def _done(self, puzzle_id: str, future: Future) -> None:
        with self._lock:
            self._in_flight.pop(puzzle_id, None)
        error = future.exception()
        if error is not None:
            logger.error("Job for puzzle %s stopped before completion: %s", puzzle_id, error)
        else:
            logger.info("Job for puzzle %s finished: %s", puzzle_id, future.result().value)

    def wait(self, puzzle_id: str, timeout: Optional[float] = None) -> Optional[JobOutcome]:
        """Block until the puzzle's in-flight job finishes."""
        with self._lock:
            future = self._in_flight.get(puzzle_id)
        return future.result(timeout=timeout) if future is not None else None

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

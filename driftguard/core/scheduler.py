"""
Job Scheduler
-------------
This module provides the ticker and delayed-call abstraction used by the
monitoring components: periodic drift scans, correlation sweeps, audit
maintenance and per-alert escalation checks.

Features:
- Asynchronous scheduling using asyncio
- Retry with exponential backoff for periodic jobs
- Delayed one-shot calls whose failures are logged, never raised
- Cancellation of every task on shutdown
- Health monitoring and status reporting
"""

import asyncio
import logging
import random
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class SchedulerStatus(str, Enum):
    """Health status of the scheduler."""
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class JobStatus(str, Enum):
    """Status of an individual job run."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Constants
MAX_JOB_HISTORY = 100
MAX_RETRY_COUNT = 3
BASE_RETRY_DELAY = 5  # seconds
JITTER_FACTOR = 0.2  # Add up to 20% jitter to avoid thundering herd


class Scheduler:
    """
    Owns every background task of one monitoring process.

    Periodic jobs are registered with ``every`` and one-shot delayed calls
    with ``call_later``. ``stop`` cancels all of them, so no timer outlives
    the component that created it.
    """

    def __init__(
        self,
        max_retries: int = MAX_RETRY_COUNT,
        base_retry_delay: float = BASE_RETRY_DELAY,
        jitter_factor: float = JITTER_FACTOR,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.max_retries = max_retries
        self.base_retry_delay = base_retry_delay
        self.jitter_factor = jitter_factor
        self.clock = clock
        self.status = SchedulerStatus.STOPPED
        self.start_time: Optional[datetime] = None
        self._jobs: Dict[str, asyncio.Task] = {}
        self._delayed: Set[asyncio.Task] = set()
        self._history: List[Dict[str, Any]] = []
        self._stats = {
            "total_runs": 0,
            "successful_runs": 0,
            "failed_runs": 0,
            "last_run_time": None,
            "last_success_time": None,
            "last_failure_time": None,
            "average_duration": 0,
        }

    def now(self) -> datetime:
        return self.clock()

    @property
    def running(self) -> bool:
        return self.status in (SchedulerStatus.STARTING, SchedulerStatus.RUNNING)

    def start(self) -> None:
        """Start the scheduler to enable background jobs."""
        if self.running:
            logger.warning("Scheduler is already running or starting")
            return

        logger.info("Starting scheduler")
        self.status = SchedulerStatus.STARTING
        self.start_time = self.now()
        self.status = SchedulerStatus.RUNNING
        logger.info("Scheduler started")

    async def stop(self) -> None:
        """Cancel all periodic jobs and pending delayed calls."""
        if self.status in (SchedulerStatus.STOPPED, SchedulerStatus.STOPPING):
            logger.warning("Scheduler is already stopped or stopping")
            return

        logger.info("Stopping scheduler")
        self.status = SchedulerStatus.STOPPING

        tasks = list(self._jobs.values()) + list(self._delayed)
        for task in tasks:
            if not task.done():
                task.cancel()

        pending = [task for task in tasks if not task.done()]
        if pending:
            logger.info(f"Waiting for {len(pending)} tasks to finish")
            await asyncio.gather(*pending, return_exceptions=True)

        self._jobs.clear()
        self._delayed.clear()
        self.status = SchedulerStatus.STOPPED
        logger.info("Scheduler stopped")

    def every(
        self,
        job_name: str,
        interval_seconds: float,
        job_func: Callable[[], Awaitable[Any]],
    ) -> Optional[asyncio.Task]:
        """
        Run ``job_func`` every ``interval_seconds`` until the scheduler stops.

        Args:
            job_name: Name to identify this job in logs and history
            interval_seconds: Time between runs in seconds
            job_func: Async function to execute

        Returns:
            The task driving the job, or None when the scheduler is not running
        """
        if not self.running:
            logger.warning(f"Scheduler is not running, job {job_name} will not start")
            return None

        existing = self._jobs.get(job_name)
        if existing and not existing.done():
            logger.info(f"Replacing existing {job_name} job")
            existing.cancel()

        task = asyncio.create_task(self._job_wrapper(job_func, job_name, interval_seconds))
        self._jobs[job_name] = task
        logger.info(f"Job {job_name} scheduled every {interval_seconds}s")
        return task

    def call_later(
        self,
        delay_seconds: float,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        job_name: Optional[str] = None,
    ) -> Optional[asyncio.Task]:
        """
        Run ``func(*args)`` once after ``delay_seconds``.

        Exceptions raised by ``func`` are logged and swallowed so a failing
        callback never tears down the caller.
        """
        name = job_name or getattr(func, "__name__", "delayed_call")
        if not self.running:
            logger.warning(f"Scheduler is not running, delayed call {name} dropped")
            return None

        task = asyncio.create_task(self._delayed_call(delay_seconds, func, args, name))
        self._delayed.add(task)
        task.add_done_callback(self._delayed.discard)
        return task

    async def _delayed_call(
        self,
        delay_seconds: float,
        func: Callable[..., Awaitable[Any]],
        args: Tuple[Any, ...],
        name: str,
    ) -> None:
        try:
            await asyncio.sleep(delay_seconds)
            await func(*args)
        except asyncio.CancelledError:
            logger.debug(f"Delayed call {name} cancelled")
            raise
        except Exception as e:
            logger.exception(f"Delayed call {name} failed: {str(e)}")

    async def _run_with_retry(
        self,
        job_func: Callable[[], Awaitable[Any]],
        job_name: str,
    ) -> Tuple[bool, Any, Optional[Exception]]:
        """
        Run a job with retry logic using exponential backoff.

        Returns:
            Tuple of (success, result, exception)
        """
        retry_count = 0
        last_exception = None

        while retry_count <= self.max_retries:
            try:
                if retry_count > 0:
                    logger.info(f"Retry attempt {retry_count} for job {job_name}")

                start_time = time.time()
                result = await job_func()
                duration = time.time() - start_time

                logger.info(f"Job {job_name} completed successfully in {duration:.2f}s")
                return True, result, None

            except asyncio.CancelledError:
                raise
            except Exception as e:
                retry_count += 1
                last_exception = e
                logger.warning(f"Job {job_name} failed: {str(e)}")

                if retry_count <= self.max_retries:
                    delay = self.base_retry_delay * (2 ** (retry_count - 1))
                    jitter = delay * self.jitter_factor * random.random()
                    total_delay = delay + jitter

                    logger.info(f"Will retry job {job_name} in {total_delay:.2f} seconds")
                    await asyncio.sleep(total_delay)
                else:
                    logger.error(f"Job {job_name} failed after {self.max_retries} retries: {str(e)}")

        return False, None, last_exception

    async def _job_wrapper(
        self,
        job_func: Callable[[], Awaitable[Any]],
        job_name: str,
        interval_seconds: float,
    ) -> None:
        logger.info(f"Scheduled job {job_name} starting with interval of {interval_seconds}s")

        while self.running:
            job_start_time = self.now()
            job_record = {
                "name": job_name,
                "status": JobStatus.RUNNING,
                "start_time": job_start_time,
                "end_time": None,
                "duration": None,
                "error": None,
            }
            self._history.append(job_record)
            self._history = self._history[-MAX_JOB_HISTORY:]

            try:
                self._stats["total_runs"] += 1
                success, _, error = await self._run_with_retry(job_func, job_name)
                self._record_run(job_record, job_start_time, success, error)
            except asyncio.CancelledError:
                job_record["status"] = JobStatus.CANCELLED
                logger.info(f"Job {job_name} cancelled while running")
                break

            try:
                jitter = interval_seconds * self.jitter_factor * random.random()
                wait_time = interval_seconds + jitter
                logger.debug(f"Job {job_name} sleeping for {wait_time:.2f}s until next run")
                await asyncio.sleep(wait_time)
            except asyncio.CancelledError:
                logger.info(f"Job {job_name} cancelled during sleep")
                break

        logger.info(f"Job {job_name} exiting")

    def _record_run(
        self,
        job_record: Dict[str, Any],
        job_start_time: datetime,
        success: bool,
        error: Optional[Exception],
    ) -> None:
        job_end_time = self.now()
        duration = (job_end_time - job_start_time).total_seconds()
        job_record["end_time"] = job_end_time
        job_record["duration"] = duration
        self._stats["last_run_time"] = job_end_time

        # Rolling average duration
        if self._stats["average_duration"] == 0:
            self._stats["average_duration"] = duration
        else:
            self._stats["average_duration"] = self._stats["average_duration"] * 0.9 + duration * 0.1

        if success:
            self._stats["successful_runs"] += 1
            self._stats["last_success_time"] = job_end_time
            job_record["status"] = JobStatus.SUCCEEDED
        else:
            self._stats["failed_runs"] += 1
            self._stats["last_failure_time"] = job_end_time
            job_record["status"] = JobStatus.FAILED
            job_record["error"] = str(error)
            logger.error(f"Job {job_record['name']} failed after retries: {str(error)}")

    def health(self) -> Dict[str, Any]:
        """
        Get health information about the scheduler.

        Returns:
            Dictionary with scheduler status, uptime and job statistics
        """
        uptime = 0.0
        if self.start_time and self.running:
            uptime = (self.now() - self.start_time).total_seconds()

        return {
            "status": self.status,
            "start_time": self.start_time,
            "uptime": uptime,
            "jobs": {
                "total": len(self._jobs),
                "running": sum(1 for t in self._jobs.values() if not t.done()),
                "pending_delayed_calls": len(self._delayed),
                "stats": dict(self._stats),
                "recent_history": self._history[-10:],
            },
        }

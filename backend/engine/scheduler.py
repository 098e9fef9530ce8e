"""
Background job runner for Mail Sweep.

Uses APScheduler to execute jobs and the `jobs` table to make them durable:
- Every enqueued job is persisted with its arguments before it is scheduled
- Handlers run with the persisted args and the attempt number (at-least-once)
- Failed attempts are retried with exponential backoff up to a per-kind ceiling
- Unfinished jobs are rescheduled when the process starts again
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from db import AsyncSessionLocal
from models import Job

logger = logging.getLogger(__name__)


# Job kinds
SYNC_HISTORY_JOB = "sync_history"
FULL_SYNC_JOB = "full_sync"
PROCESS_MESSAGE_JOB = "process_message"
UNSUBSCRIBE_JOB = "unsubscribe"

# Job states
JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_RETRYING = "retrying"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

JobHandler = Callable[[AsyncSession, Dict[str, Any], int], Awaitable[None]]


@dataclass
class JobSpec:
    handler: JobHandler
    max_attempts: int


# ============================================================================
# Scheduler Configuration
# ============================================================================

jobstores = {
    'default': MemoryJobStore()
}

executors = {
    'default': AsyncIOExecutor()
}

job_defaults = {
    'coalesce': False,
    'max_instances': 1,
    'misfire_grace_time': None  # Late jobs still run; the row is the source of truth
}


class JobRunner:
    """
    Durable job queue executed by an APScheduler instance.

    Without a running scheduler jobs are only persisted; execute_job can
    then be called directly (e.g. from tests or a one-off worker).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.session_factory = session_factory
        self.scheduler = scheduler
        self._handlers: Dict[str, JobSpec] = {}

    def register(self, kind: str, handler: JobHandler, max_attempts: int = 1) -> None:
        self._handlers[kind] = JobSpec(handler=handler, max_attempts=max_attempts)

    async def enqueue(self, kind: str, args: Dict[str, Any], delay_seconds: int = 0) -> int:
        """
        Persist a job and schedule it.

        Args:
            kind: Registered job kind
            args: JSON-serializable handler arguments
            delay_seconds: Delay before the first attempt

        Returns:
            int: Job id

        Raises:
            ValueError: If no handler is registered for kind
        """
        spec = self._handlers.get(kind)
        if spec is None:
            raise ValueError(f"No handler registered for job kind '{kind}'")

        run_at = datetime.utcnow() + timedelta(seconds=delay_seconds)

        async with self.session_factory() as db:
            job = Job(
                kind=kind,
                args=args,
                state=JOB_PENDING,
                attempt=0,
                max_attempts=spec.max_attempts,
                run_at=run_at,
            )
            db.add(job)
            await db.commit()
            job_id = job.id

        self._schedule(job_id, run_at if delay_seconds > 0 else None)
        logger.info(f"Enqueued {kind} job {job_id} with args {args}")
        return job_id

    def _schedule(self, job_id: int, run_date: Optional[datetime] = None) -> None:
        if self.scheduler is None or not self.scheduler.running:
            return

        self.scheduler.add_job(
            self.execute_job,
            'date',
            run_date=run_date,
            args=[job_id],
            id=f"job_{job_id}",
            name=f"Job {job_id}",
            replace_existing=True,
        )

    async def execute_job(self, job_id: int) -> Optional[str]:
        """
        Run one attempt of a persisted job.

        Returns:
            The job state after the attempt, or None if the job is unknown
        """
        async with self.session_factory() as db:
            job = await db.get(Job, job_id)
            if job is None:
                logger.warning(f"Job {job_id} not found")
                return None

            if job.state in (JOB_COMPLETED, JOB_FAILED):
                logger.info(f"Job {job_id} already {job.state}, skipping")
                return job.state

            spec = self._handlers.get(job.kind)
            if spec is None:
                job.state = JOB_FAILED
                job.last_error = f"No handler registered for job kind '{job.kind}'"
                await db.commit()
                logger.error(job.last_error)
                return job.state

            job.attempt += 1
            job.state = JOB_RUNNING
            await db.commit()

            kind = job.kind
            attempt = job.attempt
            args = dict(job.args or {})
            logger.info(f"Running {kind} job {job_id} (attempt {attempt}/{job.max_attempts})")

            try:
                await spec.handler(db, args, attempt)
            except Exception as e:
                logger.error(f"{kind} job {job_id} attempt {attempt} failed: {e}", exc_info=True)
                await db.rollback()
                return await self._record_failure(db, job_id, str(e))

            job = await db.get(Job, job_id)
            await db.refresh(job)
            job.state = JOB_COMPLETED
            job.last_error = None
            await db.commit()

            logger.info(f"{kind} job {job_id} completed")
            return job.state

    async def _record_failure(self, db: AsyncSession, job_id: int, error: str) -> str:
        job = await db.get(Job, job_id)
        await db.refresh(job)
        job.last_error = error

        if job.attempt < job.max_attempts:
            delay = settings.JOB_RETRY_BASE_SECONDS * (2 ** (job.attempt - 1))
            job.state = JOB_RETRYING
            job.run_at = datetime.utcnow() + timedelta(seconds=delay)
            await db.commit()
            self._schedule(job_id, job.run_at)
            logger.info(f"Job {job_id} will retry in {delay}s")
        else:
            job.state = JOB_FAILED
            await db.commit()
            logger.error(f"Job {job_id} failed permanently after {job.attempt} attempt(s)")

        return job.state

    async def resume_pending_jobs(self) -> int:
        """
        Reschedule jobs left unfinished by a previous process.

        Returns:
            int: Number of jobs rescheduled
        """
        async with self.session_factory() as db:
            stmt = select(Job).where(Job.state.in_([JOB_PENDING, JOB_RUNNING, JOB_RETRYING]))
            result = await db.execute(stmt)
            jobs = result.scalars().all()

        now = datetime.utcnow()
        for job in jobs:
            self._schedule(job.id, job.run_at if job.run_at > now else None)

        if jobs:
            logger.info(f"Rescheduled {len(jobs)} unfinished job(s)")
        return len(jobs)


# ============================================================================
# Scheduler Lifecycle Management
# ============================================================================

_scheduler: Optional[AsyncIOScheduler] = None
_runner: Optional[JobRunner] = None


def init_scheduler(session_factory: async_sessionmaker = AsyncSessionLocal) -> JobRunner:
    """
    Initialize and start the background scheduler and its job runner.

    Returns:
        JobRunner: Runner bound to the started scheduler
    """
    global _scheduler, _runner

    if _scheduler is not None and _scheduler.running and _runner is not None:
        logger.warning("Scheduler already initialized and running")
        return _runner

    logger.info("Initializing APScheduler...")

    _scheduler = AsyncIOScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )
    _scheduler.add_listener(_job_executed_listener, EVENT_JOB_EXECUTED)
    _scheduler.add_listener(_job_error_listener, EVENT_JOB_ERROR)
    _scheduler.start()

    _runner = JobRunner(session_factory=session_factory, scheduler=_scheduler)

    logger.info("APScheduler started successfully")
    return _runner


def shutdown_scheduler() -> None:
    """Gracefully shutdown the scheduler, waiting for running jobs."""
    global _scheduler, _runner

    if _scheduler is None:
        logger.warning("Scheduler not initialized, nothing to shutdown")
        return

    if _scheduler.running:
        logger.info("Shutting down APScheduler...")
        _scheduler.shutdown(wait=True)
        logger.info("APScheduler shutdown complete")

    _scheduler = None
    _runner = None


def get_job_runner() -> JobRunner:
    """
    Get the process-wide job runner.

    Raises:
        RuntimeError: If init_scheduler() has not been called
    """
    if _runner is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")
    return _runner


# ============================================================================
# Event Listeners
# ============================================================================


def _job_executed_listener(event) -> None:
    logger.debug(f"Scheduler job {event.job_id} executed")


def _job_error_listener(event) -> None:
    logger.error(
        f"Scheduler job {event.job_id} raised: {event.exception}",
        exc_info=True
    )


def get_enqueue() -> Callable[[str, Dict[str, Any]], Awaitable[int]]:
    """
    FastAPI dependency returning an enqueue function.

    The runner is looked up when a job is enqueued, so an uninitialized
    scheduler surfaces as a RuntimeError from the call, not from the dependency.
    """
    async def enqueue(kind: str, args: Dict[str, Any], delay_seconds: int = 0) -> int:
        return await get_job_runner().enqueue(kind, args, delay_seconds)

    return enqueue

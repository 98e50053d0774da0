"""
Background signal calculation jobs.

A trigger (API call or scheduler) submits a job and gets its id back right
away; the run itself executes as an asyncio task inside the API process.

Lifecycle:
    pending -> running -> completed | failed | cancelled

Runs are serialized by one asyncio.Lock: a job submitted while another one is
running waits in `pending`. Cancellation sets a flag that the orchestrator
checks between companies, so a cancelled job stops after the company it is
processing. A pending job that is cancelled never starts.

Finished jobs stay queryable for JOB_RETENTION_MINUTES and are purged on the
next submission or listing after that.

Usage:
    processor = get_signal_processor()
    job = processor.submit(incremental=True)
    ...
    processor.get_job(job.job_id).to_response()
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import uuid4

from screener.core.config import get_settings
from screener.models.enums import JobStatus, JobType
from screener.models.schemas import CalculationSummary, SignalJobResponse
from screener.services.signal_calculation import run_signal_calculation
from screener.services.signal_store import PostgresSignalStore


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SignalJob:
    """
    State of one calculation job.

    Attributes:
        job_id: Public identifier returned to the trigger.
        job_type: full, incremental, or an explicit company list.
        company_ids: Explicit restriction, None for all companies.
        summary: Live counters, updated in place by the orchestrator.
    """
    job_id: str
    job_type: JobType
    company_ids: Optional[List[str]] = None
    incremental: bool = False
    batch_size: Optional[int] = None
    status: JobStatus = JobStatus.PENDING
    summary: CalculationSummary = field(default_factory=CalculationSummary)
    created_at: datetime = field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    cancel_requested: bool = False
    task: Optional["asyncio.Task[Any]"] = field(default=None, repr=False)

    def to_response(self) -> SignalJobResponse:
        return SignalJobResponse(
            jobId=self.job_id,
            jobType=self.job_type,
            status=self.status,
            total=self.summary.total,
            processed=self.summary.processed,
            succeeded=self.summary.succeeded,
            failed=self.summary.failed,
            signalsGenerated=self.summary.signalsGenerated,
            createdAt=self.created_at,
            startedAt=self.started_at,
            finishedAt=self.finished_at,
            error=self.error,
            failures=list(self.summary.failures),
        )


class SignalProcessor:
    """
    In-process registry and runner of signal calculation jobs.

    Args:
        store_factory: Builds the storage backend for each run.
        retention: How long finished jobs are kept; defaults to
            JOB_RETENTION_MINUTES.
    """

    def __init__(
        self,
        store_factory: Callable[[], Any] = PostgresSignalStore,
        retention: Optional[timedelta] = None,
    ):
        self.store_factory = store_factory
        self.retention = retention or timedelta(minutes=get_settings().job_retention_minutes)
        self._jobs: Dict[str, SignalJob] = {}
        self._lock = asyncio.Lock()

    def submit(
        self,
        company_ids: Optional[Sequence[str]] = None,
        incremental: bool = False,
        batch_size: Optional[int] = None,
    ) -> SignalJob:
        """
        Register a job and schedule it on the running event loop.

        Must be called from within the event loop (an endpoint or task).
        """
        self.purge_finished()

        if company_ids:
            job_type = JobType.COMPANIES
        elif incremental:
            job_type = JobType.INCREMENTAL
        else:
            job_type = JobType.FULL

        job = SignalJob(
            job_id=str(uuid4()),
            job_type=job_type,
            company_ids=list(company_ids) if company_ids else None,
            incremental=incremental,
            batch_size=batch_size,
        )
        self._jobs[job.job_id] = job
        job.task = asyncio.create_task(self._run(job), name=f"signal-job-{job.job_id}")
        logger.info(f"Signal job {job.job_id} submitted ({job_type.value})")
        return job

    async def _run(self, job: SignalJob) -> None:
        async with self._lock:
            if job.cancel_requested:
                job.status = JobStatus.CANCELLED
                job.finished_at = _utcnow()
                logger.info(f"Signal job {job.job_id} cancelled before start")
                return

            job.status = JobStatus.RUNNING
            job.started_at = _utcnow()
            logger.info(f"Signal job {job.job_id} started")

            try:
                await run_signal_calculation(
                    self.store_factory(),
                    company_ids=job.company_ids,
                    incremental=job.incremental,
                    batch_size=job.batch_size,
                    summary=job.summary,
                    should_cancel=lambda: job.cancel_requested,
                    calculated_at=job.started_at,
                )
            except asyncio.CancelledError:
                job.status = JobStatus.CANCELLED
                job.finished_at = _utcnow()
                logger.warning(f"Signal job {job.job_id} interrupted")
                raise
            except Exception as e:
                logger.exception(f"Signal job {job.job_id} failed")
                job.status = JobStatus.FAILED
                job.error = f"{type(e).__name__}: {e}"
            else:
                job.status = JobStatus.CANCELLED if job.summary.cancelled else JobStatus.COMPLETED

            job.finished_at = _utcnow()
            logger.info(
                f"Signal job {job.job_id} {job.status.value}: "
                f"{job.summary.processed}/{job.summary.total} processed, "
                f"{job.summary.signalsGenerated} signals, {job.summary.failed} failed"
            )

    def get_job(self, job_id: str) -> Optional[SignalJob]:
        return self._jobs.get(job_id)

    def list_jobs(self) -> List[SignalJob]:
        """Jobs still in the registry, newest first."""
        self.purge_finished()
        return sorted(self._jobs.values(), key=lambda job: job.created_at, reverse=True)

    def cancel(self, job_id: str) -> Optional[SignalJob]:
        """
        Request cancellation of a job.

        Returns:
            The job, or None when the id is unknown. Cancelling a finished job
            is a no-op.
        """
        job = self._jobs.get(job_id)
        if job is None:
            return None
        if not job.status.is_terminal:
            job.cancel_requested = True
            logger.info(f"Cancellation requested for signal job {job_id}")
        return job

    def purge_finished(self, now: Optional[datetime] = None) -> int:
        """Drop finished jobs older than the retention window."""
        cutoff = (now or _utcnow()) - self.retention
        expired = [
            job_id for job_id, job in self._jobs.items()
            if job.status.is_terminal and job.finished_at is not None and job.finished_at < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
        return len(expired)

    async def wait(self, job_id: str) -> Optional[SignalJob]:
        """Wait for a job to finish; used by tests and scripts."""
        job = self._jobs.get(job_id)
        if job is not None and job.task is not None:
            await asyncio.gather(job.task, return_exceptions=True)
        return job

    async def shutdown(self) -> None:
        """Cancel unfinished jobs; called from the application lifespan."""
        tasks = []
        for job in self._jobs.values():
            if job.task is not None and not job.task.done():
                job.cancel_requested = True
                job.task.cancel()
                tasks.append(job.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            for job in self._jobs.values():
                if not job.status.is_terminal:
                    job.status = JobStatus.CANCELLED
                    job.finished_at = _utcnow()
            logger.info(f"Stopped {len(tasks)} signal job(s) on shutdown")


_processor: Optional[SignalProcessor] = None


def get_signal_processor() -> SignalProcessor:
    """Process-wide SignalProcessor singleton."""
    global _processor

    if _processor is None:
        _processor = SignalProcessor()

    return _processor

"""
FastAPI router for signal calculation jobs.

Endpoints:
- POST /signals/calculate          start a calculation job (202 + job id)
- GET  /signals/jobs               jobs still in the registry
- GET  /signals/jobs/{jobId}       job status and counters
- POST /signals/jobs/{jobId}/cancel request cancellation
- GET  /signals/statistics         signal totals and stale companies

Calculation runs in the background; clients poll the job endpoint until the
status is completed, failed or cancelled.
"""

import logging
from typing import List

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from screener.jobs.signal_processor import get_signal_processor
from screener.models.schemas import (
    CalculateSignalsRequest,
    SignalJobResponse,
    SignalStatistics,
)
from screener.services.signal_store import PostgresSignalStore


logger = logging.getLogger(__name__)

router = APIRouter()


class JobListResponse(BaseModel):
    jobs: List[SignalJobResponse] = Field(default_factory=list)


@router.post("/calculate", response_model=SignalJobResponse, status_code=202)
async def calculate_signals(request: CalculateSignalsRequest) -> SignalJobResponse:
    """
    Start a signal calculation job.

    Returns immediately; the job waits in `pending` while another run holds
    the lock.

    Example Request:
        POST /signals/calculate
        {"incremental": true, "batchSize": 100}
    """
    job = get_signal_processor().submit(
        company_ids=request.companyIds,
        incremental=request.incremental,
        batch_size=request.batchSize,
    )
    return job.to_response()


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs() -> JobListResponse:
    jobs = get_signal_processor().list_jobs()
    return JobListResponse(jobs=[job.to_response() for job in jobs])


@router.get("/jobs/{job_id}", response_model=SignalJobResponse)
async def get_job(job_id: str) -> SignalJobResponse:
    job = get_signal_processor().get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return job.to_response()


@router.post("/jobs/{job_id}/cancel", response_model=SignalJobResponse)
async def cancel_job(job_id: str) -> SignalJobResponse:
    """Request cancellation; the run stops before its next company."""
    job = get_signal_processor().cancel(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return job.to_response()


@router.get("/statistics", response_model=SignalStatistics)
async def get_statistics() -> SignalStatistics:
    try:
        return await PostgresSignalStore().fetch_statistics()
    except Exception as e:
        logger.error(f"Error loading signal statistics: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to load signal statistics")

"""Run routes."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from nbpipeline.config import settings
from nbpipeline.database import get_db
from nbpipeline.exceptions import BudgetExceeded, InvalidArgument, InvalidState, NotFound, PartialCopyFailure
from nbpipeline.schemas.cache import CacheAvailability, CacheDecisionRequest, CacheDecisionResponse
from nbpipeline.schemas.canonical import CanonicalDataset
from nbpipeline.schemas.run import CleanupResponse, QueueStats, RunCreate, RunProgress, RunQueuedResponse
from nbpipeline.services.cache_manager import CacheManager
from nbpipeline.services.canonical_builder import CanonicalBuilder
from nbpipeline.services.job_queue import JobQueue
from nbpipeline.services.nb_codes import ALL_NBS
from nbpipeline.services.raw_collector import RawCollector

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/runs", tags=["runs"])


def get_job_queue(db: Session = Depends(get_db)) -> JobQueue:
    """Job queue wired with the default collaborators."""
    return JobQueue(db)


@router.post("", response_model=RunQueuedResponse)
def queue_run(data: RunCreate, queue: JobQueue = Depends(get_job_queue)):
    """Estimate and queue a new run."""
    options = {
        "mode": data.mode,
        "force_refresh": data.force_refresh,
        "cache_decision": data.cache_decision,
        "refresh_config": data.refresh_config,
    }
    try:
        run_id = queue.queue_run(data.company_id, data.target_company_id, data.user_id, options)
    except BudgetExceeded as e:
        raise HTTPException(status_code=402, detail={"message": e.message, **e.details})
    except InvalidArgument as e:
        raise HTTPException(status_code=400, detail=str(e))

    return RunQueuedResponse(run_id=run_id, status="queued")


@router.get("/stats", response_model=QueueStats)
def queue_stats(queue: JobQueue = Depends(get_job_queue)):
    """Status histogram and average timings."""
    return queue.get_queue_stats()


@router.get("/cache", response_model=CacheAvailability)
def check_cache(
    company_id: int,
    target_company_id: Optional[int] = None,
    freshness_days: int = settings.CACHE_FRESHNESS_DAYS,
    db: Session = Depends(get_db),
):
    """Check for a reusable run for the company pair."""
    return CacheManager(db).check_cache(company_id, target_company_id, freshness_days)


@router.post("/cleanup", response_model=CleanupResponse)
def cleanup_runs(max_age_days: int = settings.RUN_RETENTION_DAYS, queue: JobQueue = Depends(get_job_queue)):
    """Archive old terminal runs."""
    return CleanupResponse(archived=queue.cleanup_old_runs(max_age_days))


@router.get("/{run_id}", response_model=RunProgress)
def get_run_progress(run_id: int, queue: JobQueue = Depends(get_job_queue)):
    """Get run status and progress."""
    try:
        return queue.get_run_progress(run_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{run_id}/execute")
def execute_run(run_id: int, queue: JobQueue = Depends(get_job_queue)):
    """Execute a run synchronously (normally done by the worker)."""
    success = queue.execute_run(run_id)
    progress = queue.get_run_progress(run_id)
    return {"run_id": run_id, "success": success, "status": progress.status}


@router.post("/{run_id}/cancel")
def cancel_run(run_id: int, queue: JobQueue = Depends(get_job_queue)):
    """Cancel a queued or retrying run."""
    try:
        cancelled = queue.cancel_run(run_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    if not cancelled:
        raise HTTPException(status_code=409, detail="Run can only be cancelled while queued or retrying")
    return {"run_id": run_id, "status": "cancelled"}


@router.post("/{run_id}/cache-decision", response_model=CacheDecisionResponse)
def cache_decision(run_id: int, data: CacheDecisionRequest, db: Session = Depends(get_db)):
    """Apply a cache decision to a run."""
    try:
        next_step = CacheManager(db).process_decision(data.decision, run_id, data.source_run_id)
    except InvalidArgument as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PartialCopyFailure as e:
        raise HTTPException(status_code=409, detail=str(e))

    return CacheDecisionResponse(run_id=run_id, next_step=next_step)


@router.get("/{run_id}/dataset", response_model=CanonicalDataset)
def get_dataset(run_id: int, db: Session = Depends(get_db)):
    """Build the canonical NB dataset for a completed run."""
    try:
        inputs = RawCollector(db).collect(run_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidState as e:
        raise HTTPException(status_code=400, detail=str(e))

    return CanonicalBuilder().build_dataset(inputs, list(ALL_NBS), run_id)

"""Deferred task scheduling backed by the jobs table."""

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from sqlalchemy.orm import Session

from nbpipeline.database import utcnow
from nbpipeline.models.job import Job

logger = logging.getLogger(__name__)

EXECUTE_RUN = "execute_run"
CLEANUP_RUNS = "cleanup_runs"


class TaskScheduler(Protocol):
    """Fire-and-forget dispatch of deferred work."""

    def schedule(
        self, task: str, run_id: Optional[int] = None, run_at: Optional[datetime] = None, **payload: Any
    ) -> None: ...


class DatabaseTaskScheduler:
    """Queues jobs as rows for the worker to pick up once ``run_at`` has passed."""

    def __init__(self, db: Session):
        self.db = db

    def schedule(
        self, task: str, run_id: Optional[int] = None, run_at: Optional[datetime] = None, **payload: Any
    ) -> Job:
        data: Dict[str, Any] = {"run_id": run_id, **payload}
        job = Job(
            run_id=run_id,
            task=task,
            status="queued",
            payload=data,
            run_at=run_at or utcnow(),
        )
        self.db.add(job)
        self.db.commit()
        logger.info(f"Scheduled {task} job {job.job_id} for run {run_id} at {job.run_at.isoformat()}")
        return job

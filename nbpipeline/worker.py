"""Background worker for processing deferred jobs."""

import logging
import time
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from nbpipeline.config import settings
from nbpipeline.database import SessionLocal, utcnow
from nbpipeline.models.job import Job
from nbpipeline.services.job_queue import JobQueue
from nbpipeline.services.scheduler import CLEANUP_RUNS, EXECUTE_RUN

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


class Worker:
    """Polls the jobs table and dispatches due jobs."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal, queue_factory=JobQueue):
        """Initialize worker."""
        self.session_factory = session_factory
        self.queue_factory = queue_factory
        self.poll_interval = settings.WORKER_POLL_INTERVAL

        # Task registry
        self.tasks: Dict[str, Callable[[JobQueue, Job], object]] = {
            EXECUTE_RUN: lambda queue, job: queue.execute_run(job.run_id),
            CLEANUP_RUNS: lambda queue, job: queue.cleanup_old_runs(
                (job.payload or {}).get("max_age_days", settings.RUN_RETENTION_DAYS)
            ),
        }

    def run(self, stop_event=None):
        """Main worker loop.

        Args:
            stop_event: Optional threading.Event to signal worker to stop
        """
        logger.info("Worker started")

        while True:
            if stop_event and stop_event.is_set():
                logger.info("Worker stop signal received")
                break

            try:
                if not self.run_once():
                    time.sleep(self.poll_interval)
            except KeyboardInterrupt:
                logger.info("Worker shutting down")
                break
            except Exception as e:
                logger.error(f"Worker error: {e}", exc_info=True)
                time.sleep(self.poll_interval)

    def run_once(self) -> bool:
        """Process the next due job; returns False when none is due."""
        db = self.session_factory()
        try:
            job = self.get_next_job(db)
            if not job:
                return False
            self.process_job(job, db)
            return True
        finally:
            db.close()

    def get_next_job(self, db: Session) -> Optional[Job]:
        """Get the oldest due queued job."""
        return (
            db.query(Job)
            .filter(Job.status == "queued", Job.run_at <= utcnow())
            .order_by(Job.run_at, Job.job_id)
            .with_for_update(skip_locked=True)
            .first()
        )

    def process_job(self, job: Job, db: Session):
        """Process a single job."""
        logger.info(f"Processing job {job.job_id} (task: {job.task}, run: {job.run_id})")

        job.status = "running"
        db.commit()

        try:
            handler = self.tasks.get(job.task)
            if not handler:
                raise ValueError(f"Unknown task: {job.task}")

            handler(self.queue_factory(db), job)

            job.status = "done"
            db.commit()
            logger.info(f"Job {job.job_id} done")

        except Exception as e:
            logger.error(f"Job {job.job_id} failed: {e}", exc_info=True)
            db.rollback()
            job.status = "failed"
            job.last_error = str(e)
            db.commit()


def worker_loop(stop_event=None):
    """Run worker loop (for use as background thread).

    Args:
        stop_event: Optional threading.Event to signal worker to stop
    """
    worker = Worker()
    worker.run(stop_event=stop_event)


def main():
    """Entry point for standalone worker."""
    worker = Worker()
    worker.run()


if __name__ == "__main__":
    main()

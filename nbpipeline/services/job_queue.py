"""Run orchestration: queueing, execution, retry with backoff, cleanup."""

import json
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from nbpipeline.config import settings
from nbpipeline.database import utcnow
from nbpipeline.exceptions import BudgetExceeded, InvalidArgument, InvalidState, NotFound, PipelineError
from nbpipeline.models.nb_result import NBResult
from nbpipeline.models.run import Run
from nbpipeline.models.telemetry import Telemetry
from nbpipeline.schemas.run import QueueStats, RefreshConfig, RunProgress
from nbpipeline.services.cache_manager import CacheManager
from nbpipeline.services.canonical_builder import CanonicalBuilder
from nbpipeline.services.cost_service import CostEstimator, CostService, variance_pct
from nbpipeline.services.generation_client import GenerationClient, GenerationProvider
from nbpipeline.services.nb_codes import ALL_NBS, TOTAL_NBS
from nbpipeline.services.raw_collector import RawCollector
from nbpipeline.services.scheduler import EXECUTE_RUN, DatabaseTaskScheduler, TaskScheduler
from nbpipeline.services.telemetry import TelemetryRecorder

logger = logging.getLogger(__name__)

STATUSES = ["queued", "running", "retrying", "completed", "failed", "cancelled", "archived"]
TERMINAL_STATUSES = ("completed", "failed", "cancelled")

# Executions never start from these
SKIP_EXECUTION = ("running", "completed", "cancelled", "failed", "archived")

TRANSITIONS = {
    "queued": ("running", "cancelled"),
    "running": ("completed", "failed", "retrying"),
    "retrying": ("running", "failed", "cancelled"),
    "completed": ("archived",),
    "failed": ("archived",),
    "cancelled": ("archived",),
    "archived": (),
}

CACHE_DECISIONS = ("auto", "reuse", "full")


class JobQueue:
    """Owns the run lifecycle from queueing to archival."""

    MAX_RETRIES = 3
    BACKOFF_DELAYS = [60, 300, 900]  # 1 min, 5 min, 15 min

    def __init__(
        self,
        db: Session,
        cost_estimator: Optional[CostEstimator] = None,
        generator: Optional[GenerationProvider] = None,
        scheduler: Optional[TaskScheduler] = None,
        cache_manager: Optional[CacheManager] = None,
        collector: Optional[RawCollector] = None,
        builder: Optional[CanonicalBuilder] = None,
        telemetry: Optional[TelemetryRecorder] = None,
    ):
        self.db = db
        self.telemetry = telemetry or TelemetryRecorder(db)
        self.cost = cost_estimator or CostService(db, self.telemetry)
        self.generator = generator or GenerationClient()
        self.scheduler = scheduler or DatabaseTaskScheduler(db)
        self.cache = cache_manager or CacheManager(db, self.telemetry)
        self.collector = collector or RawCollector(db)
        self.builder = builder or CanonicalBuilder()

    def queue_run(
        self,
        company_id: int,
        target_company_id: Optional[int],
        user_id: int,
        options: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Estimate, persist and schedule a new run.

        Args:
            company_id: Source company
            target_company_id: Target company (optional)
            user_id: User initiating the run
            options: mode, force_refresh, cache_decision, refresh_config

        Returns:
            New run ID

        Raises:
            BudgetExceeded: If the estimate exceeds the hard limit
            InvalidArgument: If options are malformed
        """
        options = options or {}
        force_refresh = bool(options.get("force_refresh", False))

        cache_decision = "full" if force_refresh else options.get("cache_decision", "auto")
        if cache_decision not in CACHE_DECISIONS:
            raise InvalidArgument(f"Invalid cache_decision: {cache_decision}")

        estimate = self.cost.estimate(company_id, target_company_id, cache_decision == "full")
        if not estimate.can_proceed:
            raise BudgetExceeded(
                f"Estimated cost ${estimate.total_cost:.2f} exceeds limit ${estimate.limit:.2f}",
                estimated=estimate.total_cost,
                limit=estimate.limit,
            )

        run = Run(
            company_id=company_id,
            target_company_id=target_company_id,
            user_id=user_id,
            mode=options.get("mode", "full"),
            status="queued",
            est_tokens=estimate.total_tokens,
            est_cost=estimate.total_cost,
            cache_decision=cache_decision,
            reused_snapshot_id=estimate.reused_snapshot_id,
            refresh_config=_dump_refresh_config(options.get("refresh_config")),
            retry_count=0,
        )
        self.db.add(run)
        self.db.flush()

        self.cost.record_telemetry(run.id, "estimated_cost", estimate.total_cost, {
            "tokens": estimate.total_tokens,
            "provider": estimate.provider,
            "has_warnings": bool(estimate.warnings),
            "reuse_savings": estimate.reuse_savings,
        })
        self.telemetry.event(
            run.id, "run_queued",
            company_id=company_id,
            target_company_id=target_company_id,
            mode=run.mode,
            estimated_cost=estimate.total_cost,
        )
        self.db.commit()

        self.scheduler.schedule(EXECUTE_RUN, run.id)
        logger.info(f"Queued run {run.id} (company {company_id}, target {target_company_id})")
        return run.id

    def execute_run(self, run_id: int) -> bool:
        """
        Execute a queued or retrying run.

        Runs already running, finished or cancelled are left untouched. Errors
        are routed through the retry state machine and never raised.

        Returns:
            True if the run is (now) completed
        """
        self.db.expire_all()
        run = self.db.query(Run).filter(Run.id == run_id).first()
        if not run:
            logger.error(f"Cannot execute run {run_id}: not found")
            return False

        if run.status in SKIP_EXECUTION:
            logger.info(f"Run {run_id} is {run.status}, skipping execution")
            return run.status == "completed"

        try:
            return self._execute(run)
        except Exception as e:
            logger.error(f"Run {run_id} failed: {e}", exc_info=True)
            return self._handle_failure(run_id, e)

    def _execute(self, run: Run) -> bool:
        run_id = run.id
        self._transition(run, "running")
        self.db.commit()

        start = time.monotonic()
        start_tokens = self._token_total(run_id)

        next_step = self._resolve_cache(run)
        if next_step == "cached":
            success = True
        else:
            success = self.generator.execute_protocol(run_id)

        self.db.expire_all()
        duration_ms = int((time.monotonic() - start) * 1000)
        tokens_used = 0 if next_step == "cached" else max(self._token_total(run_id) - start_tokens, 0)
        actual_cost = self.cost.token_cost(tokens_used)

        self.cost.record_actuals(run_id, tokens_used, actual_cost, self._nb_breakdown(run_id))

        run = self.db.query(Run).filter(Run.id == run_id).one()
        if success:
            self._transition(run, "completed")
            self.telemetry.event(
                run_id, "run_completed",
                duration_ms=duration_ms,
                tokens_used=tokens_used,
                actual_cost=actual_cost,
                variance_pct=variance_pct(run.est_cost or 0.0, actual_cost),
                cache_strategy=run.cache_strategy,
            )
            self.db.commit()
            logger.info(f"Run {run_id} completed in {duration_ms}ms ({next_step})")
            self._record_dataset_coverage(run_id)
        else:
            self._transition(run, "failed", error="NB protocol reported partial completion")
            self.telemetry.event(run_id, "run_failed", duration_ms=duration_ms, partial_completion=True)
            self.db.commit()
            logger.warning(f"Run {run_id} failed: NB protocol reported partial completion")

        return success

    def _resolve_cache(self, run: Run) -> str:
        """Decide between cloning a cached run and generating NBs."""
        if run.cache_strategy == "reuse":
            return "cached"
        if run.cache_strategy == "full":
            return "fetch"

        force = run.cache_decision == "full" or self.cache.should_regenerate_blocks(run.id, "source")
        if not force and run.target_company_id:
            force = self.cache.should_regenerate_blocks(run.id, "target")
        if force:
            return self.cache.process_decision("full", run.id)

        cache = self.cache.check_cache(run.company_id, run.target_company_id, settings.CACHE_FRESHNESS_DAYS)
        if cache.available:
            next_step = self.cache.process_decision("reuse", run.id, cache.source_run_id)
            if self.cache.should_regenerate_synthesis(run.id):
                self.cache.discard_synthesis(run.id)
            return next_step

        if run.cache_decision == "reuse":
            logger.warning(f"Run {run.id} requested cache reuse but no valid cache exists, generating")
        return self.cache.process_decision("full", run.id)

    def _handle_failure(self, run_id: int, error: Exception) -> bool:
        """Schedule a retry with backoff, or fail permanently once retries are exhausted."""
        self.db.rollback()
        run = self.db.query(Run).filter(Run.id == run_id).first()
        if not run:
            return False

        retries = run.retry_count or 0
        self.telemetry.event(
            run_id, "run_error",
            error_message=str(error),
            error_type=type(error).__name__,
            retry_count=retries,
        )

        if run.status not in ("running", "retrying"):
            self.telemetry.diagnostic(
                run_id, "run_error", "error", f"Error while run was {run.status}, not retrying: {error}"
            )
            self.db.commit()
            return False

        if retries < self.MAX_RETRIES:
            delay = self.BACKOFF_DELAYS[retries] if retries < len(self.BACKOFF_DELAYS) else 900
            attempt = retries + 1
            next_attempt = utcnow() + timedelta(seconds=delay)

            self._transition(run, "retrying", error=str(error))
            run.retry_count = attempt
            self.telemetry.record(run_id, "retry_attempt", attempt, payload={"attempt": attempt})
            self.telemetry.event(
                run_id, "retry_scheduled",
                retry_number=attempt,
                delay_seconds=delay,
                next_attempt=next_attempt.isoformat(),
            )
            self.db.commit()

            self.scheduler.schedule(EXECUTE_RUN, run_id, run_at=next_attempt, retry=True, attempt=attempt)
            logger.warning(f"Run {run_id} retry {attempt}/{self.MAX_RETRIES} scheduled in {delay}s")
            return False

        self._transition(run, "failed", error=str(error))
        self.telemetry.event(
            run_id, "max_retries_exceeded",
            total_attempts=retries + 1,
            final_error=str(error),
        )
        self.db.commit()
        logger.error(f"Run {run_id} failed after {retries + 1} attempts")
        return False

    def _transition(self, run: Run, status: str, error: Optional[str] = None):
        """Move a run to a new status, enforcing the state machine."""
        if status != run.status and status not in TRANSITIONS.get(run.status, ()):
            raise InvalidState(f"Run {run.id} cannot move from {run.status} to {status}", status=run.status)

        now = utcnow()
        run.status = status
        if status == "running" and run.started_at is None:
            run.started_at = now
        if status in TERMINAL_STATUSES:
            run.completed_at = now
        if error:
            run.last_error = error

    def cancel_run(self, run_id: int, user_id: Optional[int] = None) -> bool:
        """Cancel a run that has not started (or is waiting to retry)."""
        run = self.db.query(Run).filter(Run.id == run_id).first()
        if not run:
            raise NotFound(f"Run {run_id} not found")

        if run.status not in ("queued", "retrying"):
            return False

        previous = run.status
        self._transition(run, "cancelled")
        self.telemetry.event(run_id, "run_cancelled", cancelled_by=user_id, previous_status=previous)
        self.db.commit()
        logger.info(f"Cancelled run {run_id} (was {previous})")
        return True

    def get_run_progress(self, run_id: int, now: Optional[datetime] = None) -> RunProgress:
        """Completed NB count, current NB and a linear ETA for a run."""
        run = self.db.query(Run).filter(Run.id == run_id).first()
        if not run:
            raise NotFound(f"Run {run_id} not found")

        completed = (
            self.db.query(func.count(NBResult.id))
            .filter(NBResult.run_id == run_id, NBResult.status == "completed")
            .scalar()
        )
        current = (
            self.db.query(NBResult.nb_code)
            .filter(NBResult.run_id == run_id, NBResult.status == "running")
            .first()
        )

        eta = None
        if run.started_at and completed > 0:
            elapsed = ((now or utcnow()) - run.started_at).total_seconds()
            eta = elapsed / completed * max(TOTAL_NBS - completed, 0)

        return RunProgress(
            run_id=run_id,
            status=run.status,
            completed_nbs=completed,
            total_nbs=TOTAL_NBS,
            current_nb=current[0] if current else None,
            percentage=round(completed / TOTAL_NBS * 100, 1),
            started_at=run.started_at,
            eta_seconds=eta,
            estimated_cost=run.est_cost,
            estimated_tokens=run.est_tokens,
            retry_count=run.retry_count or 0,
            last_error=run.last_error,
        )

    def cleanup_old_runs(self, max_age_days: int = 90, now: Optional[datetime] = None) -> int:
        """Archive terminal runs older than the cutoff; returns the number archived."""
        cutoff = (now or utcnow()) - timedelta(days=max_age_days)
        old_runs = (
            self.db.query(Run)
            .filter(Run.status.in_(TERMINAL_STATUSES), Run.completed_at < cutoff)
            .all()
        )

        for run in old_runs:
            self._archive_telemetry(run.id)
            self.db.query(NBResult).filter(NBResult.run_id == run.id).delete(synchronize_session=False)
            self._transition(run, "archived")

        self.db.commit()
        if old_runs:
            logger.info(f"Archived {len(old_runs)} runs older than {max_age_days} days")
        return len(old_runs)

    def _archive_telemetry(self, run_id: int):
        """Replace a run's granular telemetry with a single rollup record."""
        rows = self.db.query(Telemetry).filter(Telemetry.run_id == run_id).order_by(Telemetry.id).all()
        if not rows:
            return

        summary = [
            {
                "metric_key": row.metric_key,
                "value_num": row.value_num,
                "value_text": row.value_text,
                "created_at": row.created_at.isoformat() if row.created_at else None,
            }
            for row in rows
        ]
        self.db.query(Telemetry).filter(Telemetry.run_id == run_id).delete(synchronize_session=False)
        self.telemetry.record(run_id, "archived_telemetry", len(rows), payload={"records": summary})

    def get_queue_stats(self) -> QueueStats:
        """Run counts by status and average wait/execution times in seconds."""
        counts = {status: 0 for status in STATUSES}
        for status, count in self.db.query(Run.status, func.count(Run.id)).group_by(Run.status).all():
            counts[status] = count

        started = (
            self.db.query(Run.created_at, Run.started_at)
            .filter(Run.started_at.isnot(None), Run.status != "queued")
            .all()
        )
        waits = [(s - c).total_seconds() for c, s in started if c]

        finished = (
            self.db.query(Run.started_at, Run.completed_at)
            .filter(Run.status == "completed", Run.started_at.isnot(None), Run.completed_at.isnot(None))
            .all()
        )
        executions = [(e - s).total_seconds() for s, e in finished]

        return QueueStats(
            counts=counts,
            avg_wait_time=sum(waits) / len(waits) if waits else 0.0,
            avg_execution_time=sum(executions) / len(executions) if executions else 0.0,
        )

    def _token_total(self, run_id: int) -> int:
        total = (
            self.db.query(func.coalesce(func.sum(NBResult.tokens_used), 0))
            .filter(NBResult.run_id == run_id)
            .scalar()
        )
        return int(total or 0)

    def _nb_breakdown(self, run_id: int) -> Dict[str, Dict[str, Any]]:
        results = self.db.query(NBResult).filter(NBResult.run_id == run_id).all()
        return {
            r.nb_code: {"tokens": r.tokens_used, "duration_ms": r.duration_ms, "status": r.status}
            for r in results
        }

    def _record_dataset_coverage(self, run_id: int):
        """Assemble the canonical dataset once and record its coverage for synthesis."""
        try:
            inputs = self.collector.collect(run_id)
            dataset = self.builder.build_dataset(inputs, list(ALL_NBS), run_id)
        except (PipelineError, SQLAlchemyError) as e:
            self.db.rollback()
            self.telemetry.diagnostic(run_id, "canonical_dataset", "warning", f"Dataset assembly failed: {e}")
            self.db.commit()
            return

        density = self.builder.validate_citation_density(dataset)
        stats = inputs.processing_stats
        self.telemetry.record(run_id, "canonical_nbs_loaded", dataset.processing_stats.loaded_nbs, payload={
            "missing_nbs": stats.missing_nbs,
            "missing_core": stats.missing_core,
            "missing_optional": stats.missing_optional,
            "citation_average": density.average,
            "meets_citation_target": density.meets_target,
        })
        if stats.missing_core:
            self.telemetry.diagnostic(
                run_id, "canonical_dataset", "warning",
                f"Missing core NBs (synthesis degraded): {', '.join(stats.missing_core)}",
            )
        self.db.commit()


def _dump_refresh_config(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, RefreshConfig):
        return value.model_dump_json()
    if isinstance(value, str):
        return value
    return json.dumps(value)

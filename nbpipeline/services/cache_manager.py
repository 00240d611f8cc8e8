"""Cache manager: NB result reuse across runs for the same company pair."""

import json
import logging
from datetime import datetime, timedelta
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from nbpipeline.database import utcnow
from nbpipeline.exceptions import InvalidArgument, NotFound, PartialCopyFailure
from nbpipeline.models.artifact import Artifact, Synthesis
from nbpipeline.models.nb_result import NBResult
from nbpipeline.models.run import Run
from nbpipeline.schemas.cache import CacheAvailability
from nbpipeline.schemas.run import RefreshConfig
from nbpipeline.services.nb_codes import TOTAL_NBS
from nbpipeline.services.telemetry import TelemetryRecorder

logger = logging.getLogger(__name__)

DECISIONS = ("reuse", "full")

SIDE_FLAGS = {
    "source": "refresh_source",
    "primary": "refresh_source",
    "target": "refresh_target",
    "counterpart": "refresh_target",
}


class CacheManager:
    """Finds reusable runs and clones their NB results into new runs."""

    def __init__(self, db: Session, telemetry: Optional[TelemetryRecorder] = None):
        self.db = db
        self.telemetry = telemetry or TelemetryRecorder(db)

    def check_cache(
        self,
        company_id: int,
        target_company_id: Optional[int] = None,
        freshness_days: int = 90,
        now: Optional[datetime] = None,
    ) -> CacheAvailability:
        """
        Check whether a complete, fresh run exists for the company pair.

        Only the most recent completed run inside the freshness window is
        considered. It is valid when it holds exactly 15 completed NB results.

        Args:
            company_id: Source company
            target_company_id: Target company, None for single company analysis
            freshness_days: Maximum age of the cached run
            now: Reference time, defaults to current UTC time

        Returns:
            CacheAvailability
        """
        now = now or utcnow()
        cutoff = now - timedelta(days=freshness_days)

        query = self.db.query(Run).filter(
            Run.company_id == company_id,
            Run.status == "completed",
            Run.created_at >= cutoff,
        )
        if target_company_id is None:
            query = query.filter(Run.target_company_id.is_(None))
        else:
            query = query.filter(Run.target_company_id == target_company_id)

        candidate = query.order_by(Run.created_at.desc(), Run.id.desc()).first()

        if candidate is None:
            self._log_check(company_id, target_company_id, "no_cache_found")
            return CacheAvailability()

        results = self.db.query(NBResult.status).filter(NBResult.run_id == candidate.id).all()
        nb_count = len(results)
        completed = sum(1 for (status,) in results if status == "completed")

        if nb_count != TOTAL_NBS or completed != TOTAL_NBS:
            self._log_check(
                company_id, target_company_id, "incomplete_nb_set", candidate.id, nb_count,
                completed=completed,
            )
            return CacheAvailability(block_count=nb_count)

        age_days = int((now - candidate.created_at).total_seconds() // 86400)
        self._log_check(company_id, target_company_id, "cache_available", candidate.id, nb_count, age_days)

        return CacheAvailability(
            available=True,
            source_run_id=candidate.id,
            age_days=age_days,
            created_at=candidate.created_at,
            block_count=nb_count,
        )

    def process_decision(self, decision: str, new_run_id: int, source_run_id: Optional[int] = None) -> str:
        """
        Apply a cache decision to a run inside one transaction.

        Args:
            decision: 'reuse' or 'full'
            new_run_id: Run being prepared
            source_run_id: Run to clone from (required for 'reuse')

        Returns:
            'cached' to skip NB generation, 'fetch' to proceed with it

        Raises:
            InvalidArgument: Unknown decision, or 'reuse' without source_run_id
            NotFound: If the new run does not exist
            PartialCopyFailure: If cloning did not yield exactly 15 NBs
        """
        if decision not in DECISIONS:
            raise InvalidArgument(f"Invalid cache decision: {decision}. Must be 'reuse' or 'full'.")
        if decision == "reuse" and not source_run_id:
            raise InvalidArgument("source_run_id is required when decision is 'reuse'")

        try:
            run = self.db.query(Run).filter(Run.id == new_run_id).first()
            if not run:
                raise NotFound(f"Run {new_run_id} not found")

            run.cache_strategy = decision
            if decision == "reuse":
                run.reused_from_run_id = source_run_id
                copied = self._copy_nbs(source_run_id, new_run_id)
                if copied != TOTAL_NBS:
                    raise PartialCopyFailure(
                        f"Failed to copy NBs from run {source_run_id} to run {new_run_id}",
                        copied=copied,
                        source_run_id=source_run_id,
                    )
            else:
                run.reused_from_run_id = None

            self._log_decision(new_run_id, decision, source_run_id)
            self.db.commit()

        except Exception as e:
            self.db.rollback()
            self.telemetry.diagnostic(
                new_run_id, "cache_decision_error", "error", f"Cache decision processing failed: {e}"
            )
            self.db.commit()
            raise

        if decision == "reuse":
            self._copy_synthesis_artifacts(source_run_id, new_run_id)
            return "cached"
        return "fetch"

    def _copy_nbs(self, source_run_id: int, new_run_id: int) -> int:
        """Clone the source run's NB results; returns the number copied (0 if not exactly 15 exist)."""
        source_nbs = (
            self.db.query(NBResult)
            .filter(NBResult.run_id == source_run_id)
            .order_by(NBResult.nb_code)
            .all()
        )
        if len(source_nbs) != TOTAL_NBS:
            logger.error(f"Expected {TOTAL_NBS} NBs from cached run {source_run_id}, found {len(source_nbs)}")
            return 0

        now = utcnow()
        for nb in source_nbs:
            self.db.add(
                NBResult(
                    run_id=new_run_id,
                    nb_code=nb.nb_code,
                    payload=nb.payload,
                    citations=nb.citations,
                    tokens_used=nb.tokens_used,
                    duration_ms=0,  # No generation call was made
                    status="completed",
                    created_at=now,
                )
            )
        self.db.flush()

        copied = (
            self.db.query(NBResult)
            .filter(NBResult.run_id == new_run_id, NBResult.status == "completed")
            .count()
        )
        self.telemetry.record(new_run_id, "nb_copied_count", copied)
        self.telemetry.record(new_run_id, "cached_from_runid", source_run_id, str(source_run_id))
        return copied

    def _copy_synthesis_artifacts(self, source_run_id: int, new_run_id: int) -> int:
        """Best-effort copy of the rendered report and pipeline artifacts."""
        copied = 0

        synthesis = self.db.query(Synthesis).filter(Synthesis.run_id == source_run_id).first()
        if synthesis:
            try:
                self.db.add(
                    Synthesis(
                        run_id=new_run_id,
                        html_content=synthesis.html_content,
                        json_content=synthesis.json_content,
                        voice_report=synthesis.voice_report,
                        selfcheck_report=synthesis.selfcheck_report,
                    )
                )
                self.db.commit()
                copied += 1
            except SQLAlchemyError as e:
                self.db.rollback()
                self.telemetry.diagnostic(
                    new_run_id, "synthesis_copy_error", "warning", f"Failed to copy synthesis record: {e}"
                )
        else:
            self.telemetry.diagnostic(
                new_run_id, "synthesis_not_found", "warning",
                f"No synthesis record found for cached run {source_run_id}",
            )

        artifacts = self.db.query(Artifact).filter(Artifact.run_id == source_run_id).all()
        for artifact in artifacts:
            phase, artifact_type, json_data = artifact.phase, artifact.artifact_type, artifact.json_data
            try:
                self.db.add(
                    Artifact(run_id=new_run_id, phase=phase, artifact_type=artifact_type, json_data=json_data)
                )
                self.db.commit()
                copied += 1
            except SQLAlchemyError as e:
                self.db.rollback()
                self.telemetry.diagnostic(
                    new_run_id, "artifact_copy_error", "warning",
                    f"Failed to copy artifact {phase}/{artifact_type}: {e}",
                )

        if copied:
            self.telemetry.record(new_run_id, "synthesis_artifacts_copied", copied)
            self.telemetry.diagnostic(
                new_run_id, "cache_copy_complete", "info",
                f"Copied {copied} synthesis artifacts from run {source_run_id}",
            )
        else:
            self.telemetry.diagnostic(
                new_run_id, "synthesis_copy_warning", "warning",
                f"No synthesis artifacts copied from run {source_run_id}, synthesis will regenerate",
            )
        self.db.commit()
        return copied

    def discard_synthesis(self, run_id: int) -> int:
        """Drop a run's rendered report so synthesis regenerates."""
        deleted = self.db.query(Synthesis).filter(Synthesis.run_id == run_id).delete(synchronize_session=False)
        if deleted:
            self.telemetry.diagnostic(run_id, "synthesis_discarded", "info", "Discarded cloned synthesis record")
        self.db.commit()
        return deleted

    def get_refresh_strategy(self, run_id: int) -> RefreshConfig:
        """
        Parse a run's refresh_config override.

        Absent or malformed configuration degrades to no override.
        """
        run = self.db.query(Run).filter(Run.id == run_id).first()
        if not run or not run.refresh_config:
            self.telemetry.diagnostic(
                run_id, "refresh_strategy", "info", "No refresh_config found, using default cache behavior"
            )
            return RefreshConfig()

        try:
            raw = json.loads(run.refresh_config)
            if not isinstance(raw, dict):
                raise ValueError(f"expected an object, got {type(raw).__name__}")
            strategy = RefreshConfig.model_validate(raw)
        except (ValueError, ValidationError) as e:
            self.telemetry.diagnostic(
                run_id, "refresh_strategy", "warning", f"Invalid refresh_config ({e}), using default behavior"
            )
            return RefreshConfig()

        self.telemetry.diagnostic(
            run_id, "refresh_strategy", "info", f"Refresh strategy parsed: {strategy.model_dump_json()}"
        )
        return strategy

    def should_regenerate_blocks(self, run_id: int, side: str) -> bool:
        """True when the override forces regeneration of the given side's NBs."""
        strategy = self.get_refresh_strategy(run_id)

        if strategy.force_nb_refresh:
            self._log_refresh(run_id, "nb_refresh_decision", "force_all_nbs", "Force regenerate all NBs")
            return True

        flag = SIDE_FLAGS.get(side)
        if flag and getattr(strategy, flag):
            self._log_refresh(
                run_id, "nb_refresh_decision", f"{side}_nbs_only", f"Force regenerate {side} NBs ({flag}=true)"
            )
            return True

        self.telemetry.diagnostic(
            run_id, "nb_refresh_decision", "info", f"Use normal cache behavior for {side} NBs"
        )
        return False

    def should_regenerate_synthesis(self, run_id: int) -> bool:
        """True when synthesis must be rebuilt, either forced or because NBs are refreshed."""
        strategy = self.get_refresh_strategy(run_id)

        if strategy.force_synthesis_refresh:
            reason = "synthesis_only"
        elif strategy.refresh_source or strategy.refresh_target:
            reason = "synthesis_after_nb_refresh"
        elif strategy.force_nb_refresh:
            reason = "synthesis_after_full_nb_refresh"
        else:
            self.telemetry.diagnostic(
                run_id, "synthesis_refresh_decision", "info", "Use normal cache behavior for synthesis"
            )
            return False

        self._log_refresh(run_id, "synthesis_refresh_decision", reason, f"Regenerate synthesis ({reason})")
        return True

    def _log_refresh(self, run_id: int, metric: str, decision: str, message: str):
        self.telemetry.diagnostic(run_id, metric, "info", message)
        self.telemetry.record(run_id, "refresh_decision", value_text=decision)

    def _log_decision(self, run_id: int, decision: str, source_run_id: Optional[int]):
        self.telemetry.record(run_id, "cache_decision", value_text=decision)
        message = f"Cache decision: {decision}"

        if decision == "reuse":
            source = self.db.query(Run).filter(Run.id == source_run_id).first()
            if source and source.created_at:
                age_days = int((utcnow() - source.created_at).total_seconds() // 86400)
                self.telemetry.record(run_id, "cache_age_days", age_days)
            message += f" from run {source_run_id}"

        self.telemetry.diagnostic(run_id, "cache_decision_logged", "info", message)

    def _log_check(
        self,
        company_id: int,
        target_company_id: Optional[int],
        result: str,
        run_id: Optional[int] = None,
        nb_count: Optional[int] = None,
        age_days: Optional[int] = None,
        completed: Optional[int] = None,
    ):
        message = f"Cache check for company_id={company_id}, target_company_id={target_company_id}: {result}"
        if run_id:
            details = [f"run_id: {run_id}", f"NBs: {nb_count}"]
            if completed is not None:
                details.append(f"completed: {completed}")
            if age_days is not None:
                details.append(f"age: {age_days} days")
            message += f" ({', '.join(details)})"

        severity = "info" if result == "cache_available" else "warning"
        self.telemetry.diagnostic(0, "cache_check", severity, message)
        self.db.commit()

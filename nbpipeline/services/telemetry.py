"""Append-only telemetry and diagnostics writer."""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from nbpipeline.models.telemetry import Diagnostic, Telemetry

logger = logging.getLogger(__name__)

_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class TelemetryRecorder:
    """Writes telemetry and diagnostics rows into the caller's session.

    Rows are added, never committed here: the caller's transaction decides
    whether they persist.
    """

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        run_id: int,
        metric_key: str,
        value_num: Optional[float] = None,
        value_text: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Telemetry:
        """Append a metric event."""
        row = Telemetry(
            run_id=run_id or 0,
            metric_key=metric_key,
            value_num=value_num,
            value_text=value_text,
            payload=payload or None,
        )
        self.db.add(row)
        return row

    def diagnostic(self, run_id: int, metric: str, severity: str, message: str) -> Diagnostic:
        """Append a diagnostic message and mirror it to the log."""
        logger.log(_LEVELS.get(severity, logging.INFO), f"[run {run_id}] {metric}: {message}")
        row = Diagnostic(run_id=run_id or 0, metric=metric, severity=severity, message=message)
        self.db.add(row)
        return row

    def event(self, run_id: int, event: str, **data: Any) -> Telemetry:
        """Record a lifecycle event as ``event_<name>`` telemetry."""
        return self.record(run_id, f"event_{event}", 1, payload={"event": event, **data})

"""Run-related Pydantic schemas."""

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel


class RefreshConfig(BaseModel):
    """Per-run override forcing selective regeneration."""

    force_nb_refresh: bool = False
    force_synthesis_refresh: bool = False
    refresh_source: bool = False
    refresh_target: bool = False


class RunCreate(BaseModel):
    """Schema for queueing a new run."""

    company_id: int
    target_company_id: Optional[int] = None
    user_id: int
    mode: str = "full"
    force_refresh: bool = False
    cache_decision: str = "auto"  # 'auto', 'reuse', 'full'
    refresh_config: Optional[RefreshConfig] = None


class RunQueuedResponse(BaseModel):
    """Response after queueing a run."""

    run_id: int
    status: str


class RunProgress(BaseModel):
    """Run progress derived from its NB results."""

    run_id: int
    status: str
    completed_nbs: int
    total_nbs: int
    current_nb: Optional[str] = None
    percentage: float
    started_at: Optional[datetime] = None
    eta_seconds: Optional[float] = None
    estimated_cost: Optional[float] = None
    estimated_tokens: Optional[int] = None
    retry_count: int = 0
    last_error: Optional[str] = None


class QueueStats(BaseModel):
    """Status histogram and average timings across runs."""

    counts: Dict[str, int]
    avg_wait_time: float  # seconds between creation and start
    avg_execution_time: float  # seconds between start and completion


class CleanupResponse(BaseModel):
    """Result of a cleanup sweep."""

    archived: int

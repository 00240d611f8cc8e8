"""Cache-reuse schemas."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class CacheAvailability(BaseModel):
    """Outcome of a cache check for a company pair."""

    available: bool = False
    source_run_id: Optional[int] = None
    age_days: Optional[int] = None
    created_at: Optional[datetime] = None
    block_count: int = 0


class CacheDecisionRequest(BaseModel):
    """User or automated cache decision for a run."""

    decision: str  # 'reuse' or 'full'
    source_run_id: Optional[int] = None


class CacheDecisionResponse(BaseModel):
    """Next pipeline step after a cache decision."""

    run_id: int
    next_step: str  # 'cached' or 'fetch'

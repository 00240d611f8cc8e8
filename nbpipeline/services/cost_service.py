"""Cost estimation and actuals recording."""

import logging
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from nbpipeline.config import settings
from nbpipeline.models.run import Run
from nbpipeline.services.cache_manager import CacheManager
from nbpipeline.services.telemetry import TelemetryRecorder

logger = logging.getLogger(__name__)

# USD per 1K tokens
PROVIDER_PRICING = {
    "gpt-4": {"input": 0.03, "output": 0.06},
    "gpt-4-turbo": {"input": 0.01, "output": 0.03},
    "gpt-3.5-turbo": {"input": 0.0005, "output": 0.0015},
    "claude-3-opus": {"input": 0.015, "output": 0.075},
    "claude-3-sonnet": {"input": 0.003, "output": 0.015},
    "claude-3-haiku": {"input": 0.00025, "output": 0.00125},
}
FALLBACK_PRICE_PER_1K = 0.02

# Historical average tokens per NB
AVG_TOKENS_PER_NB = {
    "NB1": (1500, 800),
    "NB2": (1800, 1000),
    "NB3": (2000, 1200),
    "NB4": (1600, 900),
    "NB5": (2200, 1100),
    "NB6": (1700, 850),
    "NB7": (1900, 950),
    "NB8": (2100, 1050),
    "NB9": (1800, 900),
    "NB10": (2000, 1000),
    "NB11": (1600, 800),
    "NB12": (1700, 850),
    "NB13": (1500, 750),
    "NB14": (2500, 1500),
    "NB15": (2800, 1600),
}

RETRIEVAL_OVERHEAD = 1.1


class CostEstimate(BaseModel):
    """Estimated cost of a run."""

    can_proceed: bool = True
    total_cost: float = 0.0
    total_tokens: int = 0
    provider: str
    warnings: List[str] = Field(default_factory=list)
    limit: float
    reuse_savings: float = 0.0
    reused_snapshot_id: Optional[int] = None
    reused_nbs: List[str] = Field(default_factory=list)


class CostEstimator(Protocol):
    """Estimates and records run costs."""

    def estimate(self, company_id: int, target_company_id: Optional[int], force_refresh: bool) -> CostEstimate: ...

    def record_telemetry(self, run_id: int, key: str, value: float, context: Optional[Dict[str, Any]] = None): ...

    def record_actuals(self, run_id: int, tokens: int, cost: float, breakdown: Dict[str, Dict[str, Any]]): ...

    def token_cost(self, tokens: int) -> float: ...


class CostService:
    """Token-table cost estimator with warning and hard-limit thresholds."""

    def __init__(self, db: Session, telemetry: Optional[TelemetryRecorder] = None, provider: Optional[str] = None):
        self.db = db
        self.telemetry = telemetry or TelemetryRecorder(db)
        self.provider = provider or settings.LLM_PROVIDER
        if self.provider not in PROVIDER_PRICING:
            logger.warning(f"Unknown provider {self.provider}, using fallback pricing")

    def price(self, tokens: float, kind: str) -> float:
        per_1k = PROVIDER_PRICING.get(self.provider, {}).get(kind, FALLBACK_PRICE_PER_1K)
        return tokens / 1000 * per_1k

    def token_cost(self, tokens: int) -> float:
        return self.price(tokens, "output")

    def estimate(self, company_id: int, target_company_id: Optional[int] = None, force_refresh: bool = False) -> CostEstimate:
        """
        Estimate the cost of generating NBs for a company (pair).

        NBs that a valid cached run would supply are excluded from the total
        and reported as reuse savings.
        """
        reused_nbs: List[str] = []
        reused_snapshot_id = None
        if not force_refresh:
            cache = CacheManager(self.db, self.telemetry).check_cache(
                company_id, target_company_id, settings.CACHE_FRESHNESS_DAYS
            )
            if cache.available:
                reused_snapshot_id = cache.source_run_id
                reused_nbs = list(AVG_TOKENS_PER_NB)

        multiplier = 2 if target_company_id else 1
        total_cost = 0.0
        total_tokens = 0
        savings = 0.0
        for nb_code, (input_tokens, output_tokens) in AVG_TOKENS_PER_NB.items():
            adjusted_input = int(input_tokens * RETRIEVAL_OVERHEAD)
            nb_cost = self.price(adjusted_input, "input") + self.price(output_tokens, "output")
            if nb_code in reused_nbs:
                savings += nb_cost
                continue
            total_cost += nb_cost
            total_tokens += adjusted_input + output_tokens

        estimate = CostEstimate(
            total_cost=round(total_cost * multiplier, 4),
            total_tokens=total_tokens * multiplier,
            provider=self.provider,
            limit=settings.COST_HARD_LIMIT,
            reuse_savings=round(savings * multiplier, 4),
            reused_snapshot_id=reused_snapshot_id,
            reused_nbs=reused_nbs,
        )

        if estimate.total_cost > settings.COST_WARNING_THRESHOLD:
            estimate.warnings.append(
                f"Estimated cost (${estimate.total_cost:.2f}) exceeds warning threshold "
                f"(${settings.COST_WARNING_THRESHOLD:.2f})"
            )
        if estimate.total_cost > settings.COST_HARD_LIMIT:
            estimate.warnings.append(
                f"Estimated cost (${estimate.total_cost:.2f}) exceeds hard limit "
                f"(${settings.COST_HARD_LIMIT:.2f}). Run will be blocked."
            )
            estimate.can_proceed = False

        return estimate

    def record_telemetry(self, run_id: int, key: str, value: float, context: Optional[Dict[str, Any]] = None):
        self.telemetry.record(run_id, key, value, payload=context)

    def record_actuals(self, run_id: int, tokens: int, cost: float, breakdown: Dict[str, Dict[str, Any]]):
        """Store actual usage on the run plus summary and per-NB telemetry."""
        run = self.db.query(Run).filter(Run.id == run_id).first()
        if run is None:
            logger.warning(f"Cannot record actuals: run {run_id} not found")
            return

        run.actual_tokens = tokens
        run.actual_cost = cost

        self.record_telemetry(run_id, "actual_cost", cost, {
            "estimated_cost": run.est_cost,
            "variance_pct": variance_pct(run.est_cost or 0.0, cost),
            "total_tokens": tokens,
            "provider": self.provider,
        })
        self.record_telemetry(run_id, "actual_tokens", tokens, {
            "estimated_tokens": run.est_tokens,
            "variance_pct": variance_pct(run.est_tokens or 0, tokens),
        })
        for nb_code, data in breakdown.items():
            self.record_telemetry(run_id, f"nb_{nb_code}_tokens", data.get("tokens") or 0, {
                "nb_code": nb_code,
                "duration_ms": data.get("duration_ms"),
                "status": data.get("status"),
            })


def variance_pct(estimated: float, actual: float) -> float:
    """Percentage difference of actual against estimate."""
    if not estimated:
        return 100.0 if actual > 0 else 0.0
    return round((actual - estimated) / estimated * 100, 2)

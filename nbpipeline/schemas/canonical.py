"""Normalized inputs and canonical dataset schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class CompanyInfo(BaseModel):
    """Company fields used by synthesis."""

    id: Optional[int] = None
    name: str = "Unknown"
    sector: Optional[str] = None
    ticker: Optional[str] = None
    website: Optional[str] = None


class NBEntry(BaseModel):
    """One collected NB result, keyed by canonical code."""

    nb_code: str
    status: str = "completed"
    data: Optional[Any] = None
    citations: List[Any] = Field(default_factory=list)
    raw_payload: Optional[str] = None
    duration_ms: int = 0
    tokens_used: int = 0


class ProcessingStats(BaseModel):
    """Collection statistics for a run."""

    nb_count: int = 0
    citation_count: int = 0
    completed_nbs: int = 0
    missing_core: List[str] = Field(default_factory=list)
    missing_optional: List[str] = Field(default_factory=list)

    @property
    def missing_nbs(self) -> List[str]:
        return self.missing_core + self.missing_optional


class NormalizedInputs(BaseModel):
    """Collector output: unique canonical entries plus an alias lookup index."""

    run_id: int
    source: str = "raw"  # 'raw' or 'normalized_artifact'
    company_source: Optional[CompanyInfo] = None
    company_target: Optional[CompanyInfo] = None
    nb: Dict[str, NBEntry] = Field(default_factory=dict)
    alias_index: Dict[str, str] = Field(default_factory=dict)
    citations: List[Any] = Field(default_factory=list)
    processing_stats: ProcessingStats = Field(default_factory=ProcessingStats)
    diversity_metadata: Optional[Dict[str, Any]] = None

    def lookup(self, code: str) -> Optional[NBEntry]:
        """Resolve a canonical or legacy NB spelling to its entry."""
        canonical = self.alias_index.get(code, code)
        return self.nb.get(canonical)


class DatasetNB(BaseModel):
    """Per-block entry of a canonical dataset."""

    nb_code: str
    status: str
    data: Any = None
    citations: List[Any] = Field(default_factory=list)
    raw_payload: Optional[str] = None
    duration_ms: int = 0
    tokens_used: int = 0


class DatasetMetadata(BaseModel):
    """Canonical dataset header."""

    run_id: int
    timestamp: datetime
    nb_count: int
    total_available: int
    completion_rate: float
    canonical_keys: List[str]
    source_company: Optional[CompanyInfo] = None
    target_company: Optional[CompanyInfo] = None


class DatasetStats(BaseModel):
    """Canonical dataset aggregates."""

    normalization_complete: bool = True
    canonical_keys_identified: int = 0
    loaded_nbs: int = 0
    missing_nbs: int = 0
    total_citations: int = 0
    avg_tokens_per_nb: int = 0


class CanonicalDataset(BaseModel):
    """Per-request view over a run's NB results, ready for synthesis."""

    metadata: DatasetMetadata
    nb_data: Dict[str, DatasetNB] = Field(default_factory=dict)
    processing_stats: DatasetStats = Field(default_factory=DatasetStats)


class CitationDensity(BaseModel):
    """Citation density quality gate."""

    total: int
    average: float
    meets_target: bool

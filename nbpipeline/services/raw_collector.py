"""Raw NB result collection and normalization."""

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from nbpipeline.exceptions import InvalidState, NotFound, UnknownBlockCode
from nbpipeline.models.company import Company
from nbpipeline.models.nb_result import NBResult
from nbpipeline.models.run import Run
from nbpipeline.schemas.canonical import CompanyInfo, NBEntry, NormalizedInputs, ProcessingStats
from nbpipeline.services.citation_normalizer import CitationNormalizer, citation_url
from nbpipeline.services.nb_codes import nb_code_aliases, normalize_nb_code, partition_missing

logger = logging.getLogger(__name__)


class RawCollector:
    """Loads a completed run's NB results into a normalized, alias-addressable map."""

    def __init__(self, db: Session, normalizer: Optional[CitationNormalizer] = None):
        self.db = db
        self.normalizer = normalizer or CitationNormalizer(db)

    def collect(self, run_id: int) -> NormalizedInputs:
        """
        Collect normalized inputs for a run.

        Args:
            run_id: Completed run to read

        Returns:
            NormalizedInputs with one entry per canonical NB code

        Raises:
            NotFound: If the run or its source company does not exist
            InvalidState: If the run is not completed
        """
        run = self.db.query(Run).filter(Run.id == run_id).first()
        if not run:
            raise NotFound(f"Run {run_id} not found")
        if run.status != "completed":
            raise InvalidState(
                f"Run {run_id} status is '{run.status}', must be 'completed'", status=run.status
            )

        company_source = self.db.query(Company).filter(Company.id == run.company_id).first()
        if not company_source:
            raise NotFound(f"Source company {run.company_id} not found")

        company_target = None
        if run.target_company_id:
            company_target = self.db.query(Company).filter(Company.id == run.target_company_id).first()
            if not company_target:
                logger.warning(
                    f"Target company {run.target_company_id} not found for run {run_id}, proceeding without target"
                )

        normalized_artifact = self._load_or_rebuild_artifact(run_id)
        citations_by_nb = normalized_artifact.get("citations_by_nb", {}) if normalized_artifact else None

        results = (
            self.db.query(NBResult)
            .filter(NBResult.run_id == run_id)
            .order_by(NBResult.nb_code)
            .all()
        )

        nb: Dict[str, NBEntry] = {}
        alias_index: Dict[str, str] = {}
        all_citations: List[Any] = []
        stats = ProcessingStats()

        for result in results:
            try:
                canonical = normalize_nb_code(result.nb_code)
            except UnknownBlockCode:
                logger.warning(f"Run {run_id}: skipping NB result {result.id} with unknown code {result.nb_code!r}")
                continue

            if canonical in nb:
                logger.warning(f"Run {run_id}: duplicate result for {canonical} ({result.nb_code}), keeping first")
                continue

            data = self._decode_payload(run_id, result)

            records = citations_by_nb.get(canonical, []) if citations_by_nb is not None else None
            if records is not None and isinstance(data, dict) and isinstance(data.get("citations"), list):
                citations = _merge_normalized(data["citations"], records)
                data["citations"] = citations
            else:
                citations = self._decode_citations(run_id, result)
                if records is not None:
                    citations = _merge_normalized(citations, records)

            nb[canonical] = NBEntry(
                nb_code=canonical,
                status=result.status or "completed",
                data=data,
                citations=citations,
                raw_payload=result.payload,
                duration_ms=result.duration_ms or 0,
                tokens_used=result.tokens_used or 0,
            )
            for alias in nb_code_aliases(canonical):
                if alias != canonical:
                    alias_index[alias] = canonical

            stats.nb_count += 1
            stats.citation_count += len(citations)
            all_citations.extend(citations)

        stats.completed_nbs = sum(1 for entry in nb.values() if entry.status == "completed")
        stats.missing_core, stats.missing_optional = partition_missing(set(nb))

        if stats.missing_core:
            logger.warning(f"Run {run_id}: missing core NBs (may impact synthesis): {', '.join(stats.missing_core)}")
        if stats.missing_optional:
            logger.info(f"Run {run_id}: missing optional NBs (synthesis can proceed): {', '.join(stats.missing_optional)}")

        logger.info(f"Run {run_id}: {stats.nb_count} NBs collected, {stats.citation_count} citations")

        diversity = None
        if normalized_artifact:
            diversity = {
                "source": "normalized_artifact",
                "domain_frequency": normalized_artifact.get("domain_frequency_map", {}),
                "total_citations": len(normalized_artifact["normalized_citations"]),
            }

        return NormalizedInputs(
            run_id=run_id,
            source="normalized_artifact" if normalized_artifact else "raw",
            company_source=_company_info(company_source),
            company_target=_company_info(company_target) if company_target else None,
            nb=nb,
            alias_index=alias_index,
            citations=dedupe_citations(all_citations),
            processing_stats=stats,
            diversity_metadata=diversity,
        )

    def _load_or_rebuild_artifact(self, run_id: int) -> Optional[Dict[str, Any]]:
        artifact = self.normalizer.load_artifact(run_id)
        if artifact:
            return artifact

        logger.warning(f"Run {run_id}: normalized citation artifact missing, attempting rebuild")
        try:
            rebuilt = self.normalizer.rebuild_artifact(run_id)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Run {run_id}: citation normalization rebuild failed: {e}", exc_info=True)
            rebuilt = False

        if rebuilt:
            artifact = self.normalizer.load_artifact(run_id)
            if artifact:
                logger.info(f"Run {run_id}: using rebuilt normalized citation artifact")
                return artifact

        logger.warning(f"Run {run_id}: falling back to raw NB results")
        return None

    def _decode_payload(self, run_id: int, result: NBResult) -> Optional[Any]:
        if not result.payload:
            return None
        try:
            return json.loads(result.payload)
        except ValueError as e:
            logger.warning(f"Run {run_id}: failed to decode payload for {result.nb_code}: {e}")
            return None

    def _decode_citations(self, run_id: int, result: NBResult) -> List[Any]:
        if not result.citations:
            return []
        try:
            citations = json.loads(result.citations)
        except ValueError as e:
            logger.warning(f"Run {run_id}: failed to decode citations for {result.nb_code}: {e}")
            return []
        return citations if isinstance(citations, list) else []


def dedupe_citations(citations: List[Any]) -> List[Any]:
    """Remove structurally equal citations, keeping first occurrence order."""
    seen = set()
    unique = []
    for citation in citations:
        key = json.dumps(citation, sort_keys=True, default=str)
        if key not in seen:
            seen.add(key)
            unique.append(citation)
    return unique


def _merge_normalized(citations: List[Any], records: List[Any]) -> List[Any]:
    """Overlay normalized records onto the block's own citations, matched by URL."""
    by_url = {citation_url(record): record for record in records if citation_url(record)}
    merged = []
    for citation in citations:
        record = by_url.get(citation_url(citation))
        if record is None:
            merged.append(citation)
        elif isinstance(citation, dict):
            merged.append({**citation, **record})
        else:
            merged.append(record)
    return merged


def _company_info(company: Company) -> CompanyInfo:
    return CompanyInfo(
        id=company.id,
        name=company.name or "Unknown",
        sector=company.sector,
        ticker=company.ticker,
        website=company.website,
    )

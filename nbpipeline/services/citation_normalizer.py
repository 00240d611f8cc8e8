"""Citation domain normalization and the normalized-inputs artifact."""

import json
import logging
import math
import re
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from sqlalchemy.orm import Session

from nbpipeline.database import utcnow
from nbpipeline.exceptions import UnknownBlockCode
from nbpipeline.models.artifact import Artifact
from nbpipeline.models.nb_result import NBResult
from nbpipeline.services.nb_codes import normalize_nb_code
from nbpipeline.services.telemetry import TelemetryRecorder

logger = logging.getLogger(__name__)

ARTIFACT_PHASE = "citation_normalization"
ARTIFACT_TYPE = "normalized_inputs"
NORMALIZED_BY = "citation_normalizer"

_SCHEME = re.compile(r"^https?://", re.IGNORECASE)


def extract_domain(url: str) -> Optional[str]:
    """Lower-cased host without ``www.``, or None for unusable URLs."""
    url = (url or "").strip()
    if not url or any(ch.isspace() for ch in url):
        return None
    if not _SCHEME.match(url):
        url = "https://" + url

    try:
        host = urlparse(url).hostname
    except ValueError:
        return None

    if not host:
        return None
    host = host.lower()
    if host.startswith("www."):
        host = host[4:]
    if "." not in host:
        return None
    return host


def citation_url(citation: Any) -> str:
    """URL of a citation given as a string or a dict."""
    if isinstance(citation, str):
        return citation
    if isinstance(citation, dict):
        return citation.get("url") or ""
    return ""


def diversity_score(domain_frequency: Dict[str, int], total: int) -> float:
    """Shannon entropy of the domain distribution, scaled to 0..1."""
    if total == 0 or not domain_frequency:
        return 0.0

    entropy = 0.0
    for count in domain_frequency.values():
        p = count / total
        if p > 0:
            entropy -= p * math.log2(p)

    if len(domain_frequency) < 2:
        return 0.0
    return entropy / math.log2(len(domain_frequency))


class CitationNormalizer:
    """Resolves citation domains for a run and stores them as an artifact."""

    def __init__(self, db: Session, telemetry: Optional[TelemetryRecorder] = None):
        self.db = db
        self.telemetry = telemetry or TelemetryRecorder(db)

    def load_artifact(self, run_id: int) -> Optional[Dict[str, Any]]:
        """Load the stored normalized inputs, or None if absent or unreadable."""
        artifact = (
            self.db.query(Artifact)
            .filter(
                Artifact.run_id == run_id,
                Artifact.phase == ARTIFACT_PHASE,
                Artifact.artifact_type == ARTIFACT_TYPE,
            )
            .first()
        )
        if not artifact or not artifact.json_data:
            return None

        try:
            data = json.loads(artifact.json_data)
        except ValueError as e:
            logger.warning(f"Run {run_id}: unreadable normalized citation artifact: {e}")
            return None

        if not isinstance(data, dict) or not isinstance(data.get("normalized_citations"), list):
            return None
        if not isinstance(data.get("citations_by_nb", {}), dict):
            return None
        return data

    def rebuild_artifact(self, run_id: int) -> bool:
        """
        Recompute normalized citations for a run and store the artifact.

        Returns:
            True if the artifact was written, False if the run has no NB results
        """
        start = time.monotonic()
        results = (
            self.db.query(NBResult)
            .filter(NBResult.run_id == run_id)
            .order_by(NBResult.nb_code)
            .all()
        )
        if not results:
            self.telemetry.diagnostic(
                run_id, "citation_normalization", "error",
                f"Cannot normalize citations: no NB results found for run {run_id}",
            )
            self.db.commit()
            return False

        stats = {
            "citations_processed": 0,
            "citations_normalized": 0,
            "citations_already_normalized": 0,
            "malformed_urls": 0,
            "missing_urls": 0,
        }
        normalized: List[Any] = []
        by_nb: Dict[str, List[Any]] = {}
        domain_frequency: Dict[str, int] = {}

        for result in results:
            try:
                block = normalize_nb_code(result.nb_code)
            except UnknownBlockCode:
                block = result.nb_code
            # first result per block wins, as in collection
            block_items = None
            if block not in by_nb:
                block_items = by_nb[block] = []

            for citation in self.extract_citations(result):
                stats["citations_processed"] += 1
                item = self.normalize_citation(citation, stats)
                if item is None:
                    continue
                normalized.append(item)
                if block_items is not None:
                    block_items.append(item)
                domain = item.get("domain")
                if domain:
                    domain_frequency[domain] = domain_frequency.get(domain, 0) + 1

        total = stats["citations_processed"]
        ranked = dict(sorted(domain_frequency.items(), key=lambda kv: kv[1], reverse=True))
        data = {
            "metadata": {
                "run_id": run_id,
                "normalization_timestamp": utcnow().isoformat(),
                "processing_time_ms": round((time.monotonic() - start) * 1000, 2),
            },
            "summary": {
                "total_citations_processed": total,
                "unique_domains_found": len(domain_frequency),
                "diversity_score_preliminary": round(diversity_score(domain_frequency, total), 3),
                "top_domains": dict(list(ranked.items())[:5]),
                "normalization_stats": stats,
            },
            "normalized_citations": normalized,
            "citations_by_nb": by_nb,
            "domain_frequency_map": ranked,
        }

        self._save(run_id, data)
        self.telemetry.diagnostic(
            run_id, "citation_normalization", "info",
            f"{total} citations processed, {len(domain_frequency)} unique domains, "
            f"{stats['malformed_urls']} malformed",
        )
        self.db.commit()
        return True

    def extract_citations(self, result: NBResult) -> List[Any]:
        """Citations from payload and citations column, unique by URL."""
        candidates: List[Any] = []

        if result.payload:
            try:
                payload = json.loads(result.payload)
            except ValueError:
                payload = None
            if isinstance(payload, dict):
                candidates.extend(_list(payload.get("citations")))
                for section in _list(payload.get("sections")):
                    if isinstance(section, dict):
                        candidates.extend(_list(section.get("citations")))
                candidates.extend(_list(payload.get("sources")))

        if result.citations:
            try:
                candidates.extend(_list(json.loads(result.citations)))
            except ValueError:
                logger.warning(f"Run {result.run_id}: undecodable citations for {result.nb_code}")

        seen = set()
        unique = []
        for citation in candidates:
            url = citation_url(citation)
            if url and url not in seen:
                seen.add(url)
                unique.append(citation)
        return unique

    def normalize_citation(self, citation: Any, stats: Dict[str, int]) -> Optional[Any]:
        """Attach a ``domain`` to a citation; None when it is unusable."""
        if isinstance(citation, str):
            domain = extract_domain(citation)
            if not domain:
                stats["malformed_urls"] += 1
                return None
            stats["citations_normalized"] += 1
            return {"url": citation, "domain": domain, "title": "", "normalized_by": NORMALIZED_BY}

        if isinstance(citation, dict):
            item = dict(citation)
            if item.get("domain"):
                stats["citations_already_normalized"] += 1
                return item

            url = item.get("url") or item.get("link") or item.get("source")
            if not url:
                stats["missing_urls"] += 1
                return item

            domain = extract_domain(str(url))
            if not domain:
                stats["malformed_urls"] += 1
                return item

            item["domain"] = domain
            item["normalized_by"] = NORMALIZED_BY
            stats["citations_normalized"] += 1
            return item

        stats["malformed_urls"] += 1
        return None

    def _save(self, run_id: int, data: Dict[str, Any]):
        artifact = (
            self.db.query(Artifact)
            .filter(
                Artifact.run_id == run_id,
                Artifact.phase == ARTIFACT_PHASE,
                Artifact.artifact_type == ARTIFACT_TYPE,
            )
            .first()
        )
        if artifact is None:
            artifact = Artifact(run_id=run_id, phase=ARTIFACT_PHASE, artifact_type=ARTIFACT_TYPE)
            self.db.add(artifact)
        artifact.json_data = json.dumps(data)


def _list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []

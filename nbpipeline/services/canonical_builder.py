"""Canonical NB dataset builder."""

import json
import logging
from collections.abc import Mapping
from typing import Any, Dict, List, Optional, Sequence, Union

from nbpipeline.config import settings
from nbpipeline.database import utcnow
from nbpipeline.exceptions import InvalidArgument, UnknownBlockCode
from nbpipeline.schemas.canonical import (
    CanonicalDataset,
    CitationDensity,
    DatasetMetadata,
    DatasetNB,
    DatasetStats,
    NBEntry,
    NormalizedInputs,
)
from nbpipeline.services.nb_codes import TOTAL_NBS, normalize_nb_code

logger = logging.getLogger(__name__)


class CanonicalBuilder:
    """Builds the per-request dataset consumed by synthesis."""

    def build_dataset(
        self,
        inputs: Union[NormalizedInputs, Mapping],
        canonical_keys: Sequence[str],
        run_id: int,
    ) -> CanonicalDataset:
        """
        Build a canonical dataset for the requested NB codes.

        Every requested key gets an entry; unresolvable ones are explicit
        ``missing`` placeholders.

        Args:
            inputs: Collector output
            canonical_keys: NB codes to include
            run_id: Run the inputs belong to

        Returns:
            CanonicalDataset

        Raises:
            InvalidArgument: If inputs or canonical_keys are malformed
        """
        inputs = _coerce_inputs(inputs, run_id)
        if not isinstance(canonical_keys, (list, tuple)):
            raise InvalidArgument(
                f"canonical_keys must be a list, got {type(canonical_keys).__name__}"
            )

        keys: List[str] = [str(key) for key in canonical_keys]
        logger.info(f"Run {run_id}: building canonical dataset for {len(keys)} NBs from {len(inputs.nb)} available")

        by_canonical: Dict[str, NBEntry] = {}
        for entry in inputs.nb.values():
            try:
                by_canonical.setdefault(normalize_nb_code(entry.nb_code), entry)
            except UnknownBlockCode:
                continue

        nb_data: Dict[str, DatasetNB] = {}
        total_citations = 0
        total_tokens = 0
        loaded = 0
        missing = 0

        for key in keys:
            entry = self._resolve(by_canonical, key)
            data = _decode(entry.raw_payload) if entry is not None and entry.raw_payload else None

            if data is None:
                nb_data[key] = DatasetNB(nb_code=key, status="missing")
                missing += 1
                logger.warning(f"Run {run_id}: {key} not found or empty")
                continue

            nb_data[key] = DatasetNB(
                nb_code=key,
                status=entry.status or "completed",
                data=entry.data if entry.data is not None else data,
                citations=list(entry.citations),
                raw_payload=entry.raw_payload,
                duration_ms=entry.duration_ms,
                tokens_used=entry.tokens_used,
            )
            total_citations += len(entry.citations)
            total_tokens += entry.tokens_used
            loaded += 1

        logger.info(
            f"Run {run_id}: canonical dataset complete, {loaded} loaded, {missing} missing, "
            f"{total_citations} citations, {total_tokens} tokens"
        )

        return CanonicalDataset(
            metadata=DatasetMetadata(
                run_id=run_id,
                timestamp=utcnow(),
                nb_count=len(keys),
                total_available=len(inputs.nb),
                completion_rate=len(keys) / TOTAL_NBS,
                canonical_keys=keys,
                source_company=inputs.company_source,
                target_company=inputs.company_target,
            ),
            nb_data=nb_data,
            processing_stats=DatasetStats(
                canonical_keys_identified=len(keys),
                loaded_nbs=loaded,
                missing_nbs=missing,
                total_citations=total_citations,
                avg_tokens_per_nb=round(total_tokens / len(keys)) if keys else 0,
            ),
        )

    def validate_citation_density(
        self, dataset: CanonicalDataset, target: Optional[float] = None
    ) -> CitationDensity:
        """Mean citations per NB and whether it meets the synthesis target."""
        target = settings.CITATION_DENSITY_TARGET if target is None else target
        blocks = list(dataset.nb_data.values()) if dataset is not None else []
        total = sum(len(block.citations) for block in blocks)
        average = total / len(blocks) if blocks else 0.0
        return CitationDensity(total=total, average=round(average, 1), meets_target=average >= target)

    @staticmethod
    def _resolve(by_canonical: Dict[str, NBEntry], key: str) -> Optional[NBEntry]:
        try:
            return by_canonical.get(normalize_nb_code(key))
        except UnknownBlockCode:
            return None


def _decode(raw: str) -> Optional[Any]:
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    return data


def _coerce_inputs(inputs: Any, run_id: int) -> NormalizedInputs:
    if isinstance(inputs, NormalizedInputs):
        return inputs
    if isinstance(inputs, Mapping) and isinstance(inputs.get("nb"), Mapping):
        try:
            fields = {k: v for k, v in inputs.items() if k != "run_id"}
            fields["nb"] = {
                code: {"nb_code": code, **entry} if isinstance(entry, Mapping) else entry
                for code, entry in inputs["nb"].items()
            }
            return NormalizedInputs(run_id=run_id, **fields)
        except ValueError as e:
            raise InvalidArgument(f"Malformed NB inputs: {e}") from e
    raise InvalidArgument("Inputs must contain an 'nb' mapping of NB entries")

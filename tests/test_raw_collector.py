"""Tests for raw NB result collection."""

import json

import pytest

from nbpipeline.exceptions import InvalidState, NotFound
from nbpipeline.models.nb_result import NBResult
from nbpipeline.services.raw_collector import RawCollector, dedupe_citations


class BrokenNormalizer:
    """Normalizer whose artifact is missing and cannot be rebuilt."""

    def __init__(self):
        self.rebuild_calls = 0

    def load_artifact(self, run_id):
        return None

    def rebuild_artifact(self, run_id):
        self.rebuild_calls += 1
        raise RuntimeError("normalization service unavailable")


def add_result(db, run_id, code, payload=None, citations=None, status="completed", tokens=100):
    db.add(
        NBResult(
            run_id=run_id,
            nb_code=code,
            status=status,
            payload=payload,
            citations=citations,
            tokens_used=tokens,
            duration_ms=500,
        )
    )
    db.commit()


@pytest.fixture
def source(make_company):
    return make_company("Source Co", sector="Energy")


def test_collect_missing_run(test_db):
    with pytest.raises(NotFound):
        RawCollector(test_db).collect(404)


def test_collect_requires_completed_run(test_db, source, make_run):
    run = make_run(source.id, status="running")

    with pytest.raises(InvalidState) as exc:
        RawCollector(test_db).collect(run.id)
    assert exc.value.status == "running"


def test_collect_missing_source_company(test_db, make_run):
    run = make_run(999)

    with pytest.raises(NotFound):
        RawCollector(test_db).collect(run.id)


def test_collect_missing_target_company_is_tolerated(test_db, source, make_run):
    run = make_run(source.id, 999, codes=["NB1"])

    inputs = RawCollector(test_db, BrokenNormalizer()).collect(run.id)

    assert inputs.company_source.name == "Source Co"
    assert inputs.company_target is None


def test_collect_raw_fallback_with_legacy_codes(test_db, source, make_run):
    """Test legacy spellings are stored once under their canonical code."""
    run = make_run(source.id)
    add_result(test_db, run.id, "NB-1", json.dumps({"summary": "one"}), json.dumps(["https://a.com/1"]))
    add_result(test_db, run.id, "nb_02", json.dumps({"summary": "two"}), json.dumps(["https://b.com/2"]))
    normalizer = BrokenNormalizer()

    inputs = RawCollector(test_db, normalizer).collect(run.id)

    assert normalizer.rebuild_calls == 1
    assert inputs.source == "raw"
    assert sorted(inputs.nb) == ["NB1", "NB2"]
    assert inputs.nb["NB1"].data == {"summary": "one"}
    assert inputs.nb["NB2"].citations == ["https://b.com/2"]
    assert inputs.processing_stats.nb_count == 2
    assert inputs.processing_stats.citation_count == 2


def test_alias_index_is_lookup_only(test_db, source, make_run):
    """Test aliases resolve through the index without duplicating entries."""
    run = make_run(source.id)
    add_result(test_db, run.id, "NB3", json.dumps({"summary": "three"}))

    inputs = RawCollector(test_db, BrokenNormalizer()).collect(run.id)

    assert list(inputs.nb) == ["NB3"]
    assert inputs.alias_index["NB-03"] == "NB3"
    assert inputs.lookup("nb_3") is inputs.nb["NB3"]
    assert inputs.lookup("NB3") is inputs.nb["NB3"]
    assert inputs.lookup("NB4") is None


def test_duplicate_codes_keep_first(test_db, source, make_run):
    run = make_run(source.id)
    add_result(test_db, run.id, "NB1", json.dumps({"summary": "canonical"}))
    add_result(test_db, run.id, "nb-1", json.dumps({"summary": "legacy"}))

    inputs = RawCollector(test_db, BrokenNormalizer()).collect(run.id)

    assert inputs.processing_stats.nb_count == 1
    assert inputs.nb["NB1"].data == {"summary": "canonical"}


def test_empty_code_is_skipped(test_db, source, make_run):
    run = make_run(source.id)
    add_result(test_db, run.id, "", json.dumps({"summary": "orphan"}))
    add_result(test_db, run.id, "NB2", json.dumps({"summary": "two"}))

    inputs = RawCollector(test_db, BrokenNormalizer()).collect(run.id)

    assert list(inputs.nb) == ["NB2"]
    assert "NB1" in inputs.processing_stats.missing_core


def test_undecodable_payload_is_tolerated(test_db, source, make_run):
    run = make_run(source.id)
    add_result(test_db, run.id, "NB1", "{not json", "also not json")

    inputs = RawCollector(test_db, BrokenNormalizer()).collect(run.id)

    assert inputs.nb["NB1"].data is None
    assert inputs.nb["NB1"].citations == []
    assert inputs.nb["NB1"].raw_payload == "{not json"


def test_missing_core_and_optional(test_db, source, make_run):
    run = make_run(source.id, codes=["NB1", "NB2", "NB5"])

    stats = RawCollector(test_db, BrokenNormalizer()).collect(run.id).processing_stats

    assert stats.missing_core == ["NB3", "NB4", "NB7", "NB12", "NB14", "NB15"]
    assert stats.missing_optional == ["NB6", "NB8", "NB9", "NB10", "NB11", "NB13"]
    assert stats.completed_nbs == 3


def test_collect_rebuilds_normalized_artifact(test_db, source, make_run):
    """Test the normalized citation artifact is rebuilt and merged into each NB."""
    run = make_run(source.id)
    add_result(test_db, run.id, "NB1", json.dumps({"citations": [{"url": "https://www.reuters.com/a"}]}))
    add_result(test_db, run.id, "NB2", json.dumps({"citations": [{"url": "https://sec.gov/b", "title": "10-K"}]}))

    inputs = RawCollector(test_db).collect(run.id)

    assert inputs.source == "normalized_artifact"
    assert inputs.nb["NB1"].citations[0]["domain"] == "reuters.com"
    assert inputs.nb["NB2"].citations[0]["domain"] == "sec.gov"
    assert inputs.nb["NB2"].citations[0]["title"] == "10-K"
    assert inputs.nb["NB1"].data["citations"][0]["domain"] == "reuters.com"
    assert inputs.diversity_metadata["domain_frequency"] == {"reuters.com": 1, "sec.gov": 1}


def test_normalized_citations_stay_with_their_block(test_db, source, make_run):
    """Test extra column citations and malformed URLs do not shift records onto other NBs."""
    run = make_run(source.id)
    add_result(
        test_db, run.id, "NB1",
        json.dumps({"citations": [{"url": "https://reuters.com/a"}, "garbage url"]}),
        json.dumps(["https://bloomberg.com/z"]),
    )
    add_result(test_db, run.id, "NB2", json.dumps({"citations": [{"url": "https://sec.gov/b"}]}))

    inputs = RawCollector(test_db).collect(run.id)

    assert inputs.nb["NB1"].citations[0] == {
        "url": "https://reuters.com/a", "domain": "reuters.com", "normalized_by": "citation_normalizer",
    }
    assert inputs.nb["NB1"].citations[1] == "garbage url"
    assert inputs.nb["NB2"].citations == [
        {"url": "https://sec.gov/b", "domain": "sec.gov", "normalized_by": "citation_normalizer"}
    ]
    assert inputs.diversity_metadata["domain_frequency"] == {"reuters.com": 1, "bloomberg.com": 1, "sec.gov": 1}


def test_collect_dedupes_run_citations(test_db, source, make_run):
    run = make_run(source.id)
    add_result(test_db, run.id, "NB1", citations=json.dumps(["https://a.com/shared"]))
    add_result(test_db, run.id, "NB2", citations=json.dumps(["https://a.com/shared", "https://b.com/own"]))

    inputs = RawCollector(test_db, BrokenNormalizer()).collect(run.id)

    assert inputs.processing_stats.citation_count == 3
    assert inputs.citations == ["https://a.com/shared", "https://b.com/own"]


def test_dedupe_citations_ignores_key_order():
    citations = [{"url": "u", "title": "t"}, {"title": "t", "url": "u"}, {"url": "v"}]

    assert dedupe_citations(citations) == [{"url": "u", "title": "t"}, {"url": "v"}]

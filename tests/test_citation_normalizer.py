"""Tests for citation domain normalization."""

import json

import pytest

from nbpipeline.models.artifact import Artifact
from nbpipeline.models.nb_result import NBResult
from nbpipeline.models.telemetry import Diagnostic
from nbpipeline.services.citation_normalizer import (
    ARTIFACT_PHASE,
    ARTIFACT_TYPE,
    CitationNormalizer,
    diversity_score,
    extract_domain,
)


@pytest.mark.parametrize(
    "url,expected",
    [
        ("https://www.Reuters.com/markets", "reuters.com"),
        ("http://sec.gov/edgar?x=1", "sec.gov"),
        ("bloomberg.com/news", "bloomberg.com"),
        ("https://investor.example.co.uk:8443/ir", "investor.example.co.uk"),
    ],
)
def test_extract_domain(url, expected):
    assert extract_domain(url) == expected


@pytest.mark.parametrize("url", ["", "   ", "not a url", "https://localhost/path", None])
def test_extract_domain_rejects_malformed(url):
    assert extract_domain(url) is None


def test_diversity_score():
    """Test entropy is 1 for an even spread and 0 for a single domain."""
    assert diversity_score({"a.com": 2, "b.com": 2}, 4) == pytest.approx(1.0)
    assert diversity_score({"a.com": 4}, 4) == 0.0
    assert diversity_score({}, 0) == 0.0
    assert 0 < diversity_score({"a.com": 3, "b.com": 1}, 4) < 1


def test_rebuild_without_results(test_db):
    normalizer = CitationNormalizer(test_db)

    assert normalizer.rebuild_artifact(77) is False
    assert normalizer.load_artifact(77) is None
    assert test_db.query(Diagnostic).filter(Diagnostic.run_id == 77).count() == 1


def test_rebuild_and_load_artifact(test_db):
    """Test citations from payload, sections and column are normalized once each."""
    payload = {
        "citations": [{"url": "https://www.ft.com/a"}, "https://ft.com/b"],
        "sections": [{"citations": [{"url": "https://sec.gov/c", "domain": "sec.gov"}]}],
        "sources": ["garbage url"],
    }
    test_db.add(
        NBResult(
            run_id=3,
            nb_code="NB1",
            status="completed",
            payload=json.dumps(payload),
            citations=json.dumps(["https://ft.com/b", {"title": "no url"}]),
        )
    )
    test_db.commit()
    normalizer = CitationNormalizer(test_db)

    assert normalizer.rebuild_artifact(3) is True

    data = normalizer.load_artifact(3)
    stats = data["summary"]["normalization_stats"]
    assert stats["citations_processed"] == 4
    assert stats["citations_normalized"] == 2
    assert stats["citations_already_normalized"] == 1
    assert stats["malformed_urls"] == 1
    assert data["domain_frequency_map"] == {"ft.com": 2, "sec.gov": 1}
    assert [c["domain"] for c in data["normalized_citations"]] == ["ft.com", "ft.com", "sec.gov"]
    assert [c["domain"] for c in data["citations_by_nb"]["NB1"]] == ["ft.com", "ft.com", "sec.gov"]


def test_artifact_groups_citations_by_canonical_block(test_db):
    test_db.add(NBResult(run_id=5, nb_code="NB-2", status="completed", citations=json.dumps(["https://b.com/x"])))
    test_db.add(NBResult(run_id=5, nb_code="NB1", status="completed", citations=json.dumps(["https://a.com/x"])))
    test_db.commit()
    normalizer = CitationNormalizer(test_db)

    normalizer.rebuild_artifact(5)

    by_nb = normalizer.load_artifact(5)["citations_by_nb"]
    assert sorted(by_nb) == ["NB1", "NB2"]
    assert by_nb["NB1"][0]["domain"] == "a.com"
    assert by_nb["NB2"][0]["domain"] == "b.com"


def test_rebuild_overwrites_existing_artifact(test_db):
    test_db.add(NBResult(run_id=4, nb_code="NB2", status="completed", citations=json.dumps(["https://a.com/x"])))
    test_db.add(Artifact(run_id=4, phase=ARTIFACT_PHASE, artifact_type=ARTIFACT_TYPE, json_data="stale"))
    test_db.commit()
    normalizer = CitationNormalizer(test_db)

    assert normalizer.load_artifact(4) is None
    normalizer.rebuild_artifact(4)

    assert test_db.query(Artifact).filter(Artifact.run_id == 4).count() == 1
    assert normalizer.load_artifact(4)["normalized_citations"][0]["domain"] == "a.com"

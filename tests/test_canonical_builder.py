"""Tests for canonical dataset building."""

import json

import pytest

from nbpipeline.exceptions import InvalidArgument
from nbpipeline.schemas.canonical import CompanyInfo, NBEntry, NormalizedInputs
from nbpipeline.services.canonical_builder import CanonicalBuilder
from nbpipeline.services.nb_codes import ALL_NBS


def entry(code, citations=1, tokens=100, payload=None):
    return NBEntry(
        nb_code=code,
        data={"summary": code},
        citations=[f"https://{code.lower()}.com/{i}" for i in range(citations)],
        raw_payload=payload if payload is not None else json.dumps({"summary": code}),
        tokens_used=tokens,
    )


@pytest.fixture
def inputs():
    return NormalizedInputs(
        run_id=5,
        company_source=CompanyInfo(id=1, name="Source Co"),
        nb={code: entry(code) for code in ["NB1", "NB2", "NB3"]},
    )


def test_build_dataset(inputs):
    """Test requested keys map to loaded NB entries."""
    dataset = CanonicalBuilder().build_dataset(inputs, ["NB1", "NB2"], 5)

    assert list(dataset.nb_data) == ["NB1", "NB2"]
    assert dataset.nb_data["NB1"].status == "completed"
    assert dataset.nb_data["NB1"].data == {"summary": "NB1"}
    assert dataset.metadata.run_id == 5
    assert dataset.metadata.nb_count == 2
    assert dataset.metadata.total_available == 3
    assert dataset.metadata.source_company.name == "Source Co"
    assert dataset.processing_stats.loaded_nbs == 2
    assert dataset.processing_stats.total_citations == 2
    assert dataset.processing_stats.avg_tokens_per_nb == 100


def test_missing_keys_get_placeholders(inputs):
    """Test every requested key is present even when unavailable."""
    dataset = CanonicalBuilder().build_dataset(inputs, ["NB1", "NB9"], 5)

    assert dataset.nb_data["NB9"].status == "missing"
    assert dataset.nb_data["NB9"].data is None
    assert dataset.processing_stats.missing_nbs == 1
    assert dataset.processing_stats.loaded_nbs == 1


def test_legacy_keys_resolve_canonically(inputs):
    dataset = CanonicalBuilder().build_dataset(inputs, ["nb-02"], 5)

    assert dataset.nb_data["nb-02"].status == "completed"
    assert dataset.nb_data["nb-02"].data == {"summary": "NB2"}


def test_empty_payload_is_missing():
    inputs = NormalizedInputs(run_id=1, nb={"NB1": entry("NB1", payload="")})

    dataset = CanonicalBuilder().build_dataset(inputs, ["NB1"], 1)

    assert dataset.nb_data["NB1"].status == "missing"


def test_completion_rate_is_relative_to_all_blocks(inputs):
    dataset = CanonicalBuilder().build_dataset(inputs, list(ALL_NBS), 5)

    assert dataset.metadata.completion_rate == 1.0
    assert dataset.processing_stats.missing_nbs == 12


def test_avg_tokens_rounds_over_requested_keys():
    inputs = NormalizedInputs(run_id=1, nb={"NB1": entry("NB1", tokens=100), "NB2": entry("NB2", tokens=101)})

    dataset = CanonicalBuilder().build_dataset(inputs, ["NB1", "NB2", "NB3"], 1)

    assert dataset.processing_stats.avg_tokens_per_nb == 67


def test_no_keys_requested(inputs):
    dataset = CanonicalBuilder().build_dataset(inputs, [], 5)

    assert dataset.nb_data == {}
    assert dataset.processing_stats.avg_tokens_per_nb == 0
    assert dataset.metadata.completion_rate == 0.0


def test_accepts_mapping_inputs():
    raw = {"nb": {"NB4": {"raw_payload": json.dumps({"x": 1}), "citations": ["https://a.com"]}}}

    dataset = CanonicalBuilder().build_dataset(raw, ["NB4"], 2)

    assert dataset.nb_data["NB4"].data == {"x": 1}
    assert dataset.processing_stats.total_citations == 1


@pytest.mark.parametrize("bad_inputs", [None, [], {"nb": ["NB1"]}, {"companies": {}}, {"nb": {"NB1": {"citations": 5}}}])
def test_malformed_inputs_rejected(bad_inputs):
    with pytest.raises(InvalidArgument):
        CanonicalBuilder().build_dataset(bad_inputs, ["NB1"], 1)


@pytest.mark.parametrize("bad_keys", ["NB1", None, {"NB1": True}])
def test_keys_must_be_a_list(inputs, bad_keys):
    with pytest.raises(InvalidArgument):
        CanonicalBuilder().build_dataset(inputs, bad_keys, 5)


def test_citation_density_meets_target():
    inputs = NormalizedInputs(run_id=1, nb={"NB1": entry("NB1", citations=12), "NB2": entry("NB2", citations=9)})
    builder = CanonicalBuilder()
    dataset = builder.build_dataset(inputs, ["NB1", "NB2"], 1)

    density = builder.validate_citation_density(dataset)

    assert density.total == 21
    assert density.average == 10.5
    assert density.meets_target


def test_citation_density_below_target(inputs):
    builder = CanonicalBuilder()
    dataset = builder.build_dataset(inputs, ["NB1", "NB2"], 5)

    density = builder.validate_citation_density(dataset)

    assert density.average == 1.0
    assert not density.meets_target
    assert builder.validate_citation_density(dataset, target=1).meets_target

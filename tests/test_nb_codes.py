"""Tests for NB code normalization."""

import pytest

from nbpipeline.exceptions import InvalidArgument, UnknownBlockCode
from nbpipeline.services.nb_codes import (
    ALL_NBS,
    CORE_NBS,
    OPTIONAL_NBS,
    nb_code_aliases,
    normalize_nb_code,
    partition_missing,
)


@pytest.mark.parametrize(
    "code,expected",
    [
        ("NB1", "NB1"),
        ("NB-1", "NB1"),
        ("nb_1", "NB1"),
        ("Nb01", "NB1"),
        ("nb-12", "NB12"),
        ("NB_015", "NB15"),
        ("  nb7 ", "NB7"),
    ],
)
def test_normalize_spellings(code, expected):
    """Test legacy spellings resolve to the canonical code."""
    assert normalize_nb_code(code) == expected


def test_normalize_uses_first_integer():
    """Test only the first integer in the input is used."""
    assert normalize_nb_code("NB3-v2") == "NB3"


def test_normalize_without_digits_uppercases():
    """Test input without digits is returned upper-cased."""
    assert normalize_nb_code("summary") == "SUMMARY"


@pytest.mark.parametrize("code", [None, "", "   "])
def test_normalize_empty_raises(code):
    """Test empty input is rejected instead of defaulting to NB1."""
    with pytest.raises(UnknownBlockCode):
        normalize_nb_code(code)


def test_unknown_block_code_is_invalid_argument():
    assert issubclass(UnknownBlockCode, InvalidArgument)


def test_aliases_cover_historical_spellings():
    """Test alias generation for a single-digit code."""
    aliases = nb_code_aliases("NB1")

    assert aliases == {
        "NB1", "NB-1", "NB_1", "nb1", "nb-1", "nb_1",
        "Nb01", "NB01", "nb01", "NB-01", "NB_01",
    }


def test_aliases_two_digit_code():
    aliases = nb_code_aliases("NB12")

    assert "NB-12" in aliases
    assert "nb_12" in aliases
    assert "Nb12" in aliases


def test_aliases_normalize_back():
    """Test every alias resolves to its canonical code."""
    for code in ALL_NBS:
        assert {normalize_nb_code(alias) for alias in nb_code_aliases(code)} == {code}


def test_core_and_optional_partition_all_blocks():
    """Test core and optional sets are disjoint and cover all 15 NBs."""
    assert set(CORE_NBS).isdisjoint(OPTIONAL_NBS)
    assert sorted(CORE_NBS + OPTIONAL_NBS) == sorted(ALL_NBS)


def test_partition_missing():
    found = set(ALL_NBS) - {"NB1", "NB5"}

    missing_core, missing_optional = partition_missing(found)

    assert missing_core == ["NB1"]
    assert missing_optional == ["NB5"]

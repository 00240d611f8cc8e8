"""Canonical NB code resolution.

Block codes reach the pipeline in many historical spellings ("NB-1", "nb_1",
"Nb01", ...). Storage and lookups key on the canonical form ``NB<int>``.
"""

import re
from typing import List, Optional, Set

from nbpipeline.exceptions import UnknownBlockCode

TOTAL_NBS = 15

# Required for synthesis to proceed meaningfully
CORE_NBS: List[str] = ["NB1", "NB2", "NB3", "NB4", "NB7", "NB12", "NB14", "NB15"]

# Absence degrades but does not block synthesis
OPTIONAL_NBS: List[str] = ["NB5", "NB6", "NB8", "NB9", "NB10", "NB11", "NB13"]

ALL_NBS: List[str] = [f"NB{i}" for i in range(1, TOTAL_NBS + 1)]

_DIGITS = re.compile(r"\d+")


def normalize_nb_code(code: Optional[str]) -> str:
    """
    Normalize an NB code to its canonical form.

    Args:
        code: Any spelling, e.g. "NB-1", "nb_01", "Nb01"

    Returns:
        "NB" followed by the first integer in the input, without leading zeros.
        Input without digits is returned upper-cased.

    Raises:
        UnknownBlockCode: If the code is empty
    """
    if code is None or not str(code).strip():
        raise UnknownBlockCode(f"Empty NB code: {code!r}")

    code = str(code).strip()
    match = _DIGITS.search(code)
    if not match:
        return code.upper()

    return f"NB{int(match.group(0))}"


def nb_code_aliases(canonical_code: str) -> Set[str]:
    """Return every accepted historical spelling of a canonical code."""
    match = _DIGITS.search(canonical_code or "")
    if not match:
        return {canonical_code}

    number = str(int(match.group(0)))
    padded = number.zfill(2)

    return {
        f"NB{number}",
        f"NB-{number}",
        f"NB_{number}",
        f"nb{number}",
        f"nb-{number}",
        f"nb_{number}",
        f"Nb{padded}",
        f"NB{padded}",
        f"nb{padded}",
        f"NB-{padded}",
        f"NB_{padded}",
    }


def partition_missing(found: Set[str]):
    """Split the NBs absent from ``found`` into (missing_core, missing_optional)."""
    missing_core = [code for code in CORE_NBS if code not in found]
    missing_optional = [code for code in OPTIONAL_NBS if code not in found]
    return missing_core, missing_optional

"""ZIP-prefix proximity used by the case hall scorer."""

from __future__ import annotations

import re

_ZIP_RE = re.compile(r"^\s*(\d{5})(?:-\d{4})?\s*$")

SAME_ZIP_SCORE = 30
SAME_PREFIX_SCORE = 20
NEAR_PREFIX_SCORE = 10
NEAR_PREFIX_DISTANCE = 5


def normalize_zip(value: str | None) -> str | None:
    """Return the 5-digit ZIP, or None when the value is not a US ZIP."""
    if not value:
        return None
    match = _ZIP_RE.match(value)
    return match.group(1) if match else None


def zip3_proximity_score(case_zip: str | None, attorney_zip: str | None) -> int:
    """
    Coarse proximity from ZIP codes.

    USPS assigns 3-digit prefixes to sectional centers in roughly geographic
    order, so numerically close prefixes are usually neighbours.
    """
    a = normalize_zip(case_zip)
    b = normalize_zip(attorney_zip)
    if a is None or b is None:
        return 0
    if a == b:
        return SAME_ZIP_SCORE
    if a[:3] == b[:3]:
        return SAME_PREFIX_SCORE
    if abs(int(a[:3]) - int(b[:3])) <= NEAR_PREFIX_DISTANCE:
        return NEAR_PREFIX_SCORE
    return 0


def mask_zip(value: str | None) -> str:
    return f"{(value or '')[:3]}**"

"""Parse the reader footer ("Page 12 of 300", "Location 40 of 5120", "Page xii of 300")."""

from __future__ import annotations

import re
from dataclasses import dataclass

ROMAN_NUMERALS = {
    "I": 1,
    "V": 5,
    "X": 10,
    "L": 50,
    "C": 100,
    "D": 500,
    "M": 1000,
}

PAGE_RE = re.compile(r"page\s+(\d+)\s+of\s+(\d+)", re.IGNORECASE)
LOCATION_RE = re.compile(r"location\s+(\d+)\s+of\s+(\d+)", re.IGNORECASE)
ROMAN_PAGE_RE = re.compile(r"page\s+([ivxlcdm]+)\s+of\s+(\d+)", re.IGNORECASE)


@dataclass(frozen=True)
class Position:
    total: int
    page: int | None = None
    location: int | None = None
    roman: bool = False

    @property
    def kind(self) -> str:
        if self.page is not None:
            return "page"
        return "roman" if self.roman else "location"

    def to_dict(self) -> dict[str, int]:
        if self.page is not None:
            return {"page": self.page, "total": self.total}
        return {"location": self.location, "total": self.total}

    @classmethod
    def from_dict(cls, payload: dict) -> "Position | None":
        total = _non_negative_int(payload.get("total"))
        if not total:
            return None
        page = _non_negative_int(payload.get("page"))
        if page is not None:
            return cls(total=total, page=page)
        location = _non_negative_int(payload.get("location"))
        if location is not None:
            return cls(total=total, location=location)
        return None

    def __str__(self) -> str:
        if self.page is not None:
            return f"page {self.page} of {self.total}"
        return f"location {self.location} of {self.total}"


def _non_negative_int(value) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed >= 0 else None


def deromanize(numeral: str) -> int:
    """Convert a Roman numeral to an integer.

    Each symbol is added unless the symbol after it is strictly larger, in
    which case it is subtracted. Non-canonical numerals ("IIV", "VX") still
    produce a number; only unknown characters raise ValueError.
    """
    values = []
    for char in numeral.upper():
        if char not in ROMAN_NUMERALS:
            raise ValueError(f"not a roman numeral: {numeral!r}")
        values.append(ROMAN_NUMERALS[char])

    total = 0
    for idx, value in enumerate(values):
        following = values[idx + 1] if idx + 1 < len(values) else 0
        total += -value if value < following else value
    return total


def parse_position(text: str | None) -> Position | None:
    """Parse footer text into a Position, or None when nothing usable matches."""
    if not text:
        return None

    normalized = " ".join(text.split())

    page_match = PAGE_RE.search(normalized)
    if page_match:
        return _build(page_match.group(2), page=page_match.group(1))

    location_match = LOCATION_RE.search(normalized)
    if location_match:
        return _build(location_match.group(2), location=location_match.group(1))

    roman_match = ROMAN_PAGE_RE.search(normalized)
    if roman_match:
        return _build(
            roman_match.group(2),
            location=deromanize(roman_match.group(1)),
            roman=True,
        )

    return None


def _build(raw_total, page=None, location=None, roman=False) -> Position | None:
    total = _non_negative_int(raw_total)
    if not total:
        return None
    if page is not None:
        parsed_page = _non_negative_int(page)
        return None if parsed_page is None else Position(total=total, page=parsed_page)
    parsed_location = _non_negative_int(location)
    if parsed_location is None:
        return None
    return Position(total=total, location=parsed_location, roman=roman)

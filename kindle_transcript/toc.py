"""Table-of-contents entries and front/back-matter boundaries."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

from kindle_transcript.errors import TocBoundaryError
from kindle_transcript.position import Position

END_MATTER_RATIO = 0.9
END_MATTER_PATTERNS = (
    re.compile(r"acknowledgements", re.IGNORECASE),
    re.compile(r"^discover more$", re.IGNORECASE),
    re.compile(r"^extras$", re.IGNORECASE),
    re.compile(r"about the author", re.IGNORECASE),
    re.compile(r"meet the author", re.IGNORECASE),
    re.compile(r"^also by ", re.IGNORECASE),
    re.compile(r"^copyright$", re.IGNORECASE),
    re.compile(r" teaser$", re.IGNORECASE),
    re.compile(r" preview$", re.IGNORECASE),
    re.compile(r"^excerpt from", re.IGNORECASE),
    re.compile(r"^cast of characters$", re.IGNORECASE),
    re.compile(r"^timeline$", re.IGNORECASE),
    re.compile(r"^other titles", re.IGNORECASE),
)


@dataclass(frozen=True)
class TocEntry:
    title: str
    position: Position | None = None

    @property
    def page(self) -> int | None:
        return self.position.page if self.position is not None else None

    def to_dict(self) -> dict:
        payload = {"title": self.title}
        if self.position is not None:
            payload.update(self.position.to_dict())
        return payload

    @classmethod
    def from_dict(cls, payload: dict) -> "TocEntry | None":
        raw_title = payload.get("title")
        if not isinstance(raw_title, str):
            return None
        title = " ".join(raw_title.split())
        if not title:
            return None
        return cls(title=title, position=Position.from_dict(payload))


@dataclass(frozen=True)
class TocBounds:
    start: TocEntry
    end: TocEntry | None

    @property
    def total(self) -> int:
        return self.start.position.total

    def end_boundary(self, include_end_matter: bool = False) -> int:
        """First page that is out of scope; the capture loop stops on reaching it."""
        if self.end is not None and not include_end_matter:
            return self.end.page
        return self.total + 1


def is_end_matter_title(title: str | None) -> bool:
    """Return True if a TOC title looks like end matter."""
    if not title:
        return False
    return any(pattern.search(title) for pattern in END_MATTER_PATTERNS)


def _is_page_entry(entry: TocEntry) -> bool:
    return entry.position is not None and entry.position.kind == "page"


def classify_toc(entries: Iterable[TocEntry]) -> TocBounds:
    """Find the first main-content entry and the first back-matter entry."""
    entries = list(entries)
    start = next((entry for entry in entries if _is_page_entry(entry)), None)
    if start is None:
        raise TocBoundaryError("Unable to find a page-numbered entry in the table of contents")

    end = None
    for entry in entries:
        if entry is start or not _is_page_entry(entry):
            continue
        if entry.position.page / entry.position.total < END_MATTER_RATIO:
            continue
        if is_end_matter_title(entry.title):
            end = entry
            break

    return TocBounds(start=start, end=end)


def toc_from_payload(raw_entries) -> list[TocEntry]:
    if not isinstance(raw_entries, list):
        return []
    entries = []
    for item in raw_entries:
        if not isinstance(item, dict):
            continue
        entry = TocEntry.from_dict(item)
        if entry is not None:
            entries.append(entry)
    return entries


def toc_to_payload(entries: Iterable[TocEntry]) -> list[dict]:
    return [entry.to_dict() for entry in entries]

"""
Assemble content.json into a markdown book, one section per TOC chapter.

Usage:
    python scripts/export.py --asin B00FO74WXA [--include-end-matter]
"""

from __future__ import annotations

import argparse
import re
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from kindle_transcript.config import DEFAULT_OUT_DIR, require_asin
from kindle_transcript.errors import ManifestCorrupt, PreconditionError, TocBoundaryError
from kindle_transcript.log import RunLog, open_run_log
from kindle_transcript.manifest import (
    load_content_manifest,
    load_extraction_manifest,
    resolve_book_dir,
    sanitize_dirname,
)
from kindle_transcript.toc import TocEntry, classify_toc, toc_from_payload


def heading_anchor(title: str) -> str:
    return re.sub(r"[^\da-z]+", "-", title.lower())


def book_authors(meta: dict[str, Any]) -> list[str]:
    raw = meta.get("authorsList") or meta.get("authorList") or []
    return [name.strip() for name in raw if isinstance(name, str) and name.strip()]


def chapter_sections(
    toc: list[TocEntry], content: list[dict[str, Any]], end_boundary: int
) -> list[tuple[TocEntry, list[dict[str, Any]]]]:
    """Pair each in-scope, page-numbered TOC entry with the chunks of its page range."""
    chapters = [entry for entry in toc if entry.page is not None and entry.page < end_boundary]
    sections = []
    for idx, entry in enumerate(chapters):
        upper = chapters[idx + 1].page if idx + 1 < len(chapters) else end_boundary
        chunks = [chunk for chunk in content if entry.page <= chunk["page"] < upper]
        if chunks:
            sections.append((entry, chunks))
    return sections


def build_markdown(
    metadata: dict[str, Any],
    content: list[dict[str, Any]],
    *,
    asin: str | None = None,
    include_end_matter: bool = False,
) -> str:
    meta = metadata.get("meta")
    if not isinstance(meta, dict):
        raise PreconditionError("invalid book metadata: missing meta")
    toc = toc_from_payload(metadata.get("toc"))
    if not toc:
        raise PreconditionError("invalid book metadata: missing toc")
    if not content:
        raise PreconditionError("no book content found")

    bounds = classify_toc(toc)
    end_boundary = bounds.end_boundary(include_end_matter)
    sections = chapter_sections(toc, content, end_boundary)

    title = meta.get("title") or asin or "Untitled"
    lines = [f"# {title}", ""]
    authors = book_authors(meta)
    if authors:
        lines += [f"By {', '.join(authors)}", ""]
    lines += ["---", "", "## Table of Contents", ""]
    lines += [f"- [{entry.title}](#{heading_anchor(entry.title)})" for entry, _chunks in sections]
    lines += ["", "---"]

    for entry, chunks in sections:
        text = " ".join(chunk["text"] for chunk in chunks).replace("\n", "\n\n")
        lines += ["", f"## {entry.title}", "", text]

    return "\n".join(lines).rstrip() + "\n"


def export_book(
    book_dir: Path, log: RunLog, *, asin: str | None = None, include_end_matter: bool = False
) -> Path:
    metadata = load_extraction_manifest(book_dir)
    if metadata is None:
        raise PreconditionError(f"metadata.json not found in {book_dir}")
    content = load_content_manifest(book_dir)

    markdown = build_markdown(metadata, content, asin=asin, include_end_matter=include_end_matter)
    title = (metadata.get("meta") or {}).get("title") or asin or book_dir.name
    markdown_path = book_dir / f"{sanitize_dirname(title) or book_dir.name}.md"
    markdown_path.write_text(markdown, encoding="utf-8")

    log.info(f"Export complete. Wrote markdown to: {markdown_path}")
    return markdown_path


def main(argv: list[str] | None = None) -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Export transcribed Kindle pages as markdown")
    parser.add_argument("--asin", default=None, help="Book ASIN (default: $ASIN)")
    parser.add_argument(
        "--out-dir", default=DEFAULT_OUT_DIR, help=f"Output root (default: {DEFAULT_OUT_DIR})"
    )
    parser.add_argument(
        "--include-end-matter",
        action="store_true",
        help="Keep back-matter chapters (acknowledgements, previews, ...) in the export",
    )
    args = parser.parse_args(argv)

    try:
        asin = require_asin(asin=args.asin)
    except PreconditionError as exc:
        print(f"Error: {exc}")
        return 1

    book_dir = resolve_book_dir(asin, Path(args.out_dir))
    if not book_dir.is_dir():
        print(f"Error: book directory not found: {book_dir}")
        return 1

    with open_run_log(book_dir, "export") as log:
        try:
            export_book(book_dir, log, asin=asin, include_end_matter=args.include_end_matter)
        except (PreconditionError, ManifestCorrupt, TocBoundaryError) as exc:
            log.error(str(exc))
            return 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main())

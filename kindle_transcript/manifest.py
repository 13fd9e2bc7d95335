"""
Filesystem state for one book.

    out/<ASIN>[-<title>]/
        metadata.json        extraction manifest: info, meta, toc, pages
        content.json         content manifest: transcribed chunks
        pages/<index>-<page>.png

Manifests are always rewritten whole through a temp file and an atomic
replace. A missing manifest reads as its default; a present but unreadable one
raises ManifestCorrupt so earlier progress is never silently discarded.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Iterable

from kindle_transcript.errors import ManifestCorrupt
from kindle_transcript.log import RunLog

METADATA_FILENAME = "metadata.json"
CONTENT_FILENAME = "content.json"
PAGES_DIRNAME = "pages"
ARTIFACT_RE = re.compile(r"^(\d+)-(\d+)\.png$")


def sanitize_dirname(name: str) -> str:
    """Drop characters not allowed in file/folder names and collapse spaces."""
    cleaned = re.sub(r'["*/:<>?\\|]', "", name)
    return " ".join(cleaned.split())[:128]


def resolve_book_dir(asin: str, out_dir: Path) -> Path:
    """Return the existing `<ASIN>` / `<ASIN>-<title>` directory, or `<out_dir>/<ASIN>`."""
    if out_dir.is_dir():
        prefix = asin.lower()
        for candidate in sorted(out_dir.iterdir()):
            if candidate.is_dir() and candidate.name.lower().startswith(prefix):
                return candidate
    return out_dir / asin


def rename_book_dir(book_dir: Path, asin: str, title: str | None, log: RunLog) -> Path:
    """Rename the book directory to `<ASIN>-<title>` once the title is known."""
    if not title or not sanitize_dirname(title):
        return book_dir

    target = book_dir.parent / f"{asin}-{sanitize_dirname(title)}"
    if book_dir.name == target.name:
        return book_dir
    if target.exists():
        log.warning(f"{target} already exists; keeping {book_dir}.")
        return book_dir

    if book_dir.exists():
        book_dir.rename(target)
        log.info(f"Renamed book directory to {target.name}")
    else:
        target.mkdir(parents=True, exist_ok=True)
    return target


def read_json(path: Path, default: Any = None) -> Any:
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ManifestCorrupt(path, f"unreadable JSON ({exc})") from exc


def write_json(path: Path, payload: Any) -> None:
    """Write JSON to disk using an atomic replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(path.suffix + ".tmp")
    temp_path.write_text(
        json.dumps(payload, indent=2, ensure_ascii=False, default=str) + "\n",
        encoding="utf-8",
    )
    temp_path.replace(path)


def page_padding(total: int) -> int:
    """Zero-pad width for artifact filenames, sized for the largest expected page."""
    return len(str(max(total, 1) * 2))


def artifact_filename(index: int, page: int, width: int) -> str:
    return f"{index:0{width}d}-{page:0{width}d}.png"


def parse_artifact_filename(name: str) -> tuple[int, int] | None:
    match = ARTIFACT_RE.match(name)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def artifact_ref(file_name: str) -> str:
    """Manifest reference for an artifact, relative to the book directory."""
    return f"{PAGES_DIRNAME}/{file_name}"


def scan_page_artifacts(book_dir: Path) -> list[dict[str, Any]]:
    """List `<index>-<page>.png` files in pages/ sorted by (index, page)."""
    pages_dir = book_dir / PAGES_DIRNAME
    if not pages_dir.is_dir():
        return []

    artifacts = []
    for image_path in pages_dir.glob("*.png"):
        parsed = parse_artifact_filename(image_path.name)
        if parsed is None:
            continue
        index, page = parsed
        artifacts.append({"index": index, "page": page, "screenshot": artifact_ref(image_path.name)})

    artifacts.sort(key=content_sort_key)
    return artifacts


def content_sort_key(item: dict[str, Any]) -> tuple[int, int]:
    return item["index"], item["page"]


def load_extraction_manifest(book_dir: Path) -> dict[str, Any] | None:
    path = book_dir / METADATA_FILENAME
    payload = read_json(path)
    if payload is None:
        return None
    if not isinstance(payload, dict):
        raise ManifestCorrupt(path, "expected a JSON object")

    for key in ("toc", "pages"):
        value = payload.get(key)
        if value is None:
            payload[key] = []
        elif not isinstance(value, list):
            raise ManifestCorrupt(path, f"'{key}' must be a list")

    for item in payload["pages"]:
        if not _is_page_record(item):
            raise ManifestCorrupt(path, f"malformed page entry: {item!r}")

    payload.setdefault("info", None)
    payload.setdefault("meta", None)
    return payload


def save_extraction_manifest(book_dir: Path, manifest: dict[str, Any]) -> Path:
    path = book_dir / METADATA_FILENAME
    write_json(
        path,
        {
            "info": manifest.get("info"),
            "meta": manifest.get("meta"),
            "toc": manifest.get("toc") or [],
            "pages": manifest.get("pages") or [],
        },
    )
    return path


def _is_page_record(item: Any) -> bool:
    return (
        isinstance(item, dict)
        and isinstance(item.get("index"), int)
        and isinstance(item.get("page"), int)
        and isinstance(item.get("screenshot"), str)
    )


def load_content_manifest(book_dir: Path) -> list[dict[str, Any]]:
    path = book_dir / CONTENT_FILENAME
    payload = read_json(path, default=[])
    if not isinstance(payload, list):
        raise ManifestCorrupt(path, "expected a JSON array")
    for item in payload:
        if not _is_page_record(item) or not isinstance(item.get("text"), str):
            raise ManifestCorrupt(path, f"malformed content chunk: {item!r}")
    return payload


def merge_content(
    existing: Iterable[dict[str, Any]], new: Iterable[dict[str, Any]]
) -> list[dict[str, Any]]:
    """Concatenate chunk lists and return them in canonical (index, page) order."""
    return sorted([*existing, *new], key=content_sort_key)


def save_content_manifest(book_dir: Path, chunks: Iterable[dict[str, Any]]) -> Path:
    path = book_dir / CONTENT_FILENAME
    write_json(path, sorted(chunks, key=content_sort_key))
    return path

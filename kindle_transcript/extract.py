"""
Capture every page of a Kindle book as a PNG, resumably.

The extractor walks the book one page at a time from the start of the main
content (first page-numbered TOC entry) up to, but not including, the first
back-matter entry. Screenshots land in `pages/<index>-<page>.png` and the
extraction manifest (`metadata.json`) is written once at the end of the run.
A re-run picks up after the highest page already on disk.

Usage:
    python scripts/extract.py [--asin B00FO74WXA] [--out-dir out] [--force]
                              [--include-end-matter] [--refresh-toc]
                              [--no-restore-position]
"""

from __future__ import annotations

import argparse
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from dotenv import load_dotenv

from kindle_transcript.config import DEFAULT_OUT_DIR, ExtractSettings
from kindle_transcript.errors import (
    ManifestCorrupt,
    NavigationStall,
    PreconditionError,
    SessionError,
    TocBoundaryError,
)
from kindle_transcript.log import RunLog, open_run_log
from kindle_transcript.manifest import (
    PAGES_DIRNAME,
    artifact_filename,
    artifact_ref,
    content_sort_key,
    load_extraction_manifest,
    page_padding,
    rename_book_dir,
    resolve_book_dir,
    save_extraction_manifest,
    scan_page_artifacts,
)
from kindle_transcript.position import Position, parse_position
from kindle_transcript.retry import FixedBackoff, RetryError, retry_call
from kindle_transcript.toc import TocBounds, TocEntry, classify_toc, toc_from_payload, toc_to_payload


class PageSource(ABC):
    """The remote reading surface, one shared session, driven sequentially."""

    @abstractmethod
    def open_session(self) -> tuple[dict | None, dict | None]:
        """Sign in, open the book and return the (info, meta) metadata blobs."""

    @abstractmethod
    def read_toc(self) -> list[TocEntry]: ...

    @abstractmethod
    def navigate_to_start(self, start: TocEntry) -> bool: ...

    @abstractmethod
    def go_to_page(self, page_number: int) -> bool: ...

    @abstractmethod
    def advance(self) -> bool:
        """Request the next page. The reader may silently ignore the request."""

    @abstractmethod
    def current_position(self) -> str | None: ...

    @abstractmethod
    def content_signature(self) -> str | None:
        """An identity for the page content currently on screen."""

    @abstractmethod
    def capture_bitmap(self) -> bytes: ...

    def close(self) -> None:
        pass


class ExtractionState(Enum):
    IDLE = "idle"
    RESUMING = "resuming"
    NAVIGATING = "navigating"
    CAPTURING = "capturing"
    VERIFYING = "verifying"
    DONE = "done"
    ABORTED = "aborted"


@dataclass(frozen=True)
class AdvancePolicy:
    max_polls: int = 80
    reissue_every: int = 10
    poll_interval_seconds: float = 0.1
    settle_seconds: float = 0.1
    position_read_attempts: int = 8
    position_read_interval_seconds: float = 0.12
    capture_attempts: int = 3
    capture_retry_interval_seconds: float = 0.5


class PageUnchanged(Exception):
    """One poll saw the same page that was on screen before the turn."""


@dataclass
class Reconciliation:
    pages: list[dict[str, Any]]
    extent: int
    resume_page: int
    last_page: int | None
    manifest_count: int
    artifact_count: int
    rebuilt: bool

    def covers(self, end_boundary: int) -> bool:
        return self.resume_page - 1 >= end_boundary - 1


@dataclass
class Verification:
    expected: int
    extracted: int
    missing: int
    first_page: int | None
    last_page: int | None
    total: int | None

    @property
    def complete(self) -> bool:
        return self.missing == 0


@dataclass
class ExtractionResult:
    state: ExtractionState
    book_dir: Path
    verification: Verification
    manifest: dict[str, Any] | None = None
    bounds: TocBounds | None = None
    stats: dict[str, int] = field(default_factory=dict)


def _most_common_total(pages: list[dict[str, Any]]) -> int | None:
    totals = [item["total"] for item in pages if isinstance(item.get("total"), int)]
    if not totals:
        return None
    return max(set(totals), key=totals.count)


def reconcile(book_dir: Path, manifest_pages: list[dict[str, Any]], book_total: int | None = None) -> Reconciliation:
    """Work out where a previous run stopped.

    Screenshots on disk are the ground truth: when there are more of them than
    manifest entries, the page list is rebuilt from filenames. The `total` of a
    rebuilt entry comes from the manifest entry for the same file if there is
    one, otherwise from the book total.
    """
    artifacts = scan_page_artifacts(book_dir)
    manifest_pages = list(manifest_pages)
    extent = max(len(manifest_pages), len(artifacts))

    rebuilt = len(artifacts) > len(manifest_pages)
    if rebuilt:
        known_totals = {item["screenshot"]: item.get("total") for item in manifest_pages}
        fallback_total = book_total or _most_common_total(manifest_pages)
        pages = [
            {
                "index": item["index"],
                "page": item["page"],
                "total": known_totals.get(item["screenshot"]) or fallback_total,
                "screenshot": item["screenshot"],
            }
            for item in artifacts
        ]
    else:
        pages = sorted(manifest_pages, key=content_sort_key)

    last_page = max((item["page"] for item in artifacts), default=None)
    if last_page is not None and last_page > 0:
        resume_page = last_page + 1
    else:
        last_page = None
        resume_page = extent + 1

    return Reconciliation(
        pages=pages,
        extent=extent,
        resume_page=resume_page,
        last_page=last_page,
        manifest_count=len(manifest_pages),
        artifact_count=len(artifacts),
        rebuilt=rebuilt,
    )


def verify(pages: list[dict[str, Any]], end_boundary: int, total: int | None = None) -> Verification:
    expected = max(end_boundary - 1, 0)
    extracted = len(pages)
    page_numbers = [item["page"] for item in pages]
    if total is None:
        total = _most_common_total(pages)
    return Verification(
        expected=expected,
        extracted=extracted,
        missing=max(expected - extracted, 0),
        first_page=min(page_numbers) if page_numbers else None,
        last_page=max(page_numbers) if page_numbers else None,
        total=total,
    )


def log_verification(log: RunLog, verification: Verification, resumed_from: int | None = None) -> None:
    log.line()
    log.line("=== EXTRACTION VERIFICATION ===")
    log.line(f"Expected pages: {verification.expected}")
    log.line(f"Extracted pages: {verification.extracted}")
    log.line(f"Missing pages: {verification.missing}")

    if verification.missing > 0:
        log.warning(f"{verification.missing} pages were not extracted.")
        log.line("This might indicate navigation issues or the book ended early.")
        log.line("Run the script again to continue extraction from where it left off.")
    else:
        log.info("all expected pages were extracted.")

    if verification.first_page is not None:
        first, last = verification.first_page, verification.last_page
        log.line(f"Page range: {first} to {last}")
        if first > 1:
            log.line(f"  Front matter: pages 1-{first - 1}")
        log.line(f"  Main content: pages {first}-{last} ({last - first + 1} pages)")
        if verification.total and last < verification.total:
            log.line(f"  Back matter: pages {last + 1}-{verification.total}")
        if verification.total:
            log.line(f"  Total: {verification.total} pages")

    if resumed_from is not None and resumed_from > 1:
        log.line(f"This was a resumed extraction starting from page {resumed_from}")
    log.line("===============================")


def write_bytes_atomic(path: Path, data: bytes) -> None:
    temp_path = path.with_name(f"{path.name}.tmp")
    temp_path.write_bytes(data)
    temp_path.replace(path)


class Extractor:
    """Drives a PageSource through one extraction run.

    IDLE -> RESUMING -> NAVIGATING -> CAPTURING -> VERIFYING -> DONE. Session,
    TOC and manifest failures end in ABORTED, and so does any error that
    escapes the capture loop (after the manifest is written). A run whose
    previous progress already reaches the back-matter boundary goes straight
    to DONE.
    """

    def __init__(
        self,
        source: PageSource,
        book_dir: Path,
        *,
        log: RunLog,
        asin: str | None = None,
        force: bool = False,
        include_end_matter: bool = False,
        refresh_toc: bool = False,
        restore_position: bool = True,
        policy: AdvancePolicy = AdvancePolicy(),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.source = source
        self.book_dir = book_dir
        self.log = log
        self.asin = asin
        self.force = force
        self.include_end_matter = include_end_matter
        self.refresh_toc = refresh_toc
        self.restore_position = restore_position
        self.policy = policy
        self.sleep = sleep
        self.state = ExtractionState.IDLE
        self.stats = {
            "new_count": 0,
            "skipped_existing_count": 0,
            "stall_count": 0,
            "capture_failure_count": 0,
        }

    @property
    def pages_dir(self) -> Path:
        return self.book_dir / PAGES_DIRNAME

    def run(self) -> ExtractionResult:
        try:
            prior = None if self.force else load_extraction_manifest(self.book_dir)
        except ManifestCorrupt:
            self.state = ExtractionState.ABORTED
            raise

        offline = self._check_complete_offline(prior)
        if offline is not None:
            return offline

        try:
            info, meta = self.source.open_session()
        except Exception as exc:
            self.state = ExtractionState.ABORTED
            raise SessionError(f"could not open the reader session: {exc}") from exc

        if prior is not None:
            info = info if info is not None else prior.get("info")
            meta = meta if meta is not None else prior.get("meta")

        initial_position = self._read_position()
        if initial_position is not None:
            self.log.info(f"saved start position {initial_position}.")

        try:
            toc = self._load_toc(prior)
            bounds = classify_toc(toc)
        except TocBoundaryError:
            self.state = ExtractionState.ABORTED
            self._restore(initial_position)
            raise

        if self.asin and isinstance(meta, dict):
            self.book_dir = rename_book_dir(self.book_dir, self.asin, meta.get("title"), self.log)

        end_boundary = bounds.end_boundary(self.include_end_matter)
        self._log_bounds(bounds, end_boundary)

        self.state = ExtractionState.RESUMING
        recon = self._reconcile(prior, bounds.total)
        if recon is not None and recon.covers(end_boundary):
            self.log.info(
                f"extraction already reaches page {recon.last_page}; nothing to do "
                "(use --force to re-extract)."
            )
            self.state = ExtractionState.DONE
            verification = verify(recon.pages, end_boundary, bounds.total)
            log_verification(self.log, verification)
            self._restore(initial_position)
            return ExtractionResult(self.state, self.book_dir, verification, bounds=bounds, stats=self.stats)

        manifest = {
            "info": info,
            "meta": meta,
            "toc": toc_to_payload(toc),
            "pages": list(recon.pages) if recon is not None else [],
        }
        resume_page = recon.resume_page if recon is not None and manifest["pages"] else None

        self.pages_dir.mkdir(parents=True, exist_ok=True)
        finished = False
        try:
            self.state = ExtractionState.NAVIGATING
            self._navigate(bounds.start, resume_page)
            self.state = ExtractionState.CAPTURING
            self._capture_pages(manifest["pages"], end_boundary, bounds.total)
            finished = True
        finally:
            self.state = ExtractionState.VERIFYING
            verification = verify(manifest["pages"], end_boundary, bounds.total)
            log_verification(self.log, verification, resumed_from=resume_page)
            path = save_extraction_manifest(self.book_dir, manifest)
            self.log.info(f"Saved metadata: {path}")
            self._restore(initial_position)
            if not finished:
                self.state = ExtractionState.ABORTED

        self.state = ExtractionState.DONE
        self.log.info(
            "Capture summary: "
            f"new={self.stats['new_count']} "
            f"skipped_existing={self.stats['skipped_existing_count']}"
        )
        return ExtractionResult(self.state, self.book_dir, verification, manifest, bounds, self.stats)

    def _check_complete_offline(self, prior: dict[str, Any] | None) -> ExtractionResult | None:
        """Skip the browser entirely when a previous run already finished."""
        if prior is None or self.refresh_toc:
            return None
        toc = toc_from_payload(prior.get("toc"))
        if not toc:
            return None
        try:
            bounds = classify_toc(toc)
        except TocBoundaryError:
            return None

        end_boundary = bounds.end_boundary(self.include_end_matter)
        recon = reconcile(self.book_dir, prior.get("pages") or [], bounds.total)
        self.log.info(
            f"Found existing extraction: {recon.manifest_count} metadata pages, "
            f"{recon.artifact_count} screenshots."
        )
        if not recon.covers(end_boundary):
            if recon.extent:
                self.log.info(f"Incomplete extraction detected. Will resume from page {recon.resume_page}...")
            return None

        self.log.info("Extraction appears complete. Use --force to re-extract.")
        self.state = ExtractionState.DONE
        verification = verify(recon.pages, end_boundary, bounds.total)
        log_verification(self.log, verification)
        return ExtractionResult(self.state, self.book_dir, verification, prior, bounds, self.stats)

    def _load_toc(self, prior: dict[str, Any] | None) -> list[TocEntry]:
        if prior is not None and not self.refresh_toc:
            cached = toc_from_payload(prior.get("toc"))
            if cached:
                self.log.info(f"Loaded TOC from metadata.json ({len(cached)} entries).")
                return cached

        toc = self.source.read_toc()
        self.log.info(f"TOC entries captured: {len(toc)}")
        return toc

    def _log_bounds(self, bounds: TocBounds, end_boundary: int) -> None:
        self.log.info(f"TOC content start: {bounds.start.title} (page {bounds.start.page})")
        if self.include_end_matter:
            self.log.info("TOC boundary trimming disabled (--include-end-matter).")
        elif bounds.end is not None:
            self.log.info(f"TOC end-matter marker: {bounds.end.title} (page {bounds.end.page})")
        else:
            self.log.info("TOC end-matter marker: none detected")
        self.log.info(f"Reading up to page {end_boundary - 1} of {bounds.total}.")

    def _reconcile(self, prior: dict[str, Any] | None, book_total: int) -> Reconciliation | None:
        if self.force:
            self.log.info("Force mode: existing screenshots will be replaced.")
            return None
        recon = reconcile(self.book_dir, (prior or {}).get("pages") or [], book_total)
        if recon.rebuilt and recon.manifest_count:
            self.log.warning(
                f"Found {recon.artifact_count} screenshots but only {recon.manifest_count} "
                "metadata entries; rebuilding the page list from filenames."
            )
        if recon.extent:
            self.log.info(f"Resuming extraction from page {recon.resume_page} (last extracted: {recon.last_page}).")
        return recon

    def _navigate(self, start: TocEntry, resume_page: int | None) -> None:
        if resume_page is None:
            self.log.info(f"Navigating to the start of the content ({start.title})...")
            if not self.source.navigate_to_start(start):
                self.log.warning("could not navigate to the start entry; starting from the current page.")
            return

        current = self._read_position()
        if current is not None and current.page == resume_page:
            return
        self.log.info(f"Navigating to page {resume_page}...")
        if not self.source.go_to_page(resume_page):
            self.log.warning(f"could not navigate to page {resume_page}; continuing from the current page.")

    def _read_position(self) -> Position | None:
        """Read the footer, retrying briefly while the reader settles."""

        def attempt(_attempt: int) -> Position:
            position = parse_position(self.source.current_position())
            if position is None:
                raise PageUnchanged("footer position not readable")
            return position

        try:
            position, _attempts = retry_call(
                "footer read",
                attempt,
                max_attempts=self.policy.position_read_attempts,
                is_retryable=lambda exc: True,
                backoff=FixedBackoff(self.policy.position_read_interval_seconds),
                sleep=self.sleep,
            )
        except RetryError:
            return None
        return position

    def _capture_pages(self, pages: list[dict[str, Any]], end_boundary: int, total: int) -> None:
        width = page_padding(total)
        while True:
            position = self._read_position()
            if position is None:
                self.log.info("Could not read a page number; stopping.")
                break
            if position.kind != "page":
                self.log.info(f"Reader is at {position}, not a numbered page; stopping.")
                break
            if position.page >= end_boundary:
                self.log.info(f"Reached content boundary (page {end_boundary}). Done!")
                break

            index = len(pages)
            file_name = artifact_filename(index, position.page, width)
            image_path = self.pages_dir / file_name
            if image_path.exists() and not self.force:
                self.log.info(f"skipping page {position.page} (already exists: {file_name})")
                self.stats["skipped_existing_count"] += 1
            else:
                try:
                    bitmap = self._capture_bitmap()
                except RetryError as exc:
                    self.stats["capture_failure_count"] += 1
                    self.log.warning(
                        f"could not capture page {position.page} after {exc.attempts} attempts "
                        f"({exc.last_error}); treating as the end of the book."
                    )
                    break
                write_bytes_atomic(image_path, bitmap)
                self.stats["new_count"] += 1
                self.log.line(f"Page {position.page} of {position.total} -> {file_name}")

            pages.append(
                {
                    "index": index,
                    "page": position.page,
                    "total": position.total,
                    "screenshot": artifact_ref(file_name),
                }
            )

            self.sleep(self.policy.settle_seconds)
            try:
                self._advance()
            except NavigationStall as exc:
                self.stats["stall_count"] += 1
                self.log.info(f"{exc}; treating as the end of the book.")
                break

    def _capture_bitmap(self) -> bytes:
        bitmap, _attempts = retry_call(
            "page capture",
            lambda _attempt: self.source.capture_bitmap(),
            max_attempts=self.policy.capture_attempts,
            is_retryable=lambda exc: True,
            backoff=FixedBackoff(self.policy.capture_retry_interval_seconds),
            sleep=self.sleep,
            log=self.log,
        )
        return bitmap

    def _advance(self) -> None:
        """Turn the page and wait until the reader shows new page content.

        The content signature decides. The footer text is only consulted when
        no signature was readable before the turn, since the footer can update
        before the new page image has rendered.
        """
        previous_signature = self._safe(self.source.content_signature)
        previous_text = self._safe(self.source.current_position)
        every = max(self.policy.reissue_every, 1)

        def poll(attempt: int) -> None:
            if (attempt - 1) % every == 0:
                if attempt > 1:
                    self.log.info(f"retrying next-page request (poll {attempt}/{self.policy.max_polls})...")
                if not self.source.advance():
                    raise PageUnchanged("next-page control not available")

            signature = self.source.content_signature()
            if previous_signature is not None:
                if signature is not None and signature != previous_signature:
                    return
                raise PageUnchanged("page content has not changed")

            text = self.source.current_position()
            if previous_text and text and text != previous_text:
                return
            raise PageUnchanged("page content has not changed")

        try:
            retry_call(
                "page turn",
                poll,
                max_attempts=self.policy.max_polls,
                is_retryable=self._poll_failure,
                backoff=FixedBackoff(self.policy.poll_interval_seconds),
                sleep=self.sleep,
            )
        except RetryError as exc:
            raise NavigationStall(
                f"page did not change after {exc.attempts} polls ({exc.last_error})"
            ) from exc

    def _poll_failure(self, exc: BaseException) -> bool:
        if not isinstance(exc, PageUnchanged):
            self.log.warning(f"page turn poll failed: {exc}")
        return True

    def _safe(self, fn: Callable[[], str | None]) -> str | None:
        try:
            return fn()
        except Exception as exc:
            self.log.warning(f"reader read failed: {exc}")
            return None

    def _restore(self, initial_position: Position | None) -> None:
        if not self.restore_position:
            self.log.info("start position restore disabled (--no-restore-position).")
            return
        if initial_position is None or initial_position.page is None:
            self.log.warning("no page-based start position was captured; skipping restore.")
            return
        try:
            restored = self.source.go_to_page(initial_position.page)
        except Exception as exc:
            self.log.warning(f"restore to page {initial_position.page} failed: {exc}")
            return
        if restored:
            self.log.info(f"restored start position to page {initial_position.page}.")
        else:
            self.log.warning(f"could not restore start position to page {initial_position.page}.")


def main(argv: list[str] | None = None) -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Capture Kindle book pages as screenshots")
    parser.add_argument("--asin", type=str, default=None, help="Book ASIN (default: $ASIN)")
    parser.add_argument(
        "--out-dir", type=str, default=DEFAULT_OUT_DIR, help=f"Output root (default: {DEFAULT_OUT_DIR})"
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Ignore previous progress and replace existing screenshots",
    )
    parser.add_argument(
        "--include-end-matter",
        action="store_true",
        help="Capture end matter pages instead of trimming by TOC boundary",
    )
    parser.add_argument(
        "--refresh-toc",
        action="store_true",
        help="Ignore the TOC saved in metadata.json and rebuild it from the reader",
    )
    parser.add_argument(
        "--no-restore-position",
        action="store_true",
        help="Do not return to the starting page when the run finishes",
    )
    args = parser.parse_args(argv)

    try:
        settings = ExtractSettings.from_env(asin=args.asin)
    except PreconditionError as exc:
        print(f"Error: {exc}")
        return 1

    from kindle_transcript.reader import KindleReaderSource

    book_dir = resolve_book_dir(settings.asin, Path(args.out_dir))
    book_dir.mkdir(parents=True, exist_ok=True)

    with open_run_log(book_dir, "extract") as log:
        source = KindleReaderSource(settings, log)
        extractor = Extractor(
            source,
            book_dir,
            log=log,
            asin=settings.asin,
            force=args.force,
            include_end_matter=args.include_end_matter,
            refresh_toc=args.refresh_toc,
            restore_position=not args.no_restore_position,
        )
        try:
            extractor.run()
        except (SessionError, TocBoundaryError, ManifestCorrupt) as exc:
            log.error(str(exc))
            return 1
        except KeyboardInterrupt:
            log.line()
            log.warning("stopped by user; captured pages were saved to metadata.json.")
            return 130
        except Exception as exc:
            log.error(f"extraction stopped: {exc}")
            log.line("Captured pages were saved to metadata.json; run the script again to resume.")
            return 1
        finally:
            source.close()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())

"""
Transcribe captured page screenshots into content.json with a vision model.

Only screenshots without a chunk in content.json are sent to the model, so a
re-run picks up where the last one stopped. Pages are transcribed in parallel
(16 at a time by default); each page retries with exponential backoff on empty
responses, refusals, rate limits and server errors. A page that still fails is
logged and left out, and the merged manifest is rewritten once, sorted by
(index, page).

Usage:
    python scripts/transcribe.py --asin B00FO74WXA
    python scripts/transcribe.py --asin B00FO74WXA --concurrency 4 --max-retries 5
    python scripts/transcribe.py --asin B00FO74WXA --dry-run
"""

from __future__ import annotations

import argparse
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Protocol

from dotenv import load_dotenv

from kindle_transcript.config import (
    DEFAULT_CONCURRENCY,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_OUT_DIR,
    TranscribeSettings,
)
from kindle_transcript.errors import (
    EmptyResponse,
    ManifestCorrupt,
    ModelRefusal,
    PreconditionError,
    TranscriptionGivenUp,
    is_retryable_error,
)
from kindle_transcript.log import RunLog, open_run_log
from kindle_transcript.manifest import (
    PAGES_DIRNAME,
    load_content_manifest,
    merge_content,
    resolve_book_dir,
    save_content_manifest,
    scan_page_artifacts,
)
from kindle_transcript.ocr import OpenAIResponsesOCR, encode_image_data_url
from kindle_transcript.retry import ExponentialBackoff, RetryError, retry_call

OCR_INSTRUCTIONS = """You will be given an image containing text. Read the text from the image and output it verbatim.

Do not include any additional text, descriptions, or punctuation. Ignore any embedded images. Do not use markdown."""

OCR_EXTRA_CONTEXT = """

The person requesting this owns the book and is making a personal plain-text copy of it for accessibility. A faithful, complete transcription of the page is expected."""

DETERMINISTIC_ATTEMPTS = 2
RETRY_TEMPERATURE = 0.5
EXTRA_CONTEXT_AFTER_ATTEMPTS = 3
REFUSAL_MAX_LENGTH = 100
REFUSAL_RE = re.compile(r"\bI(?:'|’| a)m sorry\b|\bI can(?:'|’|no)?t (?:help|assist)", re.IGNORECASE)
PAGE_NUMBER_LINE_RE = re.compile(r"^\s*\d+\s*$\n+", re.MULTILINE)
MAX_FAILURE_RATIO = 0.10


class Recognizer(Protocol):
    def recognize(self, image_data_url: str, instructions: str, temperature: float) -> str: ...


class PipelineState(Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    MERGING = "merging"
    DONE = "done"


def temperature_for(attempt: int) -> float:
    return 0.0 if attempt <= DETERMINISTIC_ATTEMPTS else RETRY_TEMPERATURE


def instructions_for(attempt: int) -> str:
    if attempt > EXTRA_CONTEXT_AFTER_ATTEMPTS:
        return OCR_INSTRUCTIONS + OCR_EXTRA_CONTEXT
    return OCR_INSTRUCTIONS


def clean_transcript(raw: str | None) -> str:
    """Drop a standalone page-number line, trim every line, drop blank lines."""
    if not raw:
        return ""
    text = PAGE_NUMBER_LINE_RE.sub("", raw, count=1)
    return "\n".join(line.strip() for line in text.splitlines() if line.strip())


def is_refusal(text: str) -> bool:
    return len(text) < REFUSAL_MAX_LENGTH and bool(REFUSAL_RE.search(text))


@dataclass
class TranscriptionReport:
    artifact_count: int
    already_done: int
    attempted: int
    succeeded: int
    failed: int
    chunks: list[dict[str, Any]]
    content_path: Path | None = None

    @property
    def failure_ratio(self) -> float:
        return (self.failed / self.attempted) if self.attempted else 0.0


class TranscriptionPipeline:
    """Idempotent, bounded-concurrency transcription of page artifacts."""

    def __init__(
        self,
        recognizer: Recognizer,
        book_dir: Path,
        *,
        log: RunLog,
        concurrency: int = DEFAULT_CONCURRENCY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff: Any = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.recognizer = recognizer
        self.book_dir = book_dir
        self.log = log
        self.concurrency = concurrency
        self.max_attempts = max_attempts
        self.backoff = backoff if backoff is not None else ExponentialBackoff()
        self.sleep = sleep
        self.state = PipelineState.IDLE
        self._stats_lock = threading.Lock()
        self.stats = {"succeeded": 0, "failed": 0}

    def pending(self, artifacts: list[dict[str, Any]], existing: list[dict[str, Any]]) -> list[dict[str, Any]]:
        done = {chunk["screenshot"] for chunk in existing}
        return [artifact for artifact in artifacts if artifact["screenshot"] not in done]

    def transcribe(self, artifacts: list[dict[str, Any]], existing: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Return `existing` plus new chunks for untranscribed artifacts, in (index, page) order."""
        self.state = PipelineState.IDLE
        work = tuple(self.pending(artifacts, existing))
        if not work:
            self.log.info("Nothing to transcribe; content.json is already up to date.")
            self.state = PipelineState.DONE
            return merge_content(existing, [])

        self.log.info(
            f"Transcribing {len(work)} of {len(artifacts)} pages "
            f"({len(artifacts) - len(work)} already done, concurrency={self.concurrency})."
        )
        self.state = PipelineState.DISPATCHING
        chunks = []
        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            futures = [executor.submit(self.transcribe_artifact, artifact) for artifact in work]
            for future in as_completed(futures):
                chunk = future.result()
                if chunk is not None:
                    chunks.append(chunk)

        self.state = PipelineState.MERGING
        merged = merge_content(existing, chunks)
        self.state = PipelineState.DONE
        return merged

    def transcribe_artifact(self, artifact: dict[str, Any]) -> dict[str, Any] | None:
        """Transcribe one artifact; a page that cannot be transcribed yields None."""
        try:
            text, attempts = self._recognize_with_retry(artifact)
        except TranscriptionGivenUp as exc:
            self._count("failed")
            self.log.error(f"error processing image {artifact['index']} ({artifact['screenshot']}): {exc}")
            return None

        self._count("succeeded")
        self.log.line(f"[{artifact['screenshot']}] page {artifact['page']} transcribed ({attempts} attempt(s))")
        return {
            "index": artifact["index"],
            "page": artifact["page"],
            "text": text,
            "screenshot": artifact["screenshot"],
        }

    def _recognize_with_retry(self, artifact: dict[str, Any]) -> tuple[str, int]:
        screenshot = artifact["screenshot"]
        try:
            image_data_url = encode_image_data_url(self.book_dir / screenshot)
        except OSError as exc:
            raise TranscriptionGivenUp(screenshot, 0, exc) from exc

        def attempt(number: int) -> str:
            raw = self.recognizer.recognize(image_data_url, instructions_for(number), temperature_for(number))
            text = clean_transcript(raw)
            if not text:
                raise EmptyResponse("empty response")
            if is_refusal(text):
                raise ModelRefusal(text)
            return text

        try:
            return retry_call(
                f"{screenshot}",
                attempt,
                max_attempts=self.max_attempts,
                is_retryable=is_retryable_error,
                backoff=self.backoff,
                sleep=self.sleep,
                log=self.log,
            )
        except RetryError as exc:
            raise TranscriptionGivenUp(screenshot, exc.attempts, exc.last_error) from exc

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self.stats[key] += 1


def load_artifacts(book_dir: Path) -> list[dict[str, Any]]:
    artifacts = scan_page_artifacts(book_dir)
    if not artifacts:
        raise PreconditionError(f"no page screenshots found: {book_dir / PAGES_DIRNAME}")
    return artifacts


def run_transcription(book_dir: Path, pipeline: TranscriptionPipeline) -> TranscriptionReport:
    """Transcribe new screenshots and rewrite content.json once, after every page resolved."""
    artifacts = load_artifacts(book_dir)
    existing = load_content_manifest(book_dir)
    attempted = len(pipeline.pending(artifacts, existing))

    merged = pipeline.transcribe(artifacts, existing)
    content_path = save_content_manifest(book_dir, merged)
    return TranscriptionReport(
        artifact_count=len(artifacts),
        already_done=len(artifacts) - attempted,
        attempted=attempted,
        succeeded=pipeline.stats["succeeded"],
        failed=pipeline.stats["failed"],
        chunks=merged,
        content_path=content_path,
    )


def main(argv: list[str] | None = None) -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Transcribe captured Kindle pages via OpenAI")
    parser.add_argument("--asin", default=None, help="Book ASIN (default: $ASIN)")
    parser.add_argument(
        "--out-dir", default=DEFAULT_OUT_DIR, help=f"Output root (default: {DEFAULT_OUT_DIR})"
    )
    parser.add_argument("--model", default=None, help="OCR model (default: $OPENAI_MODEL or gpt-4o)")
    parser.add_argument(
        "--concurrency",
        type=int,
        default=DEFAULT_CONCURRENCY,
        help=f"Concurrent transcription requests (default: {DEFAULT_CONCURRENCY})",
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=DEFAULT_MAX_ATTEMPTS,
        help=f"Attempts per page before giving up (default: {DEFAULT_MAX_ATTEMPTS})",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print planned workload without API calls or file writes",
    )
    args = parser.parse_args(argv)

    if args.concurrency < 1:
        parser.error("--concurrency must be >= 1")
    if args.max_retries < 1:
        parser.error("--max-retries must be >= 1")

    try:
        settings = TranscribeSettings.from_env(asin=args.asin, require_api_key=not args.dry_run)
    except PreconditionError as exc:
        print(f"Error: {exc}")
        return 1

    book_dir = resolve_book_dir(settings.asin, Path(args.out_dir))
    if not (book_dir / PAGES_DIRNAME).is_dir():
        print(f"Error: pages directory not found: {book_dir / PAGES_DIRNAME}")
        return 1

    if args.dry_run:
        try:
            artifacts = load_artifacts(book_dir)
            existing = load_content_manifest(book_dir)
        except (PreconditionError, ManifestCorrupt) as exc:
            print(f"Error: {exc}")
            return 1
        done = {chunk["screenshot"] for chunk in existing}
        pending = [a for a in artifacts if a["screenshot"] not in done]
        print(f"Screenshots: {len(artifacts)} | Transcribed: {len(existing)} | Pending: {len(pending)}")
        print("Dry run only. No API calls or file writes.")
        return 0

    with open_run_log(book_dir, "transcribe") as log:
        recognizer = OpenAIResponsesOCR(args.model or settings.model, api_key=settings.openai_api_key)
        pipeline = TranscriptionPipeline(
            recognizer,
            book_dir,
            log=log,
            concurrency=args.concurrency,
            max_attempts=args.max_retries,
        )
        try:
            report = run_transcription(book_dir, pipeline)
        except (PreconditionError, ManifestCorrupt) as exc:
            log.error(str(exc))
            return 1

        log.info(
            f"Wrote {report.content_path} ({len(report.chunks)} chunks): "
            f"attempted={report.attempted} succeeded={report.succeeded} failed={report.failed}"
        )
        if report.attempted and report.succeeded == 0:
            log.error("no pages were transcribed successfully.")
            return 1
        if report.failure_ratio > MAX_FAILURE_RATIO:
            log.warning(
                f"failure ratio is {report.failure_ratio:.1%}, which exceeds "
                f"{MAX_FAILURE_RATIO:.0%}. Re-run to retry the missing pages."
            )
            return 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main())

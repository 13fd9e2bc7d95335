"""
Scoped run log.

Every component receives a RunLog instead of printing directly. Console lines
keep the `Info:` / `Warning:` / `Error:` prefixes; when the log is opened for a
book directory the same lines are also written, timestamped, to
`logs/<command>-<timestamp>.log` inside that directory.
"""

from __future__ import annotations

import sys
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Iterator


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RunLog:
    def __init__(self, stream: IO[str] | None = None, file_path: Path | None = None) -> None:
        self.stream = stream
        self.file_path = file_path
        self._file: IO[str] | None = None
        self._lock = threading.Lock()
        if file_path is not None:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            self._file = file_path.open("a", encoding="utf-8")

    def _emit(self, prefix: str | None, message: str) -> None:
        line = f"{prefix}: {message}" if prefix else message
        with self._lock:
            print(line, file=self.stream if self.stream is not None else sys.stdout)
            if self._file is not None:
                self._file.write(f"{utc_now_iso()} {line}\n")

    def info(self, message: str) -> None:
        self._emit("Info", message)

    def warning(self, message: str) -> None:
        self._emit("Warning", message)

    def error(self, message: str) -> None:
        self._emit("Error", message)

    def line(self, message: str = "") -> None:
        """Write an unprefixed line (summaries, banners)."""
        self._emit(None, message)

    def flush(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.flush()

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None


@contextmanager
def open_run_log(book_dir: Path | None, command: str, stream: IO[str] | None = None) -> Iterator[RunLog]:
    """Open a RunLog for one command run and close it when the run ends."""
    file_path = None
    if book_dir is not None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        file_path = book_dir / "logs" / f"{command}-{stamp}.log"
    log = RunLog(stream=stream, file_path=file_path)
    try:
        yield log
    finally:
        log.flush()
        log.close()

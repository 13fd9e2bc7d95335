import io
import json

import pytest

from kindle_transcript.log import RunLog
from kindle_transcript.manifest import PAGES_DIRNAME, artifact_filename, artifact_ref


@pytest.fixture
def log():
    run_log = RunLog(stream=io.StringIO())
    yield run_log
    run_log.close()


def write_artifacts(book_dir, pages, width=2, total=10):
    """Create `pages/<index>-<page>.png` files and return their manifest records."""
    pages_dir = book_dir / PAGES_DIRNAME
    pages_dir.mkdir(parents=True, exist_ok=True)
    records = []
    for index, page in enumerate(pages):
        file_name = artifact_filename(index, page, width)
        (pages_dir / file_name).write_bytes(f"png-{page}".encode())
        records.append({"index": index, "page": page, "total": total, "screenshot": artifact_ref(file_name)})
    return records


def write_metadata(book_dir, toc, pages, meta=None):
    book_dir.mkdir(parents=True, exist_ok=True)
    payload = {
        "info": {"asin": "B000TEST"},
        "meta": meta if meta is not None else {"title": "Test Book"},
        "toc": toc,
        "pages": pages,
    }
    (book_dir / "metadata.json").write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")

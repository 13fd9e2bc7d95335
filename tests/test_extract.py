import json

import pytest

from conftest import write_artifacts, write_metadata
from kindle_transcript.errors import ManifestCorrupt, SessionError, TocBoundaryError
from kindle_transcript.extract import (
    AdvancePolicy,
    ExtractionState,
    Extractor,
    PageSource,
    main,
    reconcile,
    verify,
)
from kindle_transcript.position import Position
from kindle_transcript.toc import TocEntry

ASIN = "B000TEST"

BOOK_TOC = [
    TocEntry("Title Page"),
    TocEntry("Chapter 1", Position(total=10, page=1)),
    TocEntry("Chapter 2", Position(total=10, page=4)),
    TocEntry("Acknowledgements", Position(total=10, page=9)),
]


def toc_payload(entries=BOOK_TOC):
    return [entry.to_dict() for entry in entries]


class FakePageSource(PageSource):
    """A scripted reader: pages 1..total, one advance per page, optional dropped or failing requests."""

    def __init__(
        self,
        toc=BOOK_TOC,
        total=10,
        current_page=5,
        dropped_advances=(),
        failing_advances=(),
        capture_failures=None,
        fail_session=False,
    ):
        self.toc = list(toc)
        self.total = total
        self.page = current_page
        self.dropped_advances = set(dropped_advances)
        self.failing_advances = set(failing_advances)
        self.capture_failures = dict(capture_failures or {})
        self.fail_session = fail_session
        self.session_opened = False
        self.toc_reads = 0
        self.advance_calls = 0
        self.goto_calls = []
        self.captured = []
        self.closed = False

    def open_session(self):
        self.session_opened = True
        if self.fail_session:
            raise RuntimeError("sign-in page did not load")
        return {"asin": ASIN}, {"title": "Test Book", "authorsList": ["A. Writer"]}

    def read_toc(self):
        self.toc_reads += 1
        return list(self.toc)

    def navigate_to_start(self, start):
        self.page = start.page
        return True

    def go_to_page(self, page_number):
        self.goto_calls.append(page_number)
        self.page = page_number
        return True

    def advance(self):
        self.advance_calls += 1
        if self.advance_calls in self.failing_advances:
            raise RuntimeError("Target page, context or browser has been closed")
        if self.advance_calls not in self.dropped_advances and self.page < self.total:
            self.page += 1
        return True

    def current_position(self):
        return f"Page {self.page} of {self.total}"

    def content_signature(self):
        return f"page-image-{self.page}"

    def capture_bitmap(self):
        if self.capture_failures.get(self.page):
            self.capture_failures[self.page] -= 1
            raise RuntimeError("Timeout 30000ms exceeded")
        self.captured.append(self.page)
        return f"png-{self.page}".encode()

    def close(self):
        self.closed = True


class LaggingImageSource(FakePageSource):
    """The footer moves as soon as a turn is requested; the page image renders one read later."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.rendered = self.page
        self.stale_reads = 0

    def navigate_to_start(self, start):
        super().navigate_to_start(start)
        self.rendered = self.page
        return True

    def go_to_page(self, page_number):
        super().go_to_page(page_number)
        self.rendered = self.page
        return True

    def advance(self):
        super().advance()
        self.stale_reads = 1
        return True

    def content_signature(self):
        if self.stale_reads:
            self.stale_reads -= 1
        else:
            self.rendered = self.page
        return f"page-image-{self.rendered}"

    def capture_bitmap(self):
        self.captured.append(self.rendered)
        return f"png-{self.rendered}".encode()


class UnsignedPageSource(FakePageSource):
    def content_signature(self):
        return None


def make_extractor(source, book_dir, log, **kwargs):
    return Extractor(source, book_dir, log=log, asin=ASIN, sleep=lambda seconds: None, **kwargs)


def read_manifest(book_dir):
    return json.loads((book_dir / "metadata.json").read_text(encoding="utf-8"))


def test_fresh_run_captures_main_content_up_to_back_matter(tmp_path, log):
    source = FakePageSource(dropped_advances={2})
    extractor = make_extractor(source, tmp_path / ASIN, log)

    result = extractor.run()

    book_dir = tmp_path / f"{ASIN}-Test Book"
    assert result.state is ExtractionState.DONE
    assert result.book_dir == book_dir
    assert source.captured == [1, 2, 3, 4, 5, 6, 7, 8]
    assert sorted(p.name for p in (book_dir / "pages").iterdir()) == [f"{i:02d}-{i + 1:02d}.png" for i in range(8)]

    manifest = read_manifest(book_dir)
    assert manifest["info"] == {"asin": ASIN}
    assert manifest["meta"]["title"] == "Test Book"
    assert manifest["toc"] == toc_payload()
    assert [p["page"] for p in manifest["pages"]] == [1, 2, 3, 4, 5, 6, 7, 8]
    assert manifest["pages"][0] == {"index": 0, "page": 1, "total": 10, "screenshot": "pages/00-01.png"}

    assert result.verification.expected == 8
    assert result.verification.missing == 0
    assert source.goto_calls[-1] == 5
    assert extractor.stats == {
        "new_count": 8,
        "skipped_existing_count": 0,
        "stall_count": 0,
        "capture_failure_count": 0,
    }


def test_stall_at_last_page_ends_the_book(tmp_path, log):
    toc = [TocEntry("Chapter 1", Position(total=6, page=1))]
    source = FakePageSource(toc=toc, total=6, current_page=1)
    extractor = make_extractor(source, tmp_path / ASIN, log, policy=AdvancePolicy(max_polls=12))

    result = extractor.run()

    assert source.captured == [1, 2, 3, 4, 5, 6]
    assert extractor.stats["stall_count"] == 1
    assert result.verification.expected == 6
    assert result.verification.complete
    # one request per page turn, re-issued every 10 polls while stuck on the last page
    assert source.advance_calls == 5 + 2


def test_failing_next_page_requests_count_as_polls(tmp_path, log):
    toc = [TocEntry("Chapter 1", Position(total=6, page=1))]
    source = FakePageSource(toc=toc, total=6, current_page=1, failing_advances={2, 3})
    extractor = make_extractor(source, tmp_path / ASIN, log, policy=AdvancePolicy(max_polls=30))

    result = extractor.run()

    assert result.state is ExtractionState.DONE
    assert source.captured == [1, 2, 3, 4, 5, 6]
    assert extractor.stats["stall_count"] == 1
    assert log.stream.getvalue().count("page turn poll failed: Target page") == 2
    # a failed request is re-issued 10 polls later
    assert source.advance_calls == 1 + 3 + 3 + 3


def test_page_turn_waits_for_the_image_not_the_footer(tmp_path, log):
    source = LaggingImageSource(current_page=1)

    result = make_extractor(source, tmp_path / ASIN, log).run()

    assert result.state is ExtractionState.DONE
    assert source.captured == [1, 2, 3, 4, 5, 6, 7, 8]
    pages_dir = result.book_dir / "pages"
    assert (pages_dir / "03-04.png").read_bytes() == b"png-4"


def test_footer_text_decides_when_there_is_no_content_signature(tmp_path, log):
    source = UnsignedPageSource(current_page=1)

    result = make_extractor(source, tmp_path / ASIN, log).run()

    assert source.captured == [1, 2, 3, 4, 5, 6, 7, 8]
    assert result.stats["stall_count"] == 0
    assert result.verification.complete


def test_failed_capture_is_retried(tmp_path, log):
    source = FakePageSource(current_page=1, capture_failures={3: 1})
    extractor = make_extractor(source, tmp_path / ASIN, log)

    result = extractor.run()

    assert result.state is ExtractionState.DONE
    assert source.captured == [1, 2, 3, 4, 5, 6, 7, 8]
    assert extractor.stats["capture_failure_count"] == 0
    assert "page capture attempt 1/3 failed: Timeout 30000ms exceeded" in log.stream.getvalue()
    assert [p["page"] for p in read_manifest(result.book_dir)["pages"]] == [1, 2, 3, 4, 5, 6, 7, 8]


def test_capture_that_keeps_failing_ends_the_traversal(tmp_path, log):
    source = FakePageSource(current_page=1, capture_failures={3: 5})
    extractor = make_extractor(source, tmp_path / ASIN, log)

    result = extractor.run()

    assert result.state is ExtractionState.DONE
    assert source.captured == [1, 2]
    assert extractor.stats["capture_failure_count"] == 1
    assert result.verification.missing == 6
    assert [p["page"] for p in read_manifest(result.book_dir)["pages"]] == [1, 2]
    assert not (result.book_dir / "pages" / "02-03.png").exists()
    assert "could not capture page 3 after 3 attempts" in log.stream.getvalue()


class BrokenNavigationSource(FakePageSource):
    def navigate_to_start(self, start):
        raise RuntimeError("Execution context was destroyed")


def test_unexpected_error_aborts_after_saving_the_manifest(tmp_path, log):
    source = BrokenNavigationSource()
    extractor = make_extractor(source, tmp_path / ASIN, log)

    with pytest.raises(RuntimeError, match="Execution context was destroyed"):
        extractor.run()

    assert extractor.state is ExtractionState.ABORTED
    manifest = read_manifest(tmp_path / f"{ASIN}-Test Book")
    assert manifest["pages"] == []
    assert source.goto_calls == [5]


def test_extract_cli_reports_unexpected_errors(tmp_path, monkeypatch, capsys):
    import kindle_transcript.reader as reader

    sources = []

    def fake_reader(settings, log):
        sources.append(BrokenNavigationSource())
        return sources[0]

    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("AMAZON_EMAIL", "me@example.com")
    monkeypatch.setenv("AMAZON_PASSWORD", "secret")
    monkeypatch.setattr(reader, "KindleReaderSource", fake_reader)

    exit_code = main(["--asin", ASIN, "--out-dir", str(tmp_path / "out")])

    assert exit_code == 1
    assert sources[0].closed
    assert "Error: extraction stopped: Execution context was destroyed" in capsys.readouterr().out


def test_resume_uses_artifacts_over_stale_manifest(tmp_path, log):
    book_dir = tmp_path / f"{ASIN}-Test Book"
    records = write_artifacts(book_dir, [1, 2, 3, 4, 5])
    write_metadata(book_dir, toc_payload(), records[:3])
    source = FakePageSource(current_page=2)

    result = make_extractor(source, book_dir, log).run()

    assert source.toc_reads == 0
    assert source.goto_calls[0] == 6
    assert source.captured == [6, 7, 8]
    pages = read_manifest(result.book_dir)["pages"]
    assert [(p["index"], p["page"]) for p in pages] == [(i, i + 1) for i in range(8)]
    assert all(p["total"] == 10 for p in pages)
    assert "rebuilding the page list" in log.stream.getvalue()


def test_complete_extraction_is_a_no_op(tmp_path, log):
    book_dir = tmp_path / f"{ASIN}-Test Book"
    records = write_artifacts(book_dir, list(range(1, 9)))
    write_metadata(book_dir, toc_payload(), records)
    before = (book_dir / "metadata.json").read_bytes()
    source = FakePageSource()

    result = make_extractor(source, book_dir, log).run()

    assert result.state is ExtractionState.DONE
    assert result.verification.missing == 0
    assert not source.session_opened
    assert (book_dir / "metadata.json").read_bytes() == before


def test_refresh_toc_reads_toc_from_the_reader(tmp_path, log):
    book_dir = tmp_path / f"{ASIN}-Test Book"
    records = write_artifacts(book_dir, list(range(1, 9)))
    write_metadata(book_dir, toc_payload(), records)
    source = FakePageSource()

    result = make_extractor(source, book_dir, log, refresh_toc=True).run()

    assert source.toc_reads == 1
    assert source.captured == []
    assert result.state is ExtractionState.DONE


def test_session_failure_aborts_before_touching_storage(tmp_path, log):
    source = FakePageSource(fail_session=True)
    extractor = make_extractor(source, tmp_path / ASIN, log)

    with pytest.raises(SessionError):
        extractor.run()

    assert extractor.state is ExtractionState.ABORTED
    assert not (tmp_path / ASIN / "metadata.json").exists()


def test_unbounded_toc_aborts(tmp_path, log):
    source = FakePageSource(toc=[TocEntry("Cover"), TocEntry("Map", Position(total=900, location=3))])
    extractor = make_extractor(source, tmp_path / ASIN, log)

    with pytest.raises(TocBoundaryError):
        extractor.run()

    assert extractor.state is ExtractionState.ABORTED
    assert source.goto_calls == [5]


def test_corrupt_manifest_aborts_without_overwriting(tmp_path, log):
    book_dir = tmp_path / ASIN
    book_dir.mkdir()
    (book_dir / "metadata.json").write_text("{oops", encoding="utf-8")
    source = FakePageSource()

    with pytest.raises(ManifestCorrupt):
        make_extractor(source, book_dir, log).run()

    assert not source.session_opened
    assert (book_dir / "metadata.json").read_text(encoding="utf-8") == "{oops"


def test_include_end_matter_reads_to_the_last_page(tmp_path, log):
    source = FakePageSource(current_page=1)
    extractor = make_extractor(
        source, tmp_path / ASIN, log, include_end_matter=True, policy=AdvancePolicy(max_polls=3)
    )

    result = extractor.run()

    assert source.captured == list(range(1, 11))
    assert result.verification.expected == 10


def test_reconcile_rebuilds_from_artifacts(tmp_path):
    records = write_artifacts(tmp_path, [1, 2, 3, 4, 5])
    stale = [dict(record, total=12) for record in records[:3]]

    recon = reconcile(tmp_path, stale, book_total=10)

    assert recon.rebuilt
    assert recon.extent == 5
    assert recon.resume_page == 6
    assert [p["total"] for p in recon.pages] == [12, 12, 12, 10, 10]
    assert recon.covers(6)
    assert not recon.covers(7)


def test_reconcile_without_artifacts_resumes_after_manifest_extent(tmp_path):
    pages = [{"index": 0, "page": 1, "total": 10, "screenshot": "pages/00-01.png"}]
    recon = reconcile(tmp_path, pages)
    assert not recon.rebuilt
    assert recon.resume_page == 2
    assert recon.last_page is None


def test_verify_reports_shortfall():
    pages = [{"index": i, "page": i + 1, "total": 10} for i in range(5)]
    verification = verify(pages, end_boundary=9)
    assert (verification.expected, verification.extracted, verification.missing) == (8, 5, 3)
    assert (verification.first_page, verification.last_page, verification.total) == (1, 5, 10)
    assert not verification.complete

import io

from kindle_transcript.log import open_run_log


def test_run_log_writes_console_and_file(tmp_path):
    stream = io.StringIO()
    with open_run_log(tmp_path, "extract", stream=stream) as log:
        log.info("starting")
        log.warning("slow page")
        log.line("=== SUMMARY ===")

    assert stream.getvalue().splitlines() == ["Info: starting", "Warning: slow page", "=== SUMMARY ==="]
    (log_file,) = (tmp_path / "logs").glob("extract-*.log")
    lines = log_file.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 3
    assert lines[1].endswith(" Warning: slow page")


def test_run_log_without_book_dir_is_console_only(tmp_path):
    stream = io.StringIO()
    with open_run_log(None, "export", stream=stream) as log:
        log.error("no book")
    assert stream.getvalue() == "Error: no book\n"
    assert list(tmp_path.iterdir()) == []

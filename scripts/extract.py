"""
Opens a book in Kindle Cloud Reader via Playwright, screenshots each page of
the main content into out/<ASIN>-<title>/pages and writes metadata.json.

Usage:
    python scripts/extract.py [--asin B00FO74WXA] [--force] [--include-end-matter]
                              [--refresh-toc] [--no-restore-position]
"""

from kindle_transcript.extract import main

if __name__ == "__main__":
    raise SystemExit(main())

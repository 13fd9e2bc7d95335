"""
Build a markdown book from metadata.json and content.json.

Usage:
    python scripts/export.py --asin B00FO74WXA [--include-end-matter]
"""

from kindle_transcript.export import main

if __name__ == "__main__":
    raise SystemExit(main())

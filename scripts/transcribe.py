"""
Transcribe captured page screenshots with an OpenAI vision model into content.json.

Usage:
    python scripts/transcribe.py --asin B00FO74WXA [--concurrency 16] [--dry-run]
"""

from kindle_transcript.transcribe import main

if __name__ == "__main__":
    raise SystemExit(main())

"""Runtime configuration read from the environment (and `.env` via python-dotenv)."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from kindle_transcript.errors import PreconditionError

DEFAULT_OUT_DIR = "out"
DEFAULT_PROFILE_DIR = Path.home() / ".kindle-reader-profile"
DEFAULT_MODEL = "gpt-4o"
DEFAULT_CONCURRENCY = 16
DEFAULT_MAX_ATTEMPTS = 20
READER_URL = "https://read.amazon.com/?asin={asin}"


def _missing(source: Mapping[str, str], names: tuple[str, ...]) -> list[str]:
    return [name for name in names if not source.get(name, "").strip()]


def _require(source: Mapping[str, str], names: tuple[str, ...]) -> None:
    missing = _missing(source, names)
    if missing:
        raise PreconditionError(f"Missing required environment variables: {', '.join(missing)}")


def _source(environ: Mapping[str, str] | None, asin: str | None) -> dict[str, str]:
    source = dict(os.environ if environ is None else environ)
    if asin:
        source["ASIN"] = asin
    return source


@dataclass(frozen=True)
class ExtractSettings:
    asin: str
    amazon_email: str
    amazon_password: str
    profile_dir: Path = DEFAULT_PROFILE_DIR
    headless: bool = False

    @property
    def reader_url(self) -> str:
        return READER_URL.format(asin=self.asin)

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None, *, asin: str | None = None
    ) -> "ExtractSettings":
        source = _source(environ, asin)
        _require(source, ("ASIN", "AMAZON_EMAIL", "AMAZON_PASSWORD"))
        profile_dir = source.get("KINDLE_PROFILE_DIR", "").strip()
        return cls(
            asin=source["ASIN"].strip(),
            amazon_email=source["AMAZON_EMAIL"].strip(),
            amazon_password=source["AMAZON_PASSWORD"],
            profile_dir=Path(profile_dir).expanduser() if profile_dir else DEFAULT_PROFILE_DIR,
            headless=source.get("HEADLESS", "").strip().lower() in {"1", "true", "yes"},
        )


@dataclass(frozen=True)
class TranscribeSettings:
    asin: str
    openai_api_key: str
    model: str = DEFAULT_MODEL

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        asin: str | None = None,
        require_api_key: bool = True,
    ) -> "TranscribeSettings":
        source = _source(environ, asin)
        _require(source, ("ASIN", "OPENAI_API_KEY") if require_api_key else ("ASIN",))
        return cls(
            asin=source["ASIN"].strip(),
            openai_api_key=source.get("OPENAI_API_KEY", "").strip(),
            model=source.get("OPENAI_MODEL", "").strip() or DEFAULT_MODEL,
        )


def require_asin(environ: Mapping[str, str] | None = None, *, asin: str | None = None) -> str:
    source = _source(environ, asin)
    _require(source, ("ASIN",))
    return source["ASIN"].strip()

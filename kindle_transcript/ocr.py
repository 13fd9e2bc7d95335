"""Page transcription through the OpenAI Responses API."""

from __future__ import annotations

import base64
from pathlib import Path
from typing import Any

from kindle_transcript.config import DEFAULT_MODEL

DEFAULT_MAX_OUTPUT_TOKENS = 4000
DEFAULT_TIMEOUT_SECONDS = 120


def encode_image_data_url(path: Path) -> str:
    """Inline a PNG screenshot as a base64 data URL."""
    return "data:image/png;base64," + base64.b64encode(path.read_bytes()).decode("ascii")


def _field(node: Any, name: str) -> Any:
    if isinstance(node, dict):
        return node.get(name)
    return getattr(node, name, None)


def extract_response_text(response: Any) -> str:
    """Return the model's output text, or "" when the response carries none.

    Uses the SDK's `output_text` convenience property when it is populated and
    otherwise joins the `output_text` parts of the message items.
    """
    text = _field(response, "output_text")
    if isinstance(text, str) and text.strip():
        return text

    parts = []
    for item in _field(response, "output") or []:
        for part in _field(item, "content") or []:
            part_text = _field(part, "text")
            if _field(part, "type") == "output_text" and isinstance(part_text, str):
                parts.append(part_text)
    return "".join(parts)


class OpenAIResponsesOCR:
    """Recognizer that sends one page image per request to a vision model."""

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        *,
        api_key: str | None = None,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
        client: Any | None = None,
    ) -> None:
        self.model = model
        self.max_output_tokens = max_output_tokens
        if client is None:
            try:
                from openai import OpenAI
            except ImportError as exc:
                raise RuntimeError(
                    "openai package is required. Install with: pip install openai"
                ) from exc
            # Retries and backoff happen in TranscriptionPipeline.
            client = OpenAI(api_key=api_key or None, timeout=timeout_seconds, max_retries=0)
        self.client = client

    def recognize(self, image_data_url: str, instructions: str, temperature: float) -> str:
        image = {"type": "input_image", "image_url": image_data_url, "detail": "high"}
        response = self.client.responses.create(
            model=self.model,
            instructions=instructions,
            input=[{"role": "user", "content": [image]}],
            temperature=temperature,
            max_output_tokens=self.max_output_tokens,
        )
        return extract_response_text(response)

"""Minimal Gemini generateContent client.

Shared by OCR, object detection, chat, navigation and the document clean-up
passes. Calls are blocking (requests); async callers go through
`generate_async`, which runs the request in a worker thread.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

import requests

import config

log = logging.getLogger(__name__)

# (base64 data, mime type)
InlineImage = Tuple[str, str]

SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
]


class GeminiError(RuntimeError):
    """Gemini not configured, unreachable, or returned something unusable."""


def parse_text(data: Dict[str, Any]) -> str:
    """Pull candidates[0].content.parts[0].text out of a response body."""
    candidates = data.get("candidates") or []
    if candidates:
        parts = (candidates[0].get("content") or {}).get("parts") or []
        if parts and isinstance(parts[0], dict) and "text" in parts[0]:
            return (parts[0]["text"] or "").strip()
    raise GeminiError("Could not parse text from Gemini response")


class GeminiClient:
    def __init__(
        self,
        api_key: str = config.GEMINI_API_KEY,
        model: str = config.GEMINI_MODEL,
        base_url: str = config.GEMINI_API_URL,
        timeout: float = config.GEMINI_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def generate(
        self,
        prompt: str,
        image: Optional[InlineImage] = None,
        generation_config: Optional[Dict[str, Any]] = None,
        safety_settings: Optional[List[Dict[str, str]]] = None,
    ) -> str:
        if not self.api_key:
            raise GeminiError("GEMINI_API_KEY is not configured. Set it via environment variable.")

        parts: List[Dict[str, Any]] = [{"text": prompt}]
        if image is not None:
            b64, mime = image
            parts.append({"inlineData": {"mimeType": mime, "data": b64}})
        payload: Dict[str, Any] = {"contents": [{"parts": parts}]}
        if generation_config:
            payload["generationConfig"] = generation_config
        if safety_settings:
            payload["safetySettings"] = safety_settings

        api_url = f"{self.base_url}/models/{self.model}:generateContent"
        try:
            r = self.session.post(
                api_url,
                params={"key": self.api_key},
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise GeminiError(f"Gemini request failed: {e}") from e
        if not r.ok:
            raise GeminiError(f"Gemini API error {r.status_code}: {r.text[:512]}")
        try:
            data = r.json()
        except ValueError as e:
            raise GeminiError("Gemini returned invalid JSON") from e
        text = parse_text(data)
        log.debug("Gemini (%s) returned %d chars", self.model, len(text))
        return text

    async def generate_async(self, prompt: str, **kwargs: Any) -> str:
        return await asyncio.to_thread(self.generate, prompt, **kwargs)

    def close(self) -> None:
        self.session.close()

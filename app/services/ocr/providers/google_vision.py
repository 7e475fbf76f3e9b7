"""
Google Cloud Vision provider (images:annotate, TEXT_DETECTION).
"""
import base64

import httpx

from app.schemas.payments import OCROptions
from app.services.errors import ProviderError
from app.services.ocr.base import OCRProvider


class GoogleVisionProvider(OCRProvider):
    """Google Cloud Vision REST provider."""

    name = "google_vision"

    def __init__(self, config: dict):
        super().__init__(config)
        self.api_key = config.get("api_key")
        self.api_url = (config.get("api_url") or "https://vision.googleapis.com/v1").rstrip("/")

    def is_available(self) -> bool:
        """Check if an API key is configured."""
        return bool(self.api_key)

    def recognize_text(self, image: bytes, options: OCROptions) -> str:
        if not self.is_available():
            raise ProviderError("Google Vision provider not configured")

        payload = {
            "requests": [
                {
                    "image": {"content": base64.b64encode(image).decode("utf-8")},
                    "features": [{"type": "TEXT_DETECTION", "maxResults": 1}],
                    "imageContext": {"languageHints": [options.language]},
                }
            ]
        }

        with httpx.Client(timeout=self.timeout) as client:
            response = client.post(
                f"{self.api_url}/images:annotate",
                params={"key": self.api_key},
                json=payload,
            )
            response.raise_for_status()
            data = response.json()

        responses = data.get("responses") or [{}]
        first = responses[0] or {}
        if first.get("error"):
            raise ProviderError(
                "Google Vision returned an error",
                detail={"error": first["error"]},
            )
        full_text = (first.get("fullTextAnnotation") or {}).get("text")
        if full_text:
            return full_text
        annotations = first.get("textAnnotations") or []
        return (annotations[0].get("description") or "") if annotations else ""

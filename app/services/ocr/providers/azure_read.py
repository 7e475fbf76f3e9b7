"""
Azure AI Vision Read provider (v3.2 read/analyze + operation polling).
"""
import time

import httpx

from app.schemas.payments import OCROptions
from app.services.errors import ProviderError
from app.services.ocr.base import OCRProvider


class AzureReadProvider(OCRProvider):
    """Azure Cognitive Services Read API provider."""

    name = "azure_read"

    def __init__(self, config: dict):
        super().__init__(config)
        self.endpoint = (config.get("endpoint") or "").rstrip("/")
        self.api_key = config.get("api_key")
        self.poll_interval = config.get("poll_interval", 1.0)

    def is_available(self) -> bool:
        """Check if both endpoint and key are configured."""
        return bool(self.endpoint and self.api_key)

    def recognize_text(self, image: bytes, options: OCROptions) -> str:
        if not self.is_available():
            raise ProviderError("Azure Read provider not configured")

        headers = {"Ocp-Apim-Subscription-Key": self.api_key}

        with httpx.Client(timeout=self.timeout) as client:
            response = client.post(
                f"{self.endpoint}/vision/v3.2/read/analyze",
                params={"language": options.language},
                headers={**headers, "Content-Type": "application/octet-stream"},
                content=image,
            )
            response.raise_for_status()
            operation_url = response.headers.get("Operation-Location")
            if not operation_url:
                raise ProviderError("Azure Read response has no Operation-Location header")
            result = self._wait_for_completion(client, operation_url, headers)

        lines: list[str] = []
        for page in (result.get("analyzeResult") or {}).get("readResults") or []:
            for line in page.get("lines") or []:
                if line.get("text"):
                    lines.append(line["text"])
        return "\n".join(lines)

    def _wait_for_completion(self, client: httpx.Client, operation_url: str, headers: dict) -> dict:
        """Poll the read operation until it finishes or the provider timeout elapses."""
        deadline = time.monotonic() + self.timeout
        while time.monotonic() < deadline:
            response = client.get(operation_url, headers=headers)
            response.raise_for_status()
            result = response.json()
            status = (result.get("status") or "").lower()
            if status == "succeeded":
                return result
            if status == "failed":
                raise ProviderError("Azure Read operation failed", detail={"result": result})
            time.sleep(self.poll_interval)
        raise ProviderError("Azure Read operation timed out")

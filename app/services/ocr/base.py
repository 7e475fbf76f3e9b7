"""
Base classes for OCR providers.
Used by the factory and all providers (tesseract, google_vision, azure_read, openai_vision, stub).
"""
from abc import ABC, abstractmethod

from app.schemas.payments import OCROptions, OCRResult
from app.services.ocr.extraction import (
    DEFAULT_AMOUNT_PATTERNS,
    DEFAULT_TX_ID_PATTERNS,
    calculate_confidence_score,
    extract_amount,
    extract_transaction_id,
)


_MAGIC_MIME = (
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
)


def detect_mime_type(image: bytes) -> str:
    """Sniff the image type from magic bytes; jpeg when unknown."""
    if image[:4] == b"RIFF" and image[8:12] == b"WEBP":
        return "image/webp"
    for magic, mime in _MAGIC_MIME:
        if image.startswith(magic):
            return mime
    return "image/jpeg"


class OCRProvider(ABC):
    """Base class for OCR providers.

    Availability depends only on the config dict passed at construction.
    """

    name: str = "base"

    def __init__(self, config: dict) -> None:
        self.config = config
        self.timeout = config.get("timeout", 30.0)

    @abstractmethod
    def is_available(self) -> bool:
        """Check if provider is configured and available."""

    @abstractmethod
    def recognize_text(self, image: bytes, options: OCROptions) -> str:
        """Return the raw text of the image. Raises ProviderError or httpx errors on failure."""

    def process_image(self, image: bytes, options: OCROptions) -> OCRResult:
        text = self.recognize_text(image, options)
        return self.build_result(text, options)

    def build_result(self, text: str, options: OCROptions) -> OCRResult:
        tx_patterns = options.tx_id_patterns or DEFAULT_TX_ID_PATTERNS
        amount_patterns = options.amount_patterns or DEFAULT_AMOUNT_PATTERNS
        tx_id = extract_transaction_id(text, tx_patterns)
        amount = extract_amount(text, amount_patterns)
        return OCRResult(
            extracted_tx_id=tx_id,
            extracted_amount=amount,
            confidence_score=calculate_confidence_score(text, tx_id, amount, options.expected_amount),
            raw_text=text,
            provider=self.name,
        )

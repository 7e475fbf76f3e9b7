"""
Last-resort provider: always available, performs no OCR.
"""
from app.schemas.payments import OCROptions, OCRResult
from app.services.ocr.base import OCRProvider


STUB_CONFIDENCE = 0.1
STUB_RAW_TEXT = "OCR not available - manual entry required"


class StubOCRProvider(OCRProvider):
    name = "stub"

    def __init__(self, config: dict | None = None):
        super().__init__(config or {})

    def is_available(self) -> bool:
        return True

    def recognize_text(self, image: bytes, options: OCROptions) -> str:
        return STUB_RAW_TEXT

    def process_image(self, image: bytes, options: OCROptions) -> OCRResult:
        return OCRResult(
            confidence_score=STUB_CONFIDENCE,
            raw_text=STUB_RAW_TEXT,
            provider=self.name,
        )

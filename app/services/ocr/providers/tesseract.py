"""
Local Tesseract provider: no network, runs the tesseract binary through pytesseract.
"""
import io

import pytesseract
from PIL import Image, ImageOps, UnidentifiedImageError

from app.schemas.payments import OCROptions
from app.services.errors import ProviderError
from app.services.ocr.base import OCRProvider


class TesseractProvider(OCRProvider):
    """Tesseract OCR on the local host."""

    name = "tesseract"

    def __init__(self, config: dict):
        super().__init__(config)
        self.enabled = bool(config.get("enabled"))
        self.lang = config.get("lang") or "eng"
        self.tesseract_cmd = config.get("tesseract_cmd")
        if self.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = self.tesseract_cmd

    def is_available(self) -> bool:
        """Enabled explicitly; the binary must be installed on the host."""
        return self.enabled

    def recognize_text(self, image: bytes, options: OCROptions) -> str:
        if not self.is_available():
            raise ProviderError("Tesseract provider not enabled")

        try:
            with Image.open(io.BytesIO(image)) as img:
                # Phone photos carry their rotation in EXIF
                prepared = ImageOps.exif_transpose(img).convert("L")
        except UnidentifiedImageError as e:
            raise ProviderError("Unreadable receipt image") from e

        try:
            text = pytesseract.image_to_string(prepared, lang=self.lang, timeout=self.timeout)
        except pytesseract.TesseractNotFoundError as e:
            raise ProviderError("Tesseract binary not found", detail={"cmd": self.tesseract_cmd}) from e
        except (pytesseract.TesseractError, RuntimeError) as e:
            # RuntimeError is pytesseract's timeout
            raise ProviderError("Tesseract failed", detail={"error": str(e)}) from e

        return text.strip()

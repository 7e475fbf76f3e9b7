"""
OpenAI vision provider: the model transcribes the receipt verbatim,
extraction then runs the same regex patterns as every other provider.
"""
import base64

from openai import OpenAI

from app.schemas.payments import OCROptions
from app.services.errors import ProviderError
from app.services.ocr.base import OCRProvider, detect_mime_type


DEFAULT_SYSTEM_PROMPT = (
    "You are an OCR engine for payment receipts and bank transfer confirmations. "
    "Transcribe ALL text visible in the image exactly as printed, line by line. "
    "Do not summarize, translate, correct or add anything. "
    "If the image contains no readable text, return an empty response."
)
DEFAULT_USER_PROMPT = "Transcribe this receipt."


class OpenAIVisionProvider(OCRProvider):
    """OpenAI chat-completions vision provider."""

    name = "openai_vision"

    def __init__(self, config: dict):
        super().__init__(config)
        self.api_key = config.get("api_key")
        self.model = config.get("model") or "gpt-4o"
        self.system_prompt = config.get("system_prompt") or DEFAULT_SYSTEM_PROMPT

        if self.api_key:
            self.client = OpenAI(api_key=self.api_key, timeout=self.timeout)
        else:
            self.client = None

    def is_available(self) -> bool:
        """Check if OpenAI is configured."""
        return bool(self.api_key and self.client)

    def recognize_text(self, image: bytes, options: OCROptions) -> str:
        if not self.is_available():
            raise ProviderError("OpenAI vision provider not configured")

        b64 = base64.b64encode(image).decode("utf-8")
        mime = detect_mime_type(image)
        messages = [
            {"role": "system", "content": self.system_prompt},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": f"{DEFAULT_USER_PROMPT} Language hint: {options.language}."},
                    {"type": "image_url", "image_url": {"url": f"data:{mime};base64,{b64}"}},
                ],
            },
        ]

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_completion_tokens=1000,
            )
        except TypeError:
            # Older SDKs only know max_tokens
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=1000,
            )

        return (response.choices[0].message.content or "").strip()

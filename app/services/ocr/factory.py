"""
Factory for creating OCR providers based on configuration.
"""
import logging

from app.services.ocr.base import OCRProvider
from app.services.ocr.providers.azure_read import AzureReadProvider
from app.services.ocr.providers.google_vision import GoogleVisionProvider
from app.services.ocr.providers.openai_vision import OpenAIVisionProvider
from app.services.ocr.providers.stub import StubOCRProvider
from app.services.ocr.providers.tesseract import TesseractProvider

logger = logging.getLogger(__name__)


class OCRProviderFactory:
    """Factory for creating OCR providers."""

    PROVIDERS: dict[str, type[OCRProvider]] = {
        "tesseract": TesseractProvider,
        "google_vision": GoogleVisionProvider,
        "azure_read": AzureReadProvider,
        "openai_vision": OpenAIVisionProvider,
        "stub": StubOCRProvider,
    }

    @classmethod
    def create(cls, provider_name: str, config: dict) -> OCRProvider:
        """
        Create provider instance by name.

        Raises:
            ValueError: If provider name is unknown
        """
        provider_class = cls.PROVIDERS.get(provider_name.lower())

        if not provider_class:
            available = ", ".join(cls.PROVIDERS.keys())
            raise ValueError(
                f"Unknown OCR provider: {provider_name}. "
                f"Available providers: {available}"
            )

        provider = provider_class(config)

        if not provider.is_available():
            logger.warning("ocr_provider_not_configured", extra={"provider": provider_name})

        return provider

    @classmethod
    def config_from_settings(cls, settings, provider_name: str) -> dict:
        """Build the explicit config dict a provider reads its availability from."""
        timeout = getattr(settings, "ocr_provider_timeout_seconds", 30.0)
        if provider_name == "tesseract":
            return {
                "enabled": settings.tesseract_enabled,
                "tesseract_cmd": settings.tesseract_cmd or None,
                "lang": settings.tesseract_lang,
                "timeout": timeout,
            }
        if provider_name == "google_vision":
            return {
                "api_key": settings.google_vision_api_key,
                "api_url": getattr(settings, "google_vision_api_url", None),
                "timeout": timeout,
            }
        if provider_name == "azure_read":
            return {
                "endpoint": settings.azure_vision_endpoint,
                "api_key": settings.azure_vision_key,
                "poll_interval": getattr(settings, "azure_vision_poll_interval", 1.0),
                "timeout": timeout,
            }
        if provider_name == "openai_vision":
            return {
                "api_key": settings.openai_api_key,
                "model": getattr(settings, "openai_vision_model", "gpt-4o"),
                "timeout": timeout,
            }
        if provider_name == "stub":
            return {}
        raise ValueError(f"OCR provider {provider_name} not supported in settings")

    @classmethod
    def create_from_settings(cls, settings, provider_name: str) -> OCRProvider:
        name = provider_name.strip().lower()
        return cls.create(name, cls.config_from_settings(settings, name))

    @classmethod
    def create_chain_from_settings(cls, settings) -> tuple[OCRProvider, list[OCRProvider]]:
        """Primary provider plus fallbacks in configured order (duplicates and stub dropped)."""
        primary_name = settings.ocr_primary_provider.strip().lower()
        primary = cls.create_from_settings(settings, primary_name)
        fallbacks: list[OCRProvider] = []
        seen = {primary_name, "stub"}
        for name in settings.ocr_fallback_providers_list:
            if name in seen:
                continue
            seen.add(name)
            fallbacks.append(cls.create_from_settings(settings, name))
        return primary, fallbacks

    @classmethod
    def get_available_providers(cls) -> list[str]:
        return list(cls.PROVIDERS.keys())

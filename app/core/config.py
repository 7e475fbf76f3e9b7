"""
Application configuration.
All settings are loaded from environment variables (or .env).
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    IMPORTANT: database_url has no default - it MUST be set in .env file.
    """

    # ===========================================
    # APPLICATION
    # ===========================================
    app_env: str = "local"

    # ===========================================
    # DATABASE (PostgreSQL, async driver)
    # ===========================================
    database_url: str  # Required, e.g. postgresql+psycopg://user:pass@db/payments
    database_echo: bool = False

    # ===========================================
    # REDIS (optional: shared circuit breaker state)
    # ===========================================
    redis_url: str = ""

    # ===========================================
    # OCR PIPELINE
    # ===========================================
    ocr_primary_provider: str = "tesseract"
    # Comma-separated, tried in order after the primary
    ocr_fallback_providers: str = "google_vision,azure_read,openai_vision"
    ocr_confidence_threshold: float = 0.7
    # Upper bound for one provider call (network + polling)
    ocr_provider_timeout_seconds: float = 30.0

    # Local Tesseract (Provider: tesseract); needs the tesseract binary on the host
    tesseract_enabled: bool = False
    tesseract_cmd: str = ""  # Empty = "tesseract" from PATH
    tesseract_lang: str = "eng"

    # Google Cloud Vision (Provider: google_vision)
    google_vision_api_key: str = ""
    google_vision_api_url: str = "https://vision.googleapis.com/v1"

    # Azure AI Vision Read (Provider: azure_read)
    azure_vision_endpoint: str = ""
    azure_vision_key: str = ""
    azure_vision_poll_interval: float = 1.0

    # OpenAI vision (Provider: openai_vision)
    openai_api_key: str = ""
    openai_vision_model: str = "gpt-4o"

    # ===========================================
    # AUTO-MATCHING
    # ===========================================
    matching_min_confidence: float = 0.7
    matching_time_window_minutes: float = 30.0
    matching_amount_tolerance_percentage: float = 5.0
    matching_history_limit: int = 50
    # True = a malformed rule aborts initialize(); False = the rule is skipped
    matching_strict_rules: bool = False

    # ===========================================
    # PAYMENTS
    # ===========================================
    default_currency: str = "ETB"

    # ===========================================
    # EMAIL (SMTP)
    # ===========================================
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = ""
    smtp_use_tls: bool = True
    smtp_timeout: float = 15.0

    # ===========================================
    # CIRCUIT BREAKER
    # ===========================================
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 60

    # ===========================================
    # LOGGING
    # ===========================================
    log_level: str = "INFO"
    log_file: str | None = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    @field_validator("ocr_confidence_threshold", "matching_min_confidence")
    @classmethod
    def validate_unit_interval(cls, v: float) -> float:
        """Thresholds are compared against confidences in [0, 1]."""
        if not 0.0 <= v <= 1.0:
            raise ValueError("confidence thresholds must be within [0, 1]")
        return v

    @field_validator("matching_time_window_minutes", "matching_amount_tolerance_percentage")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("matching defaults must be positive")
        return v

    @property
    def ocr_fallback_providers_list(self) -> list[str]:
        """Fallback provider names in precedence order."""
        return [p.strip().lower() for p in self.ocr_fallback_providers.split(",") if p.strip()]

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host.strip() and self.smtp_from.strip())

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()

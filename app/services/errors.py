"""
Error taxonomy of the payment verification core.

Only PersistenceError (and the caller-facing validation/conflict/not-found errors)
ever reach the API layer, and then as ServiceResult(success=False, error=...).
ProviderError never leaves the OCR pipeline.
"""
from typing import Any


class PaymentError(Exception):
    """Base class; detail holds structured context for logging."""

    def __init__(self, message: str, detail: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ValidationError(PaymentError):
    """Malformed or missing evidence, or an illegal state transition."""


class ConflictError(PaymentError):
    """The user already has an open request for the same item."""


class NotFoundError(PaymentError):
    """Unknown payment request id."""


class ProviderError(PaymentError):
    """One OCR backend failed; recovered via fallback."""


class PersistenceError(PaymentError):
    """Storage operation failed."""


class RuleConfigurationError(PaymentError):
    """An auto-matching rule's conditions do not fit its rule_type."""

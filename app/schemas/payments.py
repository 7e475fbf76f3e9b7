"""
Payment verification DTOs: statuses, OCR / matching results, rule condition payloads
and the result envelopes returned by PaymentService.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field, field_validator, model_validator


class PaymentStatus(str, Enum):
    CREATED = "created"
    PAYMENT_INITIATED = "payment_initiated"
    PAYMENT_VERIFIED = "payment_verified"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


NON_TERMINAL_STATUSES = frozenset({
    PaymentStatus.CREATED.value,
    PaymentStatus.PAYMENT_INITIATED.value,
    PaymentStatus.PAYMENT_VERIFIED.value,
})
TERMINAL_STATUSES = frozenset({
    PaymentStatus.COMPLETED.value,
    PaymentStatus.FAILED.value,
    PaymentStatus.CANCELLED.value,
})


class ItemType(str, Enum):
    BOOK = "book"
    BUNDLE = "bundle"


class VerificationMethod(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"
    BANK_STATEMENT = "bank_statement"
    SMS_VERIFICATION = "sms_verification"


class VerificationStep(str, Enum):
    AUTO_MATCH = "auto_match"
    ADMIN_VERIFICATION = "admin_verification"


class VerificationOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class RuleType(str, Enum):
    AMOUNT_MATCH = "amount_match"
    TX_ID_PATTERN = "tx_id_pattern"
    TIME_WINDOW = "time_window"
    USER_HISTORY = "user_history"


# ---------------------------------------------------------------------------
# OCR
# ---------------------------------------------------------------------------


class OCROptions(BaseModel):
    """Per-call overrides; empty pattern lists fall back to the pipeline defaults."""

    language: str = "en"
    confidence_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    tx_id_patterns: list[str] = Field(default_factory=list)
    amount_patterns: list[str] = Field(default_factory=list)
    expected_amount: float | None = None


class OCRResult(BaseModel):
    extracted_tx_id: str | None = None
    extracted_amount: float | None = None
    confidence_score: float = Field(default=0.0, ge=0.0, le=1.0)
    raw_text: str = ""
    processing_time_ms: int = 0
    provider: str | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Auto-matching
# ---------------------------------------------------------------------------


class AutoMatchResult(BaseModel):
    matched: bool = False
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    rule_id: str | None = None
    reason: str | None = None

    model_config = {"frozen": True}


class _RuleConditions(BaseModel):
    model_config = {"extra": "ignore", "frozen": True}


class AmountMatchConditions(_RuleConditions):
    # None = use the engine default tolerance
    tolerance_percentage: float | None = Field(default=None, gt=0)
    base_confidence: float = Field(default=0.8, ge=0.0, le=1.0)


class TxIdPatternConditions(_RuleConditions):
    pattern: str
    base_confidence: float = Field(default=0.7, ge=0.0, le=1.0)

    @field_validator("pattern")
    @classmethod
    def validate_pattern(cls, v: str) -> str:
        if not v:
            raise ValueError("pattern must not be empty")
        try:
            re.compile(v, re.IGNORECASE)
        except re.error as e:
            raise ValueError(f"invalid regex pattern {v!r}: {e}") from e
        return v


class TimeWindowConditions(_RuleConditions):
    # None = use the engine default window
    max_minutes: float | None = Field(default=None, gt=0)
    base_confidence: float = Field(default=0.6, ge=0.0, le=1.0)


class UserHistoryConditions(_RuleConditions):
    base_confidence: float = Field(default=0.5, ge=0.0, le=1.0)


RULE_CONDITION_SCHEMAS: dict[str, type[_RuleConditions]] = {
    RuleType.AMOUNT_MATCH.value: AmountMatchConditions,
    RuleType.TX_ID_PATTERN.value: TxIdPatternConditions,
    RuleType.TIME_WINDOW.value: TimeWindowConditions,
    RuleType.USER_HISTORY.value: UserHistoryConditions,
}


# ---------------------------------------------------------------------------
# Orchestrator inputs / outputs
# ---------------------------------------------------------------------------


class CreatePaymentRequestData(BaseModel):
    item_type: ItemType
    item_id: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    currency: str | None = None
    selected_wallet_id: str | None = None


class PaymentStats(BaseModel):
    total_requests: int = 0
    status_counts: dict[str, int] = Field(default_factory=dict)
    auto_matched_requests: int = 0
    manual_verified_requests: int = 0
    total_amount: float = 0.0
    average_processing_time_hours: float = 0.0


class PaymentSortField(str, Enum):
    CREATED_AT = "created_at"
    AMOUNT = "amount"
    STATUS = "status"
    AUTO_MATCH_CONFIDENCE = "auto_match_confidence"


class PaymentFilters(BaseModel):
    """Review-queue filters; empty lists and None mean no constraint."""

    model_config = {"extra": "forbid"}

    statuses: list[PaymentStatus] = Field(default_factory=list)
    wallet_types: list[str] = Field(default_factory=list)
    verification_methods: list[VerificationMethod] = Field(default_factory=list)
    created_from: datetime | None = None
    created_to: datetime | None = None
    min_amount: float | None = Field(default=None, ge=0)
    max_amount: float | None = Field(default=None, ge=0)
    auto_matched: bool | None = None
    # Substring of the manual or OCR transaction id
    search_query: str | None = None

    @field_validator("search_query")
    @classmethod
    def blank_search_is_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.strip() or None

    @model_validator(mode="after")
    def check_ranges(self) -> "PaymentFilters":
        if self.created_from and self.created_to and self.created_from > self.created_to:
            raise ValueError("created_from must not be after created_to")
        if self.min_amount is not None and self.max_amount is not None and self.min_amount > self.max_amount:
            raise ValueError("min_amount must not exceed max_amount")
        return self


T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """Envelope returned to the API/UI layer: success + data, or success=False + error."""

    success: bool
    data: T | None = None
    error: str | None = None
    message: str | None = None

    @classmethod
    def ok(cls, data: T | None = None, message: str | None = None) -> "ServiceResult[T]":
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(cls, error: str) -> "ServiceResult[T]":
        return cls(success=False, error=error)


@dataclass
class PaymentInitiationResult:
    payment_request: Any
    wallet_config: Any | None = None
    deep_link_url: str | None = None


@dataclass
class PaymentListPage:
    items: list[Any]
    total: int
    page: int
    limit: int
    has_more: bool


@dataclass
class PaymentConfirmationResult:
    auto_matched: bool
    confidence: float
    requires_manual_verification: bool
    message: str


@dataclass
class ReceiptProcessingResult:
    ocr: OCRResult
    auto_matched: bool

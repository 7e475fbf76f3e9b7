"""
Receipt OCR with multi-provider fallback.
"""
from .base import OCRProvider, detect_mime_type
from .extraction import (
    DEFAULT_AMOUNT_PATTERNS,
    DEFAULT_TX_ID_PATTERNS,
    calculate_confidence_score,
    extract_amount,
    extract_transaction_id,
)
from .factory import OCRProviderFactory
from .pipeline import OCRPipeline

__all__ = [
    "OCRProvider",
    "detect_mime_type",
    "DEFAULT_AMOUNT_PATTERNS",
    "DEFAULT_TX_ID_PATTERNS",
    "calculate_confidence_score",
    "extract_amount",
    "extract_transaction_id",
    "OCRProviderFactory",
    "OCRPipeline",
]

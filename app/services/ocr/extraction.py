"""
Receipt text parsing: transaction id / amount extraction and the provider-local
confidence score. Pure functions, shared by every OCR provider.
"""
import functools
import logging
import re

logger = logging.getLogger("ocr.extraction")

# ---------------------------------------------------------------------------
# Default regex patterns (first capturing group of the first match wins)
# ---------------------------------------------------------------------------

DEFAULT_TX_ID_PATTERNS: tuple[str, ...] = (
    r"transaction[\s#:]*([A-Z0-9]{8,20})",
    r"ref[\s#:]*([A-Z0-9]{8,20})",
    r"reference[\s#:]*([A-Z0-9]{8,20})",
    r"tx[\s#:]*([A-Z0-9]{8,20})",
    r"id[\s#:]*([A-Z0-9]{8,20})",
    r"([A-Z0-9]{10,20})",  # generic alphanumeric id
)

DEFAULT_AMOUNT_PATTERNS: tuple[str, ...] = (
    r"amount[\s#:]*([0-9,]+\.[0-9]{2})",
    r"total[\s#:]*([0-9,]+\.[0-9]{2})",
    r"paid[\s#:]*([0-9,]+\.[0-9]{2})",
    r"([0-9,]+\.[0-9]{2})\s*(?:ETB|birr)",
    r"([0-9,]+\.[0-9]{2})",  # generic amount
)

AMOUNT_MATCH_EPSILON = 0.01


@functools.lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern[str] | None:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error:
        logger.warning("ocr_invalid_pattern", extra={"error": pattern})
        return None


def _first_group(text: str, pattern: str) -> str | None:
    regex = _compile(pattern)
    if regex is None:
        return None
    match = regex.search(text)
    if not match or not match.groups() or not match.group(1):
        return None
    return match.group(1).strip()


def extract_transaction_id(text: str, patterns: tuple[str, ...] | list[str] = DEFAULT_TX_ID_PATTERNS) -> str | None:
    if not text:
        return None
    for pattern in patterns:
        value = _first_group(text, pattern)
        if value:
            return value
    return None


def extract_amount(text: str, patterns: tuple[str, ...] | list[str] = DEFAULT_AMOUNT_PATTERNS) -> float | None:
    """First positive amount; thousands separators are stripped, non-positive values skipped."""
    if not text:
        return None
    for pattern in patterns:
        raw = _first_group(text, pattern)
        if not raw:
            continue
        try:
            amount = float(raw.replace(",", ""))
        except ValueError:
            continue
        if amount > 0:
            return amount
    return None


def calculate_confidence_score(
    raw_text: str,
    extracted_tx_id: str | None,
    extracted_amount: float | None,
    expected_amount: float | None = None,
) -> float:
    score = 0.0

    # More text = more likely a real receipt
    if len(raw_text) > 50:
        score += 0.2
    elif len(raw_text) > 20:
        score += 0.1

    if extracted_tx_id:
        score += 0.3
        if len(extracted_tx_id) >= 10:
            score += 0.1

    if extracted_amount:
        score += 0.3
        if expected_amount and abs(extracted_amount - expected_amount) < AMOUNT_MATCH_EPSILON:
            score += 0.2

    return round(min(score, 1.0), 4)
